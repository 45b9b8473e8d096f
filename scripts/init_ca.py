#!/usr/bin/env python3
"""Generate the internal CA and the config API server certificate.

Rotates any existing CA out. Bots provisioned under the old CA can no longer
fetch their config until they are re-provisioned.

Requires:
- ENCRYPTION_KEY
- BOTCLOUD_DB_PATH (optional, defaults to ./botcloud.db)

Usage:
    python3 scripts/init_ca.py [--hostname NAME] [--ip PRIVATE_IP]
"""

import argparse
import logging

from botcloud.ca import initialize_ca
from botcloud.database import init_db
from botcloud.network import BACKEND_PRIVATE_IP


def main():
    parser = argparse.ArgumentParser(description="Initialize the internal certificate authority")
    parser.add_argument("--hostname", default=None, help="DNS name for the config API certificate")
    parser.add_argument(
        "--ip", default=BACKEND_PRIVATE_IP, help=f"Private IP of the backend (default: {BACKEND_PRIVATE_IP})"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    init_db()

    record = initialize_ca(hostname=args.hostname, private_ip=args.ip)

    print("CA initialized successfully")
    print(f"  ID:      {record.id}")
    print(f"  Expires: {record.expires_at.isoformat()}")
    print("\nCA certificate (distributed to bots at provisioning):")
    print(record.ca_cert)


if __name__ == "__main__":
    main()
