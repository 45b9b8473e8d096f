#!/usr/bin/env python3
"""Delete NAT gateway records that never finished provisioning.

Removes rows that are failed, still provisioning, or never got a server.
Cloud servers are not touched.

Usage:
    python3 scripts/cleanup_failed_gateways.py [--dry-run]
"""

import argparse
import logging

from botcloud.database import init_db
from botcloud.nat_gateway import cleanup_failed_gateways
from botcloud.storage import nat_gateway_store


def main():
    parser = argparse.ArgumentParser(description="Delete unusable NAT gateway records")
    parser.add_argument("--dry-run", action="store_true", help="List records without deleting")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    init_db()

    if args.dry_run:
        stale = [
            gw
            for gw in nat_gateway_store.list()
            if gw.status in ("failed", "provisioning") or gw.cloud_server_id == "pending"
        ]
        for gw in stale:
            print(f"  would delete {gw.name} ({gw.status}, server={gw.cloud_server_id})")
        print(f"{len(stale)} record(s) would be deleted")
        return

    removed = cleanup_failed_gateways()
    for gw in removed:
        print(f"  deleted {gw.name} ({gw.status})")
    print(f"Deleted {len(removed)} record(s)")
    print("\nRemaining gateways:")
    for gw in nat_gateway_store.list():
        print(f"  {gw.name}: {gw.status} {gw.private_ip} bots={gw.bot_count}/{gw.max_bots}")


if __name__ == "__main__":
    main()
