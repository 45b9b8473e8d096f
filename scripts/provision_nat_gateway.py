#!/usr/bin/env python3
"""Provision a NAT gateway VM and route the private network through it.

Requires:
- HETZNER_API_TOKEN
- HETZNER_SSH_PUBLIC_KEY (or an SSH key already in the cloud project)

Usage:
    python3 scripts/provision_nat_gateway.py [--name gw-1] [--ip 10.0.0.254]
"""

import argparse
import asyncio
import logging
import sys

from botcloud.database import init_db
from botcloud.nat_gateway import FIRST_GATEWAY_IP, provision_nat_gateway


async def run(name: str, private_ip: str) -> int:
    print(f"Provisioning NAT gateway {name} at {private_ip}...")
    try:
        gateway = await provision_nat_gateway(name, private_ip)
    except Exception as e:
        print(f"\nFailed to provision NAT gateway: {e}", file=sys.stderr)
        return 1

    print("\nNAT gateway provisioned")
    print(f"  ID:         {gateway.id}")
    print(f"  Name:       {gateway.name}")
    print(f"  Private IP: {gateway.private_ip}")
    print(f"  Public IP:  {gateway.public_ip}")
    print(f"  Server ID:  {gateway.cloud_server_id}")
    print(f"\nSSH access: ssh root@{gateway.public_ip}")
    print("Allow ~2 minutes for cloud-init before routing bots through it.")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Provision a NAT gateway")
    parser.add_argument("--name", default="gw-1", help="Gateway name (default: gw-1)")
    parser.add_argument(
        "--ip", default=FIRST_GATEWAY_IP, help=f"Private IP address (default: {FIRST_GATEWAY_IP})"
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    init_db()
    sys.exit(asyncio.run(run(args.name, args.ip)))


if __name__ == "__main__":
    main()
