#!/usr/bin/env python3
"""Reset a failed or stopped bot to starting and provision it again.

Usage:
    python3 scripts/retry_provision.py <bot_id>
"""

import argparse
import asyncio
import logging
import sys

from botcloud.database import init_db
from botcloud.provisioner import retry_provision
from botcloud.storage import bot_store


async def run(bot_id: str) -> int:
    bot = bot_store.get(bot_id)
    if bot is None:
        print(f"Bot {bot_id} not found", file=sys.stderr)
        return 1
    print(f"Bot: {bot.name} (status: {bot.status})")

    result = await retry_provision(bot_id)
    if not result.success:
        print(f"\nProvisioning failed: {result.error}", file=sys.stderr)
        return 1

    print("\nProvisioning successful")
    print(f"  Server ID:  {result.server_id}")
    print(f"  Server IP:  {result.server_ip}")
    print(f"  Private IP: {result.private_ip}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Retry provisioning for a bot")
    parser.add_argument("bot_id")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    init_db()
    sys.exit(asyncio.run(run(args.bot_id)))


if __name__ == "__main__":
    main()
