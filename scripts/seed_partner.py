#!/usr/bin/env python3
"""
Insert or update a partner for local testing.

Example:
    python scripts/seed_partner.py acme --clickid-keys clickid cid \
        --sum-keys sum payout --sum-mapping 1=10 2=20 --telegram
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from postback_tracker.db.models import Base, Partner
from postback_tracker.db.session import AsyncSessionLocal, engine


def parse_mapping(pairs: list[str]) -> list[dict[str, str]]:
    """Turn ["1=10", "2=20"] into sum mapping rules."""
    rules = []
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Invalid mapping '{pair}', expected FROM=TO")
        from_value, to_value = pair.split("=", 1)
        rules.append({"from": from_value.strip(), "to": to_value.strip()})
    return rules


async def seed_partner(args):
    """Create tables if needed and upsert the partner."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        partner = await db.get(Partner, args.partner_id)
        created = partner is None
        if created:
            partner = Partner(id=args.partner_id, name=args.name or args.partner_id)
            db.add(partner)
        elif args.name:
            partner.name = args.name

        partner.clickid_keys = args.clickid_keys
        partner.sum_keys = args.sum_keys
        partner.sum_mapping = parse_mapping(args.sum_mapping)
        partner.allowed_ips = args.allowed_ips
        partner.ip_whitelist_enabled = bool(args.allowed_ips)
        partner.logging_enabled = args.logging
        partner.telegram_enabled = args.telegram
        partner.google_spreadsheet_id = args.spreadsheet_id
        partner.google_sheet_name = args.sheet_name

        await db.commit()

    action = "Created" if created else "Updated"
    print(f"{action} partner '{args.partner_id}'")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Insert or update a partner")
    parser.add_argument("partner_id", help="Partner id (the pid parameter)")
    parser.add_argument("--name", default=None)
    parser.add_argument("--clickid-keys", nargs="*", default=["clickid", "cid"])
    parser.add_argument("--sum-keys", nargs="*", default=["sum", "payout"])
    parser.add_argument("--sum-mapping", nargs="*", default=[], metavar="FROM=TO")
    parser.add_argument(
        "--allowed-ips",
        nargs="*",
        default=[],
        help="Enables the IP whitelist when given",
    )
    parser.add_argument("--logging", action="store_true", help="Enable per-partner logging")
    parser.add_argument("--telegram", action="store_true", help="Enable Telegram notifications")
    parser.add_argument("--spreadsheet-id", default=None)
    parser.add_argument("--sheet-name", default=None)

    args = parser.parse_args()

    try:
        asyncio.run(seed_partner(args))
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
