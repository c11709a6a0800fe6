"""
Identity Consolidation Runner

Merges duplicate customer identities (same phone) into the earliest
one, moving bookings and saved addresses first. Safe to re-run.

Run: python run_consolidation.py [--backfill-legacy] [--json]
"""

import asyncio
import json
import sys
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from config import get_settings
from logging_config import setup_logging, get_logger
from sentry_integration import init_sentry
from database import get_engine, get_legacy_engine, get_session_factory, get_legacy_session_factory
from identity import IdentityService

logger = get_logger(__name__)


def print_report(report: dict):
    print("=" * 60)
    print("Identity consolidation")
    print("=" * 60)

    backfill = report.get("backfill")
    if backfill:
        print(
            f"Legacy backfill: scanned {backfill['scanned']}, created {backfill['created']}, "
            f"existing {backfill['existing']}, skipped {backfill['skipped']}, errors {backfill['errors']}"
        )

    print(f"Duplicate phones:  {report['duplicate_groups']}")
    print(f"Identities merged: {report['losers_merged']}")
    print(f"Bookings moved:    {report['bookings_moved']}")
    print(f"Addresses moved:   {report['addresses_moved']}")
    print(f"Failed groups:     {report['failed_groups']}")

    for group in report["groups"]:
        marker = "✅" if not group["errors"] else "❌"
        print(
            f"  {marker} {group['phone']} -> {group['survivor_id']} "
            f"({len(group['losers_merged'])} merged, {group['bookings_moved']} bookings, "
            f"{group['addresses_moved']} addresses)"
        )
        for error in group["errors"]:
            print(f"      {error}")


async def main(backfill_legacy: bool = False, as_json: bool = False) -> int:
    settings = get_settings()
    service = IdentityService.from_settings(
        settings,
        get_session_factory(),
        get_legacy_session_factory(),
    )

    try:
        report = await service.run_consolidation(backfill_legacy=backfill_legacy)
    finally:
        legacy_engine = get_legacy_engine()
        if legacy_engine is not get_engine():
            await legacy_engine.dispose()
        await get_engine().dispose()

    result = report.to_dict()
    if as_json:
        print(json.dumps(result, indent=2))
    else:
        print_report(result)

    return 1 if report.failed_groups else 0


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Merge duplicate customer identities")
    parser.add_argument("--backfill-legacy", action="store_true",
                        help="Bridge legacy customers without an identity before merging")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    settings = get_settings()
    # Keep stdout clean for the JSON report
    setup_logging(level="WARNING" if args.json else settings.LOG_LEVEL, json_format=settings.is_production,
                  service_name="identity-consolidation")
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT)

    sys.exit(asyncio.run(main(backfill_legacy=args.backfill_legacy, as_json=args.json)))
