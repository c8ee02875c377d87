# scripts/sweep.py
"""Run one expiration/reminder sweep, e.g. from cron when the in-app loop is disabled."""

import os
import sys
import argparse
import logging

from dotenv import load_dotenv

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings
from core.database import create_db_and_tables
from services.container import build_services

load_dotenv()


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire finished plans and send renewal reminders once.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    billing = build_services(settings)
    create_db_and_tables(billing.engine)
    try:
        report = billing.sweeper.run_once()
    finally:
        billing.shutdown()

    if report.skipped:
        print("⏭️ Another instance holds the sweeper lease, nothing done.")
        return 0
    print(f"🧹 expired={report.expired} reminders={report.reminders_sent} errors={report.errors}")
    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(main())
