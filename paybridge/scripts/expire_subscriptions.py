"""
Expire subscriptions past their end date.

Meant for a scheduler (cron, k8s CronJob). Use --dry-run to only count
candidates.
"""
from __future__ import annotations

import argparse
import json
import os
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv

from paybridge.core.config import settings
from paybridge.core.logging import configure_logging
from paybridge.features.billing.expiry_job import run_expiry_sweep


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Mark lapsed subscriptions as expired.")
    parser.add_argument("--dry-run", action="store_true", help="Count candidates without writing.")
    parser.add_argument("--now", default=os.getenv("PAYBRIDGE_EXPIRY_NOW"), help="ISO-8601 reference time (default: current UTC time).")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    report = run_expiry_sweep(now=_parse_now(args.now), dry_run=args.dry_run)
    print(json.dumps(report))
    return 0


if __name__ == "__main__":
    load_dotenv()
    raise SystemExit(main())
