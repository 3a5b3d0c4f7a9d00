"""
OTP expiration sweep worker.

Deletes challenges past their expiry, reporting each lapsed one to
analytics once. Safe to run from cron alongside the HTTP job endpoint.
"""
from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from typing import Dict, Optional

from contractor_core.core.config import settings
from contractor_core.core.database import init_engine
from contractor_core.core.logging import configure_logging
from contractor_core.features.otp.expiration import sweep_expired


def _parse_now(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def run_sweep(now: Optional[datetime] = None) -> Dict:
    now = now or datetime.now(timezone.utc)
    report = sweep_expired(now)
    return {
        "processed": report.processed,
        "failed": report.failed,
        "total": report.total,
        "timestamp": now.isoformat(),
    }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Delete expired OTP challenges.")
    parser.add_argument("--database-url", dest="database_url", help="Override DATABASE_URL.")
    parser.add_argument("--now", dest="now", help="ISO timestamp to sweep against (default: current time).")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    init_engine(args.database_url)
    result = run_sweep(_parse_now(args.now))
    print(json.dumps(result))
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
