#!/usr/bin/env python3
"""
Delete succeeded sync jobs older than the retention window. Dead-lettered jobs are kept.

This is a destructive operation. By default it only reports what would be deleted
unless you pass --yes-really.

Usage (from repo root):
  python backend/scripts/purge_succeeded_jobs.py --days 7 --yes-really
"""

from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta

_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)


def main() -> int:
    parser = argparse.ArgumentParser(description="Purge succeeded sync jobs.")
    parser.add_argument("--days", type=int, default=None, help="Retention in days (default: settings).")
    parser.add_argument("--yes-really", action="store_true", help="Actually delete rows.")
    args = parser.parse_args()

    from sqlalchemy import func, select

    from mailsync.config import settings
    from mailsync.database import SessionLocal
    from mailsync.jobs import JobStatus, utcnow
    from mailsync.models import SyncJobRecord
    from mailsync.services.job_store import JobStore

    days = settings.sync_succeeded_retention_days if args.days is None else args.days
    cutoff = utcnow() - timedelta(days=max(0, days))

    if not args.yes_really:
        db = SessionLocal()
        try:
            count = db.execute(
                select(func.count()).select_from(SyncJobRecord).where(
                    SyncJobRecord.status == JobStatus.SUCCEEDED.value,
                    SyncJobRecord.updated_at < cutoff,
                )
            ).scalar_one()
        finally:
            db.close()
        print(f"{count} succeeded jobs older than {cutoff:%Y-%m-%d %H:%M} would be deleted. Pass --yes-really.")
        return 0

    deleted = JobStore(SessionLocal).purge_succeeded(cutoff)
    print(f"Deleted {deleted} succeeded jobs older than {cutoff:%Y-%m-%d %H:%M}.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
