#!/usr/bin/env python3
"""
Run one bounded pass over the sync queue and print the run summary as JSON.

Adapters come from SYNC_COLLABORATORS; jobs for a domain without one are left
pending and reported on stderr.

Usage (from repo root):
  python backend/scripts/run_sync_queue.py --status
  python backend/scripts/run_sync_queue.py --schedule --deadline-s 60
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import timedelta

# Ensure backend package is importable when run as script from backend or project root
_script_dir = os.path.dirname(os.path.abspath(__file__))
_backend = os.path.dirname(_script_dir)
if _backend not in sys.path:
    sys.path.insert(0, _backend)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one sync queue pass.")
    parser.add_argument("--deadline-s", type=float, default=None, help="Stop claiming new jobs after N seconds.")
    parser.add_argument("--status", action="store_true", help="Only print queue counts; do not run.")
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Queue one job per (account, domain) pair with nothing pending first.",
    )
    args = parser.parse_args()

    from mailsync.database import init_db
    from mailsync.jobs import SyncDomain, utcnow
    from mailsync.services.sync_service import get_sync_service

    init_db()
    service = get_sync_service()

    if args.status:
        print(json.dumps(service.store.counts_by_status(), indent=2))
        return 0

    missing = [d.value for d in SyncDomain if d not in service.registry.domains()]
    if missing:
        print(f"No collaborator registered for: {', '.join(missing)}; those jobs stay pending.", file=sys.stderr)
    if args.schedule:
        print(f"Scheduled {service.schedule_sync_jobs()} jobs.", file=sys.stderr)

    deadline = utcnow() + timedelta(seconds=args.deadline_s) if args.deadline_s else None
    summary = service.run_queue(deadline=deadline)
    title, message = summary.describe()
    print(json.dumps({**summary.to_dict(), "title": title, "message": message}, indent=2))
    return 1 if summary.failed_jobs else 0


if __name__ == "__main__":
    raise SystemExit(main())
