#!/usr/bin/env python3
"""
Cron tasks for Lockguard.

Use these when the in-process scheduler is disabled
(ENABLE_SESSION_MONITORING=false), e.g. when running several API workers.

Usage:
  python scripts/cron_tasks.py cleanup_expired
  python scripts/cron_tasks.py cleanup_inactive
  python scripts/cron_tasks.py security_scan
  python scripts/cron_tasks.py purge_old_records

Recommended crontab:
  */15 * * * * /opt/lockguard/venv/bin/python /opt/lockguard/scripts/cron_tasks.py cleanup_expired
  0 * * * * /opt/lockguard/venv/bin/python /opt/lockguard/scripts/cron_tasks.py cleanup_inactive
  */5 * * * * /opt/lockguard/venv/bin/python /opt/lockguard/scripts/cron_tasks.py security_scan
  0 3 * * * /opt/lockguard/venv/bin/python /opt/lockguard/scripts/cron_tasks.py purge_old_records
"""

import asyncio
import sys
import os
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _monitoring():
    from lockguard.database import async_session_maker
    from lockguard.services.session_monitoring import SessionMonitoringService

    return SessionMonitoringService(async_session_maker)


def _report(result) -> None:
    print(f"Processed: {result.sessions_processed}")
    print(f"Revoked: {result.sessions_revoked}")
    print(f"Security events: {result.security_events_detected}")
    for error in result.errors:
        print(f"  Error: {error}")


async def cleanup_expired():
    """Revoke sessions past their expiry."""
    print(f"[{datetime.now()}] Cleaning up expired sessions...")
    _report(await _monitoring().cleanup_expired_sessions())


async def cleanup_inactive():
    """Revoke sessions idle past the inactivity threshold."""
    print(f"[{datetime.now()}] Cleaning up inactive sessions...")
    _report(await _monitoring().cleanup_inactive_sessions())


async def security_scan():
    """Run the security detectors once."""
    print(f"[{datetime.now()}] Running security scan...")
    _report(await _monitoring().perform_security_scan())


async def purge_old_records():
    """Delete records past their retention period."""
    print(f"[{datetime.now()}] Purging old records...")
    result = await _monitoring().purge_old_records()
    for table, deleted in result["deleted"].items():
        print(f"  {table}: {deleted} deleted")
    for error in result["errors"]:
        print(f"  Error: {error}")


TASKS = {
    "cleanup_expired": cleanup_expired,
    "cleanup_inactive": cleanup_inactive,
    "security_scan": security_scan,
    "purge_old_records": purge_old_records,
}


def main():
    if len(sys.argv) < 2:
        print("Usage: python cron_tasks.py <task>")
        print(f"Tasks: {', '.join(TASKS)}")
        sys.exit(1)

    task = sys.argv[1]

    if task not in TASKS:
        print(f"Unknown task: {task}")
        sys.exit(1)

    asyncio.run(TASKS[task]())


if __name__ == "__main__":
    main()
