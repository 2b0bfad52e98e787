#!/usr/bin/env python3
"""
Diagnose scan pipeline state and provide recovery recommendations.
"""

import argparse
import asyncio
from datetime import datetime
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from subscan.config import settings
from subscan.db.models import ScanJob
from subscan.db.session import AsyncSessionLocal
from subscan.db.states import ScanStage
from subscan.db.store import ScanStore

STALE_THRESHOLDS = {
    ScanStage.PENDING.value: settings.watchdog_pending_stale_seconds,
    ScanStage.IN_PROGRESS.value: settings.watchdog_in_progress_stale_seconds,
    ScanStage.ANALYZING.value: settings.watchdog_analyzing_stale_seconds,
}


def recommend(job: ScanJob, counts: dict[str, int], age_s: float) -> list[str]:
    tips = []
    threshold = STALE_THRESHOLDS.get(job.stage)

    if job.stage == ScanStage.READY_FOR_ANALYSIS.value:
        tips.append("Ready for analysis: the next dispatch run (/api/cron/dispatch) will pick it up.")
    elif threshold is not None and age_s > threshold:
        tips.append(
            f"Idle {age_s:.0f}s in {job.stage} (> {threshold}s). "
            "The watchdog will repair it; run /api/cron/watchdog to do it now."
        )
    if job.stage == ScanStage.ANALYZING.value and counts["pending"] and job.redispatch_count:
        tips.append(
            f"{counts['pending']} task(s) still pending after {job.redispatch_count} re-dispatch(es). "
            "Check LLM provider errors and rate limits."
        )
    if job.stage == ScanStage.FAILED.value:
        tips.append(f"Failed: {job.error_message or 'no message recorded'}. Start a new scan.")
    if job.degraded:
        tips.append("Scan ran degraded (mailbox token invalid or ingestion forced forward).")
    if job.stage == ScanStage.COMPLETED.value and counts["failed"]:
        tips.append(f"Completed with {counts['failed']} failed task(s); see analysis_tasks.error_message.")
    if not tips:
        tips.append("No issues detected.")
    return tips


async def diagnose(scan_id: str | None, last: int) -> None:
    async with AsyncSessionLocal() as db:
        store = ScanStore(db)
        if scan_id:
            job = await store.get_job(scan_id)
            jobs = [job] if job else []
        else:
            result = await db.execute(
                select(ScanJob).order_by(ScanJob.created_at.desc()).limit(last)
            )
            jobs = list(result.scalars().all())

        print("Scan Pipeline Diagnosis")
        print("=======================")
        if not jobs:
            print("No matching scans.")
            return

        now = datetime.utcnow()
        for job in jobs:
            counts = await store.count_tasks_by_status(job.scan_id)
            age_s = (now - job.updated_at).total_seconds()
            print("")
            print(f"scan_id={job.scan_id} user_id={job.user_id} trigger={job.trigger}")
            print(f"  stage={job.stage} progress={job.progress}% idle_s={age_s:.0f}")
            print(
                f"  emails found={job.emails_found} to_process={job.emails_to_process} "
                f"processed={job.emails_processed} subscriptions={job.subscriptions_found}"
            )
            print(
                f"  tasks pending={counts['pending']} completed={counts['completed']} "
                f"failed={counts['failed']} redispatches={job.redispatch_count}"
            )
            if job.error_message:
                print(f"  error: {job.error_message}")
            for tip in recommend(job, counts, age_s):
                print(f"  - {tip}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Diagnose scan pipeline state")
    parser.add_argument("--scan", dest="scan_id", help="Scan id to inspect")
    parser.add_argument("--last", type=int, default=5, help="Inspect the N most recent scans")
    args = parser.parse_args()
    asyncio.run(diagnose(args.scan_id, args.last))


if __name__ == "__main__":
    main()
