"""Liveness watchdog: detect stalled scans and push them forward.

Every repair is a conditional update on the stage the watchdog observed,
so a scan that moved on in the meantime is left alone.
"""

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscan import metrics
from subscan.config import settings
from subscan.db.models import ScanJob
from subscan.db.session import AsyncSessionLocal
from subscan.db.states import ACTIVE_STAGES, STAGE_PROGRESS, ScanStage, TaskStatus
from subscan.db.store import ScanStore
from subscan.worker.classifier import finalize_scan
from subscan.worker.dispatcher import AnalysisDispatcher, analysis_dispatcher
from subscan.worker.sweeper import PromotionSweeper, promotion_sweeper

logger = logging.getLogger(__name__)

FORCED_PENDING_PROGRESS = 10
FORCED_READY_MESSAGE = "Watchdog: ingestion stalled; advanced to analysis with the emails stored so far"


@dataclass
class WatchdogReport:
    scanned: int = 0
    bumped: int = 0
    forced_ready: int = 0
    dispatched: int = 0
    completed: int = 0
    redispatched: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class LivenessWatchdog:
    """
    One reconciliation pass over non-terminal scans.

    Thresholds are seconds since the scan's last update:
    - pending past ``pending_stale`` is bumped to in_progress
    - in_progress past ``in_progress_stale`` is forced to ready_for_analysis
    - ready_for_analysis is handed to the dispatcher at any age
    - analyzing past ``analyzing_stale`` is completed when no tasks are
      pending, otherwise re-dispatched until ``max_redispatches`` runs see
      no change in the pending count
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        dispatcher: Optional[AnalysisDispatcher] = None,
        sweeper: Optional[PromotionSweeper] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.dispatcher = dispatcher or analysis_dispatcher
        self.sweeper = sweeper or promotion_sweeper
        self._clock = clock
        self.pending_stale = settings.watchdog_pending_stale_seconds
        self.in_progress_stale = settings.watchdog_in_progress_stale_seconds
        self.analyzing_stale = settings.watchdog_analyzing_stale_seconds
        self.max_redispatches = settings.watchdog_max_redispatches
        self.scan_limit = settings.watchdog_scan_limit

    async def run(self) -> WatchdogReport:
        report = WatchdogReport()
        needs_dispatch = False
        resubmit: list[ScanJob] = []

        async with self.session_factory() as db:
            store = ScanStore(db)
            jobs = await store.jobs_in_stages(ACTIVE_STAGES, limit=self.scan_limit)
            report.scanned = len(jobs)
            metrics.update_active_scans(self._stage_counts(jobs))

            now = self._clock()
            for job in jobs:
                age = (now - job.updated_at).total_seconds()
                stage = ScanStage(job.stage)

                if stage == ScanStage.PENDING and age > self.pending_stale:
                    if await store.transition(
                        job.scan_id,
                        ScanStage.PENDING,
                        ScanStage.IN_PROGRESS,
                        progress=FORCED_PENDING_PROGRESS,
                    ):
                        logger.warning(f"Watchdog: scan {job.scan_id[:16]} pending {age:.0f}s, bumped")
                        report.bumped += 1

                elif stage == ScanStage.IN_PROGRESS and age > self.in_progress_stale:
                    counts = await store.count_tasks_by_status(job.scan_id)
                    if await store.transition(
                        job.scan_id,
                        ScanStage.IN_PROGRESS,
                        ScanStage.READY_FOR_ANALYSIS,
                        progress=STAGE_PROGRESS[ScanStage.READY_FOR_ANALYSIS],
                        emails_to_process=sum(counts.values()),
                        degraded=True,
                        error_message=FORCED_READY_MESSAGE,
                    ):
                        logger.warning(
                            f"Watchdog: scan {job.scan_id[:16]} ingesting for {age:.0f}s, "
                            "forced to ready_for_analysis"
                        )
                        report.forced_ready += 1
                        needs_dispatch = True

                elif stage == ScanStage.READY_FOR_ANALYSIS:
                    needs_dispatch = True

                elif stage == ScanStage.ANALYZING and age > self.analyzing_stale:
                    action = await self._repair_analyzing(store, job)
                    if action == "completed":
                        report.completed += 1
                    elif action == "failed":
                        report.failed += 1
                    elif action == "redispatched":
                        resubmit.append(job)

        if needs_dispatch:
            summary = await self.dispatcher.dispatch()
            report.dispatched = len(summary.dispatched)
            report.failed += len(summary.failed)

        if resubmit and await self.dispatcher.resubmit(resubmit):
            report.redispatched = len(resubmit)

        metrics.record_watchdog_action("bumped", report.bumped)
        metrics.record_watchdog_action("forced_ready", report.forced_ready)
        metrics.record_watchdog_action("completed", report.completed)
        metrics.record_watchdog_action("redispatched", report.redispatched)
        metrics.record_watchdog_action("failed", report.failed)

        if any((report.bumped, report.forced_ready, report.completed, report.redispatched, report.failed)):
            logger.info(f"Watchdog run: {report.to_dict()}")
        return report

    async def _repair_analyzing(self, store: ScanStore, job: ScanJob) -> Optional[str]:
        scan_id = job.scan_id
        counts = await store.count_tasks_by_status(scan_id)
        pending = counts[TaskStatus.PENDING.value]

        if pending == 0:
            if await finalize_scan(store, scan_id, self.sweeper):
                logger.warning(f"Watchdog: scan {scan_id[:16]} had no pending tasks, completed")
                return "completed"
            return None

        if job.last_pending_count == pending:
            redispatches = job.redispatch_count + 1
        else:
            redispatches = 1

        if redispatches > self.max_redispatches:
            if await store.fail(
                scan_id,
                ScanStage.ANALYZING,
                f"Watchdog: no analysis progress after {job.redispatch_count} re-dispatches",
            ):
                logger.error(
                    f"Watchdog: scan {scan_id[:16]} stuck with {pending} pending task(s), failed"
                )
                return "failed"
            return None

        if await store.touch(scan_id, redispatch_count=redispatches, last_pending_count=pending):
            logger.warning(
                f"Watchdog: re-dispatching scan {scan_id[:16]} "
                f"({pending} pending, attempt {redispatches})"
            )
            return "redispatched"
        return None

    @staticmethod
    def _stage_counts(jobs: list[ScanJob]) -> dict[str, int]:
        counts = Counter(job.stage for job in jobs)
        return {stage.value: counts.get(stage.value, 0) for stage in ACTIVE_STAGES}


# Global watchdog instance
liveness_watchdog = LivenessWatchdog()
