"""Scan record store: conditional (compare-and-swap) stage updates and queries.

Every stage write goes through ``ScanStore.transition`` which issues
``UPDATE scan_jobs SET stage=:new ... WHERE scan_id=:id AND stage=:expected``.
A writer that loses a race sees zero affected rows and gets ``False`` back.
"""

import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from subscan import metrics
from subscan.db.models import AnalysisTask, MailboxToken, ScanJob
from subscan.db.states import ScanStage, TaskStatus, is_allowed_transition

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


class InvalidTransitionError(ValueError):
    """Raised when code asks for a stage edge the state machine does not allow."""

    def __init__(self, current: str, new: str):
        super().__init__(f"Illegal scan stage transition: {current} -> {new}")
        self.current = current
        self.new = new


def truncate_error(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return str(message)[:MAX_ERROR_LENGTH]


def _stage_value(stage) -> str:
    return ScanStage(stage).value


class ScanStore:
    """
    Store operations bound to one AsyncSession.

    Each mutating call commits its own transaction so the conditional
    update is the whole unit of work.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Scan jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        user_id: str,
        trigger: str = "manual",
        scan_id: Optional[str] = None,
    ) -> ScanJob:
        """Create a new job in the pending stage."""
        job = ScanJob(
            scan_id=scan_id or f"scan_{uuid4().hex}",
            user_id=user_id,
            trigger=trigger,
            stage=ScanStage.PENDING.value,
            progress=0,
        )
        self.db.add(job)
        await self.db.commit()
        await self.db.refresh(job)
        logger.info("Created scan %s for user %s (trigger: %s)", job.scan_id[:16], user_id, trigger)
        return job

    async def get_job(self, scan_id: str) -> Optional[ScanJob]:
        """Load a job, bypassing any stale copy held by the session."""
        result = await self.db.execute(
            select(ScanJob)
            .where(ScanJob.scan_id == scan_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def jobs_in_stages(
        self,
        stages: Iterable[ScanStage],
        limit: Optional[int] = None,
        scan_ids: Optional[list[str]] = None,
    ) -> list[ScanJob]:
        """List jobs in any of the given stages, newest first."""
        query = (
            select(ScanJob)
            .where(ScanJob.stage.in_([_stage_value(s) for s in stages]))
            .order_by(ScanJob.created_at.desc())
            .execution_options(populate_existing=True)
        )
        if scan_ids is not None:
            query = query.where(ScanJob.scan_id.in_(scan_ids))
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def ready_jobs_without_active_sibling(
        self,
        scan_ids: Optional[list[str]] = None,
    ) -> list[ScanJob]:
        """
        Jobs ready for analysis that have no sibling row for the same scan
        already analyzing.
        """
        sibling = aliased(ScanJob)
        active_sibling = (
            select(sibling.id)
            .where(
                sibling.scan_id == ScanJob.scan_id,
                sibling.id != ScanJob.id,
                sibling.stage == ScanStage.ANALYZING.value,
            )
            .exists()
        )
        query = (
            select(ScanJob)
            .where(
                ScanJob.stage == ScanStage.READY_FOR_ANALYSIS.value,
                ~active_sibling,
            )
            .order_by(ScanJob.created_at.asc())
            .execution_options(populate_existing=True)
        )
        if scan_ids is not None:
            query = query.where(ScanJob.scan_id.in_(scan_ids))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def transition(
        self,
        scan_id: str,
        expected: ScanStage,
        new: ScanStage,
        **fields,
    ) -> bool:
        """
        Move a job from ``expected`` to ``new`` if it is still in ``expected``.

        Args:
            scan_id: Job identifier
            expected: Stage the caller observed
            new: Target stage
            **fields: Extra columns to write in the same statement

        Returns:
            True if this caller won the update, False if the job was not in
            ``expected`` (another invocation got there first)

        Raises:
            InvalidTransitionError: If ``expected -> new`` is not a legal edge
        """
        expected_value = _stage_value(expected)
        new_value = _stage_value(new)
        if not is_allowed_transition(expected, new):
            raise InvalidTransitionError(expected_value, new_value)

        if "error_message" in fields:
            fields["error_message"] = truncate_error(fields["error_message"])

        values = {"stage": new_value, "updated_at": datetime.utcnow(), **fields}
        if ScanStage(new).is_terminal and "completed_at" not in values:
            values["completed_at"] = datetime.utcnow()

        result = await self.db.execute(
            update(ScanJob)
            .where(ScanJob.scan_id == scan_id, ScanJob.stage == expected_value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        applied = result.rowcount == 1
        metrics.record_transition(expected_value, new_value, applied)
        if applied:
            logger.info("Scan %s: %s -> %s", scan_id[:16], expected_value, new_value)
        else:
            logger.debug(
                "Scan %s: %s -> %s skipped (stage changed underneath us)",
                scan_id[:16], expected_value, new_value,
            )
        return applied

    async def touch(self, scan_id: str, **fields) -> bool:
        """Forced re-dispatch: re-enter ``analyzing`` and bump ``updated_at``."""
        return await self.transition(scan_id, ScanStage.ANALYZING, ScanStage.ANALYZING, **fields)

    async def fail(self, scan_id: str, expected: ScanStage, message: str) -> bool:
        return await self.transition(
            scan_id, expected, ScanStage.FAILED, error_message=message
        )

    async def update_progress(
        self,
        scan_id: str,
        expected_stage: ScanStage,
        progress: int,
        **fields,
    ) -> bool:
        """
        Write progress and counters while the job stays in ``expected_stage``.

        Progress never moves backwards; a lower value than the stored one
        matches no row.
        """
        progress = max(0, min(100, int(progress)))
        result = await self.db.execute(
            update(ScanJob)
            .where(
                ScanJob.scan_id == scan_id,
                ScanJob.stage == _stage_value(expected_stage),
                ScanJob.progress <= progress,
            )
            .values(progress=progress, updated_at=datetime.utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Analysis tasks
    # ------------------------------------------------------------------

    async def pending_tasks(self, scan_id: str, limit: Optional[int] = None) -> list[AnalysisTask]:
        """Pending tasks for a scan with their email records loaded."""
        query = (
            select(AnalysisTask)
            .where(
                AnalysisTask.scan_id == scan_id,
                AnalysisTask.status == TaskStatus.PENDING.value,
            )
            .options(selectinload(AnalysisTask.email))
            .order_by(AnalysisTask.id.asc())
        )
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_tasks_by_status(self, scan_id: str) -> dict[str, int]:
        """Return ``{status: count}`` for a scan, with every status present."""
        result = await self.db.execute(
            select(AnalysisTask.status, func.count(AnalysisTask.id))
            .where(AnalysisTask.scan_id == scan_id)
            .group_by(AnalysisTask.status)
        )
        counts = {status.value: 0 for status in TaskStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def finish_task(self, task_id: int, status: TaskStatus, **fields) -> bool:
        """
        Record a terminal outcome for a task that is still pending.

        Returns:
            False if another writer already finished the task
        """
        status = TaskStatus(status)
        if status == TaskStatus.PENDING:
            raise ValueError("finish_task requires a terminal status")

        if "error_message" in fields:
            fields["error_message"] = truncate_error(fields["error_message"])

        result = await self.db.execute(
            update(AnalysisTask)
            .where(
                AnalysisTask.id == task_id,
                AnalysisTask.status == TaskStatus.PENDING.value,
            )
            .values(status=status.value, updated_at=datetime.utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def count_linked_subscriptions(self, scan_id: str) -> int:
        """Distinct subscriptions the sweeper linked to this scan's tasks."""
        result = await self.db.execute(
            select(func.count(func.distinct(AnalysisTask.subscription_id))).where(
                AnalysisTask.scan_id == scan_id,
                AnalysisTask.subscription_id.is_not(None),
            )
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Mailbox credentials
    # ------------------------------------------------------------------

    async def get_mailbox_token(self, user_id: str) -> Optional[str]:
        result = await self.db.execute(
            select(MailboxToken.access_token).where(MailboxToken.user_id == user_id)
        )
        return result.scalar_one_or_none()
