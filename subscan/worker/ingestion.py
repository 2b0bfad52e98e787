"""Ingestion worker: pull candidate messages and seed analysis tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscan import metrics
from subscan.config import settings
from subscan.db.models import AnalysisTask, EmailRecord, ScanJob
from subscan.db.session import AsyncSessionLocal
from subscan.db.states import (
    INGEST_PROGRESS_CEILING,
    STAGE_PROGRESS,
    ScanStage,
    TaskStatus,
)
from subscan.db.store import ScanStore
from subscan.ingest.mailbox_client import MailboxClient, MailboxError, TokenInvalidError
from subscan.ingest.message_parser import parse_message
from subscan.ingest.rate_limiter import SlidingWindowRateLimiter
from subscan.logging_config import get_logger
from subscan.worker.dispatcher import analysis_dispatcher
from subscan.worker.outcomes import IngestionResult, ItemOutcome, Outcome

logger = logging.getLogger(__name__)

TOKEN_INVALID_MESSAGE = "Mailbox token invalid; scan degraded to zero emails"
MAILBOX_UNAVAILABLE_MESSAGE = "Mailbox unavailable; scan degraded to zero emails"
LISTED_PROGRESS = 20


def ingest_progress(processed: int, total: int) -> int:
    """Progress while ingesting: 20 after listing, rising to 69 at most."""
    if total <= 0:
        return LISTED_PROGRESS
    progress = LISTED_PROGRESS + round(processed / total * 49)
    return min(INGEST_PROGRESS_CEILING - 1, progress)


def _log_notification_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(f"Dispatcher notification failed: {exc}", exc_info=exc)


class IngestionWorker:
    """
    Moves one scan from ``pending`` to ``ready_for_analysis``.

    Args:
        session_factory: Async session factory (defaults to the app's)
        http_client: Shared httpx client for the mailbox provider
        notify: Coroutine called with ``[scan_id]`` once the scan is ready;
            defaults to the analysis dispatcher
        limiter: Mailbox rate limiter override
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        notify: Optional[Callable[[list[str]], Awaitable[object]]] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.http_client = http_client
        self.notify = notify
        self.limiter = limiter
        self.pending_notifications: set[asyncio.Task] = set()

    async def run(self, scan_id: str, resume: bool = False) -> IngestionResult:
        """
        Ingest one scan.

        Args:
            scan_id: Scan to ingest
            resume: Continue a job already ``in_progress`` (operator action)

        Returns:
            IngestionResult describing what this invocation did
        """
        async with self.session_factory() as db:
            store = ScanStore(db)
            job = await store.get_job(scan_id)
            if job is None:
                logger.warning(f"Ingestion: scan {scan_id[:16]} not found")
                return IngestionResult(scan_id=scan_id, stage=None, skipped=True)

            log = get_logger(__name__, scan_id=scan_id[:16], user_id=job.user_id)

            if job.stage == ScanStage.PENDING.value:
                won = await store.transition(
                    scan_id,
                    ScanStage.PENDING,
                    ScanStage.IN_PROGRESS,
                    progress=STAGE_PROGRESS[ScanStage.IN_PROGRESS],
                )
                if not won:
                    log.info("Ingestion skipped: another invocation claimed the scan")
                    return IngestionResult(scan_id=scan_id, stage=job.stage, skipped=True)
            elif job.stage == ScanStage.IN_PROGRESS.value and resume:
                log.info("Resuming ingestion of in-progress scan")
            else:
                log.info(f"Ingestion skipped: scan is {job.stage}")
                return IngestionResult(scan_id=scan_id, stage=job.stage, skipped=True)

            try:
                result = await self._ingest(db, store, job, log)
            except Exception as e:
                log.error(f"Ingestion failed: {e}", exc_info=True)
                await db.rollback()
                await store.fail(scan_id, ScanStage.IN_PROGRESS, f"Ingestion failed: {e}")
                return IngestionResult(scan_id=scan_id, stage=ScanStage.FAILED.value)

        if result.stage == ScanStage.READY_FOR_ANALYSIS.value:
            self._schedule_notification(scan_id)
        return result

    async def _ingest(self, db: AsyncSession, store: ScanStore, job: ScanJob, log) -> IngestionResult:
        scan_id, user_id = job.scan_id, job.user_id
        token = await store.get_mailbox_token(user_id)
        if not token:
            log.warning("No mailbox token stored for user")
            return await self._degrade(store, scan_id)

        async with MailboxClient(
            token, user_id, client=self.http_client, limiter=self.limiter
        ) as mailbox:
            try:
                await mailbox.probe()
            except TokenInvalidError as e:
                log.warning(f"Mailbox token rejected: {e}")
                return await self._degrade(store, scan_id)
            except MailboxError as e:
                log.warning(f"Mailbox unreachable: {e}")
                return await self._degrade(store, scan_id, MAILBOX_UNAVAILABLE_MESSAGE)

            try:
                message_ids = await mailbox.search(
                    settings.mailbox_search_query, settings.ingest_max_results
                )
            except MailboxError as e:
                log.warning(f"Mailbox search refused: {e}")
                return await self._degrade(store, scan_id, MAILBOX_UNAVAILABLE_MESSAGE)
            total = len(message_ids)
            log.info(f"Found {total} candidate messages")
            await store.update_progress(
                scan_id, ScanStage.IN_PROGRESS, LISTED_PROGRESS, emails_found=total
            )

            seen = await self._stored_message_ids(db, scan_id)
            result = IngestionResult(scan_id=scan_id, stage=None, emails_found=total)

            for index, message_id in enumerate(message_ids, 1):
                outcome = await self._ingest_message(
                    db, mailbox, scan_id, user_id, message_id, seen
                )
                if outcome.outcome == Outcome.STORED:
                    result.emails_stored += 1
                elif outcome.outcome == Outcome.FAILED:
                    result.failures.append(outcome)
                await store.update_progress(
                    scan_id, ScanStage.IN_PROGRESS, ingest_progress(index, total)
                )

        task_count = await self._task_count(db, scan_id)
        won = await store.transition(
            scan_id,
            ScanStage.IN_PROGRESS,
            ScanStage.READY_FOR_ANALYSIS,
            progress=STAGE_PROGRESS[ScanStage.READY_FOR_ANALYSIS],
            emails_found=total,
            emails_to_process=task_count,
        )
        if not won:
            current = await store.get_job(scan_id)
            result.stage = current.stage if current else None
            log.warning(f"Ingestion finished but scan already moved to {result.stage}")
            return result

        result.stage = ScanStage.READY_FOR_ANALYSIS.value
        log.info(
            f"Ingestion complete: {result.emails_stored} stored, "
            f"{len(result.failures)} failed of {total}"
        )
        return result

    async def _degrade(
        self, store: ScanStore, scan_id: str, message: str = TOKEN_INVALID_MESSAGE
    ) -> IngestionResult:
        won = await store.transition(
            scan_id,
            ScanStage.IN_PROGRESS,
            ScanStage.READY_FOR_ANALYSIS,
            progress=STAGE_PROGRESS[ScanStage.READY_FOR_ANALYSIS],
            emails_found=0,
            emails_to_process=0,
            degraded=True,
            error_message=message,
        )
        stage = ScanStage.READY_FOR_ANALYSIS.value if won else None
        return IngestionResult(scan_id=scan_id, stage=stage, degraded=True)

    async def _ingest_message(
        self,
        db: AsyncSession,
        mailbox: MailboxClient,
        scan_id: str,
        user_id: str,
        message_id: str,
        seen: set[str],
    ) -> ItemOutcome:
        if message_id in seen:
            return ItemOutcome(message_id, Outcome.DUPLICATE)

        try:
            message = await mailbox.get_message(message_id)
            parsed = parse_message(message)
            record = EmailRecord(
                scan_id=scan_id,
                user_id=user_id,
                provider_message_id=parsed.provider_message_id,
                subject=parsed.subject,
                sender=parsed.sender,
                date=parsed.date,
                content=parsed.content,
                content_preview=parsed.content_preview,
            )
            db.add(record)
            await db.flush()
            db.add(
                AnalysisTask(
                    email_record_id=record.id,
                    scan_id=scan_id,
                    user_id=user_id,
                    status=TaskStatus.PENDING.value,
                )
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            seen.add(message_id)
            return ItemOutcome(message_id, Outcome.DUPLICATE)
        except Exception as e:
            await db.rollback()
            metrics.record_email_ingested(False)
            logger.warning(f"Skipping message {message_id} in scan {scan_id[:16]}: {e}")
            return ItemOutcome.failed(message_id, str(e)[:200])

        seen.add(message_id)
        metrics.record_email_ingested(True)
        return ItemOutcome(message_id, Outcome.STORED)

    async def _stored_message_ids(self, db: AsyncSession, scan_id: str) -> set[str]:
        result = await db.execute(
            select(EmailRecord.provider_message_id).where(EmailRecord.scan_id == scan_id)
        )
        return set(result.scalars().all())

    async def _task_count(self, db: AsyncSession, scan_id: str) -> int:
        result = await db.execute(
            select(func.count(AnalysisTask.id)).where(AnalysisTask.scan_id == scan_id)
        )
        return result.scalar_one()

    def _schedule_notification(self, scan_id: str) -> None:
        """Best-effort immediate hand-off to the dispatcher."""
        notify = self.notify
        if notify is None:
            notify = analysis_dispatcher.dispatch

        task = asyncio.create_task(notify([scan_id]))
        self.pending_notifications.add(task)
        task.add_done_callback(self.pending_notifications.discard)
        task.add_done_callback(_log_notification_failure)


# Global ingestion worker instance
ingestion_worker = IngestionWorker()
