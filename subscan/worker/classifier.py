"""Classification worker: run pending analysis tasks through the LLM."""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscan import metrics
from subscan.ai.llm_service import (
    LLMError,
    LLMRateLimitedError,
    LLMService,
    LLMTimeoutError,
    llm_service,
)
from subscan.ai.prompts import SUBSCRIPTION_SYSTEM_PROMPT, SubscriptionClassificationPrompt
from subscan.ai.verdict import VerdictParseError, parse_verdict
from subscan.config import settings
from subscan.db.models import AnalysisTask
from subscan.db.session import AsyncSessionLocal
from subscan.db.states import (
    ANALYSIS_PROGRESS_CEILING,
    STAGE_PROGRESS,
    ScanStage,
    TaskStatus,
)
from subscan.db.store import ScanStore
from subscan.ingest.rate_limiter import SlidingWindowRateLimiter, llm_rate_limiter
from subscan.logging_config import get_logger
from subscan.worker.outcomes import BatchSummary, ClassificationSummary, ItemOutcome, Outcome
from subscan.worker.sweeper import PromotionSweeper, promotion_sweeper

logger = logging.getLogger(__name__)

MAX_RAW_OUTPUT_CHARS = 10_000


def analysis_progress(done: int, total: int) -> int:
    """Progress while analyzing: 70 with nothing done, 99 at most."""
    floor = STAGE_PROGRESS[ScanStage.ANALYZING]
    if total <= 0:
        return floor
    return min(ANALYSIS_PROGRESS_CEILING, floor + round(done / total * 29))


async def finalize_scan(store: ScanStore, scan_id: str, sweeper: PromotionSweeper) -> bool:
    """
    Complete an ``analyzing`` scan once none of its tasks are pending.

    Positive verdicts are promoted first so ``subscriptions_found`` counts
    the subscriptions the scan produced or matched.

    Returns:
        True if this call moved the scan to ``completed``
    """
    counts = await store.count_tasks_by_status(scan_id)
    if counts[TaskStatus.PENDING.value]:
        return False

    await sweeper.promote_scan(scan_id)
    found = await store.count_linked_subscriptions(scan_id)
    failed = counts[TaskStatus.FAILED.value]

    return await store.transition(
        scan_id,
        ScanStage.ANALYZING,
        ScanStage.COMPLETED,
        progress=STAGE_PROGRESS[ScanStage.COMPLETED],
        subscriptions_found=found,
        emails_processed=counts[TaskStatus.COMPLETED.value] + failed,
        tasks_failed=failed,
    )


class ClassificationWorker:
    """
    Classifies every pending task of the scans it is handed.

    A rate-limited task is deferred (left pending) and the rest of that
    scan's tasks are deferred with it; the watchdog re-dispatches the scan.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        llm: Optional[LLMService] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        sweeper: Optional[PromotionSweeper] = None,
        max_defer_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.llm = llm or llm_service
        self.limiter = limiter or llm_rate_limiter
        self.sweeper = sweeper or promotion_sweeper
        self.max_defer_seconds = (
            max_defer_seconds if max_defer_seconds is not None else settings.llm_max_defer_seconds
        )

    async def run(self, scan_ids: list[str], user_ids: Optional[list[str]] = None) -> ClassificationSummary:
        """
        Process each scan in turn.

        ``user_ids`` mirrors the dispatch payload; the owner recorded on each
        task is what the rate limiter keys on.
        """
        summary = ClassificationSummary()
        for scan_id in dict.fromkeys(scan_ids):
            summary.batches.append(await self.process_scan(scan_id))
        return summary

    async def process_scan(self, scan_id: str) -> BatchSummary:
        batch = BatchSummary(scan_id=scan_id)

        async with self.session_factory() as db:
            store = ScanStore(db)
            job = await store.get_job(scan_id)
            if job is None or job.stage != ScanStage.ANALYZING.value:
                batch.skipped = True
                batch.stage = job.stage if job else None
                logger.info(f"Classification skipped for scan {scan_id[:16]}: stage {batch.stage}")
                return batch

            log = get_logger(__name__, scan_id=scan_id[:16], user_id=job.user_id)
            tasks = await store.pending_tasks(scan_id)
            counts = await store.count_tasks_by_status(scan_id)
            # Detached so a rollback mid-batch leaves the loaded tasks readable
            db.expunge_all()
            total = sum(counts.values())
            done = total - len(tasks)
            log.info(f"Classifying {len(tasks)} pending task(s)")

            throttled = False
            for task in tasks:
                if throttled:
                    batch.add(ItemOutcome.deferred(task.id, "LLM rate limit reached earlier in batch"))
                    metrics.record_task_outcome(Outcome.DEFERRED.value)
                    continue

                outcome = await self.classify_task(store, task)
                batch.add(outcome)
                metrics.record_task_outcome(outcome.outcome.value)
                if outcome.outcome == Outcome.DEFERRED:
                    throttled = True
                    continue

                done += 1
                await store.update_progress(
                    scan_id, ScanStage.ANALYZING, analysis_progress(done, total)
                )

            if await finalize_scan(store, scan_id, self.sweeper):
                batch.stage = ScanStage.COMPLETED.value
                log.info(
                    f"Scan complete: {batch.completed} classified, {batch.failed} failed"
                )
            else:
                current = await store.get_job(scan_id)
                batch.stage = current.stage if current else None
                if batch.deferred:
                    log.info(f"{batch.deferred} task(s) deferred; scan stays analyzing")

        return batch

    async def classify_task(self, store: ScanStore, task: AnalysisTask) -> ItemOutcome:
        """Classify one task and record its terminal status, or defer it."""
        if not await self.limiter.wait_for_slot(task.user_id, self.max_defer_seconds):
            return ItemOutcome.deferred(task.id, "LLM rate limit window exhausted")

        email = task.email
        prompt = SubscriptionClassificationPrompt(
            subject=email.subject,
            sender=email.sender,
            date=email.date,
            content=email.content or email.content_preview,
            max_content_chars=settings.llm_max_content_chars,
        )

        try:
            raw = await self.llm.call_llm(
                prompt.to_prompt(),
                system_prompt=SUBSCRIPTION_SYSTEM_PROMPT,
                timeout=settings.llm_timeout_seconds,
            )
        except LLMRateLimitedError:
            return ItemOutcome.deferred(task.id, "LLM provider rate limited")
        except LLMTimeoutError:
            return await self._fail(store, task, "LLM request timed out")
        except LLMError as e:
            return await self._fail(store, task, str(e))

        try:
            verdict = parse_verdict(raw)
        except VerdictParseError as e:
            logger.warning(f"Task {task.id}: unusable model output: {e}")
            return await self._fail(store, task, str(e), raw_model_output=raw)

        fields = {
            "raw_model_output": raw[:MAX_RAW_OUTPUT_CHARS],
            "confidence": verdict.confidence_score,
        }
        if verdict.is_positive:
            fields.update(
                subscription_name=verdict.subscription_name,
                price=Decimal(str(verdict.price)) if verdict.price is not None else None,
                currency=verdict.currency,
                billing_cycle=verdict.billing_cycle,
                next_billing_date=verdict.next_billing_date,
                provider=verdict.service_provider,
            )

        try:
            stored = await store.finish_task(task.id, TaskStatus.COMPLETED, **fields)
        except SQLAlchemyError as e:
            await store.db.rollback()
            logger.warning(f"Task {task.id}: could not store verdict: {e}")
            return await self._fail(
                store, task, f"Could not store verdict: {e}", raw_model_output=raw
            )
        if not stored:
            return ItemOutcome(str(task.id), Outcome.DUPLICATE, "already finished")

        detail = verdict.subscription_name if verdict.is_positive else None
        return ItemOutcome.completed(task.id, detail)

    async def _fail(
        self,
        store: ScanStore,
        task: AnalysisTask,
        message: str,
        raw_model_output: Optional[str] = None,
    ) -> ItemOutcome:
        fields = {"error_message": message}
        if raw_model_output is not None:
            fields["raw_model_output"] = raw_model_output[:MAX_RAW_OUTPUT_CHARS]
        if not await store.finish_task(task.id, TaskStatus.FAILED, **fields):
            return ItemOutcome(str(task.id), Outcome.DUPLICATE, "already finished")
        return ItemOutcome.failed(task.id, message)


# Global classification worker instance
classification_worker = ClassificationWorker()
