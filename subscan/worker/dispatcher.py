"""Analysis dispatcher: hand ready scans to the classification worker."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subscan import metrics
from subscan.config import settings
from subscan.db.models import ScanJob
from subscan.db.session import AsyncSessionLocal
from subscan.db.states import STAGE_PROGRESS, ScanStage
from subscan.db.store import ScanStore

logger = logging.getLogger(__name__)


class SubmissionError(RuntimeError):
    """Raised when a batch could not be handed to the classification worker."""
    pass


class Submitter(Protocol):
    async def submit(self, scan_ids: list[str], user_ids: list[str]) -> None:
        ...


class HttpSubmitter:
    """POSTs ``{scan_ids, user_ids}`` to a remote classification worker."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.url = url
        self.api_key = api_key if api_key is not None else settings.worker_api_key
        self.client = client
        self.timeout = timeout if timeout is not None else settings.dispatch_timeout_seconds

    async def submit(self, scan_ids: list[str], user_ids: list[str]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"scan_ids": scan_ids, "user_ids": user_ids}

        try:
            if self.client is not None:
                resp = await self.client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise SubmissionError(f"{type(e).__name__}: {e}") from e

        if not resp.is_success:
            raise SubmissionError(f"Classification worker answered {resp.status_code}")


class LocalSubmitter:
    """Runs the classification worker in this process."""

    def __init__(self, worker=None):
        self.worker = worker

    async def submit(self, scan_ids: list[str], user_ids: list[str]) -> None:
        worker = self.worker
        if worker is None:
            from subscan.worker.classifier import classification_worker

            worker = classification_worker
        try:
            await worker.run(scan_ids, user_ids)
        except Exception as e:
            raise SubmissionError(f"In-process classification failed: {e}") from e


def default_submitter() -> Submitter:
    if settings.classification_worker_url:
        return HttpSubmitter(settings.classification_worker_url)
    return LocalSubmitter()


@dataclass
class DispatchSummary:
    dispatched: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class AnalysisDispatcher:
    """
    Claims ``ready_for_analysis`` scans and submits them for classification.

    The claim is the conditional ``ready_for_analysis -> analyzing`` update,
    so concurrent dispatcher runs submit each scan at most once.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        submitter: Optional[Submitter] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.submitter = submitter or default_submitter()
        self.max_attempts = max_attempts if max_attempts is not None else settings.dispatch_max_attempts
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.dispatch_backoff_seconds
        )
        self._sleep = sleep

    async def dispatch(self, scan_ids: Optional[list[str]] = None) -> DispatchSummary:
        """
        Claim and submit ready scans.

        Args:
            scan_ids: Restrict to these scans (None = every ready scan)

        Returns:
            DispatchSummary listing dispatched, skipped and failed scan ids
        """
        summary = DispatchSummary()

        async with self.session_factory() as db:
            store = ScanStore(db)
            candidates = await store.ready_jobs_without_active_sibling(scan_ids)

            if scan_ids is not None:
                found = {job.scan_id for job in candidates}
                summary.skipped.extend(s for s in scan_ids if s not in found)

            claimed: list[ScanJob] = []
            for job in candidates:
                won = await store.transition(
                    job.scan_id,
                    ScanStage.READY_FOR_ANALYSIS,
                    ScanStage.ANALYZING,
                    progress=STAGE_PROGRESS[ScanStage.ANALYZING],
                )
                if won:
                    claimed.append(job)
                else:
                    summary.skipped.append(job.scan_id)

            if not claimed:
                return summary

            error = await self._submit_with_retry(claimed)
            if error is None:
                summary.dispatched.extend(job.scan_id for job in claimed)
                logger.info(f"Dispatched {len(claimed)} scan(s) for classification")
                return summary

            message = f"Dispatch failed after {self.max_attempts} attempts: {error}"
            for job in claimed:
                await store.fail(job.scan_id, ScanStage.ANALYZING, message)
                summary.failed.append(job.scan_id)
            logger.error(message)

        return summary

    async def resubmit(self, jobs: Sequence[ScanJob]) -> bool:
        """
        Submit scans that are already ``analyzing`` without touching their stage.

        Returns:
            True if the submission went through
        """
        if not jobs:
            return True
        error = await self._submit_with_retry(jobs)
        if error is not None:
            logger.warning(f"Re-submission of {len(jobs)} scan(s) failed: {error}")
            return False
        return True

    async def _submit_with_retry(self, jobs: Sequence[ScanJob]) -> Optional[str]:
        """Return None on success, or the last error text after all attempts."""
        scan_ids = [job.scan_id for job in jobs]
        user_ids = [job.user_id for job in jobs]

        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.submitter.submit(scan_ids, user_ids)
                metrics.record_dispatch_attempt(True)
                return None
            except SubmissionError as e:
                metrics.record_dispatch_attempt(False)
                last_error = str(e)
                logger.warning(
                    f"Dispatch attempt {attempt}/{self.max_attempts} failed: {e}"
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.backoff_seconds)
        return last_error


# Global dispatcher instance
analysis_dispatcher = AnalysisDispatcher()
