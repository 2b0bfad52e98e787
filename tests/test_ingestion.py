"""Tests for the ingestion worker."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from conftest import gmail_message
from subscan.db.models import AnalysisTask, EmailRecord
from subscan.db.states import ScanStage
from subscan.db.store import ScanStore
from subscan.ingest.rate_limiter import SlidingWindowRateLimiter
from subscan.worker.ingestion import (
    MAILBOX_UNAVAILABLE_MESSAGE,
    TOKEN_INVALID_MESSAGE,
    IngestionWorker,
    ingest_progress,
)


def _worker(session_factory, mailbox, limiter, notify=None):
    return IngestionWorker(
        session_factory=session_factory,
        http_client=mailbox.client(),
        notify=notify or AsyncMock(),
        limiter=limiter,
    )


async def _job(session_factory, scan_id="scan_test_1"):
    async with session_factory() as db:
        return await ScanStore(db).get_job(scan_id)


def test_ingest_progress_bounds():
    assert ingest_progress(0, 10) == 20
    assert ingest_progress(5, 10) == 44
    assert ingest_progress(10, 10) == 69
    assert ingest_progress(0, 0) == 20


@pytest.mark.asyncio
async def test_ingests_messages_and_seeds_tasks(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter
):
    await make_scan()
    await store_token()
    mailbox = fake_mailbox(
        messages=[
            gmail_message("m1", "Your Spotify receipt", "Spotify Premium $9.99 per month"),
            gmail_message("m2", "Invoice", "<p>Hosting <b>renewal</b></p>", mime_type="text/html"),
        ]
    )
    notify = AsyncMock()
    worker = _worker(session_factory, mailbox, fast_limiter, notify)

    result = await worker.run("scan_test_1")
    await asyncio.gather(*worker.pending_notifications)

    assert result.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert result.emails_found == 2
    assert result.emails_stored == 2
    assert result.failures == []
    notify.assert_awaited_once_with(["scan_test_1"])

    job = await _job(session_factory)
    assert job.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert job.progress == 70
    assert job.emails_found == 2
    assert job.emails_to_process == 2

    async with session_factory() as db:
        records = (await db.execute(select(EmailRecord).order_by(EmailRecord.id))).scalars().all()
        tasks = (await db.execute(select(AnalysisTask))).scalars().all()

    assert [r.provider_message_id for r in records] == ["m1", "m2"]
    assert records[1].content == "Hosting renewal"
    assert len(tasks) == 2
    assert all(t.status == "pending" for t in tasks)

    auth_headers = {r.headers["Authorization"] for r in mailbox.requests}
    assert auth_headers == {"Bearer valid-token"}


@pytest.mark.asyncio
async def test_invalid_token_degrades_to_zero_emails(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter
):
    await make_scan()
    await store_token(token="expired")
    mailbox = fake_mailbox(messages=[gmail_message("m1", "Receipt", "body")], token_valid=False)

    result = await _worker(session_factory, mailbox, fast_limiter).run("scan_test_1")

    assert result.degraded
    assert result.stage == ScanStage.READY_FOR_ANALYSIS.value

    job = await _job(session_factory)
    assert job.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert job.degraded is True
    assert job.emails_found == 0
    assert job.error_message == TOKEN_INVALID_MESSAGE
    # Only the profile call was attempted
    assert len(mailbox.requests) == 1


@pytest.mark.asyncio
async def test_missing_token_degrades(session_factory, make_scan, fake_mailbox, fast_limiter):
    await make_scan()
    mailbox = fake_mailbox()

    result = await _worker(session_factory, mailbox, fast_limiter).run("scan_test_1")

    assert result.degraded
    assert mailbox.requests == []
    assert (await _job(session_factory)).stage == ScanStage.READY_FOR_ANALYSIS.value


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_unavailable_mailbox_degrades(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter, status
):
    await make_scan()
    await store_token()
    mailbox = fake_mailbox(messages=[gmail_message("m1", "Receipt", "body")], profile_status=status)

    result = await _worker(session_factory, mailbox, fast_limiter).run("scan_test_1")

    assert result.degraded
    assert result.stage == ScanStage.READY_FOR_ANALYSIS.value
    job = await _job(session_factory)
    assert job.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert job.progress == 70
    assert job.degraded is True
    assert job.emails_found == 0
    assert job.error_message == MAILBOX_UNAVAILABLE_MESSAGE
    assert len(mailbox.requests) == 1


@pytest.mark.asyncio
async def test_unreachable_mailbox_degrades(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter
):
    await make_scan()
    await store_token()
    mailbox = fake_mailbox(unreachable=True)

    result = await _worker(session_factory, mailbox, fast_limiter).run("scan_test_1")

    assert result.degraded
    job = await _job(session_factory)
    assert job.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert job.error_message == MAILBOX_UNAVAILABLE_MESSAGE


@pytest.mark.asyncio
async def test_throttled_search_degrades(session_factory, make_scan, store_token, fake_mailbox):
    await make_scan()
    await store_token()
    # One call per window and a frozen clock: the profile call fits, the search never does
    limiter = SlidingWindowRateLimiter(1, 60.0, clock=lambda: 100.0)
    mailbox = fake_mailbox(messages=[gmail_message("m1", "Receipt", "body")])

    result = await _worker(session_factory, mailbox, limiter).run("scan_test_1")

    assert result.degraded
    job = await _job(session_factory)
    assert job.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert job.degraded is True
    assert job.error_message == MAILBOX_UNAVAILABLE_MESSAGE
    assert [r.url.path.rsplit("/", 1)[-1] for r in mailbox.requests] == ["profile"]


@pytest.mark.asyncio
async def test_throttled_profile_call_degrades(session_factory, make_scan, store_token, fake_mailbox):
    await make_scan()
    await store_token()
    limiter = SlidingWindowRateLimiter(1, 60.0, clock=lambda: 100.0)
    assert limiter.can_make_request("user-1")
    mailbox = fake_mailbox()

    result = await _worker(session_factory, mailbox, limiter).run("scan_test_1")

    assert result.degraded
    assert mailbox.requests == []
    assert (await _job(session_factory)).stage == ScanStage.READY_FOR_ANALYSIS.value


@pytest.mark.asyncio
async def test_failed_message_is_skipped(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter
):
    await make_scan()
    await store_token()
    mailbox = fake_mailbox(
        messages=[
            gmail_message("m1", "Receipt 1", "one"),
            gmail_message("m2", "Receipt 2", "two"),
            gmail_message("m3", "Receipt 3", "three"),
        ],
        failing={"m2"},
    )

    result = await _worker(session_factory, mailbox, fast_limiter).run("scan_test_1")

    assert result.emails_stored == 2
    assert [f.item_id for f in result.failures] == ["m2"]

    job = await _job(session_factory)
    assert job.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert job.emails_found == 3
    assert job.emails_to_process == 2


@pytest.mark.asyncio
async def test_search_error_means_no_messages(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter
):
    await make_scan()
    await store_token()
    mailbox = fake_mailbox(search_status=503)

    result = await _worker(session_factory, mailbox, fast_limiter).run("scan_test_1")

    assert result.stage == ScanStage.READY_FOR_ANALYSIS.value
    assert result.emails_found == 0
    assert not result.degraded


@pytest.mark.asyncio
async def test_non_pending_scan_is_left_alone(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter
):
    await make_scan(stage=ScanStage.ANALYZING, progress=70)
    await store_token()
    mailbox = fake_mailbox()
    notify = AsyncMock()

    result = await _worker(session_factory, mailbox, fast_limiter, notify).run("scan_test_1")

    assert result.skipped
    assert result.stage == ScanStage.ANALYZING.value
    assert mailbox.requests == []
    notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_scan_is_skipped(session_factory, fake_mailbox, fast_limiter):
    result = await _worker(session_factory, fake_mailbox(), fast_limiter).run("scan_missing")
    assert result.skipped
    assert result.stage is None


@pytest.mark.asyncio
async def test_notification_failure_is_not_raised(
    session_factory, make_scan, store_token, fake_mailbox, fast_limiter
):
    await make_scan()
    await store_token()
    notify = AsyncMock(side_effect=RuntimeError("dispatcher down"))
    worker = _worker(session_factory, fake_mailbox(), fast_limiter, notify)

    result = await worker.run("scan_test_1")
    await asyncio.gather(*worker.pending_notifications, return_exceptions=True)

    assert result.stage == ScanStage.READY_FOR_ANALYSIS.value
    notify.assert_awaited_once()
