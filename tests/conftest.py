"""Shared fixtures: a throwaway SQLite database and fakes for external providers."""

import base64
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from subscan.config import settings
from subscan.db.models import AnalysisTask, Base, EmailRecord, MailboxToken, ScanJob
from subscan.db.states import ScanStage, TaskStatus
from subscan.ingest.rate_limiter import SlidingWindowRateLimiter


TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setattr(settings, "encryption_key", TEST_ENCRYPTION_KEY)
    return TEST_ENCRYPTION_KEY


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest.fixture
def make_scan(session_factory):
    """Create a ScanJob directly in the given stage."""

    async def _make(
        scan_id: str = "scan_test_1",
        user_id: str = "user-1",
        stage: ScanStage = ScanStage.PENDING,
        progress: int = 0,
        idle_seconds: Optional[float] = None,
        **fields,
    ) -> ScanJob:
        async with session_factory() as db:
            job = ScanJob(
                scan_id=scan_id,
                user_id=user_id,
                stage=ScanStage(stage).value,
                progress=progress,
                trigger="manual",
                **fields,
            )
            db.add(job)
            await db.commit()
        if idle_seconds is not None:
            await set_idle(session_factory, scan_id, idle_seconds)
        return job

    return _make


async def set_idle(session_factory, scan_id: str, idle_seconds: float) -> None:
    """Backdate a scan's updated_at so it looks idle."""
    async with session_factory() as db:
        await db.execute(
            update(ScanJob)
            .where(ScanJob.scan_id == scan_id)
            .values(updated_at=datetime.utcnow() - timedelta(seconds=idle_seconds))
        )
        await db.commit()


@pytest.fixture
def backdate(session_factory):
    async def _backdate(scan_id: str, idle_seconds: float) -> None:
        await set_idle(session_factory, scan_id, idle_seconds)

    return _backdate


@pytest.fixture
def make_task(session_factory):
    """Create an EmailRecord plus its AnalysisTask."""
    counter = {"n": 0}

    async def _make(
        scan_id: str = "scan_test_1",
        user_id: str = "user-1",
        subject: str = "Your receipt",
        content: str = "Thanks for your payment.",
        status: TaskStatus = TaskStatus.PENDING,
        **fields,
    ) -> AnalysisTask:
        counter["n"] += 1
        async with session_factory() as db:
            record = EmailRecord(
                scan_id=scan_id,
                user_id=user_id,
                provider_message_id=f"msg-{counter['n']}",
                subject=subject,
                sender="billing@example.com",
                date="Mon, 1 Jan 2024 10:00:00 +0000",
                content=content,
                content_preview=content[:200],
            )
            db.add(record)
            await db.flush()
            task = AnalysisTask(
                email_record_id=record.id,
                scan_id=scan_id,
                user_id=user_id,
                status=TaskStatus(status).value,
                **fields,
            )
            db.add(task)
            await db.commit()
            return task

    return _make


@pytest.fixture
def store_token(session_factory):
    async def _store(user_id: str = "user-1", token: str = "valid-token") -> None:
        async with session_factory() as db:
            db.add(MailboxToken(user_id=user_id, access_token=token))
            await db.commit()

    return _store


@pytest.fixture
def fast_limiter():
    """A limiter roomy enough never to get in the way."""
    return SlidingWindowRateLimiter(10_000, 60.0, name="test")


# ----------------------------------------------------------------------
# Mailbox provider fake
# ----------------------------------------------------------------------


def b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def gmail_message(
    message_id: str,
    subject: str,
    body: str,
    mime_type: str = "text/plain",
) -> dict[str, Any]:
    return {
        "id": message_id,
        "snippet": body[:50],
        "payload": {
            "mimeType": mime_type,
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": "billing@example.com"},
                {"name": "Date", "value": "Mon, 1 Jan 2024 10:00:00 +0000"},
            ],
            "body": {"data": b64url(body)},
        },
    }


class FakeMailbox:
    """httpx MockTransport handler imitating the Gmail REST endpoints."""

    def __init__(
        self,
        messages: Optional[list[dict[str, Any]]] = None,
        token_valid: bool = True,
        failing: Optional[set[str]] = None,
        search_status: int = 200,
        profile_status: Optional[int] = None,
        unreachable: bool = False,
    ):
        self.messages = {m["id"]: m for m in (messages or [])}
        self.token_valid = token_valid
        self.failing = failing or set()
        self.search_status = search_status
        self.profile_status = profile_status
        self.unreachable = unreachable
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/profile"):
            if self.unreachable:
                raise httpx.ConnectError("Connection refused", request=request)
            if self.profile_status is not None:
                return httpx.Response(self.profile_status, json={"error": "unavailable"})
            if not self.token_valid:
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json={"emailAddress": "user@example.com"})
        if path.endswith("/messages"):
            if self.search_status != 200:
                return httpx.Response(self.search_status, json={"error": "unavailable"})
            return httpx.Response(200, json={"messages": [{"id": mid} for mid in self.messages]})

        message_id = path.rsplit("/", 1)[-1]
        if message_id in self.failing or message_id not in self.messages:
            return httpx.Response(500, json={"error": "backend"})
        return httpx.Response(200, json=self.messages[message_id])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def fake_mailbox():
    return FakeMailbox


# ----------------------------------------------------------------------
# LLM fake
# ----------------------------------------------------------------------


class FakeLLM:
    """
    Returns canned responses chosen by a substring of the prompt.

    A response that is an exception instance is raised instead.
    """

    def __init__(self, responses: dict[str, Any], default: Any = '{"is_subscription": false}'):
        self.responses = responses
        self.default = default
        self.prompts: list[str] = []

    async def call_llm(self, prompt: str, system_prompt: str = "", **kwargs) -> str:
        self.prompts.append(prompt)
        response = self.default
        for needle, candidate in self.responses.items():
            if needle in prompt:
                response = candidate
                break
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_llm():
    return FakeLLM
