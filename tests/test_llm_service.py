"""Tests for the LLM service wrapper and its request accounting."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from prometheus_client import REGISTRY

from subscan.ai.llm_service import LLMError, LLMRateLimitedError, LLMService, LLMTimeoutError
from subscan.config import settings


def _count(result):
    return REGISTRY.get_sample_value("llm_requests_total", {"result": result}) or 0.0


def _service(create):
    service = LLMService()
    client = MagicMock()
    client.chat.completions.create = create
    service._client = client
    return service


def _completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


@pytest.fixture(autouse=True)
def no_cache(monkeypatch):
    monkeypatch.setattr(settings, "llm_cache_enabled", False)


@pytest.mark.asyncio
async def test_successful_call_is_counted():
    before = _count("success")
    create = AsyncMock(return_value=_completion('{"is_subscription": false}'))

    text = await _service(create).call_llm("hello", system_prompt="be terse", timeout=5)

    assert text == '{"is_subscription": false}'
    assert _count("success") == before + 1
    messages = create.await_args.kwargs["messages"]
    assert messages[0] == {"role": "system", "content": "be terse"}
    assert messages[1] == {"role": "user", "content": "hello"}


@pytest.mark.asyncio
async def test_timeout_is_counted_and_mapped():
    before = _count("timeout")

    with pytest.raises(LLMTimeoutError):
        await _service(AsyncMock(side_effect=asyncio.TimeoutError())).call_llm("hello", timeout=5)

    assert _count("timeout") == before + 1


@pytest.mark.asyncio
async def test_provider_429_is_counted_and_mapped():
    request = httpx.Request("POST", "https://llm.example/v1/chat/completions")
    error = openai.RateLimitError(
        "slow down", response=httpx.Response(429, request=request), body=None
    )
    before = _count("rate_limited")

    with pytest.raises(LLMRateLimitedError):
        await _service(AsyncMock(side_effect=error)).call_llm("hello", timeout=5)

    assert _count("rate_limited") == before + 1


@pytest.mark.asyncio
async def test_other_provider_errors_are_counted_and_mapped():
    request = httpx.Request("POST", "https://llm.example/v1/chat/completions")
    error = openai.APIConnectionError(request=request)
    before = _count("error")

    with pytest.raises(LLMError) as info:
        await _service(AsyncMock(side_effect=error)).call_llm("hello", timeout=5)

    assert not isinstance(info.value, (LLMTimeoutError, LLMRateLimitedError))
    assert _count("error") == before + 1
