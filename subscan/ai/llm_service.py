"""LLM service for OpenAI-compatible chat completions."""

import asyncio
import hashlib
import logging
import time
from typing import Any, Dict, Optional

import openai
import redis.asyncio as redis
from openai import AsyncOpenAI

from subscan import metrics
from subscan.config import settings

logger = logging.getLogger(__name__)


class LLMError(RuntimeError):
    """Raised when the provider call fails for a reason other than rate limiting or timeout."""
    pass


class LLMRateLimitedError(LLMError):
    """Raised when the provider answers 429."""

    def __init__(self, message: str = "LLM provider rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class LLMTimeoutError(LLMError):
    """Raised when a call exceeds the hard per-call timeout."""
    pass


class LLMService:
    """
    Service for LLM interactions.

    Features:
    - OpenAI-compatible chat completions
    - Hard per-call timeout
    - Optional Redis response cache
    - Per-result request counts in Prometheus
    """

    def __init__(self):
        self._client: Optional[AsyncOpenAI] = None
        self._redis: Optional[redis.Redis] = None

    async def _get_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._client is None:
            if not settings.openai_api_key:
                raise LLMError("OpenAI API key not configured")
            kwargs: Dict[str, Any] = {"api_key": settings.openai_api_key, "max_retries": 0}
            if settings.llm_base_url:
                kwargs["base_url"] = settings.llm_base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get or create Redis connection for caching."""
        if not settings.llm_cache_enabled:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Failed to connect to Redis for LLM cache: {e}")
                return None
        return self._redis

    def _get_cache_key(self, prompt: str, system_prompt: str, model: str) -> str:
        """Generate cache key for prompt."""
        combined = f"{system_prompt}:{prompt}:{model}"
        key_hash = hashlib.sha256(combined.encode("utf-8")).hexdigest()
        return f"llm_cache:{key_hash}"

    async def _cache_get(self, key: str) -> Optional[str]:
        redis_client = await self._get_redis()
        if redis_client is None:
            return None
        try:
            return await redis_client.get(key)
        except redis.RedisError as e:
            logger.warning(f"LLM cache read failed: {e}")
            return None

    async def _cache_set(self, key: str, value: str) -> None:
        redis_client = await self._get_redis()
        if redis_client is None:
            return
        try:
            await redis_client.setex(key, settings.llm_cache_ttl_seconds, value)
        except redis.RedisError as e:
            logger.warning(f"LLM cache write failed: {e}")

    async def call_llm(
        self,
        prompt: str,
        system_prompt: str = "",
        temperature: Optional[float] = None,
        model: Optional[str] = None,
        use_cache: bool = True,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Call LLM with a prompt and return text response.

        Args:
            prompt: User prompt
            system_prompt: System prompt/instructions
            temperature: Temperature (defaults to settings.llm_temperature)
            model: Model name (defaults to settings.llm_model)
            use_cache: Whether to use cache
            timeout: Hard timeout in seconds (defaults to settings.llm_timeout_seconds)

        Returns:
            LLM response text

        Raises:
            LLMRateLimitedError: Provider answered 429
            LLMTimeoutError: Call exceeded the timeout
            LLMError: Any other provider failure
        """
        model = model or settings.llm_model
        temperature = temperature if temperature is not None else settings.llm_temperature
        timeout = timeout if timeout is not None else settings.llm_timeout_seconds

        cache_key = self._get_cache_key(prompt, system_prompt, model)
        if use_cache and settings.llm_cache_enabled:
            cached = await self._cache_get(cache_key)
            if cached:
                logger.debug(f"LLM cache hit for prompt: {prompt[:50]}...")
                metrics.record_llm_request("cache_hit")
                return cached

        client = await self._get_client()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=settings.llm_max_tokens,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as e:
            metrics.record_llm_request("timeout")
            raise LLMTimeoutError("LLM request timed out") from e
        except openai.RateLimitError as e:
            metrics.record_llm_request("rate_limited")
            raise LLMRateLimitedError(str(e)) from e
        except openai.APIError as e:
            metrics.record_llm_request("error")
            logger.error(f"LLM API call failed: {e}")
            raise LLMError(f"LLM API call failed: {e}") from e
        finally:
            metrics.record_llm_duration(time.monotonic() - start)

        metrics.record_llm_request("success")
        result = response.choices[0].message.content or ""

        if use_cache and settings.llm_cache_enabled and result:
            await self._cache_set(cache_key, result)

        return result

    async def close(self):
        """Close connections."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        if self._client:
            await self._client.close()
            self._client = None


# Global LLM service instance
llm_service = LLMService()
