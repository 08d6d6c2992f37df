"""
Chat backend abstractions for the companion core.

Defines the ``LLMProvider`` Protocol so that ``ChatCore`` can work with any
chat-completion backend without knowing its wire format. Two implementations
ship with the package:

- ``OpenAICompatibleProvider`` uses ``openai.AsyncOpenAI`` and therefore
  works with OpenAI and any OpenAI-compatible base URL.
- ``OllamaProvider`` talks to Ollama's native ``/api/chat`` endpoint over
  ``httpx``.

Also provides:

- ``UsageStats`` for token accounting reported by the backend.
- ``RateLimiter`` for client-side call-rate throttling.
- ``create_provider`` to build a provider from ``LLMSettings``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)

from companion.config import LLMSettings
from companion.conversation.messages import Message, Role
from companion.errors import (
    BackendAPIError,
    BackendConnectionError,
    BackendRateLimitError,
    BackendTimeoutError,
    ConfigurationError,
)
from companion.http import build_client, raise_for_status, translate_transport_errors

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Usage statistics
# ---------------------------------------------------------------------------


@dataclass
class UsageStats:
    """Token usage reported by the backend.

    ``ChatCore`` keeps the figures of the latest call and a running total;
    totals are built with ``+``.

    Attributes:
        prompt_tokens: Number of input tokens consumed.
        completion_tokens: Number of output tokens generated.
        total_tokens: Combined token count.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: UsageStats) -> UsageStats:
        return UsageStats(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Caps outgoing chat calls at ``calls_per_minute``.

    Remembers when each recent call was let through. ``acquire()`` returns
    at once while fewer than ``calls_per_minute`` calls happened in the last
    ``WINDOW_SECONDS``; otherwise it sleeps until the oldest one ages out.
    """

    WINDOW_SECONDS = 60.0

    def __init__(self, calls_per_minute: int) -> None:
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be a positive integer.")
        self.calls_per_minute = calls_per_minute
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _wait_time(self, now: float) -> float:
        while self._timestamps and now - self._timestamps[0] >= self.WINDOW_SECONDS:
            self._timestamps.popleft()
        if len(self._timestamps) < self.calls_per_minute:
            return 0.0
        return self._timestamps[0] + self.WINDOW_SECONDS - now

    async def acquire(self) -> None:
        async with self._lock:
            delay = self._wait_time(time.monotonic())
            while delay > 0:
                logger.debug("Chat rate limit reached, waiting %.2fs", delay)
                await asyncio.sleep(delay)
                delay = self._wait_time(time.monotonic())
            self._timestamps.append(time.monotonic())


# ---------------------------------------------------------------------------
# Core data types
# ---------------------------------------------------------------------------


@dataclass
class CompletionResult:
    """Result of a single chat completion call.

    Attributes:
        content: The assistant's reply text (may contain action markers).
        finish_reason: Backend-reported stop reason, ``"stop"`` if absent.
        usage: Token usage for this call, or ``None`` if unavailable.
    """

    content: str
    finish_reason: str = "stop"
    usage: UsageStats | None = None


# ---------------------------------------------------------------------------
# LLMProvider Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol for chat backends used by ``ChatCore``.

    Attributes:
        name: Backend name used in logs, records and error messages.
        supports_images: Whether ``complete`` accepts messages with images.
    """

    name: str
    supports_images: bool

    async def complete(self, messages: list[Message]) -> CompletionResult:
        """Send the conversation to the backend and return its reply.

        Raises:
            BackendTimeoutError: If the backend did not answer in time.
            BackendConnectionError: If the endpoint cannot be reached.
            BackendAPIError: For non-success responses.
        """
        ...


def _data_url(message: Message) -> str:
    encoded = base64.b64encode(message.image or b"").decode("ascii")
    return f"data:{message.image_mime};base64,{encoded}"


# ---------------------------------------------------------------------------
# OpenAI-compatible provider
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """Chat backend for any OpenAI-compatible endpoint.

    Attributes:
        base_url: The API base URL.
        model: The model identifier.
        temperature: Sampling temperature.
        max_tokens: Optional completion cap.
        supports_images: Whether the configured model accepts image parts.
        rate_limiter: Optional ``RateLimiter`` for client-side throttling.
    """

    name = "openai"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        api_key: str = "",
        temperature: float = 0.7,
        max_tokens: int | None = None,
        supports_images: bool = False,
        timeout: float = 60.0,
        proxy: str | None = None,
        rate_limiter: RateLimiter | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None and not api_key:
            raise ConfigurationError(
                "An API key is required for the OpenAI-compatible backend.",
                backend=self.name,
                phase="configure",
            )
        self.base_url = base_url
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.supports_images = supports_images
        self.rate_limiter = rate_limiter
        if client is None:
            http_client = httpx.AsyncClient(proxy=proxy, trust_env=False) if proxy else None
            client = AsyncOpenAI(
                base_url=base_url,
                api_key=api_key,
                timeout=timeout,
                max_retries=0,
                http_client=http_client,
            )
        self._client = client

    def _to_wire(self, message: Message) -> dict[str, Any]:
        # OpenAI's legacy "function" role requires a name; plugin results go
        # upstream as user turns instead.
        role = "user" if message.role is Role.FUNCTION else message.role.value
        if not message.has_image:
            return {"role": role, "content": message.content}
        return {
            "role": role,
            "content": [
                {"type": "text", "text": message.content},
                {"type": "image_url", "image_url": {"url": _data_url(message)}},
            ],
        }

    async def complete(self, messages: list[Message]) -> CompletionResult:
        """Call the backend and return a ``CompletionResult``."""
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [self._to_wire(m) for m in messages],
            "temperature": self.temperature,
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens

        logger.debug("Chat request: model=%s, messages=%d", self.model, len(messages))

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except APITimeoutError as exc:
            logger.warning("Chat request timed out: %s", exc)
            raise BackendTimeoutError(
                f"{self.name} did not respond in time: {exc}", backend=self.name, phase="chat"
            ) from exc
        except RateLimitError as exc:
            logger.warning("Chat rate limit exceeded: %s", exc)
            raise BackendRateLimitError(
                f"Rate limit exceeded: {exc}",
                status_code=exc.status_code,
                body=exc.response.text,
                backend=self.name,
                phase="chat",
            ) from exc
        except APIConnectionError as exc:
            logger.error("Chat connection failed: %s", exc)
            raise BackendConnectionError(
                f"Could not connect to chat endpoint: {exc}", backend=self.name, phase="chat"
            ) from exc
        except APIStatusError as exc:
            logger.error("Chat API error %d: %s", exc.status_code, exc)
            raise BackendAPIError(
                f"Chat API returned status {exc.status_code}: {exc}",
                status_code=exc.status_code,
                body=exc.response.text,
                backend=self.name,
                phase="chat",
            ) from exc

        choice = response.choices[0]
        usage: UsageStats | None = None
        if response.usage is not None:
            usage = UsageStats(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
            )

        logger.debug(
            "Chat response: finish_reason=%s, tokens=%s",
            choice.finish_reason,
            usage.total_tokens if usage else "n/a",
        )
        return CompletionResult(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    async def list_models(self) -> list[str]:
        try:
            page = await self._client.models.list()
        except (APIConnectionError, APIStatusError) as exc:
            logger.warning("Could not list models: %s", exc)
            return []
        return [model.id for model in page.data]


# ---------------------------------------------------------------------------
# Ollama provider
# ---------------------------------------------------------------------------


class OllamaProvider:
    """Chat backend for Ollama's native ``/api/chat`` endpoint.

    Images are sent in the message's ``images`` list as base64 strings,
    which Ollama accepts for vision-capable models.
    """

    name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        temperature: float = 0.7,
        max_tokens: int | None = None,
        supports_images: bool = False,
        timeout: float = 60.0,
        proxy: str | None = None,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if self.base_url.endswith("/v1"):
            self.base_url = self.base_url[: -len("/v1")]
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.supports_images = supports_images
        self.timeout = timeout
        self.proxy = proxy
        self.rate_limiter = rate_limiter
        self._transport = transport

    def _to_wire(self, message: Message) -> dict[str, Any]:
        role = "user" if message.role is Role.FUNCTION else message.role.value
        wire: dict[str, Any] = {"role": role, "content": message.content}
        if message.has_image:
            wire["images"] = [base64.b64encode(message.image or b"").decode("ascii")]
        return wire

    async def complete(self, messages: list[Message]) -> CompletionResult:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        options: dict[str, Any] = {"temperature": self.temperature}
        if self.max_tokens:
            options["num_predict"] = self.max_tokens
        payload = {
            "model": self.model,
            "messages": [self._to_wire(m) for m in messages],
            "stream": False,
            "options": options,
        }

        logger.debug("Ollama request: model=%s, messages=%d", self.model, len(messages))
        async with build_client(
            proxy=self.proxy, timeout=self.timeout, transport=self._transport
        ) as client:
            with translate_transport_errors(self.name, "chat"):
                response = await client.post(f"{self.base_url}/api/chat", json=payload)
        raise_for_status(response, self.name, "chat")

        data = response.json()
        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        completion_tokens = int(data.get("eval_count") or 0)
        usage = None
        if prompt_tokens or completion_tokens:
            usage = UsageStats(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )
        return CompletionResult(
            content=(data.get("message") or {}).get("content") or "",
            finish_reason=data.get("done_reason") or "stop",
            usage=usage,
        )

    async def list_models(self) -> list[str]:
        async with build_client(
            proxy=self.proxy, timeout=self.timeout, transport=self._transport
        ) as client:
            with translate_transport_errors(self.name, "list_models"):
                response = await client.get(f"{self.base_url}/api/tags")
        raise_for_status(response, self.name, "list_models")
        return [m.get("name", "") for m in response.json().get("models", [])]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_provider(settings: LLMSettings, proxy: str | None = None) -> LLMProvider:
    """Build the chat backend named by ``settings.provider``.

    Raises:
        ConfigurationError: For an unknown provider name or missing API key.
    """
    rate_limiter = (
        RateLimiter(settings.calls_per_minute) if settings.calls_per_minute > 0 else None
    )
    provider = settings.provider.lower()
    if provider == "openai":
        return OpenAICompatibleProvider(
            base_url=settings.base_url,
            model=settings.model,
            api_key=settings.api_key,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            supports_images=settings.supports_images,
            timeout=settings.timeout,
            proxy=proxy,
            rate_limiter=rate_limiter,
        )
    if provider == "ollama":
        return OllamaProvider(
            base_url=settings.base_url,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            supports_images=settings.supports_images,
            timeout=settings.timeout,
            proxy=proxy,
            rate_limiter=rate_limiter,
        )
    raise ConfigurationError(
        f"Unknown chat provider: {settings.provider!r}", backend=settings.provider, phase="configure"
    )
