"""
Provider strategies for speech backends.

A speech service (TTS or ASR) speaks one of several vendor dialects. Each
dialect is a ``ProviderStrategy``: it validates its settings, knows its
endpoint, builds the request body and parses the reply. The service picks a
strategy from a ``StrategyRegistry`` by the configured ``mode`` and calls
``execute``; it never branches on the vendor itself.

The default ``execute`` covers the common single request flow::

    validate_settings → POST JSON to get_endpoint() → check_response → parse_response

Dialects that need several requests (upload, poll, fetch) override
``execute`` and still report errors through the same taxonomy.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable

import httpx

from companion.errors import ConfigurationError
from companion.http import raise_for_status, translate_transport_errors

logger = logging.getLogger(__name__)


def ensure_version_segment(base_url: str, version: str = "v1") -> str:
    """Return *base_url* without a trailing slash, ending in ``/<version>``."""
    url = base_url.rstrip("/")
    if not url.endswith(f"/{version}"):
        url = f"{url}/{version}"
    return url


class ProviderStrategy(ABC):
    """One vendor dialect of a speech service.

    Attributes:
        name: Mode id the dialect is selected by (``settings.tts.mode``).
        kind: Service family, ``"tts"`` or ``"asr"``.
    """

    name: str = ""
    kind: str = ""

    @property
    def label(self) -> str:
        """Backend name used in errors and logs, e.g. ``"tts:openai"``."""
        return f"{self.kind}:{self.name}"

    def validate_settings(self, config: Any) -> None:
        """Raise ``ConfigurationError`` if *config* cannot be used by this dialect."""

    @abstractmethod
    def get_endpoint(self, base_url: str) -> str:
        ...

    @abstractmethod
    def build_request_body(self, payload: Any, config: Any) -> dict[str, Any]:
        ...

    @abstractmethod
    async def parse_response(self, response: httpx.Response, client: httpx.AsyncClient) -> Any:
        ...

    def build_headers(self, config: Any) -> dict[str, str]:
        api_key = getattr(config, "api_key", "")
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def check_response(self, response: httpx.Response) -> None:
        raise_for_status(response, self.label, "request")

    async def send(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        body: dict[str, Any],
        config: Any,
    ) -> httpx.Response:
        return await client.post(endpoint, json=body, headers=self.build_headers(config))

    async def execute(self, client: httpx.AsyncClient, payload: Any, config: Any) -> Any:
        """Run the dialect's request flow and return the parsed result."""
        self.validate_settings(config)
        endpoint = self.get_endpoint(config.base_url)
        body = self.build_request_body(payload, config)
        logger.debug("%s: request to %s", self.label, endpoint)

        with translate_transport_errors(self.label, "request"):
            response = await self.send(client, endpoint, body, config)
        self.check_response(response)
        with translate_transport_errors(self.label, "response"):
            return await self.parse_response(response, client)

    def _require(self, config: Any, field: str, description: str | None = None) -> None:
        value = getattr(config, field, None)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ConfigurationError(
                f"{self.label} requires {description or field} to be configured.",
                backend=self.label,
                phase="validate_settings",
            )


class StrategyRegistry:
    """Maps mode ids to strategy instances."""

    def __init__(self, strategies: Iterable[ProviderStrategy] = ()) -> None:
        self._strategies: dict[str, ProviderStrategy] = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: ProviderStrategy) -> None:
        key = strategy.name.lower()
        if key in self._strategies:
            logger.info("Replacing %s strategy %r", strategy.kind, strategy.name)
        self._strategies[key] = strategy

    def resolve(self, mode: str) -> ProviderStrategy:
        """Return the strategy for *mode*.

        Raises:
            ConfigurationError: If no strategy is registered for *mode*.
        """
        strategy = self._strategies.get((mode or "").lower())
        if strategy is None:
            raise ConfigurationError(
                f"Unknown mode {mode!r}. Available: {', '.join(self.names()) or 'none'}.",
                phase="resolve_strategy",
            )
        return strategy

    def names(self) -> list[str]:
        return sorted(self._strategies)

    def __contains__(self, mode: str) -> bool:
        return (mode or "").lower() in self._strategies
