"""
Shared ``httpx`` helpers: client construction and error translation.

All outbound HTTP in the package goes through ``build_client`` so proxy and
timeout rules apply uniformly, and through ``translate_transport_errors`` /
``raise_for_status`` so callers only ever see the ``companion.errors``
taxonomy.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

import httpx

from companion.errors import (
    BackendAPIError,
    BackendConnectionError,
    BackendRateLimitError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)

_BODY_PREVIEW = 500


def build_client(
    *,
    proxy: str | None = None,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Return an ``AsyncClient`` honouring *proxy* and *timeout*.

    ``trust_env`` is disabled so only the resolver decides about proxies.
    A *transport* may be injected (tests use ``httpx.MockTransport``).
    """
    if transport is not None:
        return httpx.AsyncClient(transport=transport, timeout=timeout, trust_env=False)
    return httpx.AsyncClient(proxy=proxy, timeout=timeout, trust_env=False)


@contextmanager
def translate_transport_errors(backend: str, phase: str) -> Iterator[None]:
    """Map ``httpx`` transport exceptions onto the companion error taxonomy."""
    try:
        yield
    except httpx.TimeoutException as exc:
        logger.warning("%s: request timed out during %s: %s", backend, phase, exc)
        raise BackendTimeoutError(
            f"{backend} did not respond in time. Check the connection or try a shorter input.",
            backend=backend,
            phase=phase,
        ) from exc
    except httpx.TransportError as exc:
        logger.error("%s: connection failed during %s: %s", backend, phase, exc)
        raise BackendConnectionError(
            f"Could not reach {backend}: {exc}", backend=backend, phase=phase
        ) from exc


def raise_for_status(response: httpx.Response, backend: str, phase: str) -> None:
    """Raise ``BackendAPIError`` (or ``BackendRateLimitError``) on non-2xx."""
    if response.is_success:
        return
    body = response.text
    logger.error(
        "%s API error %d during %s: %s",
        backend,
        response.status_code,
        phase,
        body[:_BODY_PREVIEW],
    )
    error_cls = BackendRateLimitError if response.status_code == 429 else BackendAPIError
    raise error_cls(
        f"{backend} returned status {response.status_code}: {body[:_BODY_PREVIEW]}",
        status_code=response.status_code,
        body=body,
        backend=backend,
        phase=phase,
    )
