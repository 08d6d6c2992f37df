"""
Per-category outbound proxy resolution.

Every component that makes an outbound call asks the resolver for a proxy
URL keyed by its request category (``"chat"``, ``"asr"``, ``"tts"``,
``"plugin"``). ``None`` means "connect directly".
"""

from __future__ import annotations

import logging
import urllib.request

from companion.config import ProxySettings

logger = logging.getLogger(__name__)

REQUEST_TYPES = ("chat", "asr", "tts", "plugin")


class ProxyResolver:
    """Maps a request category to a proxy URL according to ``ProxySettings``.

    Attributes:
        settings: The proxy rules.
        default_type: Category used when ``get_proxy`` is called without one.
    """

    def __init__(self, settings: ProxySettings | None = None, default_type: str = "chat") -> None:
        self.settings = settings or ProxySettings()
        self.default_type = default_type

    def _applies_to(self, request_type: str) -> bool:
        if self.settings.for_all:
            return True
        flag = f"for_{request_type.lower()}"
        return bool(getattr(self.settings, flag, False))

    def get_proxy(self, request_type: str | None = None) -> str | None:
        """Return the proxy URL for *request_type*, or ``None`` for a direct connection."""
        if not self.settings.enabled:
            return None

        category = request_type or self.default_type
        if not self._applies_to(category):
            logger.debug("Proxy not used for %r requests", category)
            return None

        if self.settings.follow_system_proxy:
            system = urllib.request.getproxies()
            proxy = system.get("https") or system.get("http")
            logger.debug("Using system proxy for %r requests: %s", category, proxy)
            return proxy

        if not self.settings.address:
            logger.warning("Proxy enabled for %r but no address configured", category)
            return None

        scheme = "socks5" if self.settings.protocol.lower().startswith("socks") else "http"
        proxy = f"{scheme}://{self.settings.address}"
        logger.debug("Using proxy for %r requests: %s", category, proxy)
        return proxy
