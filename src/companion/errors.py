"""
Exception hierarchy shared by the chat core, the plugin dispatcher and the
speech services.

Every error carries an optional ``backend`` (provider / dialect name) and
``phase`` (where in a turn it happened) so that a presentation layer can show
a useful message without parsing strings.

Propagation policy:

- ``ConfigurationError`` and ``CapabilityError`` are non-retryable and raised
  before any network traffic.
- ``BackendConnectionError`` / ``BackendTimeoutError`` / ``BackendAPIError``
  reach the caller unchanged; nothing inside the core retries.
- ``PluginError`` is contained by the dispatcher and only ever handed to
  lifecycle plugins' error hooks.
"""

from __future__ import annotations


class CompanionError(Exception):
    """Base exception for all companion errors.

    Attributes:
        backend: Name of the backend or dialect involved, if any.
        phase: Turn phase or operation during which the error occurred.
    """

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.phase = phase


class ConfigurationError(CompanionError):
    """Required settings are missing or invalid."""


class CapabilityError(CompanionError):
    """The bound backend does not support the requested feature."""


class BackendError(CompanionError):
    """Base class for failures talking to an external backend."""


class BackendConnectionError(BackendError):
    """The backend endpoint could not be reached."""


class BackendTimeoutError(BackendError):
    """The backend did not answer in time.

    Kept separate from ``BackendConnectionError`` so callers can suggest
    retrying with a shorter input.
    """


class BackendAPIError(BackendError):
    """The backend answered with a non-success status.

    Attributes:
        status_code: HTTP status code, or ``None`` if unavailable.
        body: Raw response body for diagnosis.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str = "",
        *,
        backend: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, backend=backend, phase=phase)
        self.status_code = status_code
        self.body = body


class BackendRateLimitError(BackendAPIError):
    """The backend returned 429."""


class PluginError(CompanionError):
    """A plugin raised inside a hook or action.

    The original exception is available as ``__cause__``.

    Attributes:
        plugin_name: Name of the failing plugin.
    """

    def __init__(self, plugin_name: str, phase: str, cause: BaseException) -> None:
        super().__init__(
            f"Plugin {plugin_name!r} failed during {phase}: {cause}",
            phase=phase,
        )
        self.plugin_name = plugin_name
        self.__cause__ = cause


class ActionLoopError(CompanionError):
    """Action resolution exceeded its configured number of rounds."""


class PluginRegistrationError(ConfigurationError):
    """A plugin could not be registered (duplicate name or mode id)."""
