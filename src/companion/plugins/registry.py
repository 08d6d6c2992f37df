"""
Plugin registry and dispatcher.

``PluginRegistry`` keeps plugins in registration order and dispatches each
capability with error isolation:

- Lifecycle hooks run sequentially, one plugin after another, so a plugin's
  side effects are visible to the next one. A hook that raises is logged;
  once the phase has finished, every lifecycle plugin (the failing one
  included) receives ``on_processing_error`` with a ``PluginError``.
- Every phase iterates a *snapshot* of the registration list, so
  ``register`` / ``deregister`` calls made while a turn is in flight never
  disturb an iteration that has already started.

Typical usage::

    registry = PluginRegistry()
    registry.register(FeedPlugin())

    turn = TurnContext()
    await registry.notify_processing_start(turn, "hello")
    result = await registry.invoke_action("Feed", "treat")
    await registry.notify_processing_complete(turn)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from companion.errors import PluginError, PluginRegistrationError
from companion.plugins.base import (
    Capability,
    ChannelModeDefinition,
    PluginDescriptor,
    normalize_name,
)

logger = logging.getLogger(__name__)


@dataclass
class TurnContext:
    """Per-turn state threaded through the lifecycle phases.

    Holds the opaque context each lifecycle plugin returned from
    ``on_processing_start``, keyed by plugin name. A new ``TurnContext`` is
    created for every user-initiated turn and is never persisted.

    Attributes:
        contexts: Plugin name → context returned by its start hook.
        errors: Plugin errors raised during this turn, in order.
        rounds: Backend rounds run for this turn so far, continuations
            included.
    """

    contexts: dict[str, Any] = field(default_factory=dict)
    errors: list[PluginError] = field(default_factory=list)
    rounds: int = 0

    def context_for(self, plugin_name: str) -> Any:
        return self.contexts.get(plugin_name)


class PluginRegistry:
    """Registry of plugins with capability-based dispatch."""

    def __init__(self) -> None:
        self._plugins: list[PluginDescriptor] = []

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, plugin: Any) -> PluginDescriptor:
        """Register *plugin* and return its descriptor.

        Raises:
            TypeError: If the plugin has no usable ``name``.
            PluginRegistrationError: If the name is taken, or a channel mode id
                is malformed or already advertised by another plugin.
        """
        descriptor = PluginDescriptor.for_plugin(plugin)
        key = normalize_name(descriptor.name)
        if any(normalize_name(d.name) == key for d in self._plugins):
            raise PluginRegistrationError(
                f"Plugin {descriptor.name!r} is already registered. "
                "Deregister it first before re-registering.",
                phase="register",
            )

        if descriptor.has(Capability.CHANNEL_MODE):
            self._check_modes(descriptor)

        # Copy-on-write: in-flight snapshots keep the old list.
        self._plugins = [*self._plugins, descriptor]
        logger.info(
            "Registered plugin %r (capabilities: %s)",
            descriptor.name,
            ", ".join(sorted(c.value for c in descriptor.capabilities)) or "none",
        )
        return descriptor

    def _check_modes(self, descriptor: PluginDescriptor) -> None:
        modes = list(descriptor.plugin.get_custom_modes() or [])
        existing = {
            mode.mode_id
            for d in self._plugins
            if d.has(Capability.CHANNEL_MODE)
            for mode in d.plugin.get_custom_modes() or []
        }
        seen: set[str] = set()
        prefix = f"{descriptor.name}:"
        for mode in modes:
            if not mode.mode_id.startswith(prefix) or mode.mode_id == prefix:
                raise PluginRegistrationError(
                    f"Channel mode id {mode.mode_id!r} must have the form "
                    f"'{descriptor.name}:<modeName>'.",
                    phase="register",
                )
            if mode.mode_id in existing or mode.mode_id in seen:
                raise PluginRegistrationError(
                    f"Channel mode id {mode.mode_id!r} is already defined.",
                    phase="register",
                )
            seen.add(mode.mode_id)

    def deregister(self, plugin: Any) -> None:
        """Remove a plugin, given either the plugin object or its name.

        Raises:
            KeyError: If the plugin is not registered.
        """
        name = plugin if isinstance(plugin, str) else getattr(plugin, "name", "")
        key = normalize_name(name)
        remaining = [d for d in self._plugins if normalize_name(d.name) != key]
        if len(remaining) == len(self._plugins):
            raise KeyError(f"Plugin {name!r} is not registered.")
        self._plugins = remaining
        logger.info("Deregistered plugin %r", name)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def snapshot(self, capability: Capability | None = None) -> list[PluginDescriptor]:
        """Return a copy of the enabled registrations, optionally filtered."""
        return [
            d
            for d in list(self._plugins)
            if d.enabled and (capability is None or d.has(capability))
        ]

    def get(self, name: str) -> PluginDescriptor | None:
        key = normalize_name(name)
        for descriptor in list(self._plugins):
            if normalize_name(descriptor.name) == key:
                return descriptor
        return None

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    # ------------------------------------------------------------------
    # Lifecycle dispatch
    # ------------------------------------------------------------------

    async def notify_processing_start(self, turn: TurnContext, user_input: str) -> None:
        plugins = self.snapshot(Capability.LIFECYCLE)
        failures: list[PluginError] = []
        for descriptor in plugins:
            try:
                turn.contexts[descriptor.name] = await descriptor.plugin.on_processing_start(
                    user_input
                )
            except Exception as exc:
                failures.append(self._record_failure(turn, descriptor, "processing_start", exc))
        await self._report_failures(turn, failures)

    async def notify_response_start(self, turn: TurnContext) -> None:
        await self._notify(turn, "response_start")

    async def notify_processing_complete(self, turn: TurnContext) -> None:
        await self._notify(turn, "processing_complete")

    async def notify_processing_error(self, turn: TurnContext, error: BaseException) -> None:
        """Deliver *error* to every lifecycle plugin.

        Exceptions raised by the error hooks themselves are logged and
        dropped; they never trigger another round of error hooks.
        """
        plugins = self.snapshot(Capability.LIFECYCLE)
        if plugins:
            logger.debug(
                "Notifying %d plugin(s) of processing error: %s", len(plugins), error
            )
        for descriptor in plugins:
            try:
                await descriptor.plugin.on_processing_error(
                    turn.context_for(descriptor.name), error
                )
            except Exception as exc:
                logger.error(
                    "Plugin %r failed in on_processing_error: %s",
                    descriptor.name,
                    exc,
                    exc_info=True,
                )

    async def _notify(self, turn: TurnContext, phase: str) -> None:
        plugins = self.snapshot(Capability.LIFECYCLE)
        failures: list[PluginError] = []
        for descriptor in plugins:
            hook = getattr(descriptor.plugin, f"on_{phase}")
            try:
                await hook(turn.context_for(descriptor.name))
            except Exception as exc:
                failures.append(self._record_failure(turn, descriptor, phase, exc))
        await self._report_failures(turn, failures)

    def _record_failure(
        self,
        turn: TurnContext,
        descriptor: PluginDescriptor,
        phase: str,
        exc: Exception,
    ) -> PluginError:
        logger.error(
            "Plugin %r failed in on_%s: %s", descriptor.name, phase, exc, exc_info=True
        )
        error = PluginError(descriptor.name, phase, exc)
        turn.errors.append(error)
        return error

    async def _report_failures(self, turn: TurnContext, failures: list[PluginError]) -> None:
        for error in failures:
            await self.notify_processing_error(turn, error)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def invoke_action(self, name: str, arguments: str) -> str | None:
        """Run the action plugin called *name* with the raw *arguments*.

        Returns ``None`` when no enabled action plugin has that name. The
        call is made exactly once; exceptions propagate to the caller.
        """
        key = normalize_name(name)
        for descriptor in self.snapshot(Capability.ACTION):
            if normalize_name(descriptor.name) == key:
                logger.debug("Invoking action %r(%r)", descriptor.name, arguments)
                result = await descriptor.plugin.function(arguments)
                return "" if result is None else str(result)
        logger.debug("No action plugin named %r", name)
        return None

    # ------------------------------------------------------------------
    # Dynamic info / channel modes
    # ------------------------------------------------------------------

    def get_dynamic_info(self) -> str:
        """Concatenate the non-empty dynamic info of all providers."""
        parts: list[str] = []
        for descriptor in self.snapshot(Capability.DYNAMIC_INFO):
            try:
                info = descriptor.plugin.get_dynamic_info()
            except Exception as exc:
                logger.error(
                    "Plugin %r failed in get_dynamic_info: %s",
                    descriptor.name,
                    exc,
                    exc_info=True,
                )
                continue
            if info and info.strip():
                parts.append(info.strip())
        return "\n".join(parts)

    def get_custom_modes(self) -> list[ChannelModeDefinition]:
        """Return all advertised channel modes (registration order)."""
        modes: list[ChannelModeDefinition] = []
        for descriptor in self.snapshot(Capability.CHANNEL_MODE):
            try:
                modes.extend(descriptor.plugin.get_custom_modes() or [])
            except Exception as exc:
                logger.error(
                    "Plugin %r failed in get_custom_modes: %s",
                    descriptor.name,
                    exc,
                    exc_info=True,
                )
        return modes
