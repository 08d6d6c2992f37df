"""
Plugin capability contracts.

A plugin is any object with a ``name``. What it can do is decided by which
of the capability Protocols below it satisfies; a single object may satisfy
several at once. The registry detects capabilities structurally when the
plugin is added and stores them on a ``PluginDescriptor``, so dispatch is a
lookup by capability rather than a walk through a class hierarchy.

Example::

    class FeedPlugin:
        name = "Feed"

        async def function(self, arguments: str) -> str:
            return f"fed {arguments}"

        def get_dynamic_info(self) -> str:
            return "The pet is hungry."

``FeedPlugin`` is both an ``ActionPlugin`` and a ``DynamicInfoPlugin``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class Capability(str, Enum):
    """Capability interfaces a plugin can implement."""

    ACTION = "action"
    LIFECYCLE = "lifecycle"
    DYNAMIC_INFO = "dynamic_info"
    CHANNEL_MODE = "channel_mode"


@runtime_checkable
class Plugin(Protocol):
    """Anything registrable: an object with a non-empty string ``name``."""

    name: str


@runtime_checkable
class ActionPlugin(Protocol):
    """Invoked for each ``[Name:arguments]`` marker in a backend reply."""

    name: str

    async def function(self, arguments: str) -> str:
        ...


@runtime_checkable
class LifecyclePlugin(Protocol):
    """Notified at each phase of a turn.

    ``on_processing_start`` returns an opaque context which is handed back
    unchanged to the same plugin's later hooks for that turn. All four hooks
    must be present, even as no-ops.
    """

    name: str

    async def on_processing_start(self, user_input: str) -> Any:
        ...

    async def on_response_start(self, context: Any) -> None:
        ...

    async def on_processing_complete(self, context: Any) -> None:
        ...

    async def on_processing_error(self, context: Any, error: BaseException) -> None:
        ...


@runtime_checkable
class DynamicInfoPlugin(Protocol):
    """Contributes text merged into the system prompt before each call."""

    name: str

    def get_dynamic_info(self) -> str | None:
        ...


@dataclass(frozen=True)
class ChannelModeDefinition:
    """A custom channel mode advertised by a plugin.

    Attributes:
        mode_id: Unique id in the form ``"<pluginName>:<modeName>"``.
        display_name: Name shown to the user.
        description: Free-form description.
    """

    mode_id: str
    display_name: str = ""
    description: str = ""


@runtime_checkable
class ChannelModeProvider(Protocol):
    """Advertises custom channel modes for selection by the host."""

    name: str

    def get_custom_modes(self) -> list[ChannelModeDefinition]:
        ...


_CAPABILITY_PROTOCOLS: tuple[tuple[Capability, type], ...] = (
    (Capability.ACTION, ActionPlugin),
    (Capability.LIFECYCLE, LifecyclePlugin),
    (Capability.DYNAMIC_INFO, DynamicInfoPlugin),
    (Capability.CHANNEL_MODE, ChannelModeProvider),
)


def detect_capabilities(plugin: object) -> frozenset[Capability]:
    """Return the capabilities *plugin* implements."""
    return frozenset(cap for cap, proto in _CAPABILITY_PROTOCOLS if isinstance(plugin, proto))


def normalize_name(name: str) -> str:
    """Normalise a plugin name for marker matching (case, spaces)."""
    return name.strip().replace(" ", "_").lower()


@dataclass(frozen=True)
class PluginDescriptor:
    """A registered plugin and the capabilities it was found to implement."""

    name: str
    plugin: Any
    capabilities: frozenset[Capability]

    @classmethod
    def for_plugin(cls, plugin: Any) -> PluginDescriptor:
        if not isinstance(plugin, Plugin):
            raise TypeError(f"Plugin {plugin!r} has no 'name' attribute.")
        if not isinstance(plugin.name, str) or not plugin.name.strip():
            raise TypeError(f"Plugin {plugin!r} must have a non-empty string 'name'.")
        return cls(name=plugin.name, plugin=plugin, capabilities=detect_capabilities(plugin))

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def enabled(self) -> bool:
        return bool(getattr(self.plugin, "enabled", True))
