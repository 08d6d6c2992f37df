"""
Companion plugin package.

Capability contracts (``ActionPlugin``, ``LifecyclePlugin``,
``DynamicInfoPlugin``, ``ChannelModeProvider``) and the ``PluginRegistry``
that dispatches them.
"""

from companion.plugins.base import (
    ActionPlugin,
    Capability,
    ChannelModeDefinition,
    ChannelModeProvider,
    DynamicInfoPlugin,
    LifecyclePlugin,
    Plugin,
    PluginDescriptor,
)
from companion.plugins.registry import PluginRegistry, TurnContext

__all__ = [
    "ActionPlugin",
    "Capability",
    "ChannelModeDefinition",
    "ChannelModeProvider",
    "DynamicInfoPlugin",
    "LifecyclePlugin",
    "Plugin",
    "PluginDescriptor",
    "PluginRegistry",
    "TurnContext",
]
