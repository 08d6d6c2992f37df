"""
Companion Core - a conversational orchestration core for desktop companions.

The core mediates between a chat surface and interchangeable AI backends:

- Chat turns against an OpenAI-compatible or Ollama backend
- Plugins that act on in-text ``[Name:arguments]`` markers, observe each
  phase of a turn, inject dynamic context, or advertise channel modes
- Text-to-speech and speech-to-text through pluggable vendor dialects
- Per-category outbound proxy rules

Quick Start:
    >>> from companion.config import get_settings
    >>> from companion.conversation import ChatCore
    >>> core = ChatCore.from_settings(get_settings())
    >>> reply = await core.chat("Hello!")
"""

__version__ = "0.1.0"
