"""
Companion Conversation Package.

Turn orchestration (``ChatCore``), the message history and record stores,
chat backends, action markers and the proxy resolver.
"""

from companion.conversation.core import ChatCore, TurnState
from companion.conversation.messages import HistoryStore, Message, Role
from companion.conversation.providers import (
    CompletionResult,
    LLMProvider,
    OllamaProvider,
    OpenAICompatibleProvider,
    create_provider,
)
from companion.conversation.proxy import ProxyResolver
from companion.conversation.records import Record, RecordStore

__all__ = [
    "ChatCore",
    "CompletionResult",
    "HistoryStore",
    "LLMProvider",
    "Message",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "ProxyResolver",
    "Record",
    "RecordStore",
    "Role",
    "TurnState",
    "create_provider",
]
