"""
Conversation messages and the live, editable history.

``HistoryStore`` owns the ordered list of ``Message`` objects for one chat
core. It never talks to the network: the token count it reports is a local
approximation used for display and for trimming the outbound context window.

Token estimation rules:

- CJK unified ideographs count roughly 1.5 characters per token.
- Everything else counts roughly 4 characters per token.
- Each message with non-blank content adds 4 framing tokens (role, separators).
- Each attached image adds a flat ``IMAGE_TOKEN_COST``.
"""

from __future__ import annotations

import base64
import logging
import math
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger(__name__)

_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")

MESSAGE_OVERHEAD_TOKENS = 4
IMAGE_TOKEN_COST = 85

# Role spellings used by other backends, normalised on load.
_ROLE_ALIASES = {
    "model": "assistant",
    "tool": "function",
}


class Role(str, Enum):
    """Author of a message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"

    @classmethod
    def parse(cls, value: str | Role) -> Role:
        """Return the ``Role`` for *value*, accepting backend-specific aliases."""
        if isinstance(value, Role):
            return value
        key = value.strip().lower()
        return cls(_ROLE_ALIASES.get(key, key))


@dataclass
class Message:
    """A single conversation message.

    Attributes:
        role: Who authored the message.
        content: Message text.
        image: Raw encoded image bytes for multimodal messages, or ``None``.
        image_mime: MIME type of ``image``.
        timestamp: Unix time the message was created.
    """

    role: Role
    content: str
    image: bytes | None = None
    image_mime: str = "image/png"
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        self.role = Role.parse(self.role)

    @property
    def has_image(self) -> bool:
        return bool(self.image)

    def copy(self) -> Message:
        return Message(
            role=self.role,
            content=self.content,
            image=self.image,
            image_mime=self.image_mime,
            timestamp=self.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a JSON-compatible dict (images as base64)."""
        data: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.image:
            data["image"] = base64.b64encode(self.image).decode("ascii")
            data["image_mime"] = self.image_mime
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        image = data.get("image")
        timestamp = data.get("timestamp")
        return cls(
            role=Role.parse(data["role"]),
            content=data.get("content") or "",
            image=base64.b64decode(image) if image else None,
            image_mime=data.get("image_mime") or "image/png",
            timestamp=time.time() if timestamp is None else float(timestamp),
        )


def estimate_text_tokens(text: str | None) -> int:
    """Estimate the token count of *text* without calling any tokenizer."""
    if not text or not text.strip():
        return 0
    cjk = len(_CJK_RE.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / 1.5) + math.ceil(other / 4.0)


def estimate_message_tokens(message: Message) -> int:
    tokens = 0
    if message.content and message.content.strip():
        tokens += estimate_text_tokens(message.content) + MESSAGE_OVERHEAD_TOKENS
    if message.has_image:
        tokens += IMAGE_TOKEN_COST
    return tokens


def estimate_messages_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_message_tokens(m) for m in messages)


class HistoryStore:
    """Ordered, editable log of conversation messages.

    Readers always receive copies; the live list is only changed through
    ``append``, ``replace`` and ``clear``. ``replace`` swaps the whole
    sequence in one assignment so that no reader ever sees a partial edit.
    """

    def __init__(self, messages: Iterable[Message] | None = None) -> None:
        self._messages: list[Message] = [m.copy() for m in messages or []]
        self._token_count = estimate_messages_tokens(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message.copy())
        self._token_count += estimate_message_tokens(message)

    def replace(self, messages: Iterable[Message]) -> None:
        """Atomically replace the entire history with copies of *messages*."""
        new_messages = [m.copy() for m in messages]
        new_count = estimate_messages_tokens(new_messages)
        self._messages, self._token_count = new_messages, new_count
        logger.debug("History replaced: %d message(s)", len(new_messages))

    def clear(self) -> None:
        self._messages, self._token_count = [], 0

    def get_messages(self) -> list[Message]:
        """Return a copy of the history (order and content preserved)."""
        return [m.copy() for m in self._messages]

    @property
    def token_count(self) -> int:
        return self._token_count

    def window(self, max_tokens: int = 0) -> list[Message]:
        """Return the messages to send upstream, within *max_tokens*.

        The live history is left untouched. When the estimate exceeds the
        budget, the oldest non-system messages are dropped first; the most
        recent message is always kept. ``max_tokens <= 0`` disables trimming.
        """
        messages = self.get_messages()
        if max_tokens <= 0:
            return messages

        total = estimate_messages_tokens(messages)
        index = 0
        dropped = 0
        while total > max_tokens and index < len(messages) - 1:
            if messages[index].role is Role.SYSTEM:
                index += 1
                continue
            total -= estimate_message_tokens(messages.pop(index))
            dropped += 1

        if dropped:
            logger.debug(
                "History window: dropped %d oldest message(s) to fit %d tokens",
                dropped,
                max_tokens,
            )
        return messages
