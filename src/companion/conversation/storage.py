"""
Persistence backends for chat history and records.

The chat core only depends on the ``HistoryStorage`` Protocol. The bundled
``JsonHistoryStorage`` keeps one JSON document per provider name and writes
it atomically (temporary file + ``os.replace``) so a crash mid-write never
leaves a truncated history behind.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

from companion.conversation.messages import Message
from companion.conversation.records import Record
from companion.errors import ConfigurationError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")

_FORMAT_VERSION = 1


@runtime_checkable
class HistoryStorage(Protocol):
    """Durable medium for a chat core's history and records."""

    def save(self, name: str, messages: list[Message], records: list[Record]) -> None:
        ...

    def load(self, name: str) -> tuple[list[Message], list[Record]]:
        """Return ``(messages, records)``; both empty when nothing is stored."""
        ...


class JsonHistoryStorage:
    """Stores each provider's history as ``<directory>/<name>.json``.

    Attributes:
        directory: Folder holding the history files (created on first save).
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()

    def _path_for(self, name: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", name).strip("._") or "default"
        return self.directory / f"{safe}.json"

    def save(self, name: str, messages: list[Message], records: list[Record]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path_for(name)
        payload = {
            "version": _FORMAT_VERSION,
            "name": name,
            "messages": [m.to_dict() for m in messages],
            "records": [r.to_dict() for r in records],
        }
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
        logger.debug(
            "Saved history for %r: %d message(s), %d record(s) → %s",
            name,
            len(messages),
            len(records),
            path,
        )

    def load(self, name: str) -> tuple[list[Message], list[Record]]:
        path = self._path_for(name)
        if not path.exists():
            logger.debug("No stored history for %r at %s", name, path)
            return [], []

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"History file {path} is not valid JSON: {exc}", phase="load_history"
            ) from exc

        messages = [Message.from_dict(m) for m in payload.get("messages", [])]
        records = [Record.from_dict(r) for r in payload.get("records", [])]
        logger.info(
            "Loaded history for %r: %d message(s), %d record(s)",
            name,
            len(messages),
            len(records),
        )
        return messages, records
