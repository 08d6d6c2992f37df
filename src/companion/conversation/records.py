"""Append-only audit log of completed turns."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Iterator


@dataclass(frozen=True)
class Record:
    """One completed turn as seen by the backend.

    Attributes:
        request: The prompt that was sent.
        response: The final text returned to the caller.
        timestamp: Unix time the turn completed.
        provider_name: Name of the chat backend that answered.
    """

    request: str
    response: str
    timestamp: float = field(default_factory=time.time)
    provider_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Record:
        return cls(
            request=data.get("request", ""),
            response=data.get("response", ""),
            timestamp=float(data.get("timestamp") or 0.0),
            provider_name=data.get("provider_name", ""),
        )


class RecordStore:
    """Write-once record log, independent of the editable history.

    Records are only ever appended; clearing or editing the chat history
    leaves them untouched.
    """

    def __init__(self, records: Iterable[Record] | None = None) -> None:
        self._records: list[Record] = list(records or [])

    def append(self, record: Record) -> None:
        self._records.append(record)

    def restore(self, records: Iterable[Record]) -> None:
        """Reset the log to the persisted *records* (used by ``load_history``)."""
        self._records = list(records)

    def get_records(self) -> list[Record]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return iter(list(self._records))
