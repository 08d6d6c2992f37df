"""
In-text action markers.

Backends call action plugins by writing ``[Name:arguments]`` in their reply.
``resolve_markers`` finds every marker, asks a resolver for a replacement
and splices the results back into the text. A resolver returning ``None``
leaves the marker untouched, which is how unknown plugin names pass through
as literal text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Awaitable, Callable

# Name: identifier-like, may contain spaces ("Pet Feeder"). Arguments: anything but "]".
MARKER_RE = re.compile(r"\[([A-Za-z_][\w ]*?)\s*:([^\]]*)\]")

MarkerResolver = Callable[[str, str], Awaitable[str | None]]


@dataclass(frozen=True)
class ActionMarker:
    """One marker found in a reply.

    Attributes:
        name: Plugin name as written by the backend.
        arguments: Raw argument text (not stripped or parsed).
        start: Start offset of the marker in the source text.
        end: End offset (exclusive).
    """

    name: str
    arguments: str
    start: int
    end: int


@dataclass(frozen=True)
class ActionInvocation:
    """A marker that was resolved by a plugin."""

    name: str
    arguments: str
    result: str


def find_markers(text: str) -> list[ActionMarker]:
    return [
        ActionMarker(name=m.group(1).strip(), arguments=m.group(2), start=m.start(), end=m.end())
        for m in MARKER_RE.finditer(text)
    ]


async def resolve_markers(
    text: str, resolver: MarkerResolver
) -> tuple[str, list[ActionInvocation]]:
    """Replace each marker in *text* with ``await resolver(name, arguments)``.

    Markers are resolved sequentially in order of appearance, each exactly
    once.

    Returns:
        The spliced text and the list of markers that were replaced.
    """
    pieces: list[str] = []
    invocations: list[ActionInvocation] = []
    cursor = 0
    for marker in find_markers(text):
        pieces.append(text[cursor:marker.start])
        result = await resolver(marker.name, marker.arguments)
        if result is None:
            pieces.append(text[marker.start:marker.end])
        else:
            pieces.append(result)
            invocations.append(ActionInvocation(marker.name, marker.arguments, result))
        cursor = marker.end
    pieces.append(text[cursor:])
    return "".join(pieces), invocations


def format_action_results(invocations: list[ActionInvocation]) -> str:
    """Render action results as the follow-up prompt fed back to the backend."""
    return "\n".join(f'[Plugin.{inv.name}: "{inv.result}"]' for inv in invocations)
