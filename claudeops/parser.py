"""Decode single Claude Code JSONL lines into typed events.

The parser is permissive: unknown event types come back as
:class:`UnknownEvent` rather than raising, so ingestion keeps working when
the CLI adds new event kinds.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

__all__ = [
    "Event",
    "AssistantEvent",
    "UserEvent",
    "UnknownEvent",
    "parse_line",
    "compare_versions",
    "version_in_range",
    "MIN_SUPPORTED_VERSION",
    "MAX_SUPPORTED_VERSION",
]

MIN_SUPPORTED_VERSION = "2.1.0"
MAX_SUPPORTED_VERSION = "2.2.0"  # exclusive upper bound

_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)
_LEADING_DIGITS_RE = re.compile(r"^[0-9]*")


@dataclass(frozen=True, kw_only=True)
class Event:
    """Fields shared by every decoded line."""

    type: str = ""
    uuid: str = ""
    session_id: str = ""
    cwd: str = ""
    timestamp: datetime | None = None
    version: str = ""

    @property
    def kind(self) -> str:
        return self.type


@dataclass(frozen=True, kw_only=True)
class AssistantEvent(Event):
    """An assistant turn; the only event class that carries token usage."""

    model: str = ""
    in_tokens: int = 0
    out_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0


@dataclass(frozen=True, kw_only=True)
class UserEvent(Event):
    """A user prompt (no token cost)."""


@dataclass(frozen=True, kw_only=True)
class UnknownEvent(Event):
    """Any event whose ``type`` is not recognised; keeps the raw line."""

    raw: bytes = field(default=b"", repr=False)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    match = _TIMESTAMP_RE.match(value)
    if not match:
        raise ValueError(f"invalid RFC 3339 timestamp: {value!r}")
    base, fraction, zone = match.groups()
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    text += "+00:00" if zone == "Z" else zone
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid RFC 3339 timestamp: {value!r}") from exc


def _string(obj: dict, key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def _integer(obj: dict, key: str) -> int:
    value = obj.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer")
    return value


def _object(obj: dict, key: str) -> dict:
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"field {key!r} must be an object")
    return value


def parse_line(line: bytes | str) -> Event:
    """Decode one JSONL line.

    Raises ValueError when the line is empty, is not valid JSON, or has no
    ``type``. Unknown types are returned as :class:`UnknownEvent`.
    """
    raw = line.encode("utf-8") if isinstance(line, str) else bytes(line)
    if not raw:
        raise ValueError("empty line")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("line is not a JSON object")

    common = {
        "type": _string(data, "type"),
        "uuid": _string(data, "uuid"),
        "session_id": _string(data, "sessionId"),
        "cwd": _string(data, "cwd"),
        "timestamp": _parse_timestamp(data.get("timestamp")),
        "version": _string(data, "version"),
    }

    kind = common["type"]
    if kind == "assistant":
        message = _object(data, "message")
        usage = _object(message, "usage")
        return AssistantEvent(
            **common,
            model=_string(message, "model"),
            in_tokens=_integer(usage, "input_tokens"),
            out_tokens=_integer(usage, "output_tokens"),
            cache_read_tokens=_integer(usage, "cache_read_input_tokens"),
            cache_create_tokens=_integer(usage, "cache_creation_input_tokens"),
        )
    if kind == "user":
        return UserEvent(**common)
    if kind == "":
        raise ValueError("missing type field")
    return UnknownEvent(**common, raw=raw)


def _split_version(version: str) -> tuple[int, int, int]:
    parts = version.split(".", 2)
    numbers = [0, 0, 0]
    for position, part in enumerate(parts[:3]):
        digits = _LEADING_DIGITS_RE.match(part).group(0)
        numbers[position] = int(digits) if digits else 0
    return numbers[0], numbers[1], numbers[2]


def compare_versions(a: str, b: str) -> int:
    """Compare two ``X.Y.Z`` strings; missing or non-numeric parts count as 0.

    Returns -1, 0 or 1.
    """
    left, right = _split_version(a), _split_version(b)
    return (left > right) - (left < right)


def version_in_range(version: str) -> bool:
    """Report whether ``version`` lies in the supported half-open range.

    An empty version is treated as supported.
    """
    if not version:
        return True
    return (
        compare_versions(MIN_SUPPORTED_VERSION, version) <= 0
        and compare_versions(version, MAX_SUPPORTED_VERSION) < 0
    )