"""Discover currently active sessions from the projects directory.

Every ``<project-dir>/<session>.jsonl`` file modified recently enough is
reported as a live session and classified as working or waiting. Sidecar
files written by hooks (one ``*.json`` per session) take precedence over the
mtime heuristic and keep sessions visible when their transcript goes stale.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from pathlib import Path
from typing import Callable

__all__ = [
    "State",
    "Session",
    "ScanConfig",
    "scan",
    "classify",
    "read_last_event_type",
    "decode_project_path",
    "project_display_name",
]

_DEFAULT_WORKING_WINDOW = timedelta(seconds=8)
_DEFAULT_ACTIVE_WINDOW = timedelta(minutes=30)
_TAIL_SIZE = 8 * 1024

_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)


class State(IntEnum):
    """How a live session appears to be behaving right now."""

    IDLE = 0
    WAITING = 1
    WORKING = 2

    def __str__(self) -> str:
        return self.name.lower()

    @classmethod
    def from_string(cls, text: str) -> "State":
        """Map ``"working"``/``"waiting"`` to a state; anything else is idle."""
        return {"working": cls.WORKING, "waiting": cls.WAITING}.get(text, cls.IDLE)


@dataclass
class Session:
    """A single live session."""

    session_id: str
    project_name: str = ""
    project_path: str = ""
    file: str = ""
    mod_time: datetime | None = None
    last_event: str = ""
    state: State = State.IDLE


@dataclass
class ScanConfig:
    """Tuning for the activity heuristic; unset or non-positive windows use defaults."""

    working_window: timedelta | None = None
    active_window: timedelta | None = None
    live_dir: str | Path | None = None
    now: Callable[[], datetime] | None = None

    def resolved_working_window(self) -> timedelta:
        window = self.working_window
        if window is None or window <= timedelta(0):
            return _DEFAULT_WORKING_WINDOW
        return window

    def resolved_active_window(self) -> timedelta:
        window = self.active_window
        if window is None or window <= timedelta(0):
            return _DEFAULT_ACTIVE_WINDOW
        return window

    def current_time(self) -> datetime:
        if self.now is None:
            return datetime.now(timezone.utc)
        return self.now()


@dataclass(frozen=True)
class _Sidecar:
    session_id: str
    project_path: str
    state: str
    last_event: str
    updated_at: datetime


def _parse_rfc3339(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    match = _TIMESTAMP_RE.match(value)
    if not match:
        return None
    base, fraction, zone = match.groups()
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    text += "+00:00" if zone == "Z" else zone
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _string_field(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return ""
    return value if isinstance(value, str) else None


def _read_sidecar(path: Path) -> _Sidecar | None:
    try:
        data = json.loads(path.read_bytes())
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    fields = {
        key: _string_field(data, key)
        for key in ("session_id", "project_path", "state", "last_event")
    }
    if any(value is None for value in fields.values()) or not fields["session_id"]:
        return None
    updated_at = _parse_rfc3339(data.get("updated_at"))
    if updated_at is None:
        return None
    return _Sidecar(updated_at=updated_at, **fields)


def _load_sidecars(directory: str | Path | None, cutoff: datetime) -> dict[str, _Sidecar]:
    if not directory:
        return {}
    try:
        entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
    except OSError:
        return {}
    sidecars: dict[str, _Sidecar] = {}
    for entry in entries:
        if not entry.name.endswith(".json") or entry.is_dir():
            continue
        sidecar = _read_sidecar(Path(entry.path))
        if sidecar is None or sidecar.updated_at < cutoff:
            continue
        sidecars[sidecar.session_id] = sidecar
    return sidecars


def _base_name(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _session_from_sidecar(sidecar: _Sidecar) -> Session:
    return Session(
        session_id=sidecar.session_id,
        project_path=sidecar.project_path,
        project_name=_base_name(sidecar.project_path),
        mod_time=sidecar.updated_at,
        last_event=sidecar.last_event,
        state=State.from_string(sidecar.state),
    )


def _sorted_newest_first(sessions: list[Session]) -> list[Session]:
    return sorted(sessions, key=lambda session: session.mod_time, reverse=True)


def scan(root: str | Path, config: ScanConfig | None = None) -> list[Session]:
    """List live sessions under ``root``, most recently modified first.

    A missing ``root`` is not an error: only sidecar-backed sessions are
    returned then. Other failures to list ``root`` raise OSError.
    """
    config = config or ScanConfig()
    now = config.current_time()
    cutoff = now - config.resolved_active_window()
    working_cutoff = now - config.resolved_working_window()

    sidecars = _load_sidecars(config.live_dir, cutoff)

    try:
        project_entries = sorted(os.scandir(root), key=lambda entry: entry.name)
    except FileNotFoundError:
        return _sorted_newest_first([_session_from_sidecar(sc) for sc in sidecars.values()])

    sessions: list[Session] = []
    seen: set[str] = set()
    for project in project_entries:
        if not project.is_dir():
            continue
        try:
            files = sorted(os.scandir(project.path), key=lambda entry: entry.name)
        except OSError:
            continue
        for entry in files:
            if entry.is_dir() or not entry.name.endswith(".jsonl"):
                continue
            try:
                mtime = datetime.fromtimestamp(entry.stat().st_mtime, tz=timezone.utc)
            except OSError:
                continue
            if mtime < cutoff:
                continue
            session_id = entry.name[: -len(".jsonl")]
            last_type = read_last_event_type(entry.path)
            session = Session(
                session_id=session_id,
                project_name=project_display_name(project.name),
                project_path=decode_project_path(project.name),
                file=entry.path,
                mod_time=mtime,
                last_event=last_type,
                state=classify(mtime, last_type, working_cutoff),
            )
            sidecar = sidecars.get(session_id)
            if sidecar is not None:
                session.state = State.from_string(sidecar.state)
                session.last_event = sidecar.last_event
            seen.add(session_id)
            sessions.append(session)

    sessions.extend(
        _session_from_sidecar(sidecar)
        for session_id, sidecar in sidecars.items()
        if session_id not in seen
    )
    return _sorted_newest_first(sessions)


def classify(mtime: datetime, last_type: str, working_cutoff: datetime) -> State:
    """Working if written after ``working_cutoff`` or the last event is a user turn, else waiting."""
    if mtime > working_cutoff or last_type == "user":
        return State.WORKING
    return State.WAITING


def read_last_event_type(path: str | Path) -> str:
    """Return the ``type`` of the last JSON line in the file's tail, or "" on any failure."""
    try:
        with open(path, "rb") as handle:
            size = os.fstat(handle.fileno()).st_size
            handle.seek(max(0, size - _TAIL_SIZE))
            data = handle.read()
    except OSError:
        return ""
    for line in reversed(data.split(b"\n")):
        line = line.strip()
        if not line:
            continue
        try:
            head = json.loads(line)
        except ValueError:
            continue
        if isinstance(head, dict):
            kind = head.get("type")
            if isinstance(kind, str) and kind:
                return kind
    return ""


def decode_project_path(name: str) -> str:
    """Turn an encoded directory name back into a path: ``-home-me-foo`` → ``/home/me/foo``."""
    if not name:
        return ""
    if name.startswith("-"):
        return "/" + name[1:].replace("-", "/")
    return name.replace("-", "/")


def project_display_name(name: str) -> str:
    """The last element of the decoded path, or ``name`` itself when there is none."""
    base = _base_name(decode_project_path(name))
    if base in (".", "/", ""):
        return name
    return base