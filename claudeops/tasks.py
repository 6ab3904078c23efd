"""Track the user's current task through a JSON sidecar file.

The sidecar holds ``id``, ``name``, ``started_at`` and ``max_age_seconds``.
Events are attributed to the current task until it is stopped or its
maximum age runs out.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from claudeops.store import Store, _format_ts, _parse_ts

__all__ = ["Task", "Tracker", "DEFAULT_MAX_AGE"]

DEFAULT_MAX_AGE = timedelta(hours=4)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


@dataclass
class Task:
    """A named task with a start time and a maximum active age."""

    id: str
    name: str
    started_at: datetime
    max_age: timedelta = DEFAULT_MAX_AGE

    @property
    def max_age_seconds(self) -> int:
        return int(self.max_age.total_seconds())


def _task_from_json(text: bytes) -> Task:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("task sidecar is not a JSON object")
    task_id = data.get("id") or ""
    name = data.get("name") or ""
    if not isinstance(task_id, str) or not isinstance(name, str):
        raise ValueError("task id and name must be strings")
    raw_start = data.get("started_at")
    if raw_start is None:
        started_at = _ZERO_TIME
    else:
        started_at = _parse_ts(raw_start)
        if started_at is None:
            raise ValueError(f"invalid started_at: {raw_start!r}")
    seconds = data.get("max_age_seconds") or 0
    if isinstance(seconds, bool) or not isinstance(seconds, int):
        raise ValueError("max_age_seconds must be an integer")
    max_age = timedelta(seconds=seconds) if seconds > 0 else DEFAULT_MAX_AGE
    return Task(id=task_id, name=name, started_at=started_at, max_age=max_age)


def _task_to_json(task: Task) -> str:
    return json.dumps(
        {
            "id": task.id,
            "name": task.name,
            "started_at": _format_ts(task.started_at),
            "max_age_seconds": task.max_age_seconds,
        },
        indent=2,
    )


class Tracker:
    """Reads and writes the current-task sidecar and records tasks in a store."""

    def __init__(self, sidecar: str | Path, store: Store | None = None):
        self.path = Path(sidecar)
        self.store = store
        self._lock = threading.Lock()
        self._current: Task | None = None

    def load(self) -> None:
        """Read the sidecar into memory; an absent file clears the current task."""
        try:
            text = self.path.read_bytes()
        except FileNotFoundError:
            with self._lock:
                self._current = None
            return
        task = _task_from_json(text)
        with self._lock:
            self._current = task

    def current(self) -> Task | None:
        """The active task, re-read from disk so external edits are seen."""
        try:
            self.load()
        except (OSError, ValueError):
            pass
        with self._lock:
            return None if self._current is None else replace(self._current)

    def start(self, name: str) -> Task:
        """Begin a new task, stopping any task already running."""
        if not name:
            raise ValueError("task name required")
        if self.current() is not None:
            self.stop()
        task = Task(
            id=str(uuid.uuid4()),
            name=name,
            started_at=datetime.now(timezone.utc),
        )
        self._write(task)
        if self.store is not None:
            self.store.upsert_task(task.id, task.name, task.started_at, task.max_age)
        with self._lock:
            self._current = task
        return replace(task)

    def stop(self) -> None:
        """End the current task: remove the sidecar and stamp its end time."""
        with self._lock:
            task, self._current = self._current, None
        if task is None:
            self.load()
            with self._lock:
                task, self._current = self._current, None
        self.path.unlink(missing_ok=True)
        if task is not None and self.store is not None:
            self.store.end_task(task.id, datetime.now(timezone.utc))

    def resolve(self, session_id: str, ts: datetime) -> str | None:
        """The id of the task an event at ``ts`` belongs to, or None.

        An expired task is stopped as a side effect.
        """
        task = self.current()
        if task is None:
            return None
        if ts > task.started_at + task.max_age:
            try:
                self.stop()
            except (OSError, ValueError, sqlite3.Error):
                pass
            return None
        return task.id

    def _write(self, task: Task) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(_task_to_json(task))