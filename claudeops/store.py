"""SQLite persistence for events, sessions, projects, tasks, offsets and config.

Only one process should open a store for writing at a time. Timestamps are
stored as UTC RFC 3339 strings with trailing zeros of the fraction trimmed.
"""

from __future__ import annotations

import os
import re
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable

__all__ = [
    "NotFoundError",
    "EventRecord",
    "Aggregates",
    "SessionAgg",
    "ProjectAgg",
    "TaskAgg",
    "DailyAgg",
    "Store",
    "open_store",
    "open_read_only",
]

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id      INTEGER PRIMARY KEY AUTOINCREMENT,
    cwd     TEXT UNIQUE NOT NULL,
    name    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id          TEXT PRIMARY KEY,
    project_id  INTEGER NOT NULL REFERENCES projects(id),
    first_seen  TEXT NOT NULL,
    last_seen   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    started_at      TEXT NOT NULL,
    ended_at        TEXT,
    max_age_seconds INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    uuid                  TEXT PRIMARY KEY,
    session_id            TEXT NOT NULL REFERENCES sessions(id),
    ts                    TEXT NOT NULL,
    type                  TEXT NOT NULL,
    model                 TEXT,
    in_tokens             INTEGER NOT NULL DEFAULT 0,
    out_tokens            INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens     INTEGER NOT NULL DEFAULT 0,
    cache_create_tokens   INTEGER NOT NULL DEFAULT 0,
    cost_eur              REAL,
    task_id               TEXT REFERENCES tasks(id)
);

CREATE INDEX IF NOT EXISTS idx_events_ts        ON events(ts);
CREATE INDEX IF NOT EXISTS idx_events_session   ON events(session_id);
CREATE INDEX IF NOT EXISTS idx_events_task      ON events(task_id);

CREATE TABLE IF NOT EXISTS file_offsets (
    path   TEXT PRIMARY KEY,
    offset INTEGER NOT NULL,
    size   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS config (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_BUSY_TIMEOUT_SECONDS = 5.0
_ZERO_TIME = "0001-01-01T00:00:00Z"
_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)

_AGGREGATE_COLUMNS = """
    COUNT(*),
    COALESCE(SUM(in_tokens), 0),
    COALESCE(SUM(out_tokens), 0),
    COALESCE(SUM(cache_read_tokens), 0),
    COALESCE(SUM(cache_create_tokens), 0),
    COALESCE(SUM(cost_eur), 0)
"""

_SESSION_COLUMNS = """
    e.session_id, p.name,
    COALESCE(SUM(e.cost_eur), 0) AS c,
    COUNT(e.uuid) AS events,
    COALESCE(SUM(e.in_tokens), 0),
    COALESCE(SUM(e.out_tokens), 0),
    COALESCE(SUM(e.cache_read_tokens), 0),
    COALESCE(SUM(e.cache_create_tokens), 0),
    MIN(e.ts),
    MAX(e.ts)
"""


class NotFoundError(LookupError):
    """Raised when a requested row does not exist."""


@dataclass
class EventRecord:
    """A flat ingested event with token counts split into the four pricing classes."""

    uuid: str = ""
    session_id: str = ""
    cwd: str = ""
    type: str = ""
    model: str = ""
    ts: datetime | None = None
    in_tokens: int = 0
    out_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0


@dataclass
class Aggregates:
    """Totals over a time window."""

    events: int = 0
    in_tokens: int = 0
    out_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0
    cost_eur: float = 0.0


@dataclass
class SessionAgg:
    """Per-session totals."""

    session_id: str
    project_name: str
    cost_eur: float = 0.0
    events: int = 0
    in_tokens: int = 0
    out_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0
    first_seen: datetime | None = None
    last_seen: datetime | None = None


@dataclass
class ProjectAgg:
    """Per-project cost."""

    project_name: str
    cost_eur: float = 0.0


@dataclass
class TaskAgg:
    """Per-task totals, with start and optional end."""

    id: str
    name: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    events: int = 0
    in_tokens: int = 0
    out_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0
    cost_eur: float = 0.0


@dataclass
class DailyAgg:
    """One local calendar day of activity; ``date`` is local midnight."""

    date: datetime
    cost_eur: float = 0.0
    events: int = 0
    sessions: int = 0


def _format_ts(moment: datetime | None) -> str:
    """Render as UTC RFC 3339 with a trimmed fraction; None is the zero time."""
    if moment is None:
        return _ZERO_TIME
    utc = moment.astimezone(timezone.utc)
    text = (
        f"{utc.year:04d}-{utc.month:02d}-{utc.day:02d}"
        f"T{utc.hour:02d}:{utc.minute:02d}:{utc.second:02d}"
    )
    if utc.microsecond:
        text += "." + f"{utc.microsecond:06d}".rstrip("0")
    return text + "Z"


def _parse_ts(value: Any) -> datetime | None:
    """Parse an RFC 3339 string; None when it is not one."""
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


def _session_agg_from_row(row: Iterable[Any]) -> SessionAgg:
    (session_id, project, cost, events, in_tok, out_tok, cache_read, cache_create,
     first, last) = row
    return SessionAgg(
        session_id=session_id,
        project_name=project,
        cost_eur=float(cost),
        events=int(events),
        in_tokens=int(in_tok),
        out_tokens=int(out_tok),
        cache_read_tokens=int(cache_read),
        cache_create_tokens=int(cache_create),
        first_seen=_parse_ts(first),
        last_seen=_parse_ts(last),
    )


def _aggregates_from_row(row: Iterable[Any]) -> Aggregates:
    events, in_tok, out_tok, cache_read, cache_create, cost = row
    return Aggregates(
        events=int(events),
        in_tokens=int(in_tok),
        out_tokens=int(out_tok),
        cache_read_tokens=int(cache_read),
        cache_create_tokens=int(cache_create),
        cost_eur=float(cost),
    )


def _project_name(cwd: str) -> str:
    stripped = cwd.rstrip(os.sep)
    if not stripped:
        return os.sep
    return os.path.basename(stripped)


def _start_of_today_utc() -> datetime:
    now = datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class Store:
    """A SQLite connection with typed queries over the usage schema."""

    def __init__(self, connection: sqlite3.Connection):
        self.connection = connection
        self._lock = threading.RLock()

    def close(self) -> None:
        """Release the database handle."""
        with self._lock:
            self.connection.close()

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _fetch_all(self, sql: str, params: Iterable[Any] = ()) -> list[tuple]:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchall()

    def _fetch_one(self, sql: str, params: Iterable[Any] = ()) -> tuple | None:
        with self._lock:
            return self.connection.execute(sql, tuple(params)).fetchone()

    def _write(self, sql: str, params: Iterable[Any] = ()) -> None:
        with self._lock, self.connection:
            self.connection.execute(sql, tuple(params))

    def insert(
        self,
        event: EventRecord,
        cost_eur: float | None = None,
        task_id: str | None = None,
    ) -> None:
        """Upsert project and session, then write the event; idempotent on uuid."""
        if not (event.uuid and event.session_id and event.cwd):
            raise ValueError("insert: uuid, session_id and cwd are required")
        ts = _format_ts(event.ts)
        with self._lock, self.connection:
            conn = self.connection
            conn.execute(
                """INSERT INTO projects (cwd, name) VALUES (?, ?)
                   ON CONFLICT(cwd) DO UPDATE SET name=excluded.name""",
                (event.cwd, _project_name(event.cwd)),
            )
            (project_id,) = conn.execute(
                "SELECT id FROM projects WHERE cwd = ?", (event.cwd,)
            ).fetchone()
            conn.execute(
                """INSERT INTO sessions (id, project_id, first_seen, last_seen)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET last_seen = excluded.last_seen""",
                (event.session_id, project_id, ts, ts),
            )
            conn.execute(
                """INSERT INTO events (uuid, session_id, ts, type, model, in_tokens,
                       out_tokens, cache_read_tokens, cache_create_tokens, cost_eur, task_id)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(uuid) DO NOTHING""",
                (
                    event.uuid, event.session_id, ts, event.type, event.model or None,
                    event.in_tokens, event.out_tokens, event.cache_read_tokens,
                    event.cache_create_tokens, cost_eur, task_id or None,
                ),
            )

    def save_offset(self, path: str, offset: int, size: int) -> None:
        """Record how many bytes of a file have been processed."""
        self._write(
            """INSERT INTO file_offsets (path, offset, size) VALUES (?, ?, ?)
               ON CONFLICT(path) DO UPDATE SET offset=excluded.offset, size=excluded.size""",
            (path, offset, size),
        )

    def load_offsets(self) -> dict[str, int]:
        """The persisted offset of every known file."""
        rows = self._fetch_all("SELECT path, offset FROM file_offsets")
        return {path: int(offset) for path, offset in rows}

    def config_get(self, key: str) -> str | None:
        """The stored value for ``key``, or None when absent."""
        row = self._fetch_one("SELECT value FROM config WHERE key = ?", (key,))
        return None if row is None else row[0]

    def config_set(self, key: str, value: str) -> None:
        """Insert or replace a config value."""
        self._write(
            """INSERT INTO config(key, value) VALUES(?, ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (key, value),
        )

    def aggregates_for_today(self) -> Aggregates:
        """Totals for events since the start of the current UTC day."""
        return self.aggregates_since(_start_of_today_utc())

    def aggregates_since(self, since: datetime | None) -> Aggregates:
        """Totals for events with ts >= since (None means all time)."""
        row = self._fetch_one(
            f"SELECT {_AGGREGATE_COLUMNS} FROM events WHERE ts >= ?",
            (_format_ts(since),),
        )
        return _aggregates_from_row(row)

    def aggregates_between(self, start: datetime, end: datetime) -> Aggregates:
        """Totals for events with start <= ts < end."""
        row = self._fetch_one(
            f"SELECT {_AGGREGATE_COLUMNS} FROM events WHERE ts >= ? AND ts < ?",
            (_format_ts(start), _format_ts(end)),
        )
        return _aggregates_from_row(row)

    def top_sessions_by_cost(self, limit: int, since: datetime | None = None) -> list[SessionAgg]:
        """The ``limit`` costliest sessions for events since ``since`` (None: all)."""
        where, params = "", []
        if since is not None:
            where, params = "WHERE e.ts >= ?", [_format_ts(since)]
        rows = self._fetch_all(
            f"""SELECT {_SESSION_COLUMNS}
                FROM events e
                JOIN sessions s ON s.id = e.session_id
                JOIN projects p ON p.id = s.project_id
                {where}
                GROUP BY e.session_id, p.name
                ORDER BY c DESC
                LIMIT ?""",
            [*params, limit],
        )
        return [_session_agg_from_row(row) for row in rows]

    def top_projects_by_cost(self, limit: int, since: datetime | None = None) -> list[ProjectAgg]:
        """The ``limit`` costliest projects for events since ``since`` (None: all)."""
        rows = self._fetch_all(
            """SELECT p.name, COALESCE(SUM(e.cost_eur), 0) AS c
               FROM events e
               JOIN sessions s ON s.id = e.session_id
               JOIN projects p ON p.id = s.project_id
               WHERE e.ts >= ?
               GROUP BY p.name
               ORDER BY c DESC
               LIMIT ?""",
            (_format_ts(since), limit),
        )
        return [ProjectAgg(project_name=name, cost_eur=float(cost)) for name, cost in rows]

    def upsert_task(
        self, task_id: str, name: str, started_at: datetime, max_age: timedelta
    ) -> None:
        """Create a task row, or rename it if it already exists."""
        self._write(
            """INSERT INTO tasks (id, name, started_at, max_age_seconds)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET name=excluded.name""",
            (task_id, name, _format_ts(started_at), int(max_age.total_seconds())),
        )

    def end_task(self, task_id: str, ended_at: datetime) -> None:
        """Stamp a task's end time."""
        self._write(
            "UPDATE tasks SET ended_at = ? WHERE id = ?",
            (_format_ts(ended_at), task_id),
        )

    def task_aggregates(self) -> list[TaskAgg]:
        """Per-task totals, newest task first."""
        rows = self._fetch_all(
            """SELECT t.id, t.name, t.started_at, t.ended_at,
                      COUNT(e.uuid),
                      COALESCE(SUM(e.in_tokens), 0),
                      COALESCE(SUM(e.out_tokens), 0),
                      COALESCE(SUM(e.cache_read_tokens), 0),
                      COALESCE(SUM(e.cache_create_tokens), 0),
                      COALESCE(SUM(e.cost_eur), 0)
               FROM tasks t
               LEFT JOIN events e ON e.task_id = t.id
               GROUP BY t.id
               ORDER BY t.started_at DESC"""
        )
        return [
            TaskAgg(
                id=task_id,
                name=name,
                started_at=_parse_ts(started),
                ended_at=_parse_ts(ended),
                events=int(events),
                in_tokens=int(in_tok),
                out_tokens=int(out_tok),
                cache_read_tokens=int(cache_read),
                cache_create_tokens=int(cache_create),
                cost_eur=float(cost),
            )
            for (task_id, name, started, ended, events, in_tok, out_tok,
                 cache_read, cache_create, cost) in rows
        ]

    def daily_aggregates_local(self, days: int) -> list[DailyAgg]:
        """One row per local day for the last ``days`` days, oldest first.

        Days without activity are included as zeros; the last row is today.
        """
        if days <= 0:
            return []
        rows = self._fetch_all(
            """SELECT date(ts, 'localtime')      AS day,
                      COALESCE(SUM(cost_eur), 0) AS cost,
                      COUNT(*)                   AS events,
                      COUNT(DISTINCT session_id) AS sessions
               FROM events
               WHERE date(ts, 'localtime') >= date('now', 'localtime', ?)
               GROUP BY day
               ORDER BY day ASC""",
            (f"-{days - 1} days",),
        )
        by_day = {day: (float(cost), int(events), int(sessions))
                  for day, cost, events, sessions in rows}

        today = datetime.now().date()
        series = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            cost, events, sessions = by_day.get(day.isoformat(), (0.0, 0, 0))
            midnight = datetime(day.year, day.month, day.day).astimezone()
            series.append(DailyAgg(date=midnight, cost_eur=cost, events=events,
                                   sessions=sessions))
        return series


def open_store(path: str | Path) -> Store:
    """Create or open the database file and apply the schema (WAL, foreign keys on)."""
    connection = sqlite3.connect(
        str(path), timeout=_BUSY_TIMEOUT_SECONDS, check_same_thread=False
    )
    try:
        connection.execute("PRAGMA journal_mode=WAL")
        connection.execute("PRAGMA foreign_keys=ON")
        connection.executescript(SCHEMA_SQL)
    except sqlite3.Error:
        connection.close()
        raise
    return Store(connection)


def open_read_only(path: str | Path) -> Store:
    """Open an existing database read-only, without migrations.

    Raises sqlite3.OperationalError when the file does not exist.
    """
    uri = Path(path).absolute().as_uri() + "?mode=ro"
    connection = sqlite3.connect(
        uri, uri=True, timeout=_BUSY_TIMEOUT_SECONDS, check_same_thread=False
    )
    try:
        connection.execute("SELECT 1").fetchone()
    except sqlite3.Error:
        connection.close()
        raise
    return Store(connection)