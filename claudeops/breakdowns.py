"""Drill-down queries: per-day, per-hour, per-model, per-project and per-session breakdowns."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

from claudeops.store import (
    _SESSION_COLUMNS,
    NotFoundError,
    SessionAgg,
    Store,
    _format_ts,
    _session_agg_from_row,
)

__all__ = [
    "ModelAgg",
    "HourlyAgg",
    "ProjectPeriodAgg",
    "sessions_for_day",
    "models_for_day",
    "hourly_for_day",
    "global_hourly_aggregates",
    "per_model_aggregates",
    "aggregates_by_project_between",
    "session_agg_by_id",
    "models_for_session",
    "hourly_for_session",
]

_MODEL_COLUMNS = """
    COALESCE(model, '(none)'),
    COUNT(*),
    COALESCE(SUM(in_tokens), 0),
    COALESCE(SUM(out_tokens), 0),
    COALESCE(SUM(cache_read_tokens), 0),
    COALESCE(SUM(cache_create_tokens), 0),
    COALESCE(SUM(cost_eur), 0)
"""

_HOURLY_COLUMNS = """
    CAST(strftime('%H', ts, 'localtime') AS INTEGER) AS hour,
    COALESCE(SUM(cost_eur), 0) AS cost,
    COUNT(*) AS events
"""


@dataclass
class ModelAgg:
    """Per-model totals; events without a model are grouped as ``(none)``."""

    model: str
    events: int = 0
    in_tokens: int = 0
    out_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0
    cost_eur: float = 0.0


@dataclass
class HourlyAgg:
    """Totals for one local hour of the day (0-23)."""

    hour: int
    cost_eur: float = 0.0
    events: int = 0


@dataclass
class ProjectPeriodAgg:
    """Per-project totals over a time window."""

    project_name: str
    cost_eur: float = 0.0
    in_tokens: int = 0
    out_tokens: int = 0
    cache_read_tokens: int = 0
    cache_create_tokens: int = 0
    sessions: int = 0


def _day_key(day: date | datetime) -> str:
    return day.strftime("%Y-%m-%d")


def _model_rows(rows: Iterable[tuple[Any, ...]]) -> list[ModelAgg]:
    return [
        ModelAgg(
            model=model,
            events=int(events),
            in_tokens=int(in_tok),
            out_tokens=int(out_tok),
            cache_read_tokens=int(cache_read),
            cache_create_tokens=int(cache_create),
            cost_eur=float(cost),
        )
        for model, events, in_tok, out_tok, cache_read, cache_create, cost in rows
    ]


def _hourly_rows(rows: Iterable[tuple[Any, ...]]) -> list[HourlyAgg]:
    return [
        HourlyAgg(hour=int(hour), cost_eur=float(cost), events=int(events))
        for hour, cost, events in rows
    ]


def sessions_for_day(store: Store, day: date | datetime) -> list[SessionAgg]:
    """Sessions active on a local calendar day, costliest first."""
    rows = store._fetch_all(
        f"""SELECT {_SESSION_COLUMNS}
            FROM events e
            JOIN sessions s ON s.id = e.session_id
            JOIN projects p ON p.id = s.project_id
            WHERE date(e.ts, 'localtime') = ?
            GROUP BY e.session_id, p.name
            ORDER BY c DESC""",
        (_day_key(day),),
    )
    return [_session_agg_from_row(row) for row in rows]


def models_for_day(store: Store, day: date | datetime) -> list[ModelAgg]:
    """Per-model totals for a local calendar day, costliest first."""
    rows = store._fetch_all(
        f"""SELECT {_MODEL_COLUMNS}
            FROM events
            WHERE date(ts, 'localtime') = ?
            GROUP BY COALESCE(model, '(none)')
            ORDER BY COALESCE(SUM(cost_eur), 0) DESC""",
        (_day_key(day),),
    )
    return _model_rows(rows)


def hourly_for_day(store: Store, day: date | datetime) -> list[HourlyAgg]:
    """Per-hour totals for a local calendar day; only active hours, ascending."""
    rows = store._fetch_all(
        f"""SELECT {_HOURLY_COLUMNS}
            FROM events
            WHERE date(ts, 'localtime') = ?
            GROUP BY hour
            ORDER BY hour ASC""",
        (_day_key(day),),
    )
    return _hourly_rows(rows)


def global_hourly_aggregates(store: Store, since: datetime | None = None) -> list[HourlyAgg]:
    """Per-hour totals across all days since ``since`` (None: all time), ascending."""
    if since is None:
        rows = store._fetch_all(
            f"""SELECT {_HOURLY_COLUMNS}
                FROM events
                GROUP BY hour
                ORDER BY hour ASC"""
        )
    else:
        rows = store._fetch_all(
            f"""SELECT {_HOURLY_COLUMNS}
                FROM events
                WHERE ts >= ?
                GROUP BY hour
                ORDER BY hour ASC""",
            (_format_ts(since),),
        )
    return _hourly_rows(rows)


def per_model_aggregates(store: Store, since: datetime | None = None) -> list[ModelAgg]:
    """Per-model totals since ``since`` (None: all time), by cost then event count."""
    rows = store._fetch_all(
        f"""SELECT {_MODEL_COLUMNS}
            FROM events
            WHERE ts >= ?
            GROUP BY COALESCE(model, '(none)')
            ORDER BY 7 DESC, 2 DESC""",
        (_format_ts(since),),
    )
    return _model_rows(rows)


def aggregates_by_project_between(
    store: Store, start: datetime, end: datetime
) -> list[ProjectPeriodAgg]:
    """Per-project totals for events with start <= ts < end, costliest first."""
    rows = store._fetch_all(
        """SELECT p.name,
                  COALESCE(SUM(e.cost_eur), 0),
                  COALESCE(SUM(e.in_tokens), 0),
                  COALESCE(SUM(e.out_tokens), 0),
                  COALESCE(SUM(e.cache_read_tokens), 0),
                  COALESCE(SUM(e.cache_create_tokens), 0),
                  COUNT(DISTINCT e.session_id)
             FROM events e
             JOIN sessions s2 ON s2.id = e.session_id
             JOIN projects p  ON p.id  = s2.project_id
            WHERE e.ts >= ? AND e.ts < ?
            GROUP BY p.name
            ORDER BY 2 DESC""",
        (_format_ts(start), _format_ts(end)),
    )
    return [
        ProjectPeriodAgg(
            project_name=name,
            cost_eur=float(cost),
            in_tokens=int(in_tok),
            out_tokens=int(out_tok),
            cache_read_tokens=int(cache_read),
            cache_create_tokens=int(cache_create),
            sessions=int(sessions),
        )
        for name, cost, in_tok, out_tok, cache_read, cache_create, sessions in rows
    ]


def session_agg_by_id(store: Store, session_id: str) -> SessionAgg:
    """Totals for one session. Raises NotFoundError when it has no events."""
    row = store._fetch_one(
        f"""SELECT {_SESSION_COLUMNS}
            FROM events e
            JOIN sessions s ON s.id = e.session_id
            JOIN projects p ON p.id = s.project_id
            WHERE e.session_id = ?
            GROUP BY e.session_id, p.name""",
        (session_id,),
    )
    if row is None:
        raise NotFoundError(f"session not found: {session_id}")
    return _session_agg_from_row(row)


def models_for_session(store: Store, session_id: str) -> list[ModelAgg]:
    """Per-model totals for one session, costliest first."""
    rows = store._fetch_all(
        f"""SELECT {_MODEL_COLUMNS}
            FROM events
            WHERE session_id = ?
            GROUP BY COALESCE(model, '(none)')
            ORDER BY COALESCE(SUM(cost_eur), 0) DESC""",
        (session_id,),
    )
    return _model_rows(rows)


def hourly_for_session(store: Store, session_id: str) -> list[HourlyAgg]:
    """Per-hour totals for one session; only active hours, ascending."""
    rows = store._fetch_all(
        f"""SELECT {_HOURLY_COLUMNS}
            FROM events
            WHERE session_id = ?
            GROUP BY hour
            ORDER BY hour ASC""",
        (session_id,),
    )
    return _hourly_rows(rows)