"""Expose usage data as tools over the Model Context Protocol.

The server speaks newline-delimited JSON-RPC 2.0 on a pair of text streams,
normally stdin and stdout of a process started by an MCP client.
"""

from __future__ import annotations

import json
import math
import sqlite3
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, TextIO

from claudeops.breakdowns import (
    hourly_for_session,
    models_for_session,
    per_model_aggregates,
    session_agg_by_id,
)
from claudeops.store import NotFoundError, SessionAgg, Store

__all__ = [
    "ToolResult",
    "SummaryResponse",
    "SessionResponse",
    "SessionDetailResponse",
    "ModelResponse",
    "HourlyResponse",
    "ProjectResponse",
    "DailyResponse",
    "Server",
    "cache_ratio",
    "format_time",
    "clamp",
]

SERVER_NAME = "claudeops"
SERVER_VERSION = "1.0.0"
_SUPPORTED_PROTOCOLS = ("2024-11-05", "2025-03-26", "2025-06-18")
_LATEST_PROTOCOL = _SUPPORTED_PROTOCOLS[-1]

_PARSE_ERROR = -32700
_INVALID_REQUEST = -32600
_METHOD_NOT_FOUND = -32601
_INVALID_PARAMS = -32602
_INTERNAL_ERROR = -32603


@dataclass
class ToolResult:
    """The outcome of a tool call: a text payload, flagged when it is an error."""

    text: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": [{"type": "text", "text": self.text}],
            "isError": self.is_error,
        }


@dataclass
class SummaryResponse:
    period: str
    events: int
    cost_eur: float
    in_tokens: int
    out_tokens: int
    cache_read_tokens: int
    cache_create_tokens: int
    cache_hit_ratio: float


@dataclass
class SessionResponse:
    session_id: str
    project: str
    cost_eur: float
    events: int
    first_seen: str
    last_seen: str
    duration_seconds: float


@dataclass
class ModelResponse:
    model: str
    events: int
    cost_eur: float
    in_tokens: int
    out_tokens: int
    cache_read_tokens: int
    cache_create_tokens: int
    cache_hit_ratio: float


@dataclass
class HourlyResponse:
    hour: int
    cost_eur: float
    events: int


@dataclass
class SessionDetailResponse:
    session: SessionResponse
    models: list[ModelResponse] = field(default_factory=list)
    hourly: list[HourlyResponse] = field(default_factory=list)


@dataclass
class ProjectResponse:
    project: str
    cost_eur: float


@dataclass
class DailyResponse:
    date: str
    cost_eur: float
    events: int
    sessions: int


def cache_ratio(cache_read: int, in_tokens: int, out_tokens: int) -> float:
    """Fraction of tokens served from cache; 0 when there are no tokens."""
    total = in_tokens + out_tokens + cache_read
    if total == 0:
        return 0.0
    return cache_read / total


def format_time(moment: datetime | None) -> str:
    """RFC 3339 in UTC with whole seconds, or "" for no time."""
    if moment is None:
        return ""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def clamp(value: int, low: int, high: int) -> int:
    """Restrict ``value`` to ``[low, high]``."""
    return max(low, min(value, high))


def _get_int(arguments: dict[str, Any], key: str, default: int) -> int:
    value = arguments.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else default
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def _require_string(arguments: dict[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    return value if isinstance(value, str) else None


def _ok(payload: Any) -> ToolResult:
    return ToolResult(json.dumps(payload))


def _error(message: str) -> ToolResult:
    return ToolResult(message, is_error=True)


def _model_response(agg: Any) -> ModelResponse:
    return ModelResponse(
        model=agg.model,
        events=agg.events,
        cost_eur=agg.cost_eur,
        in_tokens=agg.in_tokens,
        out_tokens=agg.out_tokens,
        cache_read_tokens=agg.cache_read_tokens,
        cache_create_tokens=agg.cache_create_tokens,
        cache_hit_ratio=cache_ratio(agg.cache_read_tokens, agg.in_tokens, agg.out_tokens),
    )


def _session_response(agg: SessionAgg) -> SessionResponse:
    if agg.first_seen is not None and agg.last_seen is not None:
        duration = (agg.last_seen - agg.first_seen).total_seconds()
    else:
        duration = 0.0
    return SessionResponse(
        session_id=agg.session_id,
        project=agg.project_name,
        cost_eur=agg.cost_eur,
        events=agg.events,
        first_seen=format_time(agg.first_seen),
        last_seen=format_time(agg.last_seen),
        duration_seconds=duration,
    )


def _schema(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict:
    schema: dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


_TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "claudeops_summary",
        "description": "Return aggregate usage stats (cost, tokens, cache) for a time period.",
        "inputSchema": _schema(
            {
                "period": {
                    "type": "string",
                    "description": "Time window: today, 7d, or 30d",
                    "enum": ["today", "7d", "30d"],
                }
            },
            ["period"],
        ),
    },
    {
        "name": "claudeops_sessions",
        "description": "List sessions ordered by cost descending.",
        "inputSchema": _schema(
            {
                "limit": {
                    "type": "number",
                    "description": "Max sessions to return (1-100, default 20)",
                }
            }
        ),
    },
    {
        "name": "claudeops_session_detail",
        "description": (
            "Return full detail for a single session: per-model breakdown and hourly activity."
        ),
        "inputSchema": _schema(
            {"session_id": {"type": "string", "description": "The session ID to look up"}},
            ["session_id"],
        ),
    },
    {
        "name": "claudeops_projects",
        "description": "List projects ordered by total cost descending.",
        "inputSchema": _schema(
            {
                "limit": {
                    "type": "number",
                    "description": "Max projects to return (default 20)",
                }
            }
        ),
    },
    {
        "name": "claudeops_models",
        "description": "Return per-model aggregate stats across all time.",
        "inputSchema": _schema(),
    },
    {
        "name": "claudeops_daily",
        "description": "Return per-day cost and activity for the last N days.",
        "inputSchema": _schema(
            {
                "days": {
                    "type": "number",
                    "description": "Number of days to include (1-90, default 30)",
                }
            }
        ),
    },
]


class _RpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class Server:
    """Serves usage tools backed by a :class:`Store`."""

    def __init__(self, store: Store):
        self.store = store
        self._handlers: dict[str, Callable[[dict[str, Any]], ToolResult]] = {
            "claudeops_summary": self.handle_summary,
            "claudeops_sessions": self.handle_sessions,
            "claudeops_session_detail": self.handle_session_detail,
            "claudeops_projects": self.handle_projects,
            "claudeops_models": self.handle_models,
            "claudeops_daily": self.handle_daily,
        }

    def list_tools(self) -> list[dict[str, Any]]:
        """Definitions of every registered tool."""
        return json.loads(json.dumps(_TOOL_DEFINITIONS))

    def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Run a tool by name. Raises KeyError for an unknown tool."""
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(f"tool '{name}' not found")
        return handler(arguments if isinstance(arguments, dict) else {})

    def handle_summary(self, arguments: dict[str, Any]) -> ToolResult:
        period = _require_string(arguments, "period")
        if period is None:
            return _error("period is required (today, 7d, 30d)")
        now = datetime.now(timezone.utc)
        if period == "today":
            since = now.replace(hour=0, minute=0, second=0, microsecond=0)
        elif period == "7d":
            since = now - timedelta(days=7)
        elif period == "30d":
            since = now - timedelta(days=30)
        else:
            return _error("period must be one of: today, 7d, 30d")
        try:
            agg = self.store.aggregates_since(since)
        except sqlite3.Error as exc:
            return _error(f"query failed: {exc}")
        response = SummaryResponse(
            period=period,
            events=agg.events,
            cost_eur=agg.cost_eur,
            in_tokens=agg.in_tokens,
            out_tokens=agg.out_tokens,
            cache_read_tokens=agg.cache_read_tokens,
            cache_create_tokens=agg.cache_create_tokens,
            cache_hit_ratio=cache_ratio(agg.cache_read_tokens, agg.in_tokens, agg.out_tokens),
        )
        return _ok(asdict(response))

    def handle_sessions(self, arguments: dict[str, Any]) -> ToolResult:
        limit = clamp(_get_int(arguments, "limit", 20), 1, 100)
        try:
            sessions = self.store.top_sessions_by_cost(limit, None)
        except sqlite3.Error as exc:
            return _error(f"query failed: {exc}")
        return _ok([asdict(_session_response(agg)) for agg in sessions])

    def handle_session_detail(self, arguments: dict[str, Any]) -> ToolResult:
        session_id = _require_string(arguments, "session_id")
        if session_id is None:
            return _error("session_id is required")
        try:
            agg = session_agg_by_id(self.store, session_id)
        except NotFoundError:
            return _error(f"session not found: {session_id}")
        except sqlite3.Error as exc:
            return _error(f"query failed: {exc}")
        try:
            models = models_for_session(self.store, session_id)
        except sqlite3.Error as exc:
            return _error(f"models query failed: {exc}")
        try:
            hourly = hourly_for_session(self.store, session_id)
        except sqlite3.Error as exc:
            return _error(f"hourly query failed: {exc}")
        response = SessionDetailResponse(
            session=_session_response(agg),
            models=[_model_response(m) for m in models],
            hourly=[HourlyResponse(hour=h.hour, cost_eur=h.cost_eur, events=h.events)
                    for h in hourly],
        )
        return _ok(asdict(response))

    def handle_projects(self, arguments: dict[str, Any]) -> ToolResult:
        limit = clamp(_get_int(arguments, "limit", 20), 1, 100)
        try:
            projects = self.store.top_projects_by_cost(limit, None)
        except sqlite3.Error as exc:
            return _error(f"query failed: {exc}")
        return _ok([asdict(ProjectResponse(project=p.project_name, cost_eur=p.cost_eur))
                    for p in projects])

    def handle_models(self, arguments: dict[str, Any]) -> ToolResult:
        try:
            models = per_model_aggregates(self.store, None)
        except sqlite3.Error as exc:
            return _error(f"query failed: {exc}")
        return _ok([asdict(_model_response(m)) for m in models])

    def handle_daily(self, arguments: dict[str, Any]) -> ToolResult:
        days = clamp(_get_int(arguments, "days", 30), 1, 90)
        try:
            daily = self.store.daily_aggregates_local(days)
        except sqlite3.Error as exc:
            return _error(f"query failed: {exc}")
        return _ok([
            asdict(DailyResponse(
                date=d.date.strftime("%Y-%m-%d"),
                cost_eur=d.cost_eur,
                events=d.events,
                sessions=d.sessions,
            ))
            for d in daily
        ])

    def _dispatch(self, method: str, params: dict[str, Any]) -> Any:
        if method == "initialize":
            requested = params.get("protocolVersion")
            version = requested if requested in _SUPPORTED_PROTOCOLS else _LATEST_PROTOCOL
            return {
                "protocolVersion": version,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            }
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": self.list_tools()}
        if method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str):
                raise _RpcError(_INVALID_PARAMS, "tool name is required")
            try:
                result = self.call_tool(name, params.get("arguments"))
            except KeyError:
                raise _RpcError(_INVALID_PARAMS, f"tool '{name}' not found") from None
            return result.to_dict()
        raise _RpcError(_METHOD_NOT_FOUND, "Method not found")

    def handle_message(self, message: Any) -> dict[str, Any] | None:
        """Answer one JSON-RPC message; notifications get no reply (None)."""
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            request_id = message.get("id") if isinstance(message, dict) else None
            return _rpc_error(request_id, _INVALID_REQUEST, "Invalid Request")
        if "id" not in message:
            return None
        request_id = message["id"]
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}
        try:
            result = self._dispatch(message["method"], params)
        except _RpcError as exc:
            return _rpc_error(request_id, exc.code, exc.message)
        except Exception as exc:  # a failing tool must not bring the server down
            return _rpc_error(request_id, _INTERNAL_ERROR, str(exc))
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def serve(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Read requests line by line until the input ends, writing replies."""
        source = stdin if stdin is not None else sys.stdin
        sink = stdout if stdout is not None else sys.stdout
        for line in source:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError:
                reply = _rpc_error(None, _PARSE_ERROR, "Parse error")
            else:
                reply = self.handle_message(message)
            if reply is not None:
                sink.write(json.dumps(reply) + "\n")
                sink.flush()


def _rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}