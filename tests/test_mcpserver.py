import io
import json
from datetime import datetime, timedelta, timezone

import pytest

from claudeops.mcpserver import (
    Server,
    ToolResult,
    cache_ratio,
    clamp,
    format_time,
)
from claudeops.store import EventRecord, open_store


@pytest.fixture
def store(tmp_path):
    s = open_store(tmp_path / "test.db")
    yield s
    s.close()


@pytest.fixture
def empty_store(tmp_path):
    s = open_store(tmp_path / "empty.db")
    yield s
    s.close()


def insert_event(store, uuid, session, cwd, model, ts, cost):
    ev = EventRecord(
        uuid=uuid,
        session_id=session,
        cwd=cwd,
        type="assistant",
        model=model,
        ts=ts,
        in_tokens=100,
        out_tokens=200,
        cache_read_tokens=50,
        cache_create_tokens=30,
    )
    store.insert(ev, cost)


def payload(result: ToolResult):
    return json.loads(result.text)


# --- helpers ---------------------------------------------------------------

def test_cache_ratio_zero_tokens():
    assert cache_ratio(0, 0, 0) == 0


def test_cache_ratio_fraction():
    assert cache_ratio(50, 25, 25) == pytest.approx(0.5)


def test_format_time_none_is_empty():
    assert format_time(None) == ""


def test_format_time_utc():
    moment = datetime(2026, 4, 9, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert format_time(moment) == "2026-04-09T12:00:00Z"


def test_format_time_converts_offset():
    moment = datetime(2026, 4, 9, 14, 30, tzinfo=timezone(timedelta(hours=2)))
    assert format_time(moment) == "2026-04-09T12:30:00Z"


@pytest.mark.parametrize("value,expected", [(-5, 1), (1, 1), (50, 50), (200, 90)])
def test_clamp(value, expected):
    assert clamp(value, 1, 90) == expected


# --- summary ---------------------------------------------------------------

@pytest.fixture
def summary_server(store):
    now = datetime.now(timezone.utc)
    insert_event(store, "u1", "s1", "/p/a", "claude-opus-4-6", now, 1.5)
    insert_event(store, "u2", "s1", "/p/a", "claude-opus-4-6", now - timedelta(hours=1), 2.5)
    return Server(store)


@pytest.mark.parametrize("period", ["today", "7d", "30d"])
def test_summary_periods(summary_server, period):
    result = summary_server.handle_summary({"period": period})
    assert not result.is_error
    assert payload(result)["period"] == period


def test_summary_30d_totals(summary_server):
    data = payload(summary_server.handle_summary({"period": "30d"}))
    assert data["events"] == 2
    assert data["cost_eur"] == pytest.approx(4.0)
    assert data["in_tokens"] == 200
    assert 0 <= data["cache_hit_ratio"] <= 1


def test_summary_missing_period(summary_server):
    assert summary_server.handle_summary({}).is_error


def test_summary_invalid_period(summary_server):
    result = summary_server.handle_summary({"period": "1y"})
    assert result.is_error
    assert "today, 7d, 30d" in result.text


# --- sessions --------------------------------------------------------------

@pytest.fixture
def sessions_server(store):
    now = datetime.now(timezone.utc)
    insert_event(store, "s1", "sess-a", "/p/alpha", "claude-opus-4-6", now, 3.0)
    insert_event(store, "s2", "sess-b", "/p/beta", "claude-opus-4-6", now, 1.0)
    return Server(store)


def test_sessions_ordered_by_cost(sessions_server):
    data = payload(sessions_server.handle_sessions({}))
    assert len(data) == 2
    assert data[0]["cost_eur"] >= data[1]["cost_eur"]
    assert data[0]["session_id"] == "sess-a"
    assert data[0]["project"] == "alpha"


def test_sessions_limit_one(sessions_server):
    data = payload(sessions_server.handle_sessions({"limit": 1.0}))
    assert len(data) == 1


def test_sessions_empty_store(empty_store):
    result = Server(empty_store).handle_sessions({})
    assert not result.is_error
    assert payload(result) == []


# --- session detail --------------------------------------------------------

@pytest.fixture
def detail_server(store):
    now = datetime.now(timezone.utc)
    insert_event(store, "d1", "sess-detail", "/p/x", "claude-opus-4-6", now, 2.0)
    insert_event(store, "d2", "sess-detail", "/p/x", "claude-sonnet-4-6",
                 now + timedelta(hours=1), 1.0)
    return Server(store)


def test_session_detail_found(detail_server):
    result = detail_server.handle_session_detail({"session_id": "sess-detail"})
    assert not result.is_error
    data = payload(result)
    assert data["session"]["session_id"] == "sess-detail"
    assert data["session"]["events"] == 2
    assert len(data["models"]) >= 1
    assert data["session"]["duration_seconds"] > 0
    assert len(data["hourly"]) >= 1


def test_session_detail_missing_id(detail_server):
    assert detail_server.handle_session_detail({}).is_error


def test_session_detail_not_found(detail_server):
    result = detail_server.handle_session_detail({"session_id": "no-such-session"})
    assert result.is_error
    assert result.text == "session not found: no-such-session"


# --- projects --------------------------------------------------------------

def test_projects_ordered_by_cost(store):
    now = datetime.now(timezone.utc)
    insert_event(store, "p1", "sess-1", "/work/alpha", "model", now, 5.0)
    insert_event(store, "p2", "sess-2", "/work/beta", "model", now, 2.0)
    insert_event(store, "p3", "sess-3", "/work/gamma", "model", now, 8.0)
    data = payload(Server(store).handle_projects({}))
    assert len(data) == 3
    assert data[0]["cost_eur"] >= data[1]["cost_eur"]
    assert data[0]["project"] == "gamma"


def test_projects_empty_store(empty_store):
    assert payload(Server(empty_store).handle_projects({})) == []


# --- models ----------------------------------------------------------------

def test_models_aggregates(store):
    now = datetime.now(timezone.utc)
    insert_event(store, "m1", "sess-1", "/p/a", "claude-opus-4-6", now, 3.0)
    insert_event(store, "m2", "sess-1", "/p/a", "claude-sonnet-4-6", now, 1.0)
    insert_event(store, "m3", "sess-2", "/p/b", "claude-opus-4-6", now, 2.0)
    data = payload(Server(store).handle_models({}))
    assert len(data) == 2
    assert data[0]["model"] == "claude-opus-4-6"
    assert data[0]["cost_eur"] == pytest.approx(5.0)
    assert 0 <= data[0]["cache_hit_ratio"] <= 1


def test_models_empty_store(empty_store):
    assert payload(Server(empty_store).handle_models({})) == []


# --- daily -----------------------------------------------------------------

@pytest.fixture
def daily_server(store):
    insert_event(store, "day1", "sess-1", "/p/a", "model", datetime.now().astimezone(), 2.0)
    return Server(store)


def test_daily_contiguous(daily_server):
    data = payload(daily_server.handle_daily({"days": 7.0}))
    assert len(data) == 7
    last = data[-1]
    assert last["cost_eur"] == pytest.approx(2.0)
    assert len(last["date"]) == 10
    assert last["date"] == datetime.now().strftime("%Y-%m-%d")


def test_daily_clamps_minimum(daily_server):
    assert len(payload(daily_server.handle_daily({"days": -5.0}))) == 1


def test_daily_clamps_maximum(daily_server):
    assert len(payload(daily_server.handle_daily({"days": 200.0}))) == 90


def test_daily_default(daily_server):
    assert len(payload(daily_server.handle_daily({}))) == 30


# --- tool registry and protocol -------------------------------------------

def test_list_tools_names(empty_store):
    names = [tool["name"] for tool in Server(empty_store).list_tools()]
    assert names == [
        "claudeops_summary",
        "claudeops_sessions",
        "claudeops_session_detail",
        "claudeops_projects",
        "claudeops_models",
        "claudeops_daily",
    ]


def test_summary_schema_requires_period(empty_store):
    tools = {tool["name"]: tool for tool in Server(empty_store).list_tools()}
    schema = tools["claudeops_summary"]["inputSchema"]
    assert schema["required"] == ["period"]
    assert schema["properties"]["period"]["enum"] == ["today", "7d", "30d"]


def test_call_tool_unknown(empty_store):
    with pytest.raises(KeyError):
        Server(empty_store).call_tool("nope", {})


def test_call_tool_dispatches(empty_store):
    result = Server(empty_store).call_tool("claudeops_models", None)
    assert payload(result) == []


def test_handle_message_initialize(empty_store):
    reply = Server(empty_store).handle_message(
        {"jsonrpc": "2.0", "id": 1, "method": "initialize",
         "params": {"protocolVersion": "2024-11-05"}}
    )
    assert reply["id"] == 1
    assert reply["result"]["protocolVersion"] == "2024-11-05"
    assert reply["result"]["serverInfo"] == {"name": "claudeops", "version": "1.0.0"}
    assert reply["result"]["capabilities"] == {"tools": {"listChanged": False}}


def test_handle_message_notification_has_no_reply(empty_store):
    reply = Server(empty_store).handle_message(
        {"jsonrpc": "2.0", "method": "notifications/initialized"}
    )
    assert reply is None


def test_handle_message_unknown_method(empty_store):
    reply = Server(empty_store).handle_message({"jsonrpc": "2.0", "id": 2, "method": "x/y"})
    assert reply["error"]["code"] == -32601


def test_handle_message_unknown_tool(empty_store):
    reply = Server(empty_store).handle_message(
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "nope"}}
    )
    assert reply["error"]["code"] == -32602


def test_handle_message_tool_call_error_result(empty_store):
    reply = Server(empty_store).handle_message(
        {"jsonrpc": "2.0", "id": 4, "method": "tools/call",
         "params": {"name": "claudeops_summary", "arguments": {}}}
    )
    assert reply["result"]["isError"] is True
    assert reply["result"]["content"][0]["type"] == "text"


def test_serve_round_trip(empty_store):
    lines = "\n".join([
        json.dumps({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}),
        json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
        "{not json",
        json.dumps({"jsonrpc": "2.0", "id": 2, "method": "tools/call",
                    "params": {"name": "claudeops_projects", "arguments": {}}}),
    ]) + "\n"
    out = io.StringIO()
    Server(empty_store).serve(io.StringIO(lines), out)
    replies = [json.loads(line) for line in out.getvalue().splitlines()]
    assert len(replies) == 3
    assert len(replies[0]["result"]["tools"]) == 6
    assert replies[1]["error"]["code"] == -32700
    assert replies[2]["id"] == 2
    assert json.loads(replies[2]["result"]["content"][0]["text"]) == []