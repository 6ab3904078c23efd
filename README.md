# claudeops

Usage accounting for Claude Code. `claudeops` decodes the JSONL session logs
that Claude Code writes, prices assistant turns from an editable TOML price
table, keeps events and aggregates in a local SQLite database, finds the
sessions that are active right now, tracks a "current task", and answers
questions about cost, tokens and cache use over the Model Context Protocol.

It is a library built on the standard library alone; there are no
third-party dependencies.

## Modules

| Module                  | What it holds |
|-------------------------|---------------|
| `claudeops.parser`      | `parse_line`, the event classes `Event`, `AssistantEvent`, `UserEvent`, `UnknownEvent`, and `compare_versions` / `version_in_range`. |
| `claudeops.pricing`     | `PriceTable`, `ModelPrice`, `parse_table`, `load`, `load_or_seed`, `merge_missing_models`, `encode_table` and `Calculator`. |
| `claudeops.live`        | `scan` for live sessions, with `ScanConfig`, `Session`, `State`, `classify`, `read_last_event_type`, `decode_project_path`, `project_display_name`. |
| `claudeops.store`       | The SQLite `Store` (opened with `open_store` or `open_read_only`), `EventRecord`, the aggregate records and `NotFoundError`. |
| `claudeops.breakdowns`  | Per-day, per-hour, per-model, per-project and per-session queries over a `Store`. |
| `claudeops.tasks`       | `Tracker` and `Task`: a current task kept in a JSON sidecar file. |
| `claudeops.mcpserver`   | `Server`, which serves the store as MCP tools over newline-delimited JSON-RPC. |

## Parsing log lines

```python
from claudeops.parser import parse_line, AssistantEvent, UnknownEvent, version_in_range

event = parse_line(line)     # bytes or str
if isinstance(event, AssistantEvent):
    print(event.model, event.in_tokens, event.out_tokens,
          event.cache_read_tokens, event.cache_create_tokens)

version_in_range("2.1.96")   # True: the supported range is [2.1.0, 2.2.0)
version_in_range("")         # True: an empty version is accepted
```

`parse_line` raises `ValueError` for an empty line, invalid JSON, or a line
without a `type`. Types other than `assistant` and `user` come back as
`UnknownEvent`, which keeps the raw line in `raw`. Every event has `type`,
`uuid`, `session_id`, `cwd`, `timestamp` (an aware `datetime` or `None`) and
`version`.

`compare_versions("2.1.96-rc1", "2.1.96")` returns `0`: each of the three
`X.Y.Z` parts is compared by its leading digits, and missing parts count as 0.

## Pricing

A price table is TOML with prices per 1,000,000 tokens in four classes:

```toml
updated = "2026-04-08"
currency = "EUR"

[models."claude-opus-4-6"]
input        = 13.80
output       = 69.00
cache_read   =  1.38
cache_create = 17.25
```

```python
from claudeops.pricing import load_or_seed, Calculator

table = load_or_seed("pricing.toml", seed_text)
calc = Calculator(table, on_warn=lambda model: print("no price for", model))
cost = calc.cost_for("claude-opus-4-6", 5, 1101, 15718, 20780)
calc.updated()               # the table's "updated" value
```

- `load_or_seed(path, seed)` writes `seed` to `path` when the file does not
  exist. When it does exist, models that are in the seed but not in the file
  are added (and the file is rewritten with `encode_table`, models sorted by
  name); values already in the file are never overwritten. If models were
  added, `updated` takes the seed's date.
- A missing `currency` defaults to `EUR`; the calculator does not convert.
- `cost_for` returns `None` for a model with no price. It warns once per such
  model: through `on_warn` if given, otherwise with a line on standard error.

## Storing and querying

```python
from datetime import datetime, timedelta, timezone
from claudeops.store import open_store, EventRecord
from claudeops import breakdowns

with open_store("claudeops.db") as store:
    store.insert(
        EventRecord(uuid="u1", session_id="s1", cwd="/home/me/alpha",
                    type="assistant", model="claude-opus-4-6",
                    ts=datetime.now(timezone.utc), in_tokens=5, out_tokens=1101),
        cost_eur=0.08,
    )
    since = datetime.now(timezone.utc) - timedelta(days=7)
    today = store.aggregates_for_today()           # since the start of the UTC day
    week = store.aggregates_since(since)
    top = store.top_sessions_by_cost(10, since)    # since=None: all time
    projects = store.top_projects_by_cost(10, since)
    daily = store.daily_aggregates_local(30)       # local days, oldest first, today last
    models = breakdowns.per_model_aggregates(store, since)
```

The `Store`:

- `insert(event, cost_eur=None, task_id=None)` creates the project (named
  after the last part of `cwd`) and the session if needed and writes the
  event in one transaction. It is idempotent on the event uuid and raises
  `ValueError` when `uuid`, `session_id` or `cwd` is empty.
- `aggregates_between(start, end)` covers `start <= ts < end`.
- `save_offset(path, offset, size)` and `load_offsets()` remember how far each
  log file has been read.
- `config_get(key)` returns the stored string or `None`; `config_set(key, value)`
  inserts or replaces it.
- `upsert_task`, `end_task` and `task_aggregates` keep per-task totals, newest
  task first.
- `daily_aggregates_local(days)` returns exactly `days` rows, including days
  with no activity as zeros; it returns an empty list for `days <= 0`.

`open_store` creates the file and schema if needed, with WAL journalling and
foreign keys on. `open_read_only` opens an existing file without touching the
schema; it raises `sqlite3.OperationalError` if the file is missing, and writes
through it fail.

Timestamps are stored as UTC RFC 3339 strings.

### Breakdowns

All functions in `claudeops.breakdowns` take the store as their first argument:

| Function | Returns |
|----------|---------|
| `sessions_for_day(store, day)` | `SessionAgg` rows for one local day, costliest first |
| `models_for_day(store, day)` | `ModelAgg` rows for one local day, costliest first |
| `hourly_for_day(store, day)` | `HourlyAgg` rows (local hours with activity), ascending |
| `global_hourly_aggregates(store, since=None)` | `HourlyAgg` rows summed across days |
| `per_model_aggregates(store, since=None)` | `ModelAgg` rows by cost, then event count |
| `aggregates_by_project_between(store, start, end)` | `ProjectPeriodAgg` rows for `start <= ts < end`, costliest first |
| `session_agg_by_id(store, session_id)` | one `SessionAgg`; raises `NotFoundError` if the session has no events |
| `models_for_session(store, session_id)` | `ModelAgg` rows for one session, costliest first |
| `hourly_for_session(store, session_id)` | `HourlyAgg` rows for one session, ascending |

Events without a model are grouped under the model name `(none)`.

## Live sessions

```python
from datetime import timedelta
from claudeops.live import scan, ScanConfig, State

config = ScanConfig(working_window=timedelta(seconds=8),
                    active_window=timedelta(minutes=30),
                    live_dir="~/.claudeops/live")
for session in scan(projects_root, config):
    print(session.session_id, session.project_name, session.state)
```

`scan` looks at every `<project-dir>/<session>.jsonl` under the root and
returns sessions modified within the active window, newest first. A session is
`State.WORKING` if its file was written within the working window or its last
event is `user`, and `State.WAITING` otherwise. Project directory names are
decoded into paths (`-home-me-alpha` becomes `/home/me/alpha`, shown as
`alpha`).

When `live_dir` is set, each `*.json` sidecar in it (with `session_id`,
`project_path`, `state`, `last_event` and `updated_at`) that is newer than the
active window overrides the state and last event of its session, and keeps the
session listed even when its log file has gone stale. A missing root is not an
error: only sidecar sessions are returned. Unset or non-positive windows fall
back to 8 seconds and 30 minutes; `now` may be replaced for testing.

## Tasks

```python
from claudeops.tasks import Tracker

tracker = Tracker("~/.claudeops/current-task.json", store)   # store may be None
task = tracker.start("refactor parser")
tracker.current()                          # re-reads the sidecar; None when no task
task_id = tracker.resolve(session_id, timestamp)
tracker.stop()
```

`start` stops any running task first, writes the sidecar (mode 0600) and, with
a store, records the task. `stop` removes the sidecar and stamps the end time.
A task is active for four hours unless the sidecar's `max_age_seconds` says
otherwise; `resolve` returns `None` for a time past that and stops the task.

## MCP server

```python
import sys
from claudeops.mcpserver import Server
from claudeops.store import open_read_only

Server(open_read_only("claudeops.db")).serve(sys.stdin, sys.stdout)
```

`serve` reads one JSON-RPC 2.0 message per line until its input ends and
answers `initialize`, `ping`, `tools/list` and `tools/call`. The tools are:

| Tool | Arguments | Result |
|------|-----------|--------|
| `claudeops_summary` | `period`: `today` (UTC day), `7d` or `30d` | totals and cache hit ratio |
| `claudeops_sessions` | `limit` (1-100, default 20) | sessions by cost |
| `claudeops_session_detail` | `session_id` | session totals, per-model and per-hour rows |
| `claudeops_projects` | `limit` (1-100, default 20) | projects by cost |
| `claudeops_models` | none | per-model totals over all time |
| `claudeops_daily` | `days` (1-90, default 30) | one row per local day, `YYYY-MM-DD` |

Out-of-range numbers are clamped. Each tool returns JSON text in a
`ToolResult`; a missing or bad argument, an unknown session or a failed query
comes back as a tool result with `is_error` set rather than as a protocol
error. The tools can also be called directly with `Server.call_tool(name,
arguments)` or the `handle_*` methods, and `Server.handle_message` answers a
single decoded message.

The helpers `cache_ratio`, `format_time` and `clamp` are public as well.

## What it does not do

- There is no collector: nothing here watches the log directory and feeds the
  store. The pieces are here (`parse_line`, `Calculator.cost_for`,
  `Tracker.resolve`, `Store.insert`, `Store.save_offset` / `load_offsets`), but
  the caller has to connect them.
- There is no command-line program and no interactive dashboard; the package is
  used from Python, and the MCP server is started by calling `Server.serve`.
- No price list ships with the package: `load_or_seed` needs the seed text
  passed in.
- The MCP server has no insights tool; it offers the six tools listed above.
- Nothing here writes the live-session sidecars that `scan` reads.