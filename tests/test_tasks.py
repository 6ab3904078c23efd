import json
from datetime import datetime, timedelta, timezone

import pytest

from claudeops.store import open_store
from claudeops.tasks import DEFAULT_MAX_AGE, Tracker


@pytest.fixture
def setup(tmp_path):
    store = open_store(tmp_path / "t.db")
    sidecar = tmp_path / "current-task.json"
    yield Tracker(sidecar, store), store, sidecar
    store.close()


def test_start_writes_sidecar_and_db(setup):
    tracker, store, sidecar = setup
    task = tracker.start("refactor parser")
    assert task.id
    assert task.name == "refactor parser"
    assert sidecar.exists()
    data = json.loads(sidecar.read_text())
    assert data["id"] == task.id
    assert data["max_age_seconds"] == 14400
    tasks = store.task_aggregates()
    assert [t.id for t in tasks] == [task.id]


def test_stop_removes_sidecar_and_stamps_end(setup):
    tracker, store, sidecar = setup
    tracker.start("x")
    tracker.stop()
    assert not sidecar.exists()
    tasks = store.task_aggregates()
    assert tasks[0].ended_at is not None


def test_start_implicitly_stops_previous(setup):
    tracker, store, _ = setup
    tracker.start("first")
    tracker.start("second")
    tasks = {t.name: t for t in store.task_aggregates()}
    assert set(tasks) == {"first", "second"}
    assert tasks["first"].ended_at is not None
    assert tasks["second"].ended_at is None


def test_resolve_within_and_outside_window(setup):
    tracker, _, _ = setup
    task = tracker.start("x")
    assert tracker.resolve("any-session", task.started_at + timedelta(minutes=1)) == task.id
    assert tracker.resolve("any", task.started_at + timedelta(hours=5)) is None
    assert tracker.current() is None


def test_resolve_no_task(setup):
    tracker, _, _ = setup
    assert tracker.resolve("s", datetime.now(timezone.utc)) is None


def test_start_requires_name(setup):
    tracker, _, _ = setup
    with pytest.raises(ValueError):
        tracker.start("")


def test_load_defaults_max_age(tmp_path):
    sidecar = tmp_path / "current-task.json"
    sidecar.write_text(json.dumps({
        "id": "abc", "name": "edited", "started_at": "2026-04-08T13:11:00Z",
    }))
    tracker = Tracker(sidecar)
    task = tracker.current()
    assert task.id == "abc"
    assert task.name == "edited"
    assert task.started_at == datetime(2026, 4, 8, 13, 11, tzinfo=timezone.utc)
    assert task.max_age == DEFAULT_MAX_AGE


def test_load_rejects_invalid_json(tmp_path):
    sidecar = tmp_path / "current-task.json"
    sidecar.write_text("{not json")
    with pytest.raises(ValueError):
        Tracker(sidecar).load()


def test_stop_without_store_reads_disk(tmp_path):
    sidecar = tmp_path / "current-task.json"
    sidecar.write_text(json.dumps({
        "id": "abc", "name": "n", "started_at": "2026-04-08T13:11:00Z",
        "max_age_seconds": 60,
    }))
    tracker = Tracker(sidecar)
    tracker.stop()
    assert not sidecar.exists()
    assert tracker.current() is None