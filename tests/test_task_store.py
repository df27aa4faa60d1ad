# tests/test_task_store.py

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from apex_engine.core.errors import DuplicateIdError, TaskNotFoundError
from apex_engine.core.task import Task, TaskStatus, TaskUsage
from apex_engine.db.store import TaskStore


def _task(task_id: str, **fields) -> Task:
    return Task(id=task_id, description=f"task {task_id}", project_path="/tmp/project", **fields)


def test_records_survive_close_and_reopen(tmp_path: Path) -> None:
    db = tmp_path / "tasks.db"
    original = _task(
        "t1",
        status=TaskStatus.FAILED,
        depends_on=["t0"],
        blocked_by=["t0"],
        usage=TaskUsage(input_tokens=10, output_tokens=5, total_tokens=15, estimated_cost=0.25),
        logs=["first", "second"],
        artifacts=["src/app.py"],
        error="boom",
        exit_code=137,
        oom_killed=True,
        created_at=datetime(2024, 1, 15, 10, 30, 0, 123456),
        updated_at=datetime(2024, 1, 15, 10, 31, 0, 654321),
    )

    store = TaskStore(db)
    store.create_task(original)
    store.close()

    reopened = TaskStore(db)
    try:
        loaded = reopened.get_task("t1")
    finally:
        reopened.close()

    assert loaded is not None
    assert loaded.model_dump() == original.model_dump()


def test_update_replaces_usage_snapshot(store: TaskStore) -> None:
    store.create_task(_task("t1", usage=TaskUsage(input_tokens=100, total_tokens=100)))

    updated = store.update_task("t1", usage=TaskUsage(input_tokens=7, total_tokens=7))

    assert updated.usage.input_tokens == 7
    assert store.get_task("t1").usage.input_tokens == 7


def test_update_bumps_updated_at(store: TaskStore) -> None:
    created = store.create_task(_task("t1", updated_at=datetime(2020, 1, 1)))

    updated = store.update_task("t1", {"current_stage": "testing"})

    assert updated.current_stage == "testing"
    assert updated.updated_at > created.updated_at


def test_invalid_update_leaves_record_untouched(store: TaskStore) -> None:
    store.create_task(_task("t1", max_retries=1))

    with pytest.raises(ValidationError):
        store.update_task("t1", retry_count=2)

    assert store.get_task("t1").retry_count == 0


def test_update_rejects_unknown_fields_and_id_changes(store: TaskStore) -> None:
    store.create_task(_task("t1"))

    with pytest.raises(ValueError):
        store.update_task("t1", colour="blue")
    with pytest.raises(ValueError):
        store.update_task("t1", id="t2")


def test_duplicate_id_is_rejected(store: TaskStore) -> None:
    store.create_task(_task("t1"))

    with pytest.raises(DuplicateIdError):
        store.create_task(_task("t1"))


def test_missing_task(store: TaskStore) -> None:
    assert store.get_task("nope") is None
    assert store.delete_task("nope") is False
    with pytest.raises(TaskNotFoundError):
        store.update_task("nope", error="x")


def test_list_orders_by_creation_and_limit_keeps_most_recent(store: TaskStore) -> None:
    base = datetime(2024, 1, 1)
    for index, task_id in enumerate(["c", "a", "b"]):
        store.create_task(_task(task_id, created_at=base + timedelta(minutes=index)))

    assert [t.id for t in store.list_tasks()] == ["c", "a", "b"]
    assert [t.id for t in store.list_tasks(limit=2)] == ["a", "b"]


def test_list_filters_by_status(store: TaskStore) -> None:
    store.create_task(_task("p"))
    store.create_task(_task("q", status=TaskStatus.QUEUED))
    store.create_task(_task("f", status=TaskStatus.FAILED))

    assert [t.id for t in store.list_tasks(status="queued")] == ["q"]
    assert {t.id for t in store.list_tasks(status=[TaskStatus.QUEUED, TaskStatus.FAILED])} == {"q", "f"}
    assert store.count_tasks() == 3
    assert store.count_tasks(TaskStatus.PENDING) == 1


def test_append_log_and_artifacts(store: TaskStore) -> None:
    store.create_task(_task("t1"))

    store.append_log("t1", "started")
    store.add_artifact("t1", "src/main.py")
    task = store.add_artifact("t1", "src/main.py")

    assert task.logs == ["started"]
    assert task.artifacts == ["src/main.py"]


def test_delete_task(store: TaskStore) -> None:
    store.create_task(_task("t1"))

    assert store.delete_task("t1") is True
    assert store.get_task("t1") is None
