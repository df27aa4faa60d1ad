# tests/test_task_model.py

from __future__ import annotations

import pytest
from pydantic import ValidationError

from apex_engine.core.errors import InvalidTransitionError
from apex_engine.core.task import (
    Task,
    TaskStatus,
    TaskUsage,
    calculate_cost,
    can_transition,
    generate_branch_name,
    generate_task_id,
    validate_transition,
)


def test_transition_table_allows_lifecycle_path() -> None:
    path = [
        TaskStatus.PENDING,
        TaskStatus.QUEUED,
        TaskStatus.PLANNING,
        TaskStatus.IN_PROGRESS,
        TaskStatus.WAITING_APPROVAL,
        TaskStatus.IN_PROGRESS,
        TaskStatus.PAUSED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.COMPLETED,
    ]
    for current, target in zip(path, path[1:]):
        assert can_transition(current, target), f"{current} -> {target}"


@pytest.mark.parametrize("terminal", [TaskStatus.COMPLETED, TaskStatus.CANCELLED])
def test_terminal_statuses_have_no_exits(terminal: TaskStatus) -> None:
    for target in TaskStatus:
        assert not can_transition(terminal, target)


def test_every_non_terminal_status_can_be_cancelled() -> None:
    for status in TaskStatus:
        if status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            continue
        assert can_transition(status, TaskStatus.CANCELLED)


def test_validate_transition_rejects_skipping_states() -> None:
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition("t1", TaskStatus.PENDING, TaskStatus.COMPLETED)

    assert exc_info.value.current == "pending"
    assert exc_info.value.target == "completed"


def test_failed_can_only_requeue_or_cancel() -> None:
    allowed = {s for s in TaskStatus if can_transition(TaskStatus.FAILED, s)}
    assert allowed == {TaskStatus.QUEUED, TaskStatus.CANCELLED}


def test_retry_count_must_stay_within_budget() -> None:
    with pytest.raises(ValidationError):
        Task(id="t1", description="x", project_path=".", retry_count=3, max_retries=2)

    task = Task(id="t1", description="x", project_path=".", retry_count=2, max_retries=2)
    assert task.can_retry is False


def test_task_cannot_depend_on_itself() -> None:
    with pytest.raises(ValidationError):
        Task(id="t1", description="x", project_path=".", depends_on=["t1"])


def test_usage_add_accumulates_and_clamps_negative_deltas() -> None:
    usage = TaskUsage().add(100, 50, 0.01).add(-5, 10, -1.0)

    assert usage.input_tokens == 100
    assert usage.output_tokens == 60
    assert usage.total_tokens == 160
    assert usage.estimated_cost == pytest.approx(0.01)


def test_calculate_cost_uses_per_million_prices() -> None:
    assert calculate_cost(1_000_000, 0, 3.0, 15.0) == pytest.approx(3.0)
    assert calculate_cost(1000, 500, 3.0, 15.0) == pytest.approx(0.0105)


def test_generated_ids_are_unique_and_prefixed() -> None:
    ids = {generate_task_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(task_id.startswith("task_") for task_id in ids)


def test_branch_name_is_slugged_description() -> None:
    branch = generate_branch_name("apex/", "task_abc_1234", "Add OAuth login (Google)!")
    assert branch == "apex/1234-add-oauth-login-google"

    assert generate_branch_name("apex/", "task_abc_1234", "???") == "apex/1234"
