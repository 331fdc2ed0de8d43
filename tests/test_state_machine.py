from __future__ import annotations

import itertools

import pytest

from app.domain.state_machine import (
    Role,
    TaskStatus,
    can_transition,
    is_terminal,
    technician_may_request,
)

TECHNICIAN_EDGES = {
    (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS_TECH),
    (TaskStatus.IN_PROGRESS_TECH, TaskStatus.READY_FOR_REVIEW),
    (TaskStatus.REJECTED_NEEDS_FIX, TaskStatus.IN_PROGRESS_TECH),
    (TaskStatus.REJECTED_NEEDS_FIX, TaskStatus.READY_FOR_REVIEW),
}


@pytest.mark.parametrize(
    ("source", "target"),
    list(itertools.product(TaskStatus, TaskStatus)),
)
def test_technician_transition_table(source: TaskStatus, target: TaskStatus) -> None:
    assert can_transition(source, target, Role.TECHNICIAN) == ((source, target) in TECHNICIAN_EDGES)


@pytest.mark.parametrize(
    ("source", "target"),
    list(itertools.product(TaskStatus, TaskStatus)),
)
def test_admin_may_set_any_status_until_approved(source: TaskStatus, target: TaskStatus) -> None:
    assert can_transition(source, target, Role.ADMIN) == (source != TaskStatus.APPROVED)


def test_admin_can_jump_from_assigned_to_approved() -> None:
    assert can_transition(TaskStatus.ASSIGNED, TaskStatus.APPROVED, Role.ADMIN)


def test_only_approved_is_terminal() -> None:
    assert [status for status in TaskStatus if is_terminal(status)] == [TaskStatus.APPROVED]


def test_technician_requestable_targets() -> None:
    allowed = {status for status in TaskStatus if technician_may_request(status)}
    assert allowed == {TaskStatus.IN_PROGRESS_TECH, TaskStatus.READY_FOR_REVIEW}
