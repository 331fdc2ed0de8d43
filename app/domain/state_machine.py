from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    ADMIN = "ADMIN"
    TECHNICIAN = "TECHNICIAN"


class TaskStatus(StrEnum):
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS_TECH = "IN_PROGRESS_TECH"
    READY_FOR_REVIEW = "READY_FOR_REVIEW"
    APPROVED = "APPROVED"
    REJECTED_NEEDS_FIX = "REJECTED_NEEDS_FIX"


TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.APPROVED})

TECHNICIAN_REQUESTABLE: frozenset[TaskStatus] = frozenset(
    {TaskStatus.IN_PROGRESS_TECH, TaskStatus.READY_FOR_REVIEW}
)

ADMIN_ONLY_TARGETS: frozenset[TaskStatus] = frozenset(
    {TaskStatus.APPROVED, TaskStatus.REJECTED_NEEDS_FIX}
)

TECHNICIAN_ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.ASSIGNED: {TaskStatus.IN_PROGRESS_TECH},
    TaskStatus.IN_PROGRESS_TECH: {TaskStatus.READY_FOR_REVIEW},
    TaskStatus.READY_FOR_REVIEW: set(),
    TaskStatus.REJECTED_NEEDS_FIX: {TaskStatus.IN_PROGRESS_TECH, TaskStatus.READY_FOR_REVIEW},
    TaskStatus.APPROVED: set(),
}


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def technician_may_request(target: TaskStatus) -> bool:
    return target in TECHNICIAN_REQUESTABLE


def can_transition(source: TaskStatus, target: TaskStatus, role: Role) -> bool:
    """Edge check only; ownership and requestable-target rules live in the service."""
    if is_terminal(source):
        return False
    if role == Role.ADMIN:
        return True
    return target in TECHNICIAN_ALLOWED_TRANSITIONS.get(source, set())
