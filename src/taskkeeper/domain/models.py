from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'


class UserRole(str, Enum):
    USER = 'user'
    ADMIN = 'admin'


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED})
NON_TERMINAL_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
}


def parse_status(value: str | TaskStatus) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    text = str(value or '').strip().lower()
    try:
        return TaskStatus(text)
    except ValueError as exc:
        raise ValueError(f'invalid task status: {value}') from exc


def is_terminal(status: str | TaskStatus) -> bool:
    return parse_status(status) in TERMINAL_STATUSES


def can_transition(src: str | TaskStatus, dst: str | TaskStatus) -> bool:
    return parse_status(dst) in _ALLOWED_TRANSITIONS[parse_status(src)]


def parse_role(value: str | UserRole | None) -> UserRole:
    if isinstance(value, UserRole):
        return value
    text = str(value or '').strip().lower()
    if text == UserRole.ADMIN.value:
        return UserRole.ADMIN
    return UserRole.USER
