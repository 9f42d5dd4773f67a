from taskkeeper.domain.models import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    TaskStatus,
    UserRole,
    can_transition,
    is_terminal,
    parse_role,
    parse_status,
)

__all__ = [
    'NON_TERMINAL_STATUSES',
    'TERMINAL_STATUSES',
    'TaskStatus',
    'UserRole',
    'can_transition',
    'is_terminal',
    'parse_role',
    'parse_status',
]
