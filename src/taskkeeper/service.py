from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from taskkeeper.auth import Principal
from taskkeeper.domain.models import TaskStatus, can_transition, parse_status
from taskkeeper.errors import InputValidationError
from taskkeeper.observability import get_logger
from taskkeeper.repository import TaskRepository

_log = get_logger('taskkeeper.service')

_MAX_TITLE_LENGTH = 255
_MAX_LIST_LIMIT = 500


class CompletionScheduler(Protocol):
    def enqueue(self, task_id: str) -> bool:
        ...


@dataclass(frozen=True)
class TaskView:
    task_id: str
    user_id: str
    title: str
    description: str
    status: TaskStatus
    created_at: str
    updated_at: str


class TaskService:
    def __init__(self, *, repository: TaskRepository, scheduler: CompletionScheduler | None = None):
        self.repository = repository
        self.scheduler = scheduler

    def create_task(self, principal: Principal, *, title: str, description: str = '') -> TaskView:
        clean_title = self._validate_title(title)
        row = self.repository.create_task(
            user_id=principal.user_id,
            title=clean_title,
            description=str(description or ''),
        )
        _log.info('task_created task_id=%s user_id=%s', row['task_id'], principal.user_id)
        self._schedule_auto_completion(row['task_id'])
        return self._to_view(row)

    def get_task(self, principal: Principal, task_id: str) -> TaskView:
        return self._to_view(self._load_owned(principal, task_id))

    def list_tasks(
        self,
        principal: Principal,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[TaskView]:
        status_filter = None
        if status is not None and str(status).strip():
            status_filter = self._parse_status_input(status, field='status')
        rows = self.repository.list_tasks(
            user_id=None if principal.is_admin else principal.user_id,
            status=status_filter,
            limit=max(1, min(_MAX_LIST_LIMIT, int(limit))),
            offset=max(0, int(offset)),
        )
        return [self._to_view(r) for r in rows]

    def update_task(
        self,
        principal: Principal,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: str | None = None,
    ) -> TaskView:
        row = self._load_owned(principal, task_id)
        clean_title = self._validate_title(title) if title is not None else None
        next_status = None
        if status is not None:
            next_status = self._parse_status_input(status, field='status')
            if not can_transition(row['status'], next_status):
                raise InputValidationError(
                    f"cannot change status from {row['status']} to {next_status.value}",
                    field='status',
                    code='invalid_transition',
                )
        updated = self.repository.update_task(
            task_id,
            title=clean_title,
            description=description,
            status=next_status,
            expected_status=row['status'] if next_status is not None else None,
        )
        if updated is None:
            # Status moved (e.g. auto-completed) after the transition check.
            raise InputValidationError(
                f'task status changed concurrently; cannot change it to {next_status.value}',
                field='status',
                code='invalid_transition',
            )
        _log.info('task_updated task_id=%s status=%s', task_id, updated['status'])
        return self._to_view(updated)

    def delete_task(self, principal: Principal, task_id: str) -> None:
        self._load_owned(principal, task_id)
        if not self.repository.delete_task(task_id):
            raise KeyError(task_id)
        _log.info('task_deleted task_id=%s user_id=%s', task_id, principal.user_id)

    def _schedule_auto_completion(self, task_id: str) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.enqueue(task_id)
        except Exception:
            # The scanner still picks the task up once its grace period is over.
            _log.exception('enqueue for auto-completion failed task_id=%s', task_id)

    def _load_owned(self, principal: Principal, task_id: str) -> dict:
        row = self.repository.get_task(task_id)
        if row is None:
            raise KeyError(task_id)
        if not principal.is_admin and row['user_id'] != principal.user_id:
            _log.warning('task_access_denied task_id=%s user_id=%s', task_id, principal.user_id)
            raise PermissionError(task_id)
        return row

    @staticmethod
    def _validate_title(value: str | None) -> str:
        text = str(value or '').strip()
        if not text:
            raise InputValidationError('title is required', field='title')
        if len(text) > _MAX_TITLE_LENGTH:
            raise InputValidationError(
                f'title must be at most {_MAX_TITLE_LENGTH} characters',
                field='title',
            )
        return text

    @staticmethod
    def _parse_status_input(value: str, *, field: str) -> TaskStatus:
        try:
            return parse_status(value)
        except ValueError as exc:
            raise InputValidationError('invalid status', field=field, code='invalid_status') from exc

    @staticmethod
    def _to_view(row: dict) -> TaskView:
        return TaskView(
            task_id=str(row['task_id']),
            user_id=str(row['user_id']),
            title=str(row['title']),
            description=str(row.get('description') or ''),
            status=parse_status(row['status']),
            created_at=str(row.get('created_at') or ''),
            updated_at=str(row.get('updated_at') or ''),
        )
