from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Iterable, Protocol
from uuid import uuid4

from taskkeeper.domain.models import NON_TERMINAL_STATUSES, TaskStatus, UserRole, parse_role, parse_status


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    text = str(value or '').strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _normalize_statuses(values: Iterable[str | TaskStatus]) -> set[str]:
    return {parse_status(v).value for v in values}


class TaskStore(Protocol):
    """Read/write contract the auto-completion worker relies on."""

    def get_task(self, task_id: str) -> dict | None:
        ...

    def update_task_status(self, task_id: str, *, status: str | TaskStatus) -> dict:
        ...

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_statuses: Iterable[str | TaskStatus],
        status: str | TaskStatus,
    ) -> dict | None:
        """Atomically update status only if the current status is in *expected_statuses*.

        Returns the updated row on success, or ``None`` if the current status
        did not match (i.e. a concurrent transition already happened).
        Raises ``KeyError`` when the task does not exist.
        """
        ...

    def list_stale_tasks(self, *, older_than: timedelta) -> list[dict]:
        ...


class TaskRepository(TaskStore, Protocol):
    def create_task(self, *, user_id: str, title: str, description: str) -> dict:
        ...

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: str | TaskStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        ...

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: str | TaskStatus | None = None,
        expected_status: str | TaskStatus | None = None,
    ) -> dict | None:
        """Apply the given field changes.

        With *expected_status*, nothing is written and ``None`` is returned
        unless the current status still equals it.
        Raises ``KeyError`` when the task does not exist.
        """
        ...

    def delete_task(self, task_id: str) -> bool:
        ...


class UserRepository(Protocol):
    def create_user(self, *, email: str, password_hash: str, role: str | UserRole) -> dict:
        ...

    def get_user_by_email(self, email: str) -> dict | None:
        ...

    def get_user(self, user_id: str) -> dict | None:
        ...


class InMemoryTaskRepository:
    """Dict-backed task store shared safely between request and worker threads."""

    def __init__(self, *, clock=None):
        self.items: dict[str, dict] = {}
        self._lock = Lock()
        self._clock = clock or _utc_now

    def create_task(self, *, user_id: str, title: str, description: str) -> dict:
        now = self._clock().isoformat()
        task_id = str(uuid4())
        row = {
            'task_id': task_id,
            'user_id': str(user_id),
            'title': title,
            'description': description or '',
            'status': TaskStatus.PENDING.value,
            'created_at': now,
            'updated_at': now,
        }
        with self._lock:
            self.items[task_id] = row
            return dict(row)

    def get_task(self, task_id: str) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
            return dict(row) if row else None

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: str | TaskStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        wanted_status = parse_status(status).value if status is not None else None
        with self._lock:
            rows = [
                dict(r)
                for r in self.items.values()
                if (user_id is None or r['user_id'] == user_id)
                and (wanted_status is None or r['status'] == wanted_status)
            ]
        rows.sort(key=lambda r: r.get('created_at', ''), reverse=True)
        start = max(0, int(offset))
        return rows[start:start + max(0, int(limit))]

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: str | TaskStatus | None = None,
        expected_status: str | TaskStatus | None = None,
    ) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                raise KeyError(task_id)
            if expected_status is not None and row['status'] != parse_status(expected_status).value:
                return None
            if title is not None:
                row['title'] = title
            if description is not None:
                row['description'] = description
            if status is not None:
                row['status'] = parse_status(status).value
            row['updated_at'] = self._clock().isoformat()
            return dict(row)

    def update_task_status(self, task_id: str, *, status: str | TaskStatus) -> dict:
        return self.update_task(task_id, status=status)

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_statuses: Iterable[str | TaskStatus],
        status: str | TaskStatus,
    ) -> dict | None:
        expected = _normalize_statuses(expected_statuses)
        with self._lock:
            row = self.items.get(task_id)
            if row is None:
                raise KeyError(task_id)
            if row['status'] not in expected:
                return None
            row['status'] = parse_status(status).value
            row['updated_at'] = self._clock().isoformat()
            return dict(row)

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            return self.items.pop(task_id, None) is not None

    def list_stale_tasks(self, *, older_than: timedelta) -> list[dict]:
        cutoff = self._clock() - older_than
        non_terminal = {s.value for s in NON_TERMINAL_STATUSES}
        out: list[dict] = []
        with self._lock:
            for row in self.items.values():
                if row['status'] not in non_terminal:
                    continue
                created = parse_iso_datetime(row.get('created_at'))
                if created is not None and created < cutoff:
                    out.append(dict(row))
        out.sort(key=lambda r: r.get('created_at', ''))
        return out


class InMemoryUserRepository:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self._lock = Lock()

    def create_user(self, *, email: str, password_hash: str, role: str | UserRole) -> dict:
        key = str(email or '').strip().lower()
        now = _utc_now().isoformat()
        with self._lock:
            if any(r['email'] == key for r in self.items.values()):
                raise ValueError(f'user already exists: {key}')
            user_id = str(uuid4())
            row = {
                'user_id': user_id,
                'email': key,
                'password_hash': password_hash,
                'role': parse_role(role).value,
                'created_at': now,
                'updated_at': now,
            }
            self.items[user_id] = row
            return dict(row)

    def get_user_by_email(self, email: str) -> dict | None:
        key = str(email or '').strip().lower()
        with self._lock:
            for row in self.items.values():
                if row['email'] == key:
                    return dict(row)
        return None

    def get_user(self, user_id: str) -> dict | None:
        with self._lock:
            row = self.items.get(user_id)
            return dict(row) if row else None
