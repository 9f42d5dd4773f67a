from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import time
from typing import Callable, Iterable, Iterator, TypeVar
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, Text, create_engine, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from taskkeeper.domain.models import NON_TERMINAL_STATUSES, TaskStatus, UserRole, parse_role, parse_status
from taskkeeper.observability import get_logger

_log = get_logger('taskkeeper.db')

T = TypeVar('T')


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class UserEntity(Base):
    __tablename__ = 'users'

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=UserRole.USER.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TaskEntity(Base):
    __tablename__ = 'tasks'

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey('users.user_id', ondelete='CASCADE'), nullable=False, index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False, default='')
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Worker threads and request threads share the same sqlite file.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        _log.info('database schema ready dialect=%s', self.engine.dialect.name)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class _SqlRepositoryBase:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _with_lock_retry(self, op_name: str, fn: Callable[[Session], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    return fn(session)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                _log.debug('sqlite locked op=%s attempt=%d', op_name, attempt)
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError(f'{op_name}_retry_exhausted')


class SqlTaskRepository(_SqlRepositoryBase):
    def create_task(self, *, user_id: str, title: str, description: str) -> dict:
        now = datetime.now(timezone.utc)
        task = TaskEntity(
            task_id=str(uuid4()),
            user_id=str(user_id),
            title=title,
            description=description or '',
            status=TaskStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )

        def op(session: Session) -> dict:
            session.add(task)
            session.flush()
            return self._task_to_dict(task)

        return self._with_lock_retry('create_task', op)

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            if row is None:
                return None
            return self._task_to_dict(row)

    def list_tasks(
        self,
        *,
        user_id: str | None = None,
        status: str | TaskStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        stmt = select(TaskEntity)
        if user_id is not None:
            stmt = stmt.where(TaskEntity.user_id == user_id)
        if status is not None:
            stmt = stmt.where(TaskEntity.status == parse_status(status).value)
        stmt = stmt.order_by(TaskEntity.created_at.desc()).limit(max(0, int(limit))).offset(max(0, int(offset)))
        with self.db.session() as session:
            rows = session.execute(stmt).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: str | TaskStatus | None = None,
        expected_status: str | TaskStatus | None = None,
    ) -> dict | None:
        values: dict[str, object] = {'updated_at': datetime.now(timezone.utc)}
        if title is not None:
            values['title'] = title
        if description is not None:
            values['description'] = description
        if status is not None:
            values['status'] = parse_status(status).value
        conditions = [TaskEntity.task_id == task_id]
        if expected_status is not None:
            conditions.append(TaskEntity.status == parse_status(expected_status).value)

        def op(session: Session) -> dict | None:
            result = session.execute(update(TaskEntity).where(*conditions).values(**values))
            session.flush()
            row = session.get(TaskEntity, task_id)
            if row is None:
                raise KeyError(task_id)
            if int(result.rowcount or 0) == 0:
                return None
            session.refresh(row)
            return self._task_to_dict(row)

        return self._with_lock_retry('update_task', op)

    def update_task_status(self, task_id: str, *, status: str | TaskStatus) -> dict:
        return self.update_task(task_id, status=status)

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_statuses: Iterable[str | TaskStatus],
        status: str | TaskStatus,
    ) -> dict | None:
        expected = sorted({parse_status(s).value for s in expected_statuses})
        target = parse_status(status).value

        def op(session: Session) -> dict | None:
            result = session.execute(
                update(TaskEntity)
                .where(
                    TaskEntity.task_id == task_id,
                    TaskEntity.status.in_(expected),
                )
                .values(status=target, updated_at=datetime.now(timezone.utc))
            )
            session.flush()
            if int(result.rowcount or 0) == 0:
                if session.get(TaskEntity, task_id) is None:
                    raise KeyError(task_id)
                return None
            row = session.get(TaskEntity, task_id)
            if row is None:
                raise KeyError(task_id)
            session.refresh(row)
            return self._task_to_dict(row)

        return self._with_lock_retry('update_task_status_if', op)

    def delete_task(self, task_id: str) -> bool:
        def op(session: Session) -> bool:
            row = session.get(TaskEntity, task_id)
            if row is None:
                return False
            session.delete(row)
            session.flush()
            return True

        return self._with_lock_retry('delete_task', op)

    def list_stale_tasks(self, *, older_than: timedelta) -> list[dict]:
        cutoff = datetime.now(timezone.utc) - older_than
        statuses = sorted(s.value for s in NON_TERMINAL_STATUSES)
        with self.db.session() as session:
            rows = session.execute(
                select(TaskEntity)
                .where(
                    TaskEntity.status.in_(statuses),
                    TaskEntity.created_at < cutoff,
                )
                .order_by(TaskEntity.created_at.asc())
            ).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        return {
            'task_id': row.task_id,
            'user_id': row.user_id,
            'title': row.title,
            'description': row.description or '',
            'status': row.status,
            'created_at': _iso_utc(_as_utc(row.created_at)),
            'updated_at': _iso_utc(_as_utc(row.updated_at)),
        }


class SqlUserRepository(_SqlRepositoryBase):
    def create_user(self, *, email: str, password_hash: str, role: str | UserRole) -> dict:
        now = datetime.now(timezone.utc)
        user = UserEntity(
            user_id=str(uuid4()),
            email=str(email or '').strip().lower(),
            password_hash=password_hash,
            role=parse_role(role).value,
            created_at=now,
            updated_at=now,
        )

        def op(session: Session) -> dict:
            session.add(user)
            session.flush()
            return self._user_to_dict(user)

        try:
            return self._with_lock_retry('create_user', op)
        except IntegrityError as exc:
            raise ValueError(f'user already exists: {user.email}') from exc

    def get_user_by_email(self, email: str) -> dict | None:
        key = str(email or '').strip().lower()
        with self.db.session() as session:
            row = session.execute(select(UserEntity).where(UserEntity.email == key)).scalars().first()
            if row is None:
                return None
            return self._user_to_dict(row)

    def get_user(self, user_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(UserEntity, user_id)
            if row is None:
                return None
            return self._user_to_dict(row)

    @staticmethod
    def _user_to_dict(row: UserEntity) -> dict:
        return {
            'user_id': row.user_id,
            'email': row.email,
            'password_hash': row.password_hash,
            'role': row.role,
            'created_at': _iso_utc(_as_utc(row.created_at)),
            'updated_at': _iso_utc(_as_utc(row.updated_at)),
        }
