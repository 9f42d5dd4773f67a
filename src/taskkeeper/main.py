from __future__ import annotations

from datetime import timedelta
import logging

from taskkeeper.api import create_app
from taskkeeper.auth import AuthService
from taskkeeper.config import load_settings
from taskkeeper.db import Database, SqlTaskRepository, SqlUserRepository
from taskkeeper.observability import configure_observability
from taskkeeper.repository import InMemoryTaskRepository, InMemoryUserRepository
from taskkeeper.service import TaskService
from taskkeeper.worker import AutoCompleteWorker

_log = logging.getLogger(__name__)


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )

    try:
        db = Database(settings.database_url)
        db.create_schema()
        tasks = SqlTaskRepository(db)
        users = SqlUserRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repositories')
        tasks = InMemoryTaskRepository()
        users = InMemoryUserRepository()

    worker = AutoCompleteWorker(
        tasks,
        grace_seconds=settings.grace_seconds,
        scan_interval_seconds=settings.scan_interval_seconds,
        worker_count=settings.worker_count,
        queue_capacity=settings.queue_capacity,
    )
    auth = AuthService(
        users=users,
        jwt_secret=settings.jwt_secret,
        token_ttl=timedelta(hours=settings.jwt_expiry_hours),
    )
    service = TaskService(repository=tasks, scheduler=worker)
    return create_app(
        task_service=service,
        auth_service=auth,
        worker=worker,
        shutdown_timeout_seconds=settings.shutdown_timeout_seconds,
    )


app = build_app()
