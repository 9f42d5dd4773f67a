from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import sys
from contextvars import ContextVar
from threading import Lock
from typing import Iterator

_task_id_var: ContextVar[str | None] = ContextVar('task_id', default=None)
_worker_var: ContextVar[str | None] = ContextVar('worker', default=None)


@contextmanager
def task_context(task_id: str | None, worker: str | None) -> Iterator[None]:
    """Tag log lines emitted inside the block with *task_id* and *worker*.

    The previous values are restored on exit.
    """
    task_token = _task_id_var.set(task_id)
    worker_token = _worker_var.set(worker)
    try:
        yield
    finally:
        _worker_var.reset(worker_token)
        _task_id_var.reset(task_token)


def get_task_id() -> str | None:
    return _task_id_var.get()


def get_worker_name() -> str | None:
    return _worker_var.get()


class _JsonFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, task/worker tags, exc."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            'ts': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        task_id = getattr(record, 'task_id', None) or get_task_id()
        if task_id:
            payload['task_id'] = task_id
        worker = getattr(record, 'worker', None) or get_worker_name()
        if worker:
            payload['worker'] = worker
        if record.exc_info and record.exc_info[1] is not None:
            payload['exc'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_configured = False
_configured_otlp_endpoint: str | None = None
_configure_lock = Lock()


def get_logger(name: str) -> logging.Logger:
    """Return a logger. Safe to call before configure_observability."""
    return logging.getLogger(name)


def configure_observability(*, service_name: str, otlp_endpoint: str | None) -> None:
    global _configured
    global _configured_otlp_endpoint
    with _configure_lock:
        if not _configured:
            root = logging.getLogger('taskkeeper')
            has_json_handler = any(
                isinstance(handler, logging.StreamHandler)
                and isinstance(getattr(handler, 'formatter', None), _JsonFormatter)
                for handler in root.handlers
            )
            if not has_json_handler:
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(_JsonFormatter())
                root.addHandler(handler)
            root.setLevel(logging.INFO)
            _configured = True

    if not otlp_endpoint:
        return
    endpoint = str(otlp_endpoint).strip()
    if not endpoint:
        return

    with _configure_lock:
        if _configured_otlp_endpoint == endpoint:
            return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except Exception:
        logging.getLogger('taskkeeper.observability').warning(
            'OpenTelemetry import failed; tracing disabled', exc_info=True,
        )
        return

    provider = TracerProvider(resource=Resource.create({'service.name': service_name}))
    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    with _configure_lock:
        _configured_otlp_endpoint = endpoint
    logging.getLogger('taskkeeper.observability').info('tracing enabled endpoint=%s', endpoint)
