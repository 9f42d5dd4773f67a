"""Background auto-completion of stale tasks.

Two cooperating paths move a task to ``completed`` once its grace period has
elapsed:

* the fast path: ``enqueue`` drops the task id into a bounded queue, one of the
  pool consumers picks it up, waits out the grace period and completes the task
  if it is still open;
* the reconciliation scanner: every ``scan_interval_seconds`` the store is asked
  for open tasks older than the grace period and each one not currently owned by
  a consumer is completed directly.

The fast path is best-effort (a full queue drops the id, a restart loses pending
timers); the scanner guarantees completion within ``grace + scan_interval``.
"""

from __future__ import annotations

from contextlib import nullcontext
from datetime import timedelta
from enum import Enum
from queue import Empty, Full, Queue
from threading import Event, Lock, Thread, current_thread
import time

from taskkeeper.domain.models import NON_TERMINAL_STATUSES, TaskStatus, parse_status
from taskkeeper.observability import get_logger, task_context
from taskkeeper.repository import TaskStore

_log = get_logger('taskkeeper.worker')

DEFAULT_WORKER_COUNT = 5
DEFAULT_QUEUE_CAPACITY = 100
DEFAULT_SCAN_INTERVAL_SECONDS = 60.0


class CompletionOutcome(str, Enum):
    COMPLETED = 'completed'
    ALREADY_COMPLETED = 'already_completed'
    NOT_FOUND = 'not_found'
    DUPLICATE = 'duplicate'
    CANCELED = 'canceled'
    ERROR = 'error'


class DedupTracker:
    """Set of task ids with an in-flight completion attempt."""

    def __init__(self):
        self._ids: set[str] = set()
        self._lock = Lock()

    def try_acquire(self, task_id: str) -> bool:
        with self._lock:
            if task_id in self._ids:
                return False
            self._ids.add(task_id)
            return True

    def release(self, task_id: str) -> None:
        with self._lock:
            self._ids.discard(task_id)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class CompletionQueue:
    def __init__(self, capacity: int = DEFAULT_QUEUE_CAPACITY):
        self.capacity = max(1, int(capacity))
        self._queue: Queue[str] = Queue(maxsize=self.capacity)

    def offer(self, task_id: str) -> bool:
        try:
            self._queue.put_nowait(task_id)
        except Full:
            return False
        return True

    def poll(self, timeout: float) -> str | None:
        try:
            return self._queue.get(timeout=max(0.0, float(timeout)))
        except Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class AutoCompleteWorker:
    def __init__(
        self,
        store: TaskStore,
        *,
        grace_seconds: float,
        scan_interval_seconds: float = DEFAULT_SCAN_INTERVAL_SECONDS,
        worker_count: int = DEFAULT_WORKER_COUNT,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        poll_interval_seconds: float = 0.5,
    ):
        self.store = store
        self.grace_seconds = max(0.0, float(grace_seconds))
        self.scan_interval_seconds = max(0.001, float(scan_interval_seconds))
        self.worker_count = max(1, int(worker_count))
        self.poll_interval_seconds = max(0.001, float(poll_interval_seconds))
        self.queue = CompletionQueue(queue_capacity)
        self.tracker = DedupTracker()
        self._cancel = Event()
        self._threads: list[Thread] = []
        self._lifecycle_lock = Lock()
        self._stats_lock = Lock()
        self._stats = {
            'enqueued': 0,
            'dropped': 0,
            'completed_fast_path': 0,
            'completed_by_scanner': 0,
            'errors': 0,
            'scans': 0,
        }

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self, cancel_event: Event | None = None) -> None:
        """Spawn the consumer pool and the scanner; returns immediately."""
        with self._lifecycle_lock:
            if self.running:
                _log.warning('auto-complete worker already running; start ignored')
                return
            self._cancel = cancel_event if cancel_event is not None else Event()
            threads = [
                Thread(target=self._consume, name=f'taskkeeper-worker-{i + 1}', daemon=True)
                for i in range(self.worker_count)
            ]
            threads.append(Thread(target=self._scan_loop, name='taskkeeper-scanner', daemon=True))
            for thread in threads:
                thread.start()
            self._threads = threads
        _log.info(
            'auto-complete worker started workers=%d grace_seconds=%s scan_interval_seconds=%s queue_capacity=%d',
            self.worker_count, self.grace_seconds, self.scan_interval_seconds, self.queue.capacity,
        )

    def stop(self, timeout: float | None = None) -> bool:
        """Signal cancellation and wait for the loops to exit.

        In-flight grace delays are abandoned; the scanner picks those tasks up
        on the next process start. Returns ``False`` if a thread was still
        alive when *timeout* ran out.
        """
        self._cancel.set()
        deadline = None if timeout is None else time.monotonic() + max(0.0, float(timeout))
        with self._lifecycle_lock:
            threads = list(self._threads)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        alive = [t.name for t in threads if t.is_alive()]
        if alive:
            _log.warning('auto-complete worker stop timed out alive=%s', ','.join(alive))
            return False
        _log.info('auto-complete worker stopped')
        return True

    def enqueue(self, task_id: str) -> bool:
        """Submit a task for delayed completion without blocking.

        A full queue drops the submission; the scanner covers it later.
        """
        key = str(task_id or '').strip()
        if not key:
            return False
        if self.queue.offer(key):
            self._bump('enqueued')
            _log.debug('task enqueued for auto-completion task_id=%s', key)
            return True
        self._bump('dropped')
        _log.warning('completion queue full; dropping task_id=%s', key)
        return False

    def stats(self) -> dict[str, int]:
        with self._stats_lock:
            out = dict(self._stats)
        out['queued'] = len(self.queue)
        out['in_flight'] = len(self.tracker)
        return out

    def process_task(self, task_id: str) -> CompletionOutcome:
        """Run the delayed-completion protocol for one queued task id."""
        if not self.tracker.try_acquire(task_id):
            _log.debug('task already being processed task_id=%s', task_id)
            return CompletionOutcome.DUPLICATE
        try:
            with task_context(task_id, current_thread().name):
                if self._cancel.wait(self.grace_seconds):
                    _log.info('auto-completion abandoned on shutdown task_id=%s', task_id)
                    return CompletionOutcome.CANCELED
                with self._span('worker.auto_complete', {'task.id': task_id}):
                    outcome = self._complete_if_open(task_id)
                if outcome == CompletionOutcome.COMPLETED:
                    self._bump('completed_fast_path')
                    _log.info('task auto-completed task_id=%s', task_id)
                return outcome
        finally:
            self.tracker.release(task_id)

    def scan_once(self) -> int:
        """Complete every open task older than the grace period. Returns the count."""
        self._bump('scans')
        try:
            stale = self.store.list_stale_tasks(older_than=timedelta(seconds=self.grace_seconds))
        except Exception:
            self._bump('errors')
            _log.exception('stale task scan failed')
            return 0

        completed = 0
        with self._span('worker.scan', {'scan.candidates': len(stale)}):
            for row in stale:
                if self._cancel.is_set():
                    break
                task_id = str(row.get('task_id') or '').strip()
                if not task_id:
                    continue
                if not self.tracker.try_acquire(task_id):
                    # A consumer owns this task right now.
                    continue
                try:
                    with task_context(task_id, current_thread().name):
                        if self._complete_if_open(task_id) == CompletionOutcome.COMPLETED:
                            completed += 1
                            self._bump('completed_by_scanner')
                            _log.info('task auto-completed by scanner task_id=%s', task_id)
                finally:
                    self.tracker.release(task_id)
        if completed:
            _log.info('scan completed stale tasks count=%d candidates=%d', completed, len(stale))
        return completed

    def _complete_if_open(self, task_id: str) -> CompletionOutcome:
        try:
            row = self.store.get_task(task_id)
        except Exception:
            self._bump('errors')
            _log.exception('error fetching task task_id=%s', task_id)
            return CompletionOutcome.ERROR

        if row is None:
            _log.info('task not found (may have been deleted) task_id=%s', task_id)
            return CompletionOutcome.NOT_FOUND

        try:
            current = parse_status(row.get('status'))
        except ValueError:
            self._bump('errors')
            _log.error('task has unknown status task_id=%s status=%s', task_id, row.get('status'))
            return CompletionOutcome.ERROR
        if current not in NON_TERMINAL_STATUSES:
            _log.debug('task already completed; skipping task_id=%s', task_id)
            return CompletionOutcome.ALREADY_COMPLETED

        try:
            updated = self.store.update_task_status_if(
                task_id,
                expected_statuses=NON_TERMINAL_STATUSES,
                status=TaskStatus.COMPLETED,
            )
        except KeyError:
            _log.info('task deleted before completion task_id=%s', task_id)
            return CompletionOutcome.NOT_FOUND
        except Exception:
            self._bump('errors')
            _log.exception('error auto-completing task task_id=%s', task_id)
            return CompletionOutcome.ERROR
        if updated is None:
            return CompletionOutcome.ALREADY_COMPLETED
        return CompletionOutcome.COMPLETED

    def _consume(self) -> None:
        name = current_thread().name
        _log.info('worker started name=%s', name)
        while not self._cancel.is_set():
            task_id = self.queue.poll(self.poll_interval_seconds)
            if task_id is None:
                continue
            try:
                self.process_task(task_id)
            except Exception:
                self._bump('errors')
                _log.exception('unexpected consumer failure task_id=%s', task_id)
        _log.info('worker shutting down name=%s', name)

    def _scan_loop(self) -> None:
        while not self._cancel.wait(self.scan_interval_seconds):
            try:
                self.scan_once()
            except Exception:
                self._bump('errors')
                _log.exception('unexpected scanner failure')
        _log.info('scanner shutting down')

    def _bump(self, key: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[key] = self._stats.get(key, 0) + amount

    @staticmethod
    def _span(name: str, attributes: dict):
        try:
            from opentelemetry import trace
        except Exception:
            return nullcontext()
        return trace.get_tracer('taskkeeper.worker').start_as_current_span(name, attributes=attributes)
