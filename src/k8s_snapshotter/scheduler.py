from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, as_completed
import logging
import threading
from typing import Callable, Iterator

from .errors import BackupTaskError, DuplicateTaskError, SchedulerClosedError
from .models import VolumeBackupTask

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4

BackupRunner = Callable[[VolumeBackupTask], None]


class BackupJobScheduler:
    """Run one backup runner per scheduled task on a bounded thread pool.

    ``schedule`` may be called until ``wait`` is called. ``wait`` returns an
    iterator that yields a :class:`BackupTaskError` for every task whose runner
    raised, in completion order, and stops only after every scheduled task has
    finished. A failing task never cancels or delays its siblings.

    The worker pool is shut down when the stream is exhausted or when the
    scheduler is used as a context manager and exits. A stream that is dropped
    unread leaves the pool running until ``__exit__``, so callers that may not
    drain it should use ``with``.
    """

    def __init__(self, runner: BackupRunner, *, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._runner = runner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backup")
        self._futures: dict[Future[None], VolumeBackupTask] = {}
        self._tasks: set[VolumeBackupTask] = set()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, task: VolumeBackupTask) -> None:
        with self._lock:
            if self._closed:
                raise SchedulerClosedError(
                    f"cannot schedule {task.namespace}/{task.volume_claim_name}: scheduler is already waiting"
                )
            if task in self._tasks:
                raise DuplicateTaskError(f"{task.namespace}/{task.volume_claim_name} is already scheduled")
            future = self._executor.submit(self._runner, task)
            self._futures[future] = task
            self._tasks.add(task)
        logger.debug("Scheduled backup of %s/%s", task.namespace, task.volume_claim_name)

    def wait(self) -> Iterator[BackupTaskError]:
        with self._lock:
            if self._closed:
                raise SchedulerClosedError("wait() has already been called")
            self._closed = True
            futures = dict(self._futures)
        return self._drain(futures)

    def _drain(self, futures: dict[Future[None], VolumeBackupTask]) -> Iterator[BackupTaskError]:
        try:
            for future in as_completed(futures):
                error = future.exception()
                if error is not None:
                    yield BackupTaskError(futures[future], error)
        finally:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> BackupJobScheduler:
        return self

    def __exit__(self, *exc_info: object) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
