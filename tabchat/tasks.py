"""Fire-and-forget background work on a thread pool."""

import contextvars
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Runs work the caller must never wait on or fail because of.

    submit() returns immediately; exceptions raised by the task are logged
    and dropped. drain() lets shutdown code and tests wait for in-flight work.
    """

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tabchat-bg")
        self._pending: set = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, name: Optional[str] = None) -> Optional[Future]:
        task_name = name or getattr(fn, "__name__", "task")
        with self._lock:
            if self._closed:
                logger.warning(f"Background runner closed, dropping task {task_name}")
                return None
            # Carry request-scoped context (request_id) into the worker
            ctx = contextvars.copy_context()
            future = self._executor.submit(ctx.run, self._run, task_name, fn, *args)
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _run(self, task_name: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception:
            logger.exception(f"Background task {task_name} failed")
            return None

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until no task is in flight.

        Tasks may spawn further tasks, so keep waiting until the pending set
        stays empty. Returns False if the timeout expired first.
        """
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return True
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def shutdown(self, timeout: Optional[float] = 30.0) -> None:
        self.drain(timeout)
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
