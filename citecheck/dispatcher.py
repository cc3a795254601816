from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from citecheck.queue_backend import create_queue_from_env

logger = logging.getLogger(__name__)


class DispatchRejected(Exception):
    """The bounded dispatch queue has no room for another check."""


class ThreadPoolDispatcher:
    """Runs checks on a bounded in-process thread pool.

    Admission is capped at ``concurrency + max_pending``; anything beyond that
    is rejected instead of piling up unbounded in the executor's queue.
    """

    in_process = True

    def __init__(self, *, concurrency: int = 4, max_pending: int = 64) -> None:
        self.concurrency = max(1, int(concurrency))
        self.max_pending = max(0, int(max_pending))
        self._slots = threading.BoundedSemaphore(self.concurrency + self.max_pending)
        self._lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._futures: set[Future[Any]] = set()

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.concurrency,
                    thread_name_prefix="citecheck-worker",
                )
            return self._executor

    def dispatch(self, *, check_id: str, project_id: str, run: Callable[..., Any]) -> None:
        if not self._slots.acquire(blocking=False):
            raise DispatchRejected("worker queue is full")
        try:
            future = self._ensure_executor().submit(run, check_id=check_id)
        except RuntimeError:
            self._slots.release()
            raise DispatchRejected("worker pool is shut down") from None
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future: Future[Any]) -> None:
        with self._lock:
            self._futures.discard(future)
        self._slots.release()
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("check_task_crashed error=%s", exc, exc_info=exc)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for outstanding checks; ``True`` when none are left."""
        with self._lock:
            futures = set(self._futures)
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait_for_running: bool = False) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait_for_running, cancel_futures=True)


class QueueDispatcher:
    """Hands checks to a queue backend for an out-of-process ``WorkerRuntime``."""

    in_process = False

    def __init__(self, *, queue_backend: Any, queue_name: str = "checks") -> None:
        self.queue_backend = queue_backend
        self.queue_name = queue_name

    def dispatch(self, *, check_id: str, project_id: str, run: Callable[..., Any]) -> None:
        self.queue_backend.enqueue(
            project_id=project_id,
            queue_name=self.queue_name,
            payload={"check_id": check_id},
        )

    def drain(self, timeout: float | None = None) -> bool:
        return True

    def shutdown(self, *, wait_for_running: bool = False) -> None:
        return None


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_dispatcher_from_env(
    environ: Mapping[str, str] | None = None,
) -> ThreadPoolDispatcher | QueueDispatcher:
    env = os.environ if environ is None else environ
    mode = env.get("CITECHECK_DISPATCH_MODE", "pool").strip().lower()
    if mode == "pool":
        return ThreadPoolDispatcher(
            concurrency=_env_int(env, "CITECHECK_WORKER_CONCURRENCY", default=4, minimum=1),
            max_pending=_env_int(env, "CITECHECK_MAX_PENDING_CHECKS", default=64, minimum=0),
        )
    if mode == "queue":
        return QueueDispatcher(queue_backend=create_queue_from_env(env))
    raise RuntimeError(f"unsupported dispatch mode: {mode}")
