from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    done: int = 0
    errored: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "done": self.done,
            "errored": self.errored,
            "skipped": self.skipped,
        }

    def add(self, other: dict[str, int]) -> None:
        self.processed += int(other["processed"])
        self.done += int(other["done"])
        self.errored += int(other["errored"])
        self.skipped += int(other["skipped"])


class WorkerRuntime:
    """Resident worker that drains queued checks, round-robin across projects."""

    def __init__(
        self,
        *,
        store: Any,
        queue_backend: Any,
        queue_name: str = "checks",
        project_burst_limit: int = 1,
        max_messages_per_iteration: int = 4,
        poll_interval_ms: int = 200,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.queue_name = queue_name
        self.project_burst_limit = max(1, int(project_burst_limit))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))

    def _process_message(self, *, project_id: str, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(project_id=project_id, queue_name=self.queue_name)
        if msg is None:
            return False
        stats.processed += 1
        check_id = str(msg.payload.get("check_id") or "")
        if not check_id:
            self.queue_backend.ack(project_id=project_id, message_id=msg.message_id)
            stats.skipped += 1
            return True

        try:
            result = self.store.run_check(check_id=check_id)
        except Exception:
            # Checks are never retried; the message is acked either way.
            logger.exception("worker_run_check_failed check_id=%s", check_id)
            self.queue_backend.ack(project_id=project_id, message_id=msg.message_id)
            stats.errored += 1
            return True

        self.queue_backend.ack(project_id=project_id, message_id=msg.message_id)
        final_status = str(result.get("final_status", ""))
        if final_status == "DONE":
            stats.done += 1
        elif final_status == "ERROR":
            stats.errored += 1
        else:
            stats.skipped += 1
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        while stats.processed < self.max_messages_per_iteration:
            projects = self.queue_backend.list_projects(queue_name=self.queue_name)
            if not projects:
                break
            progressed = False
            for project_id in projects:
                for _ in range(self.project_burst_limit):
                    if stats.processed >= self.max_messages_per_iteration:
                        break
                    handled = self._process_message(project_id=project_id, stats=stats)
                    progressed = progressed or handled
                    if not handled:
                        break
            if not progressed:
                break
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_worker_runtime_from_env(
    *,
    store: Any,
    queue_backend: Any,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    return WorkerRuntime(
        store=store,
        queue_backend=queue_backend,
        queue_name="checks",
        project_burst_limit=_env_int(env, "CITECHECK_WORKER_PROJECT_BURST_LIMIT", default=1, minimum=1),
        max_messages_per_iteration=_env_int(env, "CITECHECK_WORKER_CONCURRENCY", default=4, minimum=1),
        poll_interval_ms=_env_int(env, "CITECHECK_WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
    )
