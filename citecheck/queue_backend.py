from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


@dataclass
class QueueMessage:
    message_id: str
    project_id: str
    queue_name: str
    payload: dict[str, Any]
    enqueued_at: str | None = None


class InMemoryQueueBackend:
    """Per-project FIFO queues held in process memory."""

    def __init__(self, namespace: str = "citecheck") -> None:
        self._namespace = namespace.strip() or "citecheck"
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def queue_key(self, *, project_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{project_id}:queue:{queue_name}"

    def enqueue(self, *, project_id: str, queue_name: str, payload: dict[str, Any]) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                project_id=project_id,
                queue_name=queue_name,
                payload=dict(payload),
                enqueued_at=self._utcnow_iso(),
            )
            key = self.queue_key(project_id=project_id, queue_name=queue_name)
            self._queues.setdefault(key, deque()).append(msg)
            return msg

    def dequeue(self, *, project_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.get(self.queue_key(project_id=project_id, queue_name=queue_name))
            if not queue:
                return None
            msg = queue.popleft()
            self._inflight[msg.message_id] = msg
            return msg

    def ack(self, *, project_id: str, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return
            if msg.project_id != project_id:
                raise RuntimeError("project mismatch for queue message")
            self._inflight.pop(message_id, None)

    def pending_count(self, *, project_id: str, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(self.queue_key(project_id=project_id, queue_name=queue_name), ()))

    def list_projects(self, *, queue_name: str) -> list[str]:
        with self._lock:
            prefix = f"{self._namespace}:"
            suffix = f":queue:{queue_name}"
            projects: set[str] = set()
            for key, queue in self._queues.items():
                if not queue or not key.startswith(prefix) or not key.endswith(suffix):
                    continue
                project_id = key[len(prefix) : -len(suffix)]
                if project_id:
                    projects.add(project_id)
            return sorted(projects)


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for CITECHECK_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis lists per project; message bodies kept under their own keys until acked."""

    def __init__(self, *, dsn: str, namespace: str = "citecheck", client: Any | None = None) -> None:
        if client is None:
            if not dsn.strip():
                raise ValueError("REDIS_DSN must be provided for redis queue backend")
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client
        self._namespace = namespace.strip() or "citecheck"
        self._lock = threading.RLock()

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, *, project_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{project_id}:queue:{queue_name}:pending"

    def _inflight_key(self, *, project_id: str) -> str:
        return f"{self._namespace}:{project_id}:inflight"

    def _msg_key(self, *, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def enqueue(self, *, project_id: str, queue_name: str, payload: dict[str, Any]) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                project_id=project_id,
                queue_name=queue_name,
                payload=dict(payload),
                enqueued_at=datetime.now(UTC).isoformat(),
            )
            pending_key = self._pending_key(project_id=project_id, queue_name=queue_name)
            self._client.set(
                self._msg_key(message_id=msg.message_id),
                json.dumps(
                    {
                        "project_id": msg.project_id,
                        "queue_name": msg.queue_name,
                        "payload": msg.payload,
                        "enqueued_at": msg.enqueued_at,
                    },
                    sort_keys=True,
                    ensure_ascii=True,
                    separators=(",", ":"),
                ),
            )
            self._client.rpush(pending_key, msg.message_id)
            self._client.sadd(self._registry_key(), pending_key)
            return msg

    def dequeue(self, *, project_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(project_id=project_id, queue_name=queue_name)
            while True:
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                raw = self._client.get(self._msg_key(message_id=message_id))
                if not isinstance(raw, str) or not raw:
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                self._client.sadd(self._inflight_key(project_id=project_id), message_id)
                return QueueMessage(
                    message_id=message_id,
                    project_id=str(data.get("project_id", project_id)),
                    queue_name=str(data.get("queue_name", queue_name)),
                    payload=data.get("payload", {}),
                    enqueued_at=data.get("enqueued_at"),
                )

    def ack(self, *, project_id: str, message_id: str) -> None:
        with self._lock:
            self._client.srem(self._inflight_key(project_id=project_id), message_id)
            self._client.delete(self._msg_key(message_id=message_id))

    def pending_count(self, *, project_id: str, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(project_id=project_id, queue_name=queue_name)))

    def list_projects(self, *, queue_name: str) -> list[str]:
        with self._lock:
            prefix = f"{self._namespace}:"
            suffix = f":queue:{queue_name}:pending"
            projects: set[str] = set()
            for key in self._client.smembers(self._registry_key()):
                if not isinstance(key, str) or not key.startswith(prefix) or not key.endswith(suffix):
                    continue
                if int(self._client.llen(key)) <= 0:
                    continue
                project_id = key[len(prefix) : -len(suffix)]
                if project_id:
                    projects.add(project_id)
            return sorted(projects)


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("CITECHECK_QUEUE_BACKEND", "memory").strip().lower()
    namespace = env.get("CITECHECK_QUEUE_KEY_PREFIX", "citecheck")
    if backend == "memory":
        return InMemoryQueueBackend(namespace=namespace)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when CITECHECK_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported queue backend: {backend}")
