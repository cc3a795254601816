from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Mapping
from typing import Protocol
from urllib import parse, request
from urllib.error import URLError

from citecheck.errors import EngineFailure

logger = logging.getLogger(__name__)


class ContextSourceProvider(Protocol):
    def list_source_ids(self, project_id: str) -> list[str]: ...


class InMemoryContextSources:
    """Candidate sources selected per project, set by whoever owns the selection."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_project: dict[str, list[str]] = {}

    def set_source_ids(self, project_id: str, source_ids: list[str]) -> None:
        with self._lock:
            self._by_project[project_id] = [str(x) for x in source_ids if str(x)]

    def list_source_ids(self, project_id: str) -> list[str]:
        with self._lock:
            return list(self._by_project.get(project_id, []))

    def reset(self) -> None:
        with self._lock:
            self._by_project.clear()


class HttpContextSources:
    def __init__(self, *, base_url: str, timeout_s: float = 10.0) -> None:
        if not base_url.strip():
            raise ValueError("context sources base_url must not be empty")
        self._base_url = base_url.strip().rstrip("/")
        self._timeout_s = max(0.5, float(timeout_s))

    def list_source_ids(self, project_id: str) -> list[str]:
        endpoint = f"{self._base_url}/projects/{parse.quote(project_id, safe='')}/context-sources"
        req = request.Request(endpoint, method="GET", headers={"Accept": "application/json"})
        try:
            with request.urlopen(req, timeout=self._timeout_s) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (TimeoutError, URLError, ValueError, OSError) as exc:
            logger.warning("context_sources_unavailable project_id=%s error=%s", project_id, exc)
            raise EngineFailure(f"context sources unavailable: {exc}") from exc
        rows = payload.get("source_ids") if isinstance(payload, dict) else None
        if not isinstance(rows, list):
            raise EngineFailure("context sources response is missing 'source_ids'")
        return [str(x) for x in rows if str(x)]


def create_context_sources_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryContextSources | HttpContextSources:
    env = os.environ if environ is None else environ
    base_url = env.get("CITECHECK_CONTEXT_SOURCES_URL", "").strip()
    if base_url:
        return HttpContextSources(base_url=base_url)
    return InMemoryContextSources()
