#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from citecheck.queue_backend import create_queue_from_env
from citecheck.store import store
from citecheck.worker_runtime import create_worker_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run resident worker loop for queued citation checks.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("CITECHECK_LOG_LEVEL", "INFO").strip().upper() or "INFO",
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    queue_backend = getattr(store.dispatcher, "queue_backend", None) or create_queue_from_env()
    runtime = create_worker_runtime_from_env(store=store, queue_backend=queue_backend)
    if args.iterations > 0:
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = runtime.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
