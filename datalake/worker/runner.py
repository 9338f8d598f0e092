from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Sequence

from datalake.core.config import Settings, get_settings
from datalake.core.logging import configure_logging
from datalake.db.init_db import initialize_database
from datalake.db.session import get_engine, get_session_factory
from datalake.jobs.status_store import JobStatusStore
from datalake.queue.service import JobQueue
from datalake.storage.blob_store import LocalBlobStore
from datalake.tables.writer import TableWriter
from datalake.worker.pipeline import JobWorker, WorkerOutcome

logger = logging.getLogger(__name__)


def build_worker(settings: Settings | None = None, *, worker_id: str | None = None) -> JobWorker:
    settings = settings or get_settings()
    session_factory = get_session_factory()
    return JobWorker(
        settings,
        JobQueue(settings, session_factory),
        JobStatusStore(settings, session_factory),
        LocalBlobStore(settings.blob_root),
        TableWriter(get_engine(), settings.table_prefix),
        worker_id=worker_id,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Consume queued upload jobs and load them into tables")
    parser.add_argument("--worker-id", default=None, help="Consumer identity; defaults to host, pid and a random suffix")
    parser.add_argument("--max-messages", type=int, default=None, help="Stop after handling this many deliveries")
    parser.add_argument("--once", action="store_true", help="Handle at most one delivery and exit")
    return parser.parse_args(argv)


def _install_signal_handlers(stop_event: threading.Event) -> dict[int, object]:
    def _stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, stopping after the current delivery", signum)
        stop_event.set()

    previous: dict[int, object] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _stop)
    return previous


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()

    worker = build_worker(settings, worker_id=args.worker_id)
    JobQueue(settings, get_session_factory()).declare_job_queues()

    if args.once:
        outcome = worker.run_once()
        logger.info("Single run finished: %s", outcome.value if outcome is not None else "queue empty")
        return 0 if outcome in (None, WorkerOutcome.COMPLETED) else 1

    stop_event = threading.Event()
    previous_handlers = _install_signal_handlers(stop_event)
    try:
        worker.run(stop_event=stop_event, max_messages=args.max_messages)
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
