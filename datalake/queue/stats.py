from __future__ import annotations

import logging
from dataclasses import asdict

from datalake.queue.service import JobQueue, QueueNotFoundError
from datalake.queue.types import QueueStats

logger = logging.getLogger(__name__)

STATUS_AVAILABLE = "available"
STATUS_UNAVAILABLE = "unavailable"
STATUS_ERROR = "error"


class QueueStatsReporter:
    """Read-only diagnostic snapshot of the job queue. Never raises."""

    def __init__(self, queue: JobQueue):
        self._queue = queue

    def stats(self) -> QueueStats:
        queue_name = self._queue.queue_name
        dead_letter_queue = self._queue.dead_letter_queue_name
        logger.debug("Retrieving queue stats for %s", queue_name)
        try:
            snapshot = self._queue.stats(queue_name)
        except QueueNotFoundError as exc:
            logger.warning("Queue not found: %s", queue_name)
            return QueueStats(queue_name=queue_name, status=STATUS_UNAVAILABLE, error=str(exc))
        except Exception as exc:
            logger.error("Error retrieving queue stats for %s", queue_name, exc_info=True)
            return QueueStats(queue_name=queue_name, status=STATUS_ERROR, error=str(exc))

        dead_letter_depth: int | None = None
        try:
            dead_letter_depth = self._queue.stats(dead_letter_queue).depth
        except QueueNotFoundError:
            dead_letter_depth = None
        except Exception:
            logger.warning("Could not read dead-letter depth for %s", dead_letter_queue, exc_info=True)

        logger.info(
            "Queue stats queue=%s depth=%d unacked=%d consumers=%d",
            queue_name,
            snapshot.depth,
            snapshot.unacked,
            snapshot.consumer_count,
        )
        return QueueStats(
            queue_name=queue_name,
            status=STATUS_AVAILABLE,
            depth=snapshot.depth,
            consumer_count=snapshot.consumer_count,
            unacked=snapshot.unacked,
            dead_letter_queue=dead_letter_queue,
            dead_letter_depth=dead_letter_depth,
        )


def queue_stats_to_dict(stats: QueueStats) -> dict[str, object]:
    return asdict(stats)
