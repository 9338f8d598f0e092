from datalake.queue.service import (
    DeliveryConflictError,
    JobQueue,
    QueueError,
    QueueNotFoundError,
    QueuePublishError,
    queue_message_snapshot_to_dict,
)
from datalake.queue.stats import QueueStatsReporter, queue_stats_to_dict
from datalake.queue.types import Delivery, QueueMessageSnapshot, QueueStats, QueueStatsSnapshot

__all__ = [
    "Delivery",
    "DeliveryConflictError",
    "JobQueue",
    "QueueError",
    "QueueMessageSnapshot",
    "QueueNotFoundError",
    "QueuePublishError",
    "QueueStats",
    "QueueStatsReporter",
    "QueueStatsSnapshot",
    "queue_message_snapshot_to_dict",
    "queue_stats_to_dict",
]
