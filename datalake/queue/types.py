from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from datalake.db.models import MessageStatus


@dataclass(frozen=True)
class Delivery:
    message_id: str
    queue_name: str
    body: str
    headers: dict[str, Any]
    delivery_count: int
    consumer_id: str
    lease_expires_at: datetime

    @property
    def redelivered(self) -> bool:
        return self.delivery_count > 1

    def json(self) -> Any:
        return json.loads(self.body)


@dataclass(frozen=True)
class QueueMessageSnapshot:
    message_id: str
    queue_name: str
    body: str
    headers: dict[str, Any]
    status: MessageStatus
    delivery_count: int
    available_at: datetime
    consumer_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class QueueStatsSnapshot:
    queue_name: str
    depth: int
    unacked: int
    consumer_count: int


@dataclass(frozen=True)
class QueueStats:
    queue_name: str
    status: str
    depth: int = 0
    consumer_count: int = 0
    unacked: int = 0
    dead_letter_queue: str | None = None
    dead_letter_depth: int | None = None
    error: str | None = None
