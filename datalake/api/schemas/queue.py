from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class QueueStatsResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    queue_name: str
    status: str
    depth: int
    consumer_count: int
    unacked: int
    dead_letter_queue: str | None
    dead_letter_depth: int | None
    error: str | None


class QueueMessageResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message_id: str
    queue_name: str
    body: str
    headers: dict[str, Any]
    status: str
    delivery_count: int
    available_at: datetime
    consumer_id: str | None
    created_at: datetime


class DeadLetterListResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    queue_name: str
    items: list[QueueMessageResponse]
