from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from datalake.api.schemas.queue import DeadLetterListResponse, QueueMessageResponse, QueueStatsResponse
from datalake.core.config import get_settings
from datalake.db.session import get_session_factory
from datalake.queue.service import JobQueue, QueueNotFoundError, queue_message_snapshot_to_dict
from datalake.queue.stats import QueueStatsReporter, queue_stats_to_dict

router = APIRouter(prefix="/queue", tags=["queue"])


def get_job_queue() -> JobQueue:
    return JobQueue(settings=get_settings(), session_factory=get_session_factory())


@router.get("/stats", response_model=QueueStatsResponse)
def get_queue_stats(queue: JobQueue = Depends(get_job_queue)) -> QueueStatsResponse:
    stats = QueueStatsReporter(queue).stats()
    return QueueStatsResponse.model_validate(queue_stats_to_dict(stats))


@router.get("/dead-letters", response_model=DeadLetterListResponse)
def list_dead_letters(
    limit: int = Query(default=100, ge=1, le=1000),
    queue: JobQueue = Depends(get_job_queue),
) -> DeadLetterListResponse:
    dead_letter_queue = queue.dead_letter_queue_name
    try:
        messages = queue.list_messages(dead_letter_queue, limit=limit)
    except QueueNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return DeadLetterListResponse(
        queue_name=dead_letter_queue,
        items=[QueueMessageResponse.model_validate(queue_message_snapshot_to_dict(item)) for item in messages],
    )
