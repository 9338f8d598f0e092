from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from datalake.core.config import get_settings
from datalake.tables.parsers import supported_formats

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health() -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "queue": settings.queue_name,
        "supported_formats": supported_formats(),
        "timestamp": datetime.now(tz=timezone.utc),
    }
