from __future__ import annotations

from fastapi import APIRouter, Depends

from datalake.api.routes.jobs import get_status_store
from datalake.api.schemas.maintenance import PurgeExpiredResponse
from datalake.jobs.status_store import JobStatusStore

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/status/purge-expired", response_model=PurgeExpiredResponse)
def purge_expired_status(store: JobStatusStore = Depends(get_status_store)) -> PurgeExpiredResponse:
    return PurgeExpiredResponse(purged=store.purge_expired())
