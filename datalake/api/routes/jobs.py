from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from datalake.api.schemas.jobs import JobResponse
from datalake.core.config import get_settings
from datalake.db.session import get_session_factory
from datalake.jobs.status_store import JobStatusStore

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_status_store() -> JobStatusStore:
    return JobStatusStore(settings=get_settings(), session_factory=get_session_factory())


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, store: JobStatusStore = Depends(get_status_store)) -> JobResponse:
    record = store.get(job_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job not found: {job_id}")
    return JobResponse.model_validate(record.model_dump(mode="json"))


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(job_id: str, store: JobStatusStore = Depends(get_status_store)) -> Response:
    if not store.delete(job_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job not found: {job_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
