from __future__ import annotations

import os

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from datalake.api.schemas.jobs import UploadAcceptedResponse
from datalake.core.config import get_settings
from datalake.db.session import get_session_factory
from datalake.jobs.status_store import JobStatusStore
from datalake.jobs.submission import InvalidUploadError, JobSubmissionService
from datalake.queue.service import JobQueue, QueueError
from datalake.storage.blob_store import BlobStoreError, LocalBlobStore

router = APIRouter(tags=["uploads"])


def get_submission_service() -> JobSubmissionService:
    settings = get_settings()
    session_factory = get_session_factory()
    return JobSubmissionService(
        settings=settings,
        status_store=JobStatusStore(settings, session_factory),
        queue=JobQueue(settings, session_factory),
        blob_store=LocalBlobStore(settings.blob_root),
    )


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


@router.post("/upload", response_model=UploadAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
def upload_file(
    file: UploadFile | None = File(default=None),
    user_id: str | None = Form(default=None, alias="userId"),
    table_name: str | None = Form(default=None, alias="tableName"),
    service: JobSubmissionService = Depends(get_submission_service),
) -> UploadAcceptedResponse:
    try:
        record = service.submit(
            file.file if file is not None else None,
            file.filename if file is not None else None,
            _upload_size(file) if file is not None else None,
            file.content_type if file is not None else None,
            user_id=user_id,
            table_name=table_name,
        )
    except InvalidUploadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BlobStoreError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    except QueueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return UploadAcceptedResponse(job_id=record.job_id, status=record.status.value)
