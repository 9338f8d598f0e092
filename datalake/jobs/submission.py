from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import BinaryIO
from uuid import uuid4

from datalake.core.config import Settings
from datalake.core.path_safety import PathSafetyError, safe_file_name
from datalake.jobs.status_store import JobStatusStore
from datalake.jobs.types import JobRecord, JobStatus, upload_object_path
from datalake.queue.service import JobQueue
from datalake.storage.blob_store import BlobStore
from datalake.tables.writer import InvalidTableNameError, validate_table_name

logger = logging.getLogger(__name__)

QUEUED_MESSAGE = "File received and queued"


class InvalidUploadError(ValueError):
    pass


class JobSubmissionService:
    def __init__(
        self,
        settings: Settings,
        status_store: JobStatusStore,
        queue: JobQueue,
        blob_store: BlobStore,
    ):
        self._settings = settings
        self._status_store = status_store
        self._queue = queue
        self._blob_store = blob_store

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _new_job_id(self) -> str:
        return str(uuid4())

    def _normalize_user_id(self, user_id: str | None) -> str:
        if user_id is None or not user_id.strip():
            return self._settings.default_user_id
        return user_id.strip()

    def _normalize_table_name(self, table_name: str | None) -> str:
        if table_name is None or not table_name.strip():
            return self._settings.default_table_name
        try:
            return validate_table_name(table_name)
        except InvalidTableNameError as exc:
            raise InvalidUploadError(str(exc)) from exc

    def submit(
        self,
        file_stream: BinaryIO | None,
        file_name: str | None,
        file_size: int | None,
        content_type: str | None,
        *,
        user_id: str | None = None,
        table_name: str | None = None,
    ) -> JobRecord:
        """Accept an upload and enqueue it for processing.

        Side effects happen in a fixed order: blob write, status record, queue
        publish. A blob failure aborts before any record or message exists. A
        status-store failure is only logged, while a publish failure propagates.
        """
        if file_stream is None or not file_size or file_size <= 0:
            raise InvalidUploadError("file is required")
        try:
            stored_name = safe_file_name(file_name)
        except PathSafetyError as exc:
            raise InvalidUploadError(str(exc)) from exc
        resolved_table = self._normalize_table_name(table_name)
        resolved_user = self._normalize_user_id(user_id)

        job_id = self._new_job_id()
        object_path = upload_object_path(job_id, stored_name)

        self._blob_store.put(object_path, file_stream, file_size, content_type)

        record = JobRecord(
            job_id=job_id,
            user_id=resolved_user,
            file_name=stored_name,
            file_path=object_path,
            table_name=resolved_table,
            file_size=file_size,
            timestamp=self._now(),
            status=JobStatus.QUEUED,
            message=QUEUED_MESSAGE,
        )
        self._status_store.put(record)
        self._queue.publish_descriptor(record.to_descriptor())

        logger.info(
            "Accepted upload job_id=%s user=%s table=%s size=%d",
            job_id,
            resolved_user,
            resolved_table,
            file_size,
        )
        return record

    def get_status(self, job_id: str) -> JobRecord | None:
        return self._status_store.get(job_id)

    def delete_job(self, job_id: str) -> bool:
        return self._status_store.delete(job_id)
