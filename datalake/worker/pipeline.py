from __future__ import annotations

import json
import logging
import os
import shutil
import socket
import tempfile
import threading
from enum import Enum
from pathlib import Path, PurePosixPath
from uuid import uuid4

from pydantic import ValidationError

from datalake.core.config import Settings
from datalake.core.path_safety import PathSafetyError, safe_file_name
from datalake.jobs.status_store import JobStatusStore
from datalake.jobs.types import JobDescriptor, JobStatus
from datalake.queue.service import DeliveryConflictError, JobQueue, QueueError
from datalake.queue.types import Delivery
from datalake.storage.blob_store import BlobNotFoundError, BlobStore, InvalidBlobPathError
from datalake.tables.parsers import ParseError, UnsupportedFormatError, parse_file
from datalake.tables.writer import InvalidTableNameError, SchemaMismatchError, TableWriteMode, TableWriter

logger = logging.getLogger(__name__)

_COPY_CHUNK_BYTES = 1024 * 1024


class InvalidDescriptorError(ValueError):
    pass


# No retry can succeed for these; they go straight to the dead-letter queue.
PERMANENT_ERRORS: tuple[type[Exception], ...] = (
    InvalidDescriptorError,
    UnsupportedFormatError,
    ParseError,
    InvalidTableNameError,
    SchemaMismatchError,
    BlobNotFoundError,
    InvalidBlobPathError,
    PathSafetyError,
)


class WorkerOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class JobWorker:
    """Consumes job descriptors and loads each uploaded file into its table.

    Status moves ``queued -> processing -> completed | failed``. Permanent errors,
    and transient errors once the descriptor's retry budget is spent, reject the
    delivery into the dead-letter queue and mark the job ``failed``. Other
    transient errors republish the descriptor with ``retryCount + 1`` after an
    exponential backoff and acknowledge the original delivery.
    """

    def __init__(
        self,
        settings: Settings,
        queue: JobQueue,
        status_store: JobStatusStore,
        blob_store: BlobStore,
        table_writer: TableWriter,
        *,
        worker_id: str | None = None,
    ):
        self._settings = settings
        self._queue = queue
        self._status_store = status_store
        self._blob_store = blob_store
        self._table_writer = table_writer
        self._worker_id = (worker_id or default_worker_id()).strip()
        if not self._worker_id:
            raise ValueError("worker_id cannot be blank")

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def _decode(self, delivery: Delivery) -> JobDescriptor:
        try:
            return JobDescriptor.model_validate_json(delivery.body)
        except ValidationError as exc:
            raise InvalidDescriptorError(f"Malformed job descriptor: {exc.error_count()} validation error(s)") from exc

    def _recover_job_id(self, delivery: Delivery) -> str | None:
        try:
            payload = json.loads(delivery.body)
        except ValueError:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("jobId"), str) and payload["jobId"].strip():
            return payload["jobId"]
        return None

    def _retry_delay(self, retry_count: int) -> int:
        delay = self._settings.worker_retry_base_seconds * (2**retry_count)
        return min(delay, self._settings.worker_retry_max_seconds)

    def _make_scratch_dir(self) -> Path:
        scratch_root = self._settings.scratch_root
        return Path(tempfile.mkdtemp(prefix="datalake-worker-", dir=scratch_root))

    def _cleanup(self, scratch: Path) -> None:
        shutil.rmtree(scratch, ignore_errors=True)

    def _download(self, descriptor: JobDescriptor, scratch: Path) -> Path:
        fallback = PurePosixPath(descriptor.file_path).name or "upload"
        local_path = scratch / safe_file_name(descriptor.file_name, fallback=fallback)
        with self._blob_store.get(descriptor.file_path) as source, local_path.open("wb") as target:
            shutil.copyfileobj(source, target, _COPY_CHUNK_BYTES)
        return local_path

    def _process(self, descriptor: JobDescriptor, delivery: Delivery, scratch: Path) -> tuple[str, int]:
        local_path = self._download(descriptor, scratch)
        self._queue.touch(delivery)

        parsed = parse_file(local_path)
        self._queue.touch(delivery)

        table_name = descriptor.table_name or self._settings.default_table_name
        row_count = self._table_writer.write_table(
            table_name,
            parsed,
            job_id=descriptor.job_id,
            mode=TableWriteMode(self._settings.table_write_mode),
        )
        return table_name, row_count

    def _reject(self, delivery: Delivery, reason: str) -> None:
        try:
            self._queue.reject(delivery, requeue=False, reason=reason)
        except DeliveryConflictError:
            logger.warning("Could not reject message %s: delivery no longer held", delivery.message_id)

    def _fail(self, delivery: Delivery, job_id: str | None, detail: str) -> WorkerOutcome:
        logger.error("Job failed job_id=%s message=%s: %s", job_id, delivery.message_id, detail)
        self._reject(delivery, detail)
        if job_id is not None:
            self._status_store.update(job_id, JobStatus.FAILED, f"Processing failed: {detail}")
        return WorkerOutcome.FAILED

    def _retry_or_fail(self, delivery: Delivery, descriptor: JobDescriptor, exc: Exception) -> WorkerOutcome:
        detail = describe_error(exc)
        max_retries = self._settings.worker_max_retries
        if descriptor.retry_count >= max_retries:
            return self._fail(delivery, descriptor.job_id, f"{detail} (retries exhausted after {max_retries})")

        delay = self._retry_delay(descriptor.retry_count)
        retry = descriptor.next_retry()
        logger.warning(
            "Transient failure job_id=%s attempt=%d, retrying in %ds: %s",
            descriptor.job_id,
            descriptor.retry_count + 1,
            delay,
            detail,
        )
        try:
            self._queue.publish_descriptor(retry, delay_seconds=delay)
        except QueueError:
            logger.exception("Could not republish job_id=%s, requeueing original delivery", descriptor.job_id)
            try:
                self._queue.reject(delivery, requeue=True, reason=detail, delay_seconds=delay)
            except DeliveryConflictError:
                logger.warning("Could not requeue message %s: delivery no longer held", delivery.message_id)
        else:
            try:
                self._queue.ack(delivery)
            except DeliveryConflictError:
                logger.warning("Could not ack message %s after scheduling retry", delivery.message_id)

        self._status_store.update(
            descriptor.job_id,
            JobStatus.PROCESSING,
            f"Attempt {descriptor.retry_count + 1} failed: {detail}; retry {retry.retry_count}/{max_retries} in {delay}s",
        )
        return WorkerOutcome.RETRYING

    def handle(self, delivery: Delivery) -> WorkerOutcome:
        logger.info(
            "Received message %s (delivery %d) on %s",
            delivery.message_id,
            delivery.delivery_count,
            delivery.queue_name,
        )
        try:
            descriptor = self._decode(delivery)
        except InvalidDescriptorError as exc:
            return self._fail(delivery, self._recover_job_id(delivery), describe_error(exc))

        attempt = descriptor.retry_count + 1
        self._status_store.update(
            descriptor.job_id,
            JobStatus.PROCESSING,
            f"Processing started by {self._worker_id} (attempt {attempt})",
        )

        scratch = self._make_scratch_dir()
        try:
            table_name, row_count = self._process(descriptor, delivery, scratch)
        except DeliveryConflictError:
            logger.warning("Lost lease on message %s for job_id=%s, abandoning", delivery.message_id, descriptor.job_id)
            return WorkerOutcome.ABANDONED
        except PERMANENT_ERRORS as exc:
            return self._fail(delivery, descriptor.job_id, describe_error(exc))
        except Exception as exc:
            return self._retry_or_fail(delivery, descriptor, exc)
        finally:
            self._cleanup(scratch)

        try:
            self._queue.ack(delivery)
        except DeliveryConflictError:
            logger.warning("Could not ack message %s: delivery no longer held", delivery.message_id)
        self._status_store.update(
            descriptor.job_id,
            JobStatus.COMPLETED,
            f"Loaded {row_count} rows into table {table_name}",
        )
        logger.info("Job completed job_id=%s table=%s rows=%d", descriptor.job_id, table_name, row_count)
        return WorkerOutcome.COMPLETED

    def run_once(self) -> WorkerOutcome | None:
        delivery = self._queue.receive(self._worker_id)
        if delivery is None:
            return None
        return self.handle(delivery)

    def run(self, *, stop_event: threading.Event | None = None, max_messages: int | None = None) -> int:
        logger.info("Starting worker %s on queue %s", self._worker_id, self._queue.queue_name)
        handled = self._queue.consume(
            self.handle,
            self._worker_id,
            stop_event=stop_event,
            max_messages=max_messages,
        )
        logger.info("Worker %s stopped after %d deliveries", self._worker_id, handled)
        return handled
