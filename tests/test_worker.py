from __future__ import annotations

import io
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO

import pytest

from datalake.core.config import get_settings
from datalake.db.init_db import initialize_database
from datalake.db.session import get_engine, get_session_factory, reset_engine
from datalake.jobs.status_store import JobStatusStore
from datalake.jobs.submission import JobSubmissionService
from datalake.jobs.types import JobRecord, JobStatus
from datalake.queue import JobQueue
from datalake.storage.blob_store import BlobStoreError, LocalBlobStore
from datalake.tables.writer import TableWriter
from datalake.worker import JobWorker, WorkerOutcome


class SimulatedCrash(BaseException):
    pass


class FlakyBlobStore:
    """Fails the first ``failures`` reads, then delegates."""

    def __init__(self, inner: LocalBlobStore, failures: int):
        self._inner = inner
        self._failures = failures

    def put(self, path: str, stream: BinaryIO, size: int, content_type: str | None) -> str:
        return self._inner.put(path, stream, size, content_type)

    def get(self, path: str) -> BinaryIO:
        if self._failures > 0:
            self._failures -= 1
            raise BlobStoreError("connection reset by object storage")
        return self._inner.get(path)

    def exists(self, path: str) -> bool:
        return self._inner.exists(path)

    def delete(self, path: str) -> bool:
        return self._inner.delete(path)


class Harness:
    def __init__(self, *, blob_failures: int = 0):
        settings = get_settings()
        session_factory = get_session_factory()
        self.settings = settings
        self.queue = JobQueue(settings, session_factory)
        self.queue.declare_job_queues()
        self.status_store = JobStatusStore(settings, session_factory)
        self.blob_store = LocalBlobStore(settings.blob_root)
        self.writer = TableWriter(get_engine(), settings.table_prefix)
        self.submission = JobSubmissionService(settings, self.status_store, self.queue, self.blob_store)
        worker_blobs = FlakyBlobStore(self.blob_store, blob_failures) if blob_failures else self.blob_store
        self.worker = JobWorker(
            settings,
            self.queue,
            self.status_store,
            worker_blobs,
            self.writer,
            worker_id="worker-test",
        )

    def submit(self, file_name: str, content: bytes, table_name: str | None = None) -> JobRecord:
        return self.submission.submit(io.BytesIO(content), file_name, len(content), None, table_name=table_name)

    def status(self, job_id: str) -> JobRecord:
        record = self.status_store.get(job_id)
        assert record is not None
        return record


def setup_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, **overrides: str) -> None:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    scratch_root = tmp_path / "scratch"
    monkeypatch.setenv("DATALAKE_STATE_ROOT", state_root.as_posix())
    monkeypatch.setenv("DATALAKE_SCRATCH_ROOT", scratch_root.as_posix())
    monkeypatch.setenv("DATALAKE_WORKER_POLL_SECONDS", "0.01")
    for key, value in overrides.items():
        monkeypatch.setenv(f"DATALAKE_{key.upper()}", value)

    get_settings.cache_clear()
    reset_engine()
    initialize_database()


def _orders_csv(rows: int = 10) -> bytes:
    lines = ["order_id,customer,amount"]
    lines.extend(f"{index},customer-{index},{index * 10}" for index in range(1, rows + 1))
    return ("\n".join(lines) + "\n").encode("utf-8")


def test_csv_upload_is_loaded_into_named_table(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    record = harness.submit("orders.csv", _orders_csv(), table_name="orders")

    assert harness.worker.run_once() == WorkerOutcome.COMPLETED

    status = harness.status(record.job_id)
    assert status.status == JobStatus.COMPLETED
    assert status.message == "Loaded 10 rows into table orders"
    assert harness.writer.count_rows("orders") == 10
    assert harness.writer.read_rows("orders", limit=1) == [
        {"order_id": "1", "customer": "customer-1", "amount": "10"}
    ]
    stats = harness.queue.stats()
    assert stats.depth == 0
    assert stats.unacked == 0
    assert list((tmp_path / "scratch").iterdir()) == []


def test_missing_table_name_loads_into_default_table(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    harness.submit("orders.csv", _orders_csv(3))

    assert harness.worker.run_once() == WorkerOutcome.COMPLETED
    assert harness.writer.count_rows("default_table") == 3


def test_unsupported_file_type_fails_and_is_dead_lettered(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    depth_before = harness.queue.stats().depth
    record = harness.submit("report.pdf", b"%PDF-1.4 not a table")
    assert harness.queue.stats().depth == depth_before + 1

    assert harness.worker.run_once() == WorkerOutcome.FAILED

    status = harness.status(record.job_id)
    assert status.status == JobStatus.FAILED
    assert status.message.startswith("Processing failed: ")
    assert "Unsupported file type" in status.message
    assert harness.queue.stats().depth == depth_before
    [dead] = harness.queue.list_messages(harness.queue.dead_letter_queue_name)
    assert json.loads(dead.body)["jobId"] == record.job_id
    assert "Unsupported file type" in dead.headers["x-death"][0]["reason"]


def test_spreadsheet_upload_fails_with_conversion_hint(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    record = harness.submit("orders.xlsx", b"PK\x03\x04 spreadsheet")

    assert harness.worker.run_once() == WorkerOutcome.FAILED

    status = harness.status(record.job_id)
    assert status.status == JobStatus.FAILED
    assert "not yet implemented" in status.message
    assert "convert to CSV" in status.message


def test_empty_csv_fails_permanently(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    record = harness.submit("blank.csv", b"\n\n")

    assert harness.worker.run_once() == WorkerOutcome.FAILED
    assert harness.status(record.job_id).status == JobStatus.FAILED
    assert harness.queue.stats(harness.queue.dead_letter_queue_name).depth == 1


def test_missing_blob_fails_permanently(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    record = harness.submit("orders.csv", _orders_csv())
    harness.blob_store.delete(record.file_path)

    assert harness.worker.run_once() == WorkerOutcome.FAILED
    status = harness.status(record.job_id)
    assert status.status == JobStatus.FAILED
    assert "BlobNotFoundError" in status.message


def test_file_path_escaping_blob_root_fails_without_retry(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    harness.status_store.put(
        JobRecord(
            job_id="job-escape",
            user_id="anonymous",
            file_name="passwd",
            file_path="../../etc/passwd",
            table_name="orders",
            file_size=10,
        )
    )
    harness.queue.publish(harness.queue.queue_name, {"jobId": "job-escape", "filePath": "../../etc/passwd"})

    assert harness.worker.run_once() == WorkerOutcome.FAILED

    status = harness.status("job-escape")
    assert status.status == JobStatus.FAILED
    assert "InvalidBlobPathError" in status.message
    assert harness.queue.stats().depth == 0
    assert harness.queue.stats(harness.queue.dead_letter_queue_name).depth == 1


def test_header_renamed_onto_existing_name_still_loads(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    record = harness.submit("clash.csv", b"a2,a,a\n1,2,3\n", table_name="clash")

    assert harness.worker.run_once() == WorkerOutcome.COMPLETED

    assert harness.status(record.job_id).status == JobStatus.COMPLETED
    assert harness.writer.read_rows("clash") == [{"a2": "1", "a": "2", "a3": "3"}]


def test_redelivery_after_crash_does_not_duplicate_rows(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    record = harness.submit("orders.csv", _orders_csv(), table_name="orders")

    delivery = harness.queue.receive("crashing-worker")
    assert delivery is not None

    def crash(_delivery) -> None:
        raise SimulatedCrash()

    harness.queue.ack = crash  # type: ignore[method-assign]
    with pytest.raises(SimulatedCrash):
        harness.worker.handle(delivery)
    del harness.queue.ack

    assert harness.writer.count_rows("orders") == 10
    assert harness.status(record.job_id).status == JobStatus.PROCESSING
    assert harness.queue.unregister_consumer("crashing-worker") == 1

    assert harness.worker.run_once() == WorkerOutcome.COMPLETED
    assert harness.writer.count_rows("orders") == 10
    assert harness.status(record.job_id).status == JobStatus.COMPLETED


def test_append_mode_redelivery_replaces_rows_of_the_same_job(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    setup_env(tmp_path, monkeypatch, table_write_mode="append")
    harness = Harness()
    first = harness.submit("orders.csv", _orders_csv(4), table_name="orders")
    assert harness.worker.run_once() == WorkerOutcome.COMPLETED

    harness.submit("orders.csv", _orders_csv(6), table_name="orders")
    delivery = harness.queue.receive("crashing-worker")
    assert delivery is not None

    def crash(_delivery) -> None:
        raise SimulatedCrash()

    harness.queue.ack = crash  # type: ignore[method-assign]
    with pytest.raises(SimulatedCrash):
        harness.worker.handle(delivery)
    del harness.queue.ack
    harness.queue.unregister_consumer("crashing-worker")

    assert harness.worker.run_once() == WorkerOutcome.COMPLETED
    assert harness.writer.count_rows("orders") == 10
    assert harness.status(first.job_id).status == JobStatus.COMPLETED


def test_completed_job_is_not_reopened_by_a_late_redelivery(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    record = harness.submit("orders.csv", _orders_csv(), table_name="orders")
    assert harness.worker.run_once() == WorkerOutcome.COMPLETED

    harness.queue.publish_descriptor(record.to_descriptor())
    assert harness.worker.run_once() == WorkerOutcome.COMPLETED

    status = harness.status(record.job_id)
    assert status.status == JobStatus.COMPLETED
    assert harness.writer.count_rows("orders") == 10


def test_transient_failure_is_retried_with_backoff(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(
        tmp_path,
        monkeypatch,
        worker_max_retries="2",
        worker_retry_base_seconds="30",
        worker_retry_max_seconds="60",
    )
    harness = Harness(blob_failures=1)
    record = harness.submit("orders.csv", _orders_csv(), table_name="orders")

    assert harness.worker.run_once() == WorkerOutcome.RETRYING
    status = harness.status(record.job_id)
    assert status.status == JobStatus.PROCESSING
    assert "retry 1/2 in 30s" in status.message

    assert harness.worker.run_once() is None

    later = datetime.now(tz=timezone.utc) + timedelta(seconds=61)
    monkeypatch.setattr(harness.queue, "_now", lambda: later)
    delivery = harness.queue.receive("inspector")
    assert delivery is not None
    assert json.loads(delivery.body)["retryCount"] == 1
    harness.queue.reject(delivery, requeue=True)

    assert harness.worker.run_once() == WorkerOutcome.COMPLETED
    assert harness.status(record.job_id).status == JobStatus.COMPLETED
    assert harness.writer.count_rows("orders") == 10


def test_transient_failure_is_dead_lettered_once_retries_are_spent(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    setup_env(
        tmp_path,
        monkeypatch,
        worker_max_retries="1",
        worker_retry_base_seconds="30",
        worker_retry_max_seconds="30",
    )
    harness = Harness(blob_failures=5)
    record = harness.submit("orders.csv", _orders_csv(), table_name="orders")

    assert harness.worker.run_once() == WorkerOutcome.RETRYING

    later = datetime.now(tz=timezone.utc) + timedelta(seconds=61)
    monkeypatch.setattr(harness.queue, "_now", lambda: later)
    assert harness.worker.run_once() == WorkerOutcome.FAILED

    status = harness.status(record.job_id)
    assert status.status == JobStatus.FAILED
    assert "retries exhausted after 1" in status.message
    assert harness.queue.stats().depth == 0
    assert harness.queue.stats(harness.queue.dead_letter_queue_name).depth == 1


def test_malformed_descriptor_is_dead_lettered_and_recorded_failed(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    harness.status_store.put(
        JobRecord(
            job_id="job-broken",
            user_id="anonymous",
            file_name="orders.csv",
            file_path="uploads/job-broken/orders.csv",
            table_name="orders",
            file_size=10,
        )
    )
    harness.queue.publish(harness.queue.queue_name, {"jobId": "job-broken"})
    harness.queue.publish(harness.queue.queue_name, "this is not json")

    assert harness.worker.run_once() == WorkerOutcome.FAILED
    assert harness.worker.run_once() == WorkerOutcome.FAILED

    status = harness.status("job-broken")
    assert status.status == JobStatus.FAILED
    assert "Malformed job descriptor" in status.message
    assert harness.queue.stats(harness.queue.dead_letter_queue_name).depth == 2


def test_unknown_descriptor_fields_are_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    content = _orders_csv(2)
    harness.blob_store.put("uploads/job-extra/orders.csv", io.BytesIO(content), len(content), "text/csv")
    harness.queue.publish(
        harness.queue.queue_name,
        {
            "jobId": "job-extra",
            "filePath": "uploads/job-extra/orders.csv",
            "fileName": "orders.csv",
            "priority": "high",
        },
    )

    assert harness.worker.run_once() == WorkerOutcome.COMPLETED
    assert harness.writer.count_rows("default_table") == 2


def test_run_drains_queue_and_unregisters(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    setup_env(tmp_path, monkeypatch)
    harness = Harness()
    harness.submit("a.csv", _orders_csv(2), table_name="first_table")
    harness.submit("b.csv", _orders_csv(3), table_name="second_table")

    handled = harness.worker.run(max_messages=10)

    assert handled == 2
    assert harness.writer.count_rows("first_table") == 2
    assert harness.writer.count_rows("second_table") == 3
    stats = harness.queue.stats()
    assert stats.depth == 0
    assert stats.consumer_count == 0
