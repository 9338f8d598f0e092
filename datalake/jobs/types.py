from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

JOB_KEY_PREFIX = "job:"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def is_transition_allowed(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


def upload_object_path(job_id: str, file_name: str) -> str:
    return f"uploads/{job_id}/{file_name}"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class JobRecord(BaseModel):
    """Status record for one submitted file, persisted as camelCase JSON under ``job:{jobId}``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    job_id: str
    user_id: str
    file_name: str
    file_path: str
    table_name: str
    file_size: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)
    status: JobStatus = JobStatus.QUEUED
    message: str = ""

    def to_descriptor(self) -> "JobDescriptor":
        return JobDescriptor(
            job_id=self.job_id,
            file_path=self.file_path,
            file_name=self.file_name,
            table_name=self.table_name,
        )


class JobDescriptor(BaseModel):
    """Queue payload. Producers may add fields; consumers ignore what they do not know."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    job_id: str = Field(min_length=1)
    file_path: str = Field(min_length=1)
    file_name: str | None = None
    table_name: str | None = None
    retry_count: int = Field(default=0, ge=0)

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)

    def next_retry(self) -> "JobDescriptor":
        return self.model_copy(update={"retry_count": self.retry_count + 1})
