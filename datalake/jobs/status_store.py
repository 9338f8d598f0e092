from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from datalake.core.config import Settings
from datalake.db.models import JobStatusRecord
from datalake.jobs.types import JobRecord, JobStatus, is_transition_allowed, job_key

logger = logging.getLogger(__name__)

_UPDATE_ATTEMPTS = 5


class JobStatusStore:
    """TTL-bounded key/value store of job records.

    Every operation is best effort: backend failures are logged and reported as
    an absent record or ``False``, never raised. Each ``put`` (and therefore each
    ``update``) resets the expiry window.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _ttl_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.job_status_ttl_seconds)

    def _coerce_utc(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _is_expired(self, row: JobStatusRecord, now: datetime) -> bool:
        return self._coerce_utc(row.expires_at) <= now

    def _write(self, session: Session, record: JobRecord, now: datetime) -> None:
        key = job_key(record.job_id)
        value = record.model_dump_json(by_alias=True)
        expires_at = now + self._ttl_delta()
        row = session.get(JobStatusRecord, key)
        if row is None:
            session.add(JobStatusRecord(key=key, job_id=record.job_id, value=value, expires_at=expires_at))
        else:
            row.value = value
            row.expires_at = expires_at
            row.updated_at = now

    def _load_live(self, session: Session, job_id: str, now: datetime) -> JobRecord | None:
        row = session.get(JobStatusRecord, job_key(job_id))
        if row is None:
            return None
        if self._is_expired(row, now):
            session.delete(row)
            session.flush()
            return None
        return JobRecord.model_validate_json(row.value)

    def put(self, record: JobRecord) -> None:
        logger.info("Saving job status key=%s status=%s", job_key(record.job_id), record.status.value)
        try:
            with self._session_factory() as session:
                self._write(session, record, self._now())
                session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to save job status job_id=%s", record.job_id)

    def get(self, job_id: str) -> JobRecord | None:
        try:
            with self._session_factory() as session:
                record = self._load_live(session, job_id, self._now())
                session.commit()
        except (SQLAlchemyError, ValidationError):
            logger.exception("Failed to read job status job_id=%s", job_id)
            return None
        if record is None:
            logger.warning("Job not found in status store: %s", job_id)
        return record

    def update(self, job_id: str, status: JobStatus, message: str) -> JobRecord | None:
        """Read-modify-write of ``status``/``message``.

        The write only lands if the stored value is still the one that was read,
        so a concurrent terminal update cannot be overwritten. Absent records are
        a logged no-op. Transitions out of a terminal status are refused and the
        stored record is returned unchanged.
        """
        logger.info("Updating job status job_id=%s status=%s message=%s", job_id, status.value, message)
        key = job_key(job_id)
        try:
            for _ in range(_UPDATE_ATTEMPTS):
                with self._session_factory() as session:
                    now = self._now()
                    row = session.get(JobStatusRecord, key)
                    if row is None or self._is_expired(row, now):
                        session.commit()
                        logger.warning("Cannot update job status, job not found: %s", job_id)
                        return None
                    current = JobRecord.model_validate_json(row.value)
                    if not is_transition_allowed(current.status, status):
                        session.commit()
                        logger.warning(
                            "Refusing status transition job_id=%s %s -> %s",
                            job_id,
                            current.status.value,
                            status.value,
                        )
                        return current
                    updated = current.model_copy(update={"status": status, "message": message})
                    result = session.execute(
                        sa_update(JobStatusRecord)
                        .where(JobStatusRecord.key == key, JobStatusRecord.value == row.value)
                        .values(
                            value=updated.model_dump_json(by_alias=True),
                            expires_at=now + self._ttl_delta(),
                            updated_at=now,
                        )
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    session.commit()
                    return updated
        except (SQLAlchemyError, ValidationError):
            logger.exception("Failed to update job status job_id=%s", job_id)
            return None
        logger.warning("Gave up updating job status job_id=%s after concurrent writes", job_id)
        return None

    def delete(self, job_id: str) -> bool:
        logger.info("Deleting job status: %s", job_id)
        try:
            with self._session_factory() as session:
                result = session.execute(delete(JobStatusRecord).where(JobStatusRecord.key == job_key(job_id)))
                session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to delete job status job_id=%s", job_id)
            return False
        deleted = bool(result.rowcount)
        if not deleted:
            logger.warning("Job status not found or already deleted: %s", job_id)
        return deleted

    def exists(self, job_id: str) -> bool:
        try:
            with self._session_factory() as session:
                expires_at = session.scalar(
                    select(JobStatusRecord.expires_at).where(JobStatusRecord.key == job_key(job_id))
                )
        except SQLAlchemyError:
            logger.exception("Error checking job existence job_id=%s", job_id)
            return False
        if expires_at is None:
            return False
        return self._coerce_utc(expires_at) > self._now()

    def purge_expired(self) -> int:
        try:
            with self._session_factory() as session:
                result = session.execute(delete(JobStatusRecord).where(JobStatusRecord.expires_at <= self._now()))
                session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to purge expired job status records")
            return 0
        purged = int(result.rowcount or 0)
        if purged:
            logger.info("Purged %d expired job status records", purged)
        return purged
