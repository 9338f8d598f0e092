from __future__ import annotations

import json
import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from datalake.core.config import Settings
from datalake.db.models import MessageStatus, QueueConsumer, QueueDeclaration, QueueMessage
from datalake.jobs.types import JobDescriptor
from datalake.queue.types import Delivery, QueueMessageSnapshot, QueueStatsSnapshot

logger = logging.getLogger(__name__)

_CLAIM_ATTEMPTS = 5


class QueueError(RuntimeError):
    pass


class QueueNotFoundError(QueueError):
    pass


class QueuePublishError(QueueError):
    pass


class DeliveryConflictError(QueueError):
    pass


class JobQueue:
    """Durable at-least-once message channel stored in the service database.

    A delivery is leased to exactly one consumer. Leases that expire, or belong to a
    consumer that unregisters, return the message to ``ready`` so another consumer
    receives it again. Settling a delivery (ack or reject) requires still holding it.
    """

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    @property
    def queue_name(self) -> str:
        return self._settings.queue_name

    @property
    def dead_letter_queue_name(self) -> str:
        return self._settings.effective_dead_letter_queue_name

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.queue_lease_seconds)

    def _consumer_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.queue_consumer_ttl_seconds)

    def _require_queue(self, session: Session, queue_name: str) -> QueueDeclaration:
        declaration = session.get(QueueDeclaration, queue_name)
        if declaration is None:
            raise QueueNotFoundError(f"Queue not declared: {queue_name}")
        return declaration

    def _to_snapshot(self, row: QueueMessage) -> QueueMessageSnapshot:
        return QueueMessageSnapshot(
            message_id=row.message_id,
            queue_name=row.queue_name,
            body=row.body,
            headers=dict(row.headers or {}),
            status=row.status,
            delivery_count=row.delivery_count,
            available_at=row.available_at,
            consumer_id=row.consumer_id,
            created_at=row.created_at,
        )

    def declare(self, queue_name: str, *, dead_letter_queue: str | None = None) -> None:
        normalized = queue_name.strip()
        if not normalized:
            raise ValueError("queue_name cannot be blank")
        if dead_letter_queue is not None and dead_letter_queue == normalized:
            raise ValueError("A queue cannot dead-letter into itself")

        if dead_letter_queue is not None:
            self.declare(dead_letter_queue)

        with self._session_factory() as session:
            declaration = session.get(QueueDeclaration, normalized)
            if declaration is None:
                session.add(QueueDeclaration(name=normalized, dead_letter_queue=dead_letter_queue, durable=True))
            else:
                declaration.dead_letter_queue = dead_letter_queue
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
        logger.debug("Declared queue %s (dead-letter: %s)", normalized, dead_letter_queue)

    def declare_job_queues(self) -> None:
        self.declare(self.queue_name, dead_letter_queue=self.dead_letter_queue_name)

    def publish(
        self,
        queue_name: str,
        body: Mapping[str, Any] | str,
        *,
        headers: Mapping[str, Any] | None = None,
        delay_seconds: float = 0,
    ) -> str:
        if delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")
        payload = body if isinstance(body, str) else json.dumps(dict(body), separators=(",", ":"))
        message_id = str(uuid4())
        now = self._now()
        try:
            with self._session_factory() as session:
                self._require_queue(session, queue_name)
                session.add(
                    QueueMessage(
                        message_id=message_id,
                        queue_name=queue_name,
                        body=payload,
                        headers=dict(headers or {}),
                        status=MessageStatus.READY,
                        delivery_count=0,
                        available_at=now + timedelta(seconds=delay_seconds),
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to publish message to queue %s", queue_name, exc_info=True)
            raise QueuePublishError(f"Failed to queue message: {exc}") from exc
        logger.debug("Published message %s to queue %s", message_id, queue_name)
        return message_id

    def publish_descriptor(self, descriptor: JobDescriptor, *, delay_seconds: float = 0) -> str:
        logger.info("Sending job to queue job_id=%s queue=%s", descriptor.job_id, self.queue_name)
        message_id = self.publish(self.queue_name, descriptor.to_wire(), delay_seconds=delay_seconds)
        logger.info("Job successfully queued job_id=%s message_id=%s", descriptor.job_id, message_id)
        return message_id

    def recover_expired_leases(self, *, session: Session | None = None) -> int:
        owns_session = session is None
        local_session = session or self._session_factory()
        now = self._now()
        result = local_session.execute(
            update(QueueMessage)
            .where(
                QueueMessage.status == MessageStatus.UNACKED,
                QueueMessage.lease_expires_at <= now,
            )
            .values(
                status=MessageStatus.READY,
                consumer_id=None,
                lease_expires_at=None,
                available_at=now,
                updated_at=now,
            )
        )
        recovered = int(result.rowcount or 0)
        if recovered:
            logger.warning("Recovered %d deliveries with expired leases", recovered)
        if owns_session:
            local_session.commit()
            local_session.close()
        return recovered

    def receive(self, consumer_id: str, *, queue_name: str | None = None) -> Delivery | None:
        normalized_consumer = consumer_id.strip()
        if not normalized_consumer:
            raise ValueError("consumer_id cannot be blank")
        target = queue_name or self.queue_name

        for _ in range(_CLAIM_ATTEMPTS):
            with self._session_factory() as session:
                self._require_queue(session, target)
                self.recover_expired_leases(session=session)
                now = self._now()
                candidate_id = session.scalar(
                    select(QueueMessage.id)
                    .where(
                        QueueMessage.queue_name == target,
                        QueueMessage.status == MessageStatus.READY,
                        QueueMessage.available_at <= now,
                    )
                    .order_by(QueueMessage.available_at.asc(), QueueMessage.id.asc())
                    .limit(1)
                )
                if candidate_id is None:
                    session.commit()
                    return None

                lease_expires_at = now + self._lease_delta()
                claim = session.execute(
                    update(QueueMessage)
                    .where(QueueMessage.id == candidate_id, QueueMessage.status == MessageStatus.READY)
                    .values(
                        status=MessageStatus.UNACKED,
                        consumer_id=normalized_consumer,
                        lease_expires_at=lease_expires_at,
                        delivered_at=now,
                        delivery_count=QueueMessage.delivery_count + 1,
                        updated_at=now,
                    )
                )
                if claim.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                row = session.get(QueueMessage, candidate_id)
                if row is None:
                    raise DeliveryConflictError("Claimed message disappeared before delivery")
                session.refresh(row)
                return Delivery(
                    message_id=row.message_id,
                    queue_name=row.queue_name,
                    body=row.body,
                    headers=dict(row.headers or {}),
                    delivery_count=row.delivery_count,
                    consumer_id=normalized_consumer,
                    lease_expires_at=lease_expires_at,
                )
        return None

    def _load_held(self, session: Session, delivery: Delivery) -> QueueMessage:
        row = session.scalar(select(QueueMessage).where(QueueMessage.message_id == delivery.message_id))
        if (
            row is None
            or row.status != MessageStatus.UNACKED
            or row.consumer_id != delivery.consumer_id
            or row.delivery_count != delivery.delivery_count
        ):
            raise DeliveryConflictError(f"Delivery {delivery.message_id} is no longer held by {delivery.consumer_id}")
        return row

    def ack(self, delivery: Delivery) -> None:
        with self._session_factory() as session:
            row = self._load_held(session, delivery)
            session.delete(row)
            session.commit()
        logger.debug("Acknowledged message %s", delivery.message_id)

    def reject(
        self,
        delivery: Delivery,
        *,
        requeue: bool = False,
        reason: str | None = None,
        delay_seconds: float = 0,
    ) -> str | None:
        """Settle a delivery negatively.

        With ``requeue`` the message becomes ready again after ``delay_seconds``.
        Otherwise it is routed to the queue's dead-letter queue, whose name is
        returned; queues without one drop the message after logging its body.
        """
        now = self._now()
        with self._session_factory() as session:
            row = self._load_held(session, delivery)
            if requeue:
                row.status = MessageStatus.READY
                row.consumer_id = None
                row.lease_expires_at = None
                row.available_at = now + timedelta(seconds=max(delay_seconds, 0))
                row.updated_at = now
                session.commit()
                logger.info("Requeued message %s on %s", delivery.message_id, delivery.queue_name)
                return None

            declaration = session.get(QueueDeclaration, delivery.queue_name)
            dead_letter_queue = declaration.dead_letter_queue if declaration is not None else None
            if dead_letter_queue is None:
                session.delete(row)
                session.commit()
                logger.warning(
                    "Dropped rejected message %s from %s (no dead-letter queue) body=%s",
                    delivery.message_id,
                    delivery.queue_name,
                    delivery.body,
                )
                return None

            headers = dict(row.headers or {})
            deaths = list(headers.get("x-death", []))
            deaths.append(
                {
                    "queue": delivery.queue_name,
                    "reason": reason or "rejected",
                    "count": row.delivery_count,
                    "consumer": delivery.consumer_id,
                    "time": now.isoformat(),
                }
            )
            headers["x-death"] = deaths
            headers.setdefault("x-first-death-queue", delivery.queue_name)

            row.queue_name = dead_letter_queue
            row.headers = headers
            row.status = MessageStatus.READY
            row.delivery_count = 0
            row.consumer_id = None
            row.lease_expires_at = None
            row.available_at = now
            row.updated_at = now
            session.commit()

        logger.warning(
            "Dead-lettered message %s from %s to %s: %s",
            delivery.message_id,
            delivery.queue_name,
            dead_letter_queue,
            reason,
        )
        return dead_letter_queue

    def touch(self, delivery: Delivery) -> Delivery:
        now = self._now()
        lease_expires_at = now + self._lease_delta()
        with self._session_factory() as session:
            row = self._load_held(session, delivery)
            row.lease_expires_at = lease_expires_at
            row.updated_at = now
            session.commit()
        return replace(delivery, lease_expires_at=lease_expires_at)

    def register_consumer(self, consumer_id: str, *, queue_name: str | None = None) -> None:
        target = queue_name or self.queue_name
        now = self._now()
        with self._session_factory() as session:
            self._require_queue(session, target)
            consumer = session.get(QueueConsumer, consumer_id)
            if consumer is None:
                session.add(
                    QueueConsumer(
                        consumer_id=consumer_id,
                        queue_name=target,
                        registered_at=now,
                        heartbeat_at=now,
                        expires_at=now + self._consumer_delta(),
                    )
                )
            else:
                consumer.queue_name = target
                consumer.heartbeat_at = now
                consumer.expires_at = now + self._consumer_delta()
            session.commit()
        logger.info("Registered consumer %s on %s", consumer_id, target)

    def heartbeat_consumer(self, consumer_id: str) -> bool:
        now = self._now()
        with self._session_factory() as session:
            consumer = session.get(QueueConsumer, consumer_id)
            if consumer is None:
                return False
            consumer.heartbeat_at = now
            consumer.expires_at = now + self._consumer_delta()
            session.commit()
            return True

    def unregister_consumer(self, consumer_id: str) -> int:
        now = self._now()
        with self._session_factory() as session:
            released = session.execute(
                update(QueueMessage)
                .where(
                    QueueMessage.status == MessageStatus.UNACKED,
                    QueueMessage.consumer_id == consumer_id,
                )
                .values(
                    status=MessageStatus.READY,
                    consumer_id=None,
                    lease_expires_at=None,
                    available_at=now,
                    updated_at=now,
                )
            )
            session.execute(delete(QueueConsumer).where(QueueConsumer.consumer_id == consumer_id))
            session.commit()
        released_count = int(released.rowcount or 0)
        if released_count:
            logger.warning("Consumer %s disconnected with %d unacked deliveries", consumer_id, released_count)
        logger.info("Unregistered consumer %s", consumer_id)
        return released_count

    def consume(
        self,
        handler: Callable[[Delivery], object],
        consumer_id: str,
        *,
        queue_name: str | None = None,
        stop_event: threading.Event | None = None,
        max_messages: int | None = None,
        poll_seconds: float | None = None,
    ) -> int:
        """Deliver messages to ``handler`` until stopped.

        The handler settles each delivery itself. If it raises, the delivery is put
        back for redelivery. Returns the number of deliveries handed out.
        """
        stop = stop_event or threading.Event()
        interval = self._settings.worker_poll_seconds if poll_seconds is None else poll_seconds
        delivered = 0
        self.register_consumer(consumer_id, queue_name=queue_name)
        try:
            while not stop.is_set():
                if max_messages is not None and delivered >= max_messages:
                    break
                self.heartbeat_consumer(consumer_id)
                delivery = self.receive(consumer_id, queue_name=queue_name)
                if delivery is None:
                    if max_messages is not None:
                        break
                    stop.wait(interval)
                    continue
                delivered += 1
                try:
                    handler(delivery)
                except Exception:
                    logger.exception("Consumer %s handler failed on message %s", consumer_id, delivery.message_id)
                    try:
                        self.reject(delivery, requeue=True, reason="handler-error")
                    except DeliveryConflictError:
                        logger.warning("Delivery %s already settled or lost", delivery.message_id)
        finally:
            self.unregister_consumer(consumer_id)
        return delivered

    def stats(self, queue_name: str | None = None) -> QueueStatsSnapshot:
        target = queue_name or self.queue_name
        now = self._now()
        with self._session_factory() as session:
            self._require_queue(session, target)
            depth = int(
                session.scalar(
                    select(func.count(QueueMessage.id)).where(
                        QueueMessage.queue_name == target,
                        QueueMessage.status == MessageStatus.READY,
                    )
                )
                or 0
            )
            unacked = int(
                session.scalar(
                    select(func.count(QueueMessage.id)).where(
                        QueueMessage.queue_name == target,
                        QueueMessage.status == MessageStatus.UNACKED,
                    )
                )
                or 0
            )
            consumer_count = int(
                session.scalar(
                    select(func.count(QueueConsumer.consumer_id)).where(
                        QueueConsumer.queue_name == target,
                        QueueConsumer.expires_at > now,
                    )
                )
                or 0
            )
        return QueueStatsSnapshot(queue_name=target, depth=depth, unacked=unacked, consumer_count=consumer_count)

    def list_messages(self, queue_name: str, *, limit: int = 100) -> list[QueueMessageSnapshot]:
        bounded_limit = max(1, min(limit, 1000))
        with self._session_factory() as session:
            self._require_queue(session, queue_name)
            rows = session.scalars(
                select(QueueMessage)
                .where(QueueMessage.queue_name == queue_name)
                .order_by(QueueMessage.id.asc())
                .limit(bounded_limit)
            ).all()
            return [self._to_snapshot(row) for row in rows]

    def purge(self, queue_name: str) -> int:
        with self._session_factory() as session:
            self._require_queue(session, queue_name)
            result = session.execute(
                delete(QueueMessage).where(
                    QueueMessage.queue_name == queue_name,
                    QueueMessage.status == MessageStatus.READY,
                )
            )
            session.commit()
        purged = int(result.rowcount or 0)
        logger.warning("Purged %d ready messages from %s", purged, queue_name)
        return purged


def queue_message_snapshot_to_dict(snapshot: QueueMessageSnapshot) -> dict[str, object]:
    return {
        "message_id": snapshot.message_id,
        "queue_name": snapshot.queue_name,
        "body": snapshot.body,
        "headers": snapshot.headers,
        "status": snapshot.status.value,
        "delivery_count": snapshot.delivery_count,
        "available_at": snapshot.available_at,
        "consumer_id": snapshot.consumer_id,
        "created_at": snapshot.created_at,
    }
