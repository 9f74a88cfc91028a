# hl7_engine/queue.py

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .config import QUEUE_RETENTION_DAYS, STALE_PROCESSING_MINUTES
from .db import dumps, utcnow
from .hl7_parser import ParsedMessage
from .models import (
    HL7QueueMessage,
    QUEUE_STATUSES,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSED,
    STATUS_PROCESSING,
)
from .schemas import QueueEntryOut, QueueListResult, QueueStatistics

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 500


class QueueError(Exception):
    pass


class MessageNotFoundError(QueueError):
    def __init__(self, message_id: str) -> None:
        super().__init__(f"HL7 message {message_id} not found")
        self.message_id = message_id


class QueueStateError(QueueError):
    """Requested transition is not allowed from the entry's current status."""


def enqueue_message(
    db: Session,
    raw_message: str,
    tenant_id: str,
    parsed: Optional[ParsedMessage] = None,
) -> str:
    """
    Persist one inbound message as `pending` and commit. Does not parse or
    validate; the caller already did, and passes the result in `parsed`.
    """
    entry = HL7QueueMessage(
        tenant_id=tenant_id,
        raw_message=raw_message,
        status=STATUS_PENDING,
        attempts=0,
    )
    if parsed is not None:
        entry.parsed_data = dumps(parsed.to_dict())
        entry.message_type = parsed.message_type
        entry.control_id = parsed.message_control_id
        entry.sending_application = parsed.sending_application
        entry.sending_facility = parsed.sending_facility

    db.add(entry)
    db.commit()

    logger.info("Enqueued HL7 message %s (%s) for tenant %s", entry.id, entry.message_type, tenant_id)
    return entry.id


def _get(db: Session, message_id: str, tenant_id: str) -> Optional[HL7QueueMessage]:
    return (
        db.query(HL7QueueMessage)
        .filter(HL7QueueMessage.id == message_id, HL7QueueMessage.tenant_id == tenant_id)
        .one_or_none()
    )


def _require(db: Session, message_id: str, tenant_id: str) -> HL7QueueMessage:
    entry = _get(db, message_id, tenant_id)
    if entry is None:
        raise MessageNotFoundError(message_id)
    return entry


def _entry_out(row: HL7QueueMessage) -> QueueEntryOut:
    return QueueEntryOut(
        id=row.id,
        tenant_id=row.tenant_id,
        message_type=row.message_type,
        control_id=row.control_id,
        sending_application=row.sending_application,
        sending_facility=row.sending_facility,
        status=row.status,
        attempts=int(row.attempts or 0),
        last_error=row.last_error,
        resource_id=row.resource_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        processed_at=row.processed_at,
    )


def get_message_by_id(db: Session, message_id: str, tenant_id: str) -> Optional[HL7QueueMessage]:
    """Single lookup; None when missing or owned by another tenant."""
    return _get(db, message_id, tenant_id)


def list_messages(
    db: Session,
    tenant_id: str,
    status: Optional[str] = None,
    message_type: Optional[str] = None,
    limit: int = DEFAULT_LIMIT,
    offset: int = 0,
) -> QueueListResult:
    """
    List queue entries for a tenant, newest first.
    """
    if status is not None and status not in QUEUE_STATUSES:
        raise ValueError(f"Unknown queue status: {status!r}")
    limit = max(1, min(int(limit), MAX_LIMIT))
    offset = max(0, int(offset))

    q = db.query(HL7QueueMessage).filter(HL7QueueMessage.tenant_id == tenant_id)
    if status:
        q = q.filter(HL7QueueMessage.status == status)
    if message_type:
        q = q.filter(HL7QueueMessage.message_type == message_type)

    total = q.count()
    rows = (
        q.order_by(HL7QueueMessage.created_at.desc(), HL7QueueMessage.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    return QueueListResult(
        total=int(total),
        limit=limit,
        offset=offset,
        messages=[_entry_out(r) for r in rows],
    )


def pending_message_ids(db: Session, tenant_id: str, limit: int = DEFAULT_LIMIT) -> List[str]:
    """Oldest pending entries first, for the deferred processing pass."""
    rows = (
        db.query(HL7QueueMessage.id)
        .filter(HL7QueueMessage.tenant_id == tenant_id, HL7QueueMessage.status == STATUS_PENDING)
        .order_by(HL7QueueMessage.created_at.asc(), HL7QueueMessage.id.asc())
        .limit(max(1, min(int(limit), MAX_LIMIT)))
        .all()
    )
    return [r[0] for r in rows]


def _transition(entry: HL7QueueMessage, allowed_from: tuple, to: str) -> None:
    if entry.status not in allowed_from:
        raise QueueStateError(
            f"HL7 message {entry.id} is {entry.status}; cannot move to {to}"
        )
    entry.status = to
    entry.updated_at = utcnow()


def mark_processing(db: Session, message_id: str, tenant_id: str) -> HL7QueueMessage:
    entry = _require(db, message_id, tenant_id)
    _transition(entry, (STATUS_PENDING,), STATUS_PROCESSING)
    db.commit()
    return entry


def mark_processed(db: Session, message_id: str, tenant_id: str, resource_id: Optional[str]) -> HL7QueueMessage:
    entry = _require(db, message_id, tenant_id)
    _transition(entry, (STATUS_PROCESSING,), STATUS_PROCESSED)
    entry.resource_id = resource_id
    entry.last_error = None
    entry.processed_at = utcnow()
    db.commit()
    logger.info("HL7 message %s processed -> %s", message_id, resource_id)
    return entry


def mark_failed(db: Session, message_id: str, tenant_id: str, error: str) -> HL7QueueMessage:
    entry = _require(db, message_id, tenant_id)
    _transition(entry, (STATUS_PROCESSING,), STATUS_FAILED)
    entry.last_error = error
    db.commit()
    logger.warning("HL7 message %s failed: %s", message_id, error)
    return entry


def retry_failed_message(db: Session, message_id: str, tenant_id: str) -> HL7QueueMessage:
    """
    Move a `failed` entry back to `pending` and count the attempt. An entry
    left in `processing` by a crashed worker is reset the same way. There is
    no attempt ceiling; the caller hands the entry back to the processor.
    """
    entry = _require(db, message_id, tenant_id)
    _transition(entry, (STATUS_FAILED, STATUS_PROCESSING), STATUS_PENDING)
    entry.attempts = int(entry.attempts or 0) + 1
    db.commit()
    logger.info("HL7 message %s queued for retry (attempt %s)", message_id, entry.attempts)
    return entry


def requeue_stale_processing(
    db: Session,
    tenant_id: str,
    older_than_minutes: int = STALE_PROCESSING_MINUTES,
) -> List[str]:
    """
    Hand `processing` entries untouched for `older_than_minutes` back to
    `pending`, counting the attempt. Returns the ids that were requeued.
    """
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)
    rows = (
        db.query(HL7QueueMessage)
        .filter(
            HL7QueueMessage.tenant_id == tenant_id,
            HL7QueueMessage.status == STATUS_PROCESSING,
            HL7QueueMessage.updated_at < cutoff,
        )
        .order_by(HL7QueueMessage.created_at.asc(), HL7QueueMessage.id.asc())
        .all()
    )
    for entry in rows:
        _transition(entry, (STATUS_PROCESSING,), STATUS_PENDING)
        entry.attempts = int(entry.attempts or 0) + 1
    db.commit()
    if rows:
        logger.warning("Requeued %d stale processing HL7 messages for tenant %s", len(rows), tenant_id)
    return [entry.id for entry in rows]


def get_queue_statistics(db: Session, tenant_id: str) -> QueueStatistics:
    rows = (
        db.query(HL7QueueMessage.status, func.count(HL7QueueMessage.id))
        .filter(HL7QueueMessage.tenant_id == tenant_id)
        .group_by(HL7QueueMessage.status)
        .all()
    )
    counts = {status: int(n) for status, n in rows}
    return QueueStatistics(
        pending=counts.get(STATUS_PENDING, 0),
        processing=counts.get(STATUS_PROCESSING, 0),
        processed=counts.get(STATUS_PROCESSED, 0),
        failed=counts.get(STATUS_FAILED, 0),
        total=sum(counts.values()),
    )


def prune_processed_messages(db: Session, tenant_id: str, days_to_keep: int = QUEUE_RETENTION_DAYS) -> int:
    """
    Delete `processed` entries older than `days_to_keep`. Failed and
    in-flight entries are never pruned. Returns the number deleted.
    """
    cutoff = utcnow() - timedelta(days=days_to_keep)
    deleted = (
        db.query(HL7QueueMessage)
        .filter(
            HL7QueueMessage.tenant_id == tenant_id,
            HL7QueueMessage.status == STATUS_PROCESSED,
            HL7QueueMessage.processed_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("Pruned %d processed HL7 messages for tenant %s", deleted, tenant_id)
    return int(deleted)
