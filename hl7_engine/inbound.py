# hl7_engine/inbound.py

from __future__ import annotations

import logging
from typing import List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from . import audit as audit_actions
from . import config
from .audit import AuditEvent, AuditSink, log_audit_event
from .hl7_msh import ACK_ACCEPT, ACK_REJECT, generate_ack, generate_reject_ack
from .hl7_parser import ParsedMessage, ParseError, parse_message
from .processor import process_message
from .queue import (
    MessageNotFoundError,
    enqueue_message,
    get_message_by_id,
    mark_failed,
    mark_processed,
    mark_processing,
    pending_message_ids,
    requeue_stale_processing,
    retry_failed_message,
)
from .schemas import ProcessedResponse, QueuedResponse, RejectedResponse
from .validator import validate_message

logger = logging.getLogger(__name__)

LEGACY_NO_TENANT = "No tenant is configured for legacy HL7 intake"


def _emit(
    sink: AuditSink,
    tenant_id: Optional[str],
    actor_id: Optional[str],
    action: str,
    resource_id: Optional[str] = None,
    severity: str = "info",
    status: str = "success",
    **metadata,
) -> None:
    sink(
        AuditEvent(
            tenant_id=tenant_id,
            user_id=actor_id,
            action=action,
            resource_id=resource_id,
            severity=severity,
            status=status,
            metadata=metadata,
        )
    )


def _msg_meta(msg: ParsedMessage) -> dict:
    return {
        "message_type": msg.message_type,
        "control_id": msg.message_control_id,
        "sending_application": msg.sending_application,
        "sending_facility": msg.sending_facility,
    }


# ---------------------------------------------------------------------------
# Intake: parse + validate, reject with AR before anything is persisted
# ---------------------------------------------------------------------------

def _accept(
    raw: str,
    tenant_id: Optional[str],
    actor_id: Optional[str],
    sink: AuditSink,
) -> Tuple[Optional[ParsedMessage], Optional[RejectedResponse]]:
    try:
        msg = parse_message(raw)
    except ParseError as exc:
        logger.warning("Rejected unparseable HL7 message for tenant %s: %s", tenant_id, exc)
        _emit(
            sink,
            tenant_id,
            actor_id,
            audit_actions.PARSE_ERROR,
            severity="error",
            status="failure",
            error=str(exc),
            length=len(raw) if isinstance(raw, str) else 0,
        )
        text = raw if isinstance(raw, str) else ""
        return None, RejectedResponse(error=str(exc), ack=generate_reject_ack(text, str(exc)))

    result = validate_message(msg)
    if not result.valid:
        error = "; ".join(result.errors)
        logger.warning(
            "Rejected invalid HL7 %s (%s) for tenant %s: %s",
            msg.message_control_id,
            msg.message_type,
            tenant_id,
            error,
        )
        _emit(
            sink,
            tenant_id,
            actor_id,
            audit_actions.VALIDATION_ERROR,
            severity="warning",
            status="failure",
            errors=list(result.errors),
            **_msg_meta(msg),
        )
        return None, RejectedResponse(
            error="HL7 message validation failed",
            validation_errors=list(result.errors),
            ack=generate_ack(msg, ACK_REJECT, error),
        )

    return msg, None


def _run(
    db: Session,
    message_id: str,
    msg: ParsedMessage,
    tenant_id: str,
    actor_id: Optional[str],
    sink: AuditSink,
    success_action: str,
) -> ProcessedResponse:
    """Drive one queue entry through processing -> processed / failed."""
    mark_processing(db, message_id, tenant_id)
    result = process_message(db, msg, tenant_id, actor_id)

    if result.success:
        mark_processed(db, message_id, tenant_id, result.resource_id)
        _emit(
            sink,
            tenant_id,
            actor_id,
            success_action,
            resource_id=message_id,
            result_resource_id=result.resource_id,
            **_msg_meta(msg),
        )
        status = "processed"
    else:
        mark_failed(db, message_id, tenant_id, result.error or "processing failed")
        _emit(
            sink,
            tenant_id,
            actor_id,
            audit_actions.PROCESSING_FAILED,
            resource_id=message_id,
            severity="error",
            status="failure",
            error=result.error,
            **_msg_meta(msg),
        )
        status = "failed"

    return ProcessedResponse(
        success=result.success,
        status=status,
        message_id=message_id,
        message_type=msg.message_type,
        control_id=msg.message_control_id,
        resource_id=result.resource_id,
        error=result.error,
        ack=result.ack_message,
    )


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def receive_message(
    db: Session,
    raw: str,
    tenant_id: str,
    actor_id: Optional[str] = None,
    audit: AuditSink = log_audit_event,
) -> Union[QueuedResponse, RejectedResponse]:
    """
    Asynchronous intake: parse, validate, enqueue as pending and answer AA.
    Processing happens later via process_queued_message / process_pending_messages.
    """
    msg, rejected = _accept(raw, tenant_id, actor_id, audit)
    if rejected is not None:
        return rejected

    message_id = enqueue_message(db, raw, tenant_id, parsed=msg)
    _emit(audit, tenant_id, actor_id, audit_actions.MESSAGE_RECEIVED, resource_id=message_id, **_msg_meta(msg))

    return QueuedResponse(
        message_id=message_id,
        message_type=msg.message_type,
        control_id=msg.message_control_id,
        ack=generate_ack(msg, ACK_ACCEPT),
    )


def receive_message_sync(
    db: Session,
    raw: str,
    tenant_id: str,
    actor_id: Optional[str] = None,
    audit: AuditSink = log_audit_event,
) -> Union[ProcessedResponse, RejectedResponse]:
    """
    Synchronous intake for callers that need the resource id now.

    The message is enqueued before it is processed, so a failure leaves a
    `failed` entry that retry_message can pick up.
    """
    msg, rejected = _accept(raw, tenant_id, actor_id, audit)
    if rejected is not None:
        return rejected

    message_id = enqueue_message(db, raw, tenant_id, parsed=msg)
    return _run(db, message_id, msg, tenant_id, actor_id, audit, audit_actions.MESSAGE_PROCESSED_SYNC)


def process_queued_message(
    db: Session,
    message_id: str,
    tenant_id: str,
    actor_id: Optional[str] = None,
    audit: AuditSink = log_audit_event,
) -> ProcessedResponse:
    """
    Process one `pending` entry. Raises MessageNotFoundError for an unknown
    id and QueueStateError when the entry is not pending.
    """
    entry = get_message_by_id(db, message_id, tenant_id)
    if entry is None:
        raise MessageNotFoundError(message_id)

    # Accepted at intake, so this parses; a ParseError here means the stored row was altered.
    msg = parse_message(entry.raw_message)
    return _run(db, message_id, msg, tenant_id, actor_id, audit, audit_actions.MESSAGE_PROCESSED)


def process_pending_messages(
    db: Session,
    tenant_id: str,
    limit: int = 50,
    actor_id: Optional[str] = None,
    audit: AuditSink = log_audit_event,
) -> List[ProcessedResponse]:
    """Work through up to `limit` pending entries, oldest first."""
    results: List[ProcessedResponse] = []
    for message_id in pending_message_ids(db, tenant_id, limit):
        results.append(process_queued_message(db, message_id, tenant_id, actor_id, audit))

    if results:
        failed = sum(1 for r in results if not r.success)
        logger.info(
            "Processed %d pending HL7 messages for tenant %s (%d failed)",
            len(results),
            tenant_id,
            failed,
        )
    return results


def retry_message(
    db: Session,
    message_id: str,
    tenant_id: str,
    actor_id: Optional[str] = None,
    audit: AuditSink = log_audit_event,
) -> ProcessedResponse:
    """
    Operator retry: failed (or stranded in processing) -> pending with
    attempts + 1, then process again.
    """
    entry = retry_failed_message(db, message_id, tenant_id)
    _emit(
        audit,
        tenant_id,
        actor_id,
        audit_actions.MESSAGE_REPROCESS,
        resource_id=message_id,
        attempts=entry.attempts,
        message_type=entry.message_type,
        control_id=entry.control_id,
    )
    return process_queued_message(db, message_id, tenant_id, actor_id, audit)


def recover_stale_messages(
    db: Session,
    tenant_id: str,
    older_than_minutes: int = config.STALE_PROCESSING_MINUTES,
    actor_id: Optional[str] = None,
    audit: AuditSink = log_audit_event,
) -> List[str]:
    """Requeue entries a crashed worker left in `processing`; the next pending pass picks them up."""
    message_ids = requeue_stale_processing(db, tenant_id, older_than_minutes)
    for message_id in message_ids:
        entry = get_message_by_id(db, message_id, tenant_id)
        _emit(
            audit,
            tenant_id,
            actor_id,
            audit_actions.MESSAGE_REPROCESS,
            resource_id=message_id,
            severity="warning",
            attempts=entry.attempts,
            message_type=entry.message_type,
            control_id=entry.control_id,
            reason="stale processing",
        )
    return message_ids


def receive_legacy_message(
    db: Session,
    raw: str,
    actor_id: Optional[str] = None,
    audit: AuditSink = log_audit_event,
    sync: bool = False,
) -> Union[QueuedResponse, ProcessedResponse, RejectedResponse]:
    """
    Tenant-less intake kept for older senders. Routes to HL7_LEGACY_TENANT_ID;
    without one configured every message is rejected with AR.
    """
    tenant_id = config.LEGACY_TENANT_ID
    if not tenant_id:
        logger.warning("Legacy HL7 intake used but HL7_LEGACY_TENANT_ID is not set; rejecting")
        _emit(
            audit,
            None,
            actor_id,
            audit_actions.VALIDATION_ERROR,
            severity="warning",
            status="failure",
            errors=[LEGACY_NO_TENANT],
        )
        text = raw if isinstance(raw, str) else ""
        return RejectedResponse(
            error=LEGACY_NO_TENANT,
            validation_errors=[LEGACY_NO_TENANT],
            ack=generate_reject_ack(text, LEGACY_NO_TENANT),
        )

    logger.warning("Legacy HL7 intake routed to tenant %s without sender-based resolution", tenant_id)
    if sync:
        return receive_message_sync(db, raw, tenant_id, actor_id, audit)
    return receive_message(db, raw, tenant_id, actor_id, audit)
