# hl7_engine/processor.py

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from .crud import (
    find_appointment,
    find_location,
    find_provider,
    get_or_create_lab_document,
    insert_observation_if_absent,
    observation_payload,
    upsert_patient,
)
from .hl7_msh import ACK_ACCEPT, ACK_ERROR, generate_ack
from .hl7_parser import PID, SCH, ParsedMessage, parse_hl7_datetime
from .models import Appointment
from .schemas import ProcessResult

logger = logging.getLogger(__name__)

DEFAULT_APPOINTMENT_MINUTES = 30
DEFAULT_CANCEL_REASON = "Cancelled via HL7"


class ProcessingError(Exception):
    """A handler could not apply a message (missing referenced entity, bad data)."""


class UnsupportedMessageTypeError(ProcessingError):
    def __init__(self, message_type: str) -> None:
        super().__init__(f"Unsupported message type: {message_type or '(empty)'}")
        self.message_type = message_type


class MessageKind(Enum):
    """One member per message type the processor knows how to apply."""

    PATIENT_REGISTER = "ADT^A04"
    PATIENT_UPDATE = "ADT^A08"
    NEW_APPOINTMENT = "SIU^S12"
    RESCHEDULE_APPOINTMENT = "SIU^S13"
    CANCEL_APPOINTMENT = "SIU^S15"
    LAB_RESULT = "ORU^R01"

    @classmethod
    def for_message_type(cls, message_type: str) -> "MessageKind":
        try:
            return cls(message_type)
        except ValueError:
            raise UnsupportedMessageTypeError(message_type) from None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require_pid(msg: ParsedMessage) -> PID:
    if msg.pid is None:
        raise ProcessingError(f"PID segment is required for {msg.message_type}")
    return msg.pid


def _require_sch(msg: ParsedMessage) -> SCH:
    if msg.sch is None:
        raise ProcessingError(f"SCH segment is required for {msg.message_type}")
    return msg.sch


def _duration_minutes(value: str, units: str) -> Optional[int]:
    """
    SCH-9/SCH-10 style duration. Minutes unless the units say hours or
    seconds; None when absent or not a positive number.
    """
    try:
        amount = float((value or "").strip())
    except ValueError:
        return None
    if amount <= 0:
        return None

    u = (units or "").strip().upper()
    if u in ("H", "HR", "HRS", "HOUR", "HOURS"):
        amount *= 60
    elif u in ("S", "SEC", "SECS", "SECOND", "SECONDS"):
        amount /= 60
    return max(1, int(round(amount)))


def _appointment_start(msg: ParsedMessage) -> Optional[datetime]:
    """AIL-6, then AIP-6, then the start component of SCH-11."""
    candidates = []
    if msg.ail is not None:
        candidates.append(msg.ail.start_datetime)
    if msg.aip is not None:
        candidates.append(msg.aip.start_datetime)
    if msg.sch is not None:
        candidates.append(msg.sch.timing_start)

    for raw in candidates:
        dt = parse_hl7_datetime(raw)
        if dt is not None:
            return dt
    return None


def _appointment_duration(msg: ParsedMessage) -> Optional[int]:
    sch = msg.sch
    if sch is not None:
        minutes = _duration_minutes(sch.duration, sch.duration_units)
        if minutes:
            return minutes
    for seg in (msg.ail, msg.aip):
        if seg is not None:
            minutes = _duration_minutes(seg.duration, seg.duration_units)
            if minutes:
                return minutes
    return None


def _window(start: datetime, minutes: int) -> Tuple[datetime, datetime]:
    return start, start + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Handlers: each runs inside the caller's transaction and returns a resource id
# ---------------------------------------------------------------------------

Handler = Callable[[Session, ParsedMessage, str, Optional[str]], str]


def handle_patient(db: Session, msg: ParsedMessage, tenant_id: str, actor_id: Optional[str]) -> str:
    """ADT^A04 / ADT^A08: upsert by external id / MRN."""
    patient, created = upsert_patient(db, tenant_id, _require_pid(msg))
    logger.info(
        "%s patient %s from %s",
        "Created" if created else "Updated",
        patient.id,
        msg.message_type,
    )
    return patient.id


def handle_new_appointment(db: Session, msg: ParsedMessage, tenant_id: str, actor_id: Optional[str]) -> str:
    """
    SIU^S12. The patient is upserted first so the appointment always has a
    local patient to point at. Unknown provider/location stay null.
    """
    sch = _require_sch(msg)
    patient, _ = upsert_patient(db, tenant_id, _require_pid(msg))

    provider = find_provider(db, tenant_id, msg.aip.personnel.id if msg.aip else "")
    location = find_location(db, tenant_id, msg.ail.location_id if msg.ail else "")

    start = _appointment_start(msg)
    if start is None:
        raise ProcessingError("Appointment start time is missing (AIL-6)")
    minutes = _appointment_duration(msg) or DEFAULT_APPOINTMENT_MINUTES
    start, end = _window(start, minutes)

    appt = find_appointment(db, tenant_id, sch.appointment_ids)
    if appt is None:
        appt = Appointment(
            tenant_id=tenant_id,
            external_id=sch.placer_appointment_id or sch.filler_appointment_id,
            status="scheduled",
            created_by=actor_id,
        )
        db.add(appt)
    else:
        logger.info("SIU^S12 replay for appointment %s; updating in place", appt.id)

    appt.patient_id = patient.id
    appt.provider_id = provider.id if provider else None
    appt.location_id = location.id if location else None
    appt.start_time = start
    appt.end_time = end
    appt.duration_minutes = minutes
    appt.appointment_type = sch.appointment_type.display or None
    appt.reason = sch.appointment_reason.display or None
    db.flush()
    return appt.id


def handle_reschedule(db: Session, msg: ParsedMessage, tenant_id: str, actor_id: Optional[str]) -> str:
    """
    SIU^S13: move an existing appointment. Unknown appointment is an error.
    A cancelled appointment takes the new window but stays cancelled.
    """
    sch = _require_sch(msg)
    appt = find_appointment(db, tenant_id, sch.appointment_ids)
    if appt is None:
        raise ProcessingError(
            f"Appointment not found for external id {', '.join(sch.appointment_ids) or '(none)'}"
        )

    start = _appointment_start(msg) or appt.start_time
    minutes = _appointment_duration(msg) or appt.duration_minutes or DEFAULT_APPOINTMENT_MINUTES
    appt.start_time, appt.end_time = _window(start, minutes)
    appt.duration_minutes = minutes
    if appt.status == "cancelled":
        logger.warning("SIU^S13 for cancelled appointment %s; status left cancelled", appt.id)
    else:
        appt.status = "rescheduled"
    db.flush()
    return appt.id


def handle_cancel(db: Session, msg: ParsedMessage, tenant_id: str, actor_id: Optional[str]) -> str:
    """SIU^S15: mark cancelled with the SCH-6 event reason."""
    sch = _require_sch(msg)
    appt = find_appointment(db, tenant_id, sch.appointment_ids)
    if appt is None:
        raise ProcessingError(
            f"Appointment not found for external id {', '.join(sch.appointment_ids) or '(none)'}"
        )

    appt.status = "cancelled"
    appt.cancellation_reason = sch.event_reason.display or DEFAULT_CANCEL_REASON
    db.flush()
    return appt.id


def handle_lab_result(db: Session, msg: ParsedMessage, tenant_id: str, actor_id: Optional[str]) -> str:
    """
    ORU^R01: one lab_result document holding every observation, plus one
    discrete row per OBX. Replays reuse the document and skip known rows.
    """
    patient, _ = upsert_patient(db, tenant_id, _require_pid(msg))
    if not msg.obx:
        raise ProcessingError("ORU^R01 carries no OBX segments")

    source = msg.sending_facility or msg.sending_application or "HL7"
    doc, created = get_or_create_lab_document(
        db,
        tenant_id,
        patient.id,
        source_key=f"{msg.sending_application}|{msg.message_control_id}",
        title=f"Lab results from {source}",
        observations=[observation_payload(o) for o in msg.obx],
        created_by=actor_id,
    )

    inserted = 0
    for obx in msg.obx:
        if insert_observation_if_absent(db, tenant_id, patient.id, doc.id, obx) is not None:
            inserted += 1

    logger.info(
        "Lab result document %s (%s); %d of %d observations inserted",
        doc.id,
        "new" if created else "existing",
        inserted,
        len(msg.obx),
    )
    return doc.id


HANDLERS: Dict[MessageKind, Handler] = {
    MessageKind.PATIENT_REGISTER: handle_patient,
    MessageKind.PATIENT_UPDATE: handle_patient,
    MessageKind.NEW_APPOINTMENT: handle_new_appointment,
    MessageKind.RESCHEDULE_APPOINTMENT: handle_reschedule,
    MessageKind.CANCEL_APPOINTMENT: handle_cancel,
    MessageKind.LAB_RESULT: handle_lab_result,
}

_unrouted = [k.value for k in MessageKind if k not in HANDLERS]
if _unrouted:
    raise RuntimeError(f"No processor handler for: {', '.join(_unrouted)}")


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def process_message(
    db: Session,
    msg: ParsedMessage,
    tenant_id: str,
    actor_id: Optional[str] = None,
) -> ProcessResult:
    """
    Apply one validated message in a single transaction.

    Commits when the handler returns; any exception rolls the whole
    transaction back and turns into success=False with an AE ACK.
    """
    try:
        kind = MessageKind.for_message_type(msg.message_type)
        resource_id = HANDLERS[kind](db, msg, tenant_id, actor_id)
        db.commit()
    except ProcessingError as exc:
        db.rollback()
        logger.error(
            "HL7 %s (%s) failed for tenant %s: %s",
            msg.message_control_id,
            msg.message_type,
            tenant_id,
            exc,
        )
        return ProcessResult(success=False, error=str(exc), ack_message=generate_ack(msg, ACK_ERROR, str(exc)))
    except Exception as exc:
        db.rollback()
        logger.exception(
            "HL7 %s (%s) raised while processing for tenant %s",
            msg.message_control_id,
            msg.message_type,
            tenant_id,
        )
        error = str(exc) or exc.__class__.__name__
        return ProcessResult(success=False, error=error, ack_message=generate_ack(msg, ACK_ERROR, error))

    logger.info("HL7 %s (%s) applied -> %s", msg.message_control_id, msg.message_type, resource_id)
    return ProcessResult(success=True, resource_id=resource_id, ack_message=generate_ack(msg, ACK_ACCEPT))
