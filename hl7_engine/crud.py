# hl7_engine/crud.py

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .db import coerce_value, dumps
from .hl7_parser import OBX, PID, parse_hl7_datetime
from .models import Appointment, Document, LabObservation, Location, Patient, Provider


def find_patient(db: Session, tenant_id: str, identifier: str) -> Optional[Patient]:
    """Match the inbound identifier against external id or MRN, within the tenant."""
    if not identifier:
        return None
    return (
        db.query(Patient)
        .filter(
            Patient.tenant_id == tenant_id,
            or_(Patient.external_id == identifier, Patient.mrn == identifier),
        )
        .order_by(Patient.created_at.asc())
        .first()
    )


def _demographics(pid: PID) -> Dict[str, Any]:
    dob = parse_hl7_datetime(pid.date_of_birth)
    return {
        "first_name": pid.name.given,
        "middle_name": pid.name.middle,
        "last_name": pid.name.family,
        "dob": dob.date() if dob else None,
        "sex": pid.sex,
        "phone": pid.phone_home or pid.phone_business,
        "address_line1": pid.address.street,
        "address_line2": pid.address.other,
        "city": pid.address.city,
        "state": pid.address.state,
        "zip": pid.address.zip,
        "country": pid.address.country,
        "ssn": pid.ssn,
    }


def upsert_patient(db: Session, tenant_id: str, pid: PID) -> Tuple[Patient, bool]:
    """
    Insert or update a patient from a PID segment.

    Matching on the inbound identifier makes replays idempotent. On update,
    empty inbound fields leave stored values alone. Returns (patient, created).
    """
    identifier = pid.patient_identifier
    if not identifier:
        raise ValueError("PID segment carries no patient identifier")

    fields = _demographics(pid)
    patient = find_patient(db, tenant_id, identifier)

    if patient is None:
        patient = Patient(
            tenant_id=tenant_id,
            external_id=identifier,
            mrn=identifier,
            **{k: (v or None) for k, v in fields.items()},
        )
        db.add(patient)
        db.flush()  # get patient.id without full commit yet
        return patient, True

    for key, value in fields.items():
        if value is None or value == "":
            continue
        setattr(patient, key, value)
    db.flush()
    return patient, False


def find_provider(db: Session, tenant_id: str, external_id: str) -> Optional[Provider]:
    if not external_id:
        return None
    return (
        db.query(Provider)
        .filter(Provider.tenant_id == tenant_id, Provider.external_id == external_id)
        .first()
    )


def find_location(db: Session, tenant_id: str, external_id: str) -> Optional[Location]:
    if not external_id:
        return None
    return (
        db.query(Location)
        .filter(Location.tenant_id == tenant_id, Location.external_id == external_id)
        .first()
    )


def find_appointment(db: Session, tenant_id: str, external_ids: List[str]) -> Optional[Appointment]:
    """Look up by the sender's placer or filler appointment id."""
    ids = [i for i in external_ids if i]
    if not ids:
        return None
    return (
        db.query(Appointment)
        .filter(Appointment.tenant_id == tenant_id, Appointment.external_id.in_(ids))
        .order_by(Appointment.created_at.asc())
        .first()
    )


def observation_payload(obx: OBX) -> Dict[str, Any]:
    low, high = obx.reference_bounds
    return {
        "set_id": obx.set_id,
        "code": obx.identifier.code,
        "display": obx.identifier.display,
        "coding_system": obx.identifier.coding_system,
        "sub_id": obx.sub_id,
        "value": obx.value,
        "value_type": obx.value_type,
        "units": obx.units,
        "reference_range": obx.reference_range,
        "reference_low": low,
        "reference_high": high,
        "abnormal_flag": obx.abnormal_flags,
        "observation_datetime": obx.observation_datetime,
        "result_status": obx.result_status,
    }


def get_or_create_lab_document(
    db: Session,
    tenant_id: str,
    patient_id: str,
    source_key: str,
    title: str,
    observations: List[Dict[str, Any]],
    created_by: Optional[str] = None,
) -> Tuple[Document, bool]:
    """
    One lab_result document per source message. A replay of the same
    message returns the existing document.
    """
    existing = (
        db.query(Document)
        .filter(
            Document.tenant_id == tenant_id,
            Document.patient_id == patient_id,
            Document.source_key == source_key,
        )
        .first()
    )
    if existing is not None:
        return existing, False

    doc = Document(
        tenant_id=tenant_id,
        patient_id=patient_id,
        document_type="lab_result",
        title=title,
        source_key=source_key,
        content=dumps({"observations": observations}),
        created_by=created_by,
    )
    db.add(doc)
    db.flush()
    return doc, True


def observation_identity_key(
    patient_id: str,
    code: Optional[str],
    sub_id: Optional[str],
    observed_at: Optional[datetime],
    value: Optional[str],
) -> str:
    observed = observed_at.strftime("%Y%m%d%H%M%S") if observed_at else ""
    parts = [patient_id, code or "", sub_id or "", observed, value or ""]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def insert_observation_if_absent(
    db: Session,
    tenant_id: str,
    patient_id: str,
    document_id: str,
    obx: OBX,
) -> Optional[LabObservation]:
    """
    Insert one discrete observation row. Identity is (tenant, patient, code,
    sub id, observed_at, value), stored hashed in `identity_key` under a unique
    constraint; a row already on file makes this a no-op and returns None.
    """
    observed_at: Optional[datetime] = parse_hl7_datetime(obx.observation_datetime)
    value_num, value_raw = coerce_value(obx.value)

    identity_key = observation_identity_key(patient_id, obx.identifier.code, obx.sub_id, observed_at, value_raw)
    existing = (
        db.query(LabObservation.id)
        .filter(LabObservation.tenant_id == tenant_id, LabObservation.identity_key == identity_key)
        .first()
    )
    if existing is not None:
        return None

    row = LabObservation(
        tenant_id=tenant_id,
        patient_id=patient_id,
        document_id=document_id,
        code=obx.identifier.code,
        display=obx.identifier.display,
        coding_system=obx.identifier.coding_system,
        sub_id=obx.sub_id,
        value=value_raw,
        value_num=value_num,
        value_type=obx.value_type,
        units=obx.units,
        reference_range=obx.reference_range,
        abnormal_flag=obx.abnormal_flags,
        observed_at=observed_at,
        result_status=obx.result_status,
        identity_key=identity_key,
    )
    db.add(row)
    db.flush()
    return row
