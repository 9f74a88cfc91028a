# hl7_engine/models.py

import uuid

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


# Queue statuses. Only hl7_engine.queue moves an entry between them.
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_FAILED = "failed"
QUEUE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_PROCESSED, STATUS_FAILED)


class HL7QueueMessage(Base):
    __tablename__ = "hl7_message_queue"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)

    # Original text, retained for audit and replay
    raw_message = Column(Text, nullable=False)
    parsed_data = Column(Text)

    message_type = Column(String, index=True)
    control_id = Column(String)
    sending_application = Column(String)
    sending_facility = Column(String)

    status = Column(String, nullable=False, default=STATUS_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    resource_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_hl7_queue_tenant_status", "tenant_id", "status"),)


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)

    external_id = Column(String, index=True)
    mrn = Column(String, index=True)

    first_name = Column(String)
    middle_name = Column(String)
    last_name = Column(String)
    dob = Column(Date, nullable=True)
    sex = Column(String)
    phone = Column(String)
    address_line1 = Column(String)
    address_line2 = Column(String)
    city = Column(String)
    state = Column(String)
    zip = Column(String)
    country = Column(String)
    ssn = Column(String)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    appointments = relationship("Appointment", back_populates="patient")

    __table_args__ = (UniqueConstraint("tenant_id", "external_id", name="uq_patients_tenant_external"),)


class Provider(Base):
    __tablename__ = "providers"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    external_id = Column(String, index=True)
    first_name = Column(String)
    last_name = Column(String)


class Location(Base):
    __tablename__ = "locations"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    external_id = Column(String, index=True)
    name = Column(String)


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)

    # Sender's placer/filler appointment id, used to correlate S13/S15
    external_id = Column(String, index=True)

    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    provider_id = Column(String(36), ForeignKey("providers.id"), nullable=True)
    location_id = Column(String(36), ForeignKey("locations.id"), nullable=True)

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    appointment_type = Column(String)
    reason = Column(String)
    status = Column(String, nullable=False, default="scheduled")
    cancellation_reason = Column(Text, nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    patient = relationship("Patient", back_populates="appointments")

    __table_args__ = (UniqueConstraint("tenant_id", "external_id", name="uq_appointments_tenant_external"),)


class Document(Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)

    document_type = Column(String, nullable=False)
    title = Column(String)
    # "<sending app>|<control id>" of the message that produced it
    source_key = Column(String, index=True)

    # Full observation set as JSON, for report rendering
    content = Column(Text)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    observations = relationship("LabObservation", back_populates="document")


class LabObservation(Base):
    __tablename__ = "lab_observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String, nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    document_id = Column(String(36), ForeignKey("documents.id"), nullable=True)

    code = Column(String, index=True)
    display = Column(String)
    coding_system = Column(String)
    sub_id = Column(String)
    value = Column(Text)
    value_num = Column(Float, nullable=True)
    value_type = Column(String)
    units = Column(String)
    reference_range = Column(String)
    abnormal_flag = Column(String)
    observed_at = Column(DateTime(timezone=True), nullable=True)
    result_status = Column(String)

    # sha256 of (patient, code, sub id, observed_at, value); NULL-safe unlike
    # a constraint over the raw columns
    identity_key = Column(String(64), nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    document = relationship("Document", back_populates="observations")

    __table_args__ = (UniqueConstraint("tenant_id", "identity_key", name="uq_lab_observations_identity"),)
