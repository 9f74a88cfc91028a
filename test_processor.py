import json
from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from hl7_engine.hl7_parser import parse_message
from hl7_engine.models import Appointment, Document, LabObservation, Location, Patient, Provider
from hl7_engine.processor import HANDLERS, MessageKind, process_message

ORU = (
    "MSH|^~\\&|LAB|LABFAC|DERMAPP|DERM|20240101120000||ORU^R01|MSG001|P|2.5\r"
    "PID|1||EXT123^^^LAB^MR||Doe^Jane||19800101|F\r"
    "OBX|1|NM|GLUCOSE^Glucose||95|mg/dL|70-110|N|||F"
)

ADT = (
    "MSH|^~\\&|REG|HOSP|EHR|CLINIC|20240301083000||ADT^{trigger}|{ctrl}|P|2.5\r"
    "PID|1||EXT123^^^HOSP^MR||{name}||19800101|F|||1 Elm St^^Salem^OR^97301||{phone}"
)

S12 = (
    "MSH|^~\\&|SCHED|CLINIC|EHR|DERM|20240610080000||SIU^S12|S12-1|P|2.5\r"
    "SCH|APT100|FIL200|||||ROUTINE^Routine visit|CONSULT^Consultation|45|MIN\r"
    "PID|1||EXT123^^^LAB^MR||Doe^Jane||19800101|F\r"
    "AIL|1||ROOM1^Exam Room 1|||20240615093000\r"
    "AIP|1||DR42^House^Gregory"
)

S13 = (
    "MSH|^~\\&|SCHED|CLINIC|EHR|DERM|20240611080000||SIU^S13|S13-1|P|2.5\r"
    "SCH|{placer}|{filler}|||||||60|MIN\r"
    "AIL|1||ROOM1|||20240616140000"
)

S15 = (
    "MSH|^~\\&|SCHED|CLINIC|EHR|DERM|20240612080000||SIU^S15|S15-1|P|2.5\r"
    "SCH|APT100|FIL200||||{reason}"
)


def _process(db, raw, tenant="t1"):
    return process_message(db, parse_message(raw), tenant)


def _counts(db):
    return {
        "patients": db.query(Patient).count(),
        "appointments": db.query(Appointment).count(),
        "documents": db.query(Document).count(),
        "observations": db.query(LabObservation).count(),
    }


def _naive(dt):
    return dt.replace(tzinfo=None)


def test_every_message_kind_has_a_handler():
    assert set(HANDLERS) == set(MessageKind)


def test_oru_scenario(db):
    result = _process(db, ORU)

    assert result.success, result.error
    assert _counts(db) == {"patients": 1, "appointments": 0, "documents": 1, "observations": 1}

    patient = db.query(Patient).one()
    assert patient.external_id == "EXT123"
    assert patient.mrn == "EXT123"
    assert patient.first_name == "Jane"
    assert patient.last_name == "Doe"

    doc = db.query(Document).one()
    assert result.resource_id == doc.id
    assert doc.document_type == "lab_result"
    assert doc.patient_id == patient.id
    assert json.loads(doc.content)["observations"][0]["code"] == "GLUCOSE"

    obs = db.query(LabObservation).one()
    assert obs.value == "95"
    assert obs.value_num == 95.0
    assert obs.units == "mg/dL"
    assert obs.abnormal_flag == "N"
    assert obs.reference_range == "70-110"
    assert obs.result_status == "F"
    assert obs.document_id == doc.id

    ack = parse_message(result.ack_message)
    assert ack.msa.ack_code == "AA"
    assert ack.msa.control_id == "MSG001"


def test_oru_replay_adds_nothing(db):
    first = _process(db, ORU)
    second = _process(db, ORU)

    assert second.success
    assert second.resource_id == first.resource_id
    assert _counts(db) == {"patients": 1, "appointments": 0, "documents": 1, "observations": 1}


def test_observation_identity_is_unique_per_tenant(db):
    _process(db, ORU)
    obs = db.query(LabObservation).one()
    assert len(obs.identity_key) == 64

    db.add(LabObservation(tenant_id="t2", patient_id=obs.patient_id, identity_key=obs.identity_key))
    db.flush()

    db.add(LabObservation(tenant_id="t1", patient_id=obs.patient_id, identity_key=obs.identity_key))
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_oru_new_result_for_known_patient(db):
    _process(db, ORU)
    later = ORU.replace("MSG001", "MSG002").replace("||95|", "||130|").replace("|N|||F", "|H|||F")
    result = _process(db, later)

    assert result.success
    assert _counts(db) == {"patients": 1, "appointments": 0, "documents": 2, "observations": 2}


def test_adt_upsert_is_idempotent(db):
    raw = ADT.format(trigger="A04", ctrl="A1", name="Doe^Jane", phone="5035550100")
    first = _process(db, raw)
    second = _process(db, raw)

    assert first.success and second.success
    assert first.resource_id == second.resource_id
    assert db.query(Patient).count() == 1


def test_adt_update_keeps_values_it_does_not_send(db):
    _process(db, ADT.format(trigger="A04", ctrl="A1", name="Doe^Jane", phone="5035550100"))
    result = _process(db, ADT.format(trigger="A08", ctrl="A2", name="Doe-Smith^Jane^M", phone=""))

    assert result.success
    patient = db.query(Patient).one()
    assert patient.id == result.resource_id
    assert patient.last_name == "Doe-Smith"
    assert patient.middle_name == "M"
    assert patient.phone == "5035550100"
    assert patient.city == "Salem"
    assert str(patient.dob) == "1980-01-01"


def test_patients_are_tenant_scoped(db):
    raw = ADT.format(trigger="A04", ctrl="A1", name="Doe^Jane", phone="")
    a = _process(db, raw, tenant="t1")
    b = _process(db, raw, tenant="t2")

    assert a.resource_id != b.resource_id
    assert db.query(Patient).count() == 2


def test_new_appointment_links_known_provider_and_location(db):
    provider = Provider(tenant_id="t1", external_id="DR42", first_name="Gregory", last_name="House")
    location = Location(tenant_id="t1", external_id="ROOM1", name="Exam Room 1")
    db.add_all([provider, location])
    db.commit()

    result = _process(db, S12)
    assert result.success, result.error

    appt = db.query(Appointment).one()
    assert result.resource_id == appt.id
    assert appt.external_id == "APT100"
    assert appt.provider_id == provider.id
    assert appt.location_id == location.id
    assert appt.status == "scheduled"
    assert appt.duration_minutes == 45
    assert _naive(appt.start_time) == datetime(2024, 6, 15, 9, 30)
    assert _naive(appt.end_time) == datetime(2024, 6, 15, 10, 15)
    assert appt.appointment_type == "Consultation"
    assert appt.reason == "Routine visit"
    assert appt.patient_id == db.query(Patient).one().id


def test_new_appointment_tolerates_unknown_references(db):
    result = _process(db, S12)

    assert result.success
    appt = db.query(Appointment).one()
    assert appt.provider_id is None
    assert appt.location_id is None


def test_new_appointment_default_duration_and_hours(db):
    no_duration = S12.replace("|45|MIN", "")
    result = _process(db, no_duration)
    assert result.success
    assert db.query(Appointment).one().duration_minutes == 30

    in_hours = S12.replace("APT100|FIL200", "APT101|FIL201").replace("S12-1", "S12-2").replace("|45|MIN", "|2|H")
    result = _process(db, in_hours)
    assert result.success
    appt = db.query(Appointment).filter(Appointment.external_id == "APT101").one()
    assert appt.duration_minutes == 120


def test_new_appointment_start_from_sch_timing(db):
    raw = (
        "MSH|^~\\&|SCHED|CLINIC|EHR|DERM|20240610080000||SIU^S12|S12-9|P|2.5\r"
        "SCH|APT300||||||||30|MIN|^^^20240620100000\r"
        "PID|1||EXT123^^^LAB^MR||Doe^Jane"
    )
    result = _process(db, raw)

    assert result.success, result.error
    appt = db.query(Appointment).one()
    assert _naive(appt.start_time) == datetime(2024, 6, 20, 10, 0)


def test_new_appointment_without_start_rolls_back(db):
    raw = S12.replace("|||20240615093000", "|||")
    result = _process(db, raw)

    assert not result.success
    assert "start time" in result.error
    assert _counts(db) == {"patients": 0, "appointments": 0, "documents": 0, "observations": 0}
    assert parse_message(result.ack_message).msa.ack_code == "AE"


def test_new_appointment_replay_updates_in_place(db):
    first = _process(db, S12)
    second = _process(db, S12.replace("|45|MIN", "|50|MIN"))

    assert second.resource_id == first.resource_id
    appt = db.query(Appointment).one()
    assert appt.duration_minutes == 50


def test_appointment_external_id_is_unique_per_tenant(db):
    _process(db, S12)
    appt = db.query(Appointment).one()

    db.add(
        Appointment(
            tenant_id="t1",
            external_id=appt.external_id,
            patient_id=appt.patient_id,
            start_time=appt.start_time,
            end_time=appt.end_time,
            duration_minutes=appt.duration_minutes,
        )
    )
    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_reschedule_moves_existing_appointment(db):
    created = _process(db, S12)
    result = _process(db, S13.format(placer="APT100", filler="FIL200"))

    assert result.success, result.error
    assert result.resource_id == created.resource_id
    appt = db.query(Appointment).one()
    assert _naive(appt.start_time) == datetime(2024, 6, 16, 14, 0)
    assert _naive(appt.end_time) == datetime(2024, 6, 16, 15, 0)
    assert appt.duration_minutes == 60
    assert appt.status == "rescheduled"


def test_reschedule_keeps_cancelled_appointment_cancelled(db):
    _process(db, S12)
    _process(db, S15.format(reason="NOSHOW^Patient request"))

    result = _process(db, S13.format(placer="APT100", filler="FIL200"))

    assert result.success, result.error
    appt = db.query(Appointment).one()
    assert appt.status == "cancelled"
    assert appt.cancellation_reason == "Patient request"
    assert _naive(appt.start_time) == datetime(2024, 6, 16, 14, 0)


def test_reschedule_unknown_appointment_fails_without_writes(db):
    before = _counts(db)
    result = _process(db, S13.format(placer="NOPE1", filler="NOPE2"))

    assert not result.success
    assert "not found" in result.error
    assert _counts(db) == before

    ack = parse_message(result.ack_message)
    assert ack.msa.ack_code == "AE"
    assert ack.msa.control_id == "S13-1"


def test_cancel_records_reason(db):
    _process(db, S12)
    result = _process(db, S15.format(reason="NOSHOW^Patient request"))

    assert result.success
    appt = db.query(Appointment).one()
    assert appt.status == "cancelled"
    assert appt.cancellation_reason == "Patient request"


def test_cancel_default_reason(db):
    _process(db, S12)
    _process(db, S15.format(reason=""))

    assert db.query(Appointment).one().cancellation_reason == "Cancelled via HL7"


def test_cancel_unknown_appointment(db):
    result = _process(db, S15.format(reason=""))
    assert not result.success
    assert "not found" in result.error


def test_unsupported_type_fails_closed(db):
    raw = "MSH|^~\\&|X|Y|Z|W|20240101||XYZ^Z99|U1|P|2.5\rPID|1||EXT123^^^LAB^MR||Doe^Jane"
    result = _process(db, raw)

    assert not result.success
    assert result.error == "Unsupported message type: XYZ^Z99"
    assert result.resource_id is None
    assert _counts(db) == {"patients": 0, "appointments": 0, "documents": 0, "observations": 0}
    assert parse_message(result.ack_message).msa.ack_code == "AE"
