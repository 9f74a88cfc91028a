import pytest

from hl7_engine.hl7_msh import generate_ack, generate_reject_ack, new_control_id, parse_msh
from hl7_engine.hl7_parser import parse_message

ORU = (
    "MSH|^~\\&|LAB|LABFAC|DERMAPP|DERM|20240101120000||ORU^R01|MSG001|P|2.5\r"
    "PID|1||EXT123^^^LAB^MR||Doe^Jane||19800101|F\r"
    "OBX|1|NM|GLUCOSE^Glucose||95|mg/dL|70-110|N|||F"
)


def test_ack_echoes_control_id_and_swaps_addresses():
    msg = parse_message(ORU)
    ack = generate_ack(msg, "AA")

    assert ack.startswith("MSH|^~\\&|")
    assert ack.endswith("\r")

    reply = parse_message(ack)
    assert reply.message_type == "ACK^R01"
    assert reply.sending_application == "DERMAPP"
    assert reply.sending_facility == "DERM"
    assert reply.receiving_application == "LAB"
    assert reply.receiving_facility == "LABFAC"
    assert reply.msh.processing_id == "P"
    assert reply.version == "2.5"

    assert reply.msa.ack_code == "AA"
    assert reply.msa.control_id == "MSG001"
    # fresh control id for the reply itself
    assert reply.message_control_id != "MSG001"


def test_error_ack_carries_text():
    msg = parse_message(ORU)
    reply = parse_message(generate_ack(msg, "AE", "Appointment not found"))
    assert reply.msa.ack_code == "AE"
    assert reply.msa.text == "Appointment not found"


def test_error_ack_text_is_one_line_and_escaped():
    msg = parse_message(ORU)
    ack = generate_ack(msg, "AE", "Lookup failed:\n  PID|3 missing")

    assert ack.count("\r") == 2
    assert parse_message(ack).msa.text == "Lookup failed: PID|3 missing"


def test_ack_uses_standard_delimiters_for_custom_sender():
    raw = (
        "MSH#@~\\&#LAB#LABFAC#DERMAPP#DERM#20240101120000##ADT@A04#C77#T#2.5\r"
        "PID#1##EXT9@@@LAB@MR##Roe@Richard"
    )
    reply = parse_message(generate_ack(parse_message(raw), "AA"))
    assert reply.delimiters.field == "|"
    assert reply.message_type == "ACK^A04"
    assert reply.msh.processing_id == "T"
    assert reply.msa.control_id == "C77"


def test_unknown_version_falls_back():
    msg = parse_message(ORU.replace("|P|2.5", "|P|9.9"))
    reply = parse_message(generate_ack(msg, "AA"))
    assert reply.version == "2.5"
    assert reply.msa.control_id == "MSG001"


def test_unknown_ack_code_rejected():
    with pytest.raises(ValueError):
        generate_ack(parse_message(ORU), "OK")


def test_reject_ack_for_unparseable_text():
    reply = parse_message(generate_reject_ack("this is not hl7", "Invalid HL7 message"))
    assert reply.message_type == "ACK"
    assert reply.sending_application == "HL7ENGINE"
    assert reply.msa.ack_code == "AR"
    assert reply.msa.control_id == ""


def test_reject_ack_reads_whatever_header_is_there():
    raw = "MSH|^~\\&|LAB|LABFAC|DERMAPP|DERM|20240101||ORU^R01|MSG009|P|2.5\rbad segment"
    reply = parse_message(generate_reject_ack(raw, "Malformed segment"))
    assert reply.msa.ack_code == "AR"
    assert reply.msa.control_id == "MSG009"
    assert reply.receiving_application == "LAB"


def test_parse_msh_is_lenient():
    assert parse_msh("") is None
    assert parse_msh("PID|1||X") is None
    assert parse_msh("MSHA|bad") is None
    assert parse_msh(ORU).message_control_id == "MSG001"


def test_new_control_id_fits_msh10():
    ids = {new_control_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(len(i) == 20 for i in ids)
