from datetime import datetime, timezone

import pytest

from hl7_engine.hl7_parser import (
    DEFAULT_DELIMITERS,
    Delimiters,
    ParseError,
    escape_component,
    format_hl7_datetime,
    parse_hl7_datetime,
    parse_message,
    read_delimiters,
    unescape_component,
)

ORU = (
    "MSH|^~\\&|LAB|LABFAC|DERMAPP|DERM|20240101120000||ORU^R01|MSG001|P|2.5\r"
    "PID|1||EXT123^^^LAB^MR||Doe^Jane||19800101|F\r"
    "OBX|1|NM|GLUCOSE^Glucose||95|mg/dL|70-110|N|||F"
)

ADT = (
    "MSH|^~\\&|REG|HOSP|EHR|CLINIC|20240301083000||ADT^A04^ADT_A01|ADT0001|P|2.5.1\r"
    "EVN|A04|20240301083000\r"
    "PID|1||MRN555^^^HOSP^MR||Smith^John^Q^Jr||19751231|m|||12 Main St^Apt 4^Springfield^IL^62701^USA||"
    "^PRN^PH^^^217^5550100||||||123-45-6789\r"
    "PV1|1|O|CLINIC^101||||1234^Welby^Marcus"
)


def test_oru_scenario_parses():
    msg = parse_message(ORU)

    assert msg.message_type == "ORU^R01"
    assert msg.message_control_id == "MSG001"
    assert msg.sending_application == "LAB"
    assert msg.sending_facility == "LABFAC"
    assert msg.receiving_application == "DERMAPP"
    assert msg.version == "2.5"

    assert msg.pid.patient_identifier == "EXT123"
    assert msg.pid.identifier_authority == "LAB"
    assert msg.pid.name.family == "Doe"
    assert msg.pid.name.given == "Jane"
    assert msg.pid.sex == "F"

    assert len(msg.obx) == 1
    obx = msg.obx[0]
    assert obx.identifier.code == "GLUCOSE"
    assert obx.identifier.display == "Glucose"
    assert obx.value == "95"
    assert obx.units == "mg/dL"
    assert obx.reference_range == "70-110"
    assert obx.reference_bounds == ("70", "110")
    assert obx.abnormal_flags == "N"
    assert obx.result_status == "F"


def test_adt_fields_and_unknown_segments():
    msg = parse_message(ADT)

    assert msg.message_type == "ADT^A04"
    assert msg.msh.message_structure == "ADT_A01"
    pid = msg.pid
    assert pid.name.middle == "Q"
    assert pid.name.suffix == "Jr"
    assert pid.sex == "M"
    assert pid.address.city == "Springfield"
    assert pid.address.zip == "62701"
    assert pid.phone_home == "2175550100"
    assert pid.ssn == "123-45-6789"
    assert msg.pv1.attending_doctor.family == "Welby"

    # EVN has no typed record; the raw line is kept
    assert msg.segments["EVN"] == ["EVN|A04|20240301083000"]


def test_multiple_obx_keep_order():
    raw = ORU + "\rOBX|2|NM|HBA1C^Hemoglobin A1c||6.1|%|4.0-5.6|H|||F\rOBX|3|ST|NOTE^Comment||fasting|||||F"
    msg = parse_message(raw)
    assert [o.set_id for o in msg.obx] == ["1", "2", "3"]
    assert msg.obx[1].abnormal_flags == "H"


def test_line_endings_are_interchangeable():
    for sep in ("\n", "\r\n", "\r\n\r\n"):
        msg = parse_message(ORU.replace("\r", sep))
        assert msg.message_control_id == "MSG001"
        assert len(msg.obx) == 1


def test_sender_declared_delimiters():
    raw = (
        "MSH#@~\\&#LAB#LABFAC#DERMAPP#DERM#20240101120000##ORU@R01#MSG777#P#2.5\r"
        "PID#1##EXT9@@@LAB@MR##Roe@Richard##19700202#M\r"
        "OBX#1#NM#K@Potassium##4.1#mmol/L#3.5-5.1#N###F"
    )
    msg = parse_message(raw)

    assert msg.delimiters.field == "#"
    assert msg.delimiters.component == "@"
    assert msg.message_type == "ORU^R01"
    assert msg.message_control_id == "MSG777"
    assert msg.pid.patient_identifier == "EXT9"
    assert msg.pid.name.given == "Richard"
    assert msg.obx[0].identifier.display == "Potassium"
    assert msg.obx[0].value == "4.1"


def test_escape_sequences_use_message_delimiters():
    raw = ORU.replace("OBX|1|NM|GLUCOSE^Glucose||95", "OBX|1|ST|NOTE^Lab\\T\\Path||A\\F\\B\\S\\C\\E\\D")
    msg = parse_message(raw)
    assert msg.obx[0].identifier.display == "Lab&Path"
    assert msg.obx[0].value == "A|B^C\\D"


def test_text_observation_repetitions_join_lines():
    raw = ORU.replace("OBX|1|NM|GLUCOSE^Glucose||95", "OBX|1|TX|NOTE^Note||line one~line two\\.br\\line three")
    msg = parse_message(raw)
    assert msg.obx[0].value == "line one\nline two\nline three"


def test_escape_round_trip():
    text = "a|b^c&d~e\\f"
    escaped = escape_component(text, DEFAULT_DELIMITERS)
    assert "|" not in escaped and "^" not in escaped
    assert unescape_component(escaped, DEFAULT_DELIMITERS) == text


def test_escape_uses_sender_delimiters():
    delims = Delimiters(field="#", component="@")
    assert escape_component("a#b@c^d", delims) == "a\\F\\b\\S\\c^d"


def test_empty_components_keep_their_positions():
    raw = ORU.replace("EXT123^^^LAB^MR", "^^^LAB^MR").replace("|N|||F", "|N|||F|||20240101120000-0500")
    msg = parse_message(raw)

    assert msg.pid.identifier == ""
    assert msg.pid.identifier_authority == "LAB"
    assert msg.pid.identifier_type == "MR"
    assert msg.obx[0].observation_datetime == "20240101120000-0500"


def test_blank_version_is_read_with_default_tables():
    raw = ORU.replace("|P|2.5", "|P|")
    msg = parse_message(raw)

    assert msg.version == ""
    assert msg.pid.patient_identifier == "EXT123"
    assert msg.obx[0].units == "mg/dL"


def test_custom_segments_are_kept_raw():
    raw = ORU + "\rZDS|1|custom^value\rQQQ|unregistered"
    msg = parse_message(raw)

    assert msg.segments["ZDS"] == ["ZDS|1|custom^value"]
    assert msg.segments["QQQ"] == ["QQQ|unregistered"]
    assert msg.obx[0].value == "95"


def test_first_non_repeating_segment_wins():
    raw = ORU + "\rPID|2||OTHER^^^LAB^MR||Other^Person"
    msg = parse_message(raw)
    assert msg.pid.patient_identifier == "EXT123"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   \r\n",
        None,
        "PID|1||EXT123",
        "PID|1||EXT123\rMSH|^~\\&|LAB|LABFAC|||20240101||ORU^R01|X1|P|2.5",
        "MSH",
        "MSHA^~\\&|LAB",
        "MSH|^~\\&|LAB|LABFAC|||20240101|||X1|P|2.5",
        "MSH|^~\\&|LAB|LABFAC|||20240101||ORU^R01||P|2.5",
        "MSH|^^\\&|LAB|LABFAC|||20240101||ORU^R01|X1|P|2.5",
        "MSH|^~\\&|LAB\rpid|1",
    ],
)
def test_unusable_input_raises_parse_error(raw):
    with pytest.raises(ParseError):
        parse_message(raw)


def test_read_delimiters_defaults_missing_encoding_chars():
    delims = read_delimiters("MSH|^~|LAB")
    assert delims.component == "^"
    assert delims.repetition == "~"
    assert delims.escape == "\\"
    assert delims.subcomponent == "&"


def test_parse_hl7_datetime():
    assert parse_hl7_datetime("20240101120000") == datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert parse_hl7_datetime("19800101") == datetime(1980, 1, 1, tzinfo=timezone.utc)
    assert parse_hl7_datetime("202401011200-0500") == datetime(2024, 1, 1, 17, 0, tzinfo=timezone.utc)
    assert parse_hl7_datetime("20240101120000.25") == datetime(2024, 1, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)

    for bad in ("", None, "2024", "20241301", "not a date", 20240101):
        assert parse_hl7_datetime(bad) is None


def test_format_hl7_datetime():
    dt = datetime(2024, 6, 1, 8, 30, 5, tzinfo=timezone.utc)
    assert format_hl7_datetime(dt) == "20240601083005"
    assert len(format_hl7_datetime()) == 14


def test_to_dict_is_json_safe():
    import json

    data = parse_message(ORU).to_dict()
    encoded = json.dumps(data)
    assert '"messageType": "ORU^R01"' in encoded
    assert data["segments"]["OBX"][0]["value"] == "95"
