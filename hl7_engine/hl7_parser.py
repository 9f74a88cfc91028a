# hl7_engine/hl7_parser.py

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple

from hl7apy import check_encoding_chars
from hl7apy.base_datatypes import ST
from hl7apy.consts import DEFAULT_VERSION, VALIDATION_LEVEL
from hl7apy.exceptions import HL7apyException, UnsupportedVersion
from hl7apy.parser import parse_message as parse_er7_message
from hl7apy.parser import parse_segments

# hl7apy only ships tables for 2.1 - 2.8.2; anything else is read with these
FALLBACK_VERSION = DEFAULT_VERSION


class ParseError(ValueError):
    """Raw text cannot be tokenized into a minimal HL7 message."""


# ---------------------------------------------------------------------------
# Delimiters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Delimiters:
    """
    Separator set declared by one message's MSH-1/MSH-2.

    Passed explicitly to every tokenizing helper so concurrent parses never
    share state.
    """

    field: str = "|"
    component: str = "^"
    repetition: str = "~"
    escape: str = "\\"
    subcomponent: str = "&"
    truncation: str = ""

    @property
    def encoding_characters(self) -> str:
        return self.component + self.repetition + self.escape + self.subcomponent + self.truncation

    def as_encoding_chars(self) -> Dict[str, str]:
        """The same set in the dict form hl7apy takes."""
        chars = {
            "FIELD": self.field,
            "COMPONENT": self.component,
            "SUBCOMPONENT": self.subcomponent,
            "REPETITION": self.repetition,
            "ESCAPE": self.escape,
            "SEGMENT": "\r",
            "GROUP": "\r",
        }
        if self.truncation:
            chars["TRUNCATION"] = self.truncation
        return chars


DEFAULT_DELIMITERS = Delimiters()

_SEGMENT_CODE_RE = re.compile(r"^[A-Z][A-Z0-9]{2}$")


def _is_control(ch: str) -> bool:
    return ord(ch) < 0x20 or ord(ch) == 0x7F


def read_delimiters(msh_line: str) -> Delimiters:
    """
    Read the delimiter set from an MSH segment line.

    MSH-1 is the character right after "MSH"; MSH-2 lists component,
    repetition, escape and subcomponent separators (plus an optional
    truncation character). Missing ones fall back to the standard set.
    """
    if not msh_line.startswith("MSH") or len(msh_line) < 4:
        raise ParseError("MSH segment is too short to carry a field separator")

    fs = msh_line[3]
    if fs.isalnum() or fs.isspace() or _is_control(fs):
        raise ParseError(f"Invalid field separator {fs!r} in MSH-1")

    encoding = msh_line[4:].split(fs, 1)[0]
    if len(encoding) > 5:
        raise ParseError(f"MSH-2 has too many encoding characters: {encoding!r}")

    defaults = DEFAULT_DELIMITERS
    chars = list(encoding)
    delims = Delimiters(
        field=fs,
        component=chars[0] if len(chars) > 0 else defaults.component,
        repetition=chars[1] if len(chars) > 1 else defaults.repetition,
        escape=chars[2] if len(chars) > 2 else defaults.escape,
        subcomponent=chars[3] if len(chars) > 3 else defaults.subcomponent,
        truncation=chars[4] if len(chars) > 4 else "",
    )

    for ch in delims.encoding_characters:
        if ch.isalnum() or ch.isspace() or _is_control(ch):
            raise ParseError(f"Invalid encoding character {ch!r} in MSH-2")
    try:
        check_encoding_chars(delims.as_encoding_chars())
    except HL7apyException as exc:
        raise ParseError(f"Encoding characters collide: {fs}{encoding!r}") from exc
    if delims.truncation and delims.truncation in fs + delims.encoding_characters[:4]:
        raise ParseError(f"Encoding characters collide: {fs}{encoding!r}")

    return delims


def _header_line(msh_line: str, delims: Delimiters) -> str:
    """
    MSH line rewritten to carry all four core encoding characters in MSH-2,
    which is the only form hl7apy accepts for every version.
    """
    rest = msh_line[4:].split(delims.field, 1)
    tail = delims.field + rest[1] if len(rest) > 1 else ""
    return "MSH" + delims.field + delims.encoding_characters[:4] + tail


# ---------------------------------------------------------------------------
# Escape sequences
# ---------------------------------------------------------------------------

@lru_cache(maxsize=32)
def _escape_pattern(escape: str) -> "re.Pattern[str]":
    e = re.escape(escape)
    return re.compile(e + r"(\.br|[FSTRE]|X[0-9A-Fa-f]*)" + e)


def unescape_component(value: str, delims: Delimiters) -> str:
    """
    Decode \\F\\ \\S\\ \\T\\ \\R\\ \\E\\ \\.br\\ and \\Xhh\\ using the message's own delimiters.

    hl7apy keeps parsed text in its escaped wire form and has no decoder of
    its own, so values read off its elements come through here.
    """
    if not value or not delims.escape or delims.escape not in value:
        return value

    mapping = {
        "F": delims.field,
        "S": delims.component,
        "T": delims.subcomponent,
        "R": delims.repetition,
        "E": delims.escape,
        ".br": "\n",
    }

    def repl(m: "re.Match[str]") -> str:
        code = m.group(1)
        if code in mapping:
            return mapping[code]
        hex_digits = code[1:]
        if len(hex_digits) % 2 == 0:
            try:
                return bytes.fromhex(hex_digits).decode("latin-1")
            except ValueError:
                pass
        return m.group(0)

    return _escape_pattern(delims.escape).sub(repl, value)


def escape_component(value: str, delims: Delimiters) -> str:
    """
    Escape free text for one component with hl7apy's ST encoder.

    Separators and stray escape characters are encoded; line breaks are not,
    so callers placing multi-line text must flatten it first.
    """
    if not value:
        return ""
    text = ST(value, validation_level=VALIDATION_LEVEL.TOLERANT)
    return text.to_er7(delims.as_encoding_chars())


# ---------------------------------------------------------------------------
# Tokenizing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SegmentFields:
    """
    Field text of one hl7apy segment keyed by HL7 position. Each position
    holds its repetitions, each repetition its components, all still escaped.
    For MSH, position 1 is the field separator itself.
    """

    code: str
    fields: Dict[int, Tuple[Tuple[str, ...], ...]]
    delimiters: Delimiters

    def field(self, n: int) -> str:
        """First repetition of field n, still escaped."""
        return self.repetitions(n)[0]

    def repetitions(self, n: int) -> List[str]:
        reps = self.fields.get(n)
        if not reps:
            return [""]
        return [self.delimiters.component.join(rep) for rep in reps]

    def components(self, n: int) -> List[str]:
        reps = self.fields.get(n)
        if not reps:
            return [""]
        return [unescape_component(c, self.delimiters) for c in reps[0]] or [""]

    def component(self, n: int, c: int = 1) -> str:
        comps = self.components(n)
        return comps[c - 1].strip() if c - 1 < len(comps) else ""

    def text(self, n: int) -> str:
        """Whole first repetition, unescaped, component separators kept."""
        return unescape_component(self.field(n), self.delimiters).strip()


def split_segments(raw: str) -> List[str]:
    """CR is the segment terminator; CRLF and bare LF are treated the same."""
    normalized = raw.replace("\r\n", "\r").replace("\n", "\r")
    return [ln.strip() for ln in normalized.split("\r") if ln.strip()]


def _segment_code(line: str, delims: Delimiters) -> str:
    code = line.split(delims.field, 1)[0].strip()
    if not _SEGMENT_CODE_RE.match(code):
        raise ParseError(f"Malformed segment identifier {code[:10]!r}")
    return code


def _position(name: Optional[str]) -> Optional[int]:
    """HL7 position from an hl7apy element name (PID_3, XPN_1, ...)."""
    if not name:
        return None
    tail = name.rsplit("_", 1)[-1]
    return int(tail) if tail.isdigit() else None


def _positional(children, text_of: Callable[[Any], str]) -> List[str]:
    """
    hl7apy leaves empty named children out of the tree; put the rest back
    at their positions so component numbers line up with the wire form.
    """
    parts: List[str] = []
    for child in children:
        pos = _position(child.name)
        if pos is not None and pos > len(parts) + 1:
            parts.extend([""] * (pos - 1 - len(parts)))
        parts.append(text_of(child))
    return parts


def _leaf_text(subcomponent) -> str:
    # textual datatypes keep the raw wire text; dates and numbers re-render
    value = subcomponent.value
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value.value, str):
        return value.value
    return value.to_er7()


def _segment_fields(segment, delims: Delimiters) -> SegmentFields:
    def component_text(component) -> str:
        return delims.subcomponent.join(_positional(component.children, _leaf_text))

    fields: Dict[int, List[Tuple[str, ...]]] = {}
    for hl7_field in segment.children:
        pos = _position(hl7_field.name)
        if pos is None:
            # past the end of hl7apy's table for this segment
            continue
        fields.setdefault(pos, []).append(tuple(_positional(hl7_field.children, component_text)))

    return SegmentFields(
        code=segment.name,
        fields={pos: tuple(reps) for pos, reps in fields.items()},
        delimiters=delims,
    )


def _tokenize(er7: str, delims: Delimiters) -> List[Any]:
    """
    Run ER7 text through hl7apy without group detection, one Segment per line.
    MSH-12 values hl7apy has no tables for are read with FALLBACK_VERSION.
    """
    try:
        try:
            message = parse_er7_message(
                er7, validation_level=VALIDATION_LEVEL.TOLERANT, find_groups=False
            )
            segments = list(message.children)
        except UnsupportedVersion:
            segments = parse_segments(
                er7,
                version=FALLBACK_VERSION,
                encoding_chars=delims.as_encoding_chars(),
                validation_level=VALIDATION_LEVEL.TOLERANT,
            )
    except (HL7apyException, ValueError) as exc:
        raise ParseError(f"Invalid HL7 message: {exc}") from exc
    return segments


# ---------------------------------------------------------------------------
# Composite types
# ---------------------------------------------------------------------------

def _at(comps: List[str], i: int) -> str:
    return comps[i].strip() if i < len(comps) else ""


@dataclass(frozen=True)
class PersonName:
    family: str = ""
    given: str = ""
    middle: str = ""
    suffix: str = ""
    prefix: str = ""

    @classmethod
    def from_components(cls, comps: List[str]) -> "PersonName":
        return cls(_at(comps, 0), _at(comps, 1), _at(comps, 2), _at(comps, 3), _at(comps, 4))


@dataclass(frozen=True)
class Address:
    street: str = ""
    other: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""

    @classmethod
    def from_components(cls, comps: List[str]) -> "Address":
        return cls(*(_at(comps, i) for i in range(6)))


@dataclass(frozen=True)
class CodedElement:
    code: str = ""
    text: str = ""
    coding_system: str = ""

    @classmethod
    def from_components(cls, comps: List[str]) -> "CodedElement":
        return cls(_at(comps, 0), _at(comps, 1), _at(comps, 2))

    @property
    def display(self) -> str:
        return self.text or self.code


@dataclass(frozen=True)
class ProviderRef:
    id: str = ""
    family: str = ""
    given: str = ""

    @classmethod
    def from_components(cls, comps: List[str]) -> "ProviderRef":
        return cls(_at(comps, 0), _at(comps, 1), _at(comps, 2))


def _phone(seg: SegmentFields, n: int) -> str:
    """XTN: older senders put the number in component 1, v2.5+ in area code (6) + local (7)."""
    number = seg.component(n, 1)
    if number:
        return number
    area, local = seg.component(n, 6), seg.component(n, 7)
    return f"{area}{local}" if local else ""


# ---------------------------------------------------------------------------
# Segment records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MSH:
    delimiters: Delimiters
    sending_application: str
    sending_facility: str
    receiving_application: str
    receiving_facility: str
    timestamp: str
    security: str
    message_code: str
    trigger_event: str
    message_structure: str
    message_control_id: str
    processing_id: str
    version: str

    @property
    def message_type(self) -> str:
        if self.message_code and self.trigger_event:
            return f"{self.message_code}^{self.trigger_event}"
        return self.message_code


@dataclass(frozen=True)
class PID:
    set_id: str
    external_id: str
    identifier: str
    identifier_authority: str
    identifier_type: str
    alternate_id: str
    name: PersonName
    mothers_maiden_name: str
    date_of_birth: str
    sex: str
    race: str
    address: Address
    phone_home: str
    phone_business: str
    primary_language: str
    marital_status: str
    account_number: str
    ssn: str
    ethnic_group: str

    @property
    def patient_identifier(self) -> str:
        """PID-3 is authoritative; older senders only fill PID-2 or PID-4."""
        return self.identifier or self.external_id or self.alternate_id


@dataclass(frozen=True)
class PV1:
    set_id: str
    patient_class: str
    assigned_location: str
    admission_type: str
    attending_doctor: ProviderRef
    referring_doctor: ProviderRef
    hospital_service: str
    admitting_doctor: ProviderRef
    visit_number: str


@dataclass(frozen=True)
class SCH:
    placer_appointment_id: str
    filler_appointment_id: str
    occurrence_number: str
    placer_group_number: str
    schedule_id: str
    event_reason: CodedElement
    appointment_reason: CodedElement
    appointment_type: CodedElement
    duration: str
    duration_units: str
    timing_start: str
    filler_status_code: str

    @property
    def appointment_ids(self) -> List[str]:
        return [i for i in (self.placer_appointment_id, self.filler_appointment_id) if i]


@dataclass(frozen=True)
class AIL:
    set_id: str
    action_code: str
    location_id: str
    location_type: str
    location_group: str
    start_datetime: str
    start_offset: str
    start_offset_units: str
    duration: str
    duration_units: str
    filler_status_code: str


@dataclass(frozen=True)
class AIP:
    set_id: str
    action_code: str
    personnel: ProviderRef
    resource_role: str
    resource_group: str
    start_datetime: str
    start_offset: str
    start_offset_units: str
    duration: str
    duration_units: str
    filler_status_code: str


@dataclass(frozen=True)
class OBX:
    set_id: str
    value_type: str
    identifier: CodedElement
    sub_id: str
    value: str
    units: str
    reference_range: str
    abnormal_flags: str
    probability: str
    nature_of_abnormal_test: str
    result_status: str
    observation_datetime: str
    producer_id: str
    responsible_observer: ProviderRef

    @property
    def reference_bounds(self) -> Tuple[Optional[str], Optional[str]]:
        s = (self.reference_range or "").strip()
        if not s:
            return None, None
        if "-" in s and not s.startswith("-"):
            lo, hi = s.split("-", 1)
            return lo.strip() or None, hi.strip() or None
        return None, s


@dataclass(frozen=True)
class MSA:
    ack_code: str
    control_id: str
    text: str


TEXT_VALUE_TYPES = {"TX", "FT"}


def _units(seg: SegmentFields, n: int) -> str:
    """
    OBX-6 is a CE. Units like `10^3/uL` arrive split across components, so
    keep the whole field unless it is a real coded triple (code^text^system).
    """
    comps = seg.components(n)
    if len(comps) >= 3 and comps[2].strip():
        return comps[0].strip()
    return seg.text(n)


def _build_msh(seg: SegmentFields) -> MSH:
    return MSH(
        delimiters=seg.delimiters,
        sending_application=seg.component(3),
        sending_facility=seg.component(4),
        receiving_application=seg.component(5),
        receiving_facility=seg.component(6),
        timestamp=seg.component(7),
        security=seg.component(8),
        message_code=seg.component(9, 1).upper(),
        trigger_event=seg.component(9, 2).upper(),
        message_structure=seg.component(9, 3).upper(),
        message_control_id=seg.component(10),
        processing_id=seg.component(11),
        version=seg.component(12),
    )


def _build_pid(seg: SegmentFields) -> PID:
    return PID(
        set_id=seg.component(1),
        external_id=seg.component(2),
        identifier=seg.component(3, 1),
        identifier_authority=seg.component(3, 4),
        identifier_type=seg.component(3, 5),
        alternate_id=seg.component(4),
        name=PersonName.from_components(seg.components(5)),
        mothers_maiden_name=seg.component(6),
        date_of_birth=seg.component(7),
        sex=seg.component(8).upper(),
        race=seg.component(10),
        address=Address.from_components(seg.components(11)),
        phone_home=_phone(seg, 13),
        phone_business=_phone(seg, 14),
        primary_language=seg.component(15),
        marital_status=seg.component(16),
        account_number=seg.component(18),
        ssn=seg.component(19),
        ethnic_group=seg.component(22),
    )


def _build_pv1(seg: SegmentFields) -> PV1:
    return PV1(
        set_id=seg.component(1),
        patient_class=seg.component(2),
        assigned_location=seg.component(3),
        admission_type=seg.component(4),
        attending_doctor=ProviderRef.from_components(seg.components(7)),
        referring_doctor=ProviderRef.from_components(seg.components(8)),
        hospital_service=seg.component(10),
        admitting_doctor=ProviderRef.from_components(seg.components(17)),
        visit_number=seg.component(19),
    )


def _build_sch(seg: SegmentFields) -> SCH:
    return SCH(
        placer_appointment_id=seg.component(1),
        filler_appointment_id=seg.component(2),
        occurrence_number=seg.component(3),
        placer_group_number=seg.component(4),
        schedule_id=seg.component(5),
        event_reason=CodedElement.from_components(seg.components(6)),
        appointment_reason=CodedElement.from_components(seg.components(7)),
        appointment_type=CodedElement.from_components(seg.components(8)),
        duration=seg.component(9),
        duration_units=seg.component(10),
        timing_start=seg.component(11, 4),
        filler_status_code=seg.component(25),
    )


def _build_ail(seg: SegmentFields) -> AIL:
    return AIL(
        set_id=seg.component(1),
        action_code=seg.component(2),
        location_id=seg.component(3),
        location_type=seg.component(4),
        location_group=seg.component(5),
        start_datetime=seg.component(6),
        start_offset=seg.component(7),
        start_offset_units=seg.component(8),
        duration=seg.component(9),
        duration_units=seg.component(10),
        filler_status_code=seg.component(12),
    )


def _build_aip(seg: SegmentFields) -> AIP:
    return AIP(
        set_id=seg.component(1),
        action_code=seg.component(2),
        personnel=ProviderRef.from_components(seg.components(3)),
        resource_role=seg.component(4),
        resource_group=seg.component(5),
        start_datetime=seg.component(6),
        start_offset=seg.component(7),
        start_offset_units=seg.component(8),
        duration=seg.component(9),
        duration_units=seg.component(10),
        filler_status_code=seg.component(12),
    )


def _build_obx(seg: SegmentFields) -> OBX:
    value_type = seg.component(2).upper()
    if value_type in TEXT_VALUE_TYPES:
        value = "\n".join(unescape_component(r, seg.delimiters) for r in seg.repetitions(5)).strip()
    else:
        value = seg.text(5)

    return OBX(
        set_id=seg.component(1),
        value_type=value_type,
        identifier=CodedElement.from_components(seg.components(3)),
        sub_id=seg.component(4),
        value=value,
        units=_units(seg, 6),
        reference_range=seg.text(7),
        abnormal_flags=seg.component(8).upper(),
        probability=seg.component(9),
        nature_of_abnormal_test=seg.component(10),
        result_status=seg.component(11).upper(),
        observation_datetime=seg.component(14),
        producer_id=seg.component(15),
        responsible_observer=ProviderRef.from_components(seg.components(16)),
    )


def _build_msa(seg: SegmentFields) -> MSA:
    return MSA(
        ack_code=seg.component(1).upper(),
        control_id=seg.component(2),
        text=seg.text(3),
    )


SEGMENT_BUILDERS: Dict[str, Callable[[SegmentFields], Any]] = {
    "MSH": _build_msh,
    "PID": _build_pid,
    "PV1": _build_pv1,
    "SCH": _build_sch,
    "AIL": _build_ail,
    "AIP": _build_aip,
    "OBX": _build_obx,
    "MSA": _build_msa,
}

REPEATING_SEGMENTS = frozenset({"OBX"})


# ---------------------------------------------------------------------------
# Parsed message
# ---------------------------------------------------------------------------

@dataclass
class ParsedMessage:
    msh: MSH
    segments: Dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    @property
    def message_type(self) -> str:
        return self.msh.message_type

    @property
    def message_control_id(self) -> str:
        return self.msh.message_control_id

    @property
    def sending_application(self) -> str:
        return self.msh.sending_application

    @property
    def sending_facility(self) -> str:
        return self.msh.sending_facility

    @property
    def receiving_application(self) -> str:
        return self.msh.receiving_application

    @property
    def receiving_facility(self) -> str:
        return self.msh.receiving_facility

    @property
    def version(self) -> str:
        return self.msh.version

    @property
    def delimiters(self) -> Delimiters:
        return self.msh.delimiters

    @property
    def pid(self) -> Optional[PID]:
        return self.segments.get("PID")

    @property
    def pv1(self) -> Optional[PV1]:
        return self.segments.get("PV1")

    @property
    def sch(self) -> Optional[SCH]:
        return self.segments.get("SCH")

    @property
    def ail(self) -> Optional[AIL]:
        return self.segments.get("AIL")

    @property
    def aip(self) -> Optional[AIP]:
        return self.segments.get("AIP")

    @property
    def obx(self) -> List[OBX]:
        return self.segments.get("OBX", [])

    @property
    def msa(self) -> Optional[MSA]:
        return self.segments.get("MSA")

    def has_segment(self, code: str) -> bool:
        return bool(self.segments.get(code))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form, stored with the queue entry."""
        segs: Dict[str, Any] = {}
        for code, value in self.segments.items():
            if isinstance(value, list):
                segs[code] = [v if isinstance(v, str) else asdict(v) for v in value]
            else:
                segs[code] = asdict(value)
        return {
            "messageType": self.message_type,
            "messageControlId": self.message_control_id,
            "sendingApplication": self.sending_application,
            "sendingFacility": self.sending_facility,
            "receivingApplication": self.receiving_application,
            "receivingFacility": self.receiving_facility,
            "version": self.version,
            "segments": segs,
        }


def parse_message(raw: str) -> ParsedMessage:
    """
    Tokenize raw HL7 v2.x text into a ParsedMessage.

    MSH and the segments with typed records are read through hl7apy; any
    other segment is kept as its raw line under its code. Raises ParseError
    when the text has no usable MSH, the MSH declares unusable delimiters,
    hl7apy rejects a typed segment, or MSH-9 / MSH-10 are empty.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ParseError("Invalid HL7 message: message must be a non-empty string")

    lines = split_segments(raw.lstrip("\ufeff"))
    if not any(ln.startswith("MSH") for ln in lines):
        raise ParseError("Invalid HL7 message: MSH segment is required")
    if not lines[0].startswith("MSH"):
        raise ParseError("Invalid HL7 message: MSH must be the first segment")

    delims = read_delimiters(lines[0])
    codes = [_segment_code(line, delims) for line in lines]

    typed = [
        _header_line(line, delims) if code == "MSH" else line
        for code, line in zip(codes, lines)
        if code in SEGMENT_BUILDERS
    ]
    tokenized = iter(_tokenize("\r".join(typed) + "\r", delims))

    segments: Dict[str, Any] = {}
    for code, line in zip(codes, lines):
        builder = SEGMENT_BUILDERS.get(code)
        if builder is None:
            segments.setdefault(code, []).append(line)
            continue

        record = builder(_segment_fields(next(tokenized), delims))
        if code in REPEATING_SEGMENTS:
            segments.setdefault(code, []).append(record)
        elif code not in segments:
            segments[code] = record

    msh: MSH = segments["MSH"]
    if not msh.message_code:
        raise ParseError("Invalid HL7 message: MSH-9 message type is required")
    if not msh.message_control_id:
        raise ParseError("Invalid HL7 message: MSH-10 message control ID is required")

    return ParsedMessage(msh=msh, segments=segments, raw=raw)


def parse_header(raw: str) -> MSH:
    """Typed header of the first MSH line, without the MSH-9/MSH-10 checks."""
    lines = split_segments(raw.lstrip("\ufeff")) if isinstance(raw, str) else []
    for line in lines:
        if line.startswith("MSH"):
            delims = read_delimiters(line)
            segment = _tokenize(_header_line(line, delims) + "\r", delims)[0]
            return _build_msh(_segment_fields(segment, delims))
    raise ParseError("Invalid HL7 message: MSH segment is required")


# ---------------------------------------------------------------------------
# Date/time
# ---------------------------------------------------------------------------

_HL7_TS_RE = re.compile(
    r"^(\d{4})(\d{2})(\d{2})"
    r"(?:(\d{2})(?:(\d{2})(?:(\d{2})(?:\.(\d{1,4}))?)?)?)?"
    r"(?:([+-])(\d{2})(\d{2}))?$"
)


def parse_hl7_datetime(value: Any) -> Optional[datetime]:
    """
    Convert HL7 TS/DTM `YYYYMMDD[HH[MM[SS[.ffff]]]][+/-ZZZZ]` to an aware UTC datetime.

    Values without an offset are taken as UTC. Returns None for empty or
    malformed input; never raises, so a bad optional timestamp can't sink
    an otherwise valid message.
    """
    if not value or not isinstance(value, str):
        return None

    m = _HL7_TS_RE.match(value.strip())
    if not m:
        return None

    year, month, day, hour, minute, second, frac, sign, off_h, off_m = m.groups()
    try:
        tz = timezone.utc
        if sign:
            offset = timedelta(hours=int(off_h), minutes=int(off_m))
            tz = timezone(-offset if sign == "-" else offset)
        dt = datetime(
            int(year),
            int(month),
            int(day),
            int(hour or 0),
            int(minute or 0),
            int(second or 0),
            int(frac.ljust(6, "0")) if frac else 0,
            tzinfo=tz,
        )
    except (ValueError, OverflowError):
        return None

    return dt.astimezone(timezone.utc)


def format_hl7_datetime(dt: Optional[datetime] = None) -> str:
    """Render YYYYMMDDHHMMSS (UTC when `dt` is aware, as-is when naive)."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y%m%d%H%M%S")
