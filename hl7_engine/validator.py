# hl7_engine/validator.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .hl7_parser import ParsedMessage

# Segments each supported message type must carry. Types not listed here are
# structurally acceptable; routing them is the processor's call.
REQUIRED_SEGMENTS: Dict[str, Tuple[str, ...]] = {
    "ADT^A04": ("PID",),
    "ADT^A08": ("PID",),
    "SIU^S12": ("SCH", "PID"),
    "SIU^S13": ("SCH",),
    "SIU^S15": ("SCH",),
    "ORU^R01": ("PID", "OBX"),
}


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def validate_message(msg: ParsedMessage) -> ValidationResult:
    """
    Structural completeness check. Never raises; the caller turns an
    invalid result into an AR acknowledgment.
    """
    errors: List[str] = []

    msh = getattr(msg, "msh", None)
    segments = getattr(msg, "segments", None) or {}

    if msh is None or "MSH" not in segments:
        errors.append("MSH segment is required")
        return ValidationResult(valid=False, errors=errors)

    msg_type = msg.message_type or ""
    if not msg_type:
        errors.append("Message type is required")
    if not msg.message_control_id:
        errors.append("Message control ID is required")

    for code in REQUIRED_SEGMENTS.get(msg_type, ()):
        if code == "OBX":
            if not msg.obx:
                errors.append(f"At least one OBX segment is required for {msg_type} messages")
        elif not msg.has_segment(code):
            errors.append(f"{code} segment is required for {msg_type} messages")

    pid = msg.pid
    if pid is not None and "PID" in REQUIRED_SEGMENTS.get(msg_type, ()) and not pid.patient_identifier:
        errors.append(f"PID-3 patient identifier is required for {msg_type} messages")

    sch = msg.sch
    if sch is not None and msg_type.startswith("SIU^") and not sch.appointment_ids:
        errors.append(f"SCH-1 or SCH-2 appointment ID is required for {msg_type} messages")

    return ValidationResult(valid=not errors, errors=errors)
