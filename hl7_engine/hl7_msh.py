# hl7_engine/hl7_msh.py
from __future__ import annotations

import uuid
from typing import Optional

from hl7apy.consts import VALIDATION_LEVEL
from hl7apy.core import Message
from hl7apy.exceptions import HL7apyException

from .config import RECEIVING_APPLICATION, RECEIVING_FACILITY
from .hl7_parser import (
    DEFAULT_DELIMITERS,
    FALLBACK_VERSION,
    MSH,
    ParseError,
    ParsedMessage,
    escape_component,
    format_hl7_datetime,
    parse_header,
)

ACK_ACCEPT = "AA"
ACK_ERROR = "AE"
ACK_REJECT = "AR"
ACK_CODES = (ACK_ACCEPT, ACK_ERROR, ACK_REJECT)

# MSA-3 is an ST; long exception text gets cut here
MAX_ACK_TEXT = 200


def parse_msh(hl7_text: str) -> Optional[MSH]:
    """
    Lenient MSH reader: returns the header of the first MSH segment, or None
    if missing/bad. Used to address replies to messages that failed to parse.
    """
    if not hl7_text or not isinstance(hl7_text, str):
        return None

    try:
        return parse_header(hl7_text)
    except ParseError:
        return None


def new_control_id() -> str:
    # MSH-10 is limited to 20 characters
    return uuid.uuid4().hex[:20].upper()


def _build_ack(original: Optional[MSH], ack_code: str, text: str = "") -> str:
    """
    Build MSH + MSA with hl7apy.
    Swaps sender/receiver, echoes processing id + control id. The reply
    always declares the standard delimiters in its own MSH-2.
    """
    if ack_code not in ACK_CODES:
        raise ValueError(f"Unknown acknowledgment code: {ack_code!r}")

    delims = DEFAULT_DELIMITERS
    version = (original.version if original else "") or FALLBACK_VERSION
    try:
        ack = Message("ACK", version=version, validation_level=VALIDATION_LEVEL.TOLERANT)
    except HL7apyException:
        version = FALLBACK_VERSION
        ack = Message("ACK", version=version, validation_level=VALIDATION_LEVEL.TOLERANT)

    def esc(value: str) -> str:
        return escape_component(value or "", delims)

    if original is not None:
        sending_app = original.receiving_application or RECEIVING_APPLICATION
        sending_fac = original.receiving_facility or RECEIVING_FACILITY
        receiving_app = original.sending_application
        receiving_fac = original.sending_facility
        trigger = original.trigger_event
        processing_id = original.processing_id or "P"
        control_id = original.message_control_id
    else:
        sending_app, sending_fac = RECEIVING_APPLICATION, RECEIVING_FACILITY
        receiving_app = receiving_fac = trigger = control_id = ""
        processing_id = "P"

    msh = ack.msh
    if sending_app:
        msh.msh_3 = esc(sending_app)
    if sending_fac:
        msh.msh_4 = esc(sending_fac)
    if receiving_app:
        msh.msh_5 = esc(receiving_app)
    if receiving_fac:
        msh.msh_6 = esc(receiving_fac)
    msh.msh_7 = format_hl7_datetime()
    msh.msh_9 = f"ACK{delims.component}{esc(trigger)}" if trigger else "ACK"
    msh.msh_10 = new_control_id()
    msh.msh_11 = esc(processing_id)
    msh.msh_12 = version

    msa = ack.msa
    msa.msa_1 = ack_code
    if control_id:
        msa.msa_2 = esc(control_id)
    if text:
        msa.msa_3 = esc(" ".join(text.split())[:MAX_ACK_TEXT])

    return ack.to_er7() + "\r"


def generate_ack(msg: ParsedMessage, ack_code: str, text: str = "") -> str:
    """
    Reply to a parsed message.
      AA: accepted (queued or processed)
      AE: processing failed after acceptance
      AR: rejected (validation failure), never queued
    """
    return _build_ack(msg.msh, ack_code, text)


def generate_reject_ack(raw: str, text: str = "") -> str:
    """
    AR for text that could not be parsed. Addresses the reply from whatever
    MSH fields are readable; a header-less reply is sent otherwise.
    """
    return _build_ack(parse_msh(raw), ACK_REJECT, text)
