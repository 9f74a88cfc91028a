# hl7_engine/config.py

from __future__ import annotations

import logging
import os
from typing import Optional

DATABASE_URL = os.getenv("HL7_DATABASE_URL", "sqlite:///hl7_engine.db")

# Tenant used by the tenant-less legacy intake path. Unset means the legacy
# path rejects every message instead of guessing a tenant.
LEGACY_TENANT_ID: Optional[str] = os.getenv("HL7_LEGACY_TENANT_ID") or None

# Identity this engine reports in MSH-3/MSH-4 of ACKs when the inbound
# message left MSH-5/MSH-6 blank.
RECEIVING_APPLICATION = os.getenv("HL7_RECEIVING_APPLICATION", "HL7ENGINE")
RECEIVING_FACILITY = os.getenv("HL7_RECEIVING_FACILITY", "")

LOG_LEVEL = os.getenv("HL7_LOG_LEVEL", "INFO")

# Queue entries in `processed` older than this are eligible for pruning.
QUEUE_RETENTION_DAYS = int(os.getenv("HL7_QUEUE_RETENTION_DAYS", "30"))

# Entries stuck in `processing` longer than this are treated as abandoned by
# a crashed worker and handed back to `pending`.
STALE_PROCESSING_MINUTES = int(os.getenv("HL7_STALE_PROCESSING_MINUTES", "15"))


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for CLI / service entry points."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
