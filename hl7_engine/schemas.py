# hl7_engine/schemas.py

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ProcessResult(BaseModel):
    success: bool
    resource_id: Optional[str] = None
    error: Optional[str] = None
    ack_message: str


class QueuedResponse(BaseModel):
    success: bool = True
    status: str = "queued"
    message_id: str
    message_type: str
    control_id: str
    ack: str


class ProcessedResponse(BaseModel):
    success: bool
    status: str
    message_id: Optional[str] = None
    message_type: str
    control_id: str
    resource_id: Optional[str] = None
    error: Optional[str] = None
    ack: str


class RejectedResponse(BaseModel):
    success: bool = False
    status: str = "rejected"
    error: str
    validation_errors: List[str] = Field(default_factory=list)
    ack: str


class QueueEntryOut(BaseModel):
    id: str
    tenant_id: str
    message_type: Optional[str] = None
    control_id: Optional[str] = None
    sending_application: Optional[str] = None
    sending_facility: Optional[str] = None
    status: str
    attempts: int
    last_error: Optional[str] = None
    resource_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None


class QueueListResult(BaseModel):
    total: int
    limit: int
    offset: int
    messages: List[QueueEntryOut]


class QueueStatistics(BaseModel):
    pending: int = 0
    processing: int = 0
    processed: int = 0
    failed: int = 0
    total: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "processed": self.processed,
            "failed": self.failed,
            "total": self.total,
        }
