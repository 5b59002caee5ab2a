"""Pydantic schemas for sequence enrollments."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from carepipeline.db.enums import CancelReason


class EnrollmentStart(BaseModel):
    subject_id: UUID
    start_step: int = Field(0, ge=0)
    actor: str = "system"


class EnrollmentStop(BaseModel):
    reason: CancelReason = CancelReason.MANUAL
    actor: str = "system"


class SequenceLogEntryRead(BaseModel):
    step_index: int
    action_type: str
    status: str
    scheduled_at: datetime
    executed_at: datetime | None = None
    error_message: str | None = None

    model_config = {"from_attributes": True}


class EnrollmentRead(BaseModel):
    id: UUID
    subject_id: UUID
    sequence_id: UUID
    sequence_name: str
    status: str
    current_step: int
    total_steps: int
    start_from_step: int
    started_at: datetime
    started_by: str
    cancel_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    steps: list[SequenceLogEntryRead] = Field(default_factory=list)


class DueStepsResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    completed_enrollments: int
