"""Pydantic schemas for subject events and the communication timeline."""

from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from carepipeline.db.enums import TriggerType


class PhaseChangeRequest(BaseModel):
    phase: str = Field(..., min_length=1, max_length=50)
    actor: str = "system"


class TaskCompletionRequest(BaseModel):
    completed: bool = True
    actor: str = "system"


class DocumentEventRequest(BaseModel):
    """A document was uploaded or signed for the subject."""

    document_id: str = Field(..., min_length=1, max_length=255)
    event: TriggerType = TriggerType.DOCUMENT_UPLOADED
    document_type: str | None = None
    template_names: list[str] = Field(default_factory=list)

    @field_validator("event")
    @classmethod
    def validate_event(cls, v: TriggerType) -> TriggerType:
        if v not in (TriggerType.DOCUMENT_UPLOADED, TriggerType.DOCUMENT_SIGNED):
            raise ValueError("event must be document_uploaded or document_signed")
        return v


class SubjectEventResponse(BaseModel):
    """automation_completed is None when no event fired."""

    subject_id: UUID
    phase: str
    fired: bool
    automation_completed: bool | None = None


class TimelineItem(BaseModel):
    source: str
    type: str
    direction: str | None = None
    timestamp: int
    text: str = ""
    outcome: str | None = None
    has_recording: bool = False
    author: str | None = None


class TimelineResponse(BaseModel):
    subject_id: UUID
    items: list[TimelineItem]
    provider_error: str | None = None
