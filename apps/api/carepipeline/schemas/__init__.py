"""Pydantic schemas for API request/response models."""

from carepipeline.schemas.messaging import (
    BulkEmailRequest,
    BulkSendItem,
    BulkSendResponse,
    BulkSmsRequest,
)
from carepipeline.schemas.sequence import (
    DueStepsResponse,
    EnrollmentRead,
    EnrollmentStart,
    EnrollmentStop,
    SequenceLogEntryRead,
)
from carepipeline.schemas.subject import (
    DocumentEventRequest,
    PhaseChangeRequest,
    SubjectEventResponse,
    TaskCompletionRequest,
    TimelineItem,
    TimelineResponse,
)

__all__ = [
    # Messaging
    "BulkEmailRequest",
    "BulkSendItem",
    "BulkSendResponse",
    "BulkSmsRequest",
    # Sequences
    "DueStepsResponse",
    "EnrollmentRead",
    "EnrollmentStart",
    "EnrollmentStop",
    "SequenceLogEntryRead",
    # Subjects
    "DocumentEventRequest",
    "PhaseChangeRequest",
    "SubjectEventResponse",
    "TaskCompletionRequest",
    "TimelineItem",
    "TimelineResponse",
]
