"""Enum definitions for application constants."""

from enum import Enum


class EntityType(str, Enum):
    """Kinds of subject the pipeline tracks."""
    CAREGIVER = "caregiver"
    CLIENT = "client"


class TriggerType(str, Enum):
    """Events that can fire automation rules."""
    NEW_SUBJECT = "new_subject"
    TASK_COMPLETED = "task_completed"
    PHASE_CHANGE = "phase_change"
    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_SIGNED = "document_signed"
    INBOUND_SMS = "inbound_sms"


class ActionType(str, Enum):
    """Actions a rule or sequence step can perform."""
    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    CREATE_TASK = "create_task"


# Short forms accepted in sequence step definitions
ACTION_TYPE_ALIASES = {
    "sms": ActionType.SEND_SMS.value,
    "email": ActionType.SEND_EMAIL.value,
    "task": ActionType.CREATE_TASK.value,
}


class ExecutionStatus(str, Enum):
    """Outcome of one rule firing against one subject."""
    PENDING = "pending"  # claimed, action in flight
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # action had nothing to act on (no phone, no email)


class EnrollmentStatus(str, Enum):
    """Lifecycle of a subject's run through a sequence."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CancelReason(str, Enum):
    """Why an enrollment was cancelled."""
    MANUAL = "manual"
    RESPONSE_DETECTED = "response_detected"
    PHASE_CHANGED = "phase_changed"


class SequenceStepStatus(str, Enum):
    """Status of one scheduled sequence step."""
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


class NoteType(str, Enum):
    """Kinds of entries in a subject's notes log."""
    NOTE = "note"
    CALL = "call"
    TEXT = "text"
    EMAIL = "email"
    TASK = "task"
    AUTO = "auto"


# Note types that belong on the communication timeline
COMMUNICATION_NOTE_TYPES = {
    NoteType.CALL.value,
    NoteType.TEXT.value,
    NoteType.EMAIL.value,
    "sms",
    "meeting",
}


class NoteDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class NoteSource(str, Enum):
    """Where a note or timeline item came from."""
    LOCAL = "local"
    PROVIDER = "provider"


DEFAULT_ACTOR = "system"
AUTOMATION_AUTHOR = "Automation"
