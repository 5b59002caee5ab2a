"""SQLAlchemy ORM models for subjects, automation rules and sequences."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carepipeline.db.base import Base
from carepipeline.db.enums import EnrollmentStatus, SequenceStepStatus


# =============================================================================
# Subjects
# =============================================================================

class Subject(Base):
    """
    A caregiver or client moving through the pipeline.

    Notes are an append-only JSON log. Writers go through note_service so
    the optimistic version column guards read-modify-write.
    """

    __tablename__ = "subjects"
    __table_args__ = (
        Index("idx_subjects_entity_archived", "entity_type", "archived"),
        Index("idx_subjects_email", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Contact
    first_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    phone: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    # Pipeline state
    phase_override: Mapped[str | None] = mapped_column(String(50), nullable=True)
    phase_timestamps: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    tasks: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    notes: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Entity-specific profile fields (care recipient, address, referral source...)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    enrollments: Mapped[list["SequenceEnrollment"]] = relationship(
        back_populates="subject", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()


# =============================================================================
# Automation Rules
# =============================================================================

class AutomationRule(Base):
    """
    Declarative trigger + condition + action definition.

    Conditions are a flat mapping (phase, to_phase, task_id, document_type,
    template_name, keyword), AND-combined. An empty mapping always matches.
    """

    __tablename__ = "automation_rules"
    __table_args__ = (Index("idx_rules_trigger_enabled", "trigger_type", "enabled"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    conditions: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message_template: Mapped[str] = mapped_column(Text, default="", nullable=False)
    action_config: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class AutomationExecution(Base):
    """
    Audit log of rule firings.

    dedupe_key (rule:subject:event) is unique, so a redelivered event can
    never fire the same rule twice for the same subject.
    """

    __tablename__ = "automation_executions"
    __table_args__ = (
        Index("idx_exec_rule", "rule_id", "executed_at"),
        Index("idx_exec_subject", "subject_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(400), unique=True, nullable=True)
    trigger_context: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


# =============================================================================
# Sequences
# =============================================================================

class Sequence(Base):
    """
    Multi-step, time-delayed campaign.

    steps: [{"action_type", "delay_hours", "template", "subject"?}, ...]
    trigger_phase: phase that auto-enrolls subjects (NULL = manual only)
    """

    __tablename__ = "sequences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    steps: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    trigger_phase: Mapped[str | None] = mapped_column(String(50), nullable=True)
    stop_on_response: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    enrollments: Mapped[list["SequenceEnrollment"]] = relationship(
        back_populates="sequence", cascade="all, delete-orphan"
    )


class SequenceEnrollment(Base):
    """
    A subject's run through one sequence.

    The partial unique index is the "at most one active enrollment per
    (subject, sequence)" invariant; inserts that would break it fail with
    IntegrityError.
    """

    __tablename__ = "sequence_enrollments"
    __table_args__ = (
        Index(
            "uq_enrollment_active",
            "subject_id",
            "sequence_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_enrollment_subject", "subject_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=EnrollmentStatus.ACTIVE.value, nullable=False
    )
    current_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    start_from_step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    started_by: Mapped[str] = mapped_column(String(255), default="system", nullable=False)

    cancel_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_step_executed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    subject: Mapped["Subject"] = relationship(back_populates="enrollments")
    sequence: Mapped["Sequence"] = relationship(back_populates="enrollments")
    log_entries: Mapped[list["SequenceLogEntry"]] = relationship(
        back_populates="enrollment",
        cascade="all, delete-orphan",
        order_by="SequenceLogEntry.step_index",
    )


class SequenceLogEntry(Base):
    """One scheduled step of an enrollment: pending, executed or cancelled."""

    __tablename__ = "sequence_log"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "step_index", name="uq_sequence_log_step"),
        Index("idx_sequence_log_pair", "sequence_id", "subject_id", "status"),
        Index("idx_sequence_log_due", "status", "scheduled_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("sequence_enrollments.id", ondelete="CASCADE"), nullable=False
    )
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("sequences.id", ondelete="CASCADE"), nullable=False
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subjects.id", ondelete="CASCADE"), nullable=False
    )
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=SequenceStepStatus.PENDING.value, nullable=False
    )
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    executed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    enrollment: Mapped["SequenceEnrollment"] = relationship(back_populates="log_entries")


# =============================================================================
# Webhook Fences
# =============================================================================

class InboundMessageLog(Base):
    """One row per external message id; the idempotency fence for inbound SMS."""

    __tablename__ = "inbound_message_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    external_message_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    from_phone: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    to_phone: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    message_text: Mapped[str] = mapped_column(Text, default="", nullable=False)
    matched_entity_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    matched_subject_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("subjects.id", ondelete="SET NULL"), nullable=True
    )
    automation_fired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    received_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


class IntakeApiKey(Base):
    """API key accepted by the form intake webhook, labelled with its source."""

    __tablename__ = "intake_api_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    source: Mapped[str] = mapped_column(String(100), default="webhook", nullable=False)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(20), default="client", nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
