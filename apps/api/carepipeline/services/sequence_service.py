"""Sequence engine - enrollment, step execution and cancellation.

Every step from the starting index gets a SequenceLogEntry when the
enrollment is created. Steps with no delay are executed right away; the
rest stay pending until process_due_steps picks them up. A log row is
claimed (pending -> executed) with a conditional update before its action
runs, so a step never fires twice even if two runners race.

"At most one active enrollment per (subject, sequence)" is enforced by a
partial unique index, not by locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carepipeline.core.errors import (
    DuplicateConflict,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.enums import (
    DEFAULT_ACTOR,
    CancelReason,
    EnrollmentStatus,
    NoteType,
    SequenceStepStatus,
)
from carepipeline.db.models import Sequence, SequenceEnrollment, SequenceLogEntry, Subject
from carepipeline.services import note_service, subject_service
from carepipeline.services.action_executor import (
    ActionExecutor,
    ActionResult,
    ActionSpec,
    executor as default_executor,
    normalize_action_type,
)

logger = logging.getLogger(__name__)

SYSTEM_AUTHOR = "System"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _delay_hours(step: dict) -> float:
    try:
        delay = float(step.get("delay_hours") or 0)
    except (TypeError, ValueError):
        delay = 0.0
    return max(delay, 0.0)


@dataclass
class DueStepSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    completed_enrollments: int = 0


# =============================================================================
# Reads
# =============================================================================

def get_sequence(db: Session, sequence_id: UUID) -> Sequence:
    sequence = db.get(Sequence, sequence_id)
    if not sequence:
        raise NotFoundError(f"Sequence {sequence_id} not found")
    return sequence


def get_enrollment(db: Session, enrollment_id: UUID) -> SequenceEnrollment:
    enrollment = db.get(SequenceEnrollment, enrollment_id)
    if not enrollment:
        raise NotFoundError(f"Enrollment {enrollment_id} not found")
    return enrollment


def get_active_enrollment(
    db: Session, subject_id: UUID, sequence_id: UUID
) -> SequenceEnrollment | None:
    return (
        db.query(SequenceEnrollment)
        .filter(
            SequenceEnrollment.subject_id == subject_id,
            SequenceEnrollment.sequence_id == sequence_id,
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .first()
    )


def list_enrollments(db: Session, subject_id: UUID) -> list[SequenceEnrollment]:
    return (
        db.query(SequenceEnrollment)
        .filter(SequenceEnrollment.subject_id == subject_id)
        .order_by(SequenceEnrollment.started_at.desc())
        .all()
    )


def list_log_entries(
    db: Session, sequence_id: UUID, subject_id: UUID
) -> list[SequenceLogEntry]:
    return (
        db.query(SequenceLogEntry)
        .filter(
            SequenceLogEntry.sequence_id == sequence_id,
            SequenceLogEntry.subject_id == subject_id,
        )
        .order_by(SequenceLogEntry.step_index)
        .all()
    )


def progress(enrollment: SequenceEnrollment) -> tuple[int, int]:
    """(current_step, total_steps). current_step only moves when a step executes."""
    total = len(enrollment.sequence.steps or []) if enrollment.sequence else 0
    return enrollment.current_step, total


# =============================================================================
# Start
# =============================================================================

def start_sequence(
    db: Session,
    subject_id: UUID,
    sequence_id: UUID,
    start_step: int = 0,
    actor: str = DEFAULT_ACTOR,
    *,
    executor: ActionExecutor | None = None,
) -> SequenceEnrollment:
    """
    Enroll a subject and run its immediate steps.

    Steps before start_step are never logged or executed.

    Raises:
        NotFoundError: unknown subject or sequence
        ValidationError: sequence has no steps or start_step is out of range
        DuplicateConflict: an active enrollment already exists for the pair
    """
    subject = subject_service.get_subject(db, subject_id)
    sequence = get_sequence(db, sequence_id)
    steps = sequence.steps or []
    if not steps:
        raise ValidationError(f"Sequence {sequence.name} has no steps")
    if start_step < 0 or start_step >= len(steps):
        raise ValidationError(f"start_step must be between 0 and {len(steps) - 1}")

    if get_active_enrollment(db, subject.id, sequence.id):
        raise DuplicateConflict(f"Subject is already enrolled in sequence {sequence.name}")

    now = _now()
    enrollment = SequenceEnrollment(
        subject_id=subject.id,
        sequence_id=sequence.id,
        status=EnrollmentStatus.ACTIVE.value,
        current_step=start_step,
        start_from_step=start_step,
        started_at=now,
        started_by=actor,
    )
    db.add(enrollment)
    try:
        db.flush()
        for index in range(start_step, len(steps)):
            step = steps[index]
            db.add(
                SequenceLogEntry(
                    enrollment_id=enrollment.id,
                    sequence_id=sequence.id,
                    subject_id=subject.id,
                    step_index=index,
                    action_type=normalize_action_type(step.get("action_type")),
                    status=SequenceStepStatus.PENDING.value,
                    scheduled_at=now + timedelta(hours=_delay_hours(step)),
                )
            )
        db.commit()
    except IntegrityError:
        # Lost the race against a concurrent start for the same pair
        db.rollback()
        raise DuplicateConflict(f"Subject is already enrolled in sequence {sequence.name}")

    logger.info(
        f"Enrollment started at step {start_step}",
        extra=build_log_context(
            subject_id=str(subject.id),
            sequence_id=str(sequence.id),
            enrollment_id=str(enrollment.id),
        ),
    )

    _run_due_for_enrollment(db, enrollment, now, executor or default_executor)
    db.refresh(enrollment)
    return enrollment


# =============================================================================
# Step execution
# =============================================================================

def _run_due_for_enrollment(
    db: Session,
    enrollment: SequenceEnrollment,
    now: datetime,
    executor: ActionExecutor,
) -> list[ActionResult]:
    entries = (
        db.query(SequenceLogEntry)
        .filter(
            SequenceLogEntry.enrollment_id == enrollment.id,
            SequenceLogEntry.status == SequenceStepStatus.PENDING.value,
            SequenceLogEntry.scheduled_at <= now,
        )
        .order_by(SequenceLogEntry.step_index)
        .all()
    )
    results = []
    for entry in entries:
        result = _execute_entry(db, enrollment, entry, now, executor)
        if result is not None:
            results.append(result)
    _complete_if_done(db, enrollment, now)
    return results


def _execute_entry(
    db: Session,
    enrollment: SequenceEnrollment,
    entry: SequenceLogEntry,
    now: datetime,
    executor: ActionExecutor,
) -> ActionResult | None:
    """Claim one pending step and run it. None if someone else got there first."""
    entry_id = entry.id
    step_index = entry.step_index
    log_context = build_log_context(
        subject_id=str(enrollment.subject_id),
        sequence_id=str(enrollment.sequence_id),
        enrollment_id=str(enrollment.id),
    )

    claimed = db.execute(
        update(SequenceLogEntry)
        .where(
            SequenceLogEntry.id == entry_id,
            SequenceLogEntry.status == SequenceStepStatus.PENDING.value,
        )
        .values(status=SequenceStepStatus.EXECUTED.value, executed_at=now)
    ).rowcount
    db.commit()
    if not claimed:
        return None

    sequence = enrollment.sequence
    subject = enrollment.subject
    steps = sequence.steps or []

    if step_index >= len(steps):
        result = ActionResult(
            action_type=entry.action_type,
            success=False,
            error="Step no longer exists in sequence",
            subject_id=str(subject.id),
        )
    else:
        spec = ActionSpec.from_step(sequence, step_index, steps[step_index])
        try:
            result = executor.execute(db, spec, subject)
        except Exception as e:
            logger.exception(f"Sequence step {step_index} failed", extra=log_context)
            db.rollback()
            result = ActionResult(
                action_type=spec.action_type,
                success=False,
                error=f"{e.__class__.__name__}: {e}",
                subject_id=str(subject.id),
            )

    if not result.success:
        logger.warning(f"Sequence step {step_index} did not succeed: {result.error}", extra=log_context)
        db.execute(
            update(SequenceLogEntry)
            .where(SequenceLogEntry.id == entry_id)
            .values(error_message=result.error)
        )

    db.execute(
        update(SequenceEnrollment)
        .where(
            SequenceEnrollment.id == enrollment.id,
            SequenceEnrollment.current_step < step_index + 1,
        )
        .values(current_step=step_index + 1, last_step_executed_at=now)
    )
    db.commit()
    db.refresh(enrollment)
    return result


def _complete_if_done(db: Session, enrollment: SequenceEnrollment, now: datetime) -> bool:
    remaining = (
        db.query(SequenceLogEntry.id)
        .filter(
            SequenceLogEntry.enrollment_id == enrollment.id,
            SequenceLogEntry.status == SequenceStepStatus.PENDING.value,
        )
        .first()
    )
    if remaining:
        return False

    completed = db.execute(
        update(SequenceEnrollment)
        .where(
            SequenceEnrollment.id == enrollment.id,
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .values(status=EnrollmentStatus.COMPLETED.value, completed_at=now)
    ).rowcount
    db.commit()
    if completed:
        logger.info(
            "Enrollment completed",
            extra=build_log_context(
                sequence_id=str(enrollment.sequence_id), enrollment_id=str(enrollment.id)
            ),
        )
    return bool(completed)


def process_due_steps(
    db: Session,
    now: datetime | None = None,
    *,
    limit: int = 100,
    executor: ActionExecutor | None = None,
) -> DueStepSummary:
    """Execute pending steps whose scheduled_at has passed, for active enrollments."""
    now = now or _now()
    executor = executor or default_executor
    summary = DueStepSummary()

    entries = (
        db.query(SequenceLogEntry)
        .join(SequenceEnrollment, SequenceLogEntry.enrollment_id == SequenceEnrollment.id)
        .filter(
            SequenceLogEntry.status == SequenceStepStatus.PENDING.value,
            SequenceLogEntry.scheduled_at <= now,
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .order_by(SequenceLogEntry.scheduled_at, SequenceLogEntry.step_index)
        .limit(limit)
        .all()
    )

    touched: dict[UUID, SequenceEnrollment] = {}
    for entry in entries:
        enrollment = entry.enrollment
        result = _execute_entry(db, enrollment, entry, now, executor)
        if result is None:
            continue
        summary.processed += 1
        if result.success:
            summary.succeeded += 1
        else:
            summary.failed += 1
        touched[enrollment.id] = enrollment

    for enrollment in touched.values():
        if _complete_if_done(db, enrollment, now):
            summary.completed_enrollments += 1

    return summary


# =============================================================================
# Stop / cancel
# =============================================================================

def _cancel_note_text(sequence: Sequence, reason: CancelReason, actor: str) -> str:
    if reason == CancelReason.MANUAL:
        return f'Sequence "{sequence.name}" manually cancelled by {actor}.'
    if reason == CancelReason.RESPONSE_DETECTED:
        return f'Sequence "{sequence.name}" auto-cancelled: response received.'
    return f'Sequence "{sequence.name}" auto-cancelled: phase changed.'


def stop_sequence(
    db: Session,
    enrollment_id: UUID,
    reason: CancelReason = CancelReason.MANUAL,
    actor: str = DEFAULT_ACTOR,
) -> SequenceEnrollment:
    """
    Cancel an active enrollment and its pending steps.

    Executed steps are left as they are. One audit note names the sequence.

    Raises:
        NotFoundError: unknown enrollment
        InvalidStateError: enrollment is already completed or cancelled
    """
    enrollment = get_enrollment(db, enrollment_id)
    now = _now()

    cancelled = db.execute(
        update(SequenceEnrollment)
        .where(
            SequenceEnrollment.id == enrollment.id,
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .values(
            status=EnrollmentStatus.CANCELLED.value,
            cancel_reason=reason.value,
            cancelled_by=actor,
            cancelled_at=now,
        )
    ).rowcount
    if not cancelled:
        db.rollback()
        raise InvalidStateError(f"Enrollment {enrollment_id} is not active")

    db.execute(
        update(SequenceLogEntry)
        .where(
            SequenceLogEntry.sequence_id == enrollment.sequence_id,
            SequenceLogEntry.subject_id == enrollment.subject_id,
            SequenceLogEntry.status == SequenceStepStatus.PENDING.value,
        )
        .values(status=SequenceStepStatus.CANCELLED.value)
    )
    db.commit()
    db.refresh(enrollment)

    log_context = build_log_context(
        subject_id=str(enrollment.subject_id),
        sequence_id=str(enrollment.sequence_id),
        enrollment_id=str(enrollment.id),
    )
    logger.info(f"Enrollment cancelled ({reason.value})", extra=log_context)

    note = note_service.build_note(
        text=_cancel_note_text(enrollment.sequence, reason, actor),
        type=NoteType.AUTO.value,
        author=SYSTEM_AUTHOR,
    )
    try:
        note_service.append_note(db, enrollment.subject, note)
    except PersistenceError:
        logger.exception("Enrollment cancelled but audit note was not written", extra=log_context)

    return enrollment


def _active_enrollments(db: Session, subject: Subject) -> list[SequenceEnrollment]:
    return (
        db.query(SequenceEnrollment)
        .filter(
            SequenceEnrollment.subject_id == subject.id,
            SequenceEnrollment.status == EnrollmentStatus.ACTIVE.value,
        )
        .all()
    )


def _cancel_all(
    db: Session, enrollments: list[SequenceEnrollment], reason: CancelReason
) -> list[SequenceEnrollment]:
    cancelled = []
    for enrollment in enrollments:
        try:
            cancelled.append(stop_sequence(db, enrollment.id, reason, DEFAULT_ACTOR))
        except InvalidStateError:
            # Finished or stopped concurrently
            continue
    return cancelled


def cancel_on_response(db: Session, subject: Subject) -> list[SequenceEnrollment]:
    """Cancel active enrollments in stop_on_response sequences after an inbound message."""
    enrollments = [
        e for e in _active_enrollments(db, subject) if e.sequence and e.sequence.stop_on_response
    ]
    return _cancel_all(db, enrollments, CancelReason.RESPONSE_DETECTED)


def cancel_on_phase_change(
    db: Session, subject: Subject, new_phase: str
) -> list[SequenceEnrollment]:
    """Cancel active enrollments whose sequence is bound to a different phase."""
    enrollments = [
        e
        for e in _active_enrollments(db, subject)
        if e.sequence and e.sequence.trigger_phase and e.sequence.trigger_phase != new_phase
    ]
    return _cancel_all(db, enrollments, CancelReason.PHASE_CHANGED)


def auto_enroll(
    db: Session,
    subject: Subject,
    phase: str,
    actor: str = DEFAULT_ACTOR,
    *,
    executor: ActionExecutor | None = None,
) -> list[SequenceEnrollment]:
    """Enroll a subject in every enabled sequence triggered by phase."""
    sequences = (
        db.query(Sequence)
        .filter(
            Sequence.trigger_phase == phase,
            Sequence.enabled.is_(True),
            or_(Sequence.entity_type.is_(None), Sequence.entity_type == subject.entity_type),
        )
        .order_by(Sequence.created_at, Sequence.name)
        .all()
    )

    enrollments = []
    for sequence in sequences:
        if not sequence.steps:
            continue
        try:
            enrollments.append(
                start_sequence(db, subject.id, sequence.id, 0, actor, executor=executor)
            )
        except DuplicateConflict:
            logger.info(
                "Subject already active in sequence, skipping auto-enroll",
                extra=build_log_context(subject_id=str(subject.id), sequence_id=str(sequence.id)),
            )
    return enrollments
