"""Subjects router - domain events, communication timeline and enrollments."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from carepipeline.core.deps import get_db
from carepipeline.core.errors import DeliveryError, NotFoundError
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.models import Subject
from carepipeline.routers.sequences_shared import _enrollment_to_read
from carepipeline.schemas.sequence import EnrollmentRead
from carepipeline.schemas.subject import (
    DocumentEventRequest,
    PhaseChangeRequest,
    SubjectEventResponse,
    TaskCompletionRequest,
    TimelineItem,
    TimelineResponse,
)
from carepipeline.services import (
    automation_triggers,
    messaging_provider,
    phase_service,
    sequence_service,
    subject_service,
    timeline_service,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _get_subject_or_404(db: Session, subject_id: UUID) -> Subject:
    try:
        return subject_service.get_subject(db, subject_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Subject not found")


def _commit_or_409(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Subject was modified concurrently, retry")


# =============================================================================
# Domain events
# =============================================================================

@router.post("/{subject_id}/phase", response_model=SubjectEventResponse)
def change_phase(
    subject_id: UUID,
    data: PhaseChangeRequest,
    db: Session = Depends(get_db),
):
    """Move a subject to a new phase and fan the change out to automation."""
    subject = _get_subject_or_404(db, subject_id)
    if not phase_service.is_valid_phase(subject.entity_type, data.phase):
        raise HTTPException(
            status_code=400, detail=f"Invalid phase for {subject.entity_type}: {data.phase}"
        )

    at_ms = phase_service.now_ms()
    previous = phase_service.set_phase(subject, data.phase, at_ms=at_ms)
    _commit_or_409(db)

    if previous == data.phase:
        return SubjectEventResponse(subject_id=subject.id, phase=data.phase, fired=False)

    completed = automation_triggers.fire_phase_changed(subject.id, previous, data.phase, at_ms)
    return SubjectEventResponse(
        subject_id=subject.id, phase=data.phase, fired=True, automation_completed=completed
    )


@router.post("/{subject_id}/tasks/{task_id}", response_model=SubjectEventResponse)
def update_task(
    subject_id: UUID,
    task_id: str,
    data: TaskCompletionRequest,
    db: Session = Depends(get_db),
):
    """Set a task's completion state. Completing an open task fires task_completed rules."""
    subject = _get_subject_or_404(db, subject_id)
    at_ms = phase_service.now_ms()
    newly_completed = subject_service.set_task_completion(
        subject, task_id, data.completed, data.actor, at_ms
    )
    _commit_or_409(db)

    phase = phase_service.resolver.current_phase(subject)
    if not newly_completed:
        return SubjectEventResponse(subject_id=subject.id, phase=phase, fired=False)

    completed = automation_triggers.fire_task_completed(subject.id, task_id, at_ms)
    return SubjectEventResponse(
        subject_id=subject.id, phase=phase, fired=True, automation_completed=completed
    )


@router.post("/{subject_id}/documents", response_model=SubjectEventResponse)
def document_event(
    subject_id: UUID,
    data: DocumentEventRequest,
    db: Session = Depends(get_db),
):
    """A document was uploaded or signed (e-signature envelope completed)."""
    subject = _get_subject_or_404(db, subject_id)
    completed = automation_triggers.fire_document_event(
        subject.id, data.event, data.document_id, data.document_type, data.template_names
    )
    return SubjectEventResponse(
        subject_id=subject.id,
        phase=phase_service.resolver.current_phase(subject),
        fired=True,
        automation_completed=completed,
    )


# =============================================================================
# Reads
# =============================================================================

@router.get("/{subject_id}/timeline", response_model=TimelineResponse)
def get_timeline(
    subject_id: UUID,
    days_back: int = 30,
    db: Session = Depends(get_db),
):
    """
    Communication notes merged with provider message history.

    Provider failure degrades to local notes only, with provider_error set.
    """
    subject = _get_subject_or_404(db, subject_id)

    provider_events = []
    provider_error = None
    if subject.phone:
        try:
            provider_events = messaging_provider.provider.fetch_history(subject.phone, days_back)
        except DeliveryError as e:
            provider_error = str(e)
            logger.warning(
                f"Provider history unavailable: {e}",
                extra=build_log_context(subject_id=str(subject.id)),
            )

    events = timeline_service.build_timeline(subject.notes, provider_events)
    return TimelineResponse(
        subject_id=subject.id,
        items=[TimelineItem(**event.to_dict()) for event in events],
        provider_error=provider_error,
    )


@router.get("/{subject_id}/enrollments", response_model=list[EnrollmentRead])
def list_enrollments(subject_id: UUID, db: Session = Depends(get_db)):
    _get_subject_or_404(db, subject_id)
    return [_enrollment_to_read(e) for e in sequence_service.list_enrollments(db, subject_id)]
