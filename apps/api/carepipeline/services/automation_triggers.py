"""Automation triggers - fan domain events out to rules and sequences.

Called from request paths after the primary change is committed. Work runs
on the task runner with its own session and a bounded wait: the request
returns once the work finishes or the bound elapses, whichever is first.
Delayed sequence steps are already durable as pending log rows by then.
"""

from __future__ import annotations

import logging
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from carepipeline.core import task_runner
from carepipeline.core.config import settings
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db import session as db_session
from carepipeline.db.enums import TriggerType
from carepipeline.db.models import Subject
from carepipeline.services import sequence_service
from carepipeline.services.automation_dispatcher import dispatcher
from carepipeline.services.phase_service import now_ms, resolver

logger = logging.getLogger(__name__)


def run_bounded(work: Callable[[Session], object], *, timeout: float | None = None) -> bool:
    """Run work(db) on the task runner. Returns True if it finished within the bound."""

    def job() -> None:
        with db_session.session_scope() as db:
            work(db)

    bound = settings.AUTOMATION_MAX_WAIT_SECONDS if timeout is None else timeout
    return task_runner.runner.run(job, timeout=bound)


def _load(db: Session, subject_id: UUID) -> Subject | None:
    subject = db.get(Subject, subject_id)
    if not subject:
        logger.warning(f"Subject {subject_id} not found for automation")
    return subject


# =============================================================================
# Event handlers (run inside the task runner)
# =============================================================================

def handle_subject_created(db: Session, subject_id: UUID) -> None:
    """new_subject rules, then sequences triggered by the subject's initial phase."""
    subject = _load(db, subject_id)
    if not subject:
        return
    dispatcher.dispatch(
        db, TriggerType.NEW_SUBJECT, subject, {}, event_id=f"new_subject:{subject_id}"
    )
    sequence_service.auto_enroll(db, subject, resolver.current_phase(subject))


def handle_phase_changed(
    db: Session,
    subject_id: UUID,
    from_phase: str | None,
    to_phase: str,
    changed_at_ms: int,
) -> None:
    subject = _load(db, subject_id)
    if not subject:
        return
    context = {"from_phase": from_phase, "to_phase": to_phase}
    dispatcher.dispatch(
        db,
        TriggerType.PHASE_CHANGE,
        subject,
        context,
        event_id=f"phase_change:{from_phase}:{to_phase}:{changed_at_ms}",
    )
    sequence_service.cancel_on_phase_change(db, subject, to_phase)
    sequence_service.auto_enroll(db, subject, to_phase)


def handle_task_completed(
    db: Session, subject_id: UUID, task_id: str, completed_at_ms: int
) -> None:
    subject = _load(db, subject_id)
    if not subject:
        return
    dispatcher.dispatch(
        db,
        TriggerType.TASK_COMPLETED,
        subject,
        {"task_id": task_id},
        event_id=f"task_completed:{task_id}:{completed_at_ms}",
    )


def handle_document_event(
    db: Session,
    subject_id: UUID,
    trigger_type: TriggerType,
    document_id: str,
    document_type: str | None,
    template_names: list[str],
) -> None:
    subject = _load(db, subject_id)
    if not subject:
        return
    context = {
        "document_id": document_id,
        "document_type": document_type,
        "template_names": template_names,
    }
    dispatcher.dispatch(
        db, trigger_type, subject, context, event_id=f"{trigger_type.value}:{document_id}"
    )


# =============================================================================
# Fire helpers (called from request paths)
# =============================================================================

def fire_subject_created(subject_id: UUID, *, timeout: float | None = None) -> bool:
    return run_bounded(lambda db: handle_subject_created(db, subject_id), timeout=timeout)


def fire_phase_changed(
    subject_id: UUID,
    from_phase: str | None,
    to_phase: str,
    changed_at_ms: int | None = None,
    *,
    timeout: float | None = None,
) -> bool:
    at_ms = changed_at_ms if changed_at_ms is not None else now_ms()
    logger.info(
        f"Phase change {from_phase} -> {to_phase}",
        extra=build_log_context(
            subject_id=str(subject_id), trigger_type=TriggerType.PHASE_CHANGE.value
        ),
    )
    return run_bounded(
        lambda db: handle_phase_changed(db, subject_id, from_phase, to_phase, at_ms),
        timeout=timeout,
    )


def fire_task_completed(
    subject_id: UUID,
    task_id: str,
    completed_at_ms: int | None = None,
    *,
    timeout: float | None = None,
) -> bool:
    at_ms = completed_at_ms if completed_at_ms is not None else now_ms()
    return run_bounded(
        lambda db: handle_task_completed(db, subject_id, task_id, at_ms), timeout=timeout
    )


def fire_document_event(
    subject_id: UUID,
    trigger_type: TriggerType,
    document_id: str,
    document_type: str | None = None,
    template_names: list[str] | None = None,
    *,
    timeout: float | None = None,
) -> bool:
    return run_bounded(
        lambda db: handle_document_event(
            db, subject_id, trigger_type, document_id, document_type, template_names or []
        ),
        timeout=timeout,
    )
