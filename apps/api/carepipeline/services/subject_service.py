"""Subject lookups shared by the webhooks and the engine."""

from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from carepipeline.core.errors import NotFoundError
from carepipeline.db.models import Subject
from carepipeline.utils.normalization import normalize_email, phones_match


def get_subject(db: Session, subject_id: UUID) -> Subject:
    subject = db.get(Subject, subject_id)
    if not subject:
        raise NotFoundError(f"Subject {subject_id} not found")
    return subject


def list_active(db: Session, entity_type: str | None = None) -> list[Subject]:
    query = db.query(Subject).filter(Subject.archived.is_(False))
    if entity_type:
        query = query.filter(Subject.entity_type == entity_type)
    return query.order_by(Subject.entity_type, Subject.created_at).all()


def match_by_phone(db: Session, phone: str | None, entity_type: str | None = None) -> list[Subject]:
    """
    Non-archived subjects whose phone matches on the last 10 digits.

    Caregivers come before clients so the primary match is stable.
    """
    if not phone:
        return []
    return [s for s in list_active(db, entity_type) if s.phone and phones_match(s.phone, phone)]


def find_by_email(db: Session, email: str | None, entity_type: str | None = None) -> Subject | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    query = db.query(Subject).filter(
        Subject.archived.is_(False),
        func.lower(func.trim(Subject.email)) == normalized,
    )
    if entity_type:
        query = query.filter(Subject.entity_type == entity_type)
    return query.order_by(Subject.created_at).first()


def set_task_completion(
    subject: Subject, task_id: str, completed: bool, actor: str, at_ms: int
) -> bool:
    """
    Record a task's completion state. Returns True when the task went from
    not completed to completed, the only transition that fires automation.
    """
    tasks = dict(subject.tasks or {})
    previous = tasks.get(task_id) or {}
    was_completed = bool(previous.get("completed")) if isinstance(previous, dict) else bool(previous)

    if completed:
        tasks[task_id] = {"completed": True, "completed_at": at_ms, "completed_by": actor}
    else:
        tasks[task_id] = {"completed": False}
    subject.tasks = tasks
    return completed and not was_completed
