"""Note service - append-only notes log on subjects.

Appends are read-modify-write against the subject's version column. A
concurrent writer makes the commit fail with StaleDataError; the subject is
reloaded and the append retried so neither note is lost.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from carepipeline.core.config import settings
from carepipeline.core.errors import PersistenceError
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.models import Subject
from carepipeline.services.phase_service import now_ms

logger = logging.getLogger(__name__)


def build_note(
    *,
    text: str,
    type: str,
    author: str,
    direction: str | None = None,
    source: str | None = None,
    outcome: str | None = None,
    timestamp: int | None = None,
) -> dict:
    note = {
        "text": text,
        "type": type,
        "timestamp": timestamp if timestamp is not None else now_ms(),
        "author": author,
    }
    if direction:
        note["direction"] = direction
    if source:
        note["source"] = source
    if outcome:
        note["outcome"] = outcome
    return note


def append_note(db: Session, subject: Subject, note: dict) -> dict:
    """
    Append a note and commit.

    Commits any other pending changes in the session with it. Raises
    PersistenceError if the write cannot be completed.
    """
    max_attempts = max(1, settings.NOTE_APPEND_MAX_ATTEMPTS)
    for attempt in range(1, max_attempts + 1):
        subject.notes = [*(subject.notes or []), note]
        try:
            db.commit()
            return note
        except StaleDataError:
            db.rollback()
            db.refresh(subject)
            logger.warning(
                f"Note append lost a race, retrying (attempt {attempt}/{max_attempts})",
                extra=build_log_context(subject_id=str(subject.id)),
            )
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"Failed to append note: {exc.__class__.__name__}") from exc

    raise PersistenceError(f"Failed to append note after {max_attempts} attempts")
