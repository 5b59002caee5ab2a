"""Sequences router - start and stop enrollments."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from carepipeline.core.deps import get_db
from carepipeline.core.errors import (
    DuplicateConflict,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from carepipeline.routers.sequences_shared import _enrollment_to_read
from carepipeline.schemas.sequence import EnrollmentRead, EnrollmentStart, EnrollmentStop
from carepipeline.services import sequence_service, subject_service

router = APIRouter(tags=["sequences"])
logger = logging.getLogger(__name__)


@router.post("/sequences/{sequence_id}/enrollments", response_model=EnrollmentRead, status_code=201)
def start_enrollment(
    sequence_id: UUID,
    data: EnrollmentStart,
    db: Session = Depends(get_db),
):
    """
    Enroll a subject in a sequence.

    Steps with no delay run before the response; later steps are scheduled
    and picked up by the due-step runner.
    """
    try:
        subject_service.get_subject(db, data.subject_id)
        enrollment = sequence_service.start_sequence(
            db, data.subject_id, sequence_id, data.start_step, data.actor
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DuplicateConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _enrollment_to_read(enrollment)


@router.post("/enrollments/{enrollment_id}/stop", response_model=EnrollmentRead)
def stop_enrollment(
    enrollment_id: UUID,
    data: EnrollmentStop | None = None,
    db: Session = Depends(get_db),
):
    """Cancel an active enrollment. Executed steps stay executed."""
    data = data or EnrollmentStop()
    try:
        enrollment = sequence_service.stop_sequence(db, enrollment_id, data.reason, data.actor)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _enrollment_to_read(enrollment)
