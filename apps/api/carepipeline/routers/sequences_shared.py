"""Shared helpers for sequence and subject routers."""

from carepipeline.db.models import SequenceEnrollment
from carepipeline.schemas.sequence import EnrollmentRead, SequenceLogEntryRead
from carepipeline.services import sequence_service


def _enrollment_to_read(enrollment: SequenceEnrollment) -> EnrollmentRead:
    """Convert an enrollment to EnrollmentRead with progress and step rows."""
    current_step, total = sequence_service.progress(enrollment)
    return EnrollmentRead(
        id=enrollment.id,
        subject_id=enrollment.subject_id,
        sequence_id=enrollment.sequence_id,
        sequence_name=enrollment.sequence.name if enrollment.sequence else "",
        status=enrollment.status,
        current_step=current_step,
        total_steps=total,
        start_from_step=enrollment.start_from_step,
        started_at=enrollment.started_at,
        started_by=enrollment.started_by,
        cancel_reason=enrollment.cancel_reason,
        cancelled_by=enrollment.cancelled_by,
        cancelled_at=enrollment.cancelled_at,
        completed_at=enrollment.completed_at,
        steps=[SequenceLogEntryRead.model_validate(e) for e in enrollment.log_entries],
    )
