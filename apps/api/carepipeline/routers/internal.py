"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (Render/Railway/GH Actions).
"""
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from carepipeline.core.config import settings
from carepipeline.core.deps import get_db
from carepipeline.schemas.sequence import DueStepsResponse
from carepipeline.services import sequence_service

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])
logger = logging.getLogger(__name__)


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    if not settings.INTERNAL_SECRET:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != settings.INTERNAL_SECRET:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


@router.post("/sequence-steps", response_model=DueStepsResponse)
def run_due_sequence_steps(
    limit: int = 100,
    x_internal_secret: str = Header(...),
    db: Session = Depends(get_db),
):
    """
    Execute sequence steps whose scheduled time has passed.

    Safe to call concurrently: each step is claimed before it runs.
    """
    verify_internal_secret(x_internal_secret)

    summary = sequence_service.process_due_steps(db, limit=limit)

    logger.info(
        f"Due sequence steps: {summary.processed} processed, {summary.failed} failed, "
        f"{summary.completed_enrollments} enrollments completed"
    )
    return asdict(summary)
