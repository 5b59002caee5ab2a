"""Messaging router - bulk SMS and bulk email."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from carepipeline.core.deps import get_db
from carepipeline.core.errors import NotFoundError, ValidationError
from carepipeline.schemas.messaging import BulkEmailRequest, BulkSendResponse, BulkSmsRequest
from carepipeline.services import bulk_messaging_service

router = APIRouter()


@router.post("/bulk-sms", response_model=BulkSendResponse)
def send_bulk_sms(data: BulkSmsRequest, db: Session = Depends(get_db)):
    """Send one message, merge fields resolved per subject, to each selected subject."""
    try:
        summary = bulk_messaging_service.send_bulk_sms(
            db, data.subject_ids, data.message, data.current_user
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return summary.to_dict()


@router.post("/bulk-email", response_model=BulkSendResponse)
def send_bulk_email(data: BulkEmailRequest, db: Session = Depends(get_db)):
    try:
        summary = bulk_messaging_service.send_bulk_email(
            db, data.subject_ids, data.subject, data.body, data.current_user
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return summary.to_dict()
