"""Webhooks router - inbound SMS notifications and intake form submissions."""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from carepipeline.core.deps import get_db
from carepipeline.core.errors import AuthError, ValidationError
from carepipeline.core.rate_limit import WEBHOOK_LIMIT, limiter
from carepipeline.services import inbound_message_service, intake_service

router = APIRouter()
logger = logging.getLogger(__name__)


def _skipped(reason: str) -> dict:
    return {"skipped": True, "reason": reason}


# =============================================================================
# Inbound SMS (RingCentral)
# =============================================================================

@router.post("/inbound-sms")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_inbound_sms(request: Request, db: Session = Depends(get_db)):
    """
    RingCentral instant-message notification.

    Subscription setup sends a Validation-Token header that must be echoed
    back. Only inbound messages are routed; redeliveries of the same message
    id are acknowledged without further effect.
    """
    validation_token = request.headers.get("Validation-Token")
    if validation_token:
        return Response(status_code=200, headers={"Validation-Token": validation_token})

    try:
        data = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})
    if not isinstance(data, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    # Notifications wrap the message in "body"; accept the bare message too
    message = data.get("body") if isinstance(data.get("body"), dict) else data
    direction = str(message.get("direction") or "").lower()
    if direction != "inbound":
        return _skipped("Not an inbound message")

    external_id = str(message.get("id") or "")
    sender = message.get("from") if isinstance(message.get("from"), dict) else {}
    sender_phone = str(sender.get("phoneNumber") or "")
    recipients = message.get("to") if isinstance(message.get("to"), list) else []
    recipient_phone = ""
    if recipients and isinstance(recipients[0], dict):
        recipient_phone = str(recipients[0].get("phoneNumber") or "")
    text = str(message.get("subject") or message.get("text") or "")

    try:
        result = await run_in_threadpool(
            inbound_message_service.route, db, external_id, sender_phone, recipient_phone, text
        )
    except ValidationError as e:
        return _skipped(str(e))
    except Exception as e:
        logger.exception("Inbound SMS webhook failed")
        return JSONResponse(
            status_code=500, content={"error": f"Internal error: {e.__class__.__name__}"}
        )

    if result.duplicate:
        return _skipped("Duplicate message")

    return {
        "success": True,
        "matched": len(result.matched),
        "entities": [
            {"type": m.entity_type, "id": m.id, "name": m.name} for m in result.matched
        ],
        "automation_fired": result.automation_fired,
        "automation_completed": result.automation_completed,
    }


# =============================================================================
# Intake (web forms, Google Ads, Meta lead ads)
# =============================================================================

@router.get("/intake")
def verify_intake_webhook(
    mode: str = Query(None, alias="hub.mode"),
    token: str = Query(None, alias="hub.verify_token"),
    challenge: str = Query(None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    """
    Health check, or Meta webhook verification when hub.* params are present.

    The verify token is an intake API key; the challenge is echoed as plain text.
    """
    if mode == "subscribe" and token and challenge:
        try:
            intake_service.validate_api_key(db, token)
        except AuthError:
            logger.warning("Intake webhook verification failed")
            raise HTTPException(status_code=403, detail="Forbidden")
        return PlainTextResponse(challenge)

    return {"status": "ok", "service": "intake-webhook", "version": 1}


@router.post("/intake")
@limiter.limit(WEBHOOK_LIMIT)
async def receive_intake(
    request: Request,
    api_key: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """
    Accept a form submission. The API key comes from the X-API-Key header,
    the api_key query parameter or an api_key body field, in that order.
    """
    try:
        payload = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(
            status_code=400, content={"error": "Invalid JSON body", "code": "INVALID_BODY"}
        )

    key = request.headers.get("X-API-Key") or api_key
    if not key and isinstance(payload, dict):
        body_key = payload.get("api_key")
        key = str(body_key) if body_key else None

    result = await run_in_threadpool(intake_service.ingest, db, payload, key)
    return JSONResponse(status_code=result.status_code, content=result.body)
