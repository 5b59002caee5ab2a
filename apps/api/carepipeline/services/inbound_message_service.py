"""Inbound message router - matches an inbound SMS to subjects and fires automation.

The InboundMessageLog row is the idempotency fence. It is inserted before
any note is written, keyed by the provider's message id, so a redelivered
message is recognised even when both deliveries arrive at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carepipeline.core.errors import PersistenceError, ValidationError
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.enums import NoteDirection, NoteSource, NoteType, TriggerType
from carepipeline.db.models import InboundMessageLog, Subject
from carepipeline.services import note_service, sequence_service, subject_service
from carepipeline.services.automation_dispatcher import dispatcher
from carepipeline.services.automation_triggers import run_bounded
from carepipeline.utils.normalization import normalize_phone

logger = logging.getLogger(__name__)

WEBHOOK_AUTHOR = "SMS Webhook"


@dataclass
class MatchedSubject:
    id: str
    entity_type: str
    name: str


@dataclass
class RouteResult:
    external_message_id: str
    duplicate: bool = False
    matched: list[MatchedSubject] = field(default_factory=list)
    automation_fired: bool = False
    automation_completed: bool | None = None


def route(
    db: Session,
    external_message_id: str,
    sender_phone: str,
    recipient_phone: str,
    text: str,
) -> RouteResult:
    """
    Log an inbound message against every subject whose phone matches.

    Processing the same external_message_id twice has no further effect.
    """
    if not external_message_id or not sender_phone:
        raise ValidationError("Missing message ID or sender phone")

    log_context = build_log_context(external_message_id=external_message_id)
    if _already_logged(db, external_message_id):
        logger.info("Duplicate inbound message, skipping", extra=log_context)
        return RouteResult(external_message_id=external_message_id, duplicate=True)

    matches = subject_service.match_by_phone(db, sender_phone)
    primary = matches[0] if matches else None

    entry = InboundMessageLog(
        external_message_id=external_message_id,
        from_phone=normalize_phone(sender_phone) or sender_phone,
        to_phone=normalize_phone(recipient_phone) or recipient_phone or "",
        message_text=text or "",
        matched_entity_type=primary.entity_type if primary else None,
        matched_subject_id=primary.id if primary else None,
        automation_fired=bool(matches),
    )
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Duplicate inbound message (concurrent delivery), skipping", extra=log_context)
        return RouteResult(external_message_id=external_message_id, duplicate=True)

    result = RouteResult(
        external_message_id=external_message_id,
        matched=[
            MatchedSubject(id=str(s.id), entity_type=s.entity_type, name=s.full_name)
            for s in matches
        ],
        automation_fired=bool(matches),
    )

    subject_ids = []
    for subject in matches:
        subject_ids.append(subject.id)
        note = note_service.build_note(
            text=text or "",
            type=NoteType.TEXT.value,
            direction=NoteDirection.INBOUND.value,
            source=NoteSource.PROVIDER.value,
            author=WEBHOOK_AUTHOR,
            outcome=f"Received from {sender_phone}",
        )
        try:
            note_service.append_note(db, subject, note)
        except PersistenceError:
            logger.exception(
                "Inbound message logged but note was not written",
                extra=build_log_context(
                    subject_id=str(subject.id), external_message_id=external_message_id
                ),
            )

    if not subject_ids:
        logger.info("Inbound message matched no subjects", extra=log_context)
        return result

    result.automation_completed = run_bounded(
        lambda session: handle_inbound(
            session, subject_ids, external_message_id, sender_phone, text or ""
        )
    )
    return result


def handle_inbound(
    db: Session,
    subject_ids: list[UUID],
    external_message_id: str,
    sender_phone: str,
    text: str,
) -> None:
    """Per matched subject: stop response-sensitive sequences, then inbound_sms rules."""
    context = {
        "message_text": text,
        "sender_number": sender_phone,
        "external_message_id": external_message_id,
    }
    for subject_id in subject_ids:
        subject = db.get(Subject, subject_id)
        if not subject:
            continue
        try:
            sequence_service.cancel_on_response(db, subject)
        except Exception:
            logger.exception(
                "Failed to cancel sequences on response",
                extra=build_log_context(subject_id=str(subject_id)),
            )
            db.rollback()
        dispatcher.dispatch(
            db,
            TriggerType.INBOUND_SMS,
            subject,
            context,
            event_id=f"inbound_sms:{external_message_id}",
        )


def _already_logged(db: Session, external_message_id: str) -> bool:
    return (
        db.query(InboundMessageLog.id)
        .filter(InboundMessageLog.external_message_id == external_message_id)
        .first()
        is not None
    )
