"""Bulk messaging - one templated SMS or email to many subjects.

Sends are sequential with a fixed gap between calls, and a longer pause
after the provider reports rate limiting. Every subject gets its own
result; one failure never aborts the batch.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from carepipeline.core.config import settings
from carepipeline.core.errors import DeliveryError, NotFoundError, PersistenceError, ValidationError
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.enums import NoteDirection, NoteSource, NoteType
from carepipeline.db.models import Subject
from carepipeline.services import messaging_provider, note_service
from carepipeline.services.merge_fields import resolve_merge_fields
from carepipeline.utils.normalization import normalize_phone

logger = logging.getLogger(__name__)

BULK_SMS_AUTHOR = "Bulk SMS"
BULK_SMS_OUTCOME = "sent via RingCentral (bulk)"
BULK_EMAIL_AUTHOR = "Bulk Email"
BULK_EMAIL_OUTCOME = "sent via Resend (bulk)"


@dataclass
class BulkItemResult:
    id: str
    name: str
    status: str  # sent | skipped | failed
    reason: str | None = None
    note_logged: bool = False


@dataclass
class BulkSendSummary:
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[BulkItemResult] = field(default_factory=list)

    def add(self, item: BulkItemResult) -> None:
        self.results.append(item)
        if item.status == "sent":
            self.sent += 1
        elif item.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return asdict(self)


def _load_subjects(db: Session, subject_ids: list[UUID]) -> list[Subject]:
    found = {s.id: s for s in db.query(Subject).filter(Subject.id.in_(subject_ids)).all()}
    if not found:
        raise NotFoundError("No subjects found for the given ids")
    # Request order, each subject once
    return [found[i] for i in dict.fromkeys(subject_ids) if i in found]


def _send_each(
    db: Session,
    subjects: list[Subject],
    *,
    channel: str,
    address_of: Callable[[Subject], str | None],
    skip_reason: str,
    deliver: Callable[[Subject, str], str],
    note_type: str,
    author: str,
    outcome: str,
    sleep: Callable[[float], None],
) -> BulkSendSummary:
    """
    Shared send loop. deliver(subject, address) sends and returns the text
    recorded in the audit note.
    """
    summary = BulkSendSummary()

    for subject in subjects:
        subject_id = str(subject.id)
        name = subject.full_name
        address = address_of(subject)
        if not address:
            summary.add(BulkItemResult(id=subject_id, name=name, status="skipped", reason=skip_reason))
            continue

        try:
            text = deliver(subject, address)
        except DeliveryError as e:
            if e.rate_limited:
                summary.add(
                    BulkItemResult(id=subject_id, name=name, status="failed", reason="Rate limit reached")
                )
                sleep(settings.BULK_RATE_LIMIT_BACKOFF_SECONDS)
                continue
            logger.warning(
                f"Bulk {channel} failed: {e}", extra=build_log_context(subject_id=subject_id)
            )
            summary.add(BulkItemResult(id=subject_id, name=name, status="failed", reason=str(e)))
            sleep(settings.BULK_SEND_DELAY_SECONDS)
            continue

        note = note_service.build_note(
            text=text,
            type=note_type,
            direction=NoteDirection.OUTBOUND.value,
            source=NoteSource.LOCAL.value,
            author=author,
            outcome=outcome,
        )
        note_logged = True
        try:
            note_service.append_note(db, subject, note)
        except PersistenceError:
            note_logged = False
            logger.error(
                f"Bulk {channel} delivered but audit note was not written",
                extra=build_log_context(subject_id=subject_id),
            )
        summary.add(BulkItemResult(id=subject_id, name=name, status="sent", note_logged=note_logged))
        sleep(settings.BULK_SEND_DELAY_SECONDS)

    logger.info(
        f"Bulk {channel} complete: {summary.sent} sent, {summary.skipped} skipped, "
        f"{summary.failed} failed"
    )
    return summary


def send_bulk_sms(
    db: Session,
    subject_ids: list[UUID],
    message: str,
    actor: str | None = None,
    *,
    provider: messaging_provider.MessagingProvider | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BulkSendSummary:
    """
    Send message (with merge fields resolved per subject) to each subject.

    Raises:
        ValidationError: no subject ids or an empty message
        NotFoundError: none of the ids exist
    """
    if not subject_ids:
        raise ValidationError("subject_ids is required and must be non-empty")
    if not message or not message.strip():
        raise ValidationError("message is required")

    provider = provider or messaging_provider.provider
    subjects = _load_subjects(db, subject_ids)

    def deliver(subject: Subject, phone: str) -> str:
        text = resolve_merge_fields(message, subject)
        provider.send_text(phone, text)
        return text

    return _send_each(
        db,
        subjects,
        channel="SMS",
        address_of=lambda s: normalize_phone(s.phone),
        skip_reason="no valid phone number",
        deliver=deliver,
        note_type=NoteType.TEXT.value,
        author=actor or BULK_SMS_AUTHOR,
        outcome=BULK_SMS_OUTCOME,
        sleep=sleep,
    )


def send_bulk_email(
    db: Session,
    subject_ids: list[UUID],
    subject_line: str,
    body: str,
    actor: str | None = None,
    *,
    provider: messaging_provider.MessagingProvider | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BulkSendSummary:
    """
    Send an email to each subject. Merge fields resolve in both the subject
    line and the body.

    Raises:
        ValidationError: no subject ids, or an empty subject line or body
        NotFoundError: none of the ids exist
    """
    if not subject_ids:
        raise ValidationError("subject_ids is required and must be non-empty")
    if not subject_line or not subject_line.strip():
        raise ValidationError("subject is required")
    if not body or not body.strip():
        raise ValidationError("body is required")

    provider = provider or messaging_provider.provider
    subjects = _load_subjects(db, subject_ids)

    def deliver(subject: Subject, address: str) -> str:
        resolved_subject = resolve_merge_fields(subject_line, subject)
        resolved_body = resolve_merge_fields(body, subject)
        provider.send_email(address, resolved_subject, resolved_body)
        return f"Subject: {resolved_subject}\n\n{resolved_body}"

    return _send_each(
        db,
        subjects,
        channel="email",
        address_of=lambda s: (s.email or "").strip() or None,
        skip_reason="no email address",
        deliver=deliver,
        note_type=NoteType.EMAIL.value,
        author=actor or BULK_EMAIL_AUTHOR,
        outcome=BULK_EMAIL_OUTCOME,
        sleep=sleep,
    )
