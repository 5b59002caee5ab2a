"""Action executor - performs one send_sms / send_email / create_task action.

Used by rule dispatch and by sequence steps. Delivery errors are reported
in the result, never retried here. A message that was delivered but whose
audit note could not be written still counts as sent.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy.orm import Session

from carepipeline.core.config import settings
from carepipeline.core.errors import DeliveryError, PersistenceError
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.enums import (
    ACTION_TYPE_ALIASES,
    AUTOMATION_AUTHOR,
    ActionType,
    NoteDirection,
    NoteSource,
    NoteType,
)
from carepipeline.db.models import AutomationRule, Sequence, Subject
from carepipeline.services import messaging_provider, note_service
from carepipeline.services.merge_fields import resolve_merge_fields
from carepipeline.utils.normalization import normalize_phone

logger = logging.getLogger(__name__)


def normalize_action_type(action_type: str | None) -> str:
    value = (action_type or "").strip().lower()
    return ACTION_TYPE_ALIASES.get(value, value)


@dataclass
class ActionSpec:
    """What to do, independent of whether a rule or a sequence step asked for it."""

    action_type: str
    template: str
    label: str
    email_subject: str | None = None
    rule_id: str | None = None

    @classmethod
    def from_rule(cls, rule: AutomationRule) -> "ActionSpec":
        config = rule.action_config or {}
        return cls(
            action_type=normalize_action_type(rule.action_type),
            template=rule.message_template or "",
            label=f"Automation: {rule.name}",
            email_subject=config.get("subject"),
            rule_id=str(rule.id),
        )

    @classmethod
    def from_step(cls, sequence: Sequence, step_index: int, step: dict) -> "ActionSpec":
        return cls(
            action_type=normalize_action_type(step.get("action_type")),
            template=step.get("template") or "",
            label=f"Sequence: {sequence.name}, Step {step_index + 1}",
            email_subject=step.get("subject"),
        )


@dataclass
class ActionResult:
    """Outcome of one action against one subject."""

    action_type: str
    success: bool
    skipped: bool = False
    error: str | None = None
    note_logged: bool = False
    description: str = ""
    rule_id: str | None = None
    subject_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ActionExecutor:
    def __init__(self, provider: messaging_provider.MessagingProvider | None = None) -> None:
        self._provider = provider

    @property
    def provider(self) -> messaging_provider.MessagingProvider:
        return self._provider or messaging_provider.provider

    def execute(
        self,
        db: Session,
        spec: ActionSpec,
        subject: Subject,
        context: dict | None = None,
    ) -> ActionResult:
        if spec.action_type == ActionType.SEND_SMS.value:
            return self._send_sms(db, spec, subject)
        if spec.action_type == ActionType.SEND_EMAIL.value:
            return self._send_email(db, spec, subject)
        if spec.action_type == ActionType.CREATE_TASK.value:
            return self._create_task(db, spec, subject)

        return self._result(
            spec, subject, success=False, error=f"Unsupported action type: {spec.action_type}"
        )

    # =========================================================================
    # Handlers
    # =========================================================================

    def _send_sms(self, db: Session, spec: ActionSpec, subject: Subject) -> ActionResult:
        phone = normalize_phone(subject.phone)
        if not phone:
            return self._result(
                spec, subject, success=False, skipped=True, error="No valid phone number"
            )

        text = resolve_merge_fields(spec.template, subject)
        try:
            self.provider.send_text(phone, text)
        except DeliveryError as e:
            logger.warning(
                f"SMS delivery failed: {e}",
                extra=build_log_context(subject_id=str(subject.id), rule_id=spec.rule_id),
            )
            return self._result(spec, subject, success=False, error=str(e))

        note = note_service.build_note(
            text=text,
            type=NoteType.TEXT.value,
            direction=NoteDirection.OUTBOUND.value,
            source=NoteSource.LOCAL.value,
            author=AUTOMATION_AUTHOR,
            outcome=spec.label,
        )
        return self._log_sent(db, spec, subject, note, description="SMS sent")

    def _send_email(self, db: Session, spec: ActionSpec, subject: Subject) -> ActionResult:
        address = (subject.email or "").strip()
        if not address:
            return self._result(
                spec, subject, success=False, skipped=True, error="No email address"
            )

        body = resolve_merge_fields(spec.template, subject)
        email_subject = resolve_merge_fields(
            spec.email_subject or settings.DEFAULT_EMAIL_SUBJECT, subject
        )
        try:
            self.provider.send_email(address, email_subject, body)
        except DeliveryError as e:
            logger.warning(
                f"Email delivery failed: {e}",
                extra=build_log_context(subject_id=str(subject.id), rule_id=spec.rule_id),
            )
            return self._result(spec, subject, success=False, error=str(e))

        note = note_service.build_note(
            text=f"Subject: {email_subject}\n\n{body}",
            type=NoteType.EMAIL.value,
            direction=NoteDirection.OUTBOUND.value,
            source=NoteSource.LOCAL.value,
            author=AUTOMATION_AUTHOR,
            outcome=spec.label,
        )
        return self._log_sent(db, spec, subject, note, description="Email sent")

    def _create_task(self, db: Session, spec: ActionSpec, subject: Subject) -> ActionResult:
        note = note_service.build_note(
            text=resolve_merge_fields(spec.template, subject),
            type=NoteType.TASK.value,
            author=AUTOMATION_AUTHOR,
            outcome=spec.label,
        )
        try:
            note_service.append_note(db, subject, note)
        except PersistenceError as e:
            logger.error(
                f"Task note could not be written: {e}",
                extra=build_log_context(subject_id=str(subject.id), rule_id=spec.rule_id),
            )
            return self._result(spec, subject, success=False, error=str(e))
        return self._result(
            spec, subject, success=True, note_logged=True, description="Task created"
        )

    def _log_sent(
        self,
        db: Session,
        spec: ActionSpec,
        subject: Subject,
        note: dict,
        *,
        description: str,
    ) -> ActionResult:
        try:
            note_service.append_note(db, subject, note)
        except PersistenceError as e:
            # Delivered but unrecorded: still "sent" from the user's point of view
            logger.error(
                f"Message delivered but audit note was not written ({spec.action_type}): {e}",
                extra=build_log_context(subject_id=str(subject.id), rule_id=spec.rule_id),
            )
            return self._result(
                spec, subject, success=True, note_logged=False, description=description
            )
        return self._result(
            spec, subject, success=True, note_logged=True, description=description
        )

    @staticmethod
    def _result(spec: ActionSpec, subject: Subject, **kwargs: Any) -> ActionResult:
        return ActionResult(
            action_type=spec.action_type,
            rule_id=spec.rule_id,
            subject_id=str(subject.id),
            **kwargs,
        )


executor = ActionExecutor()
