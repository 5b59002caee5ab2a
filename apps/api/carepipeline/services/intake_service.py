"""Intake mapper & deduplicator for external form submissions.

Receives payloads from WordPress forms (Forminator/CF7), Google Ads lead
forms, Meta lead ads or anything else that can POST JSON. Field names are
mapped to subject columns through a static alias table, the submission is
matched against existing subjects, and a new subject fires its automation.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from carepipeline.core.errors import AuthError, ValidationError
from carepipeline.core.structured_logging import build_log_context
from carepipeline.db.enums import EntityType, NoteType
from carepipeline.db.models import IntakeApiKey, Subject
from carepipeline.services import automation_triggers, note_service, phase_service, subject_service
from carepipeline.utils.normalization import normalize_phone, split_full_name

logger = logging.getLogger(__name__)

INTAKE_AUTHOR = "Intake Webhook"
FULL_NAME = "_full_name"

# Incoming field name -> canonical field. First match wins per canonical field.
FIELD_MAP: dict[str, str] = {
    # Direct snake_case matches
    "first_name": "first_name",
    "last_name": "last_name",
    "phone": "phone",
    "email": "email",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip": "zip",
    "care_recipient_name": "care_recipient_name",
    "care_recipient_age": "care_recipient_age",
    "relationship": "relationship",
    "care_needs": "care_needs",
    "hours_needed": "hours_needed",
    "start_date_preference": "start_date_preference",
    "budget_range": "budget_range",
    "insurance_info": "insurance_info",
    "priority": "priority",
    "contact_name": "contact_name",
    # camelCase aliases
    "firstName": "first_name",
    "lastName": "last_name",
    "careRecipientName": "care_recipient_name",
    "careRecipientAge": "care_recipient_age",
    "careNeeds": "care_needs",
    "hoursNeeded": "hours_needed",
    "startDatePreference": "start_date_preference",
    "budgetRange": "budget_range",
    "insuranceInfo": "insurance_info",
    "contactName": "contact_name",
    # Forminator auto-generated field ids
    "name-1": "first_name",
    "name-2": "last_name",
    "email-1": "email",
    "phone-1": "phone",
    "textarea-1": "care_needs",
    # Generic names
    "name": FULL_NAME,
    "full_name": FULL_NAME,
    "fullname": FULL_NAME,
    "message": "care_needs",
    "comments": "care_needs",
    "notes": "care_needs",
    # Google Ads lead form
    "user_email": "email",
    "phone_number": "phone",
    "postal_code": "zip",
    "street_address": "address",
    # Meta lead ads
    "email_fb": "email",
    "phone_number_fb": "phone",
    "zip_code": "zip",
}

# Form plumbing, never stored
SKIP_FIELDS = {
    "api_key",
    "_field_map",
    "hub.mode",
    "hub.verify_token",
    "hub.challenge",
    "consent",
    "gdpr",
    "privacy",
    "terms",
    "_wp_nonce",
    "action",
    "form_id",
    "referer_url",
    "current_url",
    "entry",
}

CONTACT_FIELDS = ("first_name", "last_name", "phone", "email")


@dataclass
class MappedSubmission:
    """Canonical fields plus the unmapped-fields bag, resolved once at the boundary."""

    fields: dict[str, str] = field(default_factory=dict)
    unmapped: dict[str, Any] = field(default_factory=dict)

    @property
    def has_identity(self) -> bool:
        return any(self.fields.get(name) for name in CONTACT_FIELDS)

    @property
    def details(self) -> dict[str, str]:
        return {k: v for k, v in self.fields.items() if k not in CONTACT_FIELDS}


@dataclass
class IngestResult:
    status_code: int
    body: dict[str, Any]

    @property
    def duplicate(self) -> bool:
        return bool(self.body.get("duplicate"))


def _error(status_code: int, message: str, code: str) -> IngestResult:
    return IngestResult(status_code=status_code, body={"error": message, "code": code})


# =============================================================================
# Mapping
# =============================================================================

def map_fields(payload: dict[str, Any], custom_map: dict[str, str] | None = None) -> MappedSubmission:
    """Map raw form fields to canonical fields. custom_map entries override FIELD_MAP."""
    effective = {**FIELD_MAP, **custom_map} if custom_map else FIELD_MAP
    mapped = MappedSubmission()

    for key, value in payload.items():
        if key in SKIP_FIELDS:
            continue
        if value is None or value == "":
            continue

        target = effective.get(key)
        if target == FULL_NAME:
            first, last = split_full_name(str(value))
            if not mapped.fields.get("first_name"):
                mapped.fields["first_name"] = first
            if not mapped.fields.get("last_name"):
                mapped.fields["last_name"] = last
        elif target:
            if not mapped.fields.get(target):
                mapped.fields[target] = str(value).strip()
        else:
            mapped.unmapped[key] = value

    return mapped


# =============================================================================
# API keys
# =============================================================================

def validate_api_key(db: Session, api_key: str | None) -> IntakeApiKey:
    if not api_key:
        raise AuthError("Invalid or missing API key")
    key = (
        db.query(IntakeApiKey)
        .filter(IntakeApiKey.key == api_key, IntakeApiKey.enabled.is_(True))
        .first()
    )
    if not key:
        raise AuthError("Invalid or missing API key")
    return key


def _source_label(key: IntakeApiKey) -> str:
    source = key.source or "webhook"
    return f"{source} ({key.label})" if key.label else source


# =============================================================================
# Ingest
# =============================================================================

def ingest(db: Session, payload: Any, api_key: str | None) -> IngestResult:
    """
    Validate, map, dedupe and create.

    Returns 201 created, 200 duplicate, 400 validation error, 401 invalid key
    or 500 internal error. Never raises.
    """
    if not isinstance(payload, dict):
        return _error(400, "Request body must be a JSON object", "INVALID_BODY")

    try:
        key = validate_api_key(db, api_key)
        custom_map = payload.get("_field_map")
        mapped = map_fields(payload, custom_map if isinstance(custom_map, dict) else None)
        if not mapped.has_identity:
            raise ValidationError(
                "At least one of first_name, last_name, phone, or email is required"
            )
        return _ingest_mapped(db, key, mapped)
    except AuthError as e:
        return _error(401, str(e), "INVALID_API_KEY")
    except ValidationError as e:
        return _error(400, str(e), "VALIDATION_ERROR")
    except Exception as e:
        logger.exception("Intake webhook failed")
        db.rollback()
        return _error(500, f"Internal error: {e.__class__.__name__}", "INTERNAL_ERROR")


def _ingest_mapped(db: Session, key: IntakeApiKey, mapped: MappedSubmission) -> IngestResult:
    entity_type = key.entity_type or EntityType.CLIENT.value
    email = mapped.fields.get("email")
    phone = mapped.fields.get("phone")

    matched_by = "email"
    existing = subject_service.find_by_email(db, email, entity_type)
    if not existing:
        matched_by = "phone"
        phone_matches = subject_service.match_by_phone(db, phone, entity_type)
        existing = phone_matches[0] if phone_matches else None

    if existing:
        return _record_duplicate(db, key, existing, mapped, matched_by)
    return _create_subject(db, key, entity_type, mapped)


def _record_duplicate(
    db: Session,
    key: IntakeApiKey,
    existing: Subject,
    mapped: MappedSubmission,
    matched_by: str,
) -> IngestResult:
    extra = f"\nAdditional data: {json.dumps(mapped.unmapped, default=str)}" if mapped.unmapped else ""
    note = note_service.build_note(
        text=f"Duplicate form submission received from {_source_label(key)}.{extra}",
        type=NoteType.AUTO.value,
        author=INTAKE_AUTHOR,
    )
    note_service.append_note(db, existing, note)
    logger.info(
        f"Duplicate intake submission matched by {matched_by}",
        extra=build_log_context(subject_id=str(existing.id)),
    )
    return IngestResult(
        status_code=200,
        body={
            "success": True,
            "subject_id": str(existing.id),
            "duplicate": True,
            "message": f"Subject already exists (matched by {matched_by})",
            "source": key.source,
            "automations_fired": False,
        },
    )


def _create_subject(
    db: Session, key: IntakeApiKey, entity_type: str, mapped: MappedSubmission
) -> IngestResult:
    now = phase_service.now_ms()
    initial_phase = phase_service.default_phase(entity_type)

    extra = ""
    if mapped.unmapped:
        lines = "\n".join(f"  {k}: {v}" for k, v in mapped.unmapped.items())
        extra = f"\n\nAdditional form data:\n{lines}"
    created_note = note_service.build_note(
        text=f"{entity_type.capitalize()} created via {_source_label(key)}.{extra}",
        type=NoteType.AUTO.value,
        author=INTAKE_AUTHOR,
        timestamp=now,
    )

    details = mapped.details
    details.setdefault("priority", "normal")
    details["referral_source"] = key.source or "Webhook"
    details["referral_detail"] = key.label or ""

    raw_phone = mapped.fields.get("phone", "")
    subject = Subject(
        entity_type=entity_type,
        first_name=mapped.fields.get("first_name", ""),
        last_name=mapped.fields.get("last_name", ""),
        phone=normalize_phone(raw_phone) or raw_phone,
        email=(mapped.fields.get("email") or "").strip(),
        phase_override=initial_phase,
        phase_timestamps={initial_phase: now},
        tasks={},
        notes=[created_note],
        details=details,
    )
    db.add(subject)
    db.commit()
    db.refresh(subject)

    logger.info(
        f"Subject created via intake ({key.source})",
        extra=build_log_context(subject_id=str(subject.id), trigger_type="new_subject"),
    )

    completed = automation_triggers.fire_subject_created(subject.id)

    return IngestResult(
        status_code=201,
        body={
            "success": True,
            "subject_id": str(subject.id),
            "duplicate": False,
            "message": f"{entity_type.capitalize()} '{subject.full_name or 'Unknown'}' created successfully",
            "source": key.source,
            "automations_fired": True,
            "automations_completed": completed,
        },
    )
