"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    subject_id: str | None = None,
    rule_id: str | None = None,
    sequence_id: str | None = None,
    enrollment_id: str | None = None,
    external_message_id: str | None = None,
    trigger_type: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict.

    Only identifiers go in here. Message bodies, phone numbers and emails
    never do.
    """
    context: dict[str, Any] = {}
    if subject_id:
        context["subject_id"] = subject_id
    if rule_id:
        context["rule_id"] = rule_id
    if sequence_id:
        context["sequence_id"] = sequence_id
    if enrollment_id:
        context["enrollment_id"] = enrollment_id
    if external_message_id:
        context["external_message_id"] = external_message_id
    if trigger_type:
        context["trigger_type"] = trigger_type
    return context
