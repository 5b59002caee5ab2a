"""Merge field resolution for message templates.

Placeholders look like {{first_name}} and match case-insensitively. Unknown
placeholders are left in the output untouched.
"""

import re

from carepipeline.db.models import Subject
from carepipeline.services import phase_service

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def _canonical(name: str) -> str:
    """first_name, firstName and FIRSTNAME all resolve to 'firstname'."""
    return name.replace("_", "").lower()


def build_merge_values(subject: Subject) -> dict[str, str]:
    details = subject.details or {}
    values = {
        "first_name": subject.first_name or "",
        "last_name": subject.last_name or "",
        "phone": subject.phone or "",
        "email": subject.email or "",
        "phase": phase_service.resolver.current_phase(subject) or "",
        "care_recipient_name": str(details.get("care_recipient_name") or ""),
        "contact_name": str(details.get("contact_name") or ""),
    }
    return {_canonical(key): value for key, value in values.items()}


def resolve_merge_fields(template: str | None, subject: Subject) -> str:
    if not template:
        return ""
    values = build_merge_values(subject)

    def _replace(match: re.Match) -> str:
        key = _canonical(match.group(1))
        if key in values:
            return values[key]
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)
