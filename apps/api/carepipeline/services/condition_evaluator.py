"""Condition evaluation for automation rules.

Conditions are a flat mapping, AND-combined. Each key is a named predicate
against either the subject's derived phase or a field of the trigger
context. Absent or empty keys pass; missing context values fail. Never raises.
"""

from __future__ import annotations

from typing import Any, Callable

from carepipeline.db.models import AutomationRule, Subject
from carepipeline.services.phase_service import PhaseResolver, resolver as default_resolver


def _contains(haystack: Any, needle: Any) -> bool:
    """Case-insensitive substring match; non-strings never match."""
    if not isinstance(haystack, str) or not haystack:
        return False
    return str(needle).lower() in haystack.lower()


def _equals(field: str) -> Callable[[dict, Any], bool]:
    def check(context: dict, expected: Any) -> bool:
        actual = context.get(field)
        return actual is not None and str(actual) == str(expected)

    return check


def _template_name(context: dict, expected: Any) -> bool:
    names = context.get("template_names")
    if not isinstance(names, (list, tuple)) or not names:
        return False
    return any(_contains(name, expected) for name in names)


def _keyword(context: dict, expected: Any) -> bool:
    return _contains(context.get("message_text"), expected)


# Predicates over the trigger context, keyed by condition name
CONTEXT_PREDICATES: dict[str, Callable[[dict, Any], bool]] = {
    "to_phase": _equals("to_phase"),
    "task_id": _equals("task_id"),
    "document_type": _equals("document_type"),
    "template_name": _template_name,
    "keyword": _keyword,
}


class ConditionEvaluator:
    def __init__(self, phase_resolver: PhaseResolver | None = None) -> None:
        self.phase_resolver = phase_resolver or default_resolver

    def matches(self, rule: AutomationRule, subject: Subject, context: dict | None) -> bool:
        return self.evaluate(rule.conditions, subject, context)

    def evaluate(self, conditions: dict | None, subject: Subject, context: dict | None) -> bool:
        if not conditions or not isinstance(conditions, dict):
            return True
        context = context or {}

        for key, expected in conditions.items():
            if expected is None or expected == "":
                continue

            if key == "phase":
                if self.phase_resolver.current_phase(subject) != expected:
                    return False
                continue

            predicate = CONTEXT_PREDICATES.get(key)
            # Unknown keys cannot be satisfied
            if predicate is None or not predicate(context, expected):
                return False

        return True


evaluator = ConditionEvaluator()
