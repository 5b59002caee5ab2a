"""Phase derivation for subjects.

The engine only consumes the derived phase; it never decides pipeline
stages itself. The resolver is injected so a different pipeline can plug
its own derivation in.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from carepipeline.core.config import settings
from carepipeline.db.enums import EntityType
from carepipeline.db.models import Subject


CAREGIVER_PHASES = ["intake", "interview", "onboarding", "verification", "orientation"]

CLIENT_PHASES = [
    "new_lead",
    "initial_contact",
    "consultation",
    "assessment",
    "proposal",
    "won",
    "lost",
    "nurture",
]

PHASES_BY_ENTITY = {
    EntityType.CAREGIVER.value: CAREGIVER_PHASES,
    EntityType.CLIENT.value: CLIENT_PHASES,
}


class PhaseResolver(Protocol):
    def current_phase(self, subject: Subject) -> str:
        """Return the subject's current phase id."""


class TimestampPhaseResolver:
    """
    Override wins; otherwise the phase with the most recent timestamp;
    otherwise the first phase of the subject's pipeline.
    """

    def current_phase(self, subject: Subject) -> str:
        if subject.phase_override:
            return subject.phase_override

        timestamps = subject.phase_timestamps or {}
        phases = PHASES_BY_ENTITY.get(subject.entity_type, [])
        latest = phases[0] if phases else ""
        latest_time = 0
        # Ties go to the earlier pipeline phase
        for phase in phases:
            ts = timestamps.get(phase)
            if isinstance(ts, (int, float)) and ts > latest_time:
                latest, latest_time = phase, ts
        return latest


def is_valid_phase(entity_type: str, phase: str) -> bool:
    return phase in PHASES_BY_ENTITY.get(entity_type, [])


def default_phase(entity_type: str) -> str:
    if entity_type == EntityType.CAREGIVER.value:
        return settings.INTAKE_DEFAULT_CAREGIVER_PHASE
    return settings.INTAKE_DEFAULT_CLIENT_PHASE


def now_ms() -> int:
    """Current time as epoch milliseconds, the unit stored in phase and note timestamps."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def set_phase(subject: Subject, phase: str, *, at_ms: int | None = None) -> str | None:
    """
    Move a subject to a phase. Returns the previous derived phase.

    Stamps phase_timestamps and sets the override so derivation is exact.
    """
    previous = resolver.current_phase(subject)
    timestamps = dict(subject.phase_timestamps or {})
    timestamps[phase] = at_ms if at_ms is not None else now_ms()
    subject.phase_timestamps = timestamps
    subject.phase_override = phase
    return previous


resolver: PhaseResolver = TimestampPhaseResolver()
