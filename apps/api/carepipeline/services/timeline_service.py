"""Communication timeline - merges local notes with provider history.

Local notes are always kept. Provider events are dropped when a local note
already accounts for them:
  (a) outbound provider texts within the window of a locally-sent outbound text
  (b) provider events within the window of a provider-sourced local note with
      the same type and direction (written earlier by the inbound webhook)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from carepipeline.core.config import settings
from carepipeline.db.enums import COMMUNICATION_NOTE_TYPES, NoteDirection, NoteSource

logger = logging.getLogger(__name__)

TEXT_TYPES = {"text", "sms"}


@dataclass
class CommunicationEvent:
    """One item on the merged timeline. Built at read time, never stored."""

    source: str
    type: str
    direction: str | None
    timestamp: int  # epoch ms
    text: str = ""
    outcome: str | None = None
    has_recording: bool = False
    author: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def is_outbound_text(self) -> bool:
        return self.type in TEXT_TYPES and self.direction == NoteDirection.OUTBOUND.value


def to_epoch_ms(value: object) -> int | None:
    """Accept epoch ms, datetimes or ISO-8601 strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.isdigit():
            return int(raw)
        try:
            return int(datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return None
    return None


def note_to_event(note: dict) -> CommunicationEvent | None:
    """Convert a stored note to a timeline item; None if it has no usable timestamp."""
    ts = to_epoch_ms(note.get("timestamp") or note.get("date"))
    if ts is None:
        return None
    return CommunicationEvent(
        source=note.get("source") or NoteSource.LOCAL.value,
        type=note.get("type") or "note",
        direction=note.get("direction"),
        timestamp=ts,
        text=note.get("text") or "",
        outcome=note.get("outcome"),
        has_recording=bool(note.get("has_recording") or note.get("recording_id")),
        author=note.get("author"),
    )


def communication_notes(notes: list[dict] | None) -> list[CommunicationEvent]:
    events = []
    for note in notes or []:
        if not isinstance(note, dict) or note.get("type") not in COMMUNICATION_NOTE_TYPES:
            continue
        event = note_to_event(note)
        if event is None:
            logger.warning("Skipping communication note without a timestamp")
            continue
        events.append(event)
    return events


def merge(
    local_events: list[CommunicationEvent],
    provider_events: list[CommunicationEvent],
    *,
    window_seconds: int | None = None,
) -> list[CommunicationEvent]:
    """Merge and dedupe, newest first."""
    window_ms = (
        window_seconds if window_seconds is not None else settings.TIMELINE_DEDUP_WINDOW_SECONDS
    ) * 1000

    local_outbound_texts = [
        e for e in local_events if e.is_outbound_text and e.source == NoteSource.LOCAL.value
    ]
    local_provider_notes = [e for e in local_events if e.source == NoteSource.PROVIDER.value]

    def _within(a: CommunicationEvent, b: CommunicationEvent) -> bool:
        return abs(a.timestamp - b.timestamp) < window_ms

    kept = []
    for event in provider_events:
        if event.is_outbound_text and any(_within(event, n) for n in local_outbound_texts):
            continue
        if any(
            n.type == event.type and n.direction == event.direction and _within(event, n)
            for n in local_provider_notes
        ):
            continue
        kept.append(event)

    return sorted([*local_events, *kept], key=lambda e: e.timestamp, reverse=True)


def build_timeline(
    notes: list[dict] | None,
    provider_events: list[CommunicationEvent],
) -> list[CommunicationEvent]:
    """Timeline for a subject: its communication notes merged with provider history."""
    return merge(communication_notes(notes), provider_events)
