"""Tests for merging local notes with provider history."""

from carepipeline.services.timeline_service import (
    CommunicationEvent,
    build_timeline,
    merge,
    to_epoch_ms,
)

BASE = 1_760_000_000_000


def _local_text(ts, direction="outbound", source="local", text="hello"):
    return {
        "text": text,
        "type": "text",
        "direction": direction,
        "source": source,
        "timestamp": ts,
        "author": "Automation",
    }


def _provider(ts, direction="outbound", type="text", text="hello"):
    return CommunicationEvent(
        source="provider", type=type, direction=direction, timestamp=ts, text=text
    )


def test_provider_outbound_within_window_is_dropped():
    timeline = build_timeline([_local_text(BASE)], [_provider(BASE + 119_000)])
    assert len(timeline) == 1
    assert timeline[0].source == "local"


def test_provider_outbound_at_window_edge_is_kept():
    timeline = build_timeline([_local_text(BASE)], [_provider(BASE + 120_000)])
    assert len(timeline) == 2


def test_provider_inbound_matching_webhook_note_is_dropped():
    webhook_note = _local_text(BASE, direction="inbound", source="provider")
    timeline = build_timeline([webhook_note], [_provider(BASE + 30_000, direction="inbound")])
    assert len(timeline) == 1


def test_provider_inbound_not_dropped_by_local_outbound():
    timeline = build_timeline([_local_text(BASE)], [_provider(BASE + 1_000, direction="inbound")])
    assert len(timeline) == 2


def test_sorted_newest_first():
    notes = [_local_text(BASE), _local_text(BASE + 500_000)]
    timeline = build_timeline(notes, [_provider(BASE + 250_000, direction="inbound")])
    assert [e.timestamp for e in timeline] == [BASE + 500_000, BASE + 250_000, BASE]


def test_non_communication_notes_are_excluded():
    notes = [
        {"text": "General note", "type": "note", "timestamp": BASE, "author": "Ana"},
        {"text": "Auto", "type": "auto", "timestamp": BASE, "author": "System"},
        {"text": "Call", "type": "call", "timestamp": BASE, "author": "Ana", "direction": "outbound"},
    ]
    timeline = build_timeline(notes, [])
    assert [e.type for e in timeline] == ["call"]


def test_notes_with_iso_dates_are_read():
    note = {"text": "sms", "type": "sms", "date": "2026-01-01T10:00:00Z", "direction": "inbound"}
    timeline = build_timeline([note], [])
    assert timeline[0].timestamp == to_epoch_ms("2026-01-01T10:00:00+00:00")


def test_custom_window():
    merged = merge(
        [CommunicationEvent("local", "text", "outbound", BASE)],
        [_provider(BASE + 5_000)],
        window_seconds=1,
    )
    assert len(merged) == 2
