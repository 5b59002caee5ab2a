"""Tests for phase derivation and template merge fields."""

from carepipeline.db.models import Subject
from carepipeline.services.merge_fields import resolve_merge_fields
from carepipeline.services.phase_service import TimestampPhaseResolver, is_valid_phase, set_phase


def _subject(**kwargs) -> Subject:
    defaults = dict(
        entity_type="caregiver",
        first_name="Maria",
        last_name="Lopez",
        phone="5551234567",
        email="maria@example.com",
        phase_override=None,
        phase_timestamps={},
        details={},
    )
    defaults.update(kwargs)
    return Subject(**defaults)


class TestPhaseResolver:
    def test_override_wins(self):
        subject = _subject(phase_override="orientation", phase_timestamps={"interview": 5})
        assert TimestampPhaseResolver().current_phase(subject) == "orientation"

    def test_latest_timestamp(self):
        subject = _subject(phase_timestamps={"intake": 100, "interview": 300, "onboarding": 200})
        assert TimestampPhaseResolver().current_phase(subject) == "interview"

    def test_defaults_to_first_phase(self):
        assert TimestampPhaseResolver().current_phase(_subject()) == "intake"
        assert TimestampPhaseResolver().current_phase(_subject(entity_type="client")) == "new_lead"

    def test_set_phase_returns_previous_and_stamps(self):
        subject = _subject(phase_override="intake", phase_timestamps={"intake": 1})
        previous = set_phase(subject, "interview", at_ms=50)
        assert previous == "intake"
        assert subject.phase_override == "interview"
        assert subject.phase_timestamps == {"intake": 1, "interview": 50}

    def test_valid_phases_are_per_entity(self):
        assert is_valid_phase("caregiver", "interview")
        assert not is_valid_phase("caregiver", "won")
        assert is_valid_phase("client", "won")


class TestMergeFields:
    def test_resolves_known_fields(self):
        subject = _subject(phase_override="interview")
        text = resolve_merge_fields("Hi {{first_name}} {{last_name}}, phase {{phase}}", subject)
        assert text == "Hi Maria Lopez, phase interview"

    def test_camel_case_and_case_insensitive(self):
        subject = _subject()
        assert resolve_merge_fields("{{firstName}} / {{ FIRST_NAME }}", subject) == "Maria / Maria"

    def test_unknown_placeholder_left_verbatim(self):
        subject = _subject()
        assert resolve_merge_fields("Hello {{nickname}}", subject) == "Hello {{nickname}}"

    def test_client_detail_fields(self):
        subject = _subject(entity_type="client", details={"care_recipient_name": "Rosa"})
        assert resolve_merge_fields("Caring for {{careRecipientName}}", subject) == "Caring for Rosa"

    def test_empty_template(self):
        assert resolve_merge_fields(None, _subject()) == ""
