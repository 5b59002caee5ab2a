"""Tests for the sequence engine: enrollment, execution and cancellation."""

from datetime import datetime, timedelta, timezone

import pytest

from carepipeline.core.errors import DuplicateConflict, InvalidStateError, ValidationError
from carepipeline.db.enums import CancelReason, EnrollmentStatus, SequenceStepStatus
from carepipeline.services import sequence_service

THREE_STEPS = [
    {"action_type": "sms", "delay_hours": 0, "template": "Welcome {{first_name}}"},
    {"action_type": "sms", "delay_hours": 24, "template": "Checking in"},
    {"action_type": "task", "delay_hours": 72, "template": "Call {{first_name}}"},
]


def _statuses(enrollment):
    return {e.step_index: e.status for e in enrollment.log_entries}


class TestStartSequence:
    def test_immediate_step_runs_and_delayed_steps_stay_pending(
        self, db, make_subject, make_sequence, provider
    ):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)

        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id, actor="ana")

        assert enrollment.status == EnrollmentStatus.ACTIVE.value
        assert enrollment.started_by == "ana"
        assert provider.texts == [("+15551234567", "Welcome Maria")]
        assert _statuses(enrollment) == {
            0: SequenceStepStatus.EXECUTED.value,
            1: SequenceStepStatus.PENDING.value,
            2: SequenceStepStatus.PENDING.value,
        }
        assert sequence_service.progress(enrollment) == (1, 3)
        note = subject.notes[-1]
        assert note["outcome"] == f"Sequence: {sequence.name}, Step 1"

    def test_second_start_while_active_is_rejected(self, db, make_subject, make_sequence, provider):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        sequence_service.start_sequence(db, subject.id, sequence.id)

        with pytest.raises(DuplicateConflict):
            sequence_service.start_sequence(db, subject.id, sequence.id)

        assert len(provider.texts) == 1

    def test_restart_after_stop_is_allowed(self, db, make_subject, make_sequence):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        first = sequence_service.start_sequence(db, subject.id, sequence.id)
        sequence_service.stop_sequence(db, first.id)

        second = sequence_service.start_sequence(db, subject.id, sequence.id)

        assert second.id != first.id
        assert second.status == EnrollmentStatus.ACTIVE.value

    def test_start_from_step_skips_earlier_steps(self, db, make_subject, make_sequence, provider):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)

        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id, start_step=1)

        assert enrollment.start_from_step == 1
        assert sorted(_statuses(enrollment)) == [1, 2]
        assert provider.texts == []
        assert sequence_service.progress(enrollment) == (1, 3)

    def test_start_from_immediate_later_step(self, db, make_subject, make_sequence, provider):
        subject = make_subject()
        steps = [
            {"action_type": "sms", "delay_hours": 0, "template": "first"},
            {"action_type": "sms", "delay_hours": 0, "template": "second"},
        ]
        sequence = make_sequence(steps)

        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id, start_step=1)

        assert [t for _, t in provider.texts] == ["second"]
        assert enrollment.status == EnrollmentStatus.COMPLETED.value

    def test_all_immediate_steps_complete_the_enrollment(
        self, db, make_subject, make_sequence, provider
    ):
        subject = make_subject()
        sequence = make_sequence([{"action_type": "sms", "delay_hours": 0, "template": "only"}])

        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id)

        assert enrollment.status == EnrollmentStatus.COMPLETED.value
        assert enrollment.completed_at is not None

    def test_out_of_range_start_step(self, db, make_subject, make_sequence):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)

        with pytest.raises(ValidationError):
            sequence_service.start_sequence(db, subject.id, sequence.id, start_step=3)

    def test_sequence_without_steps(self, db, make_subject, make_sequence):
        subject = make_subject()
        sequence = make_sequence([])

        with pytest.raises(ValidationError):
            sequence_service.start_sequence(db, subject.id, sequence.id)

    def test_failed_step_is_logged_with_error(self, db, make_subject, make_sequence, provider):
        subject = make_subject(phone="")
        sequence = make_sequence(THREE_STEPS)

        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id)

        first = enrollment.log_entries[0]
        assert first.status == SequenceStepStatus.EXECUTED.value
        assert first.error_message == "No valid phone number"


class TestStopSequence:
    def test_stop_cancels_pending_and_keeps_executed(self, db, make_subject, make_sequence):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS, name="Welcome drip")
        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id)

        stopped = sequence_service.stop_sequence(db, enrollment.id, CancelReason.MANUAL, "ana")

        assert stopped.status == EnrollmentStatus.CANCELLED.value
        assert stopped.cancel_reason == CancelReason.MANUAL.value
        assert stopped.cancelled_by == "ana"
        assert _statuses(stopped) == {
            0: SequenceStepStatus.EXECUTED.value,
            1: SequenceStepStatus.CANCELLED.value,
            2: SequenceStepStatus.CANCELLED.value,
        }
        assert subject.notes[-1]["text"] == 'Sequence "Welcome drip" manually cancelled by ana.'
        assert subject.notes[-1]["author"] == "System"

    def test_history_spans_every_run_for_the_pair(self, db, make_subject, make_sequence):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        first = sequence_service.start_sequence(db, subject.id, sequence.id)
        sequence_service.stop_sequence(db, first.id)
        sequence_service.start_sequence(db, subject.id, sequence.id)

        entries = sequence_service.list_log_entries(db, sequence.id, subject.id)

        assert [e.step_index for e in entries] == [0, 0, 1, 1, 2, 2]
        assert sorted(e.status for e in entries) == sorted(
            [SequenceStepStatus.EXECUTED.value] * 2
            + [SequenceStepStatus.CANCELLED.value] * 2
            + [SequenceStepStatus.PENDING.value] * 2
        )

    def test_stop_twice_is_invalid(self, db, make_subject, make_sequence):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id)
        sequence_service.stop_sequence(db, enrollment.id)

        with pytest.raises(InvalidStateError):
            sequence_service.stop_sequence(db, enrollment.id)

    def test_stopped_steps_never_run(self, db, make_subject, make_sequence, provider):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id)
        sequence_service.stop_sequence(db, enrollment.id)

        later = datetime.now(timezone.utc) + timedelta(days=10)
        summary = sequence_service.process_due_steps(db, later)

        assert summary.processed == 0
        assert len(provider.texts) == 1


class TestDueSteps:
    def test_due_steps_run_in_order_and_complete(self, db, make_subject, make_sequence, provider):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        enrollment = sequence_service.start_sequence(db, subject.id, sequence.id)

        tomorrow = datetime.now(timezone.utc) + timedelta(hours=25)
        first = sequence_service.process_due_steps(db, tomorrow)
        assert first.processed == 1
        assert [t for _, t in provider.texts] == ["Welcome Maria", "Checking in"]

        later = datetime.now(timezone.utc) + timedelta(hours=73)
        second = sequence_service.process_due_steps(db, later)
        assert second.processed == 1
        assert second.completed_enrollments == 1

        db.refresh(enrollment)
        assert enrollment.status == EnrollmentStatus.COMPLETED.value
        assert sequence_service.progress(enrollment) == (3, 3)
        assert subject.notes[-1]["type"] == "task"

    def test_running_twice_does_not_repeat_steps(self, db, make_subject, make_sequence, provider):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        sequence_service.start_sequence(db, subject.id, sequence.id)
        later = datetime.now(timezone.utc) + timedelta(days=5)

        sequence_service.process_due_steps(db, later)
        again = sequence_service.process_due_steps(db, later)

        assert again.processed == 0
        assert len(provider.texts) == 2

    def test_nothing_due_yet(self, db, make_subject, make_sequence):
        subject = make_subject()
        sequence = make_sequence(THREE_STEPS)
        sequence_service.start_sequence(db, subject.id, sequence.id)

        assert sequence_service.process_due_steps(db).processed == 0


class TestAutomaticCancellation:
    def test_response_cancels_only_stop_on_response_sequences(
        self, db, make_subject, make_sequence
    ):
        subject = make_subject()
        stops = make_sequence(THREE_STEPS, stop_on_response=True)
        keeps = make_sequence(THREE_STEPS, stop_on_response=False)
        stopping = sequence_service.start_sequence(db, subject.id, stops.id)
        continuing = sequence_service.start_sequence(db, subject.id, keeps.id)

        cancelled = sequence_service.cancel_on_response(db, subject)

        assert [e.id for e in cancelled] == [stopping.id]
        db.refresh(continuing)
        assert continuing.status == EnrollmentStatus.ACTIVE.value
        assert stopping.cancel_reason == CancelReason.RESPONSE_DETECTED.value
        assert "auto-cancelled: response received" in subject.notes[-1]["text"]

    def test_phase_change_cancels_sequences_bound_to_other_phases(
        self, db, make_subject, make_sequence
    ):
        subject = make_subject()
        intake_seq = make_sequence(THREE_STEPS, trigger_phase="intake")
        manual_seq = make_sequence(THREE_STEPS)
        bound = sequence_service.start_sequence(db, subject.id, intake_seq.id)
        manual = sequence_service.start_sequence(db, subject.id, manual_seq.id)

        cancelled = sequence_service.cancel_on_phase_change(db, subject, "interview")

        assert [e.id for e in cancelled] == [bound.id]
        assert bound.cancel_reason == CancelReason.PHASE_CHANGED.value
        db.refresh(manual)
        assert manual.status == EnrollmentStatus.ACTIVE.value

    def test_auto_enroll_skips_active_and_other_entities(self, db, make_subject, make_sequence):
        subject = make_subject("caregiver")
        matching = make_sequence(THREE_STEPS, trigger_phase="interview")
        make_sequence(THREE_STEPS, trigger_phase="interview", entity_type="client")
        make_sequence(THREE_STEPS, trigger_phase="interview", enabled=False)

        first = sequence_service.auto_enroll(db, subject, "interview")
        second = sequence_service.auto_enroll(db, subject, "interview")

        assert [e.sequence_id for e in first] == [matching.id]
        assert second == []
