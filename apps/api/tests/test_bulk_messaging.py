"""Tests for bulk SMS and bulk email."""

import uuid

import pytest

from carepipeline.core.errors import DeliveryError, NotFoundError, ValidationError
from carepipeline.services.bulk_messaging_service import send_bulk_email, send_bulk_sms


def test_mixed_batch_reports_each_subject(db, make_subject, provider):
    ok = make_subject(first_name="Ana", phone="5551110000")
    no_phone = make_subject(first_name="Bea", phone="12345")
    limited = make_subject(first_name="Cy", phone="5552220000")
    provider.fail_for["+15552220000"] = DeliveryError("Rate limit reached", status_code=429)
    sleeps = []

    summary = send_bulk_sms(
        db,
        [ok.id, no_phone.id, limited.id],
        "Hi {{first_name}}, shifts open this week",
        "ana.recruiter",
        sleep=sleeps.append,
    )

    assert (summary.sent, summary.skipped, summary.failed) == (1, 1, 1)
    statuses = {r.name: (r.status, r.reason) for r in summary.results}
    assert statuses["Ana Lopez"] == ("sent", None)
    assert statuses["Bea Lopez"] == ("skipped", "no valid phone number")
    assert statuses["Cy Lopez"] == ("failed", "Rate limit reached")
    assert provider.texts == [("+15551110000", "Hi Ana, shifts open this week")]
    assert ok.notes[-1]["author"] == "ana.recruiter"
    assert ok.notes[-1]["outcome"] == "sent via RingCentral (bulk)"
    assert no_phone.notes == []
    assert len(sleeps) == 2


def test_requires_ids_and_message(db):
    with pytest.raises(ValidationError):
        send_bulk_sms(db, [], "hi")
    with pytest.raises(ValidationError):
        send_bulk_sms(db, [uuid.uuid4()], "   ")


def test_unknown_ids(db):
    with pytest.raises(NotFoundError):
        send_bulk_sms(db, [uuid.uuid4()], "hi", sleep=lambda s: None)


def test_duplicate_ids_send_once(db, make_subject, provider):
    subject = make_subject()

    summary = send_bulk_sms(db, [subject.id, subject.id], "hi", sleep=lambda s: None)

    assert summary.sent == 1
    assert len(provider.texts) == 1
    assert subject.notes[-1]["author"] == "Bulk SMS"


# =============================================================================
# Bulk email
# =============================================================================

def test_bulk_email_resolves_client_fields_per_subject(db, make_subject, provider):
    client = make_subject(
        "client",
        first_name="Rosa",
        email="rosa@example.com",
        details={"care_recipient_name": "Elena", "contact_name": "Rosa D."},
    )
    no_email = make_subject("client", first_name="Tom", email="  ")

    summary = send_bulk_email(
        db,
        [client.id, no_email.id],
        "Care plan for {{careRecipientName}}",
        "Hi {{contactName}}, we're at the {{phase}} step.",
        "ana.recruiter",
        sleep=lambda s: None,
    )

    assert (summary.sent, summary.skipped, summary.failed) == (1, 1, 0)
    assert provider.emails == [
        ("rosa@example.com", "Care plan for Elena", "Hi Rosa D., we're at the new_lead step.")
    ]
    note = client.notes[-1]
    assert note["type"] == "email"
    assert note["direction"] == "outbound"
    assert note["author"] == "ana.recruiter"
    assert summary.results[1].reason == "no email address"
    assert no_email.notes == []


class RejectingEmailProvider:
    """Rejects one address, accepts the rest."""

    def __init__(self, rejected: str):
        self.rejected = rejected
        self.sent: list[str] = []

    def send_email(self, to_address, subject, body):
        if to_address == self.rejected:
            raise DeliveryError("Resend API error: 422 (invalid address)", status_code=422)
        self.sent.append(to_address)


def test_bulk_email_failure_does_not_stop_the_batch(db, make_subject):
    failing = make_subject(first_name="Ana", email="ana@example.com")
    ok = make_subject(first_name="Bea", email="bea@example.com")
    provider = RejectingEmailProvider("ana@example.com")

    summary = send_bulk_email(
        db, [failing.id, ok.id], "Hi", "Body", provider=provider, sleep=lambda s: None
    )

    assert (summary.sent, summary.failed) == (1, 1)
    assert summary.results[0].reason == "Resend API error: 422 (invalid address)"
    assert provider.sent == ["bea@example.com"]
    assert failing.notes == []
    assert ok.notes[-1]["author"] == "Bulk Email"


def test_bulk_email_requires_subject_and_body(db, make_subject):
    subject = make_subject()
    with pytest.raises(ValidationError):
        send_bulk_email(db, [subject.id], "  ", "Body")
    with pytest.raises(ValidationError):
        send_bulk_email(db, [subject.id], "Hi", "")
