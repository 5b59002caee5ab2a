"""Tests for the inbound SMS and intake webhooks."""

import pytest

from carepipeline.db.enums import TriggerType
from carepipeline.db.models import InboundMessageLog, Subject


def _notification(message_id="rc-100", direction="Inbound", sender="+15551234567"):
    return {
        "uuid": "evt-1",
        "event": "/restapi/v1.0/account/~/extension/~/message-store/instant?type=SMS",
        "body": {
            "id": message_id,
            "direction": direction,
            "from": {"phoneNumber": sender},
            "to": [{"phoneNumber": "+15559990000"}],
            "subject": "Yes, still interested",
        },
    }


# =============================================================================
# Inbound SMS
# =============================================================================

@pytest.mark.asyncio
async def test_validation_token_is_echoed(client):
    response = await client.post(
        "/webhooks/inbound-sms", headers={"Validation-Token": "abc123"}
    )

    assert response.status_code == 200
    assert response.headers["Validation-Token"] == "abc123"


@pytest.mark.asyncio
async def test_outbound_messages_are_skipped(client, db):
    response = await client.post("/webhooks/inbound-sms", json=_notification(direction="Outbound"))

    assert response.json() == {"skipped": True, "reason": "Not an inbound message"}
    assert db.query(InboundMessageLog).count() == 0


@pytest.mark.asyncio
async def test_invalid_json(client):
    response = await client.post(
        "/webhooks/inbound-sms",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON"}


@pytest.mark.asyncio
async def test_missing_sender_is_skipped(client):
    payload = _notification()
    del payload["body"]["from"]

    response = await client.post("/webhooks/inbound-sms", json=payload)

    assert response.status_code == 200
    assert response.json()["skipped"] is True


@pytest.mark.asyncio
async def test_inbound_message_routed_once(client, make_subject, make_rule, provider):
    subject = make_subject(first_name="Dana")
    make_rule(TriggerType.INBOUND_SMS.value, message_template="Thanks {{first_name}}!")

    first = await client.post("/webhooks/inbound-sms", json=_notification())
    second = await client.post("/webhooks/inbound-sms", json=_notification())

    body = first.json()
    assert body["success"] is True
    assert body["matched"] == 1
    assert body["entities"] == [
        {"type": "caregiver", "id": str(subject.id), "name": "Dana Lopez"}
    ]
    assert body["automation_fired"] is True
    assert second.json() == {"skipped": True, "reason": "Duplicate message"}
    assert provider.texts == [("+15551234567", "Thanks Dana!")]


# =============================================================================
# Intake
# =============================================================================

@pytest.mark.asyncio
async def test_intake_health(client):
    response = await client.get("/webhooks/intake")

    assert response.json() == {"status": "ok", "service": "intake-webhook", "version": 1}


@pytest.mark.asyncio
async def test_intake_hub_challenge(client, intake_key):
    response = await client.get(
        "/webhooks/intake",
        params={"hub.mode": "subscribe", "hub.verify_token": intake_key.key, "hub.challenge": "42"},
    )

    assert response.status_code == 200
    assert response.text == "42"


@pytest.mark.asyncio
async def test_intake_hub_challenge_rejects_unknown_token(client):
    response = await client.get(
        "/webhooks/intake",
        params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"},
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_intake_creates_subject_with_header_key(client, db, intake_key):
    response = await client.post(
        "/webhooks/intake",
        json={"name": "Rosa Diaz", "email-1": "Rosa@Example.com", "care_needs": "Mornings"},
        headers={"X-API-Key": intake_key.key},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["duplicate"] is False
    subject = db.query(Subject).filter(Subject.first_name == "Rosa").one()
    assert body["subject_id"] == str(subject.id)
    assert subject.entity_type == "client"


@pytest.mark.asyncio
async def test_intake_duplicate_via_query_key(client, make_subject, intake_key):
    existing = make_subject("client", first_name="Rosa", email="rosa@example.com")

    response = await client.post(
        "/webhooks/intake",
        params={"api_key": intake_key.key},
        json={"email": "ROSA@example.com", "first_name": "Rosa"},
    )

    assert response.status_code == 200
    assert response.json()["duplicate"] is True
    assert response.json()["subject_id"] == str(existing.id)


@pytest.mark.asyncio
async def test_intake_key_in_body(client, intake_key):
    response = await client.post(
        "/webhooks/intake",
        json={"api_key": intake_key.key, "phone": "555-222-3333"},
    )

    assert response.status_code == 201


@pytest.mark.asyncio
async def test_intake_requires_key(client):
    response = await client.post("/webhooks/intake", json={"first_name": "Rosa"})

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_API_KEY"


@pytest.mark.asyncio
async def test_intake_invalid_json(client, intake_key):
    response = await client.post(
        "/webhooks/intake",
        content=b"{broken",
        headers={"X-API-Key": intake_key.key, "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_BODY"
