"""Outbound messaging provider - RingCentral for SMS, Resend for email.

Every failure surfaces as DeliveryError. Nothing here retries; callers
decide whether to (bulk sends back off on 429, automation does not).
"""

from __future__ import annotations

import base64
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx

from carepipeline.core.config import settings
from carepipeline.core.errors import DeliveryError
from carepipeline.db.enums import NoteSource
from carepipeline.services.timeline_service import CommunicationEvent, to_epoch_ms
from carepipeline.utils.normalization import normalize_phone

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RINGCENTRAL_TOKEN_PATH = "/restapi/oauth/token"
RINGCENTRAL_SMS_PATH = "/restapi/v1.0/account/~/extension/~/sms"
RINGCENTRAL_MESSAGE_STORE_PATH = "/restapi/v1.0/account/~/extension/~/message-store"

# Refresh the cached access token this long before it actually expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class MessagingProvider(Protocol):
    def send_text(self, to_phone: str, text: str) -> None:
        """Deliver an SMS. Raises DeliveryError."""

    def send_email(self, to_address: str, subject: str, body: str) -> None:
        """Deliver an email. Raises DeliveryError."""

    def fetch_history(self, phone: str, days_back: int = 30) -> list[CommunicationEvent]:
        """Provider-side SMS history for a phone. Raises DeliveryError."""


class RingCentralResendProvider:
    """SMS + message history via RingCentral, email via Resend."""

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._lock = threading.Lock()

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    # -------------------------------------------------------------------------
    # RingCentral
    # -------------------------------------------------------------------------

    def _access_token(self, client: httpx.Client) -> str:
        if not settings.ringcentral_configured:
            raise DeliveryError("RingCentral credentials not configured")

        with self._lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            basic = base64.b64encode(
                f"{settings.RINGCENTRAL_CLIENT_ID}:{settings.RINGCENTRAL_CLIENT_SECRET}".encode()
            ).decode()
            response = client.post(
                f"{settings.RINGCENTRAL_API_URL}{RINGCENTRAL_TOKEN_PATH}",
                headers={"Authorization": f"Basic {basic}"},
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": settings.RINGCENTRAL_JWT_TOKEN,
                },
            )
            if response.status_code != 200:
                raise DeliveryError(
                    f"RingCentral auth failed: {response.status_code}",
                    status_code=response.status_code,
                )
            try:
                data = response.json()
                token = data["access_token"]
                expires_in = int(data.get("expires_in") or 3600)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                raise DeliveryError("RingCentral auth returned an unexpected response") from exc
            self._token = token
            self._token_expires_at = (
                time.monotonic() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
            )
            return self._token

    def send_text(self, to_phone: str, text: str) -> None:
        normalized = normalize_phone(to_phone)
        if not normalized:
            raise DeliveryError("No valid phone number")
        from_number = normalize_phone(settings.RINGCENTRAL_FROM_NUMBER) or settings.RINGCENTRAL_FROM_NUMBER
        if not from_number:
            raise DeliveryError("RingCentral from number not configured")

        try:
            with self._client() as client:
                token = self._access_token(client)
                response = client.post(
                    f"{settings.RINGCENTRAL_API_URL}{RINGCENTRAL_SMS_PATH}",
                    headers={"Authorization": f"Bearer {token}"},
                    json={
                        "from": {"phoneNumber": from_number},
                        "to": [{"phoneNumber": normalized}],
                        "text": text,
                    },
                )
        except httpx.TimeoutException as exc:
            raise DeliveryError("Connection timeout", retryable=True) from exc
        except httpx.RequestError as exc:
            raise DeliveryError(
                f"Connection error: {exc.__class__.__name__}", retryable=True
            ) from exc

        if response.status_code == 429:
            raise DeliveryError("Rate limit reached", status_code=429, retryable=True)
        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"RingCentral API error: {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )

    def fetch_history(self, phone: str, days_back: int = 30) -> list[CommunicationEvent]:
        normalized = normalize_phone(phone)
        if not normalized:
            return []
        date_from = (datetime.now(timezone.utc) - timedelta(days=days_back)).isoformat()

        try:
            with self._client() as client:
                token = self._access_token(client)
                response = client.get(
                    f"{settings.RINGCENTRAL_API_URL}{RINGCENTRAL_MESSAGE_STORE_PATH}",
                    headers={"Authorization": f"Bearer {token}"},
                    params={
                        "messageType": "SMS",
                        "phoneNumber": normalized,
                        "dateFrom": date_from,
                        "perPage": 100,
                    },
                )
        except httpx.RequestError as exc:
            raise DeliveryError(
                f"Connection error: {exc.__class__.__name__}", retryable=True
            ) from exc

        if response.status_code != 200:
            raise DeliveryError(
                f"RingCentral message store error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            records = response.json().get("records") or []
        except (ValueError, AttributeError) as exc:
            raise DeliveryError("RingCentral message store returned an unexpected response") from exc

        events = []
        for record in records:
            if not isinstance(record, dict):
                continue
            ts = to_epoch_ms(record.get("creationTime"))
            if ts is None:
                continue
            events.append(
                CommunicationEvent(
                    source=NoteSource.PROVIDER.value,
                    type="text",
                    direction=(record.get("direction") or "").lower() or None,
                    timestamp=ts,
                    text=record.get("subject") or "",
                )
            )
        return events

    # -------------------------------------------------------------------------
    # Resend
    # -------------------------------------------------------------------------

    def send_email(self, to_address: str, subject: str, body: str) -> None:
        if not settings.RESEND_API_KEY or not settings.RESEND_FROM_EMAIL:
            raise DeliveryError("Email provider not configured")
        if not to_address:
            raise DeliveryError("No email address")

        payload = {
            "from": settings.RESEND_FROM_EMAIL,
            "to": [to_address],
            "subject": subject,
            "text": body,
        }
        headers = {
            "Authorization": f"Bearer {settings.RESEND_API_KEY}",
            "Content-Type": "application/json",
        }

        try:
            with self._client() as client:
                response = client.post(RESEND_SEND_URL, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise DeliveryError("Connection timeout", retryable=True) from exc
        except httpx.RequestError as exc:
            raise DeliveryError(
                f"Connection error: {exc.__class__.__name__}", retryable=True
            ) from exc

        if 200 <= response.status_code < 300:
            return

        error_detail = None
        try:
            data = response.json()
            if isinstance(data, dict):
                error_detail = data.get("message") or data.get("error")
        except ValueError:
            pass

        error_msg = f"Resend API error: {response.status_code}"
        if error_detail:
            error_msg = f"{error_msg} ({error_detail})"
        raise DeliveryError(
            error_msg,
            status_code=response.status_code,
            retryable=response.status_code == 429 or response.status_code >= 500,
        )


provider: MessagingProvider = RingCentralResendProvider()
