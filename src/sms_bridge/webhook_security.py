from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Mapping

from twilio.request_validator import RequestValidator

from .config import Settings


class WebhookVerification:
    def __init__(self, *, verified: bool, reason: str | None = None) -> None:
        self.verified = verified
        self.reason = reason


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def verify_twilio_signature(
    *,
    settings: Settings,
    url: str,
    form_data: Mapping[str, str],
    headers: Mapping[str, str],
) -> WebhookVerification:
    if settings.sms_webhook_signature_mode == "off":
        return WebhookVerification(verified=True)

    auth_token = settings.twilio_auth_token.strip()
    if not auth_token:
        return WebhookVerification(verified=False, reason="twilio_auth_token_missing")

    provided = _normalize_header_value(headers, "X-Twilio-Signature")
    if provided is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    validator = RequestValidator(auth_token)
    if not validator.validate(url, dict(form_data), provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)


def slack_signature_for(*, signing_secret: str, timestamp: str, body: bytes) -> str:
    base = f"v0:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(signing_secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"v0={digest}"


def verify_slack_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> WebhookVerification:
    if settings.slack_signature_mode == "off":
        return WebhookVerification(verified=True)

    signing_secret = settings.slack_signing_secret.strip()
    if not signing_secret:
        return WebhookVerification(verified=False, reason="slack_signing_secret_missing")

    provided = _normalize_header_value(headers, "X-Slack-Signature")
    timestamp = _normalize_header_value(headers, "X-Slack-Request-Timestamp")
    if provided is None or timestamp is None:
        return WebhookVerification(verified=False, reason="signature_missing")

    try:
        event_epoch = int(timestamp)
    except ValueError:
        return WebhookVerification(verified=False, reason="timestamp_invalid")

    now_epoch = int((now or datetime.now(timezone.utc)).timestamp())
    if abs(now_epoch - event_epoch) > max(0, settings.slack_signature_max_age_seconds):
        return WebhookVerification(verified=False, reason="timestamp_out_of_window")

    expected = slack_signature_for(signing_secret=signing_secret, timestamp=timestamp, body=body)
    if not hmac.compare_digest(expected, provided):
        return WebhookVerification(verified=False, reason="signature_mismatch")

    return WebhookVerification(verified=True)
