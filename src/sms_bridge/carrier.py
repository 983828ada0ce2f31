from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from .phone_numbers import is_valid_phone_number, mask_phone_number, normalize_phone_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CarrierSendResult:
    success: bool
    attempted_at: datetime
    message_id: str | None = None
    status: str | None = None
    to: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class CarrierAccountInfo:
    success: bool
    account: dict[str, str] | None = None
    phone_numbers: tuple[str, ...] = ()
    error_message: str | None = None


class CarrierSender(Protocol):
    def send_sms(self, *, to: str, body: str, from_number: str | None = None) -> CarrierSendResult: ...

    def describe_account(self) -> CarrierAccountInfo: ...


def _invalid_destination(attempted_at: datetime) -> CarrierSendResult:
    return CarrierSendResult(
        success=False,
        attempted_at=attempted_at,
        error_code="invalid_phone_number",
        error_message="Invalid phone number format",
    )


class StubCarrierSender:
    """Carrier used when no live SMS account is configured.

    Accepted sends are kept in ``sent`` so local runs and tests can inspect
    what would have gone out.
    """

    def __init__(self, *, enabled: bool = True, default_from: str = "") -> None:
        self._enabled = enabled
        self._default_from = default_from
        self._counter = 0
        self.sent: list[dict[str, str]] = []

    def send_sms(self, *, to: str, body: str, from_number: str | None = None) -> CarrierSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not is_valid_phone_number(to):
            return _invalid_destination(attempted_at)

        if not self._enabled:
            return CarrierSendResult(
                success=False,
                attempted_at=attempted_at,
                error_code="carrier_disabled",
                error_message="Stub carrier delivery is disabled",
            )

        formatted = normalize_phone_number(to)
        self._counter += 1
        message_id = f"SMstub{self._counter:06d}{int(attempted_at.timestamp())}"
        self.sent.append(
            {
                "to": formatted,
                "body": body,
                "from": from_number or self._default_from,
                "message_id": message_id,
            }
        )
        logger.info("stub carrier accepted sms to %s (%s)", mask_phone_number(formatted), message_id)
        return CarrierSendResult(
            success=True,
            attempted_at=attempted_at,
            message_id=message_id,
            status="queued",
            to=formatted,
        )

    def describe_account(self) -> CarrierAccountInfo:
        return CarrierAccountInfo(
            success=True,
            account={"friendly_name": "Stub carrier", "status": "active" if self._enabled else "disabled"},
            phone_numbers=(self._default_from,) if self._default_from else (),
        )


class TwilioCarrierSender:
    """Carrier that sends through the Twilio Messaging API."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        default_from: str,
        client: Any | None = None,
    ) -> None:
        if not account_sid.strip():
            raise ValueError("account_sid must not be empty")
        if not auth_token.strip():
            raise ValueError("auth_token must not be empty")
        self._account_sid = account_sid.strip()
        self._default_from = default_from.strip()
        self._client = client if client is not None else Client(self._account_sid, auth_token.strip())

    def send_sms(self, *, to: str, body: str, from_number: str | None = None) -> CarrierSendResult:
        attempted_at = datetime.now(timezone.utc)
        if not is_valid_phone_number(to):
            return _invalid_destination(attempted_at)

        sender = (from_number or self._default_from).strip()
        if not sender:
            return CarrierSendResult(
                success=False,
                attempted_at=attempted_at,
                error_code="sender_missing",
                error_message="No sender phone number configured",
            )

        formatted = normalize_phone_number(to)
        try:
            message = self._client.messages.create(body=body, from_=sender, to=formatted)
        except TwilioRestException as exc:
            logger.warning("twilio rejected sms to %s: %s", mask_phone_number(formatted), exc.msg)
            return CarrierSendResult(
                success=False,
                attempted_at=attempted_at,
                to=formatted,
                error_code=f"twilio_{exc.code}" if exc.code else f"http_{exc.status}",
                error_message=str(exc.msg),
            )
        except (TwilioException, OSError) as exc:
            logger.warning("twilio request failed for %s: %s", mask_phone_number(formatted), exc)
            return CarrierSendResult(
                success=False,
                attempted_at=attempted_at,
                to=formatted,
                error_code="connection_error",
                error_message=str(exc),
            )

        return CarrierSendResult(
            success=True,
            attempted_at=attempted_at,
            message_id=message.sid,
            status=message.status,
            to=formatted,
        )

    def describe_account(self) -> CarrierAccountInfo:
        """Fetch the account summary and its incoming numbers for the diagnostics endpoint."""
        try:
            account = self._client.api.accounts(self._account_sid).fetch()
            numbers = self._client.incoming_phone_numbers.list(limit=20)
        except TwilioRestException as exc:
            logger.warning("twilio account lookup failed: %s", exc.msg)
            return CarrierAccountInfo(success=False, error_message=str(exc.msg))
        except (TwilioException, OSError) as exc:
            logger.warning("twilio account lookup failed: %s", exc)
            return CarrierAccountInfo(success=False, error_message=str(exc))

        return CarrierAccountInfo(
            success=True,
            account={
                "friendly_name": str(account.friendly_name),
                "status": str(account.status),
                "type": str(account.type),
            },
            phone_numbers=tuple(str(number.phone_number) for number in numbers),
        )
