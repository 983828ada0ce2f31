from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol, Sequence

from .conversations import ConversationRecord, MessageRecord
from .phone_numbers import mask_phone_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaseLogResult:
    success: bool
    attempted_at: datetime
    case_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class CaseLogger(Protocol):
    def log_conversation(
        self, conversation: ConversationRecord, messages: Sequence[MessageRecord]
    ) -> CaseLogResult: ...


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_case_description(conversation: ConversationRecord, messages: Sequence[MessageRecord]) -> str:
    lines = [
        f"SMS Conversation with {conversation.phone_number}",
        "",
        f"Conversation started: {_format_timestamp(conversation.created_at)}",
        f"Last updated: {_format_timestamp(conversation.last_activity_at)}",
        f"Total messages: {len(messages)}",
    ]
    if conversation.thread is not None:
        lines.append(f"Chat Thread: {conversation.thread.channel_id} ({conversation.thread.thread_ts})")
    lines.extend(["", "Messages:", "=" * 50, ""])
    for index, message in enumerate(messages, start=1):
        direction = "FROM CUSTOMER" if message.direction == "inbound" else "TO CUSTOMER"
        lines.append(f"[{index}] {direction} ({_format_timestamp(message.created_at)})")
        lines.append(message.content)
        lines.append("")
    return "\n".join(lines)


def case_fields(conversation: ConversationRecord, messages: Sequence[MessageRecord]) -> dict[str, str]:
    return {
        "Subject": f"SMS Conversation with {conversation.phone_number}",
        "Description": format_case_description(conversation, messages),
        "Status": "New",
        "Origin": "SMS",
        "Priority": "Medium",
        "Type": "Question",
        "Phone": conversation.phone_number,
    }


class StubCaseLogger:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._lock = Lock()
        self._counter = count(1)
        self.logged: list[dict[str, Any]] = []

    def log_conversation(
        self, conversation: ConversationRecord, messages: Sequence[MessageRecord]
    ) -> CaseLogResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return CaseLogResult(
                success=False,
                attempted_at=attempted_at,
                error_code="case_logger_disabled",
                error_message="Stub case logging is disabled",
            )
        with self._lock:
            case_id = f"CASE-{next(self._counter):06d}"
            self.logged.append(
                {"case_id": case_id, "conversation_id": conversation.conversation_id, **case_fields(conversation, messages)}
            )
        return CaseLogResult(success=True, attempted_at=attempted_at, case_id=case_id)


class _SalesforceError(Exception):
    """Internal error raised when a Salesforce request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class SalesforceCaseLogger:
    """Creates Salesforce Cases through the REST API.

    Uses a static access token when one is configured, otherwise logs in with
    the OAuth username/password flow on first use and caches the session.
    """

    def __init__(
        self,
        *,
        instance_url: str = "",
        access_token: str = "",
        login_url: str = "https://login.salesforce.com",
        client_id: str = "",
        client_secret: str = "",
        username: str = "",
        password: str = "",
        security_token: str = "",
        api_version: str = "59.0",
        timeout_seconds: int = 30,
    ) -> None:
        self._instance_url = instance_url.strip().rstrip("/")
        self._access_token = access_token.strip()
        self._login_url = login_url.strip().rstrip("/")
        self._client_id = client_id.strip()
        self._client_secret = client_secret.strip()
        self._username = username.strip()
        self._password = password
        self._security_token = security_token.strip()
        self._api_version = api_version.strip().lstrip("v")
        self._timeout_seconds = timeout_seconds
        self._auth_lock = Lock()
        has_token = bool(self._access_token and self._instance_url)
        has_password_flow = all((self._client_id, self._client_secret, self._username, self._password))
        if not has_token and not has_password_flow:
            raise ValueError("either access_token and instance_url or OAuth password credentials are required")

    def log_conversation(
        self, conversation: ConversationRecord, messages: Sequence[MessageRecord]
    ) -> CaseLogResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            instance_url, token = self._session()
            response = self._request(
                "POST",
                f"{instance_url}/services/data/v{self._api_version}/sobjects/Case/",
                body=json.dumps(case_fields(conversation, messages)).encode("utf-8"),
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        except _SalesforceError as exc:
            logger.warning(
                "salesforce case creation failed for %s: %s",
                mask_phone_number(conversation.phone_number),
                exc.message,
            )
            if exc.error_code == "http_401":
                self._forget_session()
            return CaseLogResult(
                success=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=exc.message,
            )

        if not response.get("success") or not response.get("id"):
            errors = response.get("errors") or []
            message = errors[0].get("message") if errors and isinstance(errors[0], dict) else "case was not created"
            return CaseLogResult(
                success=False,
                attempted_at=attempted_at,
                error_code="case_not_created",
                error_message=str(message),
            )
        return CaseLogResult(success=True, attempted_at=attempted_at, case_id=str(response["id"]))

    def _session(self) -> tuple[str, str]:
        with self._auth_lock:
            if self._access_token and self._instance_url:
                return self._instance_url, self._access_token
            form = urllib.parse.urlencode(
                {
                    "grant_type": "password",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "username": self._username,
                    "password": f"{self._password}{self._security_token}",
                }
            ).encode("utf-8")
            data = self._request(
                "POST",
                f"{self._login_url}/services/oauth2/token",
                body=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            token = data.get("access_token")
            instance_url = data.get("instance_url")
            if not token or not instance_url:
                raise _SalesforceError("auth_failed", "Salesforce login returned no access token")
            self._access_token = str(token)
            self._instance_url = str(instance_url).rstrip("/")
            return self._instance_url, self._access_token

    def _forget_session(self) -> None:
        # Only sessions obtained through the password flow can be renewed.
        if self._client_id and self._username:
            with self._auth_lock:
                self._access_token = ""

    def _request(self, method: str, url: str, *, body: bytes, headers: dict[str, str]) -> dict[str, Any]:
        request = urllib.request.Request(url, data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _SalesforceError(
                error_code=f"http_{exc.code}",
                message=_describe_http_error(exc),
            ) from exc
        except urllib.error.URLError as exc:
            raise _SalesforceError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _SalesforceError(
                error_code="timeout",
                message=f"Request timed out after {self._timeout_seconds}s",
            ) from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise _SalesforceError(
                error_code="invalid_response",
                message="Salesforce returned an invalid JSON response",
            ) from exc


def _describe_http_error(exc: urllib.error.HTTPError) -> str:
    detail = f"HTTP {exc.code}: {exc.reason}"
    if exc.fp is None:
        return detail
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return detail
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        return f"{detail} ({payload[0].get('message', '')})".rstrip()
    if isinstance(payload, dict) and payload.get("error_description"):
        return f"{detail} ({payload['error_description']})"
    return detail
