from __future__ import annotations

import json
import urllib.error
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from sms_bridge.cases import SalesforceCaseLogger, StubCaseLogger, case_fields, format_case_description
from sms_bridge.conversations import ConversationRecord, MessageRecord, ThreadHandle


def _mock_response(body: object) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _conversation(*, thread: ThreadHandle | None = None) -> ConversationRecord:
    return ConversationRecord(
        conversation_id="conv-1",
        phone_number="+15551234567",
        created_at=datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc),
        last_activity_at=datetime(2026, 3, 1, 9, 5, 0, tzinfo=timezone.utc),
        thread=thread,
    )


def _messages() -> list[MessageRecord]:
    return [
        MessageRecord(
            message_id="m1",
            conversation_id="conv-1",
            content="My order is late",
            direction="inbound",
            created_at=datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc),
        ),
        MessageRecord(
            message_id="m2",
            conversation_id="conv-1",
            content="Checking now",
            direction="outbound",
            created_at=datetime(2026, 3, 1, 9, 5, 0, tzinfo=timezone.utc),
        ),
    ]


def test_format_case_description() -> None:
    description = format_case_description(
        _conversation(thread=ThreadHandle(channel_id="D123", thread_ts="1700000000.000001")),
        _messages(),
    )

    lines = description.splitlines()
    assert lines[0] == "SMS Conversation with +15551234567"
    assert "Conversation started: 2026-03-01 09:00:00 UTC" in lines
    assert "Total messages: 2" in lines
    assert "Chat Thread: D123 (1700000000.000001)" in lines
    assert "[1] FROM CUSTOMER (2026-03-01 09:00:00 UTC)" in lines
    assert "[2] TO CUSTOMER (2026-03-01 09:05:00 UTC)" in lines
    assert lines[lines.index("[2] TO CUSTOMER (2026-03-01 09:05:00 UTC)") + 1] == "Checking now"


def test_case_fields() -> None:
    fields = case_fields(_conversation(), _messages())

    assert fields["Subject"] == "SMS Conversation with +15551234567"
    assert fields["Origin"] == "SMS"
    assert fields["Status"] == "New"
    assert fields["Phone"] == "+15551234567"
    assert "Chat Thread" not in fields["Description"]


def test_stub_case_logger_assigns_sequential_ids() -> None:
    logger = StubCaseLogger()

    first = logger.log_conversation(_conversation(), _messages())
    second = logger.log_conversation(_conversation(), _messages())

    assert (first.case_id, second.case_id) == ("CASE-000001", "CASE-000002")
    assert StubCaseLogger(enabled=False).log_conversation(_conversation(), []).success is False


@patch("sms_bridge.cases.urllib.request.urlopen")
def test_salesforce_creates_case_with_static_token(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"id": "500xx000001", "success": True, "errors": []})
    logger = SalesforceCaseLogger(instance_url="https://acme.my.salesforce.test/", access_token="sf-token")

    result = logger.log_conversation(_conversation(), _messages())

    assert result.success is True
    assert result.case_id == "500xx000001"
    request = mock_urlopen.call_args[0][0]
    assert request.full_url == "https://acme.my.salesforce.test/services/data/v59.0/sobjects/Case/"
    assert request.get_header("Authorization") == "Bearer sf-token"
    assert json.loads(request.data)["Subject"] == "SMS Conversation with +15551234567"


@patch("sms_bridge.cases.urllib.request.urlopen")
def test_salesforce_password_flow_logs_in_once(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = [
        _mock_response({"access_token": "session-1", "instance_url": "https://acme.my.salesforce.test"}),
        _mock_response({"id": "500xx000001", "success": True, "errors": []}),
        _mock_response({"id": "500xx000002", "success": True, "errors": []}),
    ]
    logger = SalesforceCaseLogger(
        client_id="client",
        client_secret="secret",
        username="bot@acme.test",
        password="pw",
        security_token="tok",
    )

    first = logger.log_conversation(_conversation(), _messages())
    second = logger.log_conversation(_conversation(), _messages())

    assert (first.case_id, second.case_id) == ("500xx000001", "500xx000002")
    urls = [call[0][0].full_url for call in mock_urlopen.call_args_list]
    assert urls[0] == "https://login.salesforce.com/services/oauth2/token"
    assert urls.count("https://login.salesforce.com/services/oauth2/token") == 1
    assert b"password=pwtok" in mock_urlopen.call_args_list[0][0][0].data


@patch("sms_bridge.cases.urllib.request.urlopen")
def test_salesforce_http_error_is_reported(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://acme.my.salesforce.test/services/data/v59.0/sobjects/Case/",
        code=401,
        msg="Unauthorized",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )
    logger = SalesforceCaseLogger(instance_url="https://acme.my.salesforce.test", access_token="expired")

    result = logger.log_conversation(_conversation(), _messages())

    assert result.success is False
    assert result.error_code == "http_401"
    assert result.case_id is None


@patch("sms_bridge.cases.urllib.request.urlopen")
def test_salesforce_rejected_case_is_reported(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(
        {"success": False, "errors": [{"message": "Required fields are missing"}]}
    )
    logger = SalesforceCaseLogger(instance_url="https://acme.my.salesforce.test", access_token="sf-token")

    result = logger.log_conversation(_conversation(), _messages())

    assert result.success is False
    assert result.error_code == "case_not_created"
    assert result.error_message == "Required fields are missing"


def test_salesforce_requires_credentials() -> None:
    with pytest.raises(ValueError):
        SalesforceCaseLogger()
