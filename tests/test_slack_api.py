from __future__ import annotations

import json
import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from sms_bridge import api as api_module
from sms_bridge.chat_views import (
    LOG_TO_CASE_ACTION,
    OPEN_CONVERSATION_ACTION,
    SENDER_NUMBER_BLOCK,
    SENDER_NUMBER_INPUT,
    SENDER_NUMBER_MODAL,
    SET_SENDER_NUMBER_ACTION,
    SETUP_REQUIRED_TEXT,
)
from sms_bridge.config import get_settings
from sms_bridge.main import create_app
from sms_bridge.webhook_security import slack_signature_for

PREFIX = "/api/v1"
AGENT = "U123"


def _client(monkeypatch: pytest.MonkeyPatch, **env: str) -> TestClient:
    defaults = {
        "RUNTIME_SECRET_GUARD_MODE": "off",
        "CONVERSATION_STORE_BACKEND": "inmemory",
        "CARRIER_SENDER_TYPE": "stub",
        "CHAT_CLIENT_TYPE": "stub",
        "CASE_LOGGER_TYPE": "stub",
        "SMS_WEBHOOK_SIGNATURE_MODE": "off",
        "SLACK_SIGNATURE_MODE": "off",
    }
    for key, value in {**defaults, **env}.items():
        monkeypatch.setenv(key, value)
    api_module.configure_runtime(get_settings())
    api_module.reset_runtime_state_for_tests()
    return TestClient(create_app())


def _inbound(client: TestClient, body: str = "Hello") -> str:
    response = client.post(f"{PREFIX}/webhooks/sms/inbound", data={"From": "+15551234567", "Body": body})
    assert response.status_code == 200
    return response.json()["conversation_id"]


def _interact(client: TestClient, payload: dict[str, Any]) -> Any:
    return client.post(f"{PREFIX}/slack/interactions", data={"payload": json.dumps(payload)})


def _block_action(action_id: str, value: str, **extra: Any) -> dict[str, Any]:
    return {
        "type": "block_actions",
        "user": {"id": AGENT},
        "actions": [{"action_id": action_id, "value": value}],
        **extra,
    }


def test_url_verification_echoes_challenge(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = client.post(f"{PREFIX}/slack/events", json={"type": "url_verification", "challenge": "abc123"})

    assert response.status_code == 200
    assert response.json() == {"challenge": "abc123"}


def test_open_conversation_button_then_thread_reply_sends_sms(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    conversation_id = _inbound(client)
    api_module.conversation_repo.set_sender_identity(AGENT, "+15550001111")

    opened = _interact(client, _block_action(OPEN_CONVERSATION_ACTION, conversation_id))
    assert opened.status_code == 200

    handle = api_module.conversation_repo.get_conversation(conversation_id).thread
    assert handle is not None
    reply = client.post(
        f"{PREFIX}/slack/events",
        json={
            "type": "event_callback",
            "event": {
                "type": "message",
                "channel": handle.channel_id,
                "thread_ts": handle.thread_ts,
                "ts": "1700000000.000900",
                "user": AGENT,
                "text": "We will call you shortly",
            },
        },
    )

    assert reply.status_code == 200
    assert reply.json() == {"ok": True}
    assert api_module.carrier_sender.sent[-1]["body"] == "We will call you shortly"
    assert api_module.carrier_sender.sent[-1]["from"] == "+15550001111"
    messages = api_module.conversation_repo.list_messages(conversation_id)
    assert [message.direction for message in messages] == ["inbound", "outbound"]


def test_bot_and_top_level_messages_are_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    conversation_id = _inbound(client)
    api_module.conversation_repo.set_sender_identity(AGENT, "+15550001111")
    _interact(client, _block_action(OPEN_CONVERSATION_ACTION, conversation_id))
    handle = api_module.conversation_repo.get_conversation(conversation_id).thread
    assert handle is not None

    for event in (
        {
            "type": "message",
            "channel": handle.channel_id,
            "thread_ts": handle.thread_ts,
            "ts": "1.1",
            "bot_id": "B1",
            "text": "bot",
        },
        {"type": "message", "channel": handle.channel_id, "ts": "1.2", "user": AGENT, "text": "top level"},
        {
            "type": "message",
            "subtype": "message_changed",
            "channel": handle.channel_id,
            "thread_ts": handle.thread_ts,
            "ts": "1.3",
            "user": AGENT,
            "text": "edited",
        },
    ):
        response = client.post(f"{PREFIX}/slack/events", json={"type": "event_callback", "event": event})
        assert response.status_code == 200

    assert api_module.carrier_sender.sent == []


def test_app_home_opened_publishes_home(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    _inbound(client)

    response = client.post(
        f"{PREFIX}/slack/events",
        json={"type": "event_callback", "event": {"type": "app_home_opened", "user": AGENT, "tab": "home"}},
    )

    assert response.status_code == 200
    view = api_module.chat_client.home_views[-1]["view"]
    assert view["type"] == "home"
    assert any("+15551234567" in json.dumps(block) for block in view["blocks"])


def test_log_to_case_button_logs_once(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    conversation_id = _inbound(client)

    _interact(client, _block_action(LOG_TO_CASE_ACTION, conversation_id))
    _interact(client, _block_action(LOG_TO_CASE_ACTION, conversation_id))

    assert len(api_module.case_logger.logged) == 1
    assert api_module.conversation_repo.get_conversation(conversation_id).case_reference == "CASE-000001"
    assert "already been logged" in api_module.chat_client.ephemerals[-1]["text"]


def test_set_sender_number_button_opens_modal(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = _interact(client, _block_action(SET_SENDER_NUMBER_ACTION, "set", trigger_id="trigger-1"))

    assert response.status_code == 200
    assert api_module.chat_client.opened_views[-1]["view"]["callback_id"] == SENDER_NUMBER_MODAL


def _modal_submission(phone_number: str) -> dict[str, Any]:
    return {
        "type": "view_submission",
        "user": {"id": AGENT},
        "view": {
            "callback_id": SENDER_NUMBER_MODAL,
            "state": {"values": {SENDER_NUMBER_BLOCK: {SENDER_NUMBER_INPUT: {"value": phone_number}}}},
        },
    }


def test_sender_number_modal_rejects_invalid_number(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = _interact(client, _modal_submission("call me"))

    assert response.status_code == 200
    assert response.json() == {
        "response_action": "errors",
        "errors": {SENDER_NUMBER_BLOCK: "Please enter a valid phone number."},
    }
    assert api_module.conversation_repo.get_sender_identity(AGENT) is None


def test_sender_number_modal_saves_number(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = _interact(client, _modal_submission("+1 (555) 000-1111"))

    assert response.status_code == 200
    identity = api_module.conversation_repo.get_sender_identity(AGENT)
    assert identity is not None
    assert identity.phone_number == "+15550001111"


def test_sms_command_without_sender_number_prompts_setup(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = client.post(
        f"{PREFIX}/slack/commands",
        data={"command": "/sms", "text": "send +15551234567 Hello from support", "user_id": AGENT, "channel_id": "C1"},
    )

    assert response.status_code == 200
    assert response.json() == {"response_type": "ephemeral", "text": "📤 Sending SMS to +15551234567..."}
    assert api_module.chat_client.ephemerals[-1] == {"user_id": AGENT, "text": SETUP_REQUIRED_TEXT, "channel_id": "C1"}
    assert api_module.carrier_sender.sent == []


def test_sms_command_sends_message(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)
    api_module.conversation_repo.set_sender_identity(AGENT, "+15550001111")

    client.post(
        f"{PREFIX}/slack/commands",
        data={"command": "/sms", "text": "send 555-123-4567 Hello from support", "user_id": AGENT},
    )

    assert api_module.carrier_sender.sent[-1]["to"] == "+15551234567"
    assert api_module.carrier_sender.sent[-1]["body"] == "Hello from support"


def test_sms_command_usage(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch)

    response = client.post(f"{PREFIX}/slack/commands", data={"command": "/sms", "text": "help", "user_id": AGENT})

    assert response.json() == {"response_type": "ephemeral", "text": api_module.SMS_COMMAND_USAGE}


def test_slack_signature_is_enforced(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client(monkeypatch, SLACK_SIGNATURE_MODE="enforce", SLACK_SIGNING_SECRET="slack-secret-001")
    body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode("utf-8")
    timestamp = str(int(time.time()))

    unsigned = client.post(f"{PREFIX}/slack/events", content=body, headers={"Content-Type": "application/json"})
    signed = client.post(
        f"{PREFIX}/slack/events",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Slack-Request-Timestamp": timestamp,
            "X-Slack-Signature": slack_signature_for(
                signing_secret="slack-secret-001", timestamp=timestamp, body=body
            ),
        },
    )

    assert unsigned.status_code == 403
    assert signed.status_code == 200
    assert signed.json() == {"challenge": "abc123"}


def test_parse_sms_command() -> None:
    assert api_module.parse_sms_command("send +15551234567 hello there") == ("+15551234567", "hello there")
    assert api_module.parse_sms_command("SEND 5551234567 hi") == ("5551234567", "hi")
    assert api_module.parse_sms_command("send +15551234567") is None
    assert api_module.parse_sms_command("") is None
