from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sms_bridge.chat_views import (
    LOG_TO_CASE_ACTION,
    OPEN_CONVERSATION_ACTION,
    SET_SENDER_NUMBER_ACTION,
    history_blocks,
    home_view,
    time_ago,
)
from sms_bridge.conversations import ConversationHistory, ConversationRecord, MessageRecord, SenderIdentityRecord

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _conversation(*, logged: bool = False) -> ConversationRecord:
    return ConversationRecord(
        conversation_id="conv-1",
        phone_number="+15551234567",
        created_at=NOW,
        last_activity_at=NOW,
        logged_to_case=logged,
        case_reference="CASE-000001" if logged else None,
    )


def _action_ids(view: dict) -> list[str]:
    return [
        element["action_id"]
        for block in view["blocks"]
        if block["type"] == "actions"
        for element in block["elements"]
    ]


def test_time_ago() -> None:
    assert time_ago(NOW - timedelta(seconds=30), now=NOW) == "just now"
    assert time_ago(NOW - timedelta(minutes=5), now=NOW) == "5m ago"
    assert time_ago(NOW - timedelta(hours=3), now=NOW) == "3h ago"
    assert time_ago(NOW - timedelta(days=2), now=NOW) == "2d ago"


def test_history_blocks_without_messages() -> None:
    blocks = history_blocks(_conversation(), [])

    assert blocks[0]["text"]["text"] == "*Recent Messages:*\n_No messages yet._"


def test_home_view_prompts_for_sender_number() -> None:
    view = home_view([], None)

    assert view["type"] == "home"
    accessories = [block["accessory"]["action_id"] for block in view["blocks"] if "accessory" in block]
    assert accessories == [SET_SENDER_NUMBER_ACTION]
    assert any("No SMS conversations yet" in str(block) for block in view["blocks"])


def test_home_view_hides_log_button_for_logged_conversations() -> None:
    message = MessageRecord(
        message_id="m1",
        conversation_id="conv-1",
        content="Hello",
        direction="inbound",
        created_at=NOW,
    )
    sender = SenderIdentityRecord(agent_id="U1", phone_number="+15550001111", created_at=NOW, updated_at=NOW)

    open_view = home_view([ConversationHistory(conversation=_conversation(), messages=(message,))], sender)
    logged_view = home_view([ConversationHistory(conversation=_conversation(logged=True), messages=())], sender)

    assert _action_ids(open_view) == [OPEN_CONVERSATION_ACTION, LOG_TO_CASE_ACTION]
    assert _action_ids(logged_view) == [OPEN_CONVERSATION_ACTION]
    assert "Logged as case CASE-000001" in str(logged_view["blocks"])
