from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from .conversations import ConversationHistory, ConversationRecord, MessageRecord, SenderIdentityRecord

OPEN_CONVERSATION_ACTION = "open_conversation"
LOG_TO_CASE_ACTION = "log_to_case"
QUICK_REPLY_ACTION = "quick_reply"
SET_SENDER_NUMBER_ACTION = "set_sender_number"
SENDER_NUMBER_MODAL = "sender_number_modal"
SENDER_NUMBER_BLOCK = "sender_number_block"
SENDER_NUMBER_INPUT = "sender_number_input"

SETUP_REQUIRED_TEXT = (
    "⚠️ You need to set your phone number first to send SMS replies. "
    'Use the "Set Phone Number" button in the App Home.'
)
SEND_ERROR_TEXT = "❌ An error occurred while sending the SMS. Please try again."


def _section(text: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _button(text: str, action_id: str, value: str, *, style: str | None = None) -> dict[str, Any]:
    button: dict[str, Any] = {
        "type": "button",
        "text": {"type": "plain_text", "text": text},
        "action_id": action_id,
        "value": value,
    }
    if style:
        button["style"] = style
    return button


def time_ago(value: datetime, *, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    seconds = max(0, int((current - value).total_seconds()))
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def format_message_line(message: MessageRecord, phone_number: str) -> str:
    if message.direction == "inbound":
        return f"📨 *From {phone_number}:* {message.content}"
    return f"📤 *To {phone_number}:* {message.content}"


def thread_header_text(conversation: ConversationRecord, sender: SenderIdentityRecord | None) -> str:
    lines = [f"📱 *SMS Conversation with {conversation.phone_number}*"]
    if sender is not None:
        lines.append(f"*Your SMS Number:* {sender.phone_number}")
    return "\n\n".join(lines)


def history_blocks(
    conversation: ConversationRecord,
    messages: Sequence[MessageRecord],
    *,
    title: str = "*Recent Messages:*",
) -> list[dict[str, Any]]:
    if not messages:
        return [_section(f"{title}\n_No messages yet._")]
    lines = [format_message_line(message, conversation.phone_number) for message in messages]
    return [_section(title + "\n" + "\n".join(lines))]


def instructions_blocks(conversation: ConversationRecord) -> list[dict[str, Any]]:
    return [
        _section("💬 *How to reply:* Just type your message in this thread and press Enter!"),
        {
            "type": "actions",
            "elements": [
                _button("Quick Reply", QUICK_REPLY_ACTION, conversation.conversation_id),
                _button("Log to Case", LOG_TO_CASE_ACTION, conversation.conversation_id),
            ],
        },
    ]


def home_view(
    conversations: Sequence[ConversationHistory],
    sender: SenderIdentityRecord | None,
) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": "📱 SMS Conversations"}},
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": "💬 Open a conversation, then reply directly in its thread."}
            ],
        },
    ]

    if sender is None:
        blocks.append(
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": "⚠️ *Setup Required*: You need to set your phone number to send SMS replies.",
                },
                "accessory": _button("Set Phone Number", SET_SENDER_NUMBER_ACTION, "set", style="primary"),
            }
        )
    else:
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"✅ *Your SMS Phone Number:* {sender.phone_number}"},
                "accessory": _button("Change", SET_SENDER_NUMBER_ACTION, "change"),
            }
        )
    blocks.append({"type": "divider"})

    if not conversations:
        blocks.append(_section("No SMS conversations yet. Send an SMS to get started!"))

    for history in conversations:
        conversation = history.conversation
        summary = f"*{conversation.phone_number}*"
        if history.messages:
            last = history.messages[-1]
            summary += (
                f"\nLast message: {last.content}\n"
                f"_{time_ago(last.created_at)}_ • {len(history.messages)} messages"
            )
        if conversation.logged_to_case:
            summary += f"\n📋 Logged as case {conversation.case_reference}"
        actions = [_button("Open Conversation", OPEN_CONVERSATION_ACTION, conversation.conversation_id, style="primary")]
        if not conversation.logged_to_case:
            actions.append(_button("Log to Case", LOG_TO_CASE_ACTION, conversation.conversation_id))
        blocks.append(_section(summary))
        blocks.append({"type": "actions", "elements": actions})

    return {"type": "home", "blocks": blocks}


def sender_number_modal(current: SenderIdentityRecord | None) -> dict[str, Any]:
    element: dict[str, Any] = {
        "type": "plain_text_input",
        "action_id": SENDER_NUMBER_INPUT,
        "placeholder": {"type": "plain_text", "text": "+1234567890"},
    }
    if current is not None:
        element["initial_value"] = current.phone_number
    return {
        "type": "modal",
        "callback_id": SENDER_NUMBER_MODAL,
        "title": {"type": "plain_text", "text": "Set Your SMS Number"},
        "submit": {"type": "plain_text", "text": "Save"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            _section(
                "Enter the phone number you want to use for sending SMS replies. "
                "This should be a number enabled on the SMS carrier account."
            ),
            {
                "type": "input",
                "block_id": SENDER_NUMBER_BLOCK,
                "element": element,
                "label": {"type": "plain_text", "text": "Phone Number"},
            },
        ],
    }
