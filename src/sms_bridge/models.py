from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, field_validator

MessageDirection = Literal["inbound", "outbound"]
ConversationStatus = Literal["unthreaded", "threaded"]
ThreadReplyStatus = Literal["sent", "failed", "sender_identity_required", "duplicate", "ignored"]
OpenConversationStatus = Literal["created", "reused", "failed", "not_found"]
CaseLogStatus = Literal["logged", "already_logged", "failed", "not_found"]
DirectSendStatus = Literal["sent", "failed", "sender_identity_required", "invalid_number"]


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    service: str


class InboundSmsResponse(BaseModel):
    accepted: bool
    deduped: bool
    conversation_id: str
    message_id: str | None = None
    relayed_to_thread: bool = False


class StatusCallbackResponse(BaseModel):
    accepted: bool
    message_sid: str | None = None
    message_status: str | None = None


class MessageItem(BaseModel):
    message_id: str
    direction: MessageDirection
    content: str
    created_at: datetime
    carrier_message_id: str | None = None
    chat_message_id: str | None = None


class ConversationItem(BaseModel):
    conversation_id: str
    phone_number_masked: str
    status: ConversationStatus
    thread_channel_id: str | None = None
    thread_ts: str | None = None
    logged_to_case: bool
    case_reference: str | None = None
    message_count: int = 0
    last_message_preview: str | None = None
    created_at: datetime
    last_activity_at: datetime


class ConversationListResponse(BaseModel):
    items: list[ConversationItem]


class ConversationDetailResponse(BaseModel):
    conversation: ConversationItem
    messages: list[MessageItem]


class InboundRelayResult(BaseModel):
    conversation_id: str
    deduped: bool = False
    message_id: str | None = None
    relayed_to_thread: bool = False


class OpenConversationResult(BaseModel):
    conversation_id: str
    status: OpenConversationStatus
    channel_id: str | None = None
    thread_ts: str | None = None
    error: str | None = None


class ThreadReplyResult(BaseModel):
    conversation_id: str
    status: ThreadReplyStatus
    message_id: str | None = None
    carrier_message_id: str | None = None
    error: str | None = None


class CaseLogOutcome(BaseModel):
    conversation_id: str
    status: CaseLogStatus
    case_reference: str | None = None
    error: str | None = None


class DirectSendResult(BaseModel):
    status: DirectSendStatus
    conversation_id: str | None = None
    message_id: str | None = None
    error: str | None = None


class SlashCommand(BaseModel):
    command: str = ""
    text: str = ""
    user_id: str
    channel_id: str | None = None

    @field_validator("text", "command")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class DiagnosticSmsRequest(BaseModel):
    to: str = ""
    message: str = ""


class CarrierDiagnosticsResponse(BaseModel):
    carrier_type: str
    default_from_masked: str | None = None
    account: dict[str, str] | None = None
    phone_numbers_masked: list[str] = []
    error: str | None = None
