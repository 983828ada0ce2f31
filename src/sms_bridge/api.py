from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import parse_qs

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from .carrier import CarrierSender, StubCarrierSender, TwilioCarrierSender
from .cases import CaseLogger, SalesforceCaseLogger, StubCaseLogger
from .chat import ChatClient, SlackWebClient, StubChatClient
from .chat_views import (
    LOG_TO_CASE_ACTION,
    OPEN_CONVERSATION_ACTION,
    QUICK_REPLY_ACTION,
    SENDER_NUMBER_BLOCK,
    SENDER_NUMBER_INPUT,
    SENDER_NUMBER_MODAL,
    SET_SENDER_NUMBER_ACTION,
)
from .config import Settings, get_settings
from .conversations import (
    ConversationRecord,
    ConversationRepository,
    MessageRecord,
    create_conversation_repository,
)
from .directory import ConversationDirectory
from .errors import ConversationNotFoundError, InvalidPhoneNumberError, StorageUnavailableError
from .models import (
    CarrierDiagnosticsResponse,
    ConversationDetailResponse,
    ConversationItem,
    ConversationListResponse,
    DiagnosticSmsRequest,
    DirectSendResult,
    HealthResponse,
    InboundSmsResponse,
    MessageItem,
    SlashCommand,
    StatusCallbackResponse,
)
from .phone_numbers import is_valid_phone_number, mask_phone_number
from .relay import RelayEngine
from .webhook_security import verify_slack_signature, verify_twilio_signature

logger = logging.getLogger(__name__)

SMS_COMMAND_USAGE = "Usage: `/sms send <phone_number> <message>`"

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["sms-bridge"])
health_router = APIRouter(tags=["health"])


def _create_carrier(settings: Settings) -> CarrierSender:
    if settings.carrier_sender_type == "twilio":
        return TwilioCarrierSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            default_from=settings.twilio_phone_number,
        )
    return StubCarrierSender(enabled=True, default_from=settings.twilio_phone_number)


def _create_chat_client(settings: Settings) -> ChatClient:
    if settings.chat_client_type == "slack":
        return SlackWebClient(
            bot_token=settings.slack_bot_token,
            base_url=settings.slack_api_base_url,
            timeout_seconds=settings.slack_timeout_seconds,
        )
    return StubChatClient()


def _create_case_logger(settings: Settings) -> CaseLogger:
    if settings.case_logger_type == "salesforce":
        return SalesforceCaseLogger(
            instance_url=settings.salesforce_instance_url,
            access_token=settings.salesforce_access_token,
            login_url=settings.salesforce_login_url,
            client_id=settings.salesforce_client_id,
            client_secret=settings.salesforce_client_secret,
            username=settings.salesforce_username,
            password=settings.salesforce_password,
            security_token=settings.salesforce_security_token,
            api_version=settings.salesforce_api_version,
            timeout_seconds=settings.salesforce_timeout_seconds,
        )
    return StubCaseLogger(enabled=True)


def _create_relay_engine(settings: Settings) -> RelayEngine:
    return RelayEngine(
        repository=conversation_repo,
        directory=conversation_directory,
        carrier=carrier_sender,
        chat=chat_client,
        case_logger=case_logger,
        history_limit=settings.history_preview_limit,
        home_limit=settings.home_conversation_limit,
    )


conversation_repo: ConversationRepository = create_conversation_repository(
    backend=_settings.conversation_store_backend,
    database_url=_settings.database_url,
)
conversation_directory = ConversationDirectory()
carrier_sender: CarrierSender = _create_carrier(_settings)
chat_client: ChatClient = _create_chat_client(_settings)
case_logger: CaseLogger = _create_case_logger(_settings)
relay_engine = _create_relay_engine(_settings)


def configure_runtime(settings: Settings) -> None:
    """Rebuild every module-level collaborator from ``settings``."""
    global _settings, conversation_repo, conversation_directory, carrier_sender, chat_client, case_logger, relay_engine
    _settings = settings
    conversation_repo = create_conversation_repository(
        backend=settings.conversation_store_backend,
        database_url=settings.database_url,
    )
    conversation_directory = ConversationDirectory()
    carrier_sender = _create_carrier(settings)
    chat_client = _create_chat_client(settings)
    case_logger = _create_case_logger(settings)
    relay_engine = _create_relay_engine(settings)


def reset_runtime_state_for_tests() -> None:
    conversation_repo.reset()
    conversation_directory.clear()


def reconcile_thread_directory() -> int:
    return relay_engine.reconcile()


def _run_in_background(action: Callable[..., Any], **kwargs: Any) -> None:
    try:
        action(**kwargs)
    except StorageUnavailableError:
        logger.exception("conversation store unavailable while running %s", getattr(action, "__name__", action))


def _check_twilio_signature(request: Request, fields: Mapping[str, str]) -> None:
    verification = verify_twilio_signature(
        settings=_settings,
        url=str(request.url),
        form_data=fields,
        headers=request.headers,
    )
    if verification.verified:
        return
    if _settings.sms_webhook_signature_mode == "enforce":
        logger.warning("rejected sms webhook: %s", verification.reason)
        raise HTTPException(403, f"invalid webhook signature: {verification.reason}")
    logger.warning("sms webhook signature not verified (%s); accepting in log_only mode", verification.reason)


def _check_slack_signature(body: bytes, headers: Mapping[str, str]) -> None:
    verification = verify_slack_signature(settings=_settings, body=body, headers=headers)
    if verification.verified:
        return
    if _settings.slack_signature_mode == "enforce":
        logger.warning("rejected slack request: %s", verification.reason)
        raise HTTPException(403, f"invalid slack signature: {verification.reason}")
    logger.warning("slack signature not verified (%s); accepting in log_only mode", verification.reason)


def _conversation_item(conversation: ConversationRecord, messages: Sequence[MessageRecord]) -> ConversationItem:
    last_message = messages[-1] if messages else None
    return ConversationItem(
        conversation_id=conversation.conversation_id,
        phone_number_masked=mask_phone_number(conversation.phone_number),
        status="threaded" if conversation.thread is not None else "unthreaded",
        thread_channel_id=conversation.thread.channel_id if conversation.thread else None,
        thread_ts=conversation.thread.thread_ts if conversation.thread else None,
        logged_to_case=conversation.logged_to_case,
        case_reference=conversation.case_reference,
        message_count=len(messages),
        last_message_preview=last_message.content[:120] if last_message else None,
        created_at=conversation.created_at,
        last_activity_at=conversation.last_activity_at,
    )


def _message_item(message: MessageRecord) -> MessageItem:
    return MessageItem(
        message_id=message.message_id,
        direction=message.direction,
        content=message.content,
        created_at=message.created_at,
        carrier_message_id=message.carrier_message_id,
        chat_message_id=message.chat_message_id,
    )


def parse_sms_command(text: str) -> tuple[str, str] | None:
    parts = text.strip().split(maxsplit=2)
    if len(parts) != 3 or parts[0].lower() != "send":
        return None
    return parts[1], parts[2]


def _first(form: dict[str, list[str]], key: str) -> str:
    values = form.get(key) or [""]
    return values[0]


@health_router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(service=_settings.app_name)


@router.post("/webhooks/sms/inbound", response_model=InboundSmsResponse)
async def receive_inbound_sms(request: Request) -> InboundSmsResponse:
    form = await request.form()
    fields = {key: str(value) for key, value in form.items()}
    _check_twilio_signature(request, fields)

    from_number = fields.get("From", "").strip()
    body = fields.get("Body", "")
    if not from_number or not body.strip():
        raise HTTPException(400, "From and Body are required")
    if not is_valid_phone_number(from_number):
        raise HTTPException(400, "From is not a valid phone number")

    try:
        result = await run_in_threadpool(
            relay_engine.handle_inbound_sms,
            from_number=from_number,
            body=body,
            carrier_message_id=fields.get("MessageSid"),
            to_number=fields.get("To"),
        )
    except InvalidPhoneNumberError as exc:
        raise HTTPException(400, str(exc)) from exc
    except StorageUnavailableError as exc:
        logger.error("inbound sms from %s not stored: %s", mask_phone_number(from_number), exc)
        raise HTTPException(500, "conversation store unavailable") from exc

    return InboundSmsResponse(
        accepted=True,
        deduped=result.deduped,
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        relayed_to_thread=result.relayed_to_thread,
    )


@router.post("/webhooks/sms/status", response_model=StatusCallbackResponse)
async def receive_sms_status(request: Request) -> StatusCallbackResponse:
    form = await request.form()
    fields = {key: str(value) for key, value in form.items()}
    _check_twilio_signature(request, fields)
    message_sid = fields.get("MessageSid") or None
    message_status = fields.get("MessageStatus") or None
    logger.info(
        "sms status callback %s: %s%s",
        message_sid,
        message_status,
        f" (error {fields['ErrorCode']})" if fields.get("ErrorCode") else "",
    )
    return StatusCallbackResponse(accepted=True, message_sid=message_sid, message_status=message_status)


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(limit: int = Query(default=50, ge=1, le=500)) -> ConversationListResponse:
    try:
        histories = conversation_repo.list_recent_conversations(limit=limit)
    except StorageUnavailableError as exc:
        raise HTTPException(500, "conversation store unavailable") from exc
    return ConversationListResponse(
        items=[_conversation_item(value.conversation, value.messages) for value in histories]
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(conversation_id: str) -> ConversationDetailResponse:
    try:
        conversation = conversation_repo.get_conversation(conversation_id)
        messages = conversation_repo.list_messages(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(404, f"conversation not found: {conversation_id}") from exc
    except StorageUnavailableError as exc:
        raise HTTPException(500, "conversation store unavailable") from exc
    return ConversationDetailResponse(
        conversation=_conversation_item(conversation, messages),
        messages=[_message_item(value) for value in messages],
    )


def _require_diagnostics() -> None:
    if not _settings.diagnostics_enabled:
        raise HTTPException(404, "diagnostics are disabled")


@router.post("/diagnostics/test-sms", response_model=DirectSendResult)
async def send_diagnostic_sms(payload: DiagnosticSmsRequest) -> DirectSendResult:
    _require_diagnostics()
    if not payload.to.strip() or not payload.message.strip():
        raise HTTPException(400, "Missing required fields: to, message")
    try:
        result = await run_in_threadpool(relay_engine.send_test_sms, to_number=payload.to, body=payload.message)
    except StorageUnavailableError as exc:
        logger.error("test sms to %s not recorded: %s", mask_phone_number(payload.to), exc)
        raise HTTPException(500, "conversation store unavailable") from exc
    if result.status == "invalid_number":
        raise HTTPException(400, "to is not a valid phone number")
    if result.status != "sent":
        raise HTTPException(400, f"sms not sent: {result.error or 'unknown error'}")
    return result


@router.get("/diagnostics/carrier", response_model=CarrierDiagnosticsResponse)
async def describe_carrier() -> CarrierDiagnosticsResponse:
    _require_diagnostics()
    info = await run_in_threadpool(carrier_sender.describe_account)
    default_from = _settings.twilio_phone_number.strip()
    return CarrierDiagnosticsResponse(
        carrier_type=_settings.carrier_sender_type,
        default_from_masked=mask_phone_number(default_from) if default_from else None,
        account=info.account,
        phone_numbers_masked=[mask_phone_number(number) for number in info.phone_numbers],
        error=None if info.success else info.error_message,
    )


def _is_human_thread_reply(event: Mapping[str, Any]) -> bool:
    if event.get("subtype") or event.get("bot_id"):
        return False
    thread_ts = event.get("thread_ts")
    if not thread_ts or thread_ts == event.get("ts"):
        return False
    return bool(event.get("user") and event.get("channel"))


@router.post("/slack/events")
async def receive_slack_event(request: Request, background_tasks: BackgroundTasks) -> dict[str, Any]:
    raw = await request.body()
    _check_slack_signature(raw, request.headers)
    try:
        payload = json.loads(raw or b"{}")
    except ValueError as exc:
        raise HTTPException(400, "invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(400, "invalid event payload")

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge", "")}
    if payload.get("type") != "event_callback":
        return {"ok": True}

    event = payload.get("event") or {}
    event_type = event.get("type")
    if event_type == "app_home_opened" and event.get("user") and event.get("tab", "home") == "home":
        background_tasks.add_task(_run_in_background, relay_engine.publish_home, user_id=event["user"])
    elif event_type == "message" and _is_human_thread_reply(event):
        background_tasks.add_task(
            _run_in_background,
            relay_engine.handle_thread_reply,
            channel_id=event["channel"],
            thread_ts=event["thread_ts"],
            user_id=event["user"],
            text=event.get("text", ""),
            chat_message_id=event.get("ts"),
        )
    return {"ok": True}


def _sender_number_submission(view: Mapping[str, Any]) -> str:
    values = (view.get("state") or {}).get("values") or {}
    field = (values.get(SENDER_NUMBER_BLOCK) or {}).get(SENDER_NUMBER_INPUT) or {}
    return str(field.get("value") or "").strip()


@router.post("/slack/interactions")
async def receive_slack_interaction(request: Request, background_tasks: BackgroundTasks) -> Response:
    raw = await request.body()
    _check_slack_signature(raw, request.headers)
    form = parse_qs(raw.decode("utf-8"))
    try:
        payload = json.loads(_first(form, "payload"))
    except ValueError as exc:
        raise HTTPException(400, "invalid interaction payload") from exc
    if not isinstance(payload, dict):
        raise HTTPException(400, "invalid interaction payload")

    user_id = (payload.get("user") or {}).get("id")
    if not user_id:
        raise HTTPException(400, "interaction user is required")

    if payload.get("type") == "block_actions":
        for action in payload.get("actions") or []:
            action_id = action.get("action_id")
            value = action.get("value") or ""
            if action_id == OPEN_CONVERSATION_ACTION:
                background_tasks.add_task(
                    _run_in_background, relay_engine.open_conversation, conversation_id=value, user_id=user_id
                )
            elif action_id == LOG_TO_CASE_ACTION:
                background_tasks.add_task(
                    _run_in_background, relay_engine.log_conversation_to_case, conversation_id=value, user_id=user_id
                )
            elif action_id == QUICK_REPLY_ACTION:
                background_tasks.add_task(
                    _run_in_background, relay_engine.prompt_quick_reply, conversation_id=value, user_id=user_id
                )
            elif action_id == SET_SENDER_NUMBER_ACTION and payload.get("trigger_id"):
                background_tasks.add_task(
                    _run_in_background,
                    relay_engine.open_sender_number_modal,
                    user_id=user_id,
                    trigger_id=payload["trigger_id"],
                )
            else:
                logger.info("ignoring unknown slack action %s", action_id)
        return Response(status_code=200)

    if payload.get("type") == "view_submission":
        view = payload.get("view") or {}
        if view.get("callback_id") == SENDER_NUMBER_MODAL:
            phone_number = _sender_number_submission(view)
            if not is_valid_phone_number(phone_number):
                return JSONResponse(
                    {
                        "response_action": "errors",
                        "errors": {SENDER_NUMBER_BLOCK: "Please enter a valid phone number."},
                    }
                )
            background_tasks.add_task(
                _run_in_background,
                relay_engine.set_sender_identity,
                user_id=user_id,
                phone_number=phone_number,
            )
    return Response(status_code=200)


@router.post("/slack/commands")
async def receive_slack_command(request: Request, background_tasks: BackgroundTasks) -> dict[str, str]:
    raw = await request.body()
    _check_slack_signature(raw, request.headers)
    form = parse_qs(raw.decode("utf-8"), keep_blank_values=True)
    command = SlashCommand(
        command=_first(form, "command"),
        text=_first(form, "text"),
        user_id=_first(form, "user_id"),
        channel_id=_first(form, "channel_id") or None,
    )
    if not command.user_id:
        raise HTTPException(400, "user_id is required")

    parsed = parse_sms_command(command.text)
    if parsed is None:
        return {"response_type": "ephemeral", "text": SMS_COMMAND_USAGE}

    to_number, body = parsed
    background_tasks.add_task(
        _run_in_background,
        relay_engine.send_direct_sms,
        user_id=command.user_id,
        to_number=to_number,
        body=body,
        channel_id=command.channel_id,
    )
    return {"response_type": "ephemeral", "text": f"📤 Sending SMS to {to_number}..."}
