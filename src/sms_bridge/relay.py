from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Iterator, Union

from .carrier import CarrierSender
from .cases import CaseLogger
from .chat import ChatClient
from .chat_views import (
    SEND_ERROR_TEXT,
    SETUP_REQUIRED_TEXT,
    format_message_line,
    history_blocks,
    home_view,
    instructions_blocks,
    sender_number_modal,
    thread_header_text,
)
from .conversations import (
    ConversationRecord,
    ConversationRepository,
    MessageRecord,
    SenderIdentityRecord,
    ThreadHandle,
)
from .directory import ConversationDirectory
from .errors import (
    ConversationNotFoundError,
    DuplicateMessageError,
    ExternalServiceError,
    InvalidPhoneNumberError,
    StorageUnavailableError,
    ThreadConflictError,
)
from .models import (
    CaseLogOutcome,
    DirectSendResult,
    InboundRelayResult,
    OpenConversationResult,
    ThreadReplyResult,
)
from .phone_numbers import mask_phone_number, normalize_phone_number

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unthreaded:
    conversation: ConversationRecord


@dataclass(frozen=True)
class Threaded:
    conversation: ConversationRecord
    handle: ThreadHandle


ConversationState = Union[Unthreaded, Threaded]


@dataclass
class _LockEntry:
    lock: Lock = field(default_factory=Lock)
    holders: int = 0


class RelayEngine:
    """Moves messages between the SMS carrier and chat threads.

    The conversation store is the only serialization point between triggers.
    Inside one process, opening a conversation and logging it to a case are
    additionally serialized per conversation so a double click cannot create
    two threads or two cases.
    """

    def __init__(
        self,
        *,
        repository: ConversationRepository,
        directory: ConversationDirectory,
        carrier: CarrierSender,
        chat: ChatClient,
        case_logger: CaseLogger,
        history_limit: int = 5,
        home_limit: int = 10,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._carrier = carrier
        self._chat = chat
        self._case_logger = case_logger
        self._history_limit = max(0, history_limit)
        self._home_limit = max(1, home_limit)
        self._locks_guard = Lock()
        self._conversation_locks: dict[str, _LockEntry] = {}
        self._inflight_chat_messages: set[str] = set()

    def reconcile(self) -> int:
        return self._directory.rebuild(self._repository)

    def state_of(self, conversation: ConversationRecord) -> ConversationState:
        handle = self._directory.resolve_by_conversation(conversation.conversation_id)
        if handle is None and conversation.thread is not None:
            # Persisted but not cached yet (e.g. attached by a request that lost its process).
            handle = conversation.thread
            self._directory.remember(conversation.conversation_id, handle)
        if handle is None:
            return Unthreaded(conversation)
        return Threaded(conversation, handle)

    # Carrier -> chat

    def handle_inbound_sms(
        self,
        *,
        from_number: str,
        body: str,
        carrier_message_id: str | None = None,
        to_number: str | None = None,
    ) -> InboundRelayResult:
        conversation = self._repository.get_or_create_conversation(from_number)
        carrier_id = (carrier_message_id or "").strip() or None

        if carrier_id is not None:
            existing = self._repository.find_message_by_carrier_id(carrier_id)
            if existing is not None:
                logger.info("duplicate inbound sms %s ignored", carrier_id)
                return InboundRelayResult(
                    conversation_id=existing.conversation_id,
                    deduped=True,
                    message_id=existing.message_id,
                )

        try:
            message = self._repository.append_message(
                conversation_id=conversation.conversation_id,
                content=body,
                direction="inbound",
                carrier_message_id=carrier_id,
            )
        except DuplicateMessageError:
            # A concurrent delivery of the same carrier message won the insert.
            existing = self._repository.find_message_by_carrier_id(carrier_id or "")
            return InboundRelayResult(
                conversation_id=conversation.conversation_id,
                deduped=True,
                message_id=existing.message_id if existing is not None else None,
            )

        logger.info(
            "inbound sms from %s to %s stored in conversation %s",
            mask_phone_number(conversation.phone_number),
            mask_phone_number(to_number),
            conversation.conversation_id,
        )
        state = self.state_of(conversation)
        relayed = False
        if isinstance(state, Threaded):
            relayed = self._post_to_thread(state.handle, format_message_line(message, conversation.phone_number))
        return InboundRelayResult(
            conversation_id=conversation.conversation_id,
            message_id=message.message_id,
            relayed_to_thread=relayed,
        )

    # Chat -> carrier

    def open_conversation(self, *, conversation_id: str, user_id: str) -> OpenConversationResult:
        with self._conversation_lock(conversation_id):
            try:
                try:
                    conversation = self._repository.get_conversation(conversation_id)
                except ConversationNotFoundError:
                    self._notify(user_id, "Conversation not found.")
                    return OpenConversationResult(conversation_id=conversation_id, status="not_found")

                state = self.state_of(conversation)
                if isinstance(state, Threaded):
                    return self._reuse_thread(state, user_id)
                return self._open_thread(conversation, user_id)
            except StorageUnavailableError:
                self._notify(user_id, "❌ Error opening conversation. Please try again.")
                raise

    def handle_thread_reply(
        self,
        *,
        channel_id: str,
        thread_ts: str,
        user_id: str,
        text: str,
        chat_message_id: str | None = None,
    ) -> ThreadReplyResult | None:
        conversation_id = self._directory.resolve_by_thread(channel_id, thread_ts)
        if conversation_id is None:
            return None

        body = text.strip()
        if not body:
            return ThreadReplyResult(conversation_id=conversation_id, status="ignored")

        if chat_message_id is not None and not self._claim_chat_message(chat_message_id):
            return ThreadReplyResult(conversation_id=conversation_id, status="duplicate")
        handle = ThreadHandle(channel_id=channel_id, thread_ts=thread_ts)
        try:
            try:
                if chat_message_id is not None and self._repository.find_message_by_chat_id(chat_message_id):
                    return ThreadReplyResult(conversation_id=conversation_id, status="duplicate")
                try:
                    conversation = self._repository.get_conversation(conversation_id)
                except ConversationNotFoundError:
                    logger.warning(
                        "thread %s/%s maps to missing conversation %s", channel_id, thread_ts, conversation_id
                    )
                    return None
                sender = self._repository.get_sender_identity(user_id)
            except StorageUnavailableError:
                self._post_to_thread(handle, SEND_ERROR_TEXT)
                raise
            return self._send_thread_reply(
                conversation,
                handle,
                sender=sender,
                body=body,
                chat_message_id=chat_message_id,
            )
        finally:
            if chat_message_id is not None:
                self._release_chat_message(chat_message_id)

    def send_direct_sms(
        self,
        *,
        user_id: str,
        to_number: str,
        body: str,
        channel_id: str | None = None,
    ) -> DirectSendResult:
        try:
            destination = normalize_phone_number(to_number)
        except InvalidPhoneNumberError:
            self._notify(user_id, f"❌ Invalid phone number: {to_number}", channel_id=channel_id)
            return DirectSendResult(status="invalid_number", error="invalid_phone_number")

        try:
            sender = self._repository.get_sender_identity(user_id)
        except StorageUnavailableError:
            self._notify(user_id, SEND_ERROR_TEXT, channel_id=channel_id)
            raise
        if sender is None:
            self._notify(user_id, SETUP_REQUIRED_TEXT, channel_id=channel_id)
            return DirectSendResult(status="sender_identity_required")

        result = self._carrier.send_sms(to=destination, body=body, from_number=sender.phone_number)
        if not result.success:
            error = result.error_message or result.error_code or "unknown error"
            self._notify(user_id, f"❌ Failed to send SMS: {error}", channel_id=channel_id)
            return DirectSendResult(status="failed", error=result.error_code)

        # The conversation only exists once something was actually delivered to the number.
        try:
            conversation = self._repository.get_or_create_conversation(destination)
            message = self._repository.append_message(
                conversation_id=conversation.conversation_id,
                content=body,
                direction="outbound",
                carrier_message_id=result.message_id,
            )
        except StorageUnavailableError:
            self._notify(
                user_id,
                f"⚠️ SMS sent to {destination} but it could not be recorded.",
                channel_id=channel_id,
            )
            raise

        state = self.state_of(conversation)
        if isinstance(state, Threaded):
            self._post_to_thread(state.handle, format_message_line(message, destination))
        self._notify(user_id, f"✅ SMS sent to {destination} from {sender.phone_number}", channel_id=channel_id)
        return DirectSendResult(
            status="sent",
            conversation_id=conversation.conversation_id,
            message_id=message.message_id,
        )

    def send_test_sms(self, *, to_number: str, body: str) -> DirectSendResult:
        """Send ``body`` from the carrier's default number and record it like any outbound SMS."""
        try:
            destination = normalize_phone_number(to_number)
        except InvalidPhoneNumberError:
            return DirectSendResult(status="invalid_number", error="invalid_phone_number")

        result = self._carrier.send_sms(to=destination, body=body)
        if not result.success:
            logger.warning("test sms to %s failed: %s", mask_phone_number(destination), result.error_code)
            return DirectSendResult(status="failed", error=result.error_code)

        conversation = self._repository.get_or_create_conversation(destination)
        message = self._repository.append_message(
            conversation_id=conversation.conversation_id,
            content=body,
            direction="outbound",
            carrier_message_id=result.message_id,
        )
        state = self.state_of(conversation)
        if isinstance(state, Threaded):
            self._post_to_thread(state.handle, format_message_line(message, destination))
        return DirectSendResult(
            status="sent",
            conversation_id=conversation.conversation_id,
            message_id=message.message_id,
        )

    # Case system

    def log_conversation_to_case(self, *, conversation_id: str, user_id: str) -> CaseLogOutcome:
        with self._conversation_lock(conversation_id):
            try:
                return self._log_to_case(conversation_id, user_id)
            except StorageUnavailableError:
                self._notify(user_id, "❌ Error logging to the case system. Please try again.")
                raise

    # Agent setup and home surface

    def set_sender_identity(self, *, user_id: str, phone_number: str) -> SenderIdentityRecord:
        record = self._repository.set_sender_identity(user_id, phone_number)
        logger.info("sender number for %s set to %s", user_id, mask_phone_number(record.phone_number))
        self._notify(user_id, f"✅ Phone number {record.phone_number} saved! You can now send SMS replies.")
        self.publish_home(user_id)
        return record

    def open_sender_number_modal(self, *, user_id: str, trigger_id: str) -> None:
        current = self._repository.get_sender_identity(user_id)
        try:
            self._chat.open_view(trigger_id, sender_number_modal(current))
        except ExternalServiceError as exc:
            logger.warning("could not open sender number modal for %s: %s", user_id, exc)
            self._notify(user_id, "❌ Could not open the phone number dialog. Please try again.")

    def publish_home(self, user_id: str) -> None:
        conversations = self._repository.list_recent_conversations(limit=self._home_limit)
        sender = self._repository.get_sender_identity(user_id)
        try:
            self._chat.publish_home_view(user_id, home_view(conversations, sender))
        except ExternalServiceError as exc:
            logger.warning("could not publish home view for %s: %s", user_id, exc)

    def prompt_quick_reply(self, *, conversation_id: str, user_id: str) -> None:
        try:
            conversation = self._repository.get_conversation(conversation_id)
        except ConversationNotFoundError:
            self._notify(user_id, "Conversation not found.")
            return
        state = self.state_of(conversation)
        if isinstance(state, Unthreaded):
            self._notify(user_id, "Open the conversation first, then reply in its thread.")
            return
        self._post_to_thread(
            state.handle,
            f"💬 *Quick Reply Mode*: type your message below and press Enter to send it as SMS to "
            f"{conversation.phone_number}.",
        )

    # Internals

    def _open_thread(self, conversation: ConversationRecord, user_id: str) -> OpenConversationResult:
        sender = self._repository.get_sender_identity(user_id)
        try:
            channel_id = self._chat.open_direct_message(user_id)
            thread_ts = self._chat.post_message(channel_id, thread_header_text(conversation, sender))
        except ExternalServiceError as exc:
            logger.warning("could not create thread for conversation %s: %s", conversation.conversation_id, exc)
            self._notify(user_id, "❌ Error opening conversation. Please try again.")
            return OpenConversationResult(
                conversation_id=conversation.conversation_id,
                status="failed",
                error=exc.error_code,
            )

        handle = ThreadHandle(channel_id=channel_id, thread_ts=thread_ts)
        try:
            self._repository.attach_thread_handle(conversation.conversation_id, handle)
        except ThreadConflictError as exc:
            if exc.existing == handle:
                # The new thread is already mapped to another conversation; that mapping stays.
                logger.error(
                    "thread %s/%s for conversation %s is already owned by another conversation",
                    handle.channel_id,
                    handle.thread_ts,
                    conversation.conversation_id,
                )
                self._notify(user_id, "❌ Error opening conversation. Please try again.")
                return OpenConversationResult(
                    conversation_id=conversation.conversation_id,
                    status="failed",
                    error="thread_conflict",
                )
            logger.warning(
                "orphaned thread %s/%s: conversation %s is already threaded at %s/%s",
                handle.channel_id,
                handle.thread_ts,
                conversation.conversation_id,
                exc.existing.channel_id,
                exc.existing.thread_ts,
            )
            self._directory.remember(conversation.conversation_id, exc.existing)
            self._post_to_thread(handle, "⚠️ This conversation is already open in another thread. Please continue there.")
            self._notify(user_id, "✅ Conversation is already open. Continue in the existing thread.")
            return OpenConversationResult(
                conversation_id=conversation.conversation_id,
                status="reused",
                channel_id=exc.existing.channel_id,
                thread_ts=exc.existing.thread_ts,
            )
        except StorageUnavailableError:
            logger.error(
                "thread %s/%s was created for conversation %s but the mapping was not persisted",
                handle.channel_id,
                handle.thread_ts,
                conversation.conversation_id,
            )
            raise

        self._directory.remember(conversation.conversation_id, handle)
        recent = self._recent_messages(conversation.conversation_id)
        self._post_to_thread(
            handle,
            f"Recent messages with {conversation.phone_number}",
            blocks=history_blocks(conversation, recent) + instructions_blocks(conversation),
        )
        self._notify(
            user_id,
            f"✅ Conversation opened! Check your DMs with the bot to continue the SMS conversation "
            f"with {conversation.phone_number}.",
        )
        return OpenConversationResult(
            conversation_id=conversation.conversation_id,
            status="created",
            channel_id=handle.channel_id,
            thread_ts=handle.thread_ts,
        )

    def _reuse_thread(self, state: Threaded, user_id: str) -> OpenConversationResult:
        conversation = state.conversation
        recent = self._recent_messages(conversation.conversation_id)
        self._post_to_thread(
            state.handle,
            f"Conversation with {conversation.phone_number} re-opened",
            blocks=history_blocks(conversation, recent, title="*Conversation re-opened. Recent Messages:*"),
        )
        self._notify(user_id, "✅ Conversation is already open. Continue in the existing thread.")
        return OpenConversationResult(
            conversation_id=conversation.conversation_id,
            status="reused",
            channel_id=state.handle.channel_id,
            thread_ts=state.handle.thread_ts,
        )

    def _send_thread_reply(
        self,
        conversation: ConversationRecord,
        handle: ThreadHandle,
        *,
        sender: SenderIdentityRecord | None,
        body: str,
        chat_message_id: str | None,
    ) -> ThreadReplyResult:
        if sender is None:
            self._post_to_thread(handle, SETUP_REQUIRED_TEXT)
            return ThreadReplyResult(conversation_id=conversation.conversation_id, status="sender_identity_required")

        result = self._carrier.send_sms(to=conversation.phone_number, body=body, from_number=sender.phone_number)
        if not result.success:
            error = result.error_message or result.error_code or "unknown error"
            self._post_to_thread(handle, f"❌ Failed to send SMS: {error}")
            return ThreadReplyResult(
                conversation_id=conversation.conversation_id,
                status="failed",
                error=result.error_code,
            )

        try:
            message = self._repository.append_message(
                conversation_id=conversation.conversation_id,
                content=body,
                direction="outbound",
                carrier_message_id=result.message_id,
                chat_message_id=chat_message_id,
            )
        except StorageUnavailableError:
            self._post_to_thread(handle, f"⚠️ SMS sent to {conversation.phone_number} but it could not be recorded.")
            raise

        self._post_to_thread(handle, f"✅ SMS sent to {conversation.phone_number} from {sender.phone_number}")
        return ThreadReplyResult(
            conversation_id=conversation.conversation_id,
            status="sent",
            message_id=message.message_id,
            carrier_message_id=result.message_id,
        )

    def _log_to_case(self, conversation_id: str, user_id: str) -> CaseLogOutcome:
        try:
            conversation = self._repository.get_conversation(conversation_id)
        except ConversationNotFoundError:
            self._notify(user_id, "Conversation not found.")
            return CaseLogOutcome(conversation_id=conversation_id, status="not_found")

        if conversation.logged_to_case:
            self._notify(
                user_id,
                f"This conversation has already been logged as case {conversation.case_reference}.",
            )
            return CaseLogOutcome(
                conversation_id=conversation_id,
                status="already_logged",
                case_reference=conversation.case_reference,
            )

        messages = self._repository.list_messages(conversation_id)
        result = self._case_logger.log_conversation(conversation, messages)
        if not result.success or not result.case_id:
            error = result.error_message or result.error_code or "unknown error"
            self._notify(user_id, f"❌ Error logging to the case system: {error}")
            return CaseLogOutcome(conversation_id=conversation_id, status="failed", error=result.error_code)

        try:
            self._repository.mark_case_logged(conversation_id, result.case_id)
        except StorageUnavailableError:
            logger.error("case %s was created for conversation %s but not recorded", result.case_id, conversation_id)
            raise

        self._notify(user_id, f"✅ Conversation logged as case {result.case_id}.")
        state = self.state_of(conversation)
        if isinstance(state, Threaded):
            self._post_to_thread(state.handle, f"📋 Logged as case {result.case_id}.")
        self.publish_home(user_id)
        return CaseLogOutcome(conversation_id=conversation_id, status="logged", case_reference=result.case_id)

    def _recent_messages(self, conversation_id: str) -> list[MessageRecord]:
        if self._history_limit == 0:
            return []
        return self._repository.list_messages(conversation_id)[-self._history_limit :]

    def _post_to_thread(
        self,
        handle: ThreadHandle,
        text: str,
        *,
        blocks: list[dict[str, Any]] | None = None,
    ) -> bool:
        try:
            self._chat.post_message(handle.channel_id, text, thread_ts=handle.thread_ts, blocks=blocks)
        except ExternalServiceError as exc:
            logger.warning("could not post into thread %s/%s: %s", handle.channel_id, handle.thread_ts, exc)
            return False
        return True

    def _notify(self, user_id: str, text: str, *, channel_id: str | None = None) -> None:
        try:
            self._chat.post_ephemeral(user_id, text, channel_id=channel_id)
        except ExternalServiceError as exc:
            logger.warning("could not notify %s: %s", user_id, exc)

    @contextmanager
    def _conversation_lock(self, conversation_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._conversation_locks.get(conversation_id)
            if entry is None:
                entry = self._conversation_locks[conversation_id] = _LockEntry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            # Entries live only while someone holds or waits on them.
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._conversation_locks[conversation_id]

    def _claim_chat_message(self, chat_message_id: str) -> bool:
        with self._locks_guard:
            if chat_message_id in self._inflight_chat_messages:
                return False
            self._inflight_chat_messages.add(chat_message_id)
            return True

    def _release_chat_message(self, chat_message_id: str) -> None:
        with self._locks_guard:
            self._inflight_chat_messages.discard(chat_message_id)
