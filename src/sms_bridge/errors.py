from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .conversations import ThreadHandle


class BridgeError(Exception):
    """Base class for every error raised by the bridge core."""


class ConversationNotFoundError(BridgeError, KeyError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(conversation_id)
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        return f"conversation not found: {self.conversation_id}"


class ThreadConflictError(BridgeError):
    """A different thread handle is already attached to the conversation."""

    def __init__(self, conversation_id: str, *, existing: ThreadHandle, attempted: ThreadHandle) -> None:
        super().__init__(
            f"conversation {conversation_id} is already threaded at "
            f"{existing.channel_id}/{existing.thread_ts}; refused {attempted.channel_id}/{attempted.thread_ts}"
        )
        self.conversation_id = conversation_id
        self.existing = existing
        self.attempted = attempted


class DuplicateMessageError(BridgeError):
    def __init__(self, carrier_message_id: str) -> None:
        super().__init__(f"carrier message already stored: {carrier_message_id}")
        self.carrier_message_id = carrier_message_id


class ExternalServiceError(BridgeError):
    """Raised by the chat adapter when a platform call fails."""

    def __init__(self, service: str, error_code: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.error_code = error_code
        self.message = message


class StorageUnavailableError(BridgeError):
    pass


class InvalidPayloadError(BridgeError, ValueError):
    pass


class InvalidPhoneNumberError(InvalidPayloadError):
    def __init__(self, value: str) -> None:
        super().__init__(f"invalid phone number: {value!r}")
        self.value = value
