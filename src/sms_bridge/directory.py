from __future__ import annotations

import logging
from threading import Lock

from .conversations import ConversationRepository, ThreadHandle

logger = logging.getLogger(__name__)


class ConversationDirectory:
    """In-memory thread index over the conversation store.

    Holds the forward (conversation -> thread) and reverse (thread ->
    conversation) maps. Entries are only installed for handles the store has
    already persisted, so the store stays authoritative and the index can be
    rebuilt from it at any time.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._handles_by_conversation: dict[str, ThreadHandle] = {}
        self._conversations_by_thread: dict[ThreadHandle, str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles_by_conversation)

    def resolve_by_thread(self, channel_id: str, thread_ts: str) -> str | None:
        handle = ThreadHandle(channel_id=channel_id, thread_ts=thread_ts)
        with self._lock:
            return self._conversations_by_thread.get(handle)

    def resolve_by_conversation(self, conversation_id: str) -> ThreadHandle | None:
        with self._lock:
            return self._handles_by_conversation.get(conversation_id)

    def remember(self, conversation_id: str, handle: ThreadHandle) -> None:
        with self._lock:
            previous = self._handles_by_conversation.get(conversation_id)
            if previous is not None and previous != handle:
                self._conversations_by_thread.pop(previous, None)
            self._handles_by_conversation[conversation_id] = handle
            self._conversations_by_thread[handle] = conversation_id

    def rebuild(self, repository: ConversationRepository) -> int:
        handles_by_conversation: dict[str, ThreadHandle] = {}
        conversations_by_thread: dict[ThreadHandle, str] = {}
        for conversation in repository.list_threaded_conversations():
            if conversation.thread is None:
                continue
            handles_by_conversation[conversation.conversation_id] = conversation.thread
            conversations_by_thread[conversation.thread] = conversation.conversation_id

        with self._lock:
            self._handles_by_conversation = handles_by_conversation
            self._conversations_by_thread = conversations_by_thread
        logger.info("conversation directory rebuilt with %d thread mappings", len(handles_by_conversation))
        return len(handles_by_conversation)

    def clear(self) -> None:
        with self._lock:
            self._handles_by_conversation.clear()
            self._conversations_by_thread.clear()
