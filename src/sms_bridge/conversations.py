from __future__ import annotations

import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Iterator, Protocol

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import (
    ConversationNotFoundError,
    DuplicateMessageError,
    StorageUnavailableError,
    ThreadConflictError,
)
from .models import MessageDirection
from .phone_numbers import normalize_phone_number


@dataclass(frozen=True)
class ThreadHandle:
    channel_id: str
    thread_ts: str


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    phone_number: str
    created_at: datetime
    last_activity_at: datetime
    logged_to_case: bool = False
    case_reference: str | None = None
    thread: ThreadHandle | None = None


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    conversation_id: str
    content: str
    direction: MessageDirection
    created_at: datetime
    carrier_message_id: str | None = None
    chat_message_id: str | None = None


@dataclass(frozen=True)
class SenderIdentityRecord:
    agent_id: str
    phone_number: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ConversationHistory:
    conversation: ConversationRecord
    messages: tuple[MessageRecord, ...]


class ConversationRepository(Protocol):
    def reset(self) -> None: ...

    def get_or_create_conversation(self, phone_number: str) -> ConversationRecord: ...

    def get_conversation(self, conversation_id: str) -> ConversationRecord: ...

    def append_message(
        self,
        *,
        conversation_id: str,
        content: str,
        direction: MessageDirection,
        carrier_message_id: str | None = None,
        chat_message_id: str | None = None,
    ) -> MessageRecord: ...

    def attach_thread_handle(self, conversation_id: str, handle: ThreadHandle) -> ConversationRecord: ...

    def list_messages(self, conversation_id: str) -> list[MessageRecord]: ...

    def list_recent_conversations(self, *, limit: int) -> list[ConversationHistory]: ...

    def list_threaded_conversations(self) -> list[ConversationRecord]: ...

    def set_sender_identity(self, agent_id: str, phone_number: str) -> SenderIdentityRecord: ...

    def get_sender_identity(self, agent_id: str) -> SenderIdentityRecord | None: ...

    def mark_case_logged(self, conversation_id: str, case_reference: str) -> ConversationRecord: ...

    def find_message_by_carrier_id(self, carrier_message_id: str) -> MessageRecord | None: ...

    def find_message_by_chat_id(self, chat_message_id: str) -> MessageRecord | None: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemoryConversationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._conversations: dict[str, ConversationRecord] = {}
        self._conversation_by_phone: dict[str, str] = {}
        self._conversation_by_thread: dict[ThreadHandle, str] = {}
        self._messages: dict[str, list[MessageRecord]] = defaultdict(list)
        self._messages_by_carrier_id: dict[str, MessageRecord] = {}
        self._messages_by_chat_id: dict[str, MessageRecord] = {}
        self._identities: dict[str, SenderIdentityRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._conversations.clear()
            self._conversation_by_phone.clear()
            self._conversation_by_thread.clear()
            self._messages.clear()
            self._messages_by_carrier_id.clear()
            self._messages_by_chat_id.clear()
            self._identities.clear()

    def get_or_create_conversation(self, phone_number: str) -> ConversationRecord:
        normalized = normalize_phone_number(phone_number)
        with self._lock:
            existing_id = self._conversation_by_phone.get(normalized)
            if existing_id is not None:
                return self._conversations[existing_id]
            now = _now_utc()
            created = ConversationRecord(
                conversation_id=_new_id(),
                phone_number=normalized,
                created_at=now,
                last_activity_at=now,
            )
            self._conversations[created.conversation_id] = created
            self._conversation_by_phone[normalized] = created.conversation_id
            return created

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        with self._lock:
            return self._require(conversation_id)

    def append_message(
        self,
        *,
        conversation_id: str,
        content: str,
        direction: MessageDirection,
        carrier_message_id: str | None = None,
        chat_message_id: str | None = None,
    ) -> MessageRecord:
        with self._lock:
            conversation = self._require(conversation_id)
            if carrier_message_id and carrier_message_id in self._messages_by_carrier_id:
                raise DuplicateMessageError(carrier_message_id)
            message = MessageRecord(
                message_id=_new_id(),
                conversation_id=conversation_id,
                content=content,
                direction=direction,
                created_at=_now_utc(),
                carrier_message_id=carrier_message_id,
                chat_message_id=chat_message_id,
            )
            self._messages[conversation_id].append(message)
            if carrier_message_id:
                self._messages_by_carrier_id[carrier_message_id] = message
            if chat_message_id:
                self._messages_by_chat_id[chat_message_id] = message
            self._conversations[conversation_id] = replace(conversation, last_activity_at=message.created_at)
            return message

    def attach_thread_handle(self, conversation_id: str, handle: ThreadHandle) -> ConversationRecord:
        with self._lock:
            conversation = self._require(conversation_id)
            if conversation.thread == handle:
                return conversation
            if conversation.thread is not None:
                raise ThreadConflictError(conversation_id, existing=conversation.thread, attempted=handle)
            owner = self._conversation_by_thread.get(handle)
            if owner is not None and owner != conversation_id:
                raise ThreadConflictError(conversation_id, existing=handle, attempted=handle)
            updated = replace(conversation, thread=handle)
            self._conversations[conversation_id] = updated
            self._conversation_by_thread[handle] = conversation_id
            return updated

    def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        with self._lock:
            self._require(conversation_id)
            return list(self._messages.get(conversation_id, []))

    def list_recent_conversations(self, *, limit: int) -> list[ConversationHistory]:
        with self._lock:
            ordered = sorted(
                self._conversations.values(),
                key=lambda value: value.last_activity_at,
                reverse=True,
            )[:limit]
            return [
                ConversationHistory(
                    conversation=conversation,
                    messages=tuple(self._messages.get(conversation.conversation_id, [])),
                )
                for conversation in ordered
            ]

    def list_threaded_conversations(self) -> list[ConversationRecord]:
        with self._lock:
            return [value for value in self._conversations.values() if value.thread is not None]

    def set_sender_identity(self, agent_id: str, phone_number: str) -> SenderIdentityRecord:
        normalized = normalize_phone_number(phone_number)
        with self._lock:
            now = _now_utc()
            existing = self._identities.get(agent_id)
            record = SenderIdentityRecord(
                agent_id=agent_id,
                phone_number=normalized,
                created_at=existing.created_at if existing is not None else now,
                updated_at=now,
            )
            self._identities[agent_id] = record
            return record

    def get_sender_identity(self, agent_id: str) -> SenderIdentityRecord | None:
        with self._lock:
            return self._identities.get(agent_id)

    def mark_case_logged(self, conversation_id: str, case_reference: str) -> ConversationRecord:
        with self._lock:
            conversation = self._require(conversation_id)
            updated = replace(conversation, logged_to_case=True, case_reference=case_reference)
            self._conversations[conversation_id] = updated
            return updated

    def find_message_by_carrier_id(self, carrier_message_id: str) -> MessageRecord | None:
        with self._lock:
            return self._messages_by_carrier_id.get(carrier_message_id)

    def find_message_by_chat_id(self, chat_message_id: str) -> MessageRecord | None:
        with self._lock:
            return self._messages_by_chat_id.get(chat_message_id)

    def _require(self, conversation_id: str) -> ConversationRecord:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation


class ConversationsBase(DeclarativeBase):
    pass


class _ConversationRow(ConversationsBase):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("thread_channel_id", "thread_ts", name="uq_conversations_thread"),)

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    logged_to_case: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    case_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    thread_channel_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    thread_ts: Mapped[str | None] = mapped_column(String(64), nullable=True)


class _MessageRow(ConversationsBase):
    __tablename__ = "conversation_messages"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.conversation_id"), nullable=False, index=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    carrier_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    chat_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)


class _SenderIdentityRow(ConversationsBase):
    __tablename__ = "sender_identities"

    agent_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyConversationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=sql")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ConversationsBase.metadata.create_all(self._engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Yield a session inside a transaction.

        Integrity errors are left to the caller; every other SQLAlchemy error
        surfaces as ``StorageUnavailableError``.
        """
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"conversation store unavailable: {exc}") from exc

    def reset(self) -> None:
        with self._transaction() as session:
            session.execute(delete(_MessageRow))
            session.execute(delete(_SenderIdentityRow))
            session.execute(delete(_ConversationRow))

    def get_or_create_conversation(self, phone_number: str) -> ConversationRecord:
        normalized = normalize_phone_number(phone_number)
        try:
            with self._transaction() as session:
                row = session.scalar(select(_ConversationRow).where(_ConversationRow.phone_number == normalized))
                if row is None:
                    now = _now_utc()
                    row = _ConversationRow(
                        conversation_id=_new_id(),
                        phone_number=normalized,
                        created_at=now,
                        last_activity_at=now,
                        logged_to_case=False,
                    )
                    session.add(row)
                    session.flush()
                return self._conversation_record(row)
        except IntegrityError:
            # Lost the insert race; the winner's row is committed by now.
            pass
        with self._transaction() as session:
            row = session.scalar(select(_ConversationRow).where(_ConversationRow.phone_number == normalized))
            if row is None:
                raise StorageUnavailableError(f"conversation for {normalized} vanished after insert conflict")
            return self._conversation_record(row)

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        with self._transaction() as session:
            return self._conversation_record(self._require(session, conversation_id))

    def append_message(
        self,
        *,
        conversation_id: str,
        content: str,
        direction: MessageDirection,
        carrier_message_id: str | None = None,
        chat_message_id: str | None = None,
    ) -> MessageRecord:
        now = _now_utc()
        try:
            with self._transaction() as session:
                conversation = self._require(session, conversation_id)
                row = _MessageRow(
                    message_id=_new_id(),
                    conversation_id=conversation_id,
                    content=content,
                    direction=direction,
                    created_at=now,
                    carrier_message_id=carrier_message_id or None,
                    chat_message_id=chat_message_id or None,
                )
                session.add(row)
                conversation.last_activity_at = now
                session.flush()
                return self._message_record(row)
        except IntegrityError as exc:
            if carrier_message_id:
                raise DuplicateMessageError(carrier_message_id) from exc
            raise StorageUnavailableError(f"message insert rejected: {exc}") from exc

    def attach_thread_handle(self, conversation_id: str, handle: ThreadHandle) -> ConversationRecord:
        try:
            with self._transaction() as session:
                result = session.execute(
                    update(_ConversationRow)
                    .where(_ConversationRow.conversation_id == conversation_id)
                    .where(_ConversationRow.thread_channel_id.is_(None))
                    .values(thread_channel_id=handle.channel_id, thread_ts=handle.thread_ts)
                )
                claimed = result.rowcount == 1
        except IntegrityError as exc:
            # The handle is already owned by another conversation.
            raise ThreadConflictError(conversation_id, existing=handle, attempted=handle) from exc

        current = self.get_conversation(conversation_id)
        if claimed or current.thread == handle:
            return current
        raise ThreadConflictError(conversation_id, existing=current.thread, attempted=handle)  # type: ignore[arg-type]

    def list_messages(self, conversation_id: str) -> list[MessageRecord]:
        with self._transaction() as session:
            self._require(session, conversation_id)
            rows = session.scalars(
                select(_MessageRow)
                .where(_MessageRow.conversation_id == conversation_id)
                .order_by(_MessageRow.created_at.asc(), _MessageRow.sequence.asc())
            ).all()
            return [self._message_record(row) for row in rows]

    def list_recent_conversations(self, *, limit: int) -> list[ConversationHistory]:
        with self._transaction() as session:
            rows = session.scalars(
                select(_ConversationRow).order_by(_ConversationRow.last_activity_at.desc()).limit(limit)
            ).all()
            messages_by_conversation: dict[str, list[MessageRecord]] = defaultdict(list)
            if rows:
                message_rows = session.scalars(
                    select(_MessageRow)
                    .where(_MessageRow.conversation_id.in_([row.conversation_id for row in rows]))
                    .order_by(_MessageRow.created_at.asc(), _MessageRow.sequence.asc())
                ).all()
                for message_row in message_rows:
                    messages_by_conversation[message_row.conversation_id].append(self._message_record(message_row))
            return [
                ConversationHistory(
                    conversation=self._conversation_record(row),
                    messages=tuple(messages_by_conversation.get(row.conversation_id, [])),
                )
                for row in rows
            ]

    def list_threaded_conversations(self) -> list[ConversationRecord]:
        with self._transaction() as session:
            rows = session.scalars(
                select(_ConversationRow)
                .where(_ConversationRow.thread_channel_id.is_not(None))
                .where(_ConversationRow.thread_ts.is_not(None))
            ).all()
            return [self._conversation_record(row) for row in rows]

    def set_sender_identity(self, agent_id: str, phone_number: str) -> SenderIdentityRecord:
        normalized = normalize_phone_number(phone_number)
        for _attempt in range(2):
            try:
                with self._transaction() as session:
                    now = _now_utc()
                    row = session.get(_SenderIdentityRow, agent_id)
                    if row is None:
                        row = _SenderIdentityRow(
                            agent_id=agent_id,
                            phone_number=normalized,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(row)
                    else:
                        row.phone_number = normalized
                        row.updated_at = now
                    session.flush()
                    return self._identity_record(row)
            except IntegrityError:
                # Concurrent first insert for the same agent; the second pass updates it.
                continue
        raise StorageUnavailableError(f"could not store sender identity for {agent_id}")

    def get_sender_identity(self, agent_id: str) -> SenderIdentityRecord | None:
        with self._transaction() as session:
            row = session.get(_SenderIdentityRow, agent_id)
            return self._identity_record(row) if row is not None else None

    def mark_case_logged(self, conversation_id: str, case_reference: str) -> ConversationRecord:
        with self._transaction() as session:
            row = self._require(session, conversation_id)
            row.logged_to_case = True
            row.case_reference = case_reference
            session.flush()
            return self._conversation_record(row)

    def find_message_by_carrier_id(self, carrier_message_id: str) -> MessageRecord | None:
        with self._transaction() as session:
            row = session.scalar(select(_MessageRow).where(_MessageRow.carrier_message_id == carrier_message_id))
            return self._message_record(row) if row is not None else None

    def find_message_by_chat_id(self, chat_message_id: str) -> MessageRecord | None:
        with self._transaction() as session:
            row = session.scalar(
                select(_MessageRow).where(_MessageRow.chat_message_id == chat_message_id).limit(1)
            )
            return self._message_record(row) if row is not None else None

    @staticmethod
    def _require(session: Session, conversation_id: str) -> _ConversationRow:
        row = session.get(_ConversationRow, conversation_id)
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return row

    @staticmethod
    def _conversation_record(row: _ConversationRow) -> ConversationRecord:
        thread = None
        if row.thread_channel_id and row.thread_ts:
            thread = ThreadHandle(channel_id=row.thread_channel_id, thread_ts=row.thread_ts)
        return ConversationRecord(
            conversation_id=row.conversation_id,
            phone_number=row.phone_number,
            created_at=_coerce_utc(row.created_at),
            last_activity_at=_coerce_utc(row.last_activity_at),
            logged_to_case=bool(row.logged_to_case),
            case_reference=row.case_reference,
            thread=thread,
        )

    @staticmethod
    def _message_record(row: _MessageRow) -> MessageRecord:
        return MessageRecord(
            message_id=row.message_id,
            conversation_id=row.conversation_id,
            content=row.content,
            direction=row.direction,  # type: ignore[arg-type]
            created_at=_coerce_utc(row.created_at),
            carrier_message_id=row.carrier_message_id,
            chat_message_id=row.chat_message_id,
        )

    @staticmethod
    def _identity_record(row: _SenderIdentityRow) -> SenderIdentityRecord:
        return SenderIdentityRecord(
            agent_id=row.agent_id,
            phone_number=row.phone_number,
            created_at=_coerce_utc(row.created_at),
            updated_at=_coerce_utc(row.updated_at),
        )


def create_conversation_repository(*, backend: str, database_url: str) -> ConversationRepository:
    normalized = backend.strip().lower()
    if normalized == "sql":
        return SqlAlchemyConversationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryConversationRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")
