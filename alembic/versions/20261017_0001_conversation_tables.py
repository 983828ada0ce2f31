"""Create conversation, message and sender identity tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversations",
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("logged_to_case", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("case_reference", sa.String(length=64), nullable=True),
        sa.Column("thread_channel_id", sa.String(length=64), nullable=True),
        sa.Column("thread_ts", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("conversation_id"),
        sa.UniqueConstraint("phone_number"),
        sa.UniqueConstraint("thread_channel_id", "thread_ts", name="uq_conversations_thread"),
    )
    op.create_index("ix_conversations_last_activity_at", "conversations", ["last_activity_at"], unique=False)

    op.create_table(
        "conversation_messages",
        sa.Column("sequence", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(length=64), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("carrier_message_id", sa.String(length=64), nullable=True),
        sa.Column("chat_message_id", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.conversation_id"]),
        sa.PrimaryKeyConstraint("sequence"),
        sa.UniqueConstraint("message_id"),
        sa.UniqueConstraint("carrier_message_id"),
    )
    op.create_index(
        "ix_conversation_messages_conversation_id", "conversation_messages", ["conversation_id"], unique=False
    )
    op.create_index(
        "ix_conversation_messages_chat_message_id", "conversation_messages", ["chat_message_id"], unique=False
    )

    op.create_table(
        "sender_identities",
        sa.Column("agent_id", sa.String(length=64), nullable=False),
        sa.Column("phone_number", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("agent_id"),
    )


def downgrade() -> None:
    op.drop_table("sender_identities")
    op.drop_index("ix_conversation_messages_chat_message_id", table_name="conversation_messages")
    op.drop_index("ix_conversation_messages_conversation_id", table_name="conversation_messages")
    op.drop_table("conversation_messages")
    op.drop_index("ix_conversations_last_activity_at", table_name="conversations")
    op.drop_table("conversations")
