"""Messaging schema - users, conversations, messages, delivery status, cords

Revision ID: 0001
Revises:
Create Date: 2026-10-19

Tables:
- users: local mirror of authenticated users (id = JWT sub)
- conversations: message streams; dedup_key identifies the participant set + mode
- conversation_participants: membership with per-user unread counter
- messages: immutable content, rolled-up status, self-destruct deadline
- message_status: per-participant delivery status, monotonic
- encrypted_cords: optional 1:1 self-destruct policy per conversation

Constraints:
- one conversation per (participant set, mode) via unique dedup_key
- message has text or media; text at most 10,000 characters
- status values limited to sent/delivered/read
- unread_count never negative, cord timer positive
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # ==========================================================================
    # Step 1: users
    # ==========================================================================
    op.create_table(
        "users",
        sa.Column("id", sa.UUID(), primary_key=True),
        sa.Column("username", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )

    # ==========================================================================
    # Step 2: conversations + participants
    # ==========================================================================
    op.create_table(
        "conversations",
        sa.Column(
            "id",
            sa.UUID(),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "creator_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("dedup_key", sa.Text(), nullable=True, unique=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("last_message_at", nullable=True),
    )
    op.create_index("ix_conversations_updated_at", "conversations", ["updated_at"])

    op.create_table(
        "conversation_participants",
        sa.Column(
            "conversation_id",
            sa.UUID(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_read_at", nullable=True),
        _timestamp("joined_at"),
        sa.PrimaryKeyConstraint("conversation_id", "user_id"),
    )
    op.create_check_constraint(
        "ck_participants_unread_nonnegative",
        "conversation_participants",
        "unread_count >= 0",
    )
    op.create_index("ix_participants_user_id", "conversation_participants", ["user_id"])

    # ==========================================================================
    # Step 3: messages + message_status
    # ==========================================================================
    op.create_table(
        "messages",
        sa.Column(
            "id",
            sa.UUID(),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "conversation_id",
            sa.UUID(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "sender_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="sent"),
        sa.Column("is_encrypted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("delete_at", nullable=True),
        _timestamp("created_at"),
    )
    op.create_check_constraint(
        "ck_messages_status",
        "messages",
        "status IN ('sent', 'delivered', 'read')",
    )
    op.create_check_constraint(
        "ck_messages_has_content",
        "messages",
        "text IS NOT NULL OR image_url IS NOT NULL OR video_url IS NOT NULL",
    )
    op.create_check_constraint(
        "ck_messages_text_length",
        "messages",
        "text IS NULL OR length(text) <= 10000",
    )
    op.create_index(
        "ix_messages_conversation_created", "messages", ["conversation_id", "created_at"]
    )
    # Partial: the reaper only scans rows that have a deadline
    op.create_index(
        "ix_messages_delete_at",
        "messages",
        ["delete_at"],
        postgresql_where=sa.text("delete_at IS NOT NULL"),
    )

    op.create_table(
        "message_status",
        sa.Column(
            "message_id",
            sa.UUID(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.Text(), nullable=False),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("message_id", "user_id"),
    )
    op.create_check_constraint(
        "ck_message_status_status",
        "message_status",
        "status IN ('sent', 'delivered', 'read')",
    )

    # ==========================================================================
    # Step 4: encrypted_cords
    # ==========================================================================
    op.create_table(
        "encrypted_cords",
        sa.Column(
            "conversation_id",
            sa.UUID(),
            sa.ForeignKey("conversations.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("self_destruct_timer", sa.Integer(), nullable=False, server_default="60"),
        _timestamp("created_at"),
    )
    op.create_check_constraint(
        "ck_encrypted_cords_timer_positive",
        "encrypted_cords",
        "self_destruct_timer > 0",
    )


def downgrade() -> None:
    op.drop_table("encrypted_cords")
    op.drop_table("message_status")
    op.drop_index("ix_messages_delete_at", table_name="messages")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_participants_user_id", table_name="conversation_participants")
    op.drop_table("conversation_participants")
    op.drop_index("ix_conversations_updated_at", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("users")
