"""Initial schema with all tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

This migration creates the complete Coaching Inbox database schema:
- Extensions: uuid-ossp
- Tables: admins, coaches, clients, client_coaches, conversations,
  conversation_participants, direct_messages, email_accounts, email_threads,
  email_messages, event_outbox
- Uniqueness: one participant slot per (conversation, participant_key), one
  thread per (coach, client, provider thread), one message per (thread,
  provider message)
- Triggers: updated_at auto-update function and triggers
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UPDATED_AT_TABLES = ["conversations", "email_threads", "event_outbox"]


def _id_column() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("uuid_generate_v4()"), nullable=False)


def _timestamp_column(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, postgresql.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(name, postgresql.TIMESTAMP(timezone=True), server_default=sa.text("NOW()"), nullable=False)


def upgrade() -> None:
    # ==========================================================================
    # EXTENSIONS
    # ==========================================================================
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ==========================================================================
    # USERS
    # ==========================================================================
    op.create_table(
        "admins",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("TRUE"), nullable=False),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "coaches",
        _id_column(),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("business_name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("TRUE"), nullable=False),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "clients",
        _id_column(),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_clients_email", "clients", ["email"])
    op.create_index("idx_clients_email_lower", "clients", [sa.text("lower(email)")])

    op.create_table(
        "client_coaches",
        _id_column(),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("coach_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["coach_id"], ["coaches.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("client_id", "coach_id", name="unique_client_coach"),
        sa.CheckConstraint("status IN ('active', 'inactive', 'pending')", name="valid_client_coach_status"),
    )
    op.create_index("idx_client_coaches_coach_status", "client_coaches", ["coach_id", "status"])

    # ==========================================================================
    # MESSAGING
    # ==========================================================================
    op.create_table(
        "conversations",
        _id_column(),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("direct_pair_key", sa.String(255), nullable=True),
        sa.Column("last_message_id", postgresql.UUID(as_uuid=True), nullable=True),
        _timestamp_column("last_message_at", nullable=True),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("direct_pair_key", name="unique_direct_pair"),
        sa.CheckConstraint("type IN ('direct', 'group')", name="valid_conversation_type"),
        sa.CheckConstraint("type <> 'group' OR name IS NOT NULL", name="group_requires_name"),
    )
    op.create_index("idx_conversations_last_message_at", "conversations", ["last_message_at"])

    op.create_table(
        "conversation_participants",
        _id_column(),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("participant_id", sa.String(255), nullable=False),
        sa.Column("participant_type", sa.String(20), nullable=False),
        sa.Column("participant_key", sa.String(300), nullable=False),
        sa.Column("unread_count", sa.Integer(), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("conversation_id", "participant_key", name="unique_conversation_participant"),
        sa.CheckConstraint("participant_type IN ('coach', 'client', 'admin')", name="valid_participant_type"),
        sa.CheckConstraint("unread_count >= 0", name="non_negative_unread_count"),
    )
    op.create_index(
        "idx_conversation_participants_identity",
        "conversation_participants",
        ["participant_id", "participant_type"],
    )

    op.create_table(
        "direct_messages",
        _id_column(),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sender_id", sa.String(255), nullable=False),
        sa.Column("sender_type", sa.String(20), nullable=False),
        sa.Column("sender_name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(20), server_default="text", nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("media_urls", postgresql.ARRAY(sa.Text()), server_default=sa.text("'{}'::text[]"), nullable=False),
        sa.Column("file_url", sa.String(2048), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("reply_to_message_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("FALSE"), nullable=False),
        _timestamp_column("read_at", nullable=True),
        sa.Column("is_edited", sa.Boolean(), server_default=sa.text("FALSE"), nullable=False),
        _timestamp_column("edited_at", nullable=True),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reply_to_message_id"], ["direct_messages.id"], ondelete="SET NULL"),
        sa.CheckConstraint("type IN ('text', 'image', 'video', 'audio', 'file')", name="valid_message_type"),
        sa.CheckConstraint("file_size IS NULL OR file_size >= 0", name="valid_file_size"),
    )
    op.create_index(
        "idx_direct_messages_conversation_created",
        "direct_messages",
        ["conversation_id", "created_at"],
    )

    # ==========================================================================
    # EMAIL SYNC
    # ==========================================================================
    op.create_table(
        "email_accounts",
        _id_column(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("TRUE"), nullable=False),
        sa.Column("sync_enabled", sa.Boolean(), server_default=sa.text("TRUE"), nullable=False),
        _timestamp_column("last_sync_at", nullable=True),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["user_id"], ["coaches.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_email_accounts_user_id", "email_accounts", ["user_id"])

    op.create_table(
        "email_threads",
        _id_column(),
        sa.Column("coach_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email_account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("thread_id", sa.String(255), nullable=False),
        sa.Column("subject", sa.Text(), server_default="", nullable=False),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("FALSE"), nullable=False),
        sa.Column("priority", sa.String(20), server_default="normal", nullable=False),
        sa.Column("message_count", sa.Integer(), server_default="0", nullable=False),
        _timestamp_column("last_message_at"),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["coach_id"], ["coaches.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["email_account_id"], ["email_accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("coach_id", "client_id", "thread_id", name="unique_coach_client_thread"),
        sa.CheckConstraint("status IN ('active', 'archived', 'closed')", name="valid_thread_status"),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high')", name="valid_thread_priority"),
    )
    op.create_index(
        "idx_email_threads_coach_last_message",
        "email_threads",
        ["coach_id", sa.text("last_message_at DESC")],
    )

    op.create_table(
        "email_messages",
        _id_column(),
        sa.Column("thread_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider_message_id", sa.String(255), nullable=False),
        sa.Column("from_address", sa.String(255), nullable=False),
        sa.Column("to_address", sa.String(255), nullable=False),
        sa.Column("subject", sa.Text(), server_default="", nullable=False),
        sa.Column("text", sa.Text(), server_default="", nullable=False),
        _timestamp_column("sent_at"),
        _timestamp_column("received_at"),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["thread_id"], ["email_threads.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("thread_id", "provider_message_id", name="unique_thread_provider_message"),
    )

    # ==========================================================================
    # EVENT OUTBOX
    # ==========================================================================
    op.create_table(
        "event_outbox",
        _id_column(),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("routing_key", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp_column("scheduled_for", nullable=True),
        _timestamp_column("published_at", nullable=True),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
        sa.CheckConstraint("status IN ('pending', 'published', 'failed')", name="valid_outbox_status"),
    )
    op.create_index("idx_event_outbox_status_created", "event_outbox", ["status", "created_at"])

    # ==========================================================================
    # UPDATED_AT TRIGGER FUNCTION
    # ==========================================================================
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)

    # Apply triggers to all tables with updated_at
    for table in UPDATED_AT_TABLES:
        op.execute(f"""
            CREATE TRIGGER update_{table}_updated_at
                BEFORE UPDATE ON {table}
                FOR EACH ROW EXECUTE FUNCTION update_updated_at_column();
        """)


def downgrade() -> None:
    # Drop triggers
    for table in UPDATED_AT_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}")

    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")

    # Drop tables in reverse dependency order
    op.drop_table("event_outbox")
    op.drop_table("email_messages")
    op.drop_table("email_threads")
    op.drop_table("email_accounts")
    op.drop_table("direct_messages")
    op.drop_table("conversation_participants")
    op.drop_table("conversations")
    op.drop_table("client_coaches")
    op.drop_table("clients")
    op.drop_table("coaches")
    op.drop_table("admins")
