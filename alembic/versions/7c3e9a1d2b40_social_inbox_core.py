"""social inbox core schema

Revision ID: 7c3e9a1d2b40
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "7c3e9a1d2b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

channel_kind = sa.Enum("instagram", "facebook", name="channelkind")
conversation_status = sa.Enum("open", "resolved", "pending", name="conversationstatus")
conversation_priority = sa.Enum("low", "medium", "high", "urgent", name="conversationpriority")
message_type = sa.Enum("incoming", "outgoing", "activity", name="messagetype")
message_status = sa.Enum("progress", "sent", "delivered", "read", "failed", name="messagestatus")
message_content_type = sa.Enum(
    "text", "image", "video", "audio", "file", "location", "contact", name="messagecontenttype"
)
sender_type = sa.Enum("contact", "agent", name="sendertype")
attachment_file_type = sa.Enum(
    "image",
    "audio",
    "video",
    "file",
    "location",
    "fallback",
    "share",
    "story_mention",
    "contact",
    "ig_reel",
    name="attachmentfiletype",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "channels",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", channel_kind, nullable=False),
        sa.Column("external_account_id", sa.String(120), nullable=False),
        sa.Column("instagram_id", sa.String(120), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("token_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.JSON, nullable=True),
        sa.Column("last_refreshed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refresh_error", sa.Text, nullable=True),
        sa.Column(
            "reauthorization_required", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "kind", "external_account_id", name="uq_channels_kind_external_account"
        ),
    )
    op.create_index("ix_channels_expires_at", "channels", ["expires_at"])

    op.create_table(
        "inboxes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column(
            "channel_id",
            UUID(as_uuid=True),
            sa.ForeignKey("channels.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column(
            "lock_to_single_conversation",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
    )
    op.create_index("ix_inboxes_account_id", "inboxes", ["account_id"])

    op.create_table(
        "contacts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("avatar_url", sa.String(2048), nullable=True),
        sa.Column("identifier", sa.String(255), nullable=True),
        sa.Column("additional_attributes", sa.JSON, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_contacts_account_id", "contacts", ["account_id"])

    op.create_table(
        "contact_inboxes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("contact_id", UUID(as_uuid=True), sa.ForeignKey("contacts.id"), nullable=False),
        sa.Column("inbox_id", UUID(as_uuid=True), sa.ForeignKey("inboxes.id"), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("hmac_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("inbox_id", "source_id", name="uq_contact_inboxes_inbox_source"),
        sa.UniqueConstraint("contact_id", "inbox_id", name="uq_contact_inboxes_contact_inbox"),
    )

    op.create_table(
        "conversations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("inbox_id", UUID(as_uuid=True), sa.ForeignKey("inboxes.id"), nullable=False),
        sa.Column("contact_id", UUID(as_uuid=True), sa.ForeignKey("contacts.id"), nullable=False),
        sa.Column(
            "contact_inbox_id",
            UUID(as_uuid=True),
            sa.ForeignKey("contact_inboxes.id"),
            nullable=True,
        ),
        sa.Column("display_id", sa.Integer, nullable=False),
        sa.Column("status", conversation_status, nullable=False),
        sa.Column("priority", conversation_priority, nullable=False),
        sa.Column("assignee_id", UUID(as_uuid=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("additional_attributes", sa.JSON, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "account_id", "display_id", name="uq_conversations_account_display_id"
        ),
    )
    op.create_index(
        "ix_conversations_inbox_contact", "conversations", ["inbox_id", "contact_id"]
    )

    op.create_table(
        "messages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("inbox_id", UUID(as_uuid=True), sa.ForeignKey("inboxes.id"), nullable=False),
        sa.Column(
            "conversation_id",
            UUID(as_uuid=True),
            sa.ForeignKey("conversations.id"),
            nullable=False,
        ),
        sa.Column("message_type", message_type, nullable=False),
        sa.Column("status", message_status, nullable=False),
        sa.Column("content", sa.Text, nullable=True),
        sa.Column("content_type", message_content_type, nullable=False),
        sa.Column("content_attributes", sa.JSON, nullable=True),
        sa.Column("source_id", sa.String(255), nullable=True),
        sa.Column("private", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("sender_type", sender_type, nullable=True),
        sa.Column("sender_id", UUID(as_uuid=True), nullable=True),
        sa.Column("external_error", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("inbox_id", "source_id", name="uq_messages_inbox_source_id"),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])

    op.create_table(
        "attachments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("message_id", UUID(as_uuid=True), sa.ForeignKey("messages.id"), nullable=False),
        sa.Column("account_id", UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("file_type", attachment_file_type, nullable=False),
        sa.Column("external_url", sa.Text, nullable=True),
        sa.Column("file_path", sa.String(1024), nullable=True),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("content_type", sa.String(160), nullable=True),
        sa.Column("file_size", sa.Integer, nullable=True),
        sa.Column("width", sa.Integer, nullable=True),
        sa.Column("height", sa.Integer, nullable=True),
        sa.Column("coordinates_lat", sa.Float, nullable=True),
        sa.Column("coordinates_long", sa.Float, nullable=True),
        sa.Column("fallback_title", sa.String(1024), nullable=True),
        sa.Column("meta", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_attachments_message_id", "attachments", ["message_id"])


def downgrade() -> None:
    op.drop_index("ix_attachments_message_id", table_name="attachments")
    op.drop_table("attachments")
    op.drop_index("ix_messages_conversation_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_inbox_contact", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("contact_inboxes")
    op.drop_index("ix_contacts_account_id", table_name="contacts")
    op.drop_table("contacts")
    op.drop_index("ix_inboxes_account_id", table_name="inboxes")
    op.drop_table("inboxes")
    op.drop_index("ix_channels_expires_at", table_name="channels")
    op.drop_table("channels")

    bind = op.get_bind()
    for enum_type in (
        attachment_file_type,
        sender_type,
        message_content_type,
        message_status,
        message_type,
        conversation_priority,
        conversation_status,
        channel_kind,
    ):
        enum_type.drop(bind, checkfirst=True)
