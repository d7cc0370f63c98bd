"""Add unified inbox conversations and messages.

Revision ID: 8c1e4f2a9b70
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "8c1e4f2a9b70"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "platform": ("messenger", "instagram", "whatsapp"),
    "messagedirection": ("incoming", "outgoing"),
    "messagetype": (
        "text",
        "image",
        "video",
        "audio",
        "document",
        "sticker",
        "location",
        "template",
    ),
    "messagestatus": ("sent", "delivered", "read", "failed"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in _ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    inspector = sa.inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "inbox_conversations" not in existing_tables:
        op.create_table(
            "inbox_conversations",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column("platform", _enum("platform"), nullable=False),
            sa.Column("external_user_id", sa.String(120), nullable=False),
            sa.Column("lead_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("contact_name", sa.String(200), nullable=True),
            sa.Column("contact_username", sa.String(120), nullable=True),
            sa.Column("contact_avatar_url", sa.Text(), nullable=True),
            sa.Column("contact_phone", sa.String(40), nullable=True),
            sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint(
                "platform", "external_user_id", name="uq_inbox_conversations_platform_user"
            ),
        )
        op.create_index(
            "ix_inbox_conversations_last_message_at",
            "inbox_conversations",
            ["last_message_at"],
        )

    if "inbox_messages" not in existing_tables:
        op.create_table(
            "inbox_messages",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
            sa.Column(
                "conversation_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("inbox_conversations.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("platform", _enum("platform"), nullable=False),
            sa.Column("vendor_message_id", sa.String(255), nullable=True),
            sa.Column("direction", _enum("messagedirection"), nullable=False),
            sa.Column("message_type", _enum("messagetype"), nullable=False),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("media_ref", sa.Text(), nullable=True),
            sa.Column("media_mime_type", sa.String(120), nullable=True),
            sa.Column("media_caption", sa.Text(), nullable=True),
            sa.Column("media_filename", sa.String(255), nullable=True),
            sa.Column("status", _enum("messagestatus"), nullable=False),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("sent_by_id", sa.String(120), nullable=True),
            sa.Column("reply_to_vendor_message_id", sa.String(255), nullable=True),
            sa.Column("reply_to_message_id", postgresql.UUID(as_uuid=True), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint(
                "platform", "vendor_message_id", name="uq_inbox_messages_platform_vendor_id"
            ),
        )
        op.create_index(
            "ix_inbox_messages_conversation_created",
            "inbox_messages",
            ["conversation_id", "created_at"],
        )


def downgrade() -> None:
    op.drop_index("ix_inbox_messages_conversation_created", table_name="inbox_messages")
    op.drop_table("inbox_messages")
    op.drop_index("ix_inbox_conversations_last_message_at", table_name="inbox_conversations")
    op.drop_table("inbox_conversations")
    bind = op.get_bind()
    for name in reversed(list(_ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
