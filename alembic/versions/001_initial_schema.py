"""initial schema - users, requests, suppliers, chats, offers, audit, settings

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-01

For databases created by the app's create_all: run `alembic stamp 001_initial`.
For NEW databases: run `alembic upgrade head`.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, **kw) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kw)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255)),
        sa.Column("password_hash", sa.String(255)),
        sa.Column("role", sa.String(20)),
        sa.Column("is_active", sa.Boolean),
        _ts("last_login_at"),
        _ts("created_at"),
    )

    op.create_table(
        "suppliers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("tax_id", sa.String(50), unique=True),
        sa.Column("email", sa.String(255)),
        sa.Column("phone", sa.String(50)),
        sa.Column("whatsapp", sa.String(50)),
        sa.Column("website", sa.String(500)),
        sa.Column("address", sa.Text),
        sa.Column("contact_person", sa.String(255)),
        sa.Column("tags", sa.JSON),
        sa.Column("rating", sa.Float),
        _ts("contract_start"),
        _ts("contract_end"),
        sa.Column("is_active", sa.Boolean),
        sa.Column("notes", sa.Text),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_suppliers_website", "suppliers", ["website"])
    op.create_index("ix_suppliers_name", "suppliers", ["name"])

    op.create_table(
        "requests",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("request_number", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text),
        _ts("deadline"),
        sa.Column("budget", sa.Float),
        sa.Column("currency", sa.String(10)),
        sa.Column("priority", sa.Integer),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("executor", sa.String(255)),
        sa.Column("source_file", sa.String(500)),
        sa.Column("created_by", sa.Integer, sa.ForeignKey("users.id")),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_requests_status", "requests", ["status"])
    op.create_index("ix_requests_created_at", "requests", ["created_at"])

    op.create_table(
        "positions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("sku", sa.String(100)),
        sa.Column("quantity", sa.Float, nullable=False),
        sa.Column("unit", sa.String(50)),
        sa.Column("quotes_requested", sa.Integer, nullable=False, server_default="0"),
        sa.Column("quotes_received", sa.Integer, nullable=False, server_default="0"),
        sa.Column("search_status", sa.String(30), nullable=False),
        sa.Column("final_choice", sa.Text),
        sa.Column("ai_recommendation", sa.Text),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_positions_request", "positions", ["request_id"])

    op.create_table(
        "request_suppliers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("supplier_id", sa.Integer, sa.ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(20)),
        sa.Column("found_via", sa.String(500)),
        sa.Column("search_relevance", sa.Float),
        _ts("created_at"),
        sa.UniqueConstraint("request_id", "supplier_id", name="uq_request_supplier"),
    )

    for table in ("tasks", "approvals", "quotes"):
        _request_scoped_table(table)

    op.create_table(
        "chats",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("phone_number", sa.String(50), nullable=False, unique=True),
        sa.Column("contact_name", sa.String(255)),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="SET NULL")),
        sa.Column("supplier_id", sa.Integer, sa.ForeignKey("suppliers.id", ondelete="SET NULL")),
        sa.Column("last_message", sa.Text),
        _ts("last_message_at"),
        sa.Column("unread_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_archived", sa.Boolean),
        _ts("created_at"),
    )
    op.create_index("ix_chats_request", "chats", ["request_id"])

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("chat_id", sa.Integer, sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_id", sa.String(255)),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("content", sa.Text),
        sa.Column("message_type", sa.String(20)),
        sa.Column("status", sa.String(20)),
        _ts("timestamp"),
        sa.Column("file_url", sa.String(1000)),
        sa.Column("file_name", sa.String(500)),
        sa.Column("metadata", sa.JSON),
    )
    op.create_index("ix_chat_messages_chat_ts", "chat_messages", ["chat_id", "timestamp"])
    op.create_index("ix_chat_messages_external", "chat_messages", ["external_id"])

    op.create_table(
        "position_chats",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("position_id", sa.Integer, sa.ForeignKey("positions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chat_id", sa.Integer, sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        _ts("request_sent_at"),
        _ts("quote_received_at"),
        _ts("created_at"),
        sa.UniqueConstraint("position_id", "chat_id", name="uq_position_chat"),
    )

    op.create_table(
        "assistant_threads",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("chat_id", sa.Integer, sa.ForeignKey("chats.id", ondelete="CASCADE"), nullable=False),
        sa.Column("thread_id", sa.String(255), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "commercial_offers",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position_id", sa.Integer, sa.ForeignKey("positions.id", ondelete="SET NULL")),
        sa.Column("chat_id", sa.Integer, sa.ForeignKey("chats.id", ondelete="SET NULL")),
        sa.Column("supplier_id", sa.Integer, sa.ForeignKey("suppliers.id", ondelete="SET NULL")),
        sa.Column("company", sa.String(255), nullable=False),
        sa.Column("total_price", sa.Float, nullable=False),
        sa.Column("currency", sa.String(10)),
        sa.Column("delivery_terms", sa.Text),
        sa.Column("delivery_days", sa.Integer),
        sa.Column("payment_terms", sa.Text),
        _ts("validity_date"),
        sa.Column("confidence", sa.Float),
        sa.Column("needs_manual_review", sa.Boolean),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("file_url", sa.String(1000)),
        sa.Column("file_name", sa.String(500)),
        sa.Column("notes", sa.Text),
        sa.Column("reviewed_by", sa.Integer, sa.ForeignKey("users.id")),
        _ts("reviewed_at"),
        _ts("created_at"),
    )
    op.create_index("ix_offers_request", "commercial_offers", ["request_id"])
    op.create_index("ix_offers_position", "commercial_offers", ["position_id"])

    op.create_table(
        "request_decisions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("selected_offer_id", sa.Integer, sa.ForeignKey("commercial_offers.id", ondelete="SET NULL")),
        sa.Column("decided_by", sa.Integer, sa.ForeignKey("users.id")),
        sa.Column("reason", sa.Text),
        sa.Column("final_price", sa.Float),
        sa.Column("final_currency", sa.String(10)),
        sa.Column("selected_supplier", sa.String(255)),
        _ts("decided_at"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(50)),
        sa.Column("details", sa.JSON),
        sa.Column("ip_address", sa.String(64)),
        _ts("created_at"),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    op.create_table(
        "system_settings",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("key", sa.String(100), nullable=False, unique=True),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("value_type", sa.String(10), nullable=False),
        sa.Column("is_secret", sa.Boolean),
        sa.Column("description", sa.String(500)),
        sa.Column("updated_by", sa.String(255)),
        _ts("updated_at"),
    )
    op.create_index("ix_system_settings_key", "system_settings", ["key"])


def _request_scoped_table(name: str) -> None:
    cols = {
        "tasks": [
            sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="CASCADE")),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text),
            sa.Column("assigned_to", sa.Integer, sa.ForeignKey("users.id")),
            sa.Column("status", sa.String(20)),
            _ts("due_date"),
        ],
        "approvals": [
            sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
            sa.Column("approver_id", sa.Integer, sa.ForeignKey("users.id")),
            sa.Column("status", sa.String(20)),
            sa.Column("comment", sa.Text),
        ],
        "quotes": [
            sa.Column("request_id", sa.Integer, sa.ForeignKey("requests.id", ondelete="CASCADE"), nullable=False),
            sa.Column("supplier_id", sa.Integer, sa.ForeignKey("suppliers.id")),
            sa.Column("total_price", sa.Float),
            sa.Column("currency", sa.String(10)),
            sa.Column("notes", sa.Text),
        ],
    }[name]
    op.create_table(name, sa.Column("id", sa.Integer, primary_key=True), *cols, _ts("created_at"))


def downgrade() -> None:
    """Drop every table. Destroys all data."""
    for table in (
        "system_settings", "audit_logs", "request_decisions", "commercial_offers",
        "assistant_threads", "position_chats", "chat_messages", "chats",
        "quotes", "approvals", "tasks", "request_suppliers", "positions",
        "requests", "suppliers", "users",
    ):
        op.drop_table(table)
