"""order lifecycle core tables

Revision ID: 3c1d9e7a5b20
Revises:
Create Date: 2026-10-18 09:15:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3c1d9e7a5b20"
down_revision = None
branch_labels = None
depends_on = None


def _create_indexes(insp, table_name: str, indexes) -> None:
    existing_indexes = {str(idx.get("name") or "") for idx in insp.get_indexes(table_name)}
    for name, columns, unique in indexes:
        if name not in existing_indexes:
            op.create_index(name, table_name, columns, unique=unique)


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("vendors"):
        op.create_table(
            "vendors",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("business_name", sa.String(length=160), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("online", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("last_lat", sa.Float(), nullable=True),
            sa.Column("last_lng", sa.Float(), nullable=True),
            sa.Column("last_seen_at", sa.DateTime(), nullable=True),
            sa.Column("fcm_tokens_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        insp,
        "vendors",
        (
            ("ix_vendors_phone", ["phone"], True),
            ("ix_vendors_online", ["online"], False),
        ),
    )

    if not insp.has_table("orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("customer_id", sa.String(length=64), nullable=True),
            sa.Column("vendor_id", sa.Integer(), nullable=True),
            sa.Column("pickup_lat", sa.Float(), nullable=False),
            sa.Column("pickup_lng", sa.Float(), nullable=False),
            sa.Column("pickup_address", sa.String(length=255), nullable=False),
            sa.Column("drop_lat", sa.Float(), nullable=False),
            sa.Column("drop_lng", sa.Float(), nullable=False),
            sa.Column("drop_address", sa.String(length=255), nullable=False),
            sa.Column("items_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("fare", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="INR"),
            sa.Column("payment_method", sa.String(length=16), nullable=False, server_default="cod"),
            sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("scheduled_at", sa.DateTime(), nullable=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("cancellation_reason", sa.String(length=240), nullable=True),
            sa.Column("cancelled_by", sa.String(length=16), nullable=True),
            sa.Column("customer_notes", sa.Text(), nullable=True),
            sa.Column("vendor_notes", sa.Text(), nullable=True),
            sa.Column("otp_id", sa.String(length=36), nullable=True),
            sa.Column("otp_code_hash", sa.String(length=160), nullable=True),
            sa.Column("otp_purpose", sa.String(length=16), nullable=True),
            sa.Column("otp_created_at", sa.DateTime(), nullable=True),
            sa.Column("otp_expires_at", sa.DateTime(), nullable=True),
            sa.Column("otp_attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("otp_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["vendor_id"], ["vendors.id"], ondelete=None),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        insp,
        "orders",
        (
            ("ix_orders_status", ["status"], False),
            ("ix_orders_status_created", ["status", "created_at"], False),
            ("ix_orders_vendor_status", ["vendor_id", "status"], False),
            ("ix_orders_vendor_created", ["vendor_id", "created_at"], False),
            ("ix_orders_customer_created", ["customer_id", "created_at"], False),
        ),
    )

    if not insp.has_table("order_payment_requests"):
        op.create_table(
            "order_payment_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.String(length=36), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="INR"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="requested"),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("confirmed_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete=None),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id", "request_id", name="uq_order_payment_request"),
        )
    _create_indexes(
        insp,
        "order_payment_requests",
        (
            ("ix_order_payment_requests_order_id", ["order_id"], False),
            ("ix_order_payment_requests_request_id", ["request_id"], False),
        ),
    )

    if not insp.has_table("order_transitions"):
        op.create_table(
            "order_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=32), nullable=False),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(insp, "order_transitions", (("ix_order_transitions_order_id", ["order_id"], False),))

    if not insp.has_table("mock_order_calls"):
        op.create_table(
            "mock_order_calls",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("client_request_id", sa.String(length=128), nullable=True),
            sa.Column("request_payload", sa.Text(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("vendor_id", sa.Integer(), nullable=True),
            sa.Column("ip_address", sa.String(length=64), nullable=True),
            sa.Column("user_agent", sa.String(length=255), nullable=True),
            sa.Column("auto_assigned", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("response_status", sa.Integer(), nullable=False),
            sa.Column("error_message", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        insp,
        "mock_order_calls",
        (
            ("ix_mock_order_calls_client_request_id", ["client_request_id"], True),
            ("ix_mock_order_calls_order_id", ["order_id"], False),
            ("ix_mock_order_calls_created_at", ["created_at"], False),
        ),
    )

    if not insp.has_table("notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_type", sa.String(length=16), nullable=False),
            sa.Column("recipient_id", sa.String(length=64), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
            sa.Column("provider", sa.String(length=64), nullable=True),
            sa.Column("error", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
            sa.Column("data_json", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        insp,
        "notifications",
        (
            ("ix_notifications_recipient_id", ["recipient_id"], False),
            ("ix_notifications_order_id", ["order_id"], False),
        ),
    )


def downgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    for table_name in (
        "notifications",
        "mock_order_calls",
        "order_transitions",
        "order_payment_requests",
        "orders",
        "vendors",
    ):
        if insp.has_table(table_name):
            op.drop_table(table_name)
