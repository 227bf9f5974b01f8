"""create users, entitlements, bookings, reconciliations and log entries

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("phone", sa.String(), nullable=True),
        sa.Column("address", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="customer"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "entitlements",
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("expiry", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("balance >= 0", name="check_entitlement_balance_non_negative"),
        sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("customer_id"),
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("cylinder_count", sa.Integer(), nullable=False),
        sa.Column("delivery_address", sa.String(), nullable=False),
        sa.Column("delivery_date", sa.Date(), nullable=False),
        sa.Column("booking_status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("payment_method", sa.String(), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False, server_default="PENDING"),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("gateway_order_id", sa.String(), nullable=True),
        sa.Column("qr_screenshot_ref", sa.String(), nullable=True),
        sa.Column("balance_deducted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("cylinder_count BETWEEN 1 AND 5", name="check_booking_cylinder_count"),
        sa.CheckConstraint(
            "NOT (payment_status = 'SUCCESS' AND booking_status = 'REJECTED')",
            name="check_booking_paid_not_rejected",
        ),
        sa.ForeignKeyConstraint(["customer_id"], ["entitlements.customer_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bookings_customer_id", "bookings", ["customer_id"], unique=False)
    op.create_index("ix_bookings_booking_status", "bookings", ["booking_status"], unique=False)
    op.create_index("ix_bookings_gateway_order_id", "bookings", ["gateway_order_id"], unique=True)
    op.create_index("ix_bookings_created_at", "bookings", ["created_at"], unique=False)

    op.create_table(
        "payment_reconciliations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("outcome_type", sa.String(), nullable=False),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_payment_reconciliations_booking_id", "payment_reconciliations", ["booking_id"], unique=False)

    op.create_table(
        "log_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_log_entries_timestamp", "log_entries", ["timestamp"], unique=False)
    op.create_index("ix_log_entries_actor_id", "log_entries", ["actor_id"], unique=False)
    op.create_index("ix_log_entries_action", "log_entries", ["action"], unique=False)
    op.create_index("ix_log_entries_entity_id", "log_entries", ["entity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_log_entries_entity_id", table_name="log_entries")
    op.drop_index("ix_log_entries_action", table_name="log_entries")
    op.drop_index("ix_log_entries_actor_id", table_name="log_entries")
    op.drop_index("ix_log_entries_timestamp", table_name="log_entries")
    op.drop_table("log_entries")
    op.drop_index("ix_payment_reconciliations_booking_id", table_name="payment_reconciliations")
    op.drop_table("payment_reconciliations")
    op.drop_index("ix_bookings_created_at", table_name="bookings")
    op.drop_index("ix_bookings_gateway_order_id", table_name="bookings")
    op.drop_index("ix_bookings_booking_status", table_name="bookings")
    op.drop_index("ix_bookings_customer_id", table_name="bookings")
    op.drop_table("bookings")
    op.drop_table("entitlements")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
