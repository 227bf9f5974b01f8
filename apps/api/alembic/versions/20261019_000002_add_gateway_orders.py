"""keep every gateway order issued for a booking

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "gateway_orders",
        sa.Column("order_id", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("payment_attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"]),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_index("ix_gateway_orders_booking_id", "gateway_orders", ["booking_id"], unique=False)
    op.execute(
        "INSERT INTO gateway_orders (order_id, booking_id, payment_attempt) "
        "SELECT gateway_order_id, id, payment_attempt FROM bookings WHERE gateway_order_id IS NOT NULL"
    )


def downgrade() -> None:
    op.drop_index("ix_gateway_orders_booking_id", table_name="gateway_orders")
    op.drop_table("gateway_orders")
