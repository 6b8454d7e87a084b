"""Booking notes, reminder flags and shop responses to ratings

Revision ID: 0002_booking_extras
Revises: 0001_initial_schema
Create Date: 2026-10-17 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0002_booking_extras"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None

REMINDER_FLAGS = ("remind_1h_sent", "remind_24h_sent", "remind_72h_sent", "remind_1w_sent")


def upgrade() -> None:
    op.add_column("bookings", sa.Column("notes", sa.Text(), nullable=True))
    for name in REMINDER_FLAGS:
        op.add_column(
            "bookings",
            sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.false()),
        )
    op.add_column("ratings", sa.Column("shop_response", sa.Text(), nullable=True))
    op.add_column("ratings", sa.Column("shop_response_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column("ratings", "shop_response_at")
    op.drop_column("ratings", "shop_response")
    for name in reversed(REMINDER_FLAGS):
        op.drop_column("bookings", name)
    op.drop_column("bookings", "notes")
