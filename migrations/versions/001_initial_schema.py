"""Initial schema: users, rides with seat counters, bookings.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("is_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "driver_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("departure_date", sa.Date, nullable=False),
        sa.Column("departure_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_seats", sa.Integer, nullable=False),
        sa.Column("available_seats", sa.Integer, nullable=False),
        sa.Column("booked_seats", sa.Integer, nullable=False, server_default="0"),
        sa.Column("price_per_seat", sa.Float, nullable=False, server_default="0"),
        sa.Column("pickup_points", sa.JSON, nullable=False),
        sa.Column(
            "status", sa.String(20), nullable=False, server_default="active"
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "available_seats >= 0", name="ck_rides_available_non_negative"
        ),
        sa.CheckConstraint(
            "available_seats <= total_seats", name="ck_rides_available_within_total"
        ),
        sa.CheckConstraint(
            "available_seats + booked_seats = total_seats", name="ck_rides_seat_mirror"
        ),
    )
    op.create_index("idx_rides_departure_date", "rides", ["departure_date"])
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("reference", sa.String(16), unique=True, nullable=False),
        sa.Column("ride_id", sa.String(36), sa.ForeignKey("rides.id"), nullable=False),
        sa.Column(
            "passenger_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column(
            "driver_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("pickup_point_id", sa.String(64), nullable=True),
        sa.Column("seats", sa.Integer, nullable=False),
        sa.Column("price_per_seat", sa.Float, nullable=False),
        sa.Column("total_amount", sa.Float, nullable=False),
        sa.Column("departure_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verification_code", sa.String(16), nullable=False),
        sa.Column("verification_expiry", sa.DateTime(timezone=True), nullable=False),
        sa.Column("code_regenerated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status", sa.String(20), nullable=False, server_default="pending"
        ),
        sa.Column(
            "payment_status", sa.String(20), nullable=False, server_default="pending"
        ),
        sa.Column("amount_received", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "is_late_cancellation",
            sa.Boolean,
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("cancelled_by", sa.String(36), nullable=True),
        sa.Column("cancellation_reason", sa.String(500), nullable=True),
        sa.Column("no_show_reason", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("no_show_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("seats > 0", name="ck_bookings_seats_positive"),
    )
    op.create_index("idx_bookings_ride", "bookings", ["ride_id"])
    op.create_index("idx_bookings_passenger", "bookings", ["passenger_id"])
    op.create_index("idx_bookings_driver", "bookings", ["driver_id"])
    op.create_index("idx_bookings_status", "bookings", ["status"])


def downgrade() -> None:
    op.drop_table("bookings")
    op.drop_table("rides")
    op.drop_table("users")
