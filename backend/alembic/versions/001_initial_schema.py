"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables
    op.create_table(
        "tables",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("location_id", sa.Integer(), nullable=False, index=True),
        sa.Column("number", sa.String(20), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False, default=4),
        sa.Column("area", sa.String(50), nullable=True),
        sa.Column("active", sa.Boolean(), default=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint("location_id", "number", name="uq_tables_location_number"),
        sa.CheckConstraint("capacity > 0", name="ck_tables_capacity_positive"),
    )

    # Table sessions
    op.create_table(
        "table_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("table_id", sa.Integer(), sa.ForeignKey("tables.id"), nullable=False, index=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active", sa.Boolean(), default=True, nullable=False),
    )
    op.create_index(
        "uq_table_sessions_one_active",
        "table_sessions",
        ["table_id"],
        unique=True,
        sqlite_where=sa.text("active = 1"),
        postgresql_where=sa.text("active"),
    )

    # Session participants
    op.create_table(
        "session_participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "session_id", sa.Integer(),
            sa.ForeignKey("table_sessions.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column("user_id", sa.Integer(), nullable=True, index=True),
        sa.Column("alias", sa.String(50), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("session_id", "alias", name="uq_session_participants_alias"),
    )

    # Orders (read by the bill and the leave check)
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("table_sessions.id"), nullable=False, index=True),
        sa.Column(
            "participant_id", sa.Integer(),
            sa.ForeignKey("session_participants.id", ondelete="SET NULL"), nullable=True, index=True,
        ),
        sa.Column("status", sa.String(20), nullable=False, default="pending"),
        sa.Column("subtotal", sa.Numeric(10, 2), nullable=False, default=0),
        sa.Column("tax_amount", sa.Numeric(10, 2), nullable=False, default=0),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # Waiter calls
    op.create_table(
        "waiter_calls",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("table_sessions.id"), nullable=False, index=True),
        sa.Column("table_id", sa.Integer(), sa.ForeignKey("tables.id"), nullable=False, index=True),
        sa.Column(
            "participant_id", sa.Integer(),
            sa.ForeignKey("session_participants.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("location_id", sa.Integer(), nullable=False, index=True),
        sa.Column("call_type", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False, default="medium"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, default="pending", index=True),
        sa.Column("assigned_waiter_id", sa.Integer(), nullable=True, index=True),
        sa.Column("estimated_arrival_minutes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "call_responses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("call_id", sa.Integer(), sa.ForeignKey("waiter_calls.id"), nullable=False, unique=True),
        sa.Column("waiter_id", sa.Integer(), nullable=False, index=True),
        sa.Column("response_time_seconds", sa.Integer(), nullable=False),
        sa.Column("satisfaction", sa.Integer(), nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("response_time_seconds >= 0", name="ck_call_responses_time"),
        sa.CheckConstraint(
            "satisfaction IS NULL OR (satisfaction BETWEEN 1 AND 5)",
            name="ck_call_responses_satisfaction",
        ),
    )

    op.create_table(
        "waiter_status",
        sa.Column("waiter_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("location_id", sa.Integer(), nullable=False, index=True),
        sa.Column("status", sa.String(20), nullable=False, default="available"),
        sa.Column("current_calls", sa.Integer(), nullable=False, default=0),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
    )

    # Split bills
    op.create_table(
        "split_payment_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("table_sessions.id"), nullable=False, index=True),
        sa.Column("split_type", sa.String(20), nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("tip_amount", sa.Numeric(10, 2), nullable=False, default=0),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.CheckConstraint("total_amount >= 0", name="ck_split_total_non_negative"),
        sa.CheckConstraint("tip_amount >= 0", name="ck_split_tip_non_negative"),
    )

    op.create_table(
        "split_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "split_session_id", sa.Integer(),
            sa.ForeignKey("split_payment_sessions.id", ondelete="CASCADE"), nullable=False, index=True,
        ),
        sa.Column(
            "participant_id", sa.Integer(),
            sa.ForeignKey("session_participants.id", ondelete="SET NULL"), nullable=True, index=True,
        ),
        sa.Column("participant_name", sa.String(50), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("tip_amount", sa.Numeric(10, 2), nullable=False, default=0),
        sa.Column("status", sa.String(20), nullable=False, default="pending"),
        sa.Column("payment_intent_id", sa.String(255), nullable=True, index=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.CheckConstraint("amount >= 0", name="ck_contribution_amount_non_negative"),
    )

    # Payment intents
    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), sa.ForeignKey("table_sessions.id"), nullable=False, index=True),
        sa.Column(
            "participant_id", sa.Integer(),
            sa.ForeignKey("session_participants.id", ondelete="SET NULL"), nullable=True, index=True,
        ),
        sa.Column(
            "split_contribution_id", sa.Integer(),
            sa.ForeignKey("split_contributions.id", ondelete="SET NULL"), nullable=True, index=True,
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, default="pending"),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("provider_payment_id", sa.String(255), nullable=False, unique=True),
        sa.Column("client_secret", sa.String(255), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("refunded_amount", sa.Numeric(10, 2), nullable=False, default=0),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("payment_intents")
    op.drop_table("split_contributions")
    op.drop_table("split_payment_sessions")
    op.drop_table("waiter_status")
    op.drop_table("call_responses")
    op.drop_table("waiter_calls")
    op.drop_table("orders")
    op.drop_table("session_participants")
    op.drop_index("uq_table_sessions_one_active", table_name="table_sessions")
    op.drop_table("table_sessions")
    op.drop_table("tables")
