"""initial schema: draws, slots, reservations, payments, autopay, app_config

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

from rafflenum.models.column_types import UTCDateTime
from rafflenum.models.id_type import ID_TYPE

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "draws",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("opened_at", UTCDateTime(), nullable=False),
        sa.Column("closed_at", UTCDateTime(), nullable=True),
        sa.Column("realized_at", UTCDateTime(), nullable=True),
        sa.Column("winning_number", sa.Integer(), nullable=True),
        sa.Column("autopay_ran_at", UTCDateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('open','closed')", name=op.f("ck_draws_status_enum")
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_draws")),
    )
    op.create_index(
        "uq_draws_single_open",
        "draws",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'open'"),
        sqlite_where=sa.text("status = 'open'"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("owner_id", ID_TYPE, nullable=False),
        sa.Column("draw_id", ID_TYPE, nullable=False),
        sa.Column("numbers", sa.JSON(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=True),
        sa.Column("provider_bill_id", sa.String(length=64), nullable=True),
        sa.Column("provider_charge_id", sa.String(length=64), nullable=True),
        sa.Column("provider_status", sa.String(length=40), nullable=True),
        sa.Column("provider_payload", sa.JSON(), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("paid_at", UTCDateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending','approved','rejected','refunded','canceled')",
            name=op.f("ck_payments_status_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["draw_id"],
            ["draws.id"],
            name=op.f("fk_payments_draw_id_draws"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_payments")),
        sa.UniqueConstraint("provider_bill_id", name="uq_payments_provider_bill_id"),
    )
    op.create_index(op.f("ix_payments_owner_id"), "payments", ["owner_id"])
    op.create_index(op.f("ix_payments_draw_id"), "payments", ["draw_id"])
    op.create_index(
        op.f("ix_payments_provider_charge_id"), "payments", ["provider_charge_id"]
    )

    op.create_table(
        "reservations",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", ID_TYPE, nullable=False),
        sa.Column("draw_id", ID_TYPE, nullable=False),
        sa.Column("numbers", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("expires_at", UTCDateTime(), nullable=False),
        sa.Column("payment_id", sa.String(length=128), nullable=True),
        sa.CheckConstraint(
            "status IN ('active','pending','paid','expired')",
            name=op.f("ck_reservations_status_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["draw_id"],
            ["draws.id"],
            name=op.f("fk_reservations_draw_id_draws"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["payment_id"],
            ["payments.id"],
            name=op.f("fk_reservations_payment_id_payments"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_reservations")),
    )
    op.create_index(op.f("ix_reservations_owner_id"), "reservations", ["owner_id"])
    op.create_index(op.f("ix_reservations_draw_id"), "reservations", ["draw_id"])
    op.create_index(op.f("ix_reservations_payment_id"), "reservations", ["payment_id"])
    op.create_index(
        "ix_reservations_draw_status", "reservations", ["draw_id", "status"]
    )

    op.create_table(
        "draw_slots",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("draw_id", ID_TYPE, nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("reservation_id", sa.String(length=36), nullable=True),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
        sa.CheckConstraint(
            "number >= 0 AND number <= 99", name=op.f("ck_draw_slots_number_range")
        ),
        sa.CheckConstraint(
            "state IN ('available','reserved','sold')",
            name=op.f("ck_draw_slots_state_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["draw_id"],
            ["draws.id"],
            name=op.f("fk_draw_slots_draw_id_draws"),
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["reservation_id"],
            ["reservations.id"],
            name=op.f("fk_draw_slots_reservation_id_reservations"),
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_draw_slots")),
        sa.UniqueConstraint("draw_id", "number", name="uq_draw_slots_draw_number"),
    )
    op.create_index(op.f("ix_draw_slots_draw_id"), "draw_slots", ["draw_id"])
    op.create_index(
        op.f("ix_draw_slots_reservation_id"), "draw_slots", ["reservation_id"]
    )

    op.create_table(
        "autopay_profiles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", ID_TYPE, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=64), nullable=True),
        sa.Column("provider_payment_profile_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_autopay_profiles")),
        sa.UniqueConstraint("owner_id", name=op.f("uq_autopay_profiles_owner_id")),
    )

    op.create_table(
        "autopay_numbers",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("autopay_id", sa.String(length=36), nullable=False),
        sa.Column("n", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "n >= 0 AND n <= 99", name=op.f("ck_autopay_numbers_n_range")
        ),
        sa.ForeignKeyConstraint(
            ["autopay_id"],
            ["autopay_profiles.id"],
            name=op.f("fk_autopay_numbers_autopay_id_autopay_profiles"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_autopay_numbers")),
        sa.UniqueConstraint("n", name="uq_autopay_numbers_n"),
    )
    op.create_index(
        op.f("ix_autopay_numbers_autopay_id"), "autopay_numbers", ["autopay_id"]
    )

    op.create_table(
        "autopay_runs",
        sa.Column("id", ID_TYPE, autoincrement=True, nullable=False),
        sa.Column("run_trace_id", sa.String(length=36), nullable=False),
        sa.Column("attempt_trace_id", sa.String(length=36), nullable=False),
        sa.Column("autopay_id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", ID_TYPE, nullable=False),
        sa.Column("draw_id", ID_TYPE, nullable=False),
        sa.Column("tried_numbers", sa.JSON(), nullable=False),
        sa.Column("reserved_numbers", sa.JSON(), nullable=True),
        sa.Column("reservation_id", sa.String(length=36), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("provider", sa.String(length=40), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("provider_status", sa.Integer(), nullable=True),
        sa.Column("provider_bill_id", sa.String(length=64), nullable=True),
        sa.Column("provider_charge_id", sa.String(length=64), nullable=True),
        sa.Column("provider_request", sa.JSON(), nullable=True),
        sa.Column("provider_response", sa.JSON(), nullable=True),
        sa.Column("payment_id", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", UTCDateTime(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('attempt','reserved','billed','charged',"
            "'charged_ok','charged_fail','skipped')",
            name=op.f("ck_autopay_runs_status_enum"),
        ),
        sa.ForeignKeyConstraint(
            ["autopay_id"],
            ["autopay_profiles.id"],
            name=op.f("fk_autopay_runs_autopay_id_autopay_profiles"),
        ),
        sa.ForeignKeyConstraint(
            ["draw_id"], ["draws.id"], name=op.f("fk_autopay_runs_draw_id_draws")
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_autopay_runs")),
        sa.UniqueConstraint(
            "attempt_trace_id", name=op.f("uq_autopay_runs_attempt_trace_id")
        ),
    )
    op.create_index(
        op.f("ix_autopay_runs_run_trace_id"), "autopay_runs", ["run_trace_id"]
    )
    op.create_index(
        "ix_autopay_runs_autopay_draw", "autopay_runs", ["autopay_id", "draw_id"]
    )
    op.create_index(
        "ix_autopay_runs_draw_status", "autopay_runs", ["draw_id", "status"]
    )

    op.create_table(
        "app_config",
        sa.Column("key", sa.String(length=100), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", UTCDateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key", name=op.f("pk_app_config")),
    )


def downgrade() -> None:
    op.drop_table("app_config")
    op.drop_index("ix_autopay_runs_draw_status", table_name="autopay_runs")
    op.drop_index("ix_autopay_runs_autopay_draw", table_name="autopay_runs")
    op.drop_index(op.f("ix_autopay_runs_run_trace_id"), table_name="autopay_runs")
    op.drop_table("autopay_runs")
    op.drop_index(op.f("ix_autopay_numbers_autopay_id"), table_name="autopay_numbers")
    op.drop_table("autopay_numbers")
    op.drop_table("autopay_profiles")
    op.drop_index(op.f("ix_draw_slots_reservation_id"), table_name="draw_slots")
    op.drop_index(op.f("ix_draw_slots_draw_id"), table_name="draw_slots")
    op.drop_table("draw_slots")
    op.drop_index("ix_reservations_draw_status", table_name="reservations")
    op.drop_index(op.f("ix_reservations_payment_id"), table_name="reservations")
    op.drop_index(op.f("ix_reservations_draw_id"), table_name="reservations")
    op.drop_index(op.f("ix_reservations_owner_id"), table_name="reservations")
    op.drop_table("reservations")
    op.drop_index(op.f("ix_payments_provider_charge_id"), table_name="payments")
    op.drop_index(op.f("ix_payments_draw_id"), table_name="payments")
    op.drop_index(op.f("ix_payments_owner_id"), table_name="payments")
    op.drop_table("payments")
    op.drop_index("uq_draws_single_open", table_name="draws")
    op.drop_table("draws")
