"""init donor tables

Revision ID: 20240601_0001
Revises: None
Create Date: 2024-06-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20240601_0001_init_donor_tables"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "contact",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), unique=True),
        *_timestamps(),
    )

    op.create_table(
        "pledge",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("contact_id", sa.Integer(), sa.ForeignKey("contact.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pledge_date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("original_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("total_paid", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("balance", sa.Numeric(10, 2), nullable=False),
        sa.Column("original_amount_usd", sa.Numeric(10, 2)),
        sa.Column("total_paid_usd", sa.Numeric(10, 2)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_pledge_contact_id", "pledge", ["contact_id"])

    op.create_table(
        "payment_plan",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pledge_id", sa.Integer(), sa.ForeignKey("pledge.id", ondelete="CASCADE"), nullable=False),
        sa.Column("plan_name", sa.Text()),
        sa.Column("total_planned_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("total_planned_amount_usd", sa.Numeric(10, 2)),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("installment_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("installment_amount_usd", sa.Numeric(10, 2)),
        sa.Column("number_of_installments", sa.Integer(), nullable=False),
        sa.Column("exchange_rate", sa.Numeric(18, 6)),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("installments_paid", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_paid", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("remaining_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("remaining_amount_usd", sa.Numeric(10, 2)),
        sa.Column("plan_status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_payment_plan_pledge_id", "payment_plan", ["pledge_id"])

    op.create_table(
        "installment_schedule",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "payment_plan_id",
            sa.Integer(),
            sa.ForeignKey("payment_plan.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("installment_date", sa.Date(), nullable=False),
        sa.Column("installment_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("installment_amount_usd", sa.Numeric(10, 2)),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("paid_date", sa.Date()),
        *_timestamps(),
    )
    op.create_index("ix_installment_schedule_payment_plan_id", "installment_schedule", ["payment_plan_id"])
    op.create_index("ix_installment_schedule_installment_date", "installment_schedule", ["installment_date"])

    op.create_table(
        "payment",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("pledge_id", sa.Integer(), sa.ForeignKey("pledge.id", ondelete="SET NULL")),
        sa.Column("payment_plan_id", sa.Integer(), sa.ForeignKey("payment_plan.id", ondelete="SET NULL")),
        sa.Column(
            "installment_schedule_id",
            sa.Integer(),
            sa.ForeignKey("installment_schedule.id", ondelete="SET NULL"),
        ),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("amount_usd", sa.Numeric(10, 2)),
        sa.Column("amount_in_pledge_currency", sa.Numeric(10, 2)),
        sa.Column("amount_in_plan_currency", sa.Numeric(10, 2)),
        sa.Column("exchange_rate", sa.Numeric(18, 6)),
        sa.Column("pledge_currency_exchange_rate", sa.Numeric(18, 6)),
        sa.Column("plan_currency_exchange_rate", sa.Numeric(18, 6)),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("received_date", sa.Date()),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="completed"),
        sa.Column("is_third_party_payment", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payer_contact_id", sa.Integer(), sa.ForeignKey("contact.id", ondelete="SET NULL")),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
    )
    for column in (
        "pledge_id",
        "payment_plan_id",
        "installment_schedule_id",
        "payment_date",
        "payment_status",
        "payer_contact_id",
    ):
        op.create_index(f"ix_payment_{column}", "payment", [column])

    op.create_table(
        "payment_allocations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payment.id", ondelete="CASCADE"), nullable=False),
        sa.Column("pledge_id", sa.Integer(), sa.ForeignKey("pledge.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "installment_schedule_id",
            sa.Integer(),
            sa.ForeignKey("installment_schedule.id", ondelete="SET NULL"),
        ),
        sa.Column("allocated_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("allocated_amount_usd", sa.Numeric(10, 2)),
        sa.Column("allocated_amount_in_pledge_currency", sa.Numeric(10, 2)),
        sa.Column("payer_contact_id", sa.Integer(), sa.ForeignKey("contact.id", ondelete="SET NULL")),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "payment_id", "pledge_id", "installment_schedule_id", name="payment_allocations_unique"
        ),
    )
    op.create_index("ix_payment_allocations_payment_id", "payment_allocations", ["payment_id"])
    op.create_index("ix_payment_allocations_pledge_id", "payment_allocations", ["pledge_id"])

    op.create_table(
        "exchange_rate",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("base_currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("target_currency", sa.String(length=3), nullable=False),
        sa.Column("rate", sa.Numeric(18, 6), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="provider"),
        *_timestamps(),
        sa.UniqueConstraint("base_currency", "target_currency", "date", name="exchange_rate_unique_idx"),
    )
    op.create_index("ix_exchange_rate_base_currency", "exchange_rate", ["base_currency"])
    op.create_index("ix_exchange_rate_target_currency", "exchange_rate", ["target_currency"])
    op.create_index("ix_exchange_rate_date", "exchange_rate", ["date"])


def downgrade() -> None:
    op.drop_table("exchange_rate")
    op.drop_table("payment_allocations")
    op.drop_table("payment")
    op.drop_table("installment_schedule")
    op.drop_table("payment_plan")
    op.drop_table("pledge")
    op.drop_table("contact")
