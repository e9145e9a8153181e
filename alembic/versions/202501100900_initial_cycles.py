"""initial cycles schema

Revision ID: 202501100900
Revises:
Create Date: 2025-01-10 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202501100900"
down_revision = None
branch_labels = None
depends_on = None

currency = sa.Enum("BRL", "USD", "EUR", name="currencycode")
line_item_status = sa.Enum("PENDING", "PAID", name="lineitemstatus")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "workspaces",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120)),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column("email", sa.String(length=254), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("auth_user_id", sa.String(length=120), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("auth_user_id", name="uq_user_auth_user_id"),
    )

    op.create_table(
        "preferences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column("income_default_currency", currency),
        *_timestamps(),
        sa.UniqueConstraint("workspace_id", name="uq_preference_workspace"),
    )

    op.create_table(
        "debt_owners",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "income_payers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=40)),
        *_timestamps(),
    )

    op.create_table(
        "incomes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column(
            "payer_id", sa.Integer(), sa.ForeignKey("income_payers.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", currency, nullable=False),
        sa.Column(
            "kind",
            sa.Enum("REGULAR", "REIMBURSEMENT", name="incomekind"),
            nullable=False,
        ),
        sa.Column("first_income_date", sa.Date(), nullable=False),
        sa.Column("is_recurrent", sa.Boolean(), nullable=False),
        sa.Column("number_of_payments", sa.Integer()),
        sa.Column("end_date", sa.Date()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        sa.CheckConstraint(
            "is_recurrent OR number_of_payments >= 1",
            name="ck_income_fixed_payments",
        ),
    )
    op.create_index(
        "ix_incomes_workspace_first_date",
        "incomes",
        ["workspace_id", "first_income_date"],
    )

    op.create_table(
        "debts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column(
            "owner_id", sa.Integer(), sa.ForeignKey("debt_owners.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", currency, nullable=False),
        sa.Column(
            "kind", sa.Enum("FIXED", "VARIABLE", name="debtkind"), nullable=False
        ),
        sa.Column("purchased_at", sa.Date()),
        sa.Column("first_payment_date", sa.Date(), nullable=False),
        sa.Column("has_end", sa.Boolean(), nullable=False),
        sa.Column("installments", sa.Integer()),
        sa.Column("end_date", sa.Date()),
        sa.Column(
            "reimbursement_income_id",
            sa.Integer(),
            sa.ForeignKey("incomes.id", ondelete="SET NULL"),
        ),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_debt_amount_positive"),
        sa.CheckConstraint(
            "NOT has_end OR installments >= 1", name="ck_debt_installments"
        ),
    )
    op.create_index(
        "ix_debts_workspace_first_date", "debts", ["workspace_id", "first_payment_date"]
    )

    op.create_table(
        "materialized_cycles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "workspace_id", sa.Integer(), sa.ForeignKey("workspaces.id"), nullable=False
        ),
        sa.Column("month", sa.Date(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("workspace_id", "month", name="uq_cycle_workspace_month"),
    )

    op.create_table(
        "materialized_debts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "cycle_id",
            sa.Integer(),
            sa.ForeignKey("materialized_cycles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "debt_id",
            sa.Integer(),
            sa.ForeignKey("debts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("ordinal", sa.Integer()),
        sa.Column("status", line_item_status, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("cycle_id", "debt_id", name="uq_cycle_debt_source"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_cycle_debt_amount_positive"),
    )

    op.create_table(
        "materialized_incomes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "cycle_id",
            sa.Integer(),
            sa.ForeignKey("materialized_cycles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "income_id",
            sa.Integer(),
            sa.ForeignKey("incomes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("ordinal", sa.Integer()),
        sa.Column("status", line_item_status, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("cycle_id", "income_id", name="uq_cycle_income_source"),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_cycle_income_amount_positive"
        ),
    )

    op.create_table(
        "cycle_expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "cycle_id",
            sa.Integer(),
            sa.ForeignKey("materialized_cycles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("category_name", sa.String(length=100)),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_cycle_expense_amount_positive"
        ),
    )
    op.create_index(
        "ix_cycle_expenses_cycle_date", "cycle_expenses", ["cycle_id", "date"]
    )


def downgrade():
    op.drop_index("ix_cycle_expenses_cycle_date", table_name="cycle_expenses")
    op.drop_table("cycle_expenses")
    op.drop_table("materialized_incomes")
    op.drop_table("materialized_debts")
    op.drop_table("materialized_cycles")
    op.drop_index("ix_debts_workspace_first_date", table_name="debts")
    op.drop_table("debts")
    op.drop_index("ix_incomes_workspace_first_date", table_name="incomes")
    op.drop_table("incomes")
    op.drop_table("income_payers")
    op.drop_table("debt_owners")
    op.drop_table("preferences")
    op.drop_table("users")
    op.drop_table("workspaces")
