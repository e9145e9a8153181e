from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CurrencyCode(str, Enum):
    brl = "BRL"
    usd = "USD"
    eur = "EUR"


CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode,
    name="currencycode",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class LineItemStatus(str, Enum):
    pending = "PENDING"
    paid = "PAID"


LINE_ITEM_STATUS_ENUM = SAEnum(
    LineItemStatus,
    name="lineitemstatus",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class DebtKind(str, Enum):
    fixed = "FIXED"
    variable = "VARIABLE"


class IncomeKind(str, Enum):
    regular = "REGULAR"
    reimbursement = "REIMBURSEMENT"


DEBT_KIND_ENUM = SAEnum(
    DebtKind,
    name="debtkind",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

INCOME_KIND_ENUM = SAEnum(
    IncomeKind,
    name="incomekind",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class LineItemKind(str, Enum):
    debt = "debt"
    income = "income"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Workspace(Base, TimestampMixin):
    __tablename__ = "workspaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(120))

    users: Mapped[list["User"]] = relationship("User", back_populates="workspace")


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(254), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    auth_user_id: Mapped[str] = mapped_column(String(120), nullable=False)

    workspace: Mapped["Workspace"] = relationship("Workspace", back_populates="users")

    __table_args__ = (UniqueConstraint("auth_user_id", name="uq_user_auth_user_id"),)


class Preference(Base, TimestampMixin):
    __tablename__ = "preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id"), nullable=False
    )
    income_default_currency: Mapped[Optional[CurrencyCode]] = mapped_column(
        CURRENCY_CODE_ENUM
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", name="uq_preference_workspace"),
    )


class DebtOwner(Base, TimestampMixin):
    __tablename__ = "debt_owners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False, default="PERSON")

    debts: Mapped[list["Debt"]] = relationship("Debt", back_populates="owner")


class IncomePayer(Base, TimestampMixin):
    __tablename__ = "income_payers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[Optional[str]] = mapped_column(String(40))

    incomes: Mapped[list["Income"]] = relationship("Income", back_populates="payer")


class Income(Base, TimestampMixin):
    __tablename__ = "incomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id"), nullable=False
    )
    payer_id: Mapped[int] = mapped_column(
        ForeignKey("income_payers.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.brl
    )
    kind: Mapped[IncomeKind] = mapped_column(
        INCOME_KIND_ENUM, nullable=False, default=IncomeKind.regular
    )
    first_income_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_recurrent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    number_of_payments: Mapped[Optional[int]] = mapped_column(Integer)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    payer: Mapped["IncomePayer"] = relationship("IncomePayer", back_populates="incomes")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_income_amount_positive"),
        CheckConstraint(
            "is_recurrent OR number_of_payments >= 1",
            name="ck_income_fixed_payments",
        ),
        Index("ix_incomes_workspace_first_date", "workspace_id", "first_income_date"),
    )


class Debt(Base, TimestampMixin):
    __tablename__ = "debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id"), nullable=False
    )
    owner_id: Mapped[int] = mapped_column(ForeignKey("debt_owners.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.brl
    )
    kind: Mapped[DebtKind] = mapped_column(
        DEBT_KIND_ENUM, nullable=False, default=DebtKind.fixed
    )
    purchased_at: Mapped[Optional[date]] = mapped_column(Date)
    first_payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    has_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    installments: Mapped[Optional[int]] = mapped_column(Integer)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    reimbursement_income_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("incomes.id", ondelete="SET NULL")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    owner: Mapped["DebtOwner"] = relationship("DebtOwner", back_populates="debts")
    reimbursement_income: Mapped[Optional["Income"]] = relationship("Income")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_debt_amount_positive"),
        CheckConstraint(
            "NOT has_end OR installments >= 1", name="ck_debt_installments"
        ),
        Index("ix_debts_workspace_first_date", "workspace_id", "first_payment_date"),
    )


class Cycle(Base, TimestampMixin):
    __tablename__ = "materialized_cycles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workspace_id: Mapped[int] = mapped_column(
        ForeignKey("workspaces.id"), nullable=False
    )
    month: Mapped[date] = mapped_column(Date, nullable=False)

    debts: Mapped[list["CycleDebt"]] = relationship(
        "CycleDebt", back_populates="cycle", cascade="all, delete-orphan"
    )
    incomes: Mapped[list["CycleIncome"]] = relationship(
        "CycleIncome", back_populates="cycle", cascade="all, delete-orphan"
    )
    expenses: Mapped[list["CycleExpense"]] = relationship(
        "CycleExpense", back_populates="cycle", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("workspace_id", "month", name="uq_cycle_workspace_month"),
    )


class CycleDebt(Base, TimestampMixin):
    __tablename__ = "materialized_debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cycle_id: Mapped[int] = mapped_column(
        ForeignKey("materialized_cycles.id", ondelete="CASCADE"), nullable=False
    )
    debt_id: Mapped[int] = mapped_column(
        ForeignKey("debts.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    ordinal: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[LineItemStatus] = mapped_column(
        LINE_ITEM_STATUS_ENUM, nullable=False, default=LineItemStatus.pending
    )

    cycle: Mapped["Cycle"] = relationship("Cycle", back_populates="debts")
    debt: Mapped["Debt"] = relationship("Debt")

    __table_args__ = (
        UniqueConstraint("cycle_id", "debt_id", name="uq_cycle_debt_source"),
        CheckConstraint("amount_cents >= 0", name="ck_cycle_debt_amount_positive"),
    )


class CycleIncome(Base, TimestampMixin):
    __tablename__ = "materialized_incomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cycle_id: Mapped[int] = mapped_column(
        ForeignKey("materialized_cycles.id", ondelete="CASCADE"), nullable=False
    )
    income_id: Mapped[int] = mapped_column(
        ForeignKey("incomes.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    ordinal: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[LineItemStatus] = mapped_column(
        LINE_ITEM_STATUS_ENUM, nullable=False, default=LineItemStatus.pending
    )

    cycle: Mapped["Cycle"] = relationship("Cycle", back_populates="incomes")
    income: Mapped["Income"] = relationship("Income")

    __table_args__ = (
        UniqueConstraint("cycle_id", "income_id", name="uq_cycle_income_source"),
        CheckConstraint("amount_cents >= 0", name="ck_cycle_income_amount_positive"),
    )


class CycleExpense(Base, TimestampMixin):
    __tablename__ = "cycle_expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cycle_id: Mapped[int] = mapped_column(
        ForeignKey("materialized_cycles.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    category_name: Mapped[Optional[str]] = mapped_column(String(100))
    note: Mapped[Optional[str]] = mapped_column(Text)

    cycle: Mapped["Cycle"] = relationship("Cycle", back_populates="expenses")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_cycle_expense_amount_positive"),
        Index("ix_cycle_expenses_cycle_date", "cycle_id", "date"),
    )
