import datetime as dt
from datetime import date
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from models import CurrencyCode, DebtKind, LineItemKind, LineItemStatus
from money import to_minor_units


def _amount_from_decimal(data: Any) -> Any:
    # Forms send a decimal "amount"; storage wants integer cents.
    if isinstance(data, dict) and "amount_cents" not in data and "amount" in data:
        data = dict(data)
        data["amount_cents"] = to_minor_units(data.pop("amount"))
    return data


class IncomeOverrideIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    income_id: int = Field(..., alias="incomeId")
    amount_cents: int = Field(
        ...,
        ge=0,
        validation_alias=AliasChoices("amount", "amountMinor", "amount_cents"),
    )


class DebtOverrideIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    debt_id: int = Field(..., alias="debtId")
    amount_cents: int = Field(
        ...,
        ge=0,
        validation_alias=AliasChoices("amount", "amountMinor", "amount_cents"),
    )


class KickstartIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    date: dt.date
    incomes_override: list[IncomeOverrideIn] = Field(
        default_factory=list, alias="incomesOverride"
    )
    debts_override: list[DebtOverrideIn] = Field(
        default_factory=list, alias="debtsOverride"
    )


class SyncEventIn(BaseModel):
    type: Optional[Literal["INSERT", "UPDATE", "DELETE"]] = None
    table: str
    record: Optional[dict[str, Any]] = None
    old_record: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def needs_a_row(self) -> "SyncEventIn":
        if self.record is None and self.old_record is None:
            raise ValueError("Sync event carries no record")
        return self


class ReimbursementIn(BaseModel):
    payer_id: int
    amount_cents: Optional[int] = Field(default=None, gt=0)


class DebtIn(BaseModel):
    owner_id: int
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    currency: CurrencyCode = CurrencyCode.brl
    kind: DebtKind = DebtKind.fixed
    purchased_at: Optional[date] = None
    first_payment_date: date
    has_end: bool = True
    installments: Optional[int] = Field(default=None, ge=1)
    reimbursement: Optional[ReimbursementIn] = None

    @model_validator(mode="before")
    @classmethod
    def amount_from_decimal(cls, data: Any) -> Any:
        return _amount_from_decimal(data)

    @model_validator(mode="after")
    def check_installments(self) -> "DebtIn":
        if self.has_end and not self.installments:
            raise ValueError("Debts with an end need at least one installment")
        if not self.has_end:
            self.installments = None
        return self


class IncomeIn(BaseModel):
    payer_id: int
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    currency: Optional[CurrencyCode] = None
    first_income_date: date
    is_recurrent: bool = True
    number_of_payments: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="before")
    @classmethod
    def amount_from_decimal(cls, data: Any) -> Any:
        return _amount_from_decimal(data)

    @model_validator(mode="after")
    def check_payments(self) -> "IncomeIn":
        if not self.is_recurrent and not self.number_of_payments:
            raise ValueError("Fixed incomes need at least one payment")
        if self.is_recurrent:
            self.number_of_payments = None
        return self


class CounterpartyIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: Optional[str] = Field(default=None, max_length=40)


class ExpenseIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    category_name: Optional[str] = Field(default=None, max_length=100)
    note: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="before")
    @classmethod
    def amount_from_decimal(cls, data: Any) -> Any:
        return _amount_from_decimal(data)


class StatusIn(BaseModel):
    status: LineItemStatus


class GroupStatusIn(BaseModel):
    kind: LineItemKind
    counterparty_id: int
    status: LineItemStatus


class AmountIn(BaseModel):
    amount_cents: int = Field(..., ge=0)


class PreferenceIn(BaseModel):
    income_default_currency: Optional[CurrencyCode] = None


class SignupIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    auth_user_id: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254)
    name: str = Field(default="", max_length=120)
    workspace_name: Optional[str] = Field(default=None, max_length=120)


class ConvertIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    currency: CurrencyCode = CurrencyCode.usd


class DebtRecord(BaseModel):
    """A ``debts`` row as delivered by the store's change notification."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: int
    workspace_id: int
    owner_id: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("owner_id", "debt_owner_id")
    )
    name: str = ""
    amount_cents: int = Field(
        ..., ge=0, validation_alias=AliasChoices("amount_cents", "amount")
    )
    currency: CurrencyCode = CurrencyCode.brl
    first_payment_date: date
    has_end: bool = True
    installments: Optional[int] = None
    end_date: Optional[date] = None


class IncomeRecord(BaseModel):
    """An ``incomes`` row as delivered by the store's change notification."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: int
    workspace_id: int
    payer_id: Optional[int] = None
    name: str = ""
    amount_cents: int = Field(
        ..., ge=0, validation_alias=AliasChoices("amount_cents", "amount")
    )
    currency: CurrencyCode = CurrencyCode.brl
    first_income_date: date
    is_recurrent: bool = True
    number_of_payments: Optional[int] = None
    end_date: Optional[date] = None
