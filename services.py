from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable, Iterable, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from pydantic import ValidationError as PydanticValidationError
from rapidfuzz.distance import Levenshtein

from errors import (
    CycleAlreadyExists,
    CycleError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from fx_rates import CurrencyNormalizer
from models import (
    CurrencyCode,
    Cycle,
    CycleDebt,
    CycleExpense,
    CycleIncome,
    Debt,
    DebtOwner,
    Income,
    IncomeKind,
    IncomePayer,
    LineItemKind,
    LineItemStatus,
    Preference,
    User,
    Workspace,
)
from periods import month_start
from recurrence import (
    Schedule,
    debt_schedule,
    derive_end_date,
    income_schedule,
    local_today,
    resolve,
    sync_months,
)
from repository import CycleStore, LineItemDraft, SqlCycleRepository
from schemas import (
    CounterpartyIn,
    DebtIn,
    DebtRecord,
    ExpenseIn,
    IncomeIn,
    IncomeRecord,
    KickstartIn,
    PreferenceIn,
    ReimbursementIn,
    SignupIn,
    SyncEventIn,
)

logger = logging.getLogger(__name__)

DebtLike = Union[Debt, DebtRecord]
IncomeLike = Union[Income, IncomeRecord]


class RekickstartPolicy(str, Enum):
    reject = "reject"
    noop = "noop"


class StaleLineItemPolicy(str, Enum):
    """What happens to line items whose source is gone or no longer applies."""

    keep = "keep"
    prune_pending = "prune_pending"
    prune_all = "prune_all"


@dataclass
class CycleItemView:
    kind: LineItemKind
    source_id: int
    name: str
    counterparty_id: int
    counterparty_name: str
    amount_cents: Optional[int]
    source_amount_cents: int
    currency: str
    ordinal: Optional[int]
    installments: Optional[int]
    status: LineItemStatus = LineItemStatus.pending
    id: Optional[int] = None
    fx_error: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "source_id": self.source_id,
            "name": self.name,
            "counterparty": {
                "id": self.counterparty_id,
                "name": self.counterparty_name,
            },
            "amount_cents": self.amount_cents,
            "source_amount_cents": self.source_amount_cents,
            "currency": self.currency,
            "ordinal": self.ordinal,
            "installments": self.installments,
            "status": self.status.value,
            "fx_error": self.fx_error,
        }


@dataclass
class StatusGroup:
    counterparty_id: int
    name: str
    status: LineItemStatus
    total_cents: int
    items: list[CycleItemView]

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.counterparty_id,
            "name": self.name,
            "status": self.status.value,
            "total_cents": self.total_cents,
            "items": [item.as_dict() for item in self.items],
        }


def aggregate_status(items: Iterable[CycleItemView]) -> list[StatusGroup]:
    """Group line items by owner/payer; a group is PAID only if all items are."""
    groups: dict[int, StatusGroup] = {}
    for item in items:
        group = groups.get(item.counterparty_id)
        if group is None:
            group = StatusGroup(
                counterparty_id=item.counterparty_id,
                name=item.counterparty_name,
                status=LineItemStatus.paid,
                total_cents=0,
                items=[],
            )
            groups[item.counterparty_id] = group
        group.items.append(item)
        group.total_cents += item.amount_cents or 0
        if item.status != LineItemStatus.paid:
            group.status = LineItemStatus.pending
    return list(groups.values())


@dataclass
class CycleView:
    kind: str  # "materialized" | "not_started" | "forecast"
    month: date
    debts: list[CycleItemView]
    incomes: list[CycleItemView]
    cycle_id: Optional[int] = None
    expenses: list[CycleExpense] = field(default_factory=list)
    degraded: bool = False

    @property
    def total_debts(self) -> int:
        return sum(item.amount_cents or 0 for item in self.debts)

    @property
    def total_incomes(self) -> int:
        return sum(item.amount_cents or 0 for item in self.incomes)

    @property
    def total_expenses(self) -> int:
        return sum(expense.amount_cents for expense in self.expenses)

    @property
    def available(self) -> int:
        return self.total_incomes - self.total_debts - self.total_expenses

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "month": self.month.isoformat(),
            "cycle_id": self.cycle_id,
            "degraded": self.degraded,
            "debt_groups": [g.as_dict() for g in aggregate_status(self.debts)],
            "income_groups": [g.as_dict() for g in aggregate_status(self.incomes)],
            "expenses": [
                {
                    "id": expense.id,
                    "name": expense.name,
                    "amount_cents": expense.amount_cents,
                    "date": expense.date.isoformat(),
                    "category_name": expense.category_name,
                    "note": expense.note,
                }
                for expense in self.expenses
            ],
            "total_debts": self.total_debts,
            "total_incomes": self.total_incomes,
            "total_expenses": self.total_expenses,
            "available": self.available,
        }


def _debt_item(debt: Debt, month: date, amount: Optional[int]) -> CycleItemView:
    return CycleItemView(
        kind=LineItemKind.debt,
        source_id=debt.id,
        name=debt.name,
        counterparty_id=debt.owner_id,
        counterparty_name=debt.owner.name if debt.owner else "",
        amount_cents=amount,
        source_amount_cents=debt.amount_cents,
        currency=debt.currency.value,
        ordinal=resolve(debt_schedule(debt), month).ordinal,
        installments=debt.installments if debt.has_end else None,
    )


def _income_item(income: Income, month: date, amount: Optional[int]) -> CycleItemView:
    return CycleItemView(
        kind=LineItemKind.income,
        source_id=income.id,
        name=income.name,
        counterparty_id=income.payer_id,
        counterparty_name=income.payer.name if income.payer else "",
        amount_cents=amount,
        source_amount_cents=income.amount_cents,
        currency=income.currency.value,
        ordinal=resolve(income_schedule(income), month).ordinal,
        installments=None if income.is_recurrent else income.number_of_payments,
    )


class ForecastService:
    def __init__(self, store: CycleStore, normalizer: CurrencyNormalizer) -> None:
        self.store = store
        self.normalizer = normalizer

    def forecast(
        self, workspace_id: int, month: date, *, tolerate_fx_errors: bool = False
    ) -> CycleView:
        """Project the debts and incomes of ``month`` without writing anything.

        Rate lookup failures propagate unless ``tolerate_fx_errors`` is set, in
        which case the affected items carry no amount and the view is flagged
        as degraded.
        """
        target = month_start(month)
        view = CycleView(kind="forecast", month=target, debts=[], incomes=[])

        for debt in self.store.active_debts(workspace_id, target):
            item = _debt_item(debt, target, None)
            self._fill_amount(view, item, tolerate_fx_errors)
            view.debts.append(item)

        for income in self.store.active_incomes(workspace_id, target):
            item = _income_item(income, target, None)
            self._fill_amount(view, item, tolerate_fx_errors)
            view.incomes.append(item)

        return view

    def _fill_amount(
        self, view: CycleView, item: CycleItemView, tolerate_fx_errors: bool
    ) -> None:
        try:
            item.amount_cents = self.normalizer.normalize(
                item.source_amount_cents, item.currency
            )
        except UpstreamError as exc:
            if not tolerate_fx_errors:
                raise
            logger.warning(
                f"forecast_fx_failed: kind={item.kind.value} "
                f"source={item.source_id} currency={item.currency} error={exc}"
            )
            item.fx_error = str(exc)
            view.degraded = True


@dataclass
class KickstartResult:
    cycle_id: int
    month: date
    created: bool
    debts: list[LineItemDraft]
    incomes: list[LineItemDraft]


class CycleMaterializer:
    def __init__(
        self,
        store: CycleStore,
        normalizer: CurrencyNormalizer,
        *,
        policy: RekickstartPolicy = RekickstartPolicy.reject,
    ) -> None:
        self.store = store
        self.normalizer = normalizer
        self.policy = RekickstartPolicy(policy)

    def kickstart(self, workspace_id: int, data: KickstartIn) -> KickstartResult:
        month = month_start(data.date)
        existing = self.store.get_cycle(workspace_id, month)
        if existing is not None:
            return self._existing(workspace_id, existing)

        debts = self.store.active_debts(workspace_id, month)
        incomes = self.store.active_incomes(workspace_id, month)

        debt_overrides = {o.debt_id: o.amount_cents for o in data.debts_override}
        income_overrides = {o.income_id: o.amount_cents for o in data.incomes_override}
        unknown_debts = set(debt_overrides) - {d.id for d in debts}
        unknown_incomes = set(income_overrides) - {i.id for i in incomes}
        if unknown_debts or unknown_incomes:
            raise ValidationError(
                "Overrides reference debts/incomes not active in "
                f"{month.isoformat()}: debts={sorted(unknown_debts)} "
                f"incomes={sorted(unknown_incomes)}"
            )

        # Amounts first: a failed rate lookup must leave nothing behind.
        debt_drafts = [
            LineItemDraft(
                source_id=debt.id,
                amount_cents=self._amount(debt, debt_overrides),
                ordinal=resolve(debt_schedule(debt), month).ordinal,
            )
            for debt in debts
        ]
        income_drafts = [
            LineItemDraft(
                source_id=income.id,
                amount_cents=self._amount(income, income_overrides),
                ordinal=resolve(income_schedule(income), month).ordinal,
            )
            for income in incomes
        ]

        try:
            cycle = self.store.create_cycle(workspace_id, month)
        except CycleAlreadyExists:
            existing = self.store.get_cycle(workspace_id, month)
            if existing is None:
                raise
            return self._existing(workspace_id, existing)

        cycle_id = cycle.id
        try:
            self.store.add_line_items(cycle_id, debt_drafts, income_drafts)
            self.store.commit()
        except Exception as exc:
            self._discard(cycle_id)
            logger.error(
                f"kickstart_rolled_back: workspace={workspace_id} "
                f"month={month.isoformat()} cycle={cycle_id} error={exc}"
            )
            if isinstance(exc, SQLAlchemyError):
                raise UpstreamError(f"Failed to create cycle line items: {exc}") from exc
            raise

        logger.info(
            f"kickstart: workspace={workspace_id} month={month.isoformat()} "
            f"cycle={cycle_id} debts={len(debt_drafts)} incomes={len(income_drafts)}"
        )
        return KickstartResult(
            cycle_id=cycle_id,
            month=month,
            created=True,
            debts=debt_drafts,
            incomes=income_drafts,
        )

    def _discard(self, cycle_id: int) -> None:
        """Delete a half-built cycle; the caller re-raises the original error."""
        try:
            self.store.rollback()
            self.store.delete_cycle(cycle_id)
            self.store.commit()
        except SQLAlchemyError:
            self.store.rollback()
            logger.exception(f"kickstart_cleanup_failed: cycle={cycle_id}")

    def _existing(self, workspace_id: int, cycle: Cycle) -> KickstartResult:
        if self.policy == RekickstartPolicy.reject:
            raise CycleAlreadyExists(workspace_id, cycle.month)
        logger.info(
            f"kickstart_noop: workspace={workspace_id} month={cycle.month.isoformat()} "
            f"cycle={cycle.id}"
        )
        return KickstartResult(
            cycle_id=cycle.id,
            month=cycle.month,
            created=False,
            debts=[
                LineItemDraft(item.debt_id, item.amount_cents, item.ordinal)
                for item in cycle.debts
            ],
            incomes=[
                LineItemDraft(item.income_id, item.amount_cents, item.ordinal)
                for item in cycle.incomes
            ],
        )

    def _amount(self, source: Union[Debt, Income], overrides: dict[int, int]) -> int:
        if source.id in overrides:
            return overrides[source.id]
        return self.normalizer.normalize(source.amount_cents, source.currency)


@dataclass
class SyncReport:
    kind: LineItemKind
    source_id: int
    months_visited: list[date] = field(default_factory=list)
    upserted: list[date] = field(default_factory=list)
    pruned: list[date] = field(default_factory=list)
    skipped: list[date] = field(default_factory=list)
    failed: dict[date, str] = field(default_factory=dict)
    note: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "source_id": self.source_id,
            "months_visited": [m.isoformat() for m in self.months_visited],
            "upserted": [m.isoformat() for m in self.upserted],
            "pruned": [m.isoformat() for m in self.pruned],
            "skipped": [m.isoformat() for m in self.skipped],
            "failed": {m.isoformat(): msg for m, msg in self.failed.items()},
            "note": self.note,
        }


def _parse_row(record_cls, row):
    try:
        return record_cls.model_validate(row)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed {record_cls.__name__} row: {exc}") from exc


class CycleSynchronizer:
    """Pushes the current state of one debt or income into materialized cycles."""

    def __init__(
        self,
        store: CycleStore,
        normalizer: CurrencyNormalizer,
        *,
        stale_policy: StaleLineItemPolicy = StaleLineItemPolicy.keep,
        today: Callable[[], date] = local_today,
    ) -> None:
        self.store = store
        self.normalizer = normalizer
        self.stale_policy = StaleLineItemPolicy(stale_policy)
        self.today = today

    def handle_event(self, event: SyncEventIn) -> SyncReport:
        if event.table not in ("debts", "incomes"):
            raise ValidationError(f"Unsupported table: {event.table}")
        if event.table == "debts":
            record_cls, kind, lookup = DebtRecord, LineItemKind.debt, self.store.get_debt
        else:
            record_cls, kind, lookup = (
                IncomeRecord,
                LineItemKind.income,
                self.store.get_income,
            )

        previous = (
            _parse_row(record_cls, event.old_record) if event.old_record else None
        )
        if event.type == "DELETE" or event.record is None:
            removed = previous or _parse_row(record_cls, event.record)
            return self.remove_source(kind, removed)

        record = _parse_row(record_cls, event.record)
        current = lookup(record.id)
        if current is None:
            # Redelivery after a hard delete: nothing left to push.
            logger.info(
                f"sync_source_missing: kind={kind.value} source={record.id}"
            )
            return SyncReport(kind=kind, source_id=record.id, note="source not found")
        if current.deleted_at is not None:
            return self.remove_source(kind, current)
        if kind == LineItemKind.debt:
            return self.sync_debt(current, previous=previous)
        return self.sync_income(current, previous=previous)

    def sync_debt(self, debt: DebtLike, previous: Optional[DebtLike] = None) -> SyncReport:
        return self._sync(
            LineItemKind.debt,
            debt,
            debt_schedule(debt),
            debt_schedule(previous) if previous is not None else None,
        )

    def sync_income(
        self, income: IncomeLike, previous: Optional[IncomeLike] = None
    ) -> SyncReport:
        return self._sync(
            LineItemKind.income,
            income,
            income_schedule(income),
            income_schedule(previous) if previous is not None else None,
        )

    def remove_source(
        self, kind: LineItemKind, source: Union[DebtLike, IncomeLike, None]
    ) -> SyncReport:
        if source is None:
            raise ValidationError("Delete events need the removed row")
        report = SyncReport(kind=kind, source_id=source.id)
        schedule = (
            debt_schedule(source)
            if kind == LineItemKind.debt
            else income_schedule(source)
        )
        for month in sync_months(schedule, self.today()):
            report.months_visited.append(month)
            self._run_month(report, month, lambda m: self._prune(kind, source, m, report))
        return report

    def _sync(
        self,
        kind: LineItemKind,
        source: Union[DebtLike, IncomeLike],
        schedule: Schedule,
        previous: Optional[Schedule],
    ) -> SyncReport:
        report = SyncReport(kind=kind, source_id=source.id)
        today = self.today()
        months = set(sync_months(schedule, today))
        if previous is not None:
            months.update(sync_months(previous, today))

        for month in sorted(months):
            report.months_visited.append(month)
            self._run_month(
                report,
                month,
                lambda m: self._apply(kind, source, schedule, m, report),
            )

        logger.info(
            f"sync: kind={kind.value} source={source.id} "
            f"months={len(report.months_visited)} upserted={len(report.upserted)} "
            f"pruned={len(report.pruned)} failed={len(report.failed)}"
        )
        return report

    def _run_month(
        self, report: SyncReport, month: date, work: Callable[[date], None]
    ) -> None:
        # Each month commits on its own; a failure only rolls back that month.
        try:
            work(month)
            self.store.commit()
        except (CycleError, SQLAlchemyError) as exc:
            self.store.rollback()
            logger.warning(
                f"sync_month_failed: kind={report.kind.value} source={report.source_id} "
                f"month={month.isoformat()} error={exc}"
            )
            report.failed[month] = str(exc)

    def _apply(
        self,
        kind: LineItemKind,
        source: Union[DebtLike, IncomeLike],
        schedule: Schedule,
        month: date,
        report: SyncReport,
    ) -> None:
        cycle = self.store.get_cycle(source.workspace_id, month)
        if cycle is None:
            logger.debug(
                f"sync_month_skipped: kind={kind.value} source={source.id} "
                f"month={month.isoformat()} reason=no_cycle"
            )
            report.skipped.append(month)
            return
        activity = resolve(schedule, month)
        if not activity.active:
            self._prune(kind, source, month, report, cycle=cycle)
            return
        amount = self.normalizer.normalize(source.amount_cents, source.currency)
        self.store.upsert_line_item(
            kind,
            cycle.id,
            LineItemDraft(source_id=source.id, amount_cents=amount, ordinal=activity.ordinal),
        )
        report.upserted.append(month)

    def _prune(
        self,
        kind: LineItemKind,
        source: Union[DebtLike, IncomeLike],
        month: date,
        report: SyncReport,
        *,
        cycle: Optional[Cycle] = None,
    ) -> None:
        if cycle is None:
            cycle = self.store.get_cycle(source.workspace_id, month)
        if cycle is None or self.stale_policy == StaleLineItemPolicy.keep:
            report.skipped.append(month)
            return
        removed = self.store.delete_line_items(
            kind,
            cycle.id,
            source.id,
            only_pending=self.stale_policy == StaleLineItemPolicy.prune_pending,
        )
        if removed:
            report.pruned.append(month)
        else:
            report.skipped.append(month)


class CycleViewService:
    def __init__(
        self,
        session: Session,
        workspace_id: int,
        normalizer: CurrencyNormalizer,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id
        self.store = SqlCycleRepository(session)
        self.forecasts = ForecastService(self.store, normalizer)

    def month_view(
        self,
        month: date,
        *,
        today: Optional[date] = None,
        tolerate_fx_errors: bool = False,
    ) -> CycleView:
        target = month_start(month)
        cycle = self.store.get_cycle(self.workspace_id, target)
        if cycle is None:
            view = self.forecasts.forecast(
                self.workspace_id, target, tolerate_fx_errors=tolerate_fx_errors
            )
            current = month_start(today or local_today())
            view.kind = "forecast" if target > current else "not_started"
            return view
        return self.materialized_view(cycle)

    def materialized_view(self, cycle: Cycle) -> CycleView:
        debt_rows = self.session.scalars(
            select(CycleDebt)
            .options(joinedload(CycleDebt.debt).joinedload(Debt.owner))
            .where(CycleDebt.cycle_id == cycle.id)
            .order_by(CycleDebt.id)
            .execution_options(populate_existing=True)
        ).all()
        income_rows = self.session.scalars(
            select(CycleIncome)
            .options(joinedload(CycleIncome.income).joinedload(Income.payer))
            .where(CycleIncome.cycle_id == cycle.id)
            .order_by(CycleIncome.id)
            .execution_options(populate_existing=True)
        ).all()
        expenses = self.session.scalars(
            select(CycleExpense)
            .where(CycleExpense.cycle_id == cycle.id)
            .order_by(CycleExpense.date, CycleExpense.id)
        ).all()

        debts = []
        for row in debt_rows:
            item = _debt_item(row.debt, cycle.month, row.amount_cents)
            item.id = row.id
            item.status = row.status
            item.ordinal = row.ordinal if row.ordinal is not None else item.ordinal
            debts.append(item)
        incomes = []
        for row in income_rows:
            item = _income_item(row.income, cycle.month, row.amount_cents)
            item.id = row.id
            item.status = row.status
            item.ordinal = row.ordinal if row.ordinal is not None else item.ordinal
            incomes.append(item)

        return CycleView(
            kind="materialized",
            month=cycle.month,
            cycle_id=cycle.id,
            debts=debts,
            incomes=incomes,
            expenses=list(expenses),
        )


class StatusService:
    def __init__(self, session: Session, workspace_id: int) -> None:
        self.session = session
        self.workspace_id = workspace_id

    def _cycle(self, cycle_id: int) -> Cycle:
        cycle = self.session.get(Cycle, cycle_id)
        if not cycle or cycle.workspace_id != self.workspace_id:
            raise NotFoundError("Cycle not found")
        return cycle

    def _item(self, kind: LineItemKind, item_id: int) -> Union[CycleDebt, CycleIncome]:
        model = CycleDebt if kind == LineItemKind.debt else CycleIncome
        item = self.session.get(model, item_id)
        if not item:
            raise NotFoundError("Line item not found")
        self._cycle(item.cycle_id)
        return item

    def set_item_status(
        self, kind: LineItemKind, item_id: int, status: LineItemStatus
    ) -> Union[CycleDebt, CycleIncome]:
        item = self._item(kind, item_id)
        item.status = status
        self.session.commit()
        return item

    def set_item_amount(
        self, kind: LineItemKind, item_id: int, amount_cents: int
    ) -> Union[CycleDebt, CycleIncome]:
        if amount_cents < 0:
            raise ValidationError("Amount must not be negative")
        item = self._item(kind, item_id)
        item.amount_cents = amount_cents
        self.session.commit()
        return item

    def set_group_status(
        self,
        cycle_id: int,
        kind: LineItemKind,
        counterparty_id: int,
        status: LineItemStatus,
    ) -> int:
        """Set the status of every line item of one owner/payer in a cycle."""
        self._cycle(cycle_id)
        if kind == LineItemKind.debt:
            ids = select(CycleDebt.id).join(Debt, CycleDebt.debt_id == Debt.id).where(
                CycleDebt.cycle_id == cycle_id, Debt.owner_id == counterparty_id
            )
            stmt = update(CycleDebt).where(CycleDebt.id.in_(ids))
        else:
            ids = (
                select(CycleIncome.id)
                .join(Income, CycleIncome.income_id == Income.id)
                .where(
                    CycleIncome.cycle_id == cycle_id,
                    Income.payer_id == counterparty_id,
                )
            )
            stmt = update(CycleIncome).where(CycleIncome.id.in_(ids))
        result = self.session.execute(
            stmt.values(status=status).execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        return int(result.rowcount or 0)


class WorkspaceService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def member(self, auth_user_id: str) -> User:
        user = self.session.scalar(select(User).where(User.auth_user_id == auth_user_id))
        if not user:
            raise NotFoundError("User not found")
        return user

    def signup(self, data: SignupIn) -> User:
        existing = self.session.scalar(
            select(User).where(User.auth_user_id == data.auth_user_id)
        )
        if existing:
            return existing
        workspace = Workspace(name=data.workspace_name)
        self.session.add(workspace)
        self.session.flush()
        user = User(
            workspace_id=workspace.id,
            email=data.email,
            name=data.name,
            auth_user_id=data.auth_user_id,
        )
        self.session.add_all([user, Preference(workspace_id=workspace.id)])
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"signup: workspace={workspace.id} user={user.id}")
        return user


class PreferenceService:
    def __init__(self, session: Session, workspace_id: int) -> None:
        self.session = session
        self.workspace_id = workspace_id

    def get(self) -> Preference:
        pref = self.session.scalar(
            select(Preference).where(Preference.workspace_id == self.workspace_id)
        )
        if pref is None:
            pref = Preference(workspace_id=self.workspace_id)
            self.session.add(pref)
            self.session.flush()
        return pref

    def update(self, data: PreferenceIn) -> Preference:
        pref = self.get()
        pref.income_default_currency = data.income_default_currency
        self.session.commit()
        self.session.refresh(pref)
        return pref


class _CounterpartyService:
    model: type = DebtOwner
    label = "Counterparty"

    def __init__(self, session: Session, workspace_id: int) -> None:
        self.session = session
        self.workspace_id = workspace_id

    def list_all(self) -> list:
        stmt = (
            select(self.model)
            .where(self.model.workspace_id == self.workspace_id)
            .order_by(self.model.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, item_id: int):
        item = self.session.get(self.model, item_id)
        if not item or item.workspace_id != self.workspace_id:
            raise NotFoundError(f"{self.label} not found")
        return item

    def create(self, data: CounterpartyIn):
        name = data.name.strip()
        if not name:
            raise ValidationError("Name cannot be empty")
        item = self.model(workspace_id=self.workspace_id, name=name)
        if data.type:
            item.type = data.type
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def update(self, item_id: int, data: CounterpartyIn):
        item = self.get(item_id)
        name = data.name.strip()
        if not name:
            raise ValidationError("Name cannot be empty")
        item.name = name
        if data.type:
            item.type = data.type
        self.session.commit()
        self.session.refresh(item)
        return item

    def _in_use(self, item_id: int) -> bool:
        raise NotImplementedError

    def delete(self, item_id: int) -> None:
        item = self.get(item_id)
        if self._in_use(item_id):
            raise ValidationError(f"{self.label} is still referenced")
        self.session.delete(item)
        self.session.commit()


class OwnerService(_CounterpartyService):
    model = DebtOwner
    label = "Debt owner"

    def _in_use(self, item_id: int) -> bool:
        return bool(
            self.session.scalar(
                select(func.count(Debt.id)).where(
                    Debt.owner_id == item_id, Debt.deleted_at.is_(None)
                )
            )
        )


class PayerService(_CounterpartyService):
    model = IncomePayer
    label = "Income payer"

    def _in_use(self, item_id: int) -> bool:
        return bool(
            self.session.scalar(
                select(func.count(Income.id)).where(
                    Income.payer_id == item_id, Income.deleted_at.is_(None)
                )
            )
        )


def _debt_snapshot(debt: Debt) -> DebtRecord:
    return DebtRecord(
        id=debt.id,
        workspace_id=debt.workspace_id,
        owner_id=debt.owner_id,
        name=debt.name,
        amount_cents=debt.amount_cents,
        currency=debt.currency,
        first_payment_date=debt.first_payment_date,
        has_end=debt.has_end,
        installments=debt.installments,
        end_date=debt.end_date,
    )


def _income_snapshot(income: Income) -> IncomeRecord:
    return IncomeRecord(
        id=income.id,
        workspace_id=income.workspace_id,
        payer_id=income.payer_id,
        name=income.name,
        amount_cents=income.amount_cents,
        currency=income.currency,
        first_income_date=income.first_income_date,
        is_recurrent=income.is_recurrent,
        number_of_payments=income.number_of_payments,
        end_date=income.end_date,
    )


_SYNC_FIELDS = {
    "amount_cents",
    "currency",
    "first_payment_date",
    "first_income_date",
    "has_end",
    "installments",
    "is_recurrent",
    "number_of_payments",
    "end_date",
}


def _needs_sync(before: Union[DebtRecord, IncomeRecord], after) -> bool:
    return any(
        getattr(before, name) != getattr(after, name)
        for name in _SYNC_FIELDS
        if hasattr(before, name)
    )


class IncomeService:
    def __init__(
        self,
        session: Session,
        workspace_id: int,
        synchronizer: Optional[CycleSynchronizer] = None,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id
        self.synchronizer = synchronizer

    def list_all(
        self, *, search: Optional[str] = None, limit: int = 10, offset: int = 0
    ) -> tuple[list[Income], int]:
        conditions = [
            Income.workspace_id == self.workspace_id,
            Income.deleted_at.is_(None),
        ]
        if search:
            conditions.append(func.lower(Income.name).contains(search.strip().lower()))
        total = int(
            self.session.scalar(select(func.count(Income.id)).where(*conditions)) or 0
        )
        stmt = (
            select(Income)
            .options(joinedload(Income.payer))
            .where(*conditions)
            .order_by(Income.first_income_date.desc(), Income.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt).all()), total

    def get(self, income_id: int) -> Income:
        income = self.session.get(Income, income_id)
        if (
            not income
            or income.workspace_id != self.workspace_id
            or income.deleted_at is not None
        ):
            raise NotFoundError("Income not found")
        return income

    def _payer(self, payer_id: int) -> IncomePayer:
        payer = self.session.get(IncomePayer, payer_id)
        if not payer or payer.workspace_id != self.workspace_id:
            raise NotFoundError("Income payer not found")
        return payer

    def _default_currency(self) -> CurrencyCode:
        pref = PreferenceService(self.session, self.workspace_id).get()
        return pref.income_default_currency or CurrencyCode.brl

    def _apply(self, income: Income, data: IncomeIn) -> None:
        income.payer_id = data.payer_id
        income.name = data.name.strip()
        income.amount_cents = data.amount_cents
        income.currency = data.currency or income.currency or self._default_currency()
        income.first_income_date = data.first_income_date
        income.is_recurrent = data.is_recurrent
        income.number_of_payments = data.number_of_payments
        income.end_date = (
            None
            if data.is_recurrent
            else derive_end_date(data.first_income_date, data.number_of_payments or 1)
        )

    def create(self, data: IncomeIn, *, kind: IncomeKind = IncomeKind.regular) -> Income:
        self._payer(data.payer_id)
        income = Income(workspace_id=self.workspace_id, kind=kind)
        if data.currency is None:
            income.currency = self._default_currency()
        self._apply(income, data)
        self.session.add(income)
        self.session.commit()
        self.session.refresh(income)
        if self.synchronizer:
            self.synchronizer.sync_income(income)
        return income

    def update(self, income_id: int, data: IncomeIn) -> Income:
        income = self.get(income_id)
        if data.payer_id != income.payer_id:
            self._payer(data.payer_id)
        before = _income_snapshot(income)
        self._apply(income, data)
        self.session.commit()
        self.session.refresh(income)
        if self.synchronizer and _needs_sync(before, income):
            self.synchronizer.sync_income(income, previous=before)
        return income

    def delete(self, income_id: int) -> None:
        income = self.get(income_id)
        self.session.execute(
            update(Debt)
            .where(Debt.reimbursement_income_id == income.id)
            .values(reimbursement_income_id=None)
        )
        self.mark_deleted(income)
        self.session.commit()
        if self.synchronizer:
            self.synchronizer.remove_source(LineItemKind.income, income)

    def mark_deleted(self, income: Income) -> None:
        income.deleted_at = datetime.utcnow()


class DebtService:
    def __init__(
        self,
        session: Session,
        workspace_id: int,
        synchronizer: Optional[CycleSynchronizer] = None,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id
        self.synchronizer = synchronizer
        self.incomes = IncomeService(session, workspace_id)

    def list_all(
        self, *, search: Optional[str] = None, limit: int = 10, offset: int = 0
    ) -> tuple[list[Debt], int]:
        conditions = [Debt.workspace_id == self.workspace_id, Debt.deleted_at.is_(None)]
        if search:
            conditions.append(func.lower(Debt.name).contains(search.strip().lower()))
        total = int(
            self.session.scalar(select(func.count(Debt.id)).where(*conditions)) or 0
        )
        stmt = (
            select(Debt)
            .options(joinedload(Debt.owner))
            .where(*conditions)
            .order_by(Debt.first_payment_date.desc(), Debt.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt).all()), total

    def get(self, debt_id: int) -> Debt:
        debt = self.session.get(Debt, debt_id)
        if not debt or debt.workspace_id != self.workspace_id or debt.deleted_at:
            raise NotFoundError("Debt not found")
        return debt

    def _owner(self, owner_id: int) -> DebtOwner:
        owner = self.session.get(DebtOwner, owner_id)
        if not owner or owner.workspace_id != self.workspace_id:
            raise NotFoundError("Debt owner not found")
        return owner

    @staticmethod
    def _apply(debt: Debt, data: DebtIn) -> None:
        debt.owner_id = data.owner_id
        debt.name = data.name.strip()
        debt.amount_cents = data.amount_cents
        debt.currency = data.currency
        debt.kind = data.kind
        debt.purchased_at = data.purchased_at
        debt.first_payment_date = data.first_payment_date
        debt.has_end = data.has_end
        debt.installments = data.installments if data.has_end else None
        debt.end_date = (
            derive_end_date(data.first_payment_date, data.installments or 1)
            if data.has_end
            else None
        )

    @staticmethod
    def _reimbursement_payload(data: DebtIn, reimbursement: ReimbursementIn) -> IncomeIn:
        return IncomeIn(
            payer_id=reimbursement.payer_id,
            name=f"Reimbursement for {data.name.strip()}",
            amount_cents=reimbursement.amount_cents or data.amount_cents,
            currency=data.currency,
            first_income_date=data.first_payment_date,
            is_recurrent=not data.has_end,
            number_of_payments=data.installments if data.has_end else None,
        )

    def _write_reimbursement(
        self, debt: Debt, data: DebtIn
    ) -> tuple[Optional[Income], Optional[IncomeRecord], Optional[Income]]:
        """Create, update or drop the linked reimbursement income.

        Returns ``(income, previous_snapshot, removed)``.
        """
        existing = (
            self.session.get(Income, debt.reimbursement_income_id)
            if debt.reimbursement_income_id
            else None
        )
        if existing is not None and existing.deleted_at is not None:
            existing = None

        if data.reimbursement is None:
            if existing is not None:
                self.incomes.mark_deleted(existing)
                debt.reimbursement_income_id = None
            return None, None, existing

        payload = self._reimbursement_payload(data, data.reimbursement)
        self.incomes._payer(payload.payer_id)
        if existing is None:
            income = Income(workspace_id=self.workspace_id, kind=IncomeKind.reimbursement)
            self.incomes._apply(income, payload)
            self.session.add(income)
            self.session.flush()
            debt.reimbursement_income_id = income.id
            return income, None, None

        before = _income_snapshot(existing)
        self.incomes._apply(existing, payload)
        return existing, before, None

    def create(self, data: DebtIn) -> Debt:
        self._owner(data.owner_id)
        debt = Debt(workspace_id=self.workspace_id)
        self._apply(debt, data)
        self.session.add(debt)
        self.session.flush()
        reimbursement, _, _ = self._write_reimbursement(debt, data)
        self.session.commit()
        self.session.refresh(debt)
        logger.info(f"debt_created: workspace={self.workspace_id} debt={debt.id}")
        if self.synchronizer:
            self.synchronizer.sync_debt(debt)
            if reimbursement is not None:
                self.synchronizer.sync_income(reimbursement)
        return debt

    def update(self, debt_id: int, data: DebtIn) -> Debt:
        debt = self.get(debt_id)
        if data.owner_id != debt.owner_id:
            self._owner(data.owner_id)
        before = _debt_snapshot(debt)
        self._apply(debt, data)
        reimbursement, reimbursement_before, removed = self._write_reimbursement(
            debt, data
        )
        self.session.commit()
        self.session.refresh(debt)
        if self.synchronizer:
            if _needs_sync(before, debt):
                self.synchronizer.sync_debt(debt, previous=before)
            if reimbursement is not None and (
                reimbursement_before is None
                or _needs_sync(reimbursement_before, reimbursement)
            ):
                self.synchronizer.sync_income(
                    reimbursement, previous=reimbursement_before
                )
            if removed is not None:
                self.synchronizer.remove_source(LineItemKind.income, removed)
        return debt

    def delete(self, debt_id: int) -> None:
        debt = self.get(debt_id)
        removed_income = None
        if debt.reimbursement_income_id:
            removed_income = self.session.get(Income, debt.reimbursement_income_id)
            if removed_income is not None:
                self.incomes.mark_deleted(removed_income)
        debt.deleted_at = datetime.utcnow()
        self.session.commit()
        logger.info(f"debt_deleted: workspace={self.workspace_id} debt={debt.id}")
        if self.synchronizer:
            self.synchronizer.remove_source(LineItemKind.debt, debt)
            if removed_income is not None:
                self.synchronizer.remove_source(LineItemKind.income, removed_income)


class ExpenseService:
    def __init__(self, session: Session, workspace_id: int) -> None:
        self.session = session
        self.workspace_id = workspace_id

    def _cycle(self, cycle_id: int) -> Cycle:
        cycle = self.session.get(Cycle, cycle_id)
        if not cycle or cycle.workspace_id != self.workspace_id:
            raise NotFoundError("Cycle not found")
        return cycle

    def list_for_cycle(self, cycle_id: int) -> list[CycleExpense]:
        self._cycle(cycle_id)
        stmt = (
            select(CycleExpense)
            .where(CycleExpense.cycle_id == cycle_id)
            .order_by(CycleExpense.date, CycleExpense.id)
        )
        return list(self.session.scalars(stmt).all())

    def known_categories(self) -> list[str]:
        stmt = (
            select(CycleExpense.category_name)
            .join(Cycle, CycleExpense.cycle_id == Cycle.id)
            .where(
                Cycle.workspace_id == self.workspace_id,
                CycleExpense.category_name.is_not(None),
            )
            .distinct()
        )
        return sorted(name for name in self.session.scalars(stmt).all() if name)

    def match_category(self, raw: Optional[str]) -> Optional[str]:
        name = (raw or "").strip()
        if not name:
            return None
        known = self.known_categories()
        for candidate in known:
            if candidate.lower() == name.lower():
                return candidate
        close = [
            candidate
            for candidate in known
            if Levenshtein.distance(candidate.lower(), name.lower()) <= 1
        ]
        if len(close) == 1:
            return close[0]
        return name

    def add(self, cycle_id: int, data: ExpenseIn) -> CycleExpense:
        self._cycle(cycle_id)
        expense = CycleExpense(
            cycle_id=cycle_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            date=data.date,
            category_name=self.match_category(data.category_name),
            note=(data.note or "").strip() or None,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.session.get(CycleExpense, expense_id)
        if not expense:
            raise NotFoundError("Expense not found")
        self._cycle(expense.cycle_id)
        self.session.delete(expense)
        self.session.commit()
