"""Store access for the cycle engine.

The engine talks to the relational store only through ``CycleStore`` so that
each component receives its store explicitly. ``SqlCycleRepository`` is the
SQLAlchemy implementation used by the application.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from errors import CycleAlreadyExists
from models import (
    Cycle,
    CycleDebt,
    CycleIncome,
    Debt,
    Income,
    LineItemKind,
    LineItemStatus,
)
from periods import month_start
from recurrence import debt_active_clause, income_active_clause

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItemDraft:
    source_id: int
    amount_cents: int
    ordinal: Optional[int]


class CycleStore(Protocol):
    def get_cycle(self, workspace_id: int, month: date) -> Optional[Cycle]: ...

    def get_cycle_by_id(self, cycle_id: int) -> Optional[Cycle]: ...

    def active_debts(self, workspace_id: int, month: date) -> list[Debt]: ...

    def active_incomes(self, workspace_id: int, month: date) -> list[Income]: ...

    def get_debt(self, debt_id: int) -> Optional[Debt]: ...

    def get_income(self, income_id: int) -> Optional[Income]: ...

    def create_cycle(self, workspace_id: int, month: date) -> Cycle: ...

    def delete_cycle(self, cycle_id: int) -> None: ...

    def add_line_items(
        self,
        cycle_id: int,
        debts: Iterable[LineItemDraft],
        incomes: Iterable[LineItemDraft],
    ) -> None: ...

    def upsert_line_item(
        self, kind: LineItemKind, cycle_id: int, draft: LineItemDraft
    ) -> None: ...

    def delete_line_items(
        self, kind: LineItemKind, cycle_id: int, source_id: int, *, only_pending: bool
    ) -> int: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


_LINE_ITEM_MODELS = {
    LineItemKind.debt: (CycleDebt, "debt_id"),
    LineItemKind.income: (CycleIncome, "income_id"),
}


class SqlCycleRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_cycle(self, workspace_id: int, month: date) -> Optional[Cycle]:
        return self.session.scalar(
            select(Cycle).where(
                Cycle.workspace_id == workspace_id,
                Cycle.month == month_start(month),
            )
        )

    def get_cycle_by_id(self, cycle_id: int) -> Optional[Cycle]:
        return self.session.get(Cycle, cycle_id)

    def active_debts(self, workspace_id: int, month: date) -> list[Debt]:
        stmt = (
            select(Debt)
            .options(joinedload(Debt.owner))
            .where(
                Debt.workspace_id == workspace_id,
                Debt.deleted_at.is_(None),
                debt_active_clause(month),
            )
            .order_by(Debt.owner_id, Debt.id)
        )
        return list(self.session.scalars(stmt).unique().all())

    def active_incomes(self, workspace_id: int, month: date) -> list[Income]:
        stmt = (
            select(Income)
            .options(joinedload(Income.payer))
            .where(
                Income.workspace_id == workspace_id,
                Income.deleted_at.is_(None),
                income_active_clause(month),
            )
            .order_by(Income.payer_id, Income.id)
        )
        return list(self.session.scalars(stmt).unique().all())

    def get_debt(self, debt_id: int) -> Optional[Debt]:
        return self.session.get(Debt, debt_id)

    def get_income(self, income_id: int) -> Optional[Income]:
        return self.session.get(Income, income_id)

    def create_cycle(self, workspace_id: int, month: date) -> Cycle:
        cycle = Cycle(workspace_id=workspace_id, month=month_start(month))
        self.session.add(cycle)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise CycleAlreadyExists(workspace_id, month_start(month)) from exc
        return cycle

    def delete_cycle(self, cycle_id: int) -> None:
        self.session.execute(delete(CycleDebt).where(CycleDebt.cycle_id == cycle_id))
        self.session.execute(
            delete(CycleIncome).where(CycleIncome.cycle_id == cycle_id)
        )
        self.session.execute(delete(Cycle).where(Cycle.id == cycle_id))
        self.session.flush()

    def add_line_items(
        self,
        cycle_id: int,
        debts: Iterable[LineItemDraft],
        incomes: Iterable[LineItemDraft],
    ) -> None:
        self.session.add_all(
            CycleDebt(
                cycle_id=cycle_id,
                debt_id=draft.source_id,
                amount_cents=draft.amount_cents,
                ordinal=draft.ordinal,
                status=LineItemStatus.pending,
            )
            for draft in debts
        )
        self.session.add_all(
            CycleIncome(
                cycle_id=cycle_id,
                income_id=draft.source_id,
                amount_cents=draft.amount_cents,
                ordinal=draft.ordinal,
                status=LineItemStatus.pending,
            )
            for draft in incomes
        )
        self.session.flush()

    def _insert(self, model):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise NotImplementedError(f"Atomic upsert not available for {dialect}")

    def upsert_line_item(
        self, kind: LineItemKind, cycle_id: int, draft: LineItemDraft
    ) -> None:
        """Insert a PENDING line item or update amount/ordinal of the existing one.

        A single ``INSERT ... ON CONFLICT (cycle_id, source) DO UPDATE``; the
        status column is never part of the update.
        """
        model, source_column = _LINE_ITEM_MODELS[kind]
        now = datetime.utcnow()
        stmt = self._insert(model).values(
            {
                "cycle_id": cycle_id,
                source_column: draft.source_id,
                "amount_cents": draft.amount_cents,
                "ordinal": draft.ordinal,
                "status": LineItemStatus.pending,
                "created_at": now,
                "updated_at": now,
            }
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["cycle_id", source_column],
            set_={
                "amount_cents": stmt.excluded.amount_cents,
                "ordinal": stmt.excluded.ordinal,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        self.session.execute(stmt)

    def delete_line_items(
        self, kind: LineItemKind, cycle_id: int, source_id: int, *, only_pending: bool
    ) -> int:
        model, source_column = _LINE_ITEM_MODELS[kind]
        stmt = delete(model).where(
            model.cycle_id == cycle_id,
            getattr(model, source_column) == source_id,
        )
        if only_pending:
            stmt = stmt.where(model.status == LineItemStatus.pending)
        result = self.session.execute(stmt)
        return int(result.rowcount or 0)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
