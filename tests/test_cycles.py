from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from database import Base, build_engine, build_session_factory
from errors import CycleAlreadyExists, UpstreamError, ValidationError
from fx_rates import CurrencyNormalizer, StaticRateProvider
from models import (
    CurrencyCode,
    Cycle,
    CycleDebt,
    CycleIncome,
    Debt,
    DebtOwner,
    Income,
    IncomePayer,
    LineItemKind,
    LineItemStatus,
    Workspace,
)
from recurrence import derive_end_date
from repository import SqlCycleRepository
from schemas import KickstartIn
from services import (
    CycleItemView,
    CycleMaterializer,
    CycleViewService,
    ForecastService,
    RekickstartPolicy,
    StatusService,
    aggregate_status,
)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)()


def make_normalizer(rate: str = "5.0") -> CurrencyNormalizer:
    return CurrencyNormalizer(StaticRateProvider({"USD": Decimal(rate)}, "BRL"), "BRL")


class BrokenProvider:
    def quote(self, source, target):
        raise UpstreamError("rates unavailable")


def seed(session):
    workspace = Workspace(name="Home")
    session.add(workspace)
    session.flush()
    bank = DebtOwner(workspace_id=workspace.id, name="Bank")
    shop = DebtOwner(workspace_id=workspace.id, name="Shop")
    employer = IncomePayer(workspace_id=workspace.id, name="Employer")
    session.add_all([bank, shop, employer])
    session.flush()

    laptop = Debt(
        workspace_id=workspace.id,
        owner_id=shop.id,
        name="Laptop",
        amount_cents=50_000,
        currency=CurrencyCode.brl,
        first_payment_date=date(2025, 1, 15),
        has_end=True,
        installments=3,
        end_date=derive_end_date(date(2025, 1, 15), 3),
    )
    streaming = Debt(
        workspace_id=workspace.id,
        owner_id=bank.id,
        name="Streaming",
        amount_cents=1_000,
        currency=CurrencyCode.usd,
        first_payment_date=date(2024, 6, 5),
        has_end=False,
    )
    salary = Income(
        workspace_id=workspace.id,
        payer_id=employer.id,
        name="Salary",
        amount_cents=800_000,
        currency=CurrencyCode.brl,
        first_income_date=date(2024, 1, 5),
        is_recurrent=True,
    )
    session.add_all([laptop, streaming, salary])
    session.commit()
    return workspace, laptop, streaming, salary


def test_forecast_projects_active_items_without_writing():
    session = make_session()
    workspace, laptop, streaming, salary = seed(session)
    forecasts = ForecastService(SqlCycleRepository(session), make_normalizer())

    view = forecasts.forecast(workspace.id, date(2025, 2, 1))

    amounts = {item.source_id: item.amount_cents for item in view.debts}
    assert amounts == {laptop.id: 50_000, streaming.id: 5_000}
    assert {item.source_id: item.ordinal for item in view.debts}[laptop.id] == 2
    assert view.total_incomes == 800_000
    assert view.available == 800_000 - 55_000
    assert all(item.status == LineItemStatus.pending for item in view.debts)
    assert session.scalar(select(func.count(Cycle.id))) == 0


def test_forecast_excludes_finished_installments():
    session = make_session()
    workspace, laptop, _, _ = seed(session)
    forecasts = ForecastService(SqlCycleRepository(session), make_normalizer())

    view = forecasts.forecast(workspace.id, date(2025, 4, 1))
    assert laptop.id not in {item.source_id for item in view.debts}


def test_forecast_fx_failure_propagates_unless_tolerated():
    session = make_session()
    workspace, _, streaming, _ = seed(session)
    forecasts = ForecastService(
        SqlCycleRepository(session), CurrencyNormalizer(BrokenProvider(), "BRL")
    )

    with pytest.raises(UpstreamError):
        forecasts.forecast(workspace.id, date(2025, 2, 1))

    view = forecasts.forecast(workspace.id, date(2025, 2, 1), tolerate_fx_errors=True)
    broken = [item for item in view.debts if item.source_id == streaming.id][0]
    assert broken.amount_cents is None
    assert broken.fx_error
    assert view.degraded is True
    assert view.total_debts == 50_000


def test_kickstart_materializes_month_with_ordinals():
    session = make_session()
    workspace, laptop, streaming, salary = seed(session)
    materializer = CycleMaterializer(SqlCycleRepository(session), make_normalizer())

    result = materializer.kickstart(workspace.id, KickstartIn(date=date(2025, 3, 20)))

    assert result.created is True
    assert result.month == date(2025, 3, 1)
    rows = session.scalars(select(CycleDebt).where(CycleDebt.cycle_id == result.cycle_id)).all()
    by_debt = {row.debt_id: row for row in rows}
    assert by_debt[laptop.id].ordinal == 3
    assert by_debt[streaming.id].amount_cents == 5_000
    assert all(row.status == LineItemStatus.pending for row in rows)
    incomes = session.scalars(select(CycleIncome)).all()
    assert [row.income_id for row in incomes] == [salary.id]


def test_kickstart_twice_keeps_one_cycle():
    session = make_session()
    workspace, *_ = seed(session)
    repo = SqlCycleRepository(session)
    materializer = CycleMaterializer(repo, make_normalizer())
    first = materializer.kickstart(workspace.id, KickstartIn(date=date(2025, 2, 1)))

    with pytest.raises(CycleAlreadyExists):
        materializer.kickstart(workspace.id, KickstartIn(date=date(2025, 2, 10)))

    lenient = CycleMaterializer(repo, make_normalizer(), policy=RekickstartPolicy.noop)
    again = lenient.kickstart(workspace.id, KickstartIn(date=date(2025, 2, 10)))
    assert again.created is False
    assert again.cycle_id == first.cycle_id
    assert session.scalar(select(func.count(Cycle.id))) == 1
    assert session.scalar(select(func.count(CycleDebt.id))) == 2


def test_kickstart_overrides_replace_computed_amounts():
    session = make_session()
    workspace, laptop, streaming, salary = seed(session)
    materializer = CycleMaterializer(SqlCycleRepository(session), make_normalizer())

    payload = KickstartIn.model_validate(
        {
            "date": "2025-02-01",
            "debtsOverride": [{"debtId": streaming.id, "amount": 4_800}],
            "incomesOverride": [{"incomeId": salary.id, "amount": 810_000}],
        }
    )
    result = materializer.kickstart(workspace.id, payload)

    debts = {draft.source_id: draft.amount_cents for draft in result.debts}
    assert debts == {laptop.id: 50_000, streaming.id: 4_800}
    assert result.incomes[0].amount_cents == 810_000


def test_kickstart_rejects_unknown_override_before_writing():
    session = make_session()
    workspace, laptop, *_ = seed(session)
    materializer = CycleMaterializer(SqlCycleRepository(session), make_normalizer())

    payload = KickstartIn.model_validate(
        {"date": "2025-06-01", "debtsOverride": [{"debtId": laptop.id, "amount": 1}]}
    )
    with pytest.raises(ValidationError):
        materializer.kickstart(workspace.id, payload)
    assert session.scalar(select(func.count(Cycle.id))) == 0


def test_kickstart_fx_failure_persists_nothing():
    session = make_session()
    workspace, *_ = seed(session)
    materializer = CycleMaterializer(
        SqlCycleRepository(session), CurrencyNormalizer(BrokenProvider(), "BRL")
    )

    with pytest.raises(UpstreamError):
        materializer.kickstart(workspace.id, KickstartIn(date=date(2025, 2, 1)))
    assert session.scalar(select(func.count(Cycle.id))) == 0


def test_kickstart_removes_cycle_when_line_items_fail(monkeypatch):
    session = make_session()
    workspace, *_ = seed(session)
    repo = SqlCycleRepository(session)

    def broken_insert(cycle_id, debts, incomes):
        raise OperationalError("INSERT INTO materialized_debts", {}, Exception("disk I/O"))

    monkeypatch.setattr(repo, "add_line_items", broken_insert)
    materializer = CycleMaterializer(repo, make_normalizer())

    with pytest.raises(UpstreamError):
        materializer.kickstart(workspace.id, KickstartIn(date=date(2025, 2, 1)))
    assert session.scalar(select(func.count(Cycle.id))) == 0
    assert session.scalar(select(func.count(CycleDebt.id))) == 0


def test_kickstart_removes_cycle_on_any_line_item_error(monkeypatch):
    session = make_session()
    workspace, *_ = seed(session)
    repo = SqlCycleRepository(session)

    def broken_insert(cycle_id, debts, incomes):
        raise RuntimeError("line item builder crashed")

    monkeypatch.setattr(repo, "add_line_items", broken_insert)
    materializer = CycleMaterializer(repo, make_normalizer())

    with pytest.raises(RuntimeError, match="builder crashed"):
        materializer.kickstart(workspace.id, KickstartIn(date=date(2025, 2, 1)))
    assert session.scalar(select(func.count(Cycle.id))) == 0


def test_concurrent_kickstart_hits_unique_month(monkeypatch):
    session = make_session()
    workspace, *_ = seed(session)
    repo = SqlCycleRepository(session)
    first = CycleMaterializer(repo, make_normalizer()).kickstart(
        workspace.id, KickstartIn(date=date(2025, 2, 1))
    )

    # The pre-check misses the other writer's cycle; the insert then collides.
    real_get_cycle = repo.get_cycle
    calls = []

    def lagging_get_cycle(workspace_id, month):
        calls.append(month)
        if len(calls) % 2 == 1:
            return None
        return real_get_cycle(workspace_id, month)

    monkeypatch.setattr(repo, "get_cycle", lagging_get_cycle)

    with pytest.raises(CycleAlreadyExists):
        CycleMaterializer(repo, make_normalizer()).kickstart(
            workspace.id, KickstartIn(date=date(2025, 2, 20))
        )

    lenient = CycleMaterializer(repo, make_normalizer(), policy=RekickstartPolicy.noop)
    again = lenient.kickstart(workspace.id, KickstartIn(date=date(2025, 2, 20)))
    assert again.created is False
    assert again.cycle_id == first.cycle_id
    assert len(calls) == 4
    assert session.scalar(select(func.count(Cycle.id))) == 1
    assert session.scalar(select(func.count(CycleDebt.id))) == 2


def test_forecast_matches_materialized_amounts():
    session = make_session()
    workspace, *_ = seed(session)
    repo = SqlCycleRepository(session)
    normalizer = make_normalizer("5.4321")
    forecast = ForecastService(repo, normalizer).forecast(workspace.id, date(2025, 2, 1))

    result = CycleMaterializer(repo, normalizer).kickstart(
        workspace.id, KickstartIn(date=date(2025, 2, 1))
    )

    assert {i.source_id: i.amount_cents for i in forecast.debts} == {
        d.source_id: d.amount_cents for d in result.debts
    }
    assert {i.source_id: i.amount_cents for i in forecast.incomes} == {
        d.source_id: d.amount_cents for d in result.incomes
    }


def _item(counterparty_id: int, status: LineItemStatus, amount: int = 100) -> CycleItemView:
    return CycleItemView(
        kind=LineItemKind.debt,
        source_id=counterparty_id * 10 + amount,
        name="item",
        counterparty_id=counterparty_id,
        counterparty_name=f"owner {counterparty_id}",
        amount_cents=amount,
        source_amount_cents=amount,
        currency="BRL",
        ordinal=1,
        installments=None,
        status=status,
    )


def test_aggregate_status_requires_every_item_paid():
    groups = aggregate_status(
        [
            _item(1, LineItemStatus.paid, 100),
            _item(1, LineItemStatus.paid, 200),
            _item(1, LineItemStatus.pending, 300),
            _item(2, LineItemStatus.paid, 100),
            _item(2, LineItemStatus.paid, 50),
        ]
    )
    by_owner = {group.counterparty_id: group for group in groups}
    assert by_owner[1].status == LineItemStatus.pending
    assert by_owner[1].total_cents == 600
    assert by_owner[2].status == LineItemStatus.paid


def test_group_status_and_month_view():
    session = make_session()
    workspace, laptop, streaming, salary = seed(session)
    normalizer = make_normalizer()
    result = CycleMaterializer(SqlCycleRepository(session), normalizer).kickstart(
        workspace.id, KickstartIn(date=date(2025, 2, 1))
    )
    status = StatusService(session, workspace.id)

    updated = status.set_group_status(
        result.cycle_id, LineItemKind.debt, laptop.owner_id, LineItemStatus.paid
    )
    assert updated == 1

    views = CycleViewService(session, workspace.id, normalizer)
    view = views.month_view(date(2025, 2, 1))
    assert view.kind == "materialized"
    groups = {g.counterparty_id: g for g in aggregate_status(view.debts)}
    assert groups[laptop.owner_id].status == LineItemStatus.paid
    assert groups[streaming.owner_id].status == LineItemStatus.pending

    row = session.scalar(select(CycleDebt).where(CycleDebt.debt_id == streaming.id))
    status.set_item_amount(LineItemKind.debt, row.id, 5_100)
    status.set_item_status(LineItemKind.debt, row.id, LineItemStatus.paid)
    view = views.month_view(date(2025, 2, 1))
    assert all(g.status == LineItemStatus.paid for g in aggregate_status(view.debts))
    assert view.total_debts == 55_100


def test_month_view_kind_without_cycle():
    session = make_session()
    workspace, *_ = seed(session)
    views = CycleViewService(session, workspace.id, make_normalizer())

    today = date(2025, 2, 14)
    assert views.month_view(date(2025, 2, 1), today=today).kind == "not_started"
    assert views.month_view(date(2025, 1, 1), today=today).kind == "not_started"
    assert views.month_view(date(2025, 3, 1), today=today).kind == "forecast"
