from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from database import Base, build_engine, build_session_factory
from errors import UpstreamError, ValidationError
from fx_rates import CurrencyNormalizer, StaticRateProvider
from models import (
    CurrencyCode,
    CycleDebt,
    Debt,
    DebtOwner,
    LineItemStatus,
    Workspace,
)
from recurrence import derive_end_date
from repository import SqlCycleRepository
from schemas import KickstartIn, SyncEventIn
from services import CycleMaterializer, CycleSynchronizer, StaleLineItemPolicy

JAN, FEB, MAR = date(2025, 1, 1), date(2025, 2, 1), date(2025, 3, 1)
TODAY = date(2025, 2, 14)


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return build_session_factory(engine)()


def make_normalizer(rate: str = "5.0") -> CurrencyNormalizer:
    return CurrencyNormalizer(StaticRateProvider({"USD": Decimal(rate)}, "BRL"), "BRL")


class FlakyProvider:
    def __init__(self, fail_on: set[int]) -> None:
        self.fail_on = fail_on
        self.calls = 0

    def quote(self, source, target):
        self.calls += 1
        if self.calls in self.fail_on:
            raise UpstreamError("rates unavailable")
        return StaticRateProvider({"USD": Decimal("6.0")}, "BRL").quote(source, target)


def seed(session):
    workspace = Workspace(name="Home")
    session.add(workspace)
    session.flush()
    shop = DebtOwner(workspace_id=workspace.id, name="Shop")
    session.add(shop)
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
    course = Debt(
        workspace_id=workspace.id,
        owner_id=shop.id,
        name="Course",
        amount_cents=10_000,
        currency=CurrencyCode.usd,
        first_payment_date=date(2025, 1, 5),
        has_end=True,
        installments=3,
        end_date=derive_end_date(date(2025, 1, 5), 3),
    )
    gym = Debt(
        workspace_id=workspace.id,
        owner_id=shop.id,
        name="Gym",
        amount_cents=9_000,
        currency=CurrencyCode.brl,
        first_payment_date=date(2024, 3, 1),
        has_end=False,
    )
    session.add_all([laptop, course, gym])
    session.commit()

    materializer = CycleMaterializer(SqlCycleRepository(session), make_normalizer())
    cycles = {}
    for month in (JAN, FEB, MAR):
        cycles[month] = materializer.kickstart(
            workspace.id, KickstartIn(date=month)
        ).cycle_id
    return workspace, laptop, course, gym, cycles


def synchronizer(session, policy=StaleLineItemPolicy.keep, normalizer=None):
    return CycleSynchronizer(
        SqlCycleRepository(session),
        normalizer or make_normalizer(),
        stale_policy=policy,
        today=lambda: TODAY,
    )


def line_items(session, debt_id):
    stmt = (
        select(CycleDebt)
        .where(CycleDebt.debt_id == debt_id)
        .order_by(CycleDebt.cycle_id)
        .execution_options(populate_existing=True)
    )
    return list(session.scalars(stmt).all())


def debt_row(debt, **changes):
    row = {
        "id": debt.id,
        "workspace_id": debt.workspace_id,
        "debt_owner_id": debt.owner_id,
        "name": debt.name,
        "amount": debt.amount_cents,
        "currency": debt.currency.value,
        "first_payment_date": debt.first_payment_date.isoformat(),
        "has_end": debt.has_end,
        "installments": debt.installments,
        "end_date": debt.end_date.isoformat() if debt.end_date else None,
    }
    row.update(changes)
    return row


def test_duplicate_events_upsert_latest_amount_and_keep_status():
    session = make_session()
    workspace, laptop, _, _, cycles = seed(session)
    first = line_items(session, laptop.id)[0]
    first.status = LineItemStatus.paid
    session.commit()

    laptop.amount_cents = 60_000
    session.commit()
    # payload is stale; the stored row is what gets pushed
    event = SyncEventIn(type="UPDATE", table="debts", record=debt_row(laptop, amount=1))
    sync = synchronizer(session)
    sync.handle_event(event)
    report = sync.handle_event(event)

    assert report.upserted == [JAN, FEB, MAR]
    items = line_items(session, laptop.id)
    assert len(items) == 3
    assert [item.amount_cents for item in items] == [60_000, 60_000, 60_000]
    assert [item.ordinal for item in items] == [1, 2, 3]
    assert items[0].status == LineItemStatus.paid
    assert items[1].status == LineItemStatus.pending


def test_failed_month_does_not_block_the_others():
    session = make_session()
    workspace, _, course, _, cycles = seed(session)
    flaky = CurrencyNormalizer(FlakyProvider(fail_on={2}), "BRL")

    report = synchronizer(session, normalizer=flaky).sync_debt(course)

    assert report.upserted == [JAN, MAR]
    assert list(report.failed) == [FEB]
    amounts = [item.amount_cents for item in line_items(session, course.id)]
    assert amounts == [60_000, 50_000, 60_000]


def test_open_ended_sync_only_touches_current_month():
    session = make_session()
    workspace, _, _, gym, cycles = seed(session)
    gym.amount_cents = 9_500
    session.commit()

    report = synchronizer(session).sync_debt(gym)

    assert report.months_visited == [FEB]
    amounts = [item.amount_cents for item in line_items(session, gym.id)]
    assert amounts == [9_000, 9_500, 9_000]


def test_sync_skips_months_without_a_cycle():
    session = make_session()
    workspace, laptop, _, _, cycles = seed(session)
    laptop.first_payment_date = date(2025, 2, 15)
    laptop.end_date = derive_end_date(date(2025, 2, 15), 3)
    session.commit()

    report = synchronizer(session).sync_debt(laptop)

    assert report.upserted == [FEB, MAR]
    assert report.skipped == [date(2025, 4, 1)]


@pytest.mark.parametrize(
    "policy, remaining",
    [
        (StaleLineItemPolicy.keep, 3),
        (StaleLineItemPolicy.prune_pending, 2),
        (StaleLineItemPolicy.prune_all, 1),
    ],
)
def test_shortened_schedule_applies_stale_policy(policy, remaining):
    session = make_session()
    workspace, laptop, _, _, cycles = seed(session)
    march = line_items(session, laptop.id)[2]
    march.status = LineItemStatus.paid
    session.commit()

    old_row = debt_row(laptop)
    laptop.installments = 1
    laptop.end_date = derive_end_date(laptop.first_payment_date, 1)
    session.commit()

    event = SyncEventIn(
        type="UPDATE", table="debts", record=debt_row(laptop), old_record=old_row
    )
    report = synchronizer(session, policy).handle_event(event)

    assert report.months_visited == [JAN, FEB, MAR]
    assert report.upserted == [JAN]
    assert len(line_items(session, laptop.id)) == remaining


def test_delete_event_prunes_by_policy():
    session = make_session()
    workspace, laptop, _, _, cycles = seed(session)
    event = SyncEventIn(type="DELETE", table="debts", old_record=debt_row(laptop))

    kept = synchronizer(session).handle_event(event)
    assert kept.pruned == []
    assert len(line_items(session, laptop.id)) == 3

    pruned = synchronizer(session, StaleLineItemPolicy.prune_all).handle_event(event)
    assert pruned.pruned == [JAN, FEB, MAR]
    assert line_items(session, laptop.id) == []


def test_soft_deleted_source_is_treated_as_removed():
    session = make_session()
    workspace, laptop, _, _, cycles = seed(session)
    laptop.deleted_at = datetime(2025, 2, 14, 10, 0)
    session.commit()

    event = SyncEventIn(type="UPDATE", table="debts", record=debt_row(laptop))
    report = synchronizer(session, StaleLineItemPolicy.prune_pending).handle_event(event)

    assert report.upserted == []
    assert line_items(session, laptop.id) == []


def test_missing_source_is_nothing_to_do():
    session = make_session()
    workspace, laptop, _, _, cycles = seed(session)
    event = SyncEventIn(
        type="UPDATE", table="debts", record=debt_row(laptop, id=laptop.id + 100)
    )

    report = synchronizer(session).handle_event(event)

    assert report.months_visited == []
    assert report.note == "source not found"


def test_unknown_table_is_rejected():
    session = make_session()
    event = SyncEventIn(table="expenses", record={"id": 1})
    with pytest.raises(ValidationError):
        synchronizer(session).handle_event(event)
