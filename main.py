import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from auth import check_signup_secret, check_webhook_key, resolve_member
from config import get_settings
from database import SessionLocal
from errors import CycleError
from fx_rates import CurrencyNormalizer, build_normalizer
from models import (
    CycleDebt,
    CycleExpense,
    Debt,
    Income,
    LineItemKind,
    Preference,
    User,
)
from periods import parse_month
from repository import SqlCycleRepository
from schemas import (
    AmountIn,
    ConvertIn,
    CounterpartyIn,
    DebtIn,
    ExpenseIn,
    GroupStatusIn,
    IncomeIn,
    KickstartIn,
    PreferenceIn,
    SignupIn,
    StatusIn,
    SyncEventIn,
)
from services import (
    CycleMaterializer,
    CycleSynchronizer,
    CycleViewService,
    DebtService,
    ExpenseService,
    IncomeService,
    OwnerService,
    PayerService,
    PreferenceService,
    RekickstartPolicy,
    StaleLineItemPolicy,
    StatusService,
    WorkspaceService,
)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Cycles")


@app.exception_handler(CycleError)
def cycle_error_handler(request: Request, exc: CycleError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache(maxsize=1)
def get_normalizer() -> CurrencyNormalizer:
    return build_normalizer()


def current_member(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    return resolve_member(db, authorization)


def webhook_caller(authorization: Optional[str] = Header(default=None)) -> None:
    check_webhook_key(authorization)


def signup_caller(x_signup_secret: Optional[str] = Header(default=None)) -> None:
    check_signup_secret(x_signup_secret)


def _synchronizer(db: Session, normalizer: CurrencyNormalizer) -> CycleSynchronizer:
    return CycleSynchronizer(
        SqlCycleRepository(db),
        normalizer,
        stale_policy=StaleLineItemPolicy(get_settings().stale_line_item_policy),
    )


def _write_synchronizer(
    db: Session, normalizer: CurrencyNormalizer
) -> Optional[CycleSynchronizer]:
    if not get_settings().sync_on_write:
        return None
    return _synchronizer(db, normalizer)


def _counterparty_dict(item) -> dict[str, object]:
    return {"id": item.id, "name": item.name, "type": item.type}


def _debt_dict(debt: Debt) -> dict[str, object]:
    return {
        "id": debt.id,
        "owner_id": debt.owner_id,
        "owner": debt.owner.name if debt.owner else None,
        "name": debt.name,
        "amount_cents": debt.amount_cents,
        "currency": debt.currency.value,
        "kind": debt.kind.value,
        "purchased_at": debt.purchased_at.isoformat() if debt.purchased_at else None,
        "first_payment_date": debt.first_payment_date.isoformat(),
        "has_end": debt.has_end,
        "installments": debt.installments,
        "end_date": debt.end_date.isoformat() if debt.end_date else None,
        "reimbursement_income_id": debt.reimbursement_income_id,
    }


def _income_dict(income: Income) -> dict[str, object]:
    return {
        "id": income.id,
        "payer_id": income.payer_id,
        "payer": income.payer.name if income.payer else None,
        "name": income.name,
        "amount_cents": income.amount_cents,
        "currency": income.currency.value,
        "kind": income.kind.value,
        "first_income_date": income.first_income_date.isoformat(),
        "is_recurrent": income.is_recurrent,
        "number_of_payments": income.number_of_payments,
        "end_date": income.end_date.isoformat() if income.end_date else None,
    }


def _expense_dict(expense: CycleExpense) -> dict[str, object]:
    return {
        "id": expense.id,
        "cycle_id": expense.cycle_id,
        "name": expense.name,
        "amount_cents": expense.amount_cents,
        "date": expense.date.isoformat(),
        "category_name": expense.category_name,
        "note": expense.note,
    }


def _line_item_dict(item) -> dict[str, object]:
    source_id = item.debt_id if isinstance(item, CycleDebt) else item.income_id
    return {
        "id": item.id,
        "cycle_id": item.cycle_id,
        "source_id": source_id,
        "amount_cents": item.amount_cents,
        "ordinal": item.ordinal,
        "status": item.status.value,
    }


def _preference_dict(pref: Preference) -> dict[str, object]:
    currency = pref.income_default_currency
    return {"income_default_currency": currency.value if currency else None}


def _page(limit: int, offset: int) -> tuple[int, int]:
    return min(max(limit, 1), 100), max(offset, 0)


@app.post("/api/cycles/kickstart", status_code=201)
def api_kickstart(
    payload: KickstartIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    materializer = CycleMaterializer(
        SqlCycleRepository(db),
        normalizer,
        policy=RekickstartPolicy(get_settings().rekickstart_policy),
    )
    result = materializer.kickstart(member.workspace_id, payload)
    return {
        "ok": True,
        "cycle_id": result.cycle_id,
        "month": result.month.isoformat(),
        "created": result.created,
        "debts": len(result.debts),
        "incomes": len(result.incomes),
    }


@app.get("/api/cycles/{month}")
def api_month_view(
    month: str,
    tolerate_fx_errors: bool = False,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    target = parse_month(month)
    view = CycleViewService(db, member.workspace_id, normalizer).month_view(
        target, tolerate_fx_errors=tolerate_fx_errors
    )
    return view.as_dict()


@app.post("/api/cycles/{cycle_id}/status")
def api_group_status(
    cycle_id: int,
    payload: GroupStatusIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    updated = StatusService(db, member.workspace_id).set_group_status(
        cycle_id, payload.kind, payload.counterparty_id, payload.status
    )
    return {"ok": True, "updated": updated}


@app.post("/api/cycle-items/{kind}/{item_id}/status")
def api_item_status(
    kind: LineItemKind,
    item_id: int,
    payload: StatusIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    item = StatusService(db, member.workspace_id).set_item_status(
        kind, item_id, payload.status
    )
    return _line_item_dict(item)


@app.post("/api/cycle-items/{kind}/{item_id}/amount")
def api_item_amount(
    kind: LineItemKind,
    item_id: int,
    payload: AmountIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    item = StatusService(db, member.workspace_id).set_item_amount(
        kind, item_id, payload.amount_cents
    )
    return _line_item_dict(item)


@app.get("/api/cycles/{cycle_id}/expenses")
def api_list_expenses(
    cycle_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    expenses = ExpenseService(db, member.workspace_id).list_for_cycle(cycle_id)
    return {"items": [_expense_dict(expense) for expense in expenses]}


@app.post("/api/cycles/{cycle_id}/expenses", status_code=201)
def api_add_expense(
    cycle_id: int,
    payload: ExpenseIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    expense = ExpenseService(db, member.workspace_id).add(cycle_id, payload)
    return _expense_dict(expense)


@app.delete("/api/expenses/{expense_id}", status_code=204)
def api_delete_expense(
    expense_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    ExpenseService(db, member.workspace_id).delete(expense_id)
    return Response(status_code=204)


@app.get("/api/owners")
def api_list_owners(
    member: User = Depends(current_member), db: Session = Depends(get_db)
):
    owners = OwnerService(db, member.workspace_id).list_all()
    return {"items": [_counterparty_dict(owner) for owner in owners]}


@app.post("/api/owners", status_code=201)
def api_create_owner(
    payload: CounterpartyIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    return _counterparty_dict(OwnerService(db, member.workspace_id).create(payload))


@app.put("/api/owners/{owner_id}")
def api_update_owner(
    owner_id: int,
    payload: CounterpartyIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    owner = OwnerService(db, member.workspace_id).update(owner_id, payload)
    return _counterparty_dict(owner)


@app.delete("/api/owners/{owner_id}", status_code=204)
def api_delete_owner(
    owner_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    OwnerService(db, member.workspace_id).delete(owner_id)
    return Response(status_code=204)


@app.get("/api/payers")
def api_list_payers(
    member: User = Depends(current_member), db: Session = Depends(get_db)
):
    payers = PayerService(db, member.workspace_id).list_all()
    return {"items": [_counterparty_dict(payer) for payer in payers]}


@app.post("/api/payers", status_code=201)
def api_create_payer(
    payload: CounterpartyIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    return _counterparty_dict(PayerService(db, member.workspace_id).create(payload))


@app.put("/api/payers/{payer_id}")
def api_update_payer(
    payer_id: int,
    payload: CounterpartyIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    payer = PayerService(db, member.workspace_id).update(payer_id, payload)
    return _counterparty_dict(payer)


@app.delete("/api/payers/{payer_id}", status_code=204)
def api_delete_payer(
    payer_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    PayerService(db, member.workspace_id).delete(payer_id)
    return Response(status_code=204)


@app.get("/api/debts")
def api_list_debts(
    q: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    limit, offset = _page(limit, offset)
    debts, total = DebtService(db, member.workspace_id).list_all(
        search=q, limit=limit, offset=offset
    )
    return {
        "items": [_debt_dict(debt) for debt in debts],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/debts/{debt_id}")
def api_get_debt(
    debt_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    return _debt_dict(DebtService(db, member.workspace_id).get(debt_id))


@app.post("/api/debts", status_code=201)
def api_create_debt(
    payload: DebtIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    service = DebtService(
        db, member.workspace_id, _write_synchronizer(db, normalizer)
    )
    return _debt_dict(service.create(payload))


@app.put("/api/debts/{debt_id}")
def api_update_debt(
    debt_id: int,
    payload: DebtIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    service = DebtService(
        db, member.workspace_id, _write_synchronizer(db, normalizer)
    )
    return _debt_dict(service.update(debt_id, payload))


@app.delete("/api/debts/{debt_id}", status_code=204)
def api_delete_debt(
    debt_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    DebtService(db, member.workspace_id, _write_synchronizer(db, normalizer)).delete(
        debt_id
    )
    return Response(status_code=204)


@app.get("/api/incomes")
def api_list_incomes(
    q: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    limit, offset = _page(limit, offset)
    incomes, total = IncomeService(db, member.workspace_id).list_all(
        search=q, limit=limit, offset=offset
    )
    return {
        "items": [_income_dict(income) for income in incomes],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/incomes/{income_id}")
def api_get_income(
    income_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    return _income_dict(IncomeService(db, member.workspace_id).get(income_id))


@app.post("/api/incomes", status_code=201)
def api_create_income(
    payload: IncomeIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    service = IncomeService(
        db, member.workspace_id, _write_synchronizer(db, normalizer)
    )
    return _income_dict(service.create(payload))


@app.put("/api/incomes/{income_id}")
def api_update_income(
    income_id: int,
    payload: IncomeIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    service = IncomeService(
        db, member.workspace_id, _write_synchronizer(db, normalizer)
    )
    return _income_dict(service.update(income_id, payload))


@app.delete("/api/incomes/{income_id}", status_code=204)
def api_delete_income(
    income_id: int,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    IncomeService(
        db, member.workspace_id, _write_synchronizer(db, normalizer)
    ).delete(income_id)
    return Response(status_code=204)


@app.get("/api/preferences")
def api_get_preferences(
    member: User = Depends(current_member), db: Session = Depends(get_db)
):
    pref = PreferenceService(db, member.workspace_id).get()
    db.commit()
    return _preference_dict(pref)


@app.put("/api/preferences")
def api_update_preferences(
    payload: PreferenceIn,
    member: User = Depends(current_member),
    db: Session = Depends(get_db),
):
    return _preference_dict(PreferenceService(db, member.workspace_id).update(payload))


@app.post("/api/fx/convert")
def api_fx_convert(
    payload: ConvertIn,
    member: User = Depends(current_member),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    return {
        "amount_cents": normalizer.normalize(payload.amount_cents, payload.currency),
        "currency": normalizer.base_currency,
    }


@app.post("/webhooks/sync")
def webhook_sync(
    payload: SyncEventIn,
    _caller: None = Depends(webhook_caller),
    db: Session = Depends(get_db),
    normalizer: CurrencyNormalizer = Depends(get_normalizer),
):
    report = _synchronizer(db, normalizer).handle_event(payload)
    return {"ok": True, **report.as_dict()}


@app.post("/webhooks/signup", status_code=201)
def webhook_signup(
    payload: SignupIn,
    _caller: None = Depends(signup_caller),
    db: Session = Depends(get_db),
):
    user = WorkspaceService(db).signup(payload)
    return {"ok": True, "user_id": user.id, "workspace_id": user.workspace_id}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
