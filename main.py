import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from batch_token import validate_batch_token
from config import get_settings
from database import SessionLocal
from errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from periods import Period, resolve_period
from recurrence import MaterializationScope
from scheduler import SchedulerManager
from schemas import (
    CategoryTotalsOut,
    CurrencyIn,
    MaterializationResult,
    MonthlyBalanceOut,
    OpeningBalanceIn,
    RecurringRuleIn,
    RecurringRuleOut,
    TotalsOut,
    TransactionIn,
    TransactionOut,
)
from services import (
    AnalyticsService,
    LedgerService,
    RecurringRuleService,
    TransactionService,
    UserService,
)
from store import LedgerStore


logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

_store = LedgerStore(SessionLocal)


def get_store() -> LedgerStore:
    return _store


scheduler_manager = SchedulerManager(_store)


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


_STATUS_BY_ERROR: list[tuple[type[LedgerError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StorageError, 503),
]


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = next(
        (code for error_cls, code in _STATUS_BY_ERROR if isinstance(exc, error_cls)),
        500,
    )
    if status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "detail": str(exc),
            "retryable": exc.retryable,
        },
    )


def current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    if start and end and not period_slug:
        period_slug = "custom"
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/balance/{year}/{month}", response_model=MonthlyBalanceOut)
def get_balance(
    year: int,
    month: int,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return LedgerService(store).compute_or_fetch_balance(user_id, year, month)


@app.put("/api/balance/{year}/{month}/opening", response_model=MonthlyBalanceOut)
def put_opening_balance(
    year: int,
    month: int,
    payload: OpeningBalanceIn,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return LedgerService(store).set_opening_balance(
        user_id, year, month, payload.opening_balance_cents
    )


@app.post("/api/recurring/process", response_model=MaterializationResult)
def process_recurring(
    x_batch_token: Optional[str] = Header(default=None),
    x_user_id: Optional[int] = Header(default=None),
    store: LedgerStore = Depends(get_store),
):
    if x_batch_token:
        if not validate_batch_token(x_batch_token):
            raise HTTPException(status_code=401, detail="Invalid batch token")
        scope = MaterializationScope.all_users()
    elif x_user_id is not None:
        scope = MaterializationScope.for_user(x_user_id)
    else:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return LedgerService(store).run_recurring_materialization(scope)


@app.get("/api/recurring", response_model=list[RecurringRuleOut])
def list_recurring(
    user_id: int = Depends(current_user_id), store: LedgerStore = Depends(get_store)
):
    return RecurringRuleService(store, user_id).list()


@app.post("/api/recurring", response_model=RecurringRuleOut, status_code=201)
def create_recurring(
    payload: RecurringRuleIn,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return RecurringRuleService(store, user_id).create(payload)


@app.put("/api/recurring/{rule_id}", response_model=RecurringRuleOut)
def update_recurring(
    rule_id: int,
    payload: RecurringRuleIn,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return RecurringRuleService(store, user_id).update(rule_id, payload)


@app.delete("/api/recurring/{rule_id}", status_code=204)
def delete_recurring(
    rule_id: int,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    RecurringRuleService(store, user_id).delete(rule_id)
    return Response(status_code=204)


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    request: Request,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    period = period_from_request(request)
    try:
        limit = int(request.query_params.get("limit", 50))
        offset = int(request.query_params.get("offset", 0))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionService(store, user_id).list(period, limit=limit, offset=offset)


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return TransactionService(store, user_id).create(payload)


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return TransactionService(store, user_id).update(transaction_id, payload)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    TransactionService(store, user_id).delete(transaction_id)
    return Response(status_code=204)


@app.get("/api/analytics/stats", response_model=TotalsOut)
def analytics_stats(
    request: Request,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return AnalyticsService(store, user_id).totals(period_from_request(request))


@app.get("/api/analytics/categories", response_model=list[CategoryTotalsOut])
def analytics_categories(
    request: Request,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    return AnalyticsService(store, user_id).category_breakdown(
        period_from_request(request)
    )


@app.put("/api/user/currency")
def update_currency(
    payload: CurrencyIn,
    user_id: int = Depends(current_user_id),
    store: LedgerStore = Depends(get_store),
):
    user = UserService(store).update_currency(user_id, payload.currency)
    return {"id": user.id, "username": user.username, "currency": user.currency.value}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
