import logging
import math
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from auth import bearer_token, read_token
from database import SessionLocal, dispose_engine
from errors import InvalidInputError, RateLimitedError, ServiceError, UpstreamError
from ledger import recompute_balance
from models import TransactionType
from periods import Period, resolve_period
from rate_limit import TokenBucketLimiter, get_rate_limiter
from receipts import MAX_RECEIPT_BYTES, ReceiptScanner
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    ActionResult,
    BudgetIn,
    BudgetStatus,
    BulkDeleteIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from services import (
    AccountService,
    BudgetService,
    ReportService,
    TransactionFilters,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="FinXpert")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_receipt_scanner() -> ReceiptScanner:
    return ReceiptScanner()


def current_user_id(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> int:
    claims = read_token(bearer_token(authorization))
    user = UserService(db).resolve(claims["sub"], claims["email"], claims.get("name"))
    return user.id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    dispose_engine()


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ActionResult(success=False, error=exc.message, code=exc.code).model_dump(),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=InvalidInputError.status_code,
        content=ActionResult(
            success=False, error=message, code=InvalidInputError.code
        ).model_dump(),
    )


def ok(data: object = None) -> ActionResult:
    return ActionResult(success=True, data=data)


def period_from_query(
    period: Optional[str], start: Optional[str], end: Optional[str]
) -> Period:
    try:
        return resolve_period(period, start, end, today=local_today())
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc


def serialize_transaction(txn) -> dict:
    return TransactionOut.model_validate(txn).model_dump(mode="json")


def serialize_account(account, transaction_count: Optional[int] = None) -> dict:
    data = AccountOut.model_validate(account).model_dump(mode="json")
    data["transaction_count"] = transaction_count
    return data


def budget_status(service: BudgetService, account_id: Optional[int] = None) -> dict:
    state = service.get_current(account_id)
    return BudgetStatus.model_validate(state, from_attributes=True).model_dump(
        mode="json"
    )


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/accounts")
def list_accounts(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    service = AccountService(db, user_id)
    counts = service.transaction_counts()
    return ok(
        [
            serialize_account(account, counts.get(account.id, 0))
            for account in service.list_all()
        ]
    )


@app.post("/api/accounts")
def create_account(
    payload: AccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user_id).create(payload)
    return ok(serialize_account(account))


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    account, transactions = AccountService(db, user_id).get_with_transactions(
        account_id
    )
    return ok(
        {
            "account": serialize_account(account, len(transactions)),
            "transactions": [serialize_transaction(txn) for txn in transactions],
        }
    )


@app.get("/api/accounts/{account_id}/integrity")
def account_integrity(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user_id).get(account_id)
    expected = recompute_balance(db, account.id)
    if expected != account.balance_cents:
        logger.warning(
            f"balance_mismatch: account_id={account.id} "
            f"stored={account.balance_cents} expected={expected}"
        )
    return ok(
        {
            "account_id": account.id,
            "balance_cents": account.balance_cents,
            "recomputed_cents": expected,
            "consistent": expected == account.balance_cents,
        }
    )


@app.post("/api/accounts/{account_id}/default")
def set_default_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    account = AccountService(db, user_id).set_default(account_id)
    return ok(serialize_account(account))


@app.delete("/api/accounts/{account_id}")
def delete_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    AccountService(db, user_id).delete(account_id)
    return ok()


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    recurring: Optional[bool] = None,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    filters = TransactionFilters(
        account_id=account_id, type=type, category=category, recurring=recurring
    )
    items = TransactionService(db, user_id, limiter).list(
        filters, period_from_query(period, start, end), limit=limit, offset=offset
    )
    return ok([serialize_transaction(txn) for txn in items])


@app.post("/api/transactions")
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    txn = TransactionService(db, user_id, limiter).create(payload)
    return ok(serialize_transaction(txn))


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    payload: BulkDeleteIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    deleted = TransactionService(db, user_id, limiter).delete_many(
        payload.transaction_ids
    )
    return ok({"deleted": deleted})


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    txn = TransactionService(db, user_id, limiter).get(transaction_id)
    return ok(serialize_transaction(txn))


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    txn = TransactionService(db, user_id, limiter).update(transaction_id, payload)
    return ok(serialize_transaction(txn))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    TransactionService(db, user_id, limiter).delete(transaction_id)
    return ok()


@app.get("/api/summary")
def transaction_summary(
    account_id: Optional[int] = None,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    resolved = period_from_query(period or "this_month", start, end)
    summary = TransactionService(db, user_id, limiter).summary(resolved, account_id)
    return ok({"period": resolved.slug, **summary})


@app.get("/api/budget")
def get_budget(
    account_id: Optional[int] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ok(budget_status(BudgetService(db, user_id), account_id))


@app.put("/api/budget")
def put_budget(
    payload: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    service = BudgetService(db, user_id)
    service.upsert(payload.amount_cents)
    return ok(budget_status(service))


@app.get("/api/reports/monthly")
def monthly_report(
    year: int = Query(..., ge=1970, le=9999),
    month: int = Query(..., ge=1, le=12),
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return ok(ReportService(db, user_id).monthly_stats(year, month))


@app.post("/api/receipts/scan")
async def scan_receipt(
    file: UploadFile = File(...),
    user_id: int = Depends(current_user_id),
    scanner: ReceiptScanner = Depends(get_receipt_scanner),
):
    content = await file.read(MAX_RECEIPT_BYTES + 1)
    mime_type = file.content_type or "image/jpeg"
    try:
        result = await run_in_threadpool(scanner.scan, content, mime_type)
    except UpstreamError as exc:
        logger.warning(f"receipt_scan_failed: user_id={user_id} error={exc.message}")
        return ActionResult(
            success=False, error=exc.message, code=exc.code, warning=exc.message
        )
    return ok(result.model_dump(mode="json"))


@app.get("/api/dashboard")
def dashboard(
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
    limiter: TokenBucketLimiter = Depends(get_rate_limiter),
):
    accounts = AccountService(db, user_id)
    counts = accounts.transaction_counts()
    recent = TransactionService(db, user_id, limiter).recent(limit=5)
    return ok(
        {
            "accounts": [
                serialize_account(account, counts.get(account.id, 0))
                for account in accounts.list_all()
            ],
            "recent_transactions": [serialize_transaction(txn) for txn in recent],
            "budget": budget_status(BudgetService(db, user_id)),
        }
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
