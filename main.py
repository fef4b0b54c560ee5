import logging
from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import (
    ConflictRetryable,
    DuplicateTransaction,
    LedgerError,
    NotFound,
    ValidationError,
)
from scheduler import SchedulerManager
from schemas import BudgetIn, TransactionOut
from services import AccountService, BudgetService, TransactionService

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger Engine")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: int = Header(...)) -> int:
    # Identity is established upstream; this service trusts the forwarded header.
    return x_user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=422, detail={"message": str(exc), "errors": exc.errors}
        )
    if isinstance(exc, DuplicateTransaction):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictRetryable):
        return HTTPException(status_code=503, detail="Conflicting update, retry later")
    logger.exception("Unhandled ledger error")
    return HTTPException(status_code=500, detail=str(exc))


@app.post("/api/transactions", status_code=201, response_model=TransactionOut)
def create_transaction(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).post(payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).get(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).repost(transaction_id, payload)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", response_model=TransactionOut)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).soft_delete(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.post("/api/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        return TransactionService(db, user_id).restore(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts/{account_id}/reconciliation")
def account_reconciliation(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        result = AccountService(db, user_id).reconcile(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "account_id": result.account_id,
        "expected_cents": result.expected_cents,
        "actual_cents": result.actual_cents,
        "drift_cents": result.drift_cents,
        "balanced": result.balanced,
    }


@app.put("/api/budget")
def upsert_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        budget = BudgetService(db, user_id).upsert(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"id": budget.id, "amount_cents": budget.amount_cents}


@app.get("/api/budget/progress")
def budget_progress(
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
):
    try:
        progress = BudgetService(db, user_id).progress()
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "budget_id": progress.budget_id,
        "account_id": progress.account_id,
        "amount_cents": progress.amount_cents,
        "spent_cents": progress.spent_cents,
        "remaining_cents": progress.remaining_cents,
        "percentage_used": round(progress.percentage_used, 1),
    }


@app.post("/api/jobs/{name}/run")
def run_job(name: str):
    try:
        scheduler_manager.run_job(name)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"job": name, "status": "completed"}
