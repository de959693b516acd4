import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, init_db
from errors import ConflictError, NotFoundError, StoreError
from models import TransactionType
from periods import resolve_range
from scheduler import SchedulerManager
from schemas import (
    BudgetAlertOut,
    BudgetIn,
    BudgetOut,
    BudgetOverviewOut,
    BudgetUpdate,
    ResyncOut,
    StatsOut,
    TransactionIn,
    TransactionOut,
    TransactionPageOut,
    TransactionUpdate,
)
from services import (
    BudgetAggregator,
    BudgetService,
    StatsService,
    TransactionService,
    get_current_user_id,
)
from stores import TransactionFilters


logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    # authentication lives in front of this service and forwards the user id
    return x_user_id or get_current_user_id()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    init_db()
    if settings.scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"errors": errors})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StoreError)
@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: Exception):
    logger.error(
        f"store_error: path={request.url.path} error={exc}", exc_info=exc
    )
    return JSONResponse(status_code=500, content={"detail": "Server error"})


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/transactions", response_model=TransactionPageOut)
def list_transactions(
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        window = resolve_range(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    filters = TransactionFilters(type=type, category=category, window=window)
    listing = TransactionService(db, user_id).list(filters, page=page, limit=limit)
    return TransactionPageOut(
        transactions=[TransactionOut.from_model(t) for t in listing.transactions],
        total=listing.total,
        total_pages=listing.total_pages,
        current_page=listing.current_page,
    )


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    txn = TransactionService(db, user_id).create(payload)
    return TransactionOut.from_model(txn)


@app.get("/api/transactions/stats", response_model=StatsOut)
def transaction_stats(
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        window = resolve_range(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return StatsOut.from_stats(StatsService(db, user_id).stats(window))


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return TransactionOut.from_model(TransactionService(db, user_id).get(transaction_id))


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    txn = TransactionService(db, user_id).update(transaction_id, payload)
    return TransactionOut.from_model(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    TransactionService(db, user_id).delete(transaction_id)
    return {"message": "Transaction deleted successfully"}


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2020, le=2030),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    budgets = BudgetService(db, user_id).list_for_month(month, year)
    return [BudgetOut.from_model(b) for b in budgets]


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetOut.from_model(BudgetService(db, user_id).create(payload))


@app.get("/api/budgets/overview", response_model=BudgetOverviewOut)
def budget_overview(
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2020, le=2030),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    overview = BudgetAggregator(db, user_id).overview(month, year)
    return BudgetOverviewOut.from_overview(overview)


@app.get("/api/budgets/alerts", response_model=list[BudgetAlertOut])
def budget_alerts(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return [BudgetAlertOut.from_alert(a) for a in BudgetAggregator(db, user_id).alerts()]


@app.post("/api/budgets/resync", response_model=ResyncOut)
def resync_budgets(
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    checked, corrected = BudgetService(db, user_id).resync()
    logger.info(f"resync_requested: user={user_id} checked={checked} corrected={corrected}")
    return ResyncOut(checked=checked, corrected=corrected)


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetOut.from_model(BudgetService(db, user_id).get(budget_id))


@app.put("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    return BudgetOut.from_model(BudgetService(db, user_id).update(budget_id, payload))


@app.delete("/api/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    BudgetService(db, user_id).delete(budget_id)
    return {"message": "Budget deleted successfully"}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
