import logging
import time
from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from database import SessionLocal
from models import TransactionType
from schemas import (
    BudgetIn,
    BudgetOut,
    RecurringTransactionIn,
    RecurringTransactionOut,
    RecurringTransactionPatch,
    SpaceCreatedOut,
    SpaceOut,
    TransactionFilters,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import (
    BudgetService,
    NotFound,
    RecurringTransactionService,
    SpaceService,
    StorageError,
    TransactionService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Spaces")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


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


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def space_scope(space_id: UUID, db: Session = Depends(get_db)) -> str:
    key = str(space_id)
    if not SpaceService(db).exists(key):
        raise HTTPException(status_code=404, detail="Space not found")
    return key


def filters_from_query(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
) -> TransactionFilters:
    try:
        return TransactionFilters(
            page=page,
            limit=limit,
            type=type,
            category=category or None,
            start_date=start_date,
            end_date=end_date,
            search=search or None,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


if settings.is_development:

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"request: method={request.method} path={request.url.path} "
            f"status={response.status_code} duration_ms={elapsed_ms:.1f}"
        )
        return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Validation failed",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(StorageError)
async def storage_exception_handler(request: Request, exc: StorageError):
    logger.error(f"storage_failure: path={request.url.path} error={exc}")
    message = str(exc) if get_settings().is_development else "Internal server error"
    return JSONResponse(status_code=500, content={"success": False, "error": message})


@app.get("/health")
def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
    }


@app.post("/api/spaces", status_code=201)
def create_space(db: Session = Depends(get_db)):
    space_id = SpaceService(db).create()
    return {"success": True, "data": SpaceCreatedOut(space_id=space_id)}


@app.get("/api/spaces/{space_id}")
def get_space(space_id: UUID, db: Session = Depends(get_db)):
    space = SpaceService(db).get(str(space_id))
    if not space:
        raise HTTPException(status_code=404, detail="Space not found")
    return {"success": True, "data": SpaceOut.model_validate(space)}


@app.delete("/api/spaces/{space_id}", status_code=204)
def delete_space(space: str = Depends(space_scope), db: Session = Depends(get_db)):
    SpaceService(db).delete(space)
    return Response(status_code=204)


@app.get("/api/spaces/{space_id}/transactions")
def list_transactions(
    space: str = Depends(space_scope),
    filters: TransactionFilters = Depends(filters_from_query),
    db: Session = Depends(get_db),
):
    page = TransactionService(db, space).list(filters)
    return {
        "success": True,
        "data": [TransactionOut.model_validate(txn) for txn in page.items],
        "pagination": page.pagination,
        "stats": page.stats,
        "categoryStats": page.category_stats,
        "monthlyStats": page.monthly_stats,
    }


@app.post("/api/spaces/{space_id}/transactions", status_code=201)
def create_transaction(
    data: TransactionIn,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, space).create(data)
    return {"success": True, "data": TransactionOut.model_validate(txn)}


@app.get("/api/spaces/{space_id}/transactions/{transaction_id}")
def get_transaction(
    transaction_id: UUID,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    txn = TransactionService(db, space).get(str(transaction_id))
    if not txn:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return {"success": True, "data": TransactionOut.model_validate(txn)}


@app.put("/api/spaces/{space_id}/transactions/{transaction_id}")
def update_transaction(
    transaction_id: UUID,
    data: TransactionPatch,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, space).update(str(transaction_id), data)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, "data": TransactionOut.model_validate(txn)}


@app.delete("/api/spaces/{space_id}/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: UUID,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, space).delete(str(transaction_id))
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/api/spaces/{space_id}/budget")
def get_budget(space: str = Depends(space_scope), db: Session = Depends(get_db)):
    budget = BudgetService(db, space).get()
    if not budget:
        raise HTTPException(status_code=404, detail="Budget not found")
    return {"success": True, "data": BudgetOut.model_validate(budget)}


@app.post("/api/spaces/{space_id}/budget", status_code=201)
def create_budget(
    data: BudgetIn,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, space).set(data.monthly_budget)
    return {"success": True, "data": BudgetOut.model_validate(budget)}


@app.put("/api/spaces/{space_id}/budget")
def update_budget(
    data: BudgetIn,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, space).set(data.monthly_budget)
    return {"success": True, "data": BudgetOut.model_validate(budget)}


@app.delete("/api/spaces/{space_id}/budget", status_code=204)
def delete_budget(space: str = Depends(space_scope), db: Session = Depends(get_db)):
    BudgetService(db, space).delete()
    return Response(status_code=204)


@app.get("/api/spaces/{space_id}/recurring-transactions")
def list_recurring(
    include_flagged: bool = False,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    service = RecurringTransactionService(db, space)
    records = service.list_with_flagged() if include_flagged else service.list()
    return {
        "success": True,
        "data": [RecurringTransactionOut.model_validate(r) for r in records],
    }


@app.post("/api/spaces/{space_id}/recurring-transactions", status_code=201)
def create_recurring(
    data: RecurringTransactionIn,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    record = RecurringTransactionService(db, space).create(data)
    return {"success": True, "data": RecurringTransactionOut.model_validate(record)}


@app.post("/api/spaces/{space_id}/recurring-transactions/process")
def process_recurring(space: str = Depends(space_scope), db: Session = Depends(get_db)):
    result = RecurringTransactionService(db, space).process_due()
    return {
        "success": True,
        "data": {
            "processed": result.processed,
            "transactions": [
                {
                    "recurringTransaction": snapshot,
                    "createdTransaction": TransactionOut.model_validate(txn),
                }
                for snapshot, txn in result.items
            ],
        },
    }


@app.put("/api/spaces/{space_id}/recurring-transactions/{recurring_id}")
def update_recurring(
    recurring_id: str,
    data: RecurringTransactionPatch,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    try:
        record = RecurringTransactionService(db, space).update(recurring_id, data)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, "data": RecurringTransactionOut.model_validate(record)}


@app.delete(
    "/api/spaces/{space_id}/recurring-transactions/{recurring_id}", status_code=204
)
def delete_recurring(
    recurring_id: str,
    space: str = Depends(space_scope),
    db: Session = Depends(get_db),
):
    RecurringTransactionService(db, space).delete(recurring_id)
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
