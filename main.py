import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import connect, ensure_indexes, serialize, to_object_id
from errors import InternalFailure, StationeryError
from logger_config import setup_logging
from schemas import StockEntryCreate, StockEntryUpdate, TransactionCreate, TransactionUpdate
from settings import settings
from stock_entries import StockLedger
from stock_projection import StockProjection
from students import StudentRegistry
from transactions import TransactionLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_db(request: Request) -> Database:
    db = request.app.state.db
    if db is None:
        raise InternalFailure("Database not configured")
    return db


def get_transaction_ledger(db: Database = Depends(get_db)) -> TransactionLedger:
    return TransactionLedger(db)


def get_stock_ledger(db: Database = Depends(get_db)) -> StockLedger:
    return StockLedger(db)


# Products
@router.get("/products/{product_id}/availability")
def product_availability(product_id: str, db: Database = Depends(get_db)):
    oid = to_object_id(product_id, "product id")
    return {"productId": product_id, "available": StockProjection(db).sellable_quantity(oid)}


# Students
@router.get("/students/{student_id}/items")
def student_items(student_id: str, db: Database = Depends(get_db)):
    return StudentRegistry(db).received_items(to_object_id(student_id, "student id"))


# Transactions
@router.post("/transactions", status_code=201)
def create_transaction(payload: TransactionCreate, ledger: TransactionLedger = Depends(get_transaction_ledger)):
    return serialize(ledger.create(payload))


@router.get("/transactions")
def list_transactions(
    course: Optional[str] = None,
    student_id: Optional[str] = Query(None, alias="studentId"),
    payment_method: Optional[str] = Query(None, alias="paymentMethod"),
    is_paid: Optional[str] = Query(None, alias="isPaid"),
    ledger: TransactionLedger = Depends(get_transaction_ledger),
):
    return serialize(ledger.search(course=course, student_id=student_id, payment_method=payment_method, is_paid=is_paid))


@router.get("/transactions/student/{student_id}")
def list_student_transactions(student_id: str, ledger: TransactionLedger = Depends(get_transaction_ledger)):
    return serialize(ledger.for_student(student_id))


@router.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: str, ledger: TransactionLedger = Depends(get_transaction_ledger)):
    return serialize(ledger.get(transaction_id))


@router.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str, payload: TransactionUpdate, ledger: TransactionLedger = Depends(get_transaction_ledger)
):
    return serialize(ledger.update(transaction_id, payload))


@router.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: str, ledger: TransactionLedger = Depends(get_transaction_ledger)):
    ledger.delete(transaction_id)
    return {"message": "Transaction deleted successfully"}


# Stock entries
@router.post("/stock-entries", status_code=201)
def create_stock_entry(payload: StockEntryCreate, ledger: StockLedger = Depends(get_stock_ledger)):
    return serialize(ledger.create(payload))


@router.get("/stock-entries")
def list_stock_entries(
    product: Optional[str] = None,
    vendor: Optional[str] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    ledger: StockLedger = Depends(get_stock_ledger),
):
    return serialize(ledger.search(product=product, vendor=vendor, start_date=start_date, end_date=end_date))


@router.get("/stock-entries/{entry_id}")
def get_stock_entry(entry_id: str, ledger: StockLedger = Depends(get_stock_ledger)):
    return serialize(ledger.populate([ledger.get(entry_id)])[0])


@router.put("/stock-entries/{entry_id}")
def update_stock_entry(entry_id: str, payload: StockEntryUpdate, ledger: StockLedger = Depends(get_stock_ledger)):
    return serialize(ledger.update(entry_id, payload))


@router.delete("/stock-entries/{entry_id}")
def delete_stock_entry(entry_id: str, ledger: StockLedger = Depends(get_stock_ledger)):
    ledger.delete(entry_id)
    return {"message": "Stock entry removed"}


async def handle_stationery_error(request: Request, exc: StationeryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg", ""))
    return JSONResponse(status_code=400, content={"message": "; ".join(problems) or "Invalid request"})


async def handle_database_error(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.exception(f"{request.method} {request.url.path} hit a database error")
    return JSONResponse(status_code=500, content={"message": "Database error"})


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"{request.method} {request.url.path} failed unexpectedly")
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


def create_app(db: Optional[Database] = None) -> FastAPI:
    """Build the API around ``db``, or around a database opened from settings."""
    setup_logging()

    if db is None and settings.DATABASE_URL and settings.DATABASE_NAME:
        db = connect(settings.DATABASE_URL, settings.DATABASE_NAME)
    if db is not None:
        try:
            ensure_indexes(db)
        except PyMongoError as e:
            logger.warning(f"Could not create indexes: {e}")
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; API calls will fail until configured")

    app = FastAPI(title="College Stationery API")
    app.state.db = db

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StationeryError, handle_stationery_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(PyMongoError, handle_database_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    @app.get("/")
    def root():
        return {"message": "College Stationery API running"}

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
