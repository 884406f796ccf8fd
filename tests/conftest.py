# tests/conftest.py
import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document
from main import create_app
from schemas import Product, SetItem, Student, Vendor
from settings import settings
from stock_projection import StockProjection
from stock_entries import StockLedger
from transactions import TransactionLedger


@pytest.fixture(autouse=True)
def mock_settings(mocker) -> None:
    """Keeps generated ids and defaults predictable regardless of the local .env."""
    mocker.patch.object(settings, "TRANSACTION_ID_PREFIX", "TXN")
    mocker.patch.object(settings, "DEFAULT_PAYMENT_METHOD", "cash")


@pytest.fixture
def db():
    """Fresh in-memory MongoDB database per test."""
    return mongomock.MongoClient().get_database("stationery_test")


@pytest.fixture
def client(db) -> TestClient:
    return TestClient(create_app(db))


@pytest.fixture
def projection(db) -> StockProjection:
    return StockProjection(db)


@pytest.fixture
def ledger(db, projection) -> TransactionLedger:
    return TransactionLedger(db, projection)


@pytest.fixture
def stock_ledger(db, projection) -> StockLedger:
    return StockLedger(db, projection)


@pytest.fixture
def make_product(db):
    """Inserts a catalog product and returns its document."""

    def _make(name: str, stock: int = 0, price: float = 5.0, set_items=None) -> dict:
        product = Product(
            name=name,
            price=price,
            stock=stock,
            is_set=bool(set_items),
            set_items=[SetItem(product=p["_id"], quantity=q) for p, q in (set_items or [])],
        )
        return create_document(db, "product", product)

    return _make


@pytest.fixture
def student(db) -> dict:
    return create_document(
        db,
        "student",
        Student(name="Asha Rao", student_id="22CS041", course="B.Tech", year=2, branch="CSE"),
    )


@pytest.fixture
def vendor(db) -> dict:
    return create_document(db, "vendor", Vendor(name="Sri Lakshmi Traders", contact_person="Ravi"))


@pytest.fixture
def stock_of(db):
    """Reads the current persisted stock of a product."""

    def _stock(product: dict) -> int:
        return db["product"].find_one({"_id": product["_id"]})["stock"]

    return _stock
