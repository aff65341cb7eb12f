# tests/conftest.py
# ---------------------------------------------------------------------
# Every test gets a fresh mongomock database with the service indexes,
# one company with a warehouse, two stores and a seller, and a fixed
# clock (2024-03-15 UTC) so barcodes and invoice numbers are predictable.
# ---------------------------------------------------------------------

from datetime import datetime, timezone

import mongomock
import pytest

from database import create_document, ensure_indexes, to_object_id
from identifiers import IdentifierGenerator
from inventory import Inventory
from invoices import InvoiceAggregator
from ledger import StockLedger
from schemas import Company, Store, User, Warehouse

NOW = datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)
TODAY = "240315"


def fixed_clock():
    return NOW


# ---------- Database ----------
@pytest.fixture
def db():
    database = mongomock.MongoClient().get_database("footwear_test")
    ensure_indexes(database)
    return database


# ---------- Tenant data ----------
@pytest.fixture
def company_id(db):
    return create_document("company", Company(name="Calzado Ruiz"), db)


@pytest.fixture
def warehouse_id(db, company_id):
    return create_document("warehouse", Warehouse(company_id=company_id, name="Bodega Central"), db)


@pytest.fixture
def store_id(db, company_id):
    return create_document("store", Store(company_id=company_id, name="Centro"), db)


@pytest.fixture
def other_store_id(db, company_id):
    return create_document("store", Store(company_id=company_id, name="Norte"), db)


@pytest.fixture
def seller_id(db, company_id):
    user = User(company_id=company_id, username="ana", full_name="Ana Gomez", role="seller", password_hash="x")
    return create_document("user", user, db)


@pytest.fixture
def customer_id(db, company_id):
    user = User(company_id=company_id, username="cliente", full_name="Cliente", role="customer", password_hash="x")
    return create_document("user", user, db)


@pytest.fixture
def product_id(db, company_id, warehouse_id):
    """Product with two T-40 units, X1 and X2."""
    return create_document("product", {
        "company_id": company_id,
        "warehouse_id": warehouse_id,
        "brand": "Nike",
        "reference": "AirMax",
        "color": "Negro",
        "image_url": "",
        "is_box": False,
        "sizes": {"T-40": {"quantity": 2, "barcodes": ["X1", "X2"]}},
        "total": 2,
        "exhibition": {},
        "base_price": 60000,
        "sale_price": 100000,
        "version": 0,
    }, db)


# ---------- Services ----------
@pytest.fixture
def identifiers(db):
    return IdentifierGenerator(db, clock=fixed_clock)


@pytest.fixture
def ledger(db):
    return StockLedger(db, max_retries=3)


@pytest.fixture
def inventory(db, identifiers, ledger):
    return Inventory(db, identifiers, ledger)


@pytest.fixture
def invoices(db, ledger, identifiers):
    return InvoiceAggregator(db, ledger, identifiers, clock=fixed_clock)


@pytest.fixture
def product(db):
    """Reader for the current state of a product document."""
    def read(pid):
        return db["product"].find_one({"_id": to_object_id(pid)})
    return read
