import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import bcrypt
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

import database
from database import create_document, ensure_indexes, get_documents, serialize, to_object_id
from errors import ConflictError, NotFoundError, PartialFailureError, ValidationError
from identifiers import IdentifierGenerator
from inventory import Inventory
from invoices import InvoiceAggregator
from ledger import StockLedger
from schemas import Company, Store, User, Warehouse

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SUPERADMIN_USERNAME = os.getenv("SUPERADMIN_USERNAME")
SUPERADMIN_PASSWORD = os.getenv("SUPERADMIN_PASSWORD")
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ROLES = ("admin", "seller", "customer")


@asynccontextmanager
async def lifespan(_: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
        logger.info("Indexes ensured on %s", database.DATABASE_NAME)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, data endpoints will answer 500")
    yield


app = FastAPI(title="Footwear Stock & Invoicing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBasic()


# ----- Error mapping -----

@app.exception_handler(NotFoundError)
async def not_found_handler(_: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.detail})


@app.exception_handler(ValidationError)
async def validation_handler(_: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.detail})


@app.exception_handler(ConflictError)
async def conflict_handler(_: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": exc.detail})


@app.exception_handler(PartialFailureError)
async def partial_failure_handler(_: Request, exc: PartialFailureError):
    logger.error("Partial failure: %s (cause: %r, compensation: %r)", exc.detail, exc.cause, exc.compensation_error)
    return JSONResponse(status_code=500, content={"detail": exc.detail, "partial_failure": True})


@app.exception_handler(PyMongoError)
async def database_error_handler(_: Request, exc: PyMongoError):
    logger.exception("Database call failed", exc_info=exc)
    return JSONResponse(status_code=503, content={"detail": "Database unavailable, please try again"})


# ----- Dependencies -----

def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


def get_identifiers(db=Depends(get_db)) -> IdentifierGenerator:
    return IdentifierGenerator(db)


def get_ledger(db=Depends(get_db)) -> StockLedger:
    return StockLedger(db)


def get_inventory(db=Depends(get_db), identifiers: IdentifierGenerator = Depends(get_identifiers),
                  ledger: StockLedger = Depends(get_ledger)) -> Inventory:
    return Inventory(db, identifiers, ledger)


def get_invoices(db=Depends(get_db), identifiers: IdentifierGenerator = Depends(get_identifiers),
                 ledger: StockLedger = Depends(get_ledger)) -> InvoiceAggregator:
    return InvoiceAggregator(db, ledger, identifiers)


# ----- Auth (HTTP Basic) -----

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, encoded: str) -> bool:
    if not encoded:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), encoded.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


class LoginResponse(BaseModel):
    id: Optional[str] = None
    username: str
    role: str
    company_id: Optional[str] = None


def authenticate(credentials: HTTPBasicCredentials = Depends(security), db=Depends(get_db)) -> LoginResponse:
    if SUPERADMIN_USERNAME and SUPERADMIN_PASSWORD:
        if secrets.compare_digest(credentials.username, SUPERADMIN_USERNAME) and \
                secrets.compare_digest(credentials.password, SUPERADMIN_PASSWORD):
            return LoginResponse(username=credentials.username, role="superadmin")
    user = db["user"].find_one({"username": credentials.username, "is_active": True})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(credentials.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return LoginResponse(id=str(user["_id"]), username=user["username"], role=user.get("role", "seller"),
                         company_id=user.get("company_id"))


def company_scope(company_id: str, user: LoginResponse = Depends(authenticate)) -> LoginResponse:
    if user.role == "superadmin":
        return user
    if user.company_id != company_id or user.role == "customer":
        raise HTTPException(status_code=403, detail="Not allowed for this company")
    return user


def company_admin(user: LoginResponse = Depends(company_scope)) -> LoginResponse:
    if user.role not in ("admin", "superadmin"):
        raise HTTPException(status_code=403, detail="Admin role required")
    return user


def superadmin(user: LoginResponse = Depends(authenticate)) -> LoginResponse:
    if user.role != "superadmin":
        raise HTTPException(status_code=403, detail="Superadmin role required")
    return user


# ----- Companies, warehouses, stores, users -----

class CompanyIn(BaseModel):
    name: str


class WarehouseIn(BaseModel):
    name: str


class StoreIn(BaseModel):
    name: str
    address: Optional[str] = None


class UserIn(BaseModel):
    username: str
    full_name: str
    password: str = Field(..., min_length=1)
    role: str = "seller"


def _company(db, company_id: str) -> dict:
    company = db["company"].find_one({"_id": to_object_id(company_id)})
    if not company:
        raise NotFoundError("Company not found")
    return company


@app.post("/api/companies", response_model=dict)
def create_company(payload: CompanyIn, db=Depends(get_db), _: LoginResponse = Depends(superadmin)):
    inserted_id = create_document("company", Company(name=payload.name), db)
    return {"id": inserted_id}


@app.get("/api/companies", response_model=List[dict])
def list_companies(db=Depends(get_db), user: LoginResponse = Depends(authenticate)):
    if user.role == "superadmin":
        return serialize(get_documents("company", sort=[("name", 1)], database=db))
    if not user.company_id or user.role == "customer":
        return []
    return serialize(get_documents("company", {"_id": to_object_id(user.company_id)}, database=db))


@app.post("/api/companies/{company_id}/warehouses", response_model=dict)
def create_warehouse(company_id: str, payload: WarehouseIn, db=Depends(get_db),
                     _: LoginResponse = Depends(company_admin)):
    _company(db, company_id)
    inserted_id = create_document("warehouse", Warehouse(company_id=company_id, name=payload.name), db)
    return {"id": inserted_id}


@app.get("/api/companies/{company_id}/warehouses", response_model=List[dict])
def list_warehouses(company_id: str, db=Depends(get_db), _: LoginResponse = Depends(company_scope)):
    return serialize(get_documents("warehouse", {"company_id": company_id}, sort=[("name", 1)], database=db))


@app.post("/api/companies/{company_id}/stores", response_model=dict)
def create_store(company_id: str, payload: StoreIn, db=Depends(get_db), _: LoginResponse = Depends(company_admin)):
    _company(db, company_id)
    store = Store(company_id=company_id, name=payload.name, address=payload.address)
    inserted_id = create_document("store", store, db)
    return {"id": inserted_id}


@app.get("/api/companies/{company_id}/stores", response_model=List[dict])
def list_stores(company_id: str, db=Depends(get_db), _: LoginResponse = Depends(company_scope)):
    return serialize(get_documents("store", {"company_id": company_id}, sort=[("name", 1)], database=db))


@app.post("/api/companies/{company_id}/users", response_model=dict)
def create_user(company_id: str, payload: UserIn, db=Depends(get_db), _: LoginResponse = Depends(company_admin)):
    _company(db, company_id)
    if payload.role not in ROLES:
        raise ValidationError(f"Role must be one of {', '.join(ROLES)}")
    if db["user"].find_one({"username": payload.username}):
        raise ValidationError("Username already exists")
    user = User(company_id=company_id, username=payload.username, full_name=payload.full_name,
                role=payload.role, password_hash=hash_password(payload.password))
    inserted_id = create_document("user", user, db)
    return {"id": inserted_id}


@app.get("/api/companies/{company_id}/users", response_model=List[dict])
def list_users(company_id: str, db=Depends(get_db), _: LoginResponse = Depends(company_scope)):
    users = get_documents("user", {"company_id": company_id}, sort=[("username", 1)], database=db)
    for user in users:
        user.pop("password_hash", None)
    return serialize(users)


# ----- Products & boxes -----

class ProductFields(BaseModel):
    brand: str
    reference: str
    color: str = ""
    gender: str = "Dama"
    comments: str = ""
    image_url: str = ""
    base_price: float = Field(..., ge=0)
    sale_price: float = Field(..., ge=0)


class ProductIn(ProductFields):
    sizes: Dict[str, int] = Field(default_factory=dict, description="size -> number of units")


class BoxIn(ProductFields):
    total2: int = Field(..., gt=0, description="Pairs inside the box")


class SizeIn(BaseModel):
    size: str
    quantity: int = Field(..., gt=0)


class ExhibitionIn(BaseModel):
    store_id: str
    barcode: str


@app.post("/api/companies/{company_id}/warehouses/{warehouse_id}/products", response_model=dict)
def create_product(company_id: str, warehouse_id: str, payload: ProductIn,
                   inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    fields = payload.model_dump(exclude={"sizes"})
    return inventory.create_product(company_id, warehouse_id, payload.sizes, **fields)


@app.post("/api/companies/{company_id}/warehouses/{warehouse_id}/boxes", response_model=dict)
def create_box(company_id: str, warehouse_id: str, payload: BoxIn,
               inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    fields = payload.model_dump(exclude={"total2"})
    return inventory.create_box(company_id, warehouse_id, payload.total2, **fields)


@app.get("/api/companies/{company_id}/warehouses/{warehouse_id}/products", response_model=List[dict])
def list_products(company_id: str, warehouse_id: str,
                  inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return inventory.list_products(company_id, warehouse_id)


@app.get("/api/companies/{company_id}/warehouses/{warehouse_id}/products/{product_id}", response_model=dict)
def get_product(company_id: str, warehouse_id: str, product_id: str,
                inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return serialize(inventory.product(company_id, warehouse_id, product_id))


@app.post("/api/companies/{company_id}/warehouses/{warehouse_id}/products/{product_id}/sizes", response_model=dict)
def add_size(company_id: str, warehouse_id: str, product_id: str, payload: SizeIn,
             inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return inventory.add_size(company_id, warehouse_id, product_id, payload.size, payload.quantity)


@app.post("/api/companies/{company_id}/warehouses/{warehouse_id}/products/{product_id}/sizes/{size}/barcodes",
          response_model=dict)
def add_barcode(company_id: str, warehouse_id: str, product_id: str, size: str,
                inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return inventory.add_barcode(company_id, warehouse_id, product_id, size)


@app.delete("/api/companies/{company_id}/warehouses/{warehouse_id}/products/{product_id}"
            "/sizes/{size}/barcodes/{barcode}", response_model=dict)
def delete_barcode(company_id: str, warehouse_id: str, product_id: str, size: str, barcode: str,
                   inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return inventory.delete_barcode(company_id, warehouse_id, product_id, size, barcode)


@app.post("/api/companies/{company_id}/warehouses/{warehouse_id}/products/{product_id}/exhibition",
          response_model=dict)
def assign_exhibition(company_id: str, warehouse_id: str, product_id: str, payload: ExhibitionIn,
                      inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return inventory.assign_exhibition(company_id, warehouse_id, product_id, payload.store_id, payload.barcode)


@app.delete("/api/companies/{company_id}/warehouses/{warehouse_id}/products/{product_id}/exhibition/{store_id}",
            response_model=dict)
def return_from_exhibition(company_id: str, warehouse_id: str, product_id: str, store_id: str,
                           inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return inventory.return_from_exhibition(company_id, warehouse_id, product_id, store_id)


@app.get("/api/companies/{company_id}/units/{barcode}", response_model=dict)
def lookup_unit(company_id: str, barcode: str,
                inventory: Inventory = Depends(get_inventory), _: LoginResponse = Depends(company_scope)):
    return inventory.lookup(company_id, barcode)


# ----- Invoices -----

class CreateInvoiceRequest(BaseModel):
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None


class AddItemRequest(BaseModel):
    barcode: str
    assigned_user: Optional[str] = None


class SoldRequest(BaseModel):
    sale_price: Optional[float] = None


class ReturnRequest(BaseModel):
    barcode: str


@app.post("/api/companies/{company_id}/stores/{store_id}/invoices", response_model=dict)
def create_invoice(company_id: str, store_id: str, payload: CreateInvoiceRequest,
                   invoices: InvoiceAggregator = Depends(get_invoices), user: LoginResponse = Depends(company_scope)):
    return invoices.create_invoice(company_id, store_id, payload.customer_name, payload.customer_phone, user.id)


@app.get("/api/companies/{company_id}/stores/{store_id}/invoices", response_model=List[dict])
def list_invoices(company_id: str, store_id: str, status: Optional[str] = None,
                  invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.list_invoices(company_id, store_id, status)


@app.get("/api/companies/{company_id}/stores/{store_id}/invoices/{invoice_id}", response_model=dict)
def get_invoice(company_id: str, store_id: str, invoice_id: str,
                invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.get_invoice(company_id, store_id, invoice_id)


@app.delete("/api/companies/{company_id}/stores/{store_id}/invoices/{invoice_id}", response_model=dict)
def delete_invoice(company_id: str, store_id: str, invoice_id: str,
                   invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.delete_invoice(company_id, store_id, invoice_id)


@app.post("/api/companies/{company_id}/stores/{store_id}/invoices/{invoice_id}/items", response_model=dict)
def add_invoice_item(company_id: str, store_id: str, invoice_id: str, payload: AddItemRequest,
                     invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.add_item(company_id, store_id, invoice_id, payload.barcode, payload.assigned_user)


@app.delete("/api/companies/{company_id}/stores/{store_id}/invoices/{invoice_id}/items/{item_id}",
            response_model=dict)
def return_staged_item(company_id: str, store_id: str, invoice_id: str, item_id: str,
                       invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.return_staged_item(company_id, store_id, invoice_id, item_id).as_dict()


@app.post("/api/companies/{company_id}/stores/{store_id}/invoices/{invoice_id}/items/{item_id}/sold",
          response_model=dict)
def mark_sold(company_id: str, store_id: str, invoice_id: str, item_id: str, payload: SoldRequest,
              invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.mark_sold(company_id, store_id, invoice_id, item_id, payload.sale_price)


@app.post("/api/companies/{company_id}/stores/{store_id}/invoices/{invoice_id}/close", response_model=dict)
def close_invoice(company_id: str, store_id: str, invoice_id: str,
                  invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.close_invoice(company_id, store_id, invoice_id)


@app.post("/api/companies/{company_id}/stores/{store_id}/invoices/{invoice_id}/returns", response_model=dict)
def return_closed_item(company_id: str, store_id: str, invoice_id: str, payload: ReturnRequest,
                       invoices: InvoiceAggregator = Depends(get_invoices), _: LoginResponse = Depends(company_scope)):
    return invoices.return_closed_item(company_id, store_id, invoice_id, payload.barcode).as_dict()


# ----- Misc & Test -----

@app.get("/")
def read_root():
    return {"message": "Footwear Stock & Invoicing API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected"
            response["collections"] = database.db.list_collection_names()
        else:
            response["database"] = "❌ Not Configured"
    except Exception as e:
        response["database"] = f"Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
