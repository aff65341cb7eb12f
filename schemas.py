"""
Database Schemas for the Footwear Stock & Invoicing service

Each Pydantic model represents a MongoDB collection in the connected database.
Collection name is the lowercase of the class name (e.g., Store -> "store"),
except where the docstring says otherwise. Every document is scoped to a
company through `company_id`.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class Company(BaseModel):
    """A tenant: a footwear reseller"""
    name: str = Field(..., description="Company name")


class Warehouse(BaseModel):
    """Bulk stock location"""
    company_id: str = Field(..., description="Owning company id")
    name: str = Field(..., description="Warehouse name")


class Store(BaseModel):
    """Point of sale; also the key of exhibition slots"""
    company_id: str = Field(..., description="Owning company id")
    name: str = Field(..., description="Store name")
    address: Optional[str] = Field(None)


class User(BaseModel):
    """Staff of a company (admin/seller) or a customer account"""
    company_id: str = Field(..., description="Owning company id")
    username: str = Field(..., description="Unique username")
    full_name: str = Field(..., description="Full name")
    role: str = Field("seller", description="Role: admin, seller or customer")
    password_hash: str = Field(..., description="Hashed password (server-side only)")
    is_active: bool = Field(True, description="Whether the user is active")


# ----- Stock -----

class SizeBucket(BaseModel):
    quantity: int = Field(0, ge=0, description="Always len(barcodes)")
    barcodes: List[str] = Field(default_factory=list)


class ExhibitionSlot(BaseModel):
    size: str
    barcode: str


class BarcodeCursor(BaseModel):
    """Last box number / position issued for a product"""
    box: int = Field(..., ge=0)
    position: int = Field(..., ge=0, le=99)


class ProductBase(BaseModel):
    company_id: str
    warehouse_id: str
    brand: str = Field(..., description="Brand")
    reference: str = Field(..., description="Model reference")
    color: str = Field("", description="Color")
    gender: str = Field("Dama", description="Dama, Hombre or Niño")
    comments: str = Field("")
    image_url: str = Field("", description="Public url in the blob store")
    base_price: float = Field(..., ge=0, description="Purchase price")
    sale_price: float = Field(..., ge=0, description="List selling price")
    version: int = Field(0, description="Optimistic concurrency counter")


class Product(ProductBase):
    """Individually barcoded units of one reference, grouped by size"""
    is_box: Literal[False] = False
    sizes: Dict[str, SizeBucket] = Field(default_factory=dict)
    total: int = Field(0, ge=0, description="Sum of bucket quantities")
    exhibition: Dict[str, ExhibitionSlot] = Field(default_factory=dict, description="store_id -> slot")
    barcode_cursor: Optional[BarcodeCursor] = None


class Box(ProductBase):
    """Sealed box stored in the "product" collection, sold whole"""
    is_box: Literal[True] = True
    barcode: str = Field(..., description="Box barcode, position field 000000")
    total2: int = Field(..., ge=0, description="Pairs inside the box; zero once sold")


# ----- Where a unit came from -----

class WarehouseOrigin(BaseModel):
    kind: Literal["warehouse"] = "warehouse"
    warehouse_id: str
    size: str


class ExhibitionOrigin(BaseModel):
    kind: Literal["exhibition"] = "exhibition"
    warehouse_id: str
    store_id: str
    size: str


class BoxOrigin(BaseModel):
    kind: Literal["box"] = "box"
    warehouse_id: str


UnitOrigin = Annotated[Union[WarehouseOrigin, ExhibitionOrigin, BoxOrigin], Field(discriminator="kind")]

origin_adapter = TypeAdapter(UnitOrigin)


# ----- Invoices -----

class StagedItem(BaseModel):
    """Line of an open invoice, stored in the "invoice_item" collection until close"""
    invoice_id: str
    company_id: str
    store_id: str
    product_id: str
    brand: str
    reference: str
    color: str = ""
    size: str = Field("N/A", description="N/A for boxes")
    barcode: str
    image_url: str = ""
    sale_price: float = Field(..., ge=0)
    base_price: float = Field(..., ge=0)
    sold: bool = False
    sold_at: Optional[datetime] = None
    added_at: datetime
    quantity: int = Field(1, ge=0, description="total2 for boxes, else 1")
    origin: UnitOrigin
    assigned_user: Optional[str] = None
    assigned_user_name: Optional[str] = None
    box_snapshot: Optional[Dict[str, Any]] = Field(None, description="Box document as it was when consumed")


class InvoiceItem(BaseModel):
    """Line embedded in a closed invoice"""
    product_id: Optional[str] = None
    brand: str = "Unknown"
    reference: str = "N/A"
    color: str = "N/A"
    size: str = "N/A"
    barcode: str = "N/A"
    image_url: str = ""
    sale_price: float = 0
    base_price: float = 0
    earn: float = Field(0, description="(sale_price - base_price) * quantity")
    sold: bool = True
    added_at: Optional[datetime] = None
    sold_at: Optional[datetime] = None
    quantity: int = 1
    is_box: bool = False
    warehouse_id: Optional[str] = None
    exhibition_store: Optional[str] = None
    origin: Optional[UnitOrigin] = None
    assigned_user: Optional[str] = None
    assigned_user_name: Optional[str] = None
    box_snapshot: Optional[Dict[str, Any]] = None
    returned: bool = False
    returned_at: Optional[datetime] = None


class Invoice(BaseModel):
    company_id: str
    store_id: str
    customer_name: Optional[str] = Field(None)
    customer_phone: Optional[str] = Field(None)
    user_id: Optional[str] = Field(None, description="User who opened the invoice")
    status: Literal["open", "closed"] = "open"
    items: List[InvoiceItem] = Field(default_factory=list)
    total_sold: float = Field(0, description="Sum of sale_price * quantity over sold lines")
    total_earn: float = Field(0)
    invoice_number: Optional[int] = Field(None, description="Per-store sequence, assigned on close")
    invoice_no: Optional[str] = Field(None, description="Business id YYMMDD + store letter + 3 digits")
    closed_at: Optional[datetime] = None
    version: int = 0
