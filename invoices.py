"""
Invoice aggregation: staging units on an open invoice, pricing them,
closing the invoice and handling returns before and after close.

Open invoices keep their lines in the "invoice_item" collection. Closing
embeds the lines into the invoice document and purges the staging records.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from database import cas_update, create_document, serialize, to_object_id, utcnow
from errors import ConflictError, InventoryError, NotFoundError, PartialFailureError, ValidationError
from identifiers import IdentifierGenerator
from ledger import NON_EXISTENT, Origin, StockLedger, UnitLocation
from schemas import BoxOrigin, ExhibitionOrigin, Invoice, InvoiceItem, StagedItem, WarehouseOrigin, origin_adapter

logger = logging.getLogger(__name__)

EMPTY_INVOICE = "Cannot save an empty invoice. Please add items before saving."
UNSOLD_ITEMS = "All products must be marked as sold before saving the invoice."
INVALID_PRICE = "Please enter a valid price before marking as sold."
SLOT_TAKEN = "The store exhibits another unit now, the item went back to warehouse stock"


def item_quantity(item: dict) -> int:
    quantity = item.get("quantity")
    return 1 if quantity is None else int(quantity)


def line_totals(item: dict) -> Tuple[float, float]:
    """(sale contribution, earn contribution) of one line."""
    quantity = item_quantity(item)
    price = float(item.get("sale_price") or 0)
    base = float(item.get("base_price") or 0)
    return price * quantity, (price - base) * quantity


def compute_totals(items: Iterable[dict]) -> Tuple[float, float]:
    """Totals over sold, non-returned lines. Pure function of the item list."""
    total_sold = 0.0
    total_earn = 0.0
    for item in items:
        if not item.get("sold") or item.get("returned"):
            continue
        sold, earn = line_totals(item)
        total_sold += sold
        total_earn += earn
    return total_sold, total_earn


def legacy_origin(item: dict):
    """Origin of an embedded line written before origins were recorded."""
    if item.get("is_box"):
        return BoxOrigin(warehouse_id=item["warehouse_id"])
    if item.get("exhibition_store"):
        return ExhibitionOrigin(warehouse_id=item["warehouse_id"], store_id=item["exhibition_store"],
                                size=item.get("size", "N/A"))
    return WarehouseOrigin(warehouse_id=item["warehouse_id"], size=item.get("size", "N/A"))


@dataclass
class ReturnResult:
    item: dict
    stock_restored: bool
    detail: Optional[str] = None
    invoice: Optional[dict] = None

    def as_dict(self) -> dict:
        return {
            "item": self.item,
            "stock_restored": self.stock_restored,
            "detail": self.detail,
            "invoice": self.invoice,
        }


class InvoiceAggregator:
    def __init__(self, db, ledger: StockLedger, identifiers: IdentifierGenerator,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.ledger = ledger
        self.identifiers = identifiers
        self.clock = clock

    @property
    def staging(self):
        return self.db["invoice_item"]

    # ----- Reading -----

    def _invoice(self, company_id: str, store_id: str, invoice_id: str) -> dict:
        found = self.db["invoice"].find_one(
            {"_id": to_object_id(invoice_id), "company_id": company_id, "store_id": store_id}
        )
        if not found:
            raise NotFoundError("Invoice not found")
        return found

    def _open_invoice(self, company_id: str, store_id: str, invoice_id: str) -> dict:
        invoice = self._invoice(company_id, store_id, invoice_id)
        if invoice.get("status") != "open":
            raise ValidationError("Invoice is closed")
        return invoice

    def staged_items(self, invoice_id: str) -> List[dict]:
        """Staged lines, newest first."""
        return list(self.staging.find({"invoice_id": invoice_id}).sort("added_at", -1))

    def get_invoice(self, company_id: str, store_id: str, invoice_id: str) -> dict:
        invoice = serialize(self._invoice(company_id, store_id, invoice_id))
        if invoice["status"] == "open":
            invoice["staged_items"] = serialize(self.staged_items(invoice_id))
        return invoice

    def list_invoices(self, company_id: str, store_id: str, status: Optional[str] = None) -> List[dict]:
        query = {"company_id": company_id, "store_id": store_id}
        if status:
            query["status"] = status
        return [serialize(i) for i in self.db["invoice"].find(query).sort("created_at", -1)]

    # ----- Open invoice -----

    def create_invoice(self, company_id: str, store_id: str, customer_name: Optional[str] = None,
                       customer_phone: Optional[str] = None, user_id: Optional[str] = None) -> dict:
        if not self.db["store"].find_one({"_id": to_object_id(store_id), "company_id": company_id}):
            raise NotFoundError("Store not found")
        invoice = Invoice(company_id=company_id, store_id=store_id, customer_name=customer_name,
                          customer_phone=customer_phone, user_id=user_id)
        invoice_id = create_document("invoice", invoice, self.db)
        logger.info("Opened invoice %s in store %s", invoice_id, store_id)
        return self.get_invoice(company_id, store_id, invoice_id)

    def _assignee(self, company_id: str, user_id: Optional[str]) -> dict:
        if not user_id:
            raise ValidationError("Please select a user before adding to invoice.")
        user = self.db["user"].find_one({"_id": to_object_id(user_id), "company_id": company_id})
        if not user:
            raise NotFoundError("User not found")
        if user.get("role") == "customer":
            raise ValidationError("Customers cannot be assigned to invoice items")
        return user

    def _touch(self, invoice_id: str, **fields) -> bool:
        """Bump the version of an open invoice. False when it is no longer open."""
        update = {"$inc": {"version": 1}, "$set": {"updated_at": utcnow()}}
        update["$set"].update(fields)
        result = self.db["invoice"].update_one({"_id": to_object_id(invoice_id), "status": "open"}, update)
        return result.matched_count == 1

    def _refresh_totals(self, invoice_id: str) -> Tuple[float, float]:
        total_sold, total_earn = compute_totals(self.staged_items(invoice_id))
        self._touch(invoice_id, total_sold=total_sold, total_earn=total_earn)
        return total_sold, total_earn

    def _stage(self, invoice: dict, location: UnitLocation, product: dict, user: dict) -> dict:
        is_box = location.is_box
        item = StagedItem(
            invoice_id=str(invoice["_id"]),
            company_id=invoice["company_id"],
            store_id=invoice["store_id"],
            product_id=location.product_id,
            brand=product.get("brand", ""),
            reference=product.get("reference", ""),
            color=product.get("color", ""),
            size=location.size,
            barcode=location.barcode,
            image_url=product.get("image_url", ""),
            sale_price=product.get("sale_price", 0),
            base_price=product.get("base_price", 0),
            added_at=self.clock(),
            quantity=product.get("total2", 0) if is_box else 1,
            origin=location.origin,
            assigned_user=str(user["_id"]),
            assigned_user_name=user.get("full_name"),
            box_snapshot={k: v for k, v in product.items() if k != "_id"} if is_box else None,
        )
        item_id = create_document("invoice_item", item, self.db)
        return self.staging.find_one({"_id": to_object_id(item_id)})

    def add_item(self, company_id: str, store_id: str, invoice_id: str, barcode: str,
                 assigned_user: Optional[str]) -> dict:
        """
        Move the unit holding `barcode` out of stock and onto the open invoice,
        priced at the product's list price and not yet sold.
        """
        invoice = self._open_invoice(company_id, store_id, invoice_id)
        user = self._assignee(company_id, assigned_user)
        location = self.ledger.find_unit_by_barcode(company_id, barcode)
        if location is None:
            raise NotFoundError(NON_EXISTENT)
        try:
            staged = self.ledger.move_into(location, lambda product: self._stage(invoice, location, product, user))
        except DuplicateKeyError:
            raise ConflictError(f"Unit {barcode} is already on an open invoice")
        if not self._touch(invoice_id):
            self._unstage(staged)
            raise ConflictError("Invoice was closed while adding the item, please reload")
        logger.info("Staged %s (%s) on invoice %s", barcode, location.origin.kind, invoice_id)
        return serialize(staged)

    def return_staged_item(self, company_id: str, store_id: str, invoice_id: str, item_id: str) -> ReturnResult:
        """
        Put the unit back where it came from, then remove the line. The line is
        removed even when the product document is gone; a unit that is already
        back in stock fails validation and leaves the line in place.
        """
        self._invoice(company_id, store_id, invoice_id)
        item = self.staging.find_one({"_id": to_object_id(item_id), "invoice_id": invoice_id})
        if not item:
            raise NotFoundError("Item not found in the invoice")
        landed, detail = self._restore_stock(item, origin_adapter.validate_python(item["origin"]))
        self.staging.delete_one({"_id": item["_id"]})
        self._refresh_totals(invoice_id)
        return ReturnResult(item=serialize(item), stock_restored=landed is not None, detail=detail)

    def _unstage(self, staged: dict) -> None:
        """Undo a staging write whose invoice closed underneath it."""
        try:
            self._restore_stock(staged, origin_adapter.validate_python(staged["origin"]))
        except InventoryError as exc:
            logger.exception("Could not return %s to stock after the invoice closed", staged["barcode"])
            raise PartialFailureError(
                f"Unit {staged['barcode']} left stock but its invoice closed before it was added",
                compensation_error=exc,
            ) from exc
        self.staging.delete_one({"_id": staged["_id"]})

    def _restore_stock(self, item: dict, origin) -> Tuple[Optional[Origin], Optional[str]]:
        """
        Return the unit to stock. Gives the origin it landed in (None when the
        product is gone) and a detail for the user when it differs from `origin`.
        """
        try:
            _, landed = self.ledger.restore(origin, item["product_id"], item["barcode"],
                                            box_total2=item_quantity(item), box_snapshot=item.get("box_snapshot"))
        except NotFoundError:
            logger.warning("Product %s not found while returning %s", item["product_id"], item["barcode"])
            return None, "Product not found"
        if landed != origin:
            return landed, SLOT_TAKEN
        return landed, None

    def mark_sold(self, company_id: str, store_id: str, invoice_id: str, item_id: str,
                  sale_price: Optional[float] = None) -> dict:
        self._open_invoice(company_id, store_id, invoice_id)
        item = self.staging.find_one({"_id": to_object_id(item_id), "invoice_id": invoice_id})
        if not item:
            raise NotFoundError("Item not found in the invoice")
        price = item.get("sale_price") if sale_price is None else sale_price
        try:
            price = float(price)
        except (TypeError, ValueError):
            raise ValidationError(INVALID_PRICE)
        if math.isnan(price) or math.isinf(price) or price < 0:
            raise ValidationError(INVALID_PRICE)
        self.staging.update_one(
            {"_id": item["_id"]}, {"$set": {"sold": True, "sale_price": price, "sold_at": self.clock()}}
        )
        total_sold, total_earn = self._refresh_totals(invoice_id)
        return {
            "item": serialize(self.staging.find_one({"_id": item["_id"]})),
            "total_sold": total_sold,
            "total_earn": total_earn,
        }

    # ----- Closing -----

    def _closed_item(self, item: dict) -> dict:
        origin = origin_adapter.validate_python(item["origin"])
        _, earn = line_totals(item)
        return InvoiceItem(
            product_id=item.get("product_id"),
            brand=item.get("brand") or "Unknown",
            reference=item.get("reference") or "N/A",
            color=item.get("color") or "N/A",
            size=item.get("size") or "N/A",
            barcode=item.get("barcode") or "N/A",
            image_url=item.get("image_url") or "",
            sale_price=float(item.get("sale_price") or 0),
            base_price=float(item.get("base_price") or 0),
            earn=earn,
            sold=bool(item.get("sold")),
            added_at=item.get("added_at"),
            sold_at=item.get("sold_at"),
            quantity=item_quantity(item),
            is_box=isinstance(origin, BoxOrigin),
            warehouse_id=origin.warehouse_id,
            exhibition_store=origin.store_id if isinstance(origin, ExhibitionOrigin) else None,
            origin=origin,
            assigned_user=item.get("assigned_user"),
            assigned_user_name=item.get("assigned_user_name"),
            box_snapshot=item.get("box_snapshot"),
        ).model_dump()

    def close_invoice(self, company_id: str, store_id: str, invoice_id: str) -> dict:
        invoice = self._open_invoice(company_id, store_id, invoice_id)
        items = sorted(self.staging.find({"invoice_id": invoice_id}), key=lambda i: i["added_at"])
        if not items:
            raise ValidationError(EMPTY_INVOICE)
        if any(not item.get("sold") for item in items):
            raise ValidationError(UNSOLD_ITEMS)

        number = self.identifiers.next_invoice_number(store_id)
        invoice_no = self.identifiers.invoice_no(company_id, store_id, number)
        total_sold, total_earn = compute_totals(items)
        now = self.clock()
        result = self.db["invoice"].update_one(
            {"_id": invoice["_id"], "status": "open", "version": invoice.get("version", 0)},
            {
                "$set": {
                    "status": "closed",
                    "invoice_number": number,
                    "invoice_no": invoice_no,
                    "items": [self._closed_item(item) for item in items],
                    "total_sold": total_sold,
                    "total_earn": total_earn,
                    "closed_at": now,
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
        )
        if result.matched_count == 0:
            raise ConflictError("Invoice changed while closing, please reload and try again")
        logger.info("Closed invoice %s as %s (%d items, total %.2f)", invoice_id, invoice_no, len(items), total_sold)

        try:
            self.staging.delete_many({"_id": {"$in": [item["_id"] for item in items]}})
        except PyMongoError as exc:
            logger.exception("Invoice %s closed but staged items were not purged", invoice_id)
            raise PartialFailureError(f"Invoice {invoice_no} closed but staged items were not purged", cause=exc)
        return self.get_invoice(company_id, store_id, invoice_id)

    def return_closed_item(self, company_id: str, store_id: str, invoice_id: str, barcode: str) -> ReturnResult:
        """
        Flag the first unreturned line with `barcode` as returned, take its
        contribution off the totals and put the unit back into stock.
        """
        invoice = self._invoice(company_id, store_id, invoice_id)
        if invoice.get("status") != "closed":
            raise ValidationError("Open invoices return staged items instead")
        item = self._returnable(invoice, barcode)
        if not item.get("product_id") or not item.get("warehouse_id"):
            raise ValidationError("Product ID or Warehouse ID not found for this item")

        def mutate(doc):
            line = self._returnable(doc, barcode)
            sold, earn = line_totals(line)
            if line.get("earn") is not None:
                earn = line["earn"]
            items = [dict(i) for i in doc["items"]]
            index = next(n for n, i in enumerate(doc["items"]) if i is line)
            items[index].update({"returned": True, "returned_at": self.clock()})
            updated = dict(doc)
            updated["items"] = items
            updated["total_sold"] = doc.get("total_sold", 0) - sold
            updated["total_earn"] = doc.get("total_earn", 0) - earn
            return updated

        origin = item.get("origin")
        origin = origin_adapter.validate_python(origin) if origin else legacy_origin(item)
        landed, detail = self._restore_stock(item, origin)
        try:
            _, after = cas_update(self.db, "invoice", invoice["_id"], mutate, missing="Invoice not found",
                                  retries=self.ledger.max_retries)
        except InventoryError as exc:
            if landed is not None:
                self._take_back(item, landed, exc)
            raise
        logger.info("Returned %s from closed invoice %s", barcode, invoice.get("invoice_no"))
        return ReturnResult(item=serialize(item), stock_restored=landed is not None, detail=detail,
                            invoice=serialize(after))

    def _take_back(self, item: dict, landed, cause: Exception) -> None:
        """Reverse a stock restore whose invoice-side write failed."""
        location = UnitLocation(item["product_id"], item["barcode"], landed, product={})
        try:
            self.ledger.take(location)
        except InventoryError as exc:
            logger.exception("Could not take %s back out of stock", item["barcode"])
            raise PartialFailureError(
                f"Unit {item['barcode']} went back to stock but the invoice was not updated",
                cause=cause, compensation_error=exc,
            ) from exc

    @staticmethod
    def _returnable(invoice: dict, barcode: str) -> dict:
        matches = [i for i in invoice.get("items", []) if i.get("barcode") == barcode]
        if not matches:
            raise NotFoundError("Item not found in the invoice")
        for item in matches:
            if not item.get("returned"):
                return item
        raise ValidationError("Item has already been returned")

    # ----- Deleting -----

    def delete_invoice(self, company_id: str, store_id: str, invoice_id: str) -> dict:
        """Delete an open invoice, returning every staged unit to stock first."""
        invoice = self._invoice(company_id, store_id, invoice_id)
        if invoice.get("status") != "open":
            raise ValidationError("Closed invoices cannot be deleted")
        not_restored = []
        for item in self.staged_items(invoice_id):
            landed, _ = self._restore_stock(item, origin_adapter.validate_python(item["origin"]))
            self.staging.delete_one({"_id": item["_id"]})
            if landed is None:
                not_restored.append(item["barcode"])
        self.db["invoice"].delete_one({"_id": to_object_id(invoice_id), "status": "open"})
        logger.info("Deleted open invoice %s", invoice_id)
        return {"deleted": True, "not_restored": not_restored}
