"""
Warehouse-side stock operations: issuing products and boxes, adding or
removing units, and moving units in and out of store exhibition.
"""

import logging
from typing import Dict, List, Optional

from database import create_document, serialize, to_object_id
from errors import NotFoundError, ValidationError
from identifiers import IdentifierGenerator, current_cursor
from ledger import (
    StockLedger, check_size, put_into_bucket, put_into_exhibition, size_of, take_from_bucket,
    take_from_exhibition,
)
from schemas import Box, Product

logger = logging.getLogger(__name__)


def _cursor_dict(cursor) -> Optional[dict]:
    if cursor is None:
        return None
    return {"box": cursor[0], "position": cursor[1]}


class Inventory:
    def __init__(self, db, identifiers: IdentifierGenerator, ledger: StockLedger):
        self.db = db
        self.identifiers = identifiers
        self.ledger = ledger

    # ----- Lookups -----

    def warehouse(self, company_id: str, warehouse_id: str) -> dict:
        found = self.db["warehouse"].find_one({"_id": to_object_id(warehouse_id), "company_id": company_id})
        if not found:
            raise NotFoundError("Warehouse not found")
        return found

    def store(self, company_id: str, store_id: str) -> dict:
        found = self.db["store"].find_one({"_id": to_object_id(store_id), "company_id": company_id})
        if not found:
            raise NotFoundError("Store not found")
        return found

    def product(self, company_id: str, warehouse_id: str, product_id: str) -> dict:
        found = self.db["product"].find_one(
            {"_id": to_object_id(product_id), "company_id": company_id, "warehouse_id": warehouse_id}
        )
        if not found:
            raise NotFoundError("Product not found")
        return found

    def list_products(self, company_id: str, warehouse_id: str) -> List[dict]:
        self.warehouse(company_id, warehouse_id)
        cursor = self.db["product"].find({"company_id": company_id, "warehouse_id": warehouse_id})
        return [serialize(p) for p in cursor.sort("created_at", -1)]

    def lookup(self, company_id: str, barcode: str) -> dict:
        location = self.ledger.find_unit_by_barcode(company_id, barcode)
        if location is None:
            raise NotFoundError("Non-existent product")
        return {
            "product_id": location.product_id,
            "barcode": location.barcode,
            "size": location.size,
            "origin": location.origin.model_dump(),
            "product": serialize(location.product),
        }

    # ----- Issuing stock -----

    def create_product(self, company_id: str, warehouse_id: str, sizes: Dict[str, int], **fields) -> dict:
        self.warehouse(company_id, warehouse_id)
        buckets = {}
        cursor = None
        for size, quantity in sizes.items():
            check_size(size)
            if quantity < 0:
                raise ValidationError(f"Quantity for {size} must not be negative")
            if quantity == 0:
                continue
            codes, cursor = self.identifiers.unit_barcodes(company_id, quantity, cursor)
            buckets[size] = {"quantity": len(codes), "barcodes": codes}
        product = Product(
            company_id=company_id,
            warehouse_id=warehouse_id,
            sizes=buckets,
            total=sum(b["quantity"] for b in buckets.values()),
            barcode_cursor=_cursor_dict(cursor),
            **fields,
        )
        product_id = create_document("product", product, self.db)
        logger.info("Created product %s with %d units in warehouse %s", product_id, product.total, warehouse_id)
        return serialize(self.db["product"].find_one({"_id": to_object_id(product_id)}))

    def create_box(self, company_id: str, warehouse_id: str, total2: int, **fields) -> dict:
        self.warehouse(company_id, warehouse_id)
        if total2 <= 0:
            raise ValidationError("A box must hold at least one pair")
        box = Box(
            company_id=company_id,
            warehouse_id=warehouse_id,
            barcode=self.identifiers.box_barcode(company_id),
            total2=total2,
            **fields,
        )
        box_id = create_document("product", box, self.db)
        logger.info("Created box %s (%s) in warehouse %s", box_id, box.barcode, warehouse_id)
        return serialize(self.db["product"].find_one({"_id": to_object_id(box_id)}))

    def _mutate_units(self, company_id: str, warehouse_id: str, product_id: str, mutate) -> dict:
        found = self.product(company_id, warehouse_id, product_id)
        if found.get("is_box"):
            raise ValidationError("Boxes have no sizes")
        _, after = self.ledger.update_product(product_id, mutate)
        return serialize(after)

    def add_size(self, company_id: str, warehouse_id: str, product_id: str, size: str, quantity: int) -> dict:
        check_size(size)
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")

        def mutate(doc):
            if size in (doc.get("sizes") or {}):
                raise ValidationError(f"Size {size} already exists")
            codes, cursor = self.identifiers.unit_barcodes(company_id, quantity, current_cursor(doc))
            updated = doc
            for code in codes:
                updated = put_into_bucket(updated, size, code)
            updated["barcode_cursor"] = _cursor_dict(cursor)
            return updated

        return self._mutate_units(company_id, warehouse_id, product_id, mutate)

    def add_barcode(self, company_id: str, warehouse_id: str, product_id: str, size: str) -> dict:
        def mutate(doc):
            if size not in (doc.get("sizes") or {}):
                raise NotFoundError(f"Size {size} not found")
            codes, cursor = self.identifiers.unit_barcodes(company_id, 1, current_cursor(doc))
            updated = put_into_bucket(doc, size, codes[0])
            updated["barcode_cursor"] = _cursor_dict(cursor)
            return updated

        return self._mutate_units(company_id, warehouse_id, product_id, mutate)

    def delete_barcode(self, company_id: str, warehouse_id: str, product_id: str, size: str, barcode: str) -> dict:
        def mutate(doc):
            try:
                return take_from_bucket(doc, size, barcode)
            except NotFoundError:
                raise NotFoundError(f"Barcode {barcode} not found in size {size}")

        return self._mutate_units(company_id, warehouse_id, product_id, mutate)

    # ----- Exhibition -----

    def assign_exhibition(self, company_id: str, warehouse_id: str, product_id: str,
                          store_id: str, barcode: str) -> dict:
        self.store(company_id, store_id)

        def mutate(doc):
            size = size_of(doc, barcode)
            if size is None:
                raise ValidationError("The entered barcode does not match any product size")
            return put_into_exhibition(take_from_bucket(doc, size, barcode), store_id, size, barcode)

        result = self._mutate_units(company_id, warehouse_id, product_id, mutate)
        logger.info("Exhibiting %s of product %s in store %s", barcode, product_id, store_id)
        return result

    def return_from_exhibition(self, company_id: str, warehouse_id: str, product_id: str, store_id: str) -> dict:
        def mutate(doc):
            try:
                updated, slot = take_from_exhibition(doc, store_id)
            except NotFoundError:
                raise NotFoundError("This store does not exhibit the product")
            return put_into_bucket(updated, slot["size"], slot["barcode"])

        result = self._mutate_units(company_id, warehouse_id, product_id, mutate)
        logger.info("Returned exhibition unit of product %s from store %s", product_id, store_id)
        return result
