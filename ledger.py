"""
Stock ledger: moves a physical unit between a warehouse size bucket, a
store exhibition slot, a box and an open invoice.

The transition functions at the top are pure: they take a product (or box)
document and return an updated copy, raising a domain error when the unit
is not where the caller expects it. StockLedger applies them through
optimistic compare-and-swap writes and compensates the stock side when the
paired invoice write fails.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from database import LEDGER_MAX_RETRIES, cas_update, to_object_id
from errors import NotFoundError, PartialFailureError, ValidationError
from schemas import BoxOrigin, ExhibitionOrigin, WarehouseOrigin

logger = logging.getLogger(__name__)

Origin = Union[WarehouseOrigin, ExhibitionOrigin, BoxOrigin]
T = TypeVar("T")

NON_EXISTENT = "Non-existent product"


def check_size(size: str) -> str:
    if not size or "." in size or size.startswith("$"):
        raise ValidationError(f"Invalid size: {size!r}")
    return size


def bucket_total(sizes: Dict[str, dict]) -> int:
    return sum(bucket.get("quantity", 0) for bucket in sizes.values())


def bucket_violations(product: dict) -> List[str]:
    """Describe every breach of the bucket/total invariant; empty when the product is consistent."""
    problems = []
    sizes = product.get("sizes") or {}
    for size, bucket in sizes.items():
        barcodes = bucket.get("barcodes") or []
        if bucket.get("quantity") != len(barcodes):
            problems.append(f"{size}: quantity {bucket.get('quantity')} != {len(barcodes)} barcodes")
        if not barcodes:
            problems.append(f"{size}: empty bucket kept")
    if product.get("total") != bucket_total(sizes):
        problems.append(f"total {product.get('total')} != sum of buckets {bucket_total(sizes)}")
    return problems


def size_of(product: dict, barcode: str) -> Optional[str]:
    for size, bucket in (product.get("sizes") or {}).items():
        if barcode in (bucket.get("barcodes") or []):
            return size
    return None


def take_from_bucket(product: dict, size: str, barcode: str) -> dict:
    updated = copy.deepcopy(product)
    sizes = updated.setdefault("sizes", {})
    bucket = sizes.get(size)
    if not bucket or barcode not in (bucket.get("barcodes") or []):
        raise NotFoundError(NON_EXISTENT)
    bucket["barcodes"].remove(barcode)
    bucket["quantity"] = len(bucket["barcodes"])
    if bucket["quantity"] == 0:
        del sizes[size]
    updated["total"] = bucket_total(sizes)
    return updated


def put_into_bucket(product: dict, size: str, barcode: str) -> dict:
    check_size(size)
    updated = copy.deepcopy(product)
    sizes = updated.setdefault("sizes", {})
    bucket = sizes.setdefault(size, {"quantity": 0, "barcodes": []})
    bucket.setdefault("barcodes", [])
    if barcode in bucket["barcodes"]:
        raise ValidationError(f"Barcode {barcode} is already in stock")
    bucket["barcodes"].append(barcode)
    bucket["quantity"] = len(bucket["barcodes"])
    updated["total"] = bucket_total(sizes)
    return updated


def take_from_exhibition(product: dict, store_id: str, barcode: Optional[str] = None) -> Tuple[dict, dict]:
    """Remove a store's exhibition slot. Returns the updated product and the removed slot."""
    updated = copy.deepcopy(product)
    exhibition = updated.setdefault("exhibition", {})
    slot = exhibition.get(store_id)
    if not slot or (barcode is not None and slot.get("barcode") != barcode):
        raise NotFoundError(NON_EXISTENT)
    del exhibition[store_id]
    return updated, slot


def put_into_exhibition(product: dict, store_id: str, size: str, barcode: str) -> dict:
    updated = copy.deepcopy(product)
    exhibition = updated.setdefault("exhibition", {})
    if store_id in exhibition:
        raise ValidationError("This store already exhibits the product")
    exhibition[store_id] = {"size": size, "barcode": barcode}
    return updated


def holds_barcode(product: dict, barcode: str) -> bool:
    if size_of(product, barcode) is not None:
        return True
    return any(slot.get("barcode") == barcode for slot in (product.get("exhibition") or {}).values())


def return_to_exhibition(product: dict, store_id: str, size: str, barcode: str) -> dict:
    """Refill the store's slot, or the size bucket when the store exhibits another unit by now."""
    if (product.get("exhibition") or {}).get(store_id):
        return put_into_bucket(product, size, barcode)
    return put_into_exhibition(product, store_id, size, barcode)


def consume_box(box: dict) -> dict:
    if not box.get("total2"):
        raise ValidationError("Box has already been sold")
    updated = copy.deepcopy(box)
    updated["total2"] = 0
    return updated


def restore_box(box: dict, total2: int) -> dict:
    if box.get("total2"):
        raise ValidationError("Box is already in stock")
    updated = copy.deepcopy(box)
    updated["total2"] = total2
    return updated


@dataclass
class UnitLocation:
    """Where a barcode was found, with enough context to move it back later."""
    product_id: str
    barcode: str
    origin: Origin
    product: Dict[str, Any] = field(repr=False)

    @property
    def size(self) -> str:
        return getattr(self.origin, "size", "N/A")

    @property
    def is_box(self) -> bool:
        return isinstance(self.origin, BoxOrigin)


class StockLedger:
    def __init__(self, db, max_retries: int = LEDGER_MAX_RETRIES):
        self.db = db
        self.max_retries = max_retries

    def update_product(self, product_id: str, mutate: Callable[[dict], dict], missing: str = "Product not found"):
        return cas_update(self.db, "product", product_id, mutate, missing=missing, retries=self.max_retries)

    def find_unit_by_barcode(self, company_id: str, barcode: str) -> Optional[UnitLocation]:
        """
        Search size buckets, then exhibition slots, then box barcodes.
        Returns None when nothing holds the barcode.
        """
        products = list(self.db["product"].find({"company_id": company_id, "is_box": {"$ne": True}}))
        for product in products:
            size = size_of(product, barcode)
            if size is not None:
                origin = WarehouseOrigin(warehouse_id=product["warehouse_id"], size=size)
                return UnitLocation(str(product["_id"]), barcode, origin, product)
        for product in products:
            for store_id, slot in (product.get("exhibition") or {}).items():
                if slot.get("barcode") == barcode:
                    origin = ExhibitionOrigin(warehouse_id=product["warehouse_id"], store_id=store_id,
                                              size=slot.get("size", "N/A"))
                    return UnitLocation(str(product["_id"]), barcode, origin, product)
        box = self.db["product"].find_one({"company_id": company_id, "is_box": True, "barcode": barcode})
        if box is not None:
            return UnitLocation(str(box["_id"]), barcode, BoxOrigin(warehouse_id=box["warehouse_id"]), box)
        return None

    def take(self, location: UnitLocation) -> Tuple[dict, dict]:
        """Remove the unit from its source. Returns the document before and after."""
        origin = location.origin
        if isinstance(origin, WarehouseOrigin):
            def mutate(doc):
                return take_from_bucket(doc, origin.size, location.barcode)
        elif isinstance(origin, ExhibitionOrigin):
            def mutate(doc):
                return take_from_exhibition(doc, origin.store_id, location.barcode)[0]
        elif isinstance(origin, BoxOrigin):
            def mutate(doc):
                if doc.get("barcode") != location.barcode:
                    raise NotFoundError(NON_EXISTENT)
                return consume_box(doc)
        else:
            raise TypeError(f"Unknown origin {origin!r}")
        before, after = self.update_product(location.product_id, mutate, missing=NON_EXISTENT)
        logger.info("Took %s from %s %s", location.barcode, origin.kind, location.product_id)
        return before, after

    def restore(self, origin: Origin, product_id: str, barcode: str,
                box_total2: Optional[int] = None, box_snapshot: Optional[dict] = None) -> Tuple[dict, Origin]:
        """
        Put a unit back where `origin` says it came from. An exhibition unit
        whose slot was refilled in the meantime goes back to its size bucket.

        Returns the document after the write and the origin the unit landed in.
        """
        if isinstance(origin, BoxOrigin):
            after = self._restore_box(product_id, barcode, box_total2, box_snapshot)
            logger.info("Restored %s to box %s", barcode, product_id)
            return after, origin
        if isinstance(origin, WarehouseOrigin):
            def transition(doc):
                return put_into_bucket(doc, origin.size, barcode)
        elif isinstance(origin, ExhibitionOrigin):
            def transition(doc):
                return return_to_exhibition(doc, origin.store_id, origin.size, barcode)
        else:
            raise TypeError(f"Unknown origin {origin!r}")

        def mutate(doc):
            if holds_barcode(doc, barcode):
                raise ValidationError(f"Barcode {barcode} is already in stock")
            return transition(doc)

        _, after = self.update_product(product_id, mutate)
        landed = origin
        if isinstance(origin, ExhibitionOrigin):
            slot = (after.get("exhibition") or {}).get(origin.store_id) or {}
            if slot.get("barcode") != barcode:
                landed = WarehouseOrigin(warehouse_id=origin.warehouse_id, size=origin.size)
                logger.warning("Exhibition slot of store %s is taken, %s returned to size %s",
                               origin.store_id, barcode, origin.size)
        logger.info("Restored %s to %s %s", barcode, landed.kind, product_id)
        return after, landed

    def _restore_box(self, product_id: str, barcode: str, total2: Optional[int],
                     snapshot: Optional[dict]) -> dict:
        if not total2 and snapshot:
            total2 = snapshot.get("total2")
        if not total2:
            raise ValidationError("Box quantity unknown, cannot return it to stock")
        try:
            _, after = self.update_product(product_id, lambda doc: restore_box(doc, total2))
            return after
        except NotFoundError:
            if not snapshot:
                raise
        # the box document is gone: recreate it from the consume-time snapshot
        recreated = {k: v for k, v in snapshot.items() if k != "_id"}
        recreated.update({"_id": to_object_id(product_id), "barcode": barcode, "total2": total2, "is_box": True})
        self.db["product"].insert_one(recreated)
        logger.warning("Box %s was missing and has been recreated from its snapshot", product_id)
        return recreated

    def move_into(self, location: UnitLocation, stage: Callable[[dict], T]) -> T:
        """
        Take the unit from stock, then run `stage` with the source document as
        it was before the take. If staging fails the take is reversed; if that
        fails too a PartialFailureError is raised.
        """
        before, _ = self.take(location)
        try:
            return stage(before)
        except Exception as exc:
            logger.warning("Staging %s failed (%s), returning it to stock", location.barcode, exc)
            try:
                self.restore(location.origin, location.product_id, location.barcode,
                             box_total2=before.get("total2"), box_snapshot=before)
            except Exception as compensation_exc:
                logger.exception("Could not return %s to stock after failed staging", location.barcode)
                raise PartialFailureError(
                    f"Unit {location.barcode} left stock but was not added to the invoice",
                    cause=exc, compensation_error=compensation_exc,
                ) from compensation_exc
            raise
