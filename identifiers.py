"""
Barcode and invoice number generation.

Unit barcode:  YYMMDD + box number (6 digits) + position in box (01..99)
Box barcode:   YYMMDD + box number (6 digits) + "000000"
Invoice no:    YYMMDD + store letter + sequence (3 digits, 999 wraps to 000)

Box numbers and invoice sequences come from atomic counters in the
"counter" collection. A counter that does not exist yet is seeded from the
highest value already present in the data, so stock created before the
counters existed keeps its numbering.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import utcnow
from errors import ValidationError

logger = logging.getLogger(__name__)

MAX_POSITION = 99
MAX_BOX_NUMBER = 999999
BOX_POSITION = "000000"
UNIT_BARCODE_LENGTH = 14
BOX_BARCODE_LENGTH = 18
INVOICE_SEQUENCE_MODULO = 1000

_UNIT_RE = re.compile(r"^(\d{6})(\d{6})(\d{2})$")
_BOX_RE = re.compile(r"^(\d{6})(\d{6})(000000)$")

Cursor = Tuple[int, int]


@dataclass(frozen=True)
class BarcodeParts:
    date: str
    box: int
    position: int
    is_box: bool


def date_prefix(now: datetime) -> str:
    return now.strftime("%y%m%d")


def format_unit_barcode(now: datetime, box: int, position: int) -> str:
    if not 0 <= box <= MAX_BOX_NUMBER:
        raise ValidationError(f"Box number out of range: {box}")
    if not 1 <= position <= MAX_POSITION:
        raise ValidationError(f"Position out of range: {position}")
    return f"{date_prefix(now)}{box:06d}{position:02d}"


def format_box_barcode(now: datetime, box: int) -> str:
    if not 0 <= box <= MAX_BOX_NUMBER:
        raise ValidationError(f"Box number out of range: {box}")
    return f"{date_prefix(now)}{box:06d}{BOX_POSITION}"


def parse_barcode(code: str) -> BarcodeParts:
    match = _BOX_RE.match(code or "")
    if match:
        return BarcodeParts(date=match.group(1), box=int(match.group(2)), position=0, is_box=True)
    match = _UNIT_RE.match(code or "")
    if match and int(match.group(3)) > 0:
        return BarcodeParts(date=match.group(1), box=int(match.group(2)), position=int(match.group(3)), is_box=False)
    raise ValidationError(f"Malformed barcode: {code}")


def _try_parse(code: str) -> Optional[BarcodeParts]:
    try:
        return parse_barcode(code)
    except ValidationError:
        return None


def product_barcodes(product: dict) -> List[str]:
    """Every barcode a product document still holds: buckets, exhibition slots, box code."""
    codes = []
    for bucket in (product.get("sizes") or {}).values():
        codes.extend(bucket.get("barcodes") or [])
    for slot in (product.get("exhibition") or {}).values():
        if isinstance(slot, dict) and slot.get("barcode"):
            codes.append(slot["barcode"])
    if product.get("barcode"):
        codes.append(product["barcode"])
    return codes


def current_cursor(product: dict) -> Optional[Cursor]:
    """
    Last (box, position) issued for a product.

    Products written by this service carry `barcode_cursor`; older documents
    fall back to the highest barcode they still hold.
    """
    stored = product.get("barcode_cursor")
    if stored:
        return stored["box"], stored["position"]
    best = None
    for code in product_barcodes(product):
        parts = _try_parse(code)
        if parts is None or parts.is_box:
            continue
        key = (parts.box, parts.position)
        if best is None or key > best:
            best = key
    return best


def store_letter(store_ids: Iterable[str], store_id: str) -> str:
    ordered = sorted(store_ids)
    if store_id not in ordered:
        raise ValidationError(f"Store {store_id} does not belong to this company")
    index = ordered.index(store_id)
    if index >= 26:
        raise ValidationError("Store letters only cover 26 stores per company")
    return chr(ord("A") + index)


def format_invoice_no(now: datetime, letter: str, number: int) -> str:
    return f"{date_prefix(now)}{letter}{number % INVOICE_SEQUENCE_MODULO:03d}"


class IdentifierGenerator:
    def __init__(self, db, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ----- Counters -----

    def _next(self, key: str, seed: Callable[[], int]) -> int:
        counters = self.db["counter"]
        if counters.find_one({"_id": key}) is None:
            start = seed()
            try:
                counters.update_one({"_id": key}, {"$setOnInsert": {"value": start}}, upsert=True)
                logger.info("Seeded counter %s at %d", key, start)
            except DuplicateKeyError:
                # another request created it between our read and the upsert
                pass
        doc = counters.find_one_and_update(
            {"_id": key}, {"$inc": {"value": 1}}, return_document=ReturnDocument.AFTER
        )
        return doc["value"]

    def scan_highest_box(self, company_id: str) -> int:
        """Highest box number among the latest product/box of every warehouse."""
        highest = 0
        for warehouse in self.db["warehouse"].find({"company_id": company_id}):
            latest = (
                self.db["product"]
                .find({"warehouse_id": str(warehouse["_id"])})
                .sort("created_at", DESCENDING)
                .limit(1)
            )
            for product in latest:
                for code in product_barcodes(product):
                    parts = _try_parse(code)
                    if parts is not None:
                        highest = max(highest, parts.box)
                cursor = product.get("barcode_cursor")
                if cursor:
                    highest = max(highest, cursor["box"])
        return highest

    def scan_highest_invoice_number(self, store_id: str) -> int:
        latest = (
            self.db["invoice"]
            .find({"store_id": store_id, "invoice_number": {"$ne": None}})
            .sort("invoice_number", DESCENDING)
            .limit(1)
        )
        for invoice in latest:
            return int(invoice["invoice_number"])
        return 0

    def next_box_number(self, company_id: str) -> int:
        number = self._next(f"box:{company_id}", lambda: self.scan_highest_box(company_id))
        if number > MAX_BOX_NUMBER:
            raise ValidationError("Box numbers exhausted for this company")
        return number

    def next_invoice_number(self, store_id: str) -> int:
        return self._next(f"invoice:{store_id}", lambda: self.scan_highest_invoice_number(store_id))

    # ----- Codes -----

    def unit_barcodes(self, company_id: str, count: int,
                      cursor: Optional[Cursor] = None) -> Tuple[List[str], Optional[Cursor]]:
        """
        Issue `count` unit barcodes continuing after `cursor`.

        Positions run 01..99 inside a box; the next unit after 99 (or the
        first unit without a cursor) opens a freshly allocated box number.
        Returns the codes and the new cursor.
        """
        if count < 0:
            raise ValidationError("Quantity must not be negative")
        now = self.clock()
        codes = []
        box, position = cursor if cursor else (None, MAX_POSITION)
        for _ in range(count):
            if box is None or position >= MAX_POSITION:
                box = self.next_box_number(company_id)
                position = 0
            position += 1
            codes.append(format_unit_barcode(now, box, position))
        if box is None:
            return codes, cursor
        return codes, (box, position)

    def box_barcode(self, company_id: str) -> str:
        return format_box_barcode(self.clock(), self.next_box_number(company_id))

    def invoice_no(self, company_id: str, store_id: str, number: int) -> str:
        store_ids = [str(store["_id"]) for store in self.db["store"].find({"company_id": company_id}, {"_id": 1})]
        return format_invoice_no(self.clock(), store_letter(store_ids, store_id), number)
