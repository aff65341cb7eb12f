from datetime import datetime, timezone

import pytest

from database import create_document
from errors import ValidationError
from identifiers import (
    current_cursor, format_box_barcode, format_invoice_no, format_unit_barcode, parse_barcode, store_letter,
)

DAY = datetime(2024, 3, 15, tzinfo=timezone.utc)


# ---------- Formatting ----------

def test_unit_barcode_layout():
    code = format_unit_barcode(DAY, 42, 7)
    assert code == "24031500004207"
    assert len(code) == 14


def test_box_barcode_layout():
    code = format_box_barcode(DAY, 42)
    assert code == "240315000042000000"
    assert len(code) == 18


@pytest.mark.parametrize("box,position", [(-1, 1), (1000000, 1), (1, 0), (1, 100)])
def test_unit_barcode_rejects_out_of_range(box, position):
    with pytest.raises(ValidationError):
        format_unit_barcode(DAY, box, position)


def test_parse_barcode():
    unit = parse_barcode("24031500004207")
    assert (unit.date, unit.box, unit.position, unit.is_box) == ("240315", 42, 7, False)
    box = parse_barcode("240315000042000000")
    assert (box.box, box.is_box) == (42, True)


@pytest.mark.parametrize("code", ["", "X1", "24031500004200", "2403150000420"])
def test_parse_barcode_rejects_malformed(code):
    with pytest.raises(ValidationError):
        parse_barcode(code)


def test_current_cursor_prefers_stored_cursor():
    product = {"barcode_cursor": {"box": 3, "position": 40},
               "sizes": {"T-38": {"quantity": 1, "barcodes": ["24031500000901"]}}}
    assert current_cursor(product) == (3, 40)


def test_current_cursor_falls_back_to_highest_barcode():
    product = {
        "sizes": {"T-38": {"quantity": 2, "barcodes": ["24031500000505", "X9"]}},
        "exhibition": {"s1": {"size": "T-39", "barcode": "24031500000512"}},
    }
    assert current_cursor(product) == (5, 12)
    assert current_cursor({"sizes": {}}) is None


def test_store_letters_follow_sorted_ids():
    ids = ["b", "a", "c"]
    assert store_letter(ids, "a") == "A"
    assert store_letter(ids, "c") == "C"
    with pytest.raises(ValidationError):
        store_letter(ids, "z")


def test_store_letters_stop_at_z():
    ids = [f"{n:02d}" for n in range(27)]
    assert store_letter(ids, "25") == "Z"
    with pytest.raises(ValidationError):
        store_letter(ids, "26")


def test_invoice_no_wraps_sequence():
    assert format_invoice_no(DAY, "A", 7) == "240315A007"
    assert format_invoice_no(DAY, "B", 999) == "240315B999"
    assert format_invoice_no(DAY, "B", 1000) == "240315B000"


# ---------- Counters ----------

def test_box_numbers_increase(identifiers, company_id, warehouse_id):
    assert identifiers.next_box_number(company_id) == 1
    assert identifiers.next_box_number(company_id) == 2


def test_box_counter_is_seeded_from_existing_stock(db, identifiers, company_id, warehouse_id):
    create_document("product", {
        "company_id": company_id, "warehouse_id": warehouse_id, "is_box": False,
        "sizes": {"T-40": {"quantity": 1, "barcodes": ["23120100031005"]}}, "total": 1,
    }, db)
    assert identifiers.next_box_number(company_id) == 311


def test_box_counters_are_per_company(db, identifiers, company_id, warehouse_id):
    other = create_document("company", {"name": "Otra"}, db)
    identifiers.next_box_number(company_id)
    identifiers.next_box_number(company_id)
    assert identifiers.next_box_number(other) == 1


def test_unit_barcodes_wrap_to_new_box_after_99(identifiers, company_id, warehouse_id):
    codes, cursor = identifiers.unit_barcodes(company_id, 101)
    assert len(set(codes)) == 101
    assert codes[0] == "24031500000101"
    assert codes[98] == "24031500000199"
    assert codes[99] == "24031500000201"
    assert codes[100] == "24031500000202"
    assert cursor == (2, 2)


def test_unit_barcodes_continue_after_cursor(identifiers, company_id, warehouse_id):
    codes, cursor = identifiers.unit_barcodes(company_id, 2, cursor=(7, 98))
    assert codes[0] == "24031500000799"
    assert parse_barcode(codes[1]).position == 1
    assert parse_barcode(codes[1]).box != 7
    assert cursor[1] == 1


def test_zero_unit_barcodes_keeps_cursor(identifiers, company_id):
    assert identifiers.unit_barcodes(company_id, 0, cursor=(4, 10)) == ([], (4, 10))


def test_invoice_numbers_are_per_store(identifiers, store_id, other_store_id):
    assert identifiers.next_invoice_number(store_id) == 1
    assert identifiers.next_invoice_number(store_id) == 2
    assert identifiers.next_invoice_number(other_store_id) == 1


def test_invoice_counter_is_seeded_from_stored_invoices(db, identifiers, company_id, store_id):
    create_document("invoice", {"company_id": company_id, "store_id": store_id, "invoice_number": 998}, db)
    assert identifiers.next_invoice_number(store_id) == 999
    assert identifiers.next_invoice_number(store_id) == 1000


def test_invoice_no_uses_store_letter(identifiers, company_id, store_id, other_store_id):
    first, second = sorted([store_id, other_store_id])
    assert identifiers.invoice_no(company_id, first, 5) == "240315A005"
    assert identifiers.invoice_no(company_id, second, 1000) == "240315B000"
