import pytest

from database import create_document
from errors import NotFoundError, ValidationError
from identifiers import parse_barcode
from ledger import bucket_violations

FIELDS = dict(brand="Adidas", reference="Samba", color="Blanco", base_price=80000, sale_price=150000)


def test_create_product_issues_barcodes(inventory, company_id, warehouse_id, product):
    created = inventory.create_product(company_id, warehouse_id, {"T-38": 2, "T-39": 1, "T-40": 0}, **FIELDS)
    stored = product(created["id"])
    assert set(stored["sizes"]) == {"T-38", "T-39"}
    assert stored["total"] == 3
    assert bucket_violations(stored) == []
    codes = stored["sizes"]["T-38"]["barcodes"] + stored["sizes"]["T-39"]["barcodes"]
    assert codes == ["24031500000101", "24031500000102", "24031500000103"]
    assert stored["barcode_cursor"] == {"box": 1, "position": 3}


def test_create_product_in_unknown_warehouse(inventory, company_id):
    with pytest.raises(NotFoundError):
        inventory.create_product(company_id, "65f3c0c0c0c0c0c0c0c0c0c0", {"T-38": 1}, **FIELDS)


def test_create_product_rejects_bad_sizes(inventory, company_id, warehouse_id):
    with pytest.raises(ValidationError):
        inventory.create_product(company_id, warehouse_id, {"T-38": -1}, **FIELDS)
    with pytest.raises(ValidationError):
        inventory.create_product(company_id, warehouse_id, {"T.38": 1}, **FIELDS)


def test_create_box(inventory, company_id, warehouse_id):
    box = inventory.create_box(company_id, warehouse_id, 12, **FIELDS)
    assert box["is_box"] is True
    assert box["total2"] == 12
    assert parse_barcode(box["barcode"]).is_box
    with pytest.raises(ValidationError):
        inventory.create_box(company_id, warehouse_id, 0, **FIELDS)


def test_boxes_and_units_share_box_numbers(inventory, company_id, warehouse_id):
    first = inventory.create_product(company_id, warehouse_id, {"T-38": 1}, **FIELDS)
    box = inventory.create_box(company_id, warehouse_id, 6, **FIELDS)
    unit_box = parse_barcode(first["sizes"]["T-38"]["barcodes"][0]).box
    assert parse_barcode(box["barcode"]).box == unit_box + 1


def test_add_size_continues_after_cursor(inventory, company_id, warehouse_id):
    created = inventory.create_product(company_id, warehouse_id, {"T-38": 2}, **FIELDS)
    updated = inventory.add_size(company_id, warehouse_id, created["id"], "T-41", 2)
    assert updated["sizes"]["T-41"]["barcodes"] == ["24031500000103", "24031500000104"]
    assert updated["total"] == 4
    with pytest.raises(ValidationError):
        inventory.add_size(company_id, warehouse_id, created["id"], "T-41", 1)


def test_add_barcode_never_reuses_positions_of_sold_units(inventory, company_id, warehouse_id):
    created = inventory.create_product(company_id, warehouse_id, {"T-38": 2}, **FIELDS)
    pid = created["id"]
    last = created["sizes"]["T-38"]["barcodes"][-1]
    inventory.delete_barcode(company_id, warehouse_id, pid, "T-38", last)
    updated = inventory.add_barcode(company_id, warehouse_id, pid, "T-38")
    assert updated["sizes"]["T-38"]["barcodes"][-1] == "24031500000103"
    assert updated["total"] == 2


def test_add_barcode_to_missing_size(inventory, company_id, warehouse_id, product_id):
    with pytest.raises(NotFoundError):
        inventory.add_barcode(company_id, warehouse_id, product_id, "T-44")


def test_delete_barcode(inventory, company_id, warehouse_id, product_id):
    updated = inventory.delete_barcode(company_id, warehouse_id, product_id, "T-40", "X1")
    assert updated["sizes"]["T-40"] == {"quantity": 1, "barcodes": ["X2"]}
    assert updated["total"] == 1
    with pytest.raises(NotFoundError):
        inventory.delete_barcode(company_id, warehouse_id, product_id, "T-40", "X1")


def test_size_operations_reject_boxes(inventory, company_id, warehouse_id):
    box = inventory.create_box(company_id, warehouse_id, 12, **FIELDS)
    with pytest.raises(ValidationError):
        inventory.add_barcode(company_id, warehouse_id, box["id"], "T-38")


def test_exhibition_round_trip(inventory, company_id, warehouse_id, store_id, product_id):
    shown = inventory.assign_exhibition(company_id, warehouse_id, product_id, store_id, "X2")
    assert shown["exhibition"] == {store_id: {"size": "T-40", "barcode": "X2"}}
    assert shown["sizes"]["T-40"]["barcodes"] == ["X1"]
    assert shown["total"] == 1

    back = inventory.return_from_exhibition(company_id, warehouse_id, product_id, store_id)
    assert back["exhibition"] == {}
    assert back["sizes"]["T-40"]["barcodes"] == ["X1", "X2"]
    assert back["total"] == 2


def test_assign_exhibition_checks(db, inventory, company_id, warehouse_id, store_id, product_id):
    with pytest.raises(ValidationError, match="does not match any product size"):
        inventory.assign_exhibition(company_id, warehouse_id, product_id, store_id, "nope")
    inventory.assign_exhibition(company_id, warehouse_id, product_id, store_id, "X1")
    with pytest.raises(ValidationError):
        inventory.assign_exhibition(company_id, warehouse_id, product_id, store_id, "X2")
    foreign = create_document("store", {"company_id": "someone-else", "name": "Ajena"}, db)
    with pytest.raises(NotFoundError):
        inventory.assign_exhibition(company_id, warehouse_id, product_id, foreign, "X2")


def test_return_from_exhibition_without_slot(inventory, company_id, warehouse_id, store_id, product_id):
    with pytest.raises(NotFoundError, match="does not exhibit"):
        inventory.return_from_exhibition(company_id, warehouse_id, product_id, store_id)


def test_lookup(inventory, company_id, warehouse_id, store_id, product_id):
    found = inventory.lookup(company_id, "X1")
    assert found["product_id"] == product_id
    assert found["origin"] == {"kind": "warehouse", "warehouse_id": warehouse_id, "size": "T-40"}
    with pytest.raises(NotFoundError, match="Non-existent product"):
        inventory.lookup(company_id, "missing")


def test_list_products_newest_first(inventory, company_id, warehouse_id):
    first = inventory.create_product(company_id, warehouse_id, {"T-38": 1}, **FIELDS)
    second = inventory.create_box(company_id, warehouse_id, 6, **FIELDS)
    listed = [p["id"] for p in inventory.list_products(company_id, warehouse_id)]
    assert set(listed) == {first["id"], second["id"]}
