import pytest

from storefront.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError


def test_reserve_and_release_move_available_stock(inventory, lavender):
    pid = lavender["product_id"]
    assert inventory.get_available_stock(pid) == 10

    hold = inventory.reserve_stock(pid, 3)
    assert hold["status"] == "active"
    assert inventory.get_available_stock(pid) == 7
    assert inventory.is_in_stock(pid, 7)
    assert not inventory.is_in_stock(pid, 8)

    result = inventory.release_stock(hold["reservation_id"])
    assert result["released"] is True
    assert inventory.get_available_stock(pid) == 10

    # releasing twice changes nothing
    again = inventory.release_stock(hold["reservation_id"])
    assert again["released"] is False
    assert inventory.get_available_stock(pid) == 10


def test_release_unknown_reservation(inventory, lavender):
    with pytest.raises(NotFoundError):
        inventory.release_stock("does-not-exist")


def test_reserve_more_than_available_is_rejected(inventory, lavender):
    pid = lavender["product_id"]
    inventory.reserve_stock(pid, 8)
    with pytest.raises(InsufficientStockError) as exc:
        inventory.reserve_stock(pid, 3)
    assert exc.value.available == 2
    assert exc.value.requested == 3
    assert exc.value.status == 409


def test_multi_line_reservation_is_all_or_nothing(inventory, lavender, eucalyptus):
    with pytest.raises(InsufficientStockError):
        inventory.reserve_items([(lavender["product_id"], 2), (eucalyptus["product_id"], 5)])
    assert inventory.get_available_stock(lavender["product_id"]) == 10
    assert inventory.get_available_stock(eucalyptus["product_id"]) == 4


def test_duplicate_lines_are_checked_together(inventory, eucalyptus):
    pid = eucalyptus["product_id"]
    with pytest.raises(InsufficientStockError):
        inventory.reserve_items([(pid, 3), (pid, 2)])
    assert inventory.get_available_stock(pid) == 4


def test_reserve_requires_positive_quantity(inventory, lavender):
    with pytest.raises(ValidationError):
        inventory.reserve_stock(lavender["product_id"], 0)


def test_reserve_without_inventory_record(inventory, store):
    product = store.create_product({
        "name": "Untracked Soap", "price": 100, "description": "No inventory row yet.",
        "image": "/x.jpg", "category": "soap",
    })
    with pytest.raises(NotFoundError):
        inventory.reserve_stock(product["product_id"], 1)


def test_expired_hold_stops_counting_without_sweep(inventory, lavender, clock, store):
    pid = lavender["product_id"]
    hold = inventory.reserve_stock(pid, 6, expiry_minutes=15)
    assert inventory.get_available_stock(pid) == 4

    clock.advance(minutes=16)
    assert inventory.get_available_stock(pid) == 10
    assert store.get_reservation(hold["reservation_id"])["status"] == "active"

    assert inventory.sweep_expired_reservations() == 1
    assert store.get_reservation(hold["reservation_id"])["status"] == "expired"
    assert inventory.sweep_expired_reservations() == 0


def test_releasing_an_expired_hold_records_expiry(inventory, lavender, clock, store):
    hold = inventory.reserve_stock(lavender["product_id"], 2, expiry_minutes=5)
    clock.advance(minutes=6)
    inventory.release_stock(hold["reservation_id"])
    assert store.get_reservation(hold["reservation_id"])["status"] == "expired"


def test_commit_reference_deducts_once(inventory, lavender, store):
    pid = lavender["product_id"]
    inventory.reserve_items([(pid, 4)], reference="ORD-1")
    touched = inventory.commit_reference("ORD-1")
    assert [r["product_id"] for r in touched] == [pid]

    rec = store.get_inventory(pid, inventory.clock())
    assert rec["quantity"] == 6
    assert rec["reserved"] == 0
    assert rec["available"] == 6

    assert inventory.commit_reference("ORD-1") == []
    assert store.get_inventory(pid, inventory.clock())["quantity"] == 6


def test_commit_after_release_conflicts(inventory, lavender):
    inventory.reserve_items([(lavender["product_id"], 2)], reference="ORD-2")
    assert inventory.release_reference("ORD-2") == 1
    with pytest.raises(ConflictError):
        inventory.commit_reference("ORD-2")
    assert inventory.get_available_stock(lavender["product_id"]) == 10


def test_commit_reacquires_lapsed_hold_when_stock_is_free(inventory, lavender, clock, store):
    pid = lavender["product_id"]
    inventory.reserve_items([(pid, 4)], expiry_minutes=10, reference="ORD-3")
    clock.advance(minutes=11)
    inventory.sweep_expired_reservations()
    inventory.commit_reference("ORD-3")
    assert store.get_inventory(pid, clock())["quantity"] == 6


def test_commit_of_lapsed_hold_fails_when_stock_was_taken(inventory, lavender, clock, store):
    pid = lavender["product_id"]
    inventory.reserve_items([(pid, 8)], expiry_minutes=10, reference="ORD-4")
    clock.advance(minutes=11)
    inventory.reserve_stock(pid, 5)
    with pytest.raises(InsufficientStockError):
        inventory.commit_reference("ORD-4")
    assert store.get_inventory(pid, clock())["quantity"] == 10


def test_deduct_respects_holds_and_never_goes_negative(inventory, eucalyptus, store):
    pid = eucalyptus["product_id"]
    inventory.reserve_stock(pid, 3)
    with pytest.raises(InsufficientStockError):
        inventory.deduct_stock(pid, 2)
    rec = inventory.deduct_stock(pid, 1)
    assert rec["quantity"] == 3
    assert store.get_inventory(pid, inventory.clock())["available"] == 0


def test_deduct_to_zero_raises_out_of_stock_alert(inventory, lavender):
    pid = lavender["product_id"]
    rec = inventory.deduct_stock(pid, 10)
    assert rec["quantity"] == 0
    assert rec["status"] == "out-of-stock"
    assert inventory.get_stock_status(pid)["status"] == "out-of-stock"
    alerts = inventory.get_stock_alerts("out-of-stock")
    assert [a["product_id"] for a in alerts] == [pid]


def test_low_stock_alert_is_deduplicated_within_window(inventory, lavender, clock):
    pid = lavender["product_id"]
    rec = inventory.deduct_stock(pid, 6)
    assert rec["status"] == "low-stock"
    inventory.deduct_stock(pid, 1)
    assert len(inventory.get_stock_alerts("low-stock")) == 1

    clock.advance(minutes=61)
    inventory.deduct_stock(pid, 1)
    assert len(inventory.get_stock_alerts("low-stock")) == 2


def test_add_stock_restocks_and_records_alert(inventory, lavender):
    pid = lavender["product_id"]
    inventory.deduct_stock(pid, 10)
    rec = inventory.add_stock(pid, 12, "Supplier delivery")
    assert rec["quantity"] == 12
    assert rec["status"] == "in-stock"
    restocked = inventory.get_stock_alerts("restocked")
    assert restocked[0]["message"] == "Product restocked: +12 units. Supplier delivery"


def test_acknowledged_alerts_are_hidden(inventory, lavender):
    inventory.deduct_stock(lavender["product_id"], 10)
    alert = inventory.get_stock_alerts()[0]
    inventory.acknowledge_alert(alert["alert_id"])
    assert all(a["alert_id"] != alert["alert_id"] for a in inventory.get_stock_alerts())
    with pytest.raises(NotFoundError):
        inventory.acknowledge_alert(9999)


def test_unknown_alert_type(inventory):
    with pytest.raises(ValidationError):
        inventory.get_stock_alerts("sold-out")


def test_set_inventory_cannot_drop_below_reserved(inventory, lavender):
    pid = lavender["product_id"]
    inventory.reserve_stock(pid, 6)
    with pytest.raises(ConflictError):
        inventory.set_inventory(pid, 5)
    rec = inventory.set_inventory(pid, 30)
    assert rec["quantity"] == 30
    assert rec["restock_level"] == 30
    assert rec["available"] == 24


def test_initialize_twice_conflicts(inventory, lavender):
    with pytest.raises(ConflictError):
        inventory.initialize_inventory(lavender["product_id"], 5)


def test_discontinued_status_sticks(inventory, lavender):
    pid = lavender["product_id"]
    inventory.discontinue(pid)
    rec = inventory.add_stock(pid, 5)
    assert rec["status"] == "discontinued"
    assert inventory.get_stock_status(pid) == {"status": "discontinued", "text": "Discontinued"}


def test_describe_levels():
    base = {"quantity": 20, "low_stock_threshold": 5, "status": "in-stock"}
    from storefront.inventory import InventoryService

    assert InventoryService.describe(None)["status"] == "unknown"
    assert InventoryService.describe(dict(base, available=20))["text"] == "In Stock"
    medium = InventoryService.describe(dict(base, available=7))
    assert (medium["status"], medium["urgency"], medium["text"]) == ("low-stock", "medium", "7 items available")
    high = InventoryService.describe(dict(base, available=3))
    assert (high["urgency"], high["text"]) == ("high", "Only 3 left!")
    assert InventoryService.describe(dict(base, quantity=0, available=0))["status"] == "out-of-stock"


def test_summary_and_low_stock_listing(inventory, lavender, eucalyptus):
    inventory.reserve_stock(lavender["product_id"], 2)
    summary = inventory.get_inventory_summary()
    assert summary == {
        "total_products": 2,
        "total_quantity": 14,
        "total_reserved": 2,
        "low_stock_count": 1,
        "out_of_stock_count": 0,
    }
    low = inventory.get_low_stock_products()
    assert [r["product_id"] for r in low] == [eucalyptus["product_id"]]
    assert inventory.get_total_inventory_count() == 2
    assert len(inventory.get_all_inventory(0, 1)) == 1


def test_bulk_update_reports_each_entry(inventory, lavender):
    pid = lavender["product_id"]
    results = inventory.bulk_update([
        {"product_id": pid, "action": "add", "quantity": 5},
        {"productId": pid, "action": "subtract", "quantity": 3},
        {"product_id": 999, "action": "set", "quantity": 1},
        {"product_id": pid, "action": "explode", "quantity": 1},
        "not-an-object",
    ])
    assert [r["success"] for r in results] == [True, True, False, False, False]
    assert results[1]["inventory"]["quantity"] == 12
    assert results[2]["error"] == "Product 999 not found"
    assert results[4]["product_id"] is None
