from datetime import datetime, timedelta, timezone

import pytest

import carts
import orders
from database import to_object_id
from errors import DomainConflict, InsufficientStock
from schemas import OrderCreate

CHECKOUT = {"shippingAddress": "12 Market Street, Springfield", "paymentMethod": "paypal"}


def checkout_payload(**overrides):
    return OrderCreate(shipping_address="12 Market Street", payment_method="paypal", **overrides)


@pytest.fixture
def two_products(make_product):
    return make_product("Phone Case", 10.0, 5), make_product("Screen Wipe", 2.5, 2)


def test_place_order_reserves_stock_and_snapshots_prices(client, db, shopper, two_products, stock_of):
    user, headers = shopper
    case_id, wipe_id = two_products
    client.post("/api/cart", json={"productId": case_id, "quantity": 2}, headers=headers)
    client.post("/api/cart", json={"productId": wipe_id, "quantity": 2}, headers=headers)

    r = client.post("/api/orders", json=CHECKOUT, headers=headers)
    assert r.status_code == 201
    order_id = r.json()["orderId"]

    assert stock_of(case_id) == 3
    assert stock_of(wipe_id) == 0
    assert db["cart_item"].count_documents({"user_id": str(user["_id"])}) == 0

    detail = client.get(f"/api/orders/{order_id}", headers=headers).json()
    assert detail["totalAmount"] == 25.0
    assert detail["payableAmount"] == 25.0
    assert detail["status"] == "pending"
    assert detail["paymentStatus"] == "pending"
    assert {(i["productId"], i["quantity"], i["price"]) for i in detail["items"]} == {
        (case_id, 2, 10.0),
        (wipe_id, 2, 2.5),
    }


def test_order_prices_do_not_follow_later_product_edits(client, db, shopper, two_products):
    user, headers = shopper
    case_id, _ = two_products
    client.post("/api/cart", json={"productId": case_id, "quantity": 1}, headers=headers)
    order_id = client.post("/api/orders", json=CHECKOUT, headers=headers).json()["orderId"]

    db["product"].update_one({"_id": to_object_id(case_id)}, {"$set": {"price": 99.0}})

    detail = client.get(f"/api/orders/{order_id}", headers=headers).json()
    assert detail["items"][0]["price"] == 10.0
    assert detail["totalAmount"] == 10.0


def test_empty_cart_is_rejected(client, shopper):
    _, headers = shopper
    r = client.post("/api/orders", json=CHECKOUT, headers=headers)
    assert r.status_code == 400
    assert r.json()["message"] == "Cart is empty"


def test_insufficient_stock_lists_offending_items_and_changes_nothing(client, db, shopper, two_products, stock_of):
    user, headers = shopper
    case_id, wipe_id = two_products
    client.post("/api/cart", json={"productId": case_id, "quantity": 1}, headers=headers)
    client.post("/api/cart", json={"productId": wipe_id, "quantity": 3}, headers=headers)

    r = client.post("/api/orders", json=CHECKOUT, headers=headers)
    assert r.status_code == 400
    body = r.json()
    assert body["invalidItems"] == [{"productId": wipe_id, "quantity": 3, "stock": 2, "name": "Screen Wipe"}]

    assert stock_of(case_id) == 5
    assert stock_of(wipe_id) == 2
    assert db["cart_item"].count_documents({"user_id": str(user["_id"])}) == 2
    assert db["order"].count_documents({}) == 0


def test_inactive_product_blocks_checkout(client, make_product, shopper):
    _, headers = shopper
    product_id = make_product("Old Charger", 5.0, 10, status="inactive")
    client.post("/api/cart", json={"productId": product_id, "quantity": 1}, headers=headers)
    r = client.post("/api/orders", json=CHECKOUT, headers=headers)
    assert r.status_code == 400
    assert r.json()["invalidItems"][0]["productId"] == product_id


def test_last_unit_goes_to_exactly_one_buyer(db, make_user, make_product, monkeypatch, stock_of):
    product_id = make_product("Limited Print", 40.0, 1)
    first, _ = make_user("first@multimart.io")
    second, _ = make_user("second@multimart.io")
    for buyer in (first, second):
        carts.add_item(db, str(buyer["_id"]), product_id, 1)

    # both buyers already passed the pre-check before either reserved
    assert carts.validate_stock(db, str(first["_id"])) == []
    assert carts.validate_stock(db, str(second["_id"])) == []
    monkeypatch.setattr(carts, "validate_stock", lambda db, user_id: [])

    orders.create_order(db, str(first["_id"]), checkout_payload())
    with pytest.raises(InsufficientStock) as exc:
        orders.create_order(db, str(second["_id"]), checkout_payload())

    assert exc.value.extra["invalidItems"][0]["stock"] == 0
    assert stock_of(product_id) == 0
    assert db["order"].count_documents({}) == 1
    assert db["cart_item"].count_documents({"user_id": str(second["_id"])}) == 1


def test_failed_reservation_rolls_back_earlier_lines(db, shopper, two_products, monkeypatch, stock_of):
    user, _ = shopper
    user_id = str(user["_id"])
    case_id, wipe_id = two_products
    carts.add_item(db, user_id, case_id, 2)
    carts.add_item(db, user_id, wipe_id, 2)
    db["cart_item"].update_one(
        {"product_id": wipe_id}, {"$set": {"created_at": datetime.now(timezone.utc) + timedelta(seconds=1)}}
    )
    # another checkout takes the wipes after this cart was validated
    db["product"].update_one({"_id": to_object_id(wipe_id)}, {"$set": {"stock": 1}})
    monkeypatch.setattr(carts, "validate_stock", lambda db, user_id: [])

    with pytest.raises(InsufficientStock):
        orders.create_order(db, user_id, checkout_payload())

    assert stock_of(case_id) == 5
    assert stock_of(wipe_id) == 1
    assert db["order"].count_documents({}) == 0
    assert db["cart_item"].count_documents({"user_id": user_id}) == 2


def test_bad_coupon_rolls_back_reservation(db, shopper, two_products, stock_of):
    user, _ = shopper
    user_id = str(user["_id"])
    case_id, _ = two_products
    carts.add_item(db, user_id, case_id, 2)

    with pytest.raises(DomainConflict, match="Invalid coupon code"):
        orders.create_order(db, user_id, checkout_payload(coupon_code="NOPE"))

    assert stock_of(case_id) == 5
    assert db["order"].count_documents({}) == 0


def test_coupon_discount_is_recorded_and_counted(db, shopper, two_products):
    user, _ = shopper
    user_id = str(user["_id"])
    case_id, _ = two_products
    now = datetime.now(timezone.utc)
    db.create_document("coupon", {
        "code": "SAVE5", "type": "fixed", "value": 5.0, "min_purchase": None, "max_discount": None,
        "start_date": now - timedelta(days=1), "end_date": now + timedelta(days=1),
        "usage_limit": 10, "usage_count": 0, "status": "active",
    })
    carts.add_item(db, user_id, case_id, 2)

    order_id = orders.create_order(db, user_id, checkout_payload(coupon_code="save5"))

    order = orders.get_order(db, order_id)
    assert order["total_amount"] == 20.0
    assert order["discount"] == 5.0
    assert order["payable_amount"] == 15.0
    assert db["coupon"].find_one({"code": "SAVE5"})["usage_count"] == 1


def place_order(client, headers, product_id, quantity=1):
    client.post("/api/cart", json={"productId": product_id, "quantity": quantity}, headers=headers)
    r = client.post("/api/orders", json=CHECKOUT, headers=headers)
    assert r.status_code == 201
    return r.json()["orderId"]


def test_owner_cancel_restores_stock(client, shopper, two_products, stock_of):
    _, headers = shopper
    case_id, _ = two_products
    order_id = place_order(client, headers, case_id, 3)
    assert stock_of(case_id) == 2

    r = client.post(f"/api/orders/{order_id}/cancel", headers=headers)
    assert r.status_code == 200
    assert stock_of(case_id) == 5
    assert client.get(f"/api/orders/{order_id}", headers=headers).json()["status"] == "cancelled"

    again = client.post(f"/api/orders/{order_id}/cancel", headers=headers)
    assert again.status_code == 400
    assert again.json()["message"] == "Order cannot be cancelled"
    assert stock_of(case_id) == 5


def test_delivered_order_cannot_be_cancelled(client, shopper, admin, two_products, stock_of):
    _, headers = shopper
    _, admin_headers = admin
    case_id, _ = two_products
    order_id = place_order(client, headers, case_id, 1)
    for status in ("processing", "shipped", "delivered"):
        r = client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=admin_headers)
        assert r.status_code == 200

    assert client.post(f"/api/orders/{order_id}/cancel", headers=headers).status_code == 400
    r = client.put(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=admin_headers)
    assert r.status_code == 400
    assert r.json()["message"] == "Cannot change order status from delivered to cancelled"
    assert stock_of(case_id) == 4


def test_admin_cancel_through_status_route_restores_stock(client, shopper, admin, two_products, stock_of):
    _, headers = shopper
    _, admin_headers = admin
    case_id, _ = two_products
    order_id = place_order(client, headers, case_id, 2)
    client.put(f"/api/orders/{order_id}/status", json={"status": "processing"}, headers=admin_headers)

    r = client.put(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=admin_headers)
    assert r.status_code == 200
    assert stock_of(case_id) == 5


@pytest.mark.parametrize("current,target,allowed", [
    ("pending", "processing", True),
    ("pending", "shipped", True),
    ("pending", "delivered", False),
    ("processing", "pending", False),
    ("shipped", "delivered", True),
    ("shipped", "cancelled", False),
    ("delivered", "shipped", False),
    ("cancelled", "processing", False),
])
def test_transition_table(db, current, target, allowed):
    order_id = db.create_document("order", {"user_id": "u1", "items": [], "total_amount": 0, "status": current})
    order = orders.get_order(db, order_id)
    if allowed:
        orders.transition(db, order, target)
        assert orders.get_order(db, order_id)["status"] == target
    else:
        with pytest.raises(DomainConflict):
            orders.transition(db, order, target)
        assert orders.get_order(db, order_id)["status"] == current


def test_stale_status_change_is_rejected(db):
    order_id = db.create_document("order", {"user_id": "u1", "items": [], "total_amount": 0, "status": "pending"})
    stale = orders.get_order(db, order_id)
    orders.transition(db, orders.get_order(db, order_id), "processing")

    with pytest.raises(DomainConflict, match="changed by another request"):
        orders.transition(db, stale, "cancelled")
    assert orders.get_order(db, order_id)["status"] == "processing"


def test_other_users_cannot_see_or_cancel_an_order(client, make_user, shopper, two_products):
    _, headers = shopper
    _, other_headers = make_user("mallory@multimart.io")
    case_id, _ = two_products
    order_id = place_order(client, headers, case_id)

    assert client.get(f"/api/orders/{order_id}", headers=other_headers).status_code == 403
    assert client.post(f"/api/orders/{order_id}/cancel", headers=other_headers).status_code == 403


def test_only_admins_change_status(client, shopper, two_products):
    _, headers = shopper
    case_id, _ = two_products
    order_id = place_order(client, headers, case_id)
    r = client.put(f"/api/orders/{order_id}/status", json={"status": "processing"}, headers=headers)
    assert r.status_code == 403


def test_payment_and_stats(client, db, shopper, admin, two_products):
    _, headers = shopper
    _, admin_headers = admin
    case_id, wipe_id = two_products
    paid = place_order(client, headers, case_id, 2)
    place_order(client, headers, wipe_id, 1)

    r = client.put(f"/api/orders/{paid}/payment", json={"transactionId": "PAY-123"}, headers=headers)
    assert r.status_code == 200
    order = orders.get_order(db, paid)
    assert order["payment_status"] == "paid"
    assert order["transaction_id"] == "PAY-123"

    stats = client.get("/api/orders/stats", headers=admin_headers).json()
    assert stats["totalOrders"] == 2
    assert stats["pendingOrders"] == 2
    assert stats["totalRevenue"] == 20.0


def test_vendor_stats_count_only_their_own_lines(client, db, shopper, vendor, make_user, two_products, category_id):
    _, headers = shopper
    gadget_store, gadget_headers = vendor
    case_id, _ = two_products
    book_shop, book_headers = make_user("books@multimart.io", role="vendor", full_name="Book Nook")
    _, idle_headers = make_user("idle@multimart.io", role="vendor", full_name="Idle Goods")
    novel_id = db.create_document("product", {
        "name": "Paper Novel", "slug": "paper-novel", "price": 8.0, "category_id": category_id,
        "vendor_id": str(book_shop["_id"]), "stock": 10, "images": [], "status": "active",
    })

    client.post("/api/cart", json={"productId": case_id, "quantity": 2}, headers=headers)
    client.post("/api/cart", json={"productId": novel_id, "quantity": 3}, headers=headers)
    order_id = client.post("/api/orders", json=CHECKOUT, headers=headers).json()["orderId"]
    client.put(f"/api/orders/{order_id}/payment", json={"transactionId": "PAY-9"}, headers=headers)

    gadget = client.get("/api/orders/stats", headers=gadget_headers).json()
    assert (gadget["totalOrders"], gadget["totalRevenue"]) == (1, 20.0)
    books = client.get("/api/orders/stats", headers=book_headers).json()
    assert (books["totalOrders"], books["totalRevenue"]) == (1, 24.0)
    idle = client.get("/api/orders/stats", headers=idle_headers).json()
    assert (idle["totalOrders"], idle["totalRevenue"]) == (0, 0.0)
    assert orders.order_stats(db)["totalRevenue"] == 44.0
    assert orders.order_stats(db, str(gadget_store["_id"]))["pendingOrders"] == 1


def test_checkout_keeps_cart_lines_added_after_the_snapshot(db, shopper, two_products, monkeypatch):
    user, _ = shopper
    user_id = str(user["_id"])
    case_id, wipe_id = two_products
    carts.add_item(db, user_id, case_id, 1)
    real_snapshot = carts.snapshot

    def snapshot_then_keep_shopping(database, uid):
        lines = real_snapshot(database, uid)
        carts.add_item(database, uid, wipe_id, 1)
        carts.add_item(database, uid, case_id, 2)
        return lines

    monkeypatch.setattr(carts, "snapshot", snapshot_then_keep_shopping)
    order_id = orders.create_order(db, user_id, checkout_payload())

    assert [i["quantity"] for i in orders.get_order(db, order_id)["items"]] == [1]
    left = {i["product_id"]: i["quantity"] for i in db["cart_item"].find({"user_id": user_id})}
    assert left == {wipe_id: 1, case_id: 2}


def test_list_orders_paginates(client, shopper, two_products):
    _, headers = shopper
    case_id, wipe_id = two_products
    place_order(client, headers, case_id)
    place_order(client, headers, wipe_id)

    body = client.get("/api/orders", params={"limit": 1}, headers=headers).json()
    assert body["pagination"] == {"total": 2, "page": 1, "limit": 1, "totalPages": 2}
    assert len(body["orders"]) == 1
    assert body["orders"][0]["items"][0]["productName"] in {"Phone Case", "Screen Wipe"}
