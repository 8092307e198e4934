"""
Order engine: cart -> order with stock reservation, and the status machine.

Every write that moves stock runs inside `Database.run_transaction()`. A stock
decrement is a conditional update (`stock >= quantity`) so the check and the
write are one statement; two checkouts racing for the last unit cannot both
match. Status changes go through `ORDER_TRANSITIONS`, which is the only
place the cancel compensation (stock restore) is attached.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import carts
import coupons
from database import Database, Transaction, now_utc, pagination, serialize, to_object_id
from errors import DomainConflict, InsufficientStock, NotFound
from schemas import OrderCreate
from users import check_owner

log = logging.getLogger(__name__)

CANCELLABLE = ("pending", "processing")
STOCK_CONFLICT_MESSAGE = "Some items in your cart are no longer available or have insufficient stock"


# Stock bookkeeping

def _reserve(db: Database, txn: Transaction, line: Dict[str, Any]) -> None:
    product_oid = to_object_id(line["product_id"])
    quantity = line["quantity"]
    result = db["product"].update_one(
        {"_id": product_oid, "status": "active", "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}},
        session=txn.session,
    )
    if result.matched_count == 0:
        current = db["product"].find_one({"_id": product_oid}, session=txn.session) or {}
        raise InsufficientStock(STOCK_CONFLICT_MESSAGE, {"invalidItems": [{
            "productId": line["product_id"],
            "quantity": quantity,
            "stock": current.get("stock", 0),
            "name": current.get("name"),
        }]})
    txn.on_rollback(lambda: db["product"].update_one({"_id": product_oid}, {"$inc": {"stock": quantity}}))


def _restore_stock(db: Database, txn: Transaction, order: dict) -> None:
    for item in order["items"]:
        product_oid = to_object_id(item["product_id"])
        quantity = item["quantity"]
        result = db["product"].update_one(
            {"_id": product_oid}, {"$inc": {"stock": quantity}}, session=txn.session
        )
        if result.matched_count == 0:
            log.warning("Order %s references missing product %s", order["_id"], item["product_id"])
            continue
        txn.on_rollback(
            lambda oid=product_oid, qty=quantity: db["product"].update_one({"_id": oid}, {"$inc": {"stock": -qty}})
        )


# (current status, requested status) -> side effect run in the same unit of work
ORDER_TRANSITIONS: Dict[Tuple[str, str], Optional[Callable[[Database, Transaction, dict], None]]] = {
    ("pending", "processing"): None,
    ("pending", "shipped"): None,
    ("pending", "cancelled"): _restore_stock,
    ("processing", "shipped"): None,
    ("processing", "cancelled"): _restore_stock,
    ("shipped", "delivered"): None,
}


# Creation

def create_order(db: Database, user_id: str, payload: OrderCreate, now: Optional[datetime] = None) -> str:
    if db["cart_item"].count_documents({"user_id": user_id}) == 0:
        raise DomainConflict("Cart is empty")
    invalid = carts.validate_stock(db, user_id)
    if invalid:
        raise InsufficientStock(STOCK_CONFLICT_MESSAGE, {"invalidItems": invalid})

    lines = carts.snapshot(db, user_id)
    total_amount = round(sum(line["quantity"] * line["price"] for line in lines), 2)

    def place(txn: Transaction) -> str:
        for line in lines:
            _reserve(db, txn, line)

        coupon_id, discount = None, 0.0
        if payload.coupon_code:
            coupon_id, discount = coupons.redeem(db, txn, payload.coupon_code, total_amount, now)

        return db.create_document("order", {
            "user_id": user_id,
            "items": lines,
            "total_amount": total_amount,
            "coupon_id": coupon_id,
            "discount": discount,
            "payable_amount": round(total_amount - discount, 2),
            "shipping_address": payload.shipping_address,
            "payment_method": payload.payment_method,
            "payment_status": "pending",
            "transaction_id": None,
            "notes": payload.notes,
            "status": "pending",
        }, session=txn.session)

    order_id = db.run_transaction(place)
    carts.remove_ordered(db, user_id, lines)
    log.info("User %s placed order %s for %.2f", user_id, order_id, total_amount)
    return order_id


# Status machine

def transition(db: Database, order: dict, target: str) -> None:
    current = order["status"]
    if (current, target) not in ORDER_TRANSITIONS:
        raise DomainConflict(f"Cannot change order status from {current} to {target}")
    effect = ORDER_TRANSITIONS[(current, target)]

    def apply(txn: Transaction) -> None:
        result = db["order"].update_one(
            {"_id": order["_id"], "status": current},
            {"$set": {"status": target, "updated_at": now_utc()}},
            session=txn.session,
        )
        if result.matched_count == 0:
            raise DomainConflict("Order status was changed by another request, please retry")
        txn.on_rollback(lambda: db["order"].update_one({"_id": order["_id"]}, {"$set": {"status": current}}))
        if effect is not None:
            effect(db, txn, order)

    db.run_transaction(apply)
    log.info("Order %s moved from %s to %s", order["_id"], current, target)


def cancel_order(db: Database, user: dict, order_id: str) -> None:
    order = get_order(db, order_id)
    check_owner(order["user_id"], user)
    if order["status"] not in CANCELLABLE:
        raise DomainConflict("Order cannot be cancelled")
    transition(db, order, "cancelled")


def update_status(db: Database, order_id: str, status: str) -> None:
    transition(db, get_order(db, order_id), status)


def update_payment(db: Database, user: dict, order_id: str, transaction_id: str) -> None:
    order = get_order(db, order_id)
    check_owner(order["user_id"], user)
    if order["status"] == "cancelled":
        raise DomainConflict("Cannot pay for a cancelled order")
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_status": "paid", "transaction_id": transaction_id, "updated_at": now_utc()}},
    )


# Reads

def get_order(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFound("Order not found")
    return order


def _with_products(db: Database, orders: List[dict]) -> List[Dict[str, Any]]:
    ids = {item["product_id"] for o in orders for item in o.get("items", [])}
    products = {
        str(p["_id"]): p for p in db["product"].find({"_id": {"$in": [to_object_id(i) for i in ids]}})
    } if ids else {}
    result = []
    for o in orders:
        data = serialize(o)
        for item in data["items"]:
            product = products.get(item["productId"], {})
            item["productName"] = product.get("name")
            item["images"] = product.get("images", [])
        result.append(data)
    return result


def order_detail(db: Database, order: dict) -> Dict[str, Any]:
    data = _with_products(db, [order])[0]
    user = db["user"].find_one({"_id": to_object_id(order["user_id"])}) or {}
    data.update({"userName": user.get("full_name"), "userEmail": user.get("email"), "userPhone": user.get("phone")})
    return data


def list_orders(db: Database, user_id: str, status: Optional[str] = None,
                page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {"user_id": user_id}
    if status:
        query["status"] = status
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {"orders": _with_products(db, list(cursor)), "pagination": pagination(total, page, limit)}


def order_stats(db: Database, vendor_id: Optional[str] = None) -> Dict[str, Any]:
    """Counts per status and paid revenue; a vendor only sees its own line items."""
    query: Dict[str, Any] = {}
    vendor_products = set()
    if vendor_id:
        vendor_products = {str(p["_id"]) for p in db["product"].find({"vendor_id": vendor_id}, {"_id": 1})}
        query = {"items.product_id": {"$in": list(vendor_products)}}

    counts: Counter = Counter()
    revenue = 0.0
    for o in db["order"].find(query):
        counts[o["status"]] += 1
        if o.get("payment_status") != "paid":
            continue
        if vendor_id:
            revenue += sum(i["quantity"] * i["price"] for i in o["items"] if i["product_id"] in vendor_products)
        else:
            revenue += o.get("payable_amount", o["total_amount"])

    return {
        "totalOrders": sum(counts.values()),
        "pendingOrders": counts["pending"],
        "processingOrders": counts["processing"],
        "shippedOrders": counts["shipped"],
        "deliveredOrders": counts["delivered"],
        "cancelledOrders": counts["cancelled"],
        "totalRevenue": round(revenue, 2),
    }
