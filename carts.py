import logging
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import Database, now_utc, to_object_id
from errors import NotFound
from catalog import get_product

log = logging.getLogger(__name__)


def _lines(db: Database, user_id: str) -> List[Tuple[dict, Optional[dict]]]:
    """Cart items paired with their product (None when the product is gone)."""
    items = list(db["cart_item"].find({"user_id": user_id}).sort([("created_at", 1)]))
    ids = [to_object_id(i["product_id"]) for i in items]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})} if ids else {}
    return [(item, products.get(item["product_id"])) for item in items]


def get_cart_items(db: Database, user_id: str) -> List[Dict[str, Any]]:
    result = []
    for item, product in _lines(db, user_id):
        result.append({
            "productId": item["product_id"],
            "quantity": item["quantity"],
            "productName": product.get("name") if product else None,
            "price": product.get("price") if product else None,
            "images": product.get("images", []) if product else [],
            "stock": product.get("stock") if product else None,
            "status": product.get("status") if product else None,
        })
    return result


def get_cart_total(db: Database, user_id: str) -> float:
    total = sum(item["quantity"] * product["price"] for item, product in _lines(db, user_id) if product)
    return round(total, 2)


def get_cart(db: Database, user_id: str) -> Dict[str, Any]:
    return {"items": get_cart_items(db, user_id), "total": get_cart_total(db, user_id)}


def snapshot(db: Database, user_id: str) -> List[Dict[str, Any]]:
    """Order lines frozen at the current product prices."""
    return [
        {"product_id": item["product_id"], "quantity": item["quantity"], "price": product["price"]}
        for item, product in _lines(db, user_id)
        if product
    ]


def validate_stock(db: Database, user_id: str) -> List[Dict[str, Any]]:
    invalid = []
    for item, product in _lines(db, user_id):
        if product is None or item["quantity"] > product.get("stock", 0) or product.get("status") != "active":
            invalid.append({
                "productId": item["product_id"],
                "quantity": item["quantity"],
                "stock": product.get("stock", 0) if product else 0,
                "name": product.get("name") if product else None,
            })
    return invalid


def add_item(db: Database, user_id: str, product_id: str, quantity: int) -> None:
    get_product(db, product_id)
    now = now_utc()
    try:
        db["cart_item"].update_one(
            {"user_id": user_id, "product_id": product_id},
            {"$inc": {"quantity": quantity}, "$set": {"updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
    except DuplicateKeyError:
        # lost an upsert race with a concurrent add; the row exists now
        db["cart_item"].update_one({"user_id": user_id, "product_id": product_id}, {"$inc": {"quantity": quantity}})


def update_quantity(db: Database, user_id: str, product_id: str, quantity: int) -> None:
    result = db["cart_item"].update_one(
        {"user_id": user_id, "product_id": product_id},
        {"$set": {"quantity": quantity, "updated_at": now_utc()}},
    )
    if result.matched_count == 0:
        raise NotFound("Item not found in cart")


def remove_item(db: Database, user_id: str, product_id: str) -> None:
    result = db["cart_item"].delete_one({"user_id": user_id, "product_id": product_id})
    if result.deleted_count == 0:
        raise NotFound("Item not found in cart")


def clear_cart(db: Database, user_id: str) -> int:
    return db["cart_item"].delete_many({"user_id": user_id}).deleted_count


def remove_ordered(db: Database, user_id: str, lines: List[Dict[str, Any]]) -> None:
    """Drop the snapshotted lines; quantity added to a line since the snapshot stays in the cart."""
    for line in lines:
        match = {"user_id": user_id, "product_id": line["product_id"]}
        if db["cart_item"].delete_one({**match, "quantity": {"$lte": line["quantity"]}}).deleted_count:
            continue
        db["cart_item"].update_one(match, {"$inc": {"quantity": -line["quantity"]}, "$set": {"updated_at": now_utc()}})
