from typing import Any, Dict

from pymongo.errors import DuplicateKeyError

from catalog import get_product
from database import Database, pagination, to_object_id
from errors import DomainConflict, NotFound


def get_wishlist(db: Database, user_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query = {"user_id": user_id}
    total = db["wishlist_item"].count_documents(query)
    rows = list(db["wishlist_item"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit))
    ids = [to_object_id(r["product_id"]) for r in rows]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})} if ids else {}
    items = []
    for r in rows:
        p = products.get(r["product_id"], {})
        items.append({
            "id": str(r["_id"]),
            "productId": r["product_id"],
            "createdAt": r.get("created_at"),
            "productName": p.get("name"),
            "price": p.get("price"),
            "comparePrice": p.get("compare_price"),
            "images": p.get("images", []),
            "stock": p.get("stock"),
            "status": p.get("status"),
        })
    return {"items": items, "pagination": pagination(total, page, limit)}


def in_wishlist(db: Database, user_id: str, product_id: str) -> bool:
    return db["wishlist_item"].count_documents({"user_id": user_id, "product_id": product_id}) > 0


def add(db: Database, user_id: str, product_id: str) -> str:
    get_product(db, product_id)
    if in_wishlist(db, user_id, product_id):
        raise DomainConflict("Product already in wishlist")
    try:
        return db.create_document("wishlist_item", {"user_id": user_id, "product_id": product_id})
    except DuplicateKeyError:
        raise DomainConflict("Product already in wishlist")


def remove(db: Database, user_id: str, product_id: str) -> None:
    if db["wishlist_item"].delete_one({"user_id": user_id, "product_id": product_id}).deleted_count == 0:
        raise NotFound("Item not found in wishlist")


def clear(db: Database, user_id: str) -> None:
    db["wishlist_item"].delete_many({"user_id": user_id})
