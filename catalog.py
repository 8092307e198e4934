"""
Products and categories.

Stock only moves through `adjust_stock` here and through the order engine;
product updates never touch it.
"""
import logging
import random
import re
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from slugify import slugify

from database import Database, now_utc, pagination, serialize, to_object_id
from errors import DomainConflict, NotFound
from schemas import (
    CategoryCreate,
    CategoryUpdate,
    ProductCreate,
    ProductUpdate,
    ProductStatusUpdate,
)
from users import check_owner, user_id_of

log = logging.getLogger(__name__)

PRODUCT_SORTS = {
    "newest": [("created_at", -1)],
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating": [("average_rating", -1)],
    "popularity": [("review_count", -1)],
}


# Products

def _with_names(db: Database, products: List[dict]) -> List[Dict[str, Any]]:
    category_ids = {p.get("category_id") for p in products if p.get("category_id")}
    vendor_ids = {p.get("vendor_id") for p in products if p.get("vendor_id")}
    categories = {
        str(c["_id"]): c["name"]
        for c in db["category"].find({"_id": {"$in": [to_object_id(i) for i in category_ids]}})
    } if category_ids else {}
    vendors = {
        str(u["_id"]): u.get("full_name")
        for u in db["user"].find({"_id": {"$in": [to_object_id(i) for i in vendor_ids]}})
    } if vendor_ids else {}
    items = []
    for p in products:
        item = serialize(p)
        item["categoryName"] = categories.get(p.get("category_id"))
        item["vendorName"] = vendors.get(p.get("vendor_id"))
        items.append(item)
    return items


def search_products(db: Database, keyword: Optional[str] = None, category_id: Optional[str] = None,
                    vendor_id: Optional[str] = None, min_price: Optional[float] = None,
                    max_price: Optional[float] = None, status: Optional[str] = None,
                    sort: str = "newest", page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if keyword:
        pattern = re.escape(keyword)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if category_id:
        query["category_id"] = category_id
    if vendor_id:
        query["vendor_id"] = vendor_id
    price: Dict[str, float] = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        query["price"] = price
    if status:
        query["status"] = status

    total = db["product"].count_documents(query)
    cursor = (
        db["product"].find(query)
        .sort(PRODUCT_SORTS.get(sort, PRODUCT_SORTS["newest"]))
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {"products": _with_names(db, list(cursor)), "pagination": pagination(total, page, limit)}


def get_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id)})
    if not product:
        raise NotFound("Product not found")
    return product


def product_detail(db: Database, product: dict) -> Dict[str, Any]:
    return _with_names(db, [product])[0]


def related_products(db: Database, product: dict, limit: int = 4) -> List[Dict[str, Any]]:
    candidates = list(db["product"].find({
        "category_id": product.get("category_id"),
        "_id": {"$ne": product["_id"]},
        "status": "active",
    }).limit(limit * 5))
    return [serialize(p) for p in random.sample(candidates, min(limit, len(candidates)))]


def get_product_by_slug(db: Database, slug: str) -> Dict[str, Any]:
    product = db["product"].find_one({"slug": slug})
    if not product:
        raise NotFound("Product not found")
    return {"product": product_detail(db, product), "relatedProducts": related_products(db, product)}


def create_product(db: Database, vendor: dict, payload: ProductCreate) -> str:
    slug = slugify(payload.name)
    if db["product"].find_one({"slug": slug}):
        raise DomainConflict("Product with this name already exists")
    get_category(db, payload.category_id)
    doc = payload.model_dump()
    doc.update({
        "slug": slug,
        "vendor_id": user_id_of(vendor),
        "status": "pending",
        "rejection_reason": None,
        "is_promoted": False,
        "average_rating": 0,
        "review_count": 0,
    })
    try:
        product_id = db.create_document("product", doc)
    except DuplicateKeyError:
        raise DomainConflict("Product with this name already exists")
    log.info("Vendor %s created product %s", doc["vendor_id"], product_id)
    return product_id


def update_product(db: Database, user: dict, product_id: str, payload: ProductUpdate) -> None:
    product = get_product(db, product_id)
    check_owner(product.get("vendor_id"), user)

    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in update and update["name"] != product["name"]:
        slug = slugify(update["name"])
        existing = db["product"].find_one({"slug": slug})
        if existing and existing["_id"] != product["_id"]:
            raise DomainConflict("Product with this name already exists")
        update["slug"] = slug
    if "category_id" in update:
        get_category(db, update["category_id"])
    # Edited products go back to admin review
    update.update({"status": "pending", "updated_at": now_utc()})
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})


def delete_product(db: Database, user: dict, product_id: str) -> None:
    product = get_product(db, product_id)
    check_owner(product.get("vendor_id"), user)
    if db["order"].count_documents({"items.product_id": product_id}) > 0:
        raise DomainConflict("Cannot delete product with existing orders")
    db["product"].delete_one({"_id": product["_id"]})
    db["cart_item"].delete_many({"product_id": product_id})
    db["wishlist_item"].delete_many({"product_id": product_id})
    log.info("Deleted product %s", product_id)


def update_product_status(db: Database, product_id: str, payload: ProductStatusUpdate) -> None:
    product = get_product(db, product_id)
    reason = payload.rejection_reason if payload.status == "rejected" else None
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": {"status": payload.status, "rejection_reason": reason, "updated_at": now_utc()}},
    )
    log.info("Product %s status set to %s", product_id, payload.status)


def vendor_products(db: Database, vendor_id: str, status: Optional[str] = None,
                    page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {"vendor_id": vendor_id}
    if status:
        query["status"] = status
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {"products": [serialize(p) for p in cursor], "pagination": pagination(total, page, limit)}


def adjust_stock(db: Database, user: dict, product_id: str, quantity: int) -> int:
    """Apply a signed stock delta; the filter keeps the counter non-negative."""
    product = get_product(db, product_id)
    check_owner(product.get("vendor_id"), user)
    query: Dict[str, Any] = {"_id": product["_id"]}
    if quantity < 0:
        query["stock"] = {"$gte": -quantity}
    updated = db["product"].find_one_and_update(
        query,
        {"$inc": {"stock": quantity}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise DomainConflict("Invalid stock quantity")
    return updated["stock"]


# Categories

def list_categories(db: Database, parent_id: Optional[str] = None, roots_only: bool = False,
                    status: Optional[str] = None, include_inactive: bool = False) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if roots_only:
        query["parent_id"] = None
    elif parent_id:
        query["parent_id"] = parent_id
    if not include_inactive:
        query["status"] = status or "active"
    cursor = db["category"].find(query).sort([("order", 1), ("name", 1)])
    return [serialize(c) for c in cursor]


def category_tree(db: Database, parent_id: Optional[str] = None) -> List[Dict[str, Any]]:
    children = list(db["category"].find({"parent_id": parent_id}).sort([("order", 1), ("name", 1)]))
    result = []
    for c in children:
        item = serialize(c)
        item["childCount"] = db["category"].count_documents({"parent_id": str(c["_id"])})
        result.append(item)
    return result


def get_category(db: Database, category_id: str) -> dict:
    category = db["category"].find_one({"_id": to_object_id(category_id)})
    if not category:
        raise NotFound("Category not found")
    return category


def get_category_by_slug(db: Database, slug: str) -> dict:
    category = db["category"].find_one({"slug": slug})
    if not category:
        raise NotFound("Category not found")
    return category


def create_category(db: Database, payload: CategoryCreate) -> str:
    slug = slugify(payload.name)
    if db["category"].find_one({"slug": slug}):
        raise DomainConflict("Category with this name already exists")
    if payload.parent_id:
        get_category(db, payload.parent_id)
    doc = payload.model_dump()
    doc.update({"slug": slug, "status": "active"})
    try:
        return db.create_document("category", doc)
    except DuplicateKeyError:
        raise DomainConflict("Category with this name already exists")


def update_category(db: Database, category_id: str, payload: CategoryUpdate) -> None:
    category = get_category(db, category_id)
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in update and update["name"] != category["name"]:
        slug = slugify(update["name"])
        existing = db["category"].find_one({"slug": slug})
        if existing and existing["_id"] != category["_id"]:
            raise DomainConflict("Category with this name already exists")
        update["slug"] = slug
    if update.get("parent_id"):
        if update["parent_id"] == category_id:
            raise DomainConflict("A category cannot be its own parent")
        get_category(db, update["parent_id"])
    update["updated_at"] = now_utc()
    db["category"].update_one({"_id": category["_id"]}, {"$set": update})


def delete_category(db: Database, category_id: str) -> None:
    category = get_category(db, category_id)
    if db["category"].count_documents({"parent_id": category_id}) > 0:
        raise DomainConflict("Cannot delete category with subcategories")
    if db["product"].count_documents({"category_id": category_id}) > 0:
        raise DomainConflict("Cannot delete category with products")
    db["category"].delete_one({"_id": category["_id"]})


def set_category_field(db: Database, category_id: str, field: str, value: Any) -> None:
    category = get_category(db, category_id)
    db["category"].update_one({"_id": category["_id"]}, {"$set": {field: value, "updated_at": now_utc()}})
