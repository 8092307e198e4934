import logging
from typing import Any, Dict, Optional

from database import Database, now_utc, pagination, serialize, to_object_id
from errors import DomainConflict, NotFound, PermissionDenied
from schemas import ReviewCreate, ReviewUpdate
from users import check_owner, user_id_of

log = logging.getLogger(__name__)

REVIEW_SORTS = {
    "newest": [("created_at", -1)],
    "highest": [("rating", -1)],
    "lowest": [("rating", 1)],
}


def refresh_product_rating(db: Database, product_id: str) -> None:
    """Recompute average_rating and review_count from the stored reviews."""
    pipeline = [
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]
    agg = list(db["review"].aggregate(pipeline))
    average, count = (round(agg[0]["avg"], 2), agg[0]["count"]) if agg else (0, 0)
    db["product"].update_one(
        {"_id": to_object_id(product_id)},
        {"$set": {"average_rating": average, "review_count": count}},
    )


def delivered_order_for(db: Database, user_id: str, product_id: str,
                        order_id: Optional[str] = None) -> Optional[dict]:
    query: Dict[str, Any] = {"user_id": user_id, "items.product_id": product_id, "status": "delivered"}
    if order_id:
        query["_id"] = to_object_id(order_id)
    return db["order"].find_one(query)


def has_reviewed(db: Database, user_id: str, product_id: str) -> bool:
    return db["review"].count_documents({"user_id": user_id, "product_id": product_id}) > 0


def create_review(db: Database, user: dict, payload: ReviewCreate) -> str:
    user_id = user_id_of(user)
    order = delivered_order_for(db, user_id, payload.product_id, payload.order_id)
    if not order:
        raise PermissionDenied("You must purchase the product before reviewing")
    if has_reviewed(db, user_id, payload.product_id):
        raise DomainConflict("You have already reviewed this product")
    review_id = db.create_document("review", {
        "user_id": user_id,
        "product_id": payload.product_id,
        "order_id": str(order["_id"]),
        "rating": payload.rating,
        "comment": payload.comment,
        "images": payload.images,
    })
    refresh_product_rating(db, payload.product_id)
    log.info("User %s reviewed product %s", user_id, payload.product_id)
    return review_id


def get_review(db: Database, review_id: str) -> dict:
    review = db["review"].find_one({"_id": to_object_id(review_id)})
    if not review:
        raise NotFound("Review not found")
    return review


def update_review(db: Database, user: dict, review_id: str, payload: ReviewUpdate) -> None:
    review = get_review(db, review_id)
    check_owner(review["user_id"], user)
    update = payload.model_dump(exclude_unset=True, exclude_none=True)
    update["updated_at"] = now_utc()
    db["review"].update_one({"_id": review["_id"]}, {"$set": update})
    refresh_product_rating(db, review["product_id"])


def delete_review(db: Database, user: dict, review_id: str) -> None:
    review = get_review(db, review_id)
    check_owner(review["user_id"], user)
    db["review"].delete_one({"_id": review["_id"]})
    refresh_product_rating(db, review["product_id"])


def _with_users(db: Database, reviews) -> list:
    rows = list(reviews)
    ids = {to_object_id(r["user_id"]) for r in rows}
    names = {str(u["_id"]): u.get("full_name") for u in db["user"].find({"_id": {"$in": list(ids)}})} if ids else {}
    result = []
    for r in rows:
        item = serialize(r)
        item["userName"] = names.get(r["user_id"])
        result.append(item)
    return result


def product_reviews(db: Database, product_id: str, rating: Optional[int] = None, sort: str = "newest",
                    page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query: Dict[str, Any] = {"product_id": product_id}
    if rating:
        query["rating"] = rating
    total = db["review"].count_documents(query)
    cursor = (
        db["review"].find(query)
        .sort(REVIEW_SORTS.get(sort, REVIEW_SORTS["newest"]))
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {"reviews": _with_users(db, cursor), "pagination": pagination(total, page, limit)}


def user_reviews(db: Database, user_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query = {"user_id": user_id}
    total = db["review"].count_documents(query)
    rows = list(db["review"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit))
    ids = [to_object_id(r["product_id"]) for r in rows]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})} if ids else {}
    items = []
    for r in rows:
        item = serialize(r)
        product = products.get(r["product_id"], {})
        item.update({"productName": product.get("name"), "productSlug": product.get("slug"),
                     "productImages": product.get("images", [])})
        items.append(item)
    return {"reviews": items, "pagination": pagination(total, page, limit)}
