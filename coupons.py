"""
Coupon evaluation and administration.

`evaluate` is pure: it looks only at the coupon record, the cart total and
the clock. Redemption (the usage counter) is a separate write made by the
order engine inside its unit of work, or by `increment_usage`.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import Database, Transaction, as_utc, now_utc, pagination, serialize, to_object_id
from errors import DomainConflict, NotFound
from schemas import CouponCreate

log = logging.getLogger(__name__)


def find_by_code(db: Database, code: str, session=None) -> Optional[dict]:
    return db["coupon"].find_one({"code": code.strip().upper(), "status": "active"}, session=session)


def evaluate(coupon: Optional[dict], total_amount: float, now: datetime) -> Tuple[str, float]:
    """Return (coupon id, discount) or raise DomainConflict; the first failing rule wins."""
    if not coupon or coupon.get("status") != "active":
        raise DomainConflict("Invalid coupon code")
    if now < as_utc(coupon["start_date"]):
        raise DomainConflict("Coupon is not active yet")
    if now > as_utc(coupon["end_date"]):
        raise DomainConflict("Coupon has expired")
    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None and coupon.get("usage_count", 0) >= usage_limit:
        raise DomainConflict("Coupon usage limit reached")
    min_purchase = coupon.get("min_purchase")
    if min_purchase is not None and total_amount < min_purchase:
        raise DomainConflict(f"Minimum purchase amount is {min_purchase}")

    if coupon["type"] == "percentage":
        discount = total_amount * coupon["value"] / 100
        max_discount = coupon.get("max_discount")
        if max_discount is not None and discount > max_discount:
            discount = max_discount
    else:
        discount = coupon["value"]
    # never discount more than the order is worth
    discount = min(discount, total_amount)
    return str(coupon["_id"]), round(discount, 2)


def validate_coupon(db: Database, code: str, total_amount: float,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
    coupon_id, discount = evaluate(find_by_code(db, code), total_amount, now or now_utc())
    return {"couponId": coupon_id, "discount": discount}


def redeem(db: Database, txn: Transaction, code: str, total_amount: float,
           now: Optional[datetime] = None) -> Tuple[str, float]:
    """Evaluate and count one use of a coupon as part of `txn`."""
    coupon = find_by_code(db, code, session=txn.session)
    coupon_id, discount = evaluate(coupon, total_amount, now or now_utc())
    query: Dict[str, Any] = {"_id": coupon["_id"], "status": "active"}
    if coupon.get("usage_limit") is not None:
        query["usage_count"] = {"$lt": coupon["usage_limit"]}
    result = db["coupon"].update_one(query, {"$inc": {"usage_count": 1}}, session=txn.session)
    if result.matched_count == 0:
        raise DomainConflict("Coupon usage limit reached")
    txn.on_rollback(lambda: db["coupon"].update_one({"_id": coupon["_id"]}, {"$inc": {"usage_count": -1}}))
    return coupon_id, discount


def increment_usage(db: Database, coupon_id: str) -> None:
    result = db["coupon"].update_one({"_id": to_object_id(coupon_id)}, {"$inc": {"usage_count": 1}})
    if result.matched_count == 0:
        raise NotFound("Coupon not found")


def list_coupons(db: Database, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    query = {"status": status} if status else {}
    total = db["coupon"].count_documents(query)
    cursor = db["coupon"].find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
    return {"coupons": [serialize(c) for c in cursor], "pagination": pagination(total, page, limit)}


def _coupon_fields(payload: CouponCreate) -> Dict[str, Any]:
    doc = payload.model_dump()
    doc["code"] = payload.code.upper()
    return doc


def create_coupon(db: Database, payload: CouponCreate) -> str:
    doc = _coupon_fields(payload)
    if db["coupon"].find_one({"code": doc["code"]}):
        raise DomainConflict("Coupon code already exists")
    doc["usage_count"] = 0
    try:
        coupon_id = db.create_document("coupon", doc)
    except DuplicateKeyError:
        raise DomainConflict("Coupon code already exists")
    log.info("Created coupon %s (%s)", doc["code"], coupon_id)
    return coupon_id


def update_coupon(db: Database, coupon_id: str, payload: CouponCreate) -> None:
    oid = to_object_id(coupon_id)
    doc = _coupon_fields(payload)
    clash = db["coupon"].find_one({"code": doc["code"], "_id": {"$ne": oid}})
    if clash:
        raise DomainConflict("Coupon code already exists")
    doc["updated_at"] = now_utc()
    if db["coupon"].update_one({"_id": oid}, {"$set": doc}).matched_count == 0:
        raise NotFound("Coupon not found")


def delete_coupon(db: Database, coupon_id: str) -> None:
    if db["coupon"].delete_one({"_id": to_object_id(coupon_id)}).deleted_count == 0:
        raise NotFound("Coupon not found")
