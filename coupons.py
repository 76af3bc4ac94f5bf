import logging
from typing import Any, Dict

from bson import ObjectId
from pymongo import ReturnDocument

from database import naive_utc, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Coupon, DiscountType

logger = logging.getLogger(__name__)


def coupon_status(coupon: Dict[str, Any], now=None) -> str:
    now = now or utcnow()
    if coupon["expiration_date"] < now:
        return "expired"
    limit = coupon.get("usage_limit")
    if limit is not None and coupon.get("used_count", 0) >= limit:
        return "exhausted"
    return "active"


def load_coupon(db, code: str, now=None) -> Dict[str, Any]:
    """Fetch a coupon that can be applied right now, or raise."""
    coupon = db["coupon"].find_one({"code": code})
    if not coupon:
        raise NotFoundError("Invalid coupon code")
    status = coupon_status(coupon, now)
    if status == "expired":
        raise ValidationError("Expired coupon")
    if status == "exhausted":
        raise ConflictError("Coupon usage limit reached")
    return coupon


def redeem_coupon(db, coupon_id: str) -> bool:
    """
    Count one use of a coupon.

    The increment only matches while used_count is below usage_limit, so two
    concurrent checkouts cannot push a coupon past its limit.
    """
    coupon = db["coupon"].find_one({"_id": ObjectId(coupon_id)}, {"usage_limit": 1})
    if not coupon:
        return False
    query: Dict[str, Any] = {"_id": coupon["_id"]}
    if coupon.get("usage_limit") is not None:
        query["used_count"] = {"$lt": coupon["usage_limit"]}
    updated = db["coupon"].find_one_and_update(
        query, {"$inc": {"used_count": 1}}, return_document=ReturnDocument.AFTER
    )
    return updated is not None


def release_coupon(db, coupon_id: str) -> None:
    db["coupon"].update_one(
        {"_id": ObjectId(coupon_id), "used_count": {"$gt": 0}}, {"$inc": {"used_count": -1}}
    )


def create_coupon(db, payload: Coupon, creator_id: str) -> str:
    if payload.discount_type == DiscountType.percentage and payload.discount > 100:
        raise ValidationError("Percentage discount cannot exceed 100%")
    if naive_utc(payload.expiration_date) < utcnow():
        raise ValidationError("Expiration date must be in the future")
    if db["coupon"].find_one({"code": payload.code}):
        raise ConflictError("Coupon code already exists")
    if payload.valid_for:
        ids = [ObjectId(pid) for pid in payload.valid_for if ObjectId.is_valid(pid)]
        if len(ids) != len(payload.valid_for) or db["product"].count_documents({"_id": {"$in": ids}}) != len(ids):
            raise ValidationError("One or more invalid product IDs")

    doc = payload.model_dump(mode="json")
    doc.update({
        "expiration_date": naive_utc(payload.expiration_date),
        "used_count": 0,
        "creator_id": creator_id,
        "created_at": utcnow(),
    })
    inserted = db["coupon"].insert_one(doc).inserted_id
    logger.info("Coupon %s created by %s", payload.code, creator_id)
    return str(inserted)


def delete_coupon(db, coupon_id: str) -> None:
    if not ObjectId.is_valid(coupon_id):
        raise ValidationError("Invalid coupon ID")
    res = db["coupon"].delete_one({"_id": ObjectId(coupon_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Coupon not found")


def list_coupons(db) -> list:
    items = []
    for c in db["coupon"].find({}).sort("created_at", -1):
        c["id"] = str(c.pop("_id"))
        c["status"] = coupon_status(c)
        items.append(c)
    return items
