import logging
from typing import Any, Dict, List

from bson import ObjectId

import config
from database import utcnow
from errors import EmptyCartError, NotFoundError, ValidationError
from gateway import PaymentGateway
from orders import SOURCE_TEMP_ORDER, place_order
from schemas import PlaceOrderRequest, TempOrder, TempOrderRequest

logger = logging.getLogger(__name__)


def _total(products: List[Dict[str, Any]]) -> float:
    return round(sum(p["price"] * p["quantity"] for p in products), 3)


def create_temp_order(db, admin: Dict[str, Any], req: TempOrderRequest) -> Dict[str, Any]:
    """Snapshot the admin's cart as a pre-order for the customer with the given phone."""
    if not db["customer"].find_one({"phone": req.customer_phone}, {"_id": 1}):
        raise ValidationError("No customer for the phone number!")
    cart = admin.get("cart") or []
    if not cart:
        raise EmptyCartError("Invalid admin or empty cart")

    temp = TempOrder(
        customer_phone=req.customer_phone,
        products=cart,
        admin_notes=req.admin_notes,
        is_urgent=req.is_urgent,
        creator_id=str(admin["_id"]),
    )
    doc = temp.model_dump()
    doc["created_at"] = utcnow()
    temp_id = db["temp_order"].insert_one(doc).inserted_id
    customer_url = f"{config.FRONTEND_URL}/complete-order?tempOrderId={temp_id}"
    db["temp_order"].update_one({"_id": temp_id}, {"$set": {"customer_url": customer_url}})
    db["admin"].update_one({"_id": admin["_id"]}, {"$set": {"cart": []}})
    logger.info("Temp order %s created by admin %s for %s", temp_id, admin["_id"], req.customer_phone)

    doc.update({"customer_url": customer_url, "id": str(temp_id)})
    doc.pop("_id", None)
    return doc


def list_temp_orders(db) -> List[Dict[str, Any]]:
    items = []
    for t in db["temp_order"].find({}).sort("created_at", -1):
        items.append({
            "id": str(t["_id"]),
            "customer_phone": t["customer_phone"],
            "customer_url": t.get("customer_url"),
            "is_urgent": t.get("is_urgent", False),
            "total_price": _total(t["products"]),
            "item_count": len(t["products"]),
            "admin_notes": t.get("admin_notes"),
            "creator_id": t.get("creator_id"),
            "created_at": t.get("created_at"),
        })
    return items


def get_temp_order(db, temp_order_id: str, customer: Dict[str, Any] = None) -> Dict[str, Any]:
    if not ObjectId.is_valid(temp_order_id):
        raise ValidationError("Invalid temporary order ID format")
    temp = db["temp_order"].find_one({"_id": ObjectId(temp_order_id)})
    if not temp:
        raise NotFoundError("Temporary order not found")
    if customer is not None and str(customer.get("phone")) != str(temp["customer_phone"]):
        raise ValidationError("This order is not for this customer!")
    temp["id"] = str(temp.pop("_id"))
    temp["total_price"] = _total(temp["products"])
    temp["item_count"] = len(temp["products"])
    return temp


def place_temp_order(db, gateway: PaymentGateway, customer: Dict[str, Any], temp_order_id: str,
                     req: PlaceOrderRequest) -> Dict[str, Any]:
    """The named customer confirms a staff pre-order; it goes through the normal checkout."""
    temp = get_temp_order(db, temp_order_id, customer)
    result = place_order(
        db, gateway, customer, req,
        items=temp["products"],
        source=SOURCE_TEMP_ORDER,
        is_urgent=temp.get("is_urgent", False),
        admin_notes=temp.get("admin_notes"),
    )
    db["temp_order"].delete_one({"_id": ObjectId(temp_order_id)})
    logger.info("Temp order %s converted into order %s", temp_order_id, result["order_id"])
    return result
