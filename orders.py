"""
Order service

One implementation of order placement, payment reconciliation and status
management, shared by the customer, admin and operator routes.

Placing an order is a small saga: a pending order is written first so the
gateway callback has something to match, then the invoice is created at the
gateway, then the order is confirmed with the invoice reference. Any failure
after the order exists deletes it again.
"""
import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

import config
from cart import clear_items
from coupons import load_coupon, redeem_coupon, release_coupon
from database import utcnow
from errors import (
    AppError,
    ConflictError,
    EmptyCartError,
    GatewayError,
    InternalError,
    InvalidAddressError,
    NotFoundError,
    ValidationError,
)
from gateway import FAILED, KEY_INVOICE_ID, KEY_PAYMENT_ID, PAID, PaymentGateway
from pricing import price_cart
from schemas import CouponApplication, DeliveryAddress, Order, OrderStatus, PlaceOrderRequest

logger = logging.getLogger(__name__)

PLACEHOLDER_INVOICE_PREFIX = "temp-"
SOURCE_CART = "cart"
SOURCE_TEMP_ORDER = "temp_order"

TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.processing, OrderStatus.failed, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.completed, OrderStatus.failed, OrderStatus.cancelled},
    OrderStatus.completed: set(),
    OrderStatus.cancelled: set(),
    # a late "paid" confirmation from the gateway still wins
    OrderStatus.failed: {OrderStatus.processing},
}

# pending -> processing is driven by payment, never by staff
STAFF_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.failed, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.completed, OrderStatus.failed, OrderStatus.cancelled},
    OrderStatus.completed: set(),
    OrderStatus.cancelled: set(),
    OrderStatus.failed: set(),
}

STAFF_STATUSES = [s.value for s in OrderStatus if s != OrderStatus.pending]


def can_transition(current: OrderStatus, target: OrderStatus, by_staff: bool = False) -> bool:
    table = STAFF_TRANSITIONS if by_staff else TRANSITIONS
    return target in table[current]


def entry_statuses(target: OrderStatus) -> List[str]:
    """Statuses from which the system may move an order to target, target included so a repeat is a no-op."""
    return [s.value for s in OrderStatus if s == target or target in TRANSITIONS[s]]


# Pricing inputs

def _oid(value: str, message: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValidationError(message)
    return ObjectId(value)


def validate_address(db, address: DeliveryAddress) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    """Load state, governorate and city and check that each contains the next."""
    state = db["state"].find_one({"_id": _oid(address.state, "Invalid location details")})
    governorate = db["governorate"].find_one({"_id": _oid(address.governorate, "Invalid location details")})
    city = db["city"].find_one({"_id": _oid(address.city, "Invalid location details")})
    if not state or not governorate or not city:
        raise NotFoundError("Invalid location details")

    if address.governorate not in (state.get("governorates") or []) \
            or address.city not in (governorate.get("cities") or []):
        raise InvalidAddressError("Location hierarchy mismatch")
    return state, governorate, city


def resolve_lines(db, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Attach the current catalog weight to each line. Prices stay as snapshotted."""
    ids = {ObjectId(i["product_id"]) for i in items}
    weights = {str(p["_id"]): p["weight"] for p in db["product"].find({"_id": {"$in": list(ids)}}, {"weight": 1})}
    lines = []
    for item in items:
        if item["product_id"] not in weights:
            raise NotFoundError(f"Product {item['product_id']} is no longer available")
        lines.append({**item, "weight": weights[item["product_id"]]})
    return lines


def quote(db, items: List[Dict[str, Any]], address: DeliveryAddress,
          coupon_code: Optional[str] = None) -> Dict[str, Any]:
    """Validate and price without writing anything."""
    if not items:
        raise EmptyCartError()
    state, governorate, city = validate_address(db, address)
    lines = resolve_lines(db, items)
    coupon = load_coupon(db, coupon_code) if coupon_code else None
    breakdown = price_cart(lines, state, coupon)
    return {
        "breakdown": breakdown,
        "coupon": coupon,
        "state": state,
        "governorate": governorate,
        "city": city,
    }


def gateway_address(address: DeliveryAddress, state, governorate, city) -> Dict[str, Any]:
    return {
        "Block": address.block or "",
        "Street": address.street or "",
        "HouseBuildingNo": address.building.number or "",
        "Address": f"{city['name']}, {governorate['name']}, {state['name']}",
        "AddressInstructions": address.notes or "",
    }


# Checkout

def place_order(db, gateway: PaymentGateway, customer: Dict[str, Any], req: PlaceOrderRequest,
                items: Optional[List[Dict[str, Any]]] = None, source: str = SOURCE_CART,
                is_urgent: bool = False, admin_notes: Optional[str] = None) -> Dict[str, Any]:
    if items is None:
        items = customer.get("cart") or []
    q = quote(db, items, req.delivery_address, req.coupon_code)
    breakdown, coupon = q["breakdown"], q["coupon"]

    order = Order(
        products=items,
        customer_id=str(customer["_id"]),
        subtotal=breakdown["subtotal"],
        discount=breakdown["discount"],
        delivery_cost=breakdown["delivery_cost"],
        total_weight=breakdown["total_weight"],
        total_amount=breakdown["total_amount"],
        delivery_address=req.delivery_address,
        coupon=CouponApplication(
            code=coupon["code"],
            discount=breakdown["discount"],
            discount_type=coupon["discount_type"],
            coupon_id=str(coupon["_id"]),
        ) if coupon else None,
        is_urgent=is_urgent,
        invoice_id=f"{PLACEHOLDER_INVOICE_PREFIX}{int(time.time() * 1000)}",
        notes=req.notes,
        admin_notes=admin_notes,
    )
    doc = order.model_dump(mode="json")
    now = utcnow()
    doc.update({"source": source, "created_at": now, "updated_at": now})

    order_id = None
    redeemed = False
    try:
        order_id = db["order"].insert_one(doc).inserted_id
        logger.info("Pending order %s created for customer %s (total %s)",
                    order_id, doc["customer_id"], doc["total_amount"])

        invoice = gateway.create_invoice(
            payment_method_id=req.payment_method_id,
            amount=doc["total_amount"],
            currency=config.CURRENCY,
            customer=customer,
            callback_url=f"{config.BACKEND_URL}/payment-success",
            error_url=f"{config.BACKEND_URL}/payment-error",
            reference=str(order_id),
            address=gateway_address(req.delivery_address, q["state"], q["governorate"], q["city"]),
            mobile_country_code=config.MOBILE_COUNTRY_CODE,
        )
        db["order"].update_one(
            {"_id": order_id},
            {"$set": {"invoice_id": invoice.invoice_id, "payment_url": invoice.payment_url, "updated_at": utcnow()}},
        )

        if coupon:
            if not redeem_coupon(db, str(coupon["_id"])):
                raise ConflictError("Coupon usage limit reached")
            redeemed = True
            db["order"].update_one({"_id": order_id}, {"$set": {"coupon.redeemed": True}})
    except Exception as e:
        if order_id is not None:
            db["order"].delete_one({"_id": order_id})
            if redeemed:
                release_coupon(db, str(coupon["_id"]))
            logger.warning("Order %s rolled back: %s", order_id, e)
        if isinstance(e, AppError):
            raise
        logger.exception("Order creation failed")
        raise InternalError("Order creation failed") from e

    logger.info("Order %s awaiting payment on invoice %s", order_id, invoice.invoice_id)
    return {"order_id": str(order_id), "payment_url": invoice.payment_url}


# Payment state changes

def _release_order_coupon(db, order: Dict[str, Any]) -> None:
    coupon = order.get("coupon")
    if not coupon:
        return
    # flip the flag first so the release happens once per order
    flipped = db["order"].find_one_and_update(
        {"_id": order["_id"], "coupon.redeemed": True}, {"$set": {"coupon.redeemed": False}}
    )
    if flipped:
        release_coupon(db, coupon["coupon_id"])


def _redeem_order_coupon(db, order: Dict[str, Any]) -> None:
    coupon = order.get("coupon")
    if not coupon:
        return
    flipped = db["order"].find_one_and_update(
        {"_id": order["_id"], "coupon.redeemed": False}, {"$set": {"coupon.redeemed": True}}
    )
    if flipped and not redeem_coupon(db, coupon["coupon_id"]):
        # already paid for; count it anyway rather than lose the record
        db["coupon"].update_one({"_id": ObjectId(coupon["coupon_id"])}, {"$inc": {"used_count": 1}})
        logger.warning("Coupon %s went over its usage limit on paid order %s", coupon["code"], order["_id"])


def mark_paid(db, invoice_id: str, payment_details: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Record a confirmed payment. Re-applying it to an already paid order changes nothing else."""
    order = db["order"].find_one_and_update(
        {
            "invoice_id": invoice_id,
            "status": {"$in": entry_statuses(OrderStatus.processing)},
        },
        {"$set": {
            "is_paid": True,
            "status": OrderStatus.processing.value,
            "payment_details": payment_details,
            "updated_at": utcnow(),
        }},
        return_document=ReturnDocument.BEFORE,
    )
    if not order:
        logger.warning("No open order matches invoice %s", invoice_id)
        return None

    if not order.get("is_paid"):
        logger.info("Order %s paid (invoice %s)", order["_id"], invoice_id)
        _redeem_order_coupon(db, order)
        if order.get("source", SOURCE_CART) == SOURCE_CART:
            clear_items(db, "customer", order["customer_id"], order["products"])
    return order


def mark_failed(db, invoice_id: str, payment_details: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    order = db["order"].find_one_and_update(
        {
            "invoice_id": invoice_id,
            "is_paid": False,
            "status": {"$in": entry_statuses(OrderStatus.failed)},
        },
        {"$set": {"status": OrderStatus.failed.value, "payment_details": payment_details, "updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )
    if not order:
        logger.warning("No unpaid order matches invoice %s", invoice_id)
        return None
    logger.info("Order %s marked failed (invoice %s)", order["_id"], invoice_id)
    _release_order_coupon(db, order)
    return order


def reconcile_success(db, gateway: PaymentGateway, payment_id: Optional[str]) -> bool:
    """Handle the gateway's success redirect. Never raises."""
    if not payment_id:
        logger.error("Payment success callback without paymentId")
        return False
    try:
        status = gateway.get_payment_status(payment_id, KEY_PAYMENT_ID)
        if status.status == PAID:
            # the customer paid; a missing order is logged in mark_paid, not surfaced
            mark_paid(db, status.invoice_id, status.raw)
            return True
        if status.status == FAILED:
            mark_failed(db, status.invoice_id, {
                "error": status.error,
                "error_code": status.error_code,
                "verification": status.raw,
            })
        else:
            logger.warning("Payment %s reported success but invoice %s is still %s",
                           payment_id, status.invoice_id, status.status)
    except GatewayError as e:
        logger.error("Payment %s verification failed: %s", payment_id, e.message)
    except Exception:
        logger.exception("Reconciling payment %s failed", payment_id)
    return False


def reconcile_error(db, gateway: PaymentGateway, params: Dict[str, Any]) -> bool:
    """Handle the gateway's error redirect. Never raises."""
    invoice_id = params.get("invoiceId") or params.get("InvoiceId")
    payment_id = params.get("paymentId") or params.get("PaymentId")
    if invoice_id:
        key, key_type = invoice_id, KEY_INVOICE_ID
    elif payment_id:
        key, key_type = payment_id, KEY_PAYMENT_ID
    else:
        logger.error("No valid key (invoiceId or paymentId) found for verification")
        return False

    try:
        status = gateway.get_payment_status(key, key_type)
        if status.status == PAID:
            logger.warning("Error callback for invoice %s but the gateway reports it paid", status.invoice_id)
            return mark_paid(db, status.invoice_id, status.raw) is not None

        details = {
            "error": params.get("error") or params.get("Error") or status.error,
            "error_code": params.get("errorCode") or params.get("ErrorCode") or status.error_code,
            "full_error": dict(params),
            "verification": status.raw,
        }
        return mark_failed(db, status.invoice_id, details) is not None
    except GatewayError as e:
        logger.error("Verification of %s %s failed: %s", key_type, key, e.message)
    except Exception:
        logger.exception("Reconciling failed payment %s %s failed", key_type, key)
    return False


def sweep_stale_orders(db, gateway: PaymentGateway, older_than_min: int) -> Dict[str, int]:
    """
    Resolve pending orders left behind by interrupted checkouts.

    Orders that never got a real invoice are deleted, like a failed checkout
    would have done. The rest are settled from the gateway's view of the
    invoice; invoices still unpaid after the cutoff are marked failed.
    """
    cutoff = utcnow() - timedelta(minutes=older_than_min)
    summary = {"deleted": 0, "paid": 0, "failed": 0, "skipped": 0}
    stale = list(db["order"].find({"status": OrderStatus.pending.value, "created_at": {"$lt": cutoff}}))
    for order in stale:
        if order["invoice_id"].startswith(PLACEHOLDER_INVOICE_PREFIX):
            res = db["order"].delete_one({"_id": order["_id"], "status": OrderStatus.pending.value})
            if res.deleted_count:
                coupon = order.get("coupon")
                if coupon and coupon.get("redeemed"):
                    release_coupon(db, coupon["coupon_id"])
                summary["deleted"] += 1
            continue

        try:
            status = gateway.get_payment_status(order["invoice_id"], KEY_INVOICE_ID)
        except GatewayError as e:
            logger.warning("Could not check invoice %s during sweep: %s", order["invoice_id"], e.message)
            summary["skipped"] += 1
            continue

        if status.status == PAID:
            if mark_paid(db, status.invoice_id, status.raw):
                summary["paid"] += 1
        else:
            error = status.error if status.status == FAILED else "Payment not completed in time"
            if mark_failed(db, order["invoice_id"], {
                "error": error, "error_code": status.error_code, "verification": status.raw,
            }):
                summary["failed"] += 1

    if stale:
        logger.info("Pending order sweep: %s", summary)
    return summary



# Staff status updates

def update_status(db, order_id: str, new_status: OrderStatus) -> Dict[str, Any]:
    if new_status == OrderStatus.pending:
        raise ValidationError("Invalid status value", details={"valid_statuses": STAFF_STATUSES})
    order = db["order"].find_one({"_id": _oid(order_id, "Invalid order ID")})
    if not order:
        raise NotFoundError("Order not found")

    current = OrderStatus(order["status"])
    if not can_transition(current, new_status, by_staff=True):
        raise ConflictError(f"Cannot change order status from {current.value} to {new_status.value}")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current.value},
        {"$set": {"status": new_status.value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise ConflictError("Order status changed meanwhile, reload and try again")

    if new_status in (OrderStatus.failed, OrderStatus.cancelled) and not updated.get("is_paid"):
        _release_order_coupon(db, updated)
    logger.info("Order %s moved from %s to %s", order_id, current.value, new_status.value)
    return updated


# Queries

def list_orders(db, filt: Dict[str, Any], page: int = 1, limit: int = 10,
                fields: Optional[List[str]] = None) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = db["order"].count_documents(filt)
    projection = {f: 1 for f in fields} if fields else None
    cursor = db["order"].find(filt, projection).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    items = []
    for o in cursor:
        o["id"] = str(o.pop("_id"))
        items.append(o)
    total_pages = (total + limit - 1) // limit
    return {
        "orders": items,
        "pagination": {
            "total_orders": total,
            "current_page": page,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
        },
    }


def order_filter(status: Optional[str] = None, is_paid: Optional[bool] = None,
                 min_amount: Optional[float] = None, max_amount: Optional[float] = None,
                 customer_id: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if customer_id:
        filt["customer_id"] = customer_id
    if status:
        filt["status"] = status
    if is_paid is not None:
        filt["is_paid"] = is_paid
    amount = {}
    if min_amount is not None:
        amount["$gte"] = min_amount
    if max_amount is not None:
        amount["$lte"] = max_amount
    if amount:
        filt["total_amount"] = amount
    return filt


def _names(db, address: Dict[str, Any]) -> str:
    names = []
    for collection, key in (("city", "city"), ("governorate", "governorate"), ("state", "state")):
        ref = address.get(key)
        doc = db[collection].find_one({"_id": ObjectId(ref)}, {"name": 1}) if ref and ObjectId.is_valid(ref) else None
        names.append(doc["name"] if doc else "")
    return ", ".join(n for n in names if n)


def get_order(db, order_id: str, customer_id: Optional[str] = None, staff: bool = False) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"_id": _oid(order_id, "Invalid order ID")}
    if customer_id:
        filt["customer_id"] = customer_id
    order = db["order"].find_one(filt)
    if not order:
        raise NotFoundError("Order not found")

    address = order["delivery_address"]
    view = {
        "order_id": str(order["_id"]),
        "status": order["status"],
        "is_paid": order["is_paid"],
        "order_date": order.get("created_at"),
        "subtotal": order["subtotal"],
        "discount": order.get("discount", 0),
        "delivery_cost": order["delivery_cost"],
        "final_cost": order["total_amount"],
        "coupon": {k: order["coupon"][k] for k in ("code", "discount", "discount_type")} if order.get("coupon") else None,
        "order_notes": order.get("notes"),
        "delivery_address": {
            "area": _names(db, address),
            "street": address.get("street"),
            "building": address.get("building"),
            "notes": address.get("notes") or "",
        },
        "products": [
            {k: p.get(k) for k in ("product_id", "title", "quantity", "price", "size", "selected_attributes", "notes")}
            for p in order["products"]
        ],
        "tracking_number": order.get("tracking_number"),
        "estimated_delivery": order.get("estimated_delivery"),
    }
    if staff:
        customer = None
        if ObjectId.is_valid(order["customer_id"]):
            customer = db["customer"].find_one({"_id": ObjectId(order["customer_id"])}, {"name": 1, "email": 1, "phone": 1})
        view.update({
            "customer": {k: (customer or {}).get(k) for k in ("name", "email", "phone")},
            "admin_notes": order.get("admin_notes"),
            "is_urgent": order.get("is_urgent", False),
            "invoice_id": order["invoice_id"],
        })
    else:
        view["payment_url"] = order.get("payment_url")
    return view
