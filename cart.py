"""
Cart operations

A cart is the `cart` list embedded in its owner's document, either a customer
or an admin assembling an order on a customer's behalf. Every function takes
the owner collection name and id so both kinds of cart share one code path.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId

from database import utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import AddToCartRequest

logger = logging.getLogger(__name__)


def item_key(item: Dict[str, Any]) -> Tuple:
    """Identity of a cart line: two lines with the same key are the same purchase."""
    attributes = tuple(sorted((str(k), str(v)) for k, v in (item.get("selected_attributes") or {}).items()))
    return (str(item["product_id"]), int(item["size"]), attributes, item.get("notes") or "")


def _load_owner(db, owner_collection: str, owner_id: str) -> Dict[str, Any]:
    owner = db[owner_collection].find_one({"_id": ObjectId(owner_id)}, {"cart": 1})
    if not owner:
        raise NotFoundError(f"{owner_collection.capitalize()} not found.")
    return owner


def _save_cart(db, owner_collection: str, owner_id: str, cart: List[Dict[str, Any]]) -> None:
    db[owner_collection].update_one({"_id": ObjectId(owner_id)}, {"$set": {"cart": cart}})


def get_cart(db, owner_collection: str, owner_id: str) -> Dict[str, Any]:
    cart = _load_owner(db, owner_collection, owner_id).get("cart") or []
    total = sum(i["price"] * i["quantity"] for i in cart)
    return {"cart": cart, "total_price": round(total, 3)}


def get_product(db, product_id: str) -> Dict[str, Any]:
    if not ObjectId.is_valid(product_id):
        raise ValidationError("Invalid product ID.")
    product = db["product"].find_one({"_id": ObjectId(product_id)})
    if not product:
        raise NotFoundError("Product not found.")
    return product


def add_item(db, owner_collection: str, owner_id: str, req: AddToCartRequest) -> List[Dict[str, Any]]:
    product = get_product(db, req.product_id)

    if req.size not in (product.get("available_sizes") or []):
        raise ValidationError("Selected size is not available for this product.")
    allowed = product.get("attributes") or {}
    for name, value in req.selected_attributes.items():
        if name not in allowed or value not in allowed[name]:
            raise ValidationError(f"Invalid value '{value}' for attribute '{name}'.")

    cart = _load_owner(db, owner_collection, owner_id).get("cart") or []
    new_item = {
        "product_id": req.product_id,
        "title": product.get("title"),
        "size": req.size,
        "selected_attributes": dict(req.selected_attributes),
        "price": product["price"],
        "quantity": req.quantity,
        "notes": req.notes,
    }
    key = item_key(new_item)
    # a line whose snapshot no longer matches the live price stays separate
    existing = next(
        (i for i in cart if item_key(i) == key and i["price"] == product["price"] and not i.get("offer_id")), None
    )
    if existing:
        existing["quantity"] += req.quantity
    else:
        new_item["_id"] = str(ObjectId())
        cart.append(new_item)

    _save_cart(db, owner_collection, owner_id, cart)
    return cart


def remove_item(db, owner_collection: str, owner_id: str, item_id: str) -> List[Dict[str, Any]]:
    cart = _load_owner(db, owner_collection, owner_id).get("cart") or []
    remaining = [i for i in cart if i["_id"] != item_id]
    if len(remaining) == len(cart):
        raise NotFoundError("Item not found in the cart.")
    _save_cart(db, owner_collection, owner_id, remaining)
    return remaining


def _live_price(db, item: Dict[str, Any]) -> Optional[float]:
    """What the line would cost if added now: the offer price for offer lines, the catalog price otherwise."""
    if item.get("offer_id"):
        offer = db["offer"].find_one({"_id": ObjectId(item["offer_id"])}) if ObjectId.is_valid(item["offer_id"]) else None
        if not offer or offer["expiration_date"] < utcnow():
            return None
        entry = next((p for p in offer.get("products") or [] if p["product_id"] == item["product_id"]), None)
        return entry["new_price"] if entry else None
    product = db["product"].find_one({"_id": ObjectId(item["product_id"])}, {"price": 1})
    return product["price"] if product else None


def change_quantity(db, owner_collection: str, owner_id: str, item_id: str,
                    quantity_change: int) -> List[Dict[str, Any]]:
    if quantity_change == 0:
        raise ValidationError("Invalid quantity_change value. It must be a non-zero number.")

    cart = _load_owner(db, owner_collection, owner_id).get("cart") or []
    item = next((i for i in cart if i["_id"] == item_id), None)
    if not item:
        raise NotFoundError("Item not found in the cart.")

    if quantity_change > 0:
        if _live_price(db, item) != item["price"]:
            raise ConflictError(
                "Cant increment the quantity, the price of this product has changed, add it to the cart again"
            )

    new_quantity = item["quantity"] + quantity_change
    if new_quantity < 1:
        cart = [i for i in cart if i["_id"] != item_id]
    else:
        item["quantity"] = new_quantity
    _save_cart(db, owner_collection, owner_id, cart)
    return cart


def clear_items(db, owner_collection: str, owner_id: str, ordered: Iterable[Dict[str, Any]]) -> None:
    """Drop the lines that were ordered; anything added since stays in the cart."""
    keys = {(item_key(i), i["price"]) for i in ordered}
    owner = db[owner_collection].find_one({"_id": ObjectId(owner_id)}, {"cart": 1})
    if not owner:
        return
    cart = owner.get("cart") or []
    remaining = [i for i in cart if (item_key(i), i["price"]) not in keys]
    if len(remaining) != len(cart):
        _save_cart(db, owner_collection, owner_id, remaining)
        logger.info("Cleared %d ordered line(s) from %s %s cart", len(cart) - len(remaining),
                    owner_collection, owner_id)


def find_customer(db, customer_id: Optional[str] = None, phone: Optional[str] = None,
                  email: Optional[str] = None) -> Dict[str, Any]:
    """Customer a staff member is acting for, looked up by id, phone or email in that order."""
    if customer_id:
        if not ObjectId.is_valid(customer_id):
            raise ValidationError("Invalid customer ID.")
        query = {"_id": ObjectId(customer_id)}
    elif phone:
        query = {"phone": phone}
    elif email:
        query = {"email": email}
    else:
        raise ValidationError("Customer ID, phone, or email is required.")
    customer = db["customer"].find_one(query)
    if not customer:
        raise NotFoundError("Customer not found.")
    return customer
