"""
Bundle offers

An offer lists products at a reduced price and how many distinct products a
customer has to pick to get them. Picked lines go into the cart with the offer
price as their snapshot, so checkout prices them like any other line.
"""
import logging
from typing import Any, Dict, List

from bson import ObjectId
from pymongo import ReturnDocument

from cart import _load_owner, _save_cart, item_key
from database import naive_utc, utcnow
from errors import NotFoundError, ValidationError
from schemas import AddOfferToCartRequest, Offer, OfferProduct, OfferProductsRequest, OfferUpdateRequest

logger = logging.getLogger(__name__)


def _offer_oid(offer_id: str) -> ObjectId:
    if not ObjectId.is_valid(offer_id):
        raise ValidationError("Invalid offer ID format")
    return ObjectId(offer_id)


def _check_products(db, products: List[OfferProduct]) -> None:
    ids = [p.product_id for p in products]
    valid = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
    found = {str(p["_id"]) for p in db["product"].find({"_id": {"$in": valid}}, {"_id": 1})}
    invalid = [i for i in ids if i not in found]
    if invalid:
        raise ValidationError("Invalid products", details={"invalid_products": invalid})


def _format(products: List[OfferProduct]) -> List[Dict[str, Any]]:
    return [
        {"product_id": p.product_id, "new_price": round(p.new_price, 2), "notes": p.notes.strip()}
        for p in products
    ]


def _load(db, offer_id: str) -> Dict[str, Any]:
    offer = db["offer"].find_one({"_id": _offer_oid(offer_id)})
    if not offer:
        raise NotFoundError("Offer not found")
    return offer


def create_offer(db, payload: Offer) -> str:
    _check_products(db, payload.products)
    now = utcnow()
    doc = {
        "description": payload.description,
        "products": _format(payload.products),
        "expiration_date": naive_utc(payload.expiration_date),
        "number_of_products_to_buy": payload.number_of_products_to_buy,
        "created_at": now,
        "updated_at": now,
    }
    inserted = db["offer"].insert_one(doc).inserted_id
    logger.info("Offer %s created with %d product(s)", inserted, len(doc["products"]))
    return str(inserted)


def update_offer(db, offer_id: str, payload: OfferUpdateRequest) -> Dict[str, Any]:
    update = payload.model_dump(exclude_none=True)
    if "expiration_date" in update:
        update["expiration_date"] = naive_utc(update["expiration_date"])
    update["updated_at"] = utcnow()
    offer = db["offer"].find_one_and_update(
        {"_id": _offer_oid(offer_id)}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    if not offer:
        raise NotFoundError("Offer not found")
    return offer


def delete_offer(db, offer_id: str) -> None:
    res = db["offer"].delete_one({"_id": _offer_oid(offer_id)})
    if res.deleted_count == 0:
        raise NotFoundError("Offer not found")


def manage_products(db, offer_id: str, req: OfferProductsRequest) -> Dict[str, Any]:
    """Add (or reprice) products on an offer, or take them off it."""
    offer = _load(db, offer_id)
    products = offer.get("products") or []
    if req.action == "add":
        _check_products(db, req.products)
        for entry in _format(req.products):
            index = next((n for n, p in enumerate(products) if p["product_id"] == entry["product_id"]), None)
            if index is None:
                products.append(entry)
            else:
                products[index] = entry
    else:
        drop = set(req.product_ids)
        products = [p for p in products if p["product_id"] not in drop]

    return db["offer"].find_one_and_update(
        {"_id": offer["_id"]},
        {"$set": {"products": products, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def list_offers(db, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = db["offer"].count_documents({})
    cursor = db["offer"].find({}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    offers = []
    for o in cursor:
        o["id"] = str(o.pop("_id"))
        offers.append(o)
    pages = (total + limit - 1) // limit
    return {
        "offers": offers,
        "pagination": {"total": total, "pages": pages, "page": page, "has_next_page": page < pages},
    }


def get_offer(db, offer_id: str) -> Dict[str, Any]:
    offer = _load(db, offer_id)
    ids = [ObjectId(p["product_id"]) for p in offer["products"] if ObjectId.is_valid(p["product_id"])]
    catalog = {
        str(p["_id"]): p
        for p in db["product"].find({"_id": {"$in": ids}}, {"title": 1, "price": 1, "available_sizes": 1, "images": 1})
    }
    for p in offer["products"]:
        product = catalog.get(p["product_id"])
        if product:
            product["id"] = str(product.pop("_id"))
        p["product"] = product
    offer["id"] = str(offer.pop("_id"))
    return offer


def add_offer_to_cart(db, owner_collection: str, owner_id: str, req: AddOfferToCartRequest,
                      now=None) -> Dict[str, Any]:
    offer = _load(db, req.offer_id)
    if offer["expiration_date"] < (now or utcnow()):
        raise ValidationError("This offer has expired")
    if len(req.products) != offer["number_of_products_to_buy"]:
        raise ValidationError(f"This offer requires exactly {offer['number_of_products_to_buy']} products")

    entries = {p["product_id"]: p for p in offer["products"]}
    seen = set()
    picked = []
    for item in req.products:
        entry = entries.get(item.product_id)
        if entry is None:
            raise ValidationError(f"Product {item.product_id} not found in offer")
        if item.product_id in seen:
            raise ValidationError("Duplicate products in request")
        seen.add(item.product_id)
        product = db["product"].find_one({"_id": ObjectId(item.product_id)})
        if not product:
            raise ValidationError(f"Product {item.product_id} not found in offer")
        if item.size not in (product.get("available_sizes") or []):
            raise ValidationError(f"Invalid size {item.size} for product {product.get('title')}")
        picked.append((item, entry, product))

    cart = _load_owner(db, owner_collection, owner_id).get("cart") or []
    saved = 0.0
    for item, entry, product in picked:
        line = {
            "product_id": item.product_id,
            "title": product.get("title"),
            "size": item.size,
            "selected_attributes": {},
            "price": entry["new_price"],
            "quantity": item.quantity,
            "notes": item.notes,
            "offer_id": str(offer["_id"]),
        }
        key = item_key(line)
        existing = next(
            (i for i in cart if item_key(i) == key and i["price"] == line["price"] and i.get("offer_id") == line["offer_id"]),
            None,
        )
        if existing:
            existing["quantity"] += item.quantity
        else:
            line["_id"] = str(ObjectId())
            cart.append(line)
        saved += (product["price"] - entry["new_price"]) * item.quantity

    _save_cart(db, owner_collection, owner_id, cart)
    logger.info("Offer %s added to %s %s cart", offer["_id"], owner_collection, owner_id)
    return {
        "cart": cart,
        "offer": {"id": str(offer["_id"]), "description": offer.get("description"), "saved_amount": round(saved, 3)},
    }
