"""
Order pricing

Pure functions only: callers resolve product weights, the delivery state and
the coupon document before calling in. Nothing here touches the database.
"""
import math
from typing import Any, Dict, Iterable, List, Optional

from errors import ValidationError

WEIGHT_PRECISION = 3
AMOUNT_PRECISION = 3


def delivery_cost(total_weight: float, first_kilo_cost: float, per_kilo_cost: float) -> float:
    """First kilogram is a flat fee; every started kilogram after it costs per_kilo_cost."""
    extra_kilos = math.ceil(max(0.0, round(total_weight, WEIGHT_PRECISION) - 1))
    return float(first_kilo_cost) + extra_kilos * float(per_kilo_cost)


def coupon_discount(subtotal: float, coupon: Dict[str, Any], eligible_subtotal: Optional[float] = None) -> float:
    if subtotal < (coupon.get("min_order_amount") or 0):
        raise ValidationError(f"Coupon requires minimum order of {coupon['min_order_amount']}")
    base = subtotal if eligible_subtotal is None else eligible_subtotal
    if coupon.get("discount_type") == "percentage":
        discount = base * coupon["discount"] / 100
    else:
        discount = float(coupon["discount"])
    max_discount = coupon.get("max_discount")
    if max_discount is not None:
        discount = min(discount, max_discount)
    # a flat coupon never pays the customer
    return min(discount, base)


def _eligible_subtotal(lines: Iterable[Dict[str, Any]], valid_for: List[str]) -> float:
    scope = set(valid_for)
    return sum(l["price"] * l["quantity"] for l in lines if l["product_id"] in scope)


def price_cart(lines: List[Dict[str, Any]], state: Dict[str, Any],
               coupon: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Price a cart snapshot.

    Each line needs price (the snapshot taken at add time), quantity, weight and
    product_id. state supplies first_kilo_delivery_cost and delivery_cost_per_kilo.
    """
    subtotal = 0.0
    total_weight = 0.0
    for line in lines:
        subtotal += line["price"] * line["quantity"]
        total_weight += line["weight"] * line["quantity"]
    total_weight = round(total_weight, WEIGHT_PRECISION)

    cost = delivery_cost(total_weight, state["first_kilo_delivery_cost"], state["delivery_cost_per_kilo"])

    discount = 0.0
    discount_type = None
    if coupon:
        eligible = None
        if coupon.get("valid_for"):
            eligible = _eligible_subtotal(lines, coupon["valid_for"])
            if eligible == 0:
                raise ValidationError("Coupon is not valid for the products in your cart")
        discount = coupon_discount(subtotal, coupon, eligible)
        discount_type = coupon.get("discount_type")

    return {
        "subtotal": round(subtotal, AMOUNT_PRECISION),
        "total_weight": total_weight,
        "delivery_cost": round(cost, AMOUNT_PRECISION),
        "discount": round(discount, AMOUNT_PRECISION),
        "discount_type": discount_type,
        "total_amount": round(subtotal - discount + cost, AMOUNT_PRECISION),
    }
