# tests/test_orders.py
import pytest
from bson import ObjectId

from conftest import make_coupon
from errors import ConflictError, NotFoundError, ValidationError
from gateway import PAID
from orders import (
    can_transition,
    entry_statuses,
    get_order,
    list_orders,
    order_filter,
    place_order,
    reconcile_success,
    update_status,
)
from schemas import OrderStatus, PlaceOrderRequest

S = OrderStatus


@pytest.mark.parametrize("current,target,allowed", [
    (S.pending, S.processing, True),
    (S.pending, S.failed, True),
    (S.pending, S.cancelled, True),
    (S.pending, S.completed, False),
    (S.processing, S.completed, True),
    (S.processing, S.pending, False),
    (S.failed, S.processing, True),
    (S.failed, S.pending, False),
    (S.completed, S.cancelled, False),
    (S.cancelled, S.processing, False),
])
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_staff_cannot_confirm_payment_or_revive_orders():
    assert not can_transition(S.pending, S.processing, by_staff=True)
    assert not can_transition(S.failed, S.processing, by_staff=True)
    assert can_transition(S.processing, S.completed, by_staff=True)


def test_system_entry_statuses_follow_the_transition_table():
    assert entry_statuses(S.processing) == ["pending", "processing", "failed"]
    assert entry_statuses(S.failed) == ["pending", "processing", "failed"]
    assert "cancelled" not in entry_statuses(S.processing)


@pytest.fixture
def order_id(db, gateway, customer, address):
    make_coupon(db)
    req = PlaceOrderRequest(delivery_address=address, payment_method_id=1, coupon_code="SAVE3")
    return place_order(db, gateway, customer, req)["order_id"]


def pay(db, gateway, invoice_id="5001"):
    reconcile_success(db, gateway, gateway.settle(invoice_id, PAID))


def test_pending_is_not_a_valid_staff_target(db, order_id):
    with pytest.raises(ValidationError) as exc:
        update_status(db, order_id, S.pending)
    assert "pending" not in exc.value.details["valid_statuses"]
    assert "completed" in exc.value.details["valid_statuses"]


def test_paid_order_can_be_completed(db, gateway, order_id):
    pay(db, gateway)

    updated = update_status(db, order_id, S.completed)

    assert updated["status"] == "completed"
    with pytest.raises(ConflictError):
        update_status(db, order_id, S.cancelled)


def test_staff_cannot_move_unpaid_order_to_processing(db, order_id):
    with pytest.raises(ConflictError):
        update_status(db, order_id, S.processing)


def test_cancelling_unpaid_order_releases_coupon(db, order_id):
    update_status(db, order_id, S.cancelled)

    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["status"] == "cancelled"
    assert order["coupon"]["redeemed"] is False
    assert db["coupon"].find_one({})["used_count"] == 0


def test_cancelling_paid_order_keeps_coupon_counted(db, gateway, order_id):
    pay(db, gateway)
    update_status(db, order_id, S.cancelled)
    assert db["coupon"].find_one({})["used_count"] == 1


def test_update_status_rejects_bad_and_unknown_ids(db):
    with pytest.raises(ValidationError):
        update_status(db, "not-an-id", S.completed)
    with pytest.raises(NotFoundError):
        update_status(db, str(ObjectId()), S.completed)


def test_customer_view_of_an_order(db, customer, order_id):
    view = get_order(db, order_id, customer_id=str(customer["_id"]))

    assert view["order_id"] == order_id
    assert view["final_cost"] == 21.0
    assert view["coupon"] == {"code": "SAVE3", "discount": 3.0, "discount_type": "flat"}
    assert view["delivery_address"]["area"] == "Salmiya, Hawalli, Capital"
    assert view["payment_url"] == "https://pay.example/5001"
    assert "invoice_id" not in view
    assert view["products"][0]["size"] == 40


def test_customer_cannot_see_another_customers_order(db, order_id):
    with pytest.raises(NotFoundError):
        get_order(db, order_id, customer_id=str(ObjectId()))


def test_staff_view_includes_customer_and_invoice(db, order_id):
    view = get_order(db, order_id, staff=True)

    assert view["customer"] == {"name": "Sara", "email": "sara@example.com", "phone": "55501234"}
    assert view["invoice_id"] == "5001"
    assert view["is_urgent"] is False
    assert "payment_url" not in view


def test_list_orders_paginates_newest_first(db, gateway, customer, address):
    for _ in range(3):
        place_order(db, gateway, customer, PlaceOrderRequest(delivery_address=address, payment_method_id=1))

    first = list_orders(db, order_filter(customer_id=str(customer["_id"])), page=1, limit=2)
    second = list_orders(db, {}, page=2, limit=2)

    assert first["pagination"] == {"total_orders": 3, "current_page": 1, "total_pages": 2, "has_next_page": True}
    assert len(first["orders"]) == 2
    assert len(second["orders"]) == 1
    assert second["pagination"]["has_next_page"] is False
    assert all(isinstance(o["id"], str) for o in first["orders"])


def test_order_filter_combines_criteria():
    filt = order_filter(status="processing", is_paid=True, min_amount=5, max_amount=50, customer_id="c1")
    assert filt == {
        "customer_id": "c1",
        "status": "processing",
        "is_paid": True,
        "total_amount": {"$gte": 5, "$lte": 50},
    }
    assert order_filter() == {}
