# tests/conftest.py
# Ensure project root (parent of tests) is on sys.path so the app modules import,
# and configure the environment before config.py reads it.
import os
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)

import mongomock
import pytest
from bson import ObjectId

from database import utcnow
from errors import GatewayError
from gateway import FAILED, KEY_INVOICE_ID, PAID, PENDING, Invoice, PaymentStatus


class FakeGateway:
    """In-memory stand-in for the MyFatoorah client."""

    def __init__(self):
        self.invoices = {}
        self.payments = {}
        self.created = []
        self.create_error = None
        self.status_error = None
        self.on_create = None

    def create_invoice(self, **kwargs):
        self.created.append(kwargs)
        if self.on_create:
            self.on_create(kwargs)
        if self.create_error:
            raise self.create_error
        invoice_id = str(5000 + len(self.created))
        self.invoices[invoice_id] = PENDING
        return Invoice(invoice_id=invoice_id, payment_url=f"https://pay.example/{invoice_id}", raw={})

    def initiate_payment(self, amount, currency):
        return [{"payment_method_id": 1, "name": "KNET", "total_amount": amount, "currency": currency}]

    def settle(self, invoice_id, status=PAID, payment_id=None, error=None):
        self.invoices[invoice_id] = status
        payment_id = payment_id or f"pay-{invoice_id}"
        self.payments[payment_id] = invoice_id
        return payment_id

    def get_payment_status(self, key, key_type="PaymentId"):
        if self.status_error:
            raise self.status_error
        invoice_id = key if key_type == KEY_INVOICE_ID else self.payments.get(key)
        if invoice_id is None or invoice_id not in self.invoices:
            raise GatewayError("Invoice not found", status_code=400)
        status = self.invoices[invoice_id]
        error = "Card declined" if status == FAILED else None
        return PaymentStatus(
            invoice_id=invoice_id,
            status=status,
            error=error,
            error_code="MF001" if error else None,
            raw={"InvoiceId": invoice_id, "InvoiceStatus": status},
        )


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def location(db):
    """Capital state -> Hawalli governorate -> Salmiya city, 2 for the first kilo, 1 per extra kilo."""
    city_id = db["city"].insert_one({"name": "Salmiya"}).inserted_id
    other_city_id = db["city"].insert_one({"name": "Jahra"}).inserted_id
    gov_id = db["governorate"].insert_one({"name": "Hawalli", "cities": [str(city_id)]}).inserted_id
    state_id = db["state"].insert_one({
        "name": "Capital",
        "first_kilo_delivery_cost": 2.0,
        "delivery_cost_per_kilo": 1.0,
        "governorates": [str(gov_id)],
    }).inserted_id
    return {
        "state": str(state_id),
        "governorate": str(gov_id),
        "city": str(city_id),
        "other_city": str(other_city_id),
    }


@pytest.fixture
def address(location):
    return {
        "state": location["state"],
        "governorate": location["governorate"],
        "city": location["city"],
        "street": "Salem Al Mubarak",
        "building": {"number": "12", "floor": "3", "apartment": "7"},
    }


@pytest.fixture
def product(db):
    pid = db["product"].insert_one({
        "title": "Linen Shirt",
        "price": 10.0,
        "weight": 1.5,
        "available_sizes": [38, 40, 42],
        "attributes": {"color": ["white", "navy"]},
    }).inserted_id
    return db["product"].find_one({"_id": pid})


def cart_line(product, quantity=2, size=40, notes="", **extra):
    line = {
        "_id": str(ObjectId()),
        "product_id": str(product["_id"]),
        "title": product["title"],
        "size": size,
        "selected_attributes": {},
        "price": product["price"],
        "quantity": quantity,
        "notes": notes,
    }
    line.update(extra)
    return line


@pytest.fixture
def customer(db, product):
    cid = db["customer"].insert_one({
        "name": "Sara",
        "phone": "55501234",
        "email": "sara@example.com",
        "cart": [cart_line(product)],
    }).inserted_id
    return db["customer"].find_one({"_id": cid})


def make_coupon(db, **fields):
    doc = {
        "code": "SAVE3",
        "discount": 3.0,
        "discount_type": "flat",
        "max_discount": None,
        "min_order_amount": 5.0,
        "expiration_date": utcnow() + timedelta(days=7),
        "usage_limit": None,
        "used_count": 0,
        "valid_for": [],
    }
    doc.update(fields)
    doc["_id"] = db["coupon"].insert_one(doc).inserted_id
    return doc
