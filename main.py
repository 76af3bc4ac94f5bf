import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr
from bson import ObjectId
import jwt
from passlib.context import CryptContext

import cart as carts
import config
import coupons
import offers
import orders
import temp_orders
from database import db, create_document
from errors import AppError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from gateway import PaymentGateway
from schemas import (
    AddOfferToCartRequest,
    AddToCartRequest,
    CheckoutRequest,
    City,
    Coupon,
    CustomerCartItemRequest,
    CustomerOrderRequest,
    Governorate,
    LoginRequest,
    Offer,
    OfferProductsRequest,
    OfferUpdateRequest,
    OrderStatus,
    PlaceOrderRequest,
    Product,
    QuantityChangeRequest,
    SignupRequest,
    State,
    StatusUpdateRequest,
    TempOrderRequest,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_OPERATOR = "operator"
ROLE_CUSTOMER = "customer"

gateway = PaymentGateway(config.MYFATOORAH_BASE_URL, config.MYFATOORAH_API_KEY, timeout=config.GATEWAY_TIMEOUT_SEC)


async def sweep_pending_orders_forever(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(orders.sweep_stale_orders, db, gateway, config.PENDING_ORDER_TTL_MIN)
        except Exception:
            logger.exception("Pending order sweep failed")


def bootstrap_admin():
    email = os.getenv("ADMIN_EMAIL")
    password = os.getenv("ADMIN_PASSWORD")
    if not email or not password or db is None:
        return
    if db["admin"].find_one({"email": email}):
        return
    create_document("admin", {"name": "Admin", "email": email, "hashed_password": hash_password(password), "cart": []})
    logger.info("Created initial admin %s", email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not config.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not configured")
    bootstrap_admin()
    task = None
    if config.PENDING_SWEEP_INTERVAL_SEC > 0:
        task = asyncio.create_task(sweep_pending_orders_forever(config.PENDING_SWEEP_INTERVAL_SEC))
    yield
    if task:
        task.cancel()


# App setup
app = FastAPI(title="E-commerce Checkout API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
security = HTTPBearer()
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    body: Dict[str, Any] = {"success": False, "message": exc.message}
    if exc.details is not None and (config.is_development() or isinstance(exc, ValidationError)):
        body["errorDetails"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": "Invalid request", "errorDetails": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body: Dict[str, Any] = {"success": False, "message": "Internal server error"}
    if config.is_development():
        body["errorDetails"] = repr(exc)
    return JSONResponse(status_code=500, content=body)


# Utilities
def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict, role: str) -> str:
    if not config.JWT_SECRET:
        raise RuntimeError("JWT_SECRET is not configured")
    payload = {
        "sub": str(user["_id"]),
        "role": role,
        "exp": datetime.utcnow() + timedelta(minutes=config.JWT_EXPIRES_MIN),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_role(role: str):
    """Dependency resolving the bearer token to a user document of the given role."""
    def dependency(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
        payload = decode_token(credentials.credentials)
        if payload.get("role") != role:
            raise AuthorizationError("Unauthorized!")
        uid = payload.get("sub")
        user = db[role].find_one({"_id": ObjectId(uid)}) if uid and ObjectId.is_valid(uid) else None
        if not user:
            raise AuthorizationError(f"{role.capitalize()} not found")
        return user
    return dependency


current_customer = require_role(ROLE_CUSTOMER)
current_admin = require_role(ROLE_ADMIN)
current_operator = require_role(ROLE_OPERATOR)


def public_user(user: dict) -> dict:
    return {"id": str(user["_id"]), "name": user.get("name"), "email": user.get("email"), "phone": user.get("phone")}


def login_user(role: str, payload: LoginRequest) -> dict:
    if payload.phone:
        user = db[role].find_one({"phone": payload.phone})
    elif payload.email:
        user = db[role].find_one({"email": payload.email})
    else:
        raise ValidationError("Phone or email is required")
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise AuthorizationError("Invalid credentials")
    return {"success": True, "token": create_token(user, role), "user": public_user(user)}


def with_id(doc: dict) -> dict:
    doc["id"] = str(doc.pop("_id"))
    return doc


# Health and helpers
@app.get("/")
def root():
    return {"message": "E-commerce checkout API running"}


@app.get("/health")
def health():
    database = False
    try:
        if db is not None:
            db.list_collection_names()
            database = True
    except Exception as e:
        logger.warning("Health check could not reach the database: %s", e)
    body = {
        "status": "ok" if database else "degraded",
        "database": database,
        "gateway_configured": bool(config.MYFATOORAH_API_KEY),
        "pending_sweep_interval_sec": config.PENDING_SWEEP_INTERVAL_SEC,
    }
    return JSONResponse(status_code=200 if database else 503, content=body)


# Catalog and locations (public)
@app.get("/products")
def list_products(q: Optional[str] = None, page: int = 1, page_size: int = 12):
    filt: Dict[str, Any] = {}
    if q:
        filt["title"] = {"$regex": q, "$options": "i"}
    total = db["product"].count_documents(filt)
    cursor = db["product"].find(filt).sort("created_at", -1).skip((max(page, 1) - 1) * page_size).limit(page_size)
    return {"items": [with_id(p) for p in cursor], "page": page, "page_size": page_size, "total": total}


@app.get("/products/{product_id}")
def get_product(product_id: str):
    return with_id(carts.get_product(db, product_id))


@app.get("/states")
def list_states():
    fields = {"name": 1, "first_kilo_delivery_cost": 1, "delivery_cost_per_kilo": 1}
    return [with_id(s) for s in db["state"].find({}, fields)]


@app.get("/governorates/{state_id}")
def list_governorates(state_id: str):
    state = db["state"].find_one({"_id": ObjectId(state_id)}) if ObjectId.is_valid(state_id) else None
    if not state:
        raise NotFoundError("State not found")
    ids = [ObjectId(g) for g in state.get("governorates", [])]
    return [with_id(g) for g in db["governorate"].find({"_id": {"$in": ids}}, {"name": 1})]


@app.get("/cities/{governorate_id}")
def list_cities(governorate_id: str):
    governorate = db["governorate"].find_one({"_id": ObjectId(governorate_id)}) if ObjectId.is_valid(governorate_id) else None
    if not governorate:
        raise NotFoundError("Governorate not found")
    ids = [ObjectId(c) for c in governorate.get("cities", [])]
    return [with_id(c) for c in db["city"].find({"_id": {"$in": ids}}, {"name": 1})]


@app.get("/order-statuses")
def order_statuses():
    return [s.value for s in OrderStatus]


@app.get("/offers")
def list_offers(page: int = 1, limit: int = 10):
    return {"success": True, **offers.list_offers(db, page, limit)}


@app.get("/offers/{offer_id}")
def get_offer(offer_id: str):
    return {"success": True, "offer": offers.get_offer(db, offer_id)}


# Customer auth
@app.post("/customer/signup")
def customer_signup(payload: SignupRequest):
    if db["customer"].find_one({"phone": payload.phone}):
        raise ConflictError("Phone already registered")
    if payload.email and db["customer"].find_one({"email": payload.email}):
        raise ConflictError("Email already registered")
    doc = {
        "name": payload.name,
        "phone": payload.phone,
        "email": payload.email,
        "hashed_password": hash_password(payload.password),
        "cart": [],
    }
    inserted_id = create_document("customer", doc)
    user = db["customer"].find_one({"_id": ObjectId(inserted_id)})
    return {"success": True, "token": create_token(user, ROLE_CUSTOMER), "user": public_user(user)}


@app.post("/customer/login")
def customer_login(payload: LoginRequest):
    return login_user(ROLE_CUSTOMER, payload)


# Customer cart
@app.get("/customer/cart")
def customer_get_cart(user: dict = Depends(current_customer)):
    return {"success": True, "data": carts.get_cart(db, ROLE_CUSTOMER, str(user["_id"]))}


@app.post("/customer/cart")
def customer_add_to_cart(item: AddToCartRequest, user: dict = Depends(current_customer)):
    cart = carts.add_item(db, ROLE_CUSTOMER, str(user["_id"]), item)
    return {"success": True, "message": "Product added to cart successfully.", "cart": cart}


@app.delete("/customer/cart/{item_id}")
def customer_remove_from_cart(item_id: str, user: dict = Depends(current_customer)):
    cart = carts.remove_item(db, ROLE_CUSTOMER, str(user["_id"]), item_id)
    return {"success": True, "message": "Item removed from cart successfully.", "cart": cart}


@app.patch("/customer/cart/{item_id}")
def customer_change_quantity(item_id: str, body: QuantityChangeRequest, user: dict = Depends(current_customer)):
    cart = carts.change_quantity(db, ROLE_CUSTOMER, str(user["_id"]), item_id, body.quantity_change)
    return {"success": True, "cart": cart}


@app.post("/customer/cart/offer")
def customer_add_offer_to_cart(body: AddOfferToCartRequest, user: dict = Depends(current_customer)):
    result = offers.add_offer_to_cart(db, ROLE_CUSTOMER, str(user["_id"]), body)
    return {"success": True, "message": "Offer added to cart successfully", **result}


# Checkout & orders
@app.post("/customer/checkout")
def customer_checkout_preview(payload: CheckoutRequest, user: dict = Depends(current_customer)):
    q = orders.quote(db, user.get("cart") or [], payload.delivery_address, payload.coupon_code)
    return {"success": True, **q["breakdown"]}


@app.get("/customer/payment-methods")
def customer_payment_methods(amount: float, user: dict = Depends(current_customer)):
    return {"success": True, "payment_methods": gateway.initiate_payment(amount, config.CURRENCY)}


@app.post("/customer/order")
def customer_place_order(payload: PlaceOrderRequest, user: dict = Depends(current_customer)):
    result = orders.place_order(db, gateway, user, payload)
    return {"success": True, **result}


@app.get("/customer/orders")
def customer_list_orders(page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None,
                         is_paid: Optional[bool] = None, min_amount: Optional[float] = None,
                         max_amount: Optional[float] = None, user: dict = Depends(current_customer)):
    filt = orders.order_filter(status.value if status else None, is_paid, min_amount, max_amount,
                               customer_id=str(user["_id"]))
    fields = ["total_amount", "created_at", "estimated_delivery", "status", "is_paid"]
    return {"success": True, **orders.list_orders(db, filt, page, limit, fields)}


@app.get("/customer/orders/{order_id}")
def customer_get_order(order_id: str, user: dict = Depends(current_customer)):
    return {"success": True, "order": orders.get_order(db, order_id, customer_id=str(user["_id"]))}


@app.get("/customer/temp-orders/{temp_order_id}")
def customer_get_temp_order(temp_order_id: str, user: dict = Depends(current_customer)):
    return {"success": True, "order": temp_orders.get_temp_order(db, temp_order_id, customer=user)}


@app.post("/customer/temp-orders/{temp_order_id}/order")
def customer_place_temp_order(temp_order_id: str, payload: PlaceOrderRequest, user: dict = Depends(current_customer)):
    result = temp_orders.place_temp_order(db, gateway, user, temp_order_id, payload)
    return {"success": True, **result}


# Payment gateway redirects
@app.get("/payment-success")
def payment_success(paymentId: Optional[str] = None):
    if orders.reconcile_success(db, gateway, paymentId):
        return RedirectResponse(f"{config.FRONTEND_URL}/order-success", status_code=302)
    return RedirectResponse(f"{config.FRONTEND_URL}/payment-error", status_code=302)


@app.get("/payment-error")
def payment_error(request: Request):
    orders.reconcile_error(db, gateway, dict(request.query_params))
    return RedirectResponse(f"{config.FRONTEND_URL}/payment-error", status_code=302)


# Admin
class OperatorIn(BaseModel):
    name: str
    email: EmailStr
    password: str


@app.post("/admin/login")
def admin_login(payload: LoginRequest):
    return login_user(ROLE_ADMIN, payload)


@app.post("/admin/operators")
def admin_create_operator(payload: OperatorIn, admin: dict = Depends(current_admin)):
    if db["operator"].find_one({"email": payload.email}):
        raise ConflictError("Operator email already exists")
    doc = {"name": payload.name, "email": payload.email, "hashed_password": hash_password(payload.password)}
    return {"success": True, "id": create_document("operator", doc)}


@app.post("/admin/products")
def admin_create_product(payload: Product, admin: dict = Depends(current_admin)):
    doc = payload.model_dump()
    doc["creator_id"] = str(admin["_id"])
    return {"success": True, "id": create_document("product", doc)}


@app.post("/admin/states")
def admin_create_state(payload: State, admin: dict = Depends(current_admin)):
    if db["state"].find_one({"name": payload.name}):
        raise ConflictError("State already exists")
    return {"success": True, "id": create_document("state", payload)}


@app.post("/admin/governorates")
def admin_create_governorate(payload: Governorate, admin: dict = Depends(current_admin)):
    if not ObjectId.is_valid(payload.state_id) or not db["state"].find_one({"_id": ObjectId(payload.state_id)}):
        raise NotFoundError("State not found")
    gid = create_document("governorate", payload)
    db["state"].update_one({"_id": ObjectId(payload.state_id)}, {"$addToSet": {"governorates": gid}})
    return {"success": True, "id": gid}


@app.post("/admin/cities")
def admin_create_city(payload: City, admin: dict = Depends(current_admin)):
    if not ObjectId.is_valid(payload.governorate_id) \
            or not db["governorate"].find_one({"_id": ObjectId(payload.governorate_id)}):
        raise NotFoundError("Governorate not found")
    cid = create_document("city", payload)
    db["governorate"].update_one({"_id": ObjectId(payload.governorate_id)}, {"$addToSet": {"cities": cid}})
    return {"success": True, "id": cid}


@app.post("/admin/coupons", status_code=201)
def admin_create_coupon(payload: Coupon, admin: dict = Depends(current_admin)):
    return {"success": True, "id": coupons.create_coupon(db, payload, str(admin["_id"]))}


@app.get("/admin/coupons")
def admin_list_coupons(admin: dict = Depends(current_admin)):
    return {"success": True, "coupons": coupons.list_coupons(db)}


@app.delete("/admin/coupons/{coupon_id}")
def admin_delete_coupon(coupon_id: str, admin: dict = Depends(current_admin)):
    coupons.delete_coupon(db, coupon_id)
    return {"success": True, "message": "Coupon deleted"}


@app.post("/admin/offers", status_code=201)
def admin_create_offer(payload: Offer, admin: dict = Depends(current_admin)):
    return {"success": True, "message": "Offer created successfully", "id": offers.create_offer(db, payload)}


@app.put("/admin/offers/{offer_id}")
def admin_update_offer(offer_id: str, payload: OfferUpdateRequest, admin: dict = Depends(current_admin)):
    return {"success": True, "offer": with_id(offers.update_offer(db, offer_id, payload))}


@app.delete("/admin/offers/{offer_id}")
def admin_delete_offer(offer_id: str, admin: dict = Depends(current_admin)):
    offers.delete_offer(db, offer_id)
    return {"success": True, "message": "Offer deleted successfully"}


@app.patch("/admin/offers/{offer_id}/products")
def admin_manage_offer_products(offer_id: str, body: OfferProductsRequest, admin: dict = Depends(current_admin)):
    return {"success": True, "offer": with_id(offers.manage_products(db, offer_id, body))}


# Admin cart and temp orders
@app.get("/admin/cart")
def admin_get_cart(admin: dict = Depends(current_admin)):
    return {"success": True, "data": carts.get_cart(db, ROLE_ADMIN, str(admin["_id"]))}


@app.post("/admin/cart")
def admin_add_to_cart(item: AddToCartRequest, admin: dict = Depends(current_admin)):
    return {"success": True, "cart": carts.add_item(db, ROLE_ADMIN, str(admin["_id"]), item)}


@app.delete("/admin/cart/{item_id}")
def admin_remove_from_cart(item_id: str, admin: dict = Depends(current_admin)):
    return {"success": True, "cart": carts.remove_item(db, ROLE_ADMIN, str(admin["_id"]), item_id)}


@app.patch("/admin/cart/{item_id}")
def admin_change_quantity(item_id: str, body: QuantityChangeRequest, admin: dict = Depends(current_admin)):
    cart = carts.change_quantity(db, ROLE_ADMIN, str(admin["_id"]), item_id, body.quantity_change)
    return {"success": True, "cart": cart}


@app.post("/admin/temp-orders")
def admin_create_temp_order(payload: TempOrderRequest, admin: dict = Depends(current_admin)):
    return {"success": True, "temp_order": temp_orders.create_temp_order(db, admin, payload)}


@app.get("/admin/temp-orders")
def admin_list_temp_orders(admin: dict = Depends(current_admin)):
    items = temp_orders.list_temp_orders(db)
    return {"success": True, "count": len(items), "orders": items}


@app.get("/admin/temp-orders/{temp_order_id}")
def admin_get_temp_order(temp_order_id: str, admin: dict = Depends(current_admin)):
    return {"success": True, "order": temp_orders.get_temp_order(db, temp_order_id)}


# Staff acting for a customer
@app.get("/admin/customer-cart")
def admin_get_customer_cart(customer_id: Optional[str] = None, phone: Optional[str] = None,
                            email: Optional[str] = None, admin: dict = Depends(current_admin)):
    customer = carts.find_customer(db, customer_id, phone, email)
    return {"success": True, "customer": public_user(customer),
            "data": carts.get_cart(db, ROLE_CUSTOMER, str(customer["_id"]))}


@app.post("/admin/customer-cart")
def admin_add_to_customer_cart(body: CustomerCartItemRequest, admin: dict = Depends(current_admin)):
    customer = carts.find_customer(db, body.customer_id, body.phone, body.email)
    cart = carts.add_item(db, ROLE_CUSTOMER, str(customer["_id"]), body)
    logger.info("Admin %s added %s to customer %s cart", admin["_id"], body.product_id, customer["_id"])
    return {"success": True, "message": "Product added to customer's cart successfully.", "cart": cart}


@app.delete("/admin/customer-cart/{item_id}")
def admin_remove_from_customer_cart(item_id: str, customer_id: Optional[str] = None, phone: Optional[str] = None,
                                    email: Optional[str] = None, admin: dict = Depends(current_admin)):
    customer = carts.find_customer(db, customer_id, phone, email)
    cart = carts.remove_item(db, ROLE_CUSTOMER, str(customer["_id"]), item_id)
    return {"success": True, "message": "Item removed from customer's cart successfully.", "cart": cart}


@app.post("/admin/customer-order")
def admin_place_customer_order(body: CustomerOrderRequest, admin: dict = Depends(current_admin)):
    customer = carts.find_customer(db, body.customer_id, body.phone, body.email)
    result = orders.place_order(db, gateway, customer, body, is_urgent=body.is_urgent)
    logger.info("Admin %s placed order %s for customer %s", admin["_id"], result["order_id"], customer["_id"])
    return {"success": True, "message": "Order created. Send the payment link to the customer.", **result}


# Staff orders
def staff_list_orders(page: int, limit: int, status: Optional[OrderStatus], is_paid: Optional[bool]):
    filt = orders.order_filter(status.value if status else None, is_paid)
    fields = ["created_at", "status", "total_amount", "is_urgent", "is_paid", "customer_id"]
    return {"success": True, **orders.list_orders(db, filt, page, limit, fields)}


def staff_update_status(order_id: str, body: StatusUpdateRequest):
    order = orders.update_status(db, order_id, body.status)
    return {
        "message": "Order status updated successfully",
        "order": {"id": str(order["_id"]), "status": order["status"], "total_amount": order["total_amount"]},
    }


@app.get("/admin/orders")
def admin_list_orders(page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None,
                      is_paid: Optional[bool] = None, admin: dict = Depends(current_admin)):
    return staff_list_orders(page, limit, status, is_paid)


@app.get("/admin/orders/{order_id}")
def admin_get_order(order_id: str, admin: dict = Depends(current_admin)):
    return {"success": True, "order": orders.get_order(db, order_id, staff=True)}


@app.put("/admin/order/{order_id}")
def admin_update_order_status(order_id: str, body: StatusUpdateRequest, admin: dict = Depends(current_admin)):
    return staff_update_status(order_id, body)


@app.post("/admin/orders/sweep")
def admin_sweep_orders(older_than_min: int = config.PENDING_ORDER_TTL_MIN, admin: dict = Depends(current_admin)):
    return {"success": True, **orders.sweep_stale_orders(db, gateway, older_than_min)}


# Operator
@app.post("/operator/login")
def operator_login(payload: LoginRequest):
    return login_user(ROLE_OPERATOR, payload)


@app.get("/operator/orders")
def operator_list_orders(page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None,
                         is_paid: Optional[bool] = None, operator: dict = Depends(current_operator)):
    return staff_list_orders(page, limit, status, is_paid)


@app.get("/operator/orders/{order_id}")
def operator_get_order(order_id: str, operator: dict = Depends(current_operator)):
    return {"success": True, "order": orders.get_order(db, order_id, staff=True)}


@app.put("/operator/order/{order_id}")
def operator_update_order_status(order_id: str, body: StatusUpdateRequest, operator: dict = Depends(current_operator)):
    return staff_update_status(order_id, body)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
