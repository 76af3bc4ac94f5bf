"""
Database Schemas for the checkout backend

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase
of the class name, with TempOrder stored as "temp_order".

Example: class Coupon -> collection "coupon"
"""
from enum import Enum
from typing import List, Optional, Dict
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class DiscountType(str, Enum):
    percentage = "percentage"
    flat = "flat"


# Catalog

class Product(BaseModel):
    title: str
    description: str = ""
    price: float = Field(..., ge=0)
    weight: float = Field(..., ge=0, description="Weight in kilograms")
    available_sizes: List[int] = Field(default_factory=list)
    attributes: Dict[str, List[str]] = Field(default_factory=dict, description="Attribute name -> allowed options")
    product_type: Optional[str] = None
    images: List[str] = Field(default_factory=list)


# Locations

class State(BaseModel):
    name: str
    first_kilo_delivery_cost: float = Field(..., ge=0)
    delivery_cost_per_kilo: float = Field(..., ge=0)
    governorates: List[str] = Field(default_factory=list)


class Governorate(BaseModel):
    name: str
    state_id: str
    cities: List[str] = Field(default_factory=list)


class City(BaseModel):
    name: str
    governorate_id: str


# Coupons

class Coupon(BaseModel):
    code: str
    discount: float = Field(..., gt=0)
    discount_type: DiscountType = DiscountType.percentage
    max_discount: Optional[float] = Field(None, ge=0)
    min_order_amount: float = Field(0, ge=0)
    expiration_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = 0
    valid_for: List[str] = Field(default_factory=list, description="Product ids the coupon is limited to")


# Cart and orders

class CartItem(BaseModel):
    product_id: str
    title: Optional[str] = None
    size: int
    selected_attributes: Dict[str, str] = Field(default_factory=dict)
    price: float = Field(..., ge=0, description="Unit price captured when the item was added")
    quantity: int = Field(1, ge=1)
    notes: str = ""
    offer_id: Optional[str] = None


class Building(BaseModel):
    number: Optional[str] = None
    floor: Optional[str] = None
    apartment: Optional[str] = None


class DeliveryAddress(BaseModel):
    state: str
    governorate: str
    city: str
    street: Optional[str] = None
    sub_street: Optional[str] = None
    block: Optional[str] = None
    building: Building = Field(default_factory=Building)
    notes: Optional[str] = None


class CouponApplication(BaseModel):
    code: str
    discount: float = Field(..., ge=0)
    discount_type: DiscountType
    coupon_id: str
    redeemed: bool = False


class Order(BaseModel):
    products: List[CartItem]
    customer_id: str
    subtotal: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    delivery_cost: float = Field(..., ge=0)
    total_weight: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    delivery_address: DeliveryAddress
    coupon: Optional[CouponApplication] = None
    is_urgent: bool = False
    is_paid: bool = False
    status: OrderStatus = OrderStatus.pending
    invoice_id: str
    payment_url: str = "pending"
    payment_details: Optional[dict] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class TempOrder(BaseModel):
    customer_phone: str
    products: List[CartItem]
    admin_notes: Optional[str] = None
    is_urgent: bool = False
    creator_id: str
    customer_url: Optional[str] = None


# Request bodies

class SignupRequest(BaseModel):
    name: str
    phone: str
    email: Optional[EmailStr] = None
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    password: str


class AddToCartRequest(BaseModel):
    product_id: str
    size: int
    quantity: int = Field(1, ge=1)
    selected_attributes: Dict[str, str] = Field(default_factory=dict)
    notes: str = ""


class QuantityChangeRequest(BaseModel):
    quantity_change: int


class CheckoutRequest(BaseModel):
    delivery_address: DeliveryAddress
    coupon_code: Optional[str] = None


class PlaceOrderRequest(CheckoutRequest):
    notes: Optional[str] = None
    payment_method_id: int


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class TempOrderRequest(BaseModel):
    customer_phone: str
    admin_notes: Optional[str] = None
    is_urgent: bool = False


# Offers

class OfferProduct(BaseModel):
    product_id: str
    new_price: float = Field(..., ge=0)
    notes: str = ""


class Offer(BaseModel):
    description: str = ""
    products: List[OfferProduct] = Field(default_factory=list)
    expiration_date: datetime
    number_of_products_to_buy: int = Field(..., ge=1)


class OfferUpdateRequest(BaseModel):
    description: Optional[str] = None
    expiration_date: Optional[datetime] = None
    number_of_products_to_buy: Optional[int] = Field(None, ge=1)


class OfferProductsRequest(BaseModel):
    action: str = Field(..., pattern="^(add|remove)$")
    products: List[OfferProduct] = Field(default_factory=list)
    product_ids: List[str] = Field(default_factory=list)


class OfferCartLine(BaseModel):
    product_id: str
    size: int
    quantity: int = Field(1, ge=1)
    notes: str = ""


class AddOfferToCartRequest(BaseModel):
    offer_id: str
    products: List[OfferCartLine]


# Staff acting for a customer

class CustomerLookup(BaseModel):
    customer_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class CustomerCartItemRequest(AddToCartRequest, CustomerLookup):
    pass


class CustomerOrderRequest(PlaceOrderRequest, CustomerLookup):
    is_urgent: bool = False
