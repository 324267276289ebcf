"""
Database Schemas for the mobile-accessories storefront

Each Pydantic model represents a MongoDB collection or a request body.
Collection names are the lowercase snake_case of the stored model
(Product -> "product", CartItem -> "cart_item", OrderItem -> "order_item").

Money is stored as two-decimal strings ("250.00") and handled as Decimal.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

CENT = Decimal("0.01")

OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
PaymentMethod = Literal["cod", "online"]
DiscountType = Literal["percentage", "fixed"]


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value) -> str:
    return str(to_money(value))


class ShippingAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(..., min_length=1)
    phone_number: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)
    country: str = "India"


class User(BaseModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = None


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, description="Price in INR")
    original_price: Optional[Decimal] = Field(None, ge=0, description="Struck-through price")
    brand: str
    model: Optional[str] = None
    material: Optional[str] = None
    stock_quantity: int = Field(0, ge=0)
    featured: bool = False
    images: List[str] = []


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    original_price: Optional[Decimal] = Field(None, ge=0)
    brand: Optional[str] = None
    model: Optional[str] = None
    material: Optional[str] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    featured: Optional[bool] = None
    images: Optional[List[str]] = None


class CartAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartQuantity(BaseModel):
    quantity: int = Field(..., ge=1)


class Coupon(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0)
    min_order_amount: Optional[Decimal] = Field(None, ge=0)
    max_discount_amount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=0)
    used_count: int = 0
    is_active: bool = True
    valid_until: Optional[datetime] = None


class CouponValidateRequest(BaseModel):
    code: str
    amount: Decimal = Field(..., ge=0)


class CouponValidation(BaseModel):
    valid: bool
    discount: Optional[float] = None
    message: Optional[str] = None


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0, decimal_places=2, description="Unit price snapshot at checkout")


class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    total_amount: Decimal
    coupon_code: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class TrackingUpdate(BaseModel):
    tracking_number: str = Field(..., min_length=1)


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: Optional[str] = None
