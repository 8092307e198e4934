"""
Request schemas for the marketplace API

Each model is the typed command a route hands to the service layer.
Bodies are accepted in camelCase (shippingAddress) or snake_case.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

ROLES = ("user", "vendor", "admin")
USER_STATUSES = ("active", "inactive", "banned")
CATEGORY_STATUSES = ("active", "inactive")
PRODUCT_STATUSES = ("pending", "active", "inactive", "rejected")
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_METHODS = ("paypal", "bank_transfer")

Role = Literal["user", "vendor", "admin"]
UserStatus = Literal["active", "inactive", "banned"]
CategoryStatus = Literal["active", "inactive"]
ProductStatus = Literal["pending", "active", "inactive", "rejected"]
PaymentMethod = Literal["paypal", "bank_transfer"]
CouponType = Literal["percentage", "fixed"]
CouponStatus = Literal["active", "inactive"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


# Auth / users

class RegisterRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None

class LoginRequest(ApiModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class ForgotPasswordRequest(ApiModel):
    email: EmailStr

class ResetPasswordRequest(ApiModel):
    token: str
    new_password: str = Field(..., min_length=6)

class ProfileUpdate(ApiModel):
    full_name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None

class PasswordChange(ApiModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)

class UserStatusUpdate(ApiModel):
    status: UserStatus

class UserRoleUpdate(ApiModel):
    role: Role


# Catalog

class CategoryCreate(ApiModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    parent_id: Optional[str] = None
    order: int = Field(0, ge=0)

class CategoryUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    parent_id: Optional[str] = None
    order: Optional[int] = Field(None, ge=0)
    status: Optional[CategoryStatus] = None

class CategoryOrderUpdate(ApiModel):
    order: int = Field(..., ge=0)

class CategoryStatusUpdate(ApiModel):
    status: CategoryStatus

class ProductCreate(ApiModel):
    name: str = Field(..., min_length=2, max_length=255)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    category_id: str
    stock: int = Field(..., ge=0)
    images: List[str] = Field(..., min_length=1)
    specifications: Optional[Dict[str, Any]] = None

class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    category_id: Optional[str] = None
    images: Optional[List[str]] = None
    specifications: Optional[Dict[str, Any]] = None

class ProductStatusUpdate(ApiModel):
    status: ProductStatus
    rejection_reason: Optional[str] = None

class StockAdjustment(ApiModel):
    quantity: int


# Cart / wishlist

class CartItemRequest(ApiModel):
    product_id: str
    quantity: int = Field(..., ge=1)

class WishlistAdd(ApiModel):
    product_id: str


# Orders

class OrderCreate(ApiModel):
    shipping_address: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    notes: Optional[str] = Field(None, max_length=1000)
    coupon_code: Optional[str] = None

class OrderStatusUpdate(ApiModel):
    status: Literal["processing", "shipped", "delivered", "cancelled"]

class PaymentUpdate(ApiModel):
    transaction_id: str = Field(..., min_length=1)


# Coupons

class CouponCreate(ApiModel):
    code: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")
    type: CouponType
    value: float = Field(..., ge=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    status: CouponStatus = "active"

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def check_rules(self):
        if self.type == "percentage" and self.value > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self

class CouponValidateRequest(ApiModel):
    code: str = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)


# Reviews

class ReviewCreate(ApiModel):
    product_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)
    images: List[str] = []

class ReviewUpdate(ApiModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)
    images: Optional[List[str]] = None


# Chatbot

class ChatContext(ApiModel):
    product_id: Optional[str] = None
    category_id: Optional[str] = None

class ChatMessage(ApiModel):
    message: str = Field(..., min_length=1, max_length=500)
    context: ChatContext = Field(default_factory=ChatContext)

class ChatSearch(ApiModel):
    query: str = Field(..., min_length=1, max_length=100)
