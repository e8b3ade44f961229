"""
Database Schemas

Pydantic models for the MongoDB collections and for the request bodies the
API accepts. Collection names are the lowercase model name:
- User -> "user" collection
- Product -> "product" collection
- Cart -> "cart", Coupon -> "coupon", Order -> "order"

Validation here replaces the field-level rules an ORM schema would enforce.
"""
from datetime import datetime, timezone
from typing import List, Optional, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

# ---------- Enums ----------

Role = Literal["user", "admin"]
DiscountType = Literal["percentage", "fixed"]
CouponCategory = Literal["Electronics", "Fashion", "Books", ""]
PaymentMethod = Literal["cod", "card", "upi"]
OrderStatus = Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]
PaymentStatus = Literal["Pending", "Paid", "Failed", "Refunded"]

ORDER_STATUSES = ["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]


class _Trimmed(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

# ---------- Users ----------

class User(_Trimmed):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password_hash: str
    role: Role = "user"

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()

class RegisterRequest(_Trimmed):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)

class LoginRequest(_Trimmed):
    email: EmailStr
    password: str

class ProfileUpdate(_Trimmed):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)

# ---------- Catalog ----------

class Product(_Trimmed):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0, description="Unit price in rupees")
    category: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1, description="Image URL")
    stock: int = Field(0, ge=0)

class ProductUpdate(_Trimmed):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = Field(None, min_length=1)
    stock: Optional[int] = Field(None, ge=0)

# ---------- Cart ----------

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)

class CartAddRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)

class CartUpdateRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., description="Zero or less removes the line")

# ---------- Coupons ----------

class Coupon(_Trimmed):
    code: str = Field(..., min_length=3, max_length=20)
    description: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_purchase_amount: float = Field(..., ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: datetime
    valid_until: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = Field(0, ge=0)
    is_active: bool = True
    applicable_categories: List[CouponCategory] = Field(default_factory=list)
    applicable_products: List[str] = Field(default_factory=list, description="Product ids")

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.upper()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def check_rules(self):
        if self.valid_until <= self.valid_from:
            raise ValueError("Valid until date must be after valid from date")
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self

class CouponUpdate(_Trimmed):
    code: Optional[str] = Field(None, min_length=3, max_length=20)
    description: Optional[str] = Field(None, min_length=1)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_purchase_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None
    applicable_categories: Optional[List[CouponCategory]] = None
    applicable_products: Optional[List[str]] = None

class CouponCartLine(BaseModel):
    product_id: Optional[str] = None
    category: Optional[str] = None

class CouponValidateRequest(_Trimmed):
    code: str = Field(..., min_length=1)
    cart_total: Optional[float] = Field(None, ge=0)
    cart_items: Optional[List[CouponCartLine]] = None

# ---------- Orders ----------

class ShippingAddress(_Trimmed):
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "India"

    def is_complete(self) -> bool:
        return all([self.street, self.city, self.state, self.zip_code])

class OrderItem(_Trimmed):
    product_id: str
    name: str = ""
    image: str = ""
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)

class OrderCreateRequest(_Trimmed):
    order_items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Optional[PaymentMethod] = None
    coupon_code: Optional[str] = None

class Order(BaseModel):
    user_id: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "cod"
    subtotal: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    coupon_code: Optional[str] = None
    tax: float = Field(..., ge=0)
    total_amount: float = Field(..., ge=0)
    order_status: OrderStatus = "Pending"
    payment_status: PaymentStatus = "Pending"
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None

    @field_validator("coupon_code")
    @classmethod
    def upper_coupon(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else None

    @model_validator(mode="after")
    def cod_starts_unpaid(self):
        # cash on delivery is only settled at the door
        if self.payment_method == "cod":
            self.payment_status = "Pending"
        return self

class StatusUpdateRequest(BaseModel):
    status: Optional[str] = None

class SeedRequest(BaseModel):
    force: bool = False
