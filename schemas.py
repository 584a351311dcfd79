"""
Database Schemas

Pydantic shapes for the SPARK store documents. Each top-level model is
stored in the collection named after it in lowercase (User -> "user").
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin"]
Category = Literal["chargers", "cases", "cables", "headphones", "accessories"]
OrderStatus = Literal["pending", "paid", "processing", "shipped", "delivered", "cancelled", "returned"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]
PaymentMethod = Literal["stripe", "paypal", "bank_transfer", "admin"]


class Address(BaseModel):
    street: str = Field(..., min_length=5, max_length=100)
    city: str = Field(..., min_length=2, max_length=50)
    postal_code: str = Field(..., min_length=3, max_length=10)
    country: str = Field("France", min_length=2, max_length=50)


class UserAddress(Address):
    type: Literal["billing", "shipping"]
    is_default: bool = False


class UserPreferences(BaseModel):
    newsletter: bool = False
    marketing: bool = False
    analytics: bool = False


class UserGdpr(BaseModel):
    consent_date: Optional[datetime] = None
    data_processing_consent: bool = False
    marketing_consent: bool = False
    data_retention_until: Optional[datetime] = None


class User(BaseModel):
    first_name: str = Field(..., max_length=50)
    last_name: str = Field(..., max_length=50)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: Role = "user"
    is_active: bool = True
    is_email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    addresses: List[UserAddress] = Field(default_factory=list)
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    gdpr: UserGdpr = Field(default_factory=UserGdpr)
    last_login: Optional[datetime] = None


class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None
    is_primary: bool = False


class ProductRatings(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class ProductSales(BaseModel):
    total_sold: int = 0
    total_revenue: float = 0
    last_sold: Optional[datetime] = None


class Product(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    slug: Optional[str] = None
    description: str = Field(..., min_length=10, max_length=1000)
    short_description: Optional[str] = Field(None, max_length=200)
    category: Category
    brand: str = Field(..., min_length=2, max_length=50)
    price: float = Field(..., ge=0, le=10000)
    original_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    min_stock: int = Field(5, ge=0)
    images: List[ProductImage] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    specifications: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    is_featured: bool = False
    is_on_sale: bool = False
    sale_end_date: Optional[datetime] = None
    ratings: ProductRatings = Field(default_factory=ProductRatings)
    sales: ProductSales = Field(default_factory=ProductSales)


class CartItem(BaseModel):
    item_id: str
    product_id: str
    quantity: int = Field(1, ge=1, le=100)
    size: str = ""
    color: str = ""
    added_at: Optional[datetime] = None


class Cart(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItem] = Field(default_factory=list)
    coupon_code: Optional[str] = None
    expires_at: Optional[datetime] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    brand: str
    category: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1, le=100)
    size: str = ""
    color: str = ""
    image: Optional[str] = None


class StatusChange(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    at: datetime
    note: Optional[str] = None


class OrderGdpr(BaseModel):
    data_processing_consent: bool = False
    marketing_consent: bool = False
    data_retention_until: Optional[datetime] = None


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    billing_address: Address
    shipping_address: Address
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    payment_intent_id: Optional[str] = None
    paypal_order_id: Optional[str] = None
    status: OrderStatus = "pending"
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    tracking_url: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)
    status_history: List[StatusChange] = Field(default_factory=list)
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    source: Literal["website", "mobile", "admin", "api"] = "website"
    gdpr: OrderGdpr = Field(default_factory=OrderGdpr)


class Coupon(BaseModel):
    code: str = Field(..., min_length=3, max_length=20)
    type: Literal["percent", "flat"]
    value: float = Field(..., gt=0)
    min_order: float = Field(0, ge=0)
    active: bool = True
    expires_at: Optional[datetime] = None
