"""
Database Schemas for the KOLZO storefront

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

Category = Literal["handbags", "wallets", "accessories", "jewelry", "clothing", "shoes", "cosmetics", "fragrances"]
Gender = Literal["men", "women", "unisex"]
Role = Literal["user", "admin"]
PaymentMethod = Literal["stripe", "cod", "bank_transfer"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
ReviewStatus = Literal["pending", "approved", "rejected"]
UserStatus = Literal["active", "inactive", "suspended"]
AddressType = Literal["home", "work", "other"]


class Address(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=1)


class SavedAddress(Address):
    """An address-book entry; `id` is generated server side."""
    id: str
    type: AddressType = "home"
    is_default: bool = False


class Preferences(BaseModel):
    email_notifications: bool = True
    sms_notifications: bool = False
    marketing_emails: bool = False
    currency: Literal["INR", "USD", "EUR"] = "INR"
    language: Literal["en", "hi"] = "en"


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: Optional[str] = None
    role: Role = "user"
    status: UserStatus = "active"
    status_reason: Optional[str] = None
    addresses: List[SavedAddress] = []
    preferences: Preferences = Preferences()


class Variant(BaseModel):
    name: str
    color: str
    size: str
    price: float = Field(..., ge=0)
    stock_quantity: int = Field(0, ge=0)
    sku: str


class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = 0


class Product(BaseModel):
    name: str = Field(..., max_length=100)
    slug: str
    description: str = Field(..., max_length=2000)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount_percentage: float = Field(0, ge=0, le=100)
    category: Category
    gender: Gender
    brand: str
    sku: str
    images: List[str] = []
    primary_image: Optional[str] = None
    stock_quantity: int = Field(0, ge=0)
    variants: List[Variant] = []
    tags: List[str] = []
    rating: Rating = Rating()
    is_active: bool = True
    is_featured: bool = False
    is_on_sale: bool = False
    view_count: int = 0


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None


class OrderNote(BaseModel):
    note: str
    timestamp: datetime


class Order(BaseModel):
    user_id: str
    order_number: str
    items: List[OrderItem]
    shipping_address: Address
    billing_address: Address
    subtotal: float = Field(..., ge=0)
    tax: float = Field(..., ge=0)
    shipping: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    notes: List[OrderNote] = []
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    payment_intent_id: Optional[str] = None


class Review(BaseModel):
    product_id: str
    user_id: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=3, max_length=100)
    content: str = Field(..., min_length=10, max_length=1000)
    status: ReviewStatus = "pending"
    helpful_count: int = 0
    verified_purchase: bool = False
    moderated_by: Optional[str] = None
    moderated_at: Optional[datetime] = None
    moderation_reason: Optional[str] = None


class Wishlist(BaseModel):
    user_id: str
    product_id: str
    notes: str = Field("", max_length=500)
    added_at: datetime
