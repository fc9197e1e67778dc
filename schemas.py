"""
Database Schemas for the Storefront API

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase class name. Example: class Product -> "product" collection.

Request models validate what clients send; the *Out models shape what the API
returns and are built from stored documents with from_doc().
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Decimal rounded half-up to cents; floats go through str() to avoid binary noise."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# -----------------
# Enumerations
# -----------------

class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    OUT_OF_STOCK = "out_of_stock"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# -----------------
# Core Collections
# -----------------

class User(BaseModel):
    firebase_uid: str = Field(..., min_length=1, description="Identity provider user id")
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    role: UserRole = UserRole.CUSTOMER
    is_active: bool = True


class Category(BaseModel):
    name: str = Field(..., min_length=1, description="Category display name, e.g., 'Laptops'")
    slug: str = Field(..., description="URL-friendly identifier derived from the name")
    description: Optional[str] = Field(None, max_length=500)
    image_url: Optional[str] = None
    parent_id: Optional[str] = Field(None, description="Parent category _id, None for top level")
    is_active: bool = True
    sort_order: int = 0


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str
    description: Optional[str] = Field(None, max_length=1000)
    detailed_description: Optional[str] = Field(None, max_length=2000)
    price: float = Field(..., gt=0, description="List price in USD")
    sale_price: Optional[float] = Field(None, gt=0)
    stock_quantity: int = Field(..., ge=0)
    sku: Optional[str] = None
    brand: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE
    is_featured: bool = False
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    category_id: str
    average_rating: float = 0.0
    review_count: int = 0


class CartItem(BaseModel):
    id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0, description="Price captured when the item was added")


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_amount: float = 0.0
    total_items: int = 0


# -----------------
# Requests
# -----------------

class UserRegistration(BaseModel):
    firebase_uid: str = Field(..., min_length=1)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None


class ProfileUpdate(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None


class AddToCart(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)


class CreateOrder(BaseModel):
    payment_method: PaymentMethod
    shipping_address: Address
    billing_address: Address
    notes: Optional[str] = None
    payment_intent_id: Optional[str] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=500)
    image_url: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=1000)
    detailed_description: Optional[str] = Field(None, max_length=2000)
    price: float = Field(..., gt=0)
    sale_price: Optional[float] = Field(None, gt=0)
    stock_quantity: int = Field(..., ge=0)
    sku: Optional[str] = None
    brand: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE
    is_featured: bool = False
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    category_id: str


# -----------------
# Responses
# -----------------

class UserOut(BaseModel):
    id: str
    firebase_uid: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    role: UserRole
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "UserOut":
        return cls(id=str(doc["_id"]), **{k: doc.get(k) for k in (
            "firebase_uid", "first_name", "last_name", "email", "phone",
            "role", "is_active", "created_at", "updated_at")})


class CategorySummary(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    image_url: Optional[str] = None


class CategoryOut(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool
    sort_order: int = 0
    parent_id: Optional[str] = None
    parent_name: Optional[str] = None
    children: List["CategoryOut"] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProductOut(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    detailed_description: Optional[str] = None
    price: float
    sale_price: Optional[float] = None
    stock_quantity: int
    sku: Optional[str] = None
    brand: Optional[str] = None
    status: ProductStatus
    is_featured: bool = False
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    category: Optional[CategorySummary] = None
    average_rating: float = 0.0
    review_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CartItemOut(BaseModel):
    id: str
    product_id: str
    product_name: Optional[str] = None
    product_slug: Optional[str] = None
    product_image_url: Optional[str] = None
    unit_price: float
    quantity: int
    total_price: float
    is_available: bool


class CartOut(BaseModel):
    id: str
    items: List[CartItemOut] = Field(default_factory=list)
    total_amount: float = 0.0
    total_items: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    product_name: str
    product_sku: Optional[str] = None
    product_image_url: Optional[str] = None
    unit_price: float
    quantity: int
    total_price: float


class OrderOut(BaseModel):
    id: str
    order_number: str
    user_id: str
    items: List[OrderItemOut] = Field(default_factory=list)
    status: OrderStatus
    subtotal: float
    tax: float
    shipping_cost: float
    total_amount: float
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_address: Address
    billing_address: Address
    notes: Optional[str] = None
    refunded_amount: float = 0.0
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "OrderOut":
        d = {k: v for k, v in doc.items() if k != "_id"}
        d["id"] = str(doc["_id"])
        d["items"] = [OrderItemOut(**i) for i in doc.get("items", [])]
        return cls(**d)


class PaymentIntentOut(BaseModel):
    id: str
    status: str
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str = "usd"
    client_secret: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    simulated: bool = False


class RefundOut(BaseModel):
    id: Optional[str] = None
    payment_intent_id: str
    amount: int
    status: str
    simulated: bool = False


class Page(BaseModel):
    content: List[Any]
    page: int
    size: int
    total_elements: int
    total_pages: int


class StoreStats(BaseModel):
    active_products: int
    active_customers: int
    active_admins: int
    orders_by_status: Dict[str, int]
    revenue_since: Optional[datetime] = None
    revenue: float = 0.0
