"""
Database Schemas

MongoDB collection schemas defined as Pydantic models.
Each Pydantic model represents a collection in your database.
Model name lowercased is the collection name (Product -> "product").

References between documents (user_id, product_id, box_id, ...) are stored
as hex strings; only each document's own `_id` is an ObjectId.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["pending", "on-hold", "ready-to-ship", "shipped", "delivered", "cancelled"]
UserStatus = Literal["active", "blocked"]
CouponType = Literal["percentage", "fixed", "free-shipping"]
CancellableUntil = Literal["pending", "ready-to-ship"]
NotificationType = Literal[
    "order_success",
    "order_status",
    "order_delivery",
    "shipment_update",
    "cart_stock_alert",
    "wishlist_stock_alert",
    "new_product_suggestion",
    "upcoming_sale",
    "admin_announcement",
    "new_order_admin",
    "return_request_admin",
]

ALL_BRANDS = "All Brands"


class Address(BaseModel):
    name: str
    phone: str
    street: str
    city: str
    state: str
    zip: str
    country: str
    type: Literal["Home", "Office", "Other"] = "Home"
    other_type: Optional[str] = None
    is_default: bool = False


class User(BaseModel):
    first_name: str = Field(..., description="First name")
    last_name: str = Field(..., description="Last name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    phone: Optional[str] = None
    addresses: List[dict] = Field(default_factory=list, description="Saved addresses, each with its own _id")
    roles: List[str] = Field(default_factory=lambda: ["user"], description="user | admin")
    brand: str = Field(..., description="Permanent name of the storefront the user signed up on")
    status: UserStatus = "active"
    is_deleted: bool = False


class Product(BaseModel):
    name: str
    description: str
    mrp: Optional[float] = Field(None, ge=0, description="Maximum retail price")
    selling_price: float = Field(..., ge=0)
    purchase_price: Optional[float] = Field(None, ge=0)
    category: List[str] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    rating: float = Field(default=0, ge=0, le=5)
    brand: str = Field(..., description="Maker of the product, e.g. Nike")
    storefront: str = Field(..., description="Storefront the product is sold on")
    views: int = 0
    clicks: int = 0
    keywords: List[str] = Field(default_factory=list)
    return_period: int = Field(10, ge=0, description="Days allowed for returns")
    style_id: Optional[str] = Field(None, description="Groups color/size variants")
    color: Optional[str] = None
    size: Optional[str] = None


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class Wishlist(BaseModel):
    user_id: str
    products: List[str] = Field(default_factory=list)


class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Selling price at the time of order")
    color: Optional[str] = None
    size: Optional[str] = None


class Order(BaseModel):
    user_id: str
    order_number: str
    products: List[OrderLine]
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    brand: str
    shipping_address: dict


class Rejection(BaseModel):
    order_id: str
    reason: str
    rejected_by: str


class Box(BaseModel):
    """
    Hamper packaging. Bags live in the same collection with kind="bag".
    """
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    mrp: Optional[float] = Field(None, ge=0)
    images: List[str] = Field(default_factory=list)
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(0, ge=0)
    storefront: str
    kind: Literal["box", "bag"] = "box"
    likes: int = 0
    usage_count: int = 0


class Hamper(BaseModel):
    user_id: str
    occasion: str = ""
    box_id: Optional[str] = None
    bag_id: Optional[str] = None
    products: List[str] = Field(default_factory=list)
    notes_to_creator: Optional[str] = None
    notes_to_receiver: Optional[str] = None
    add_rose: bool = False
    is_complete: bool = False
    is_added_to_cart: bool = False


class Coupon(BaseModel):
    code: str
    type: CouponType
    value: Optional[float] = Field(None, ge=0)
    min_purchase: float = Field(0, ge=0)
    brand: str = Field(..., description="Brand permanent name or 'All Brands'")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class Notification(BaseModel):
    recipient_users: List[str]
    read_by: List[str] = Field(default_factory=list)
    title: str
    message: str
    type: NotificationType
    link: str = ""


class Review(BaseModel):
    product_id: str
    user_id: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    review: str
    images: List[str] = Field(default_factory=list)
    likes: int = 0


class Theme(BaseModel):
    primary: str
    background: str
    accent: str


class Banner(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: str
    image_hint: str
    button_link: Optional[str] = None


class Brand(BaseModel):
    display_name: str
    permanent_name: str
    logo_url: str
    theme_name: str
    theme: Theme
    banners: List[Banner] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)


class CartSettings(BaseModel):
    free_shipping_threshold: float = Field(399, ge=0)
    extra_discount_threshold: float = Field(799, ge=0)
    free_gift_threshold: float = Field(999, ge=0)
    cancellable_order_status: CancellableUntil = "pending"
