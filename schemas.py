"""
Database Schemas for the Surplus Food Marketplace

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name (e.g., Listing -> "listing").
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    ADMIN = "admin"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    SOLD_OUT = "sold_out"
    EXPIRED = "expired"


class OrderStatus(str, Enum):
    RESERVED = "reserved"
    PAID = "paid"
    PICKED_UP = "picked_up"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    CARD = "card"
    CASH = "cash"


class DietaryTag(str, Enum):
    VEGETARIAN = "vegetarian"
    VEGAN = "vegan"
    GLUTEN_FREE = "gluten-free"
    HALAL = "halal"
    KOSHER = "kosher"
    DAIRY_FREE = "dairy-free"
    NUT_FREE = "nut-free"


class _Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


# -------------------- Users --------------------

class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class OpeningHours(BaseModel):
    open: str
    close: str


class User(_Document):
    role: Role
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password (bcrypt)")
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    profile_picture: Optional[str] = Field(None, description="URL to profile image")
    # restaurant profile
    business_name: Optional[str] = None
    address: Optional[Address] = None
    operating_hours: Dict[str, OpeningHours] = Field(default_factory=dict, description="weekday -> hours")
    cuisine: List[str] = Field(default_factory=list)
    verified: bool = False
    # customer profile
    dietary_preferences: List[DietaryTag] = Field(default_factory=list)
    # rating aggregate, rating == rating_sum / total_ratings
    rating: float = Field(0, ge=0, le=5)
    total_ratings: int = Field(0, ge=0)
    rating_sum: float = Field(0, ge=0)


# -------------------- Listings --------------------

class PickupWindow(BaseModel):
    start: datetime
    end: datetime


class ListingImage(BaseModel):
    url: str
    public_id: str


class Listing(_Document):
    restaurant_id: str = Field(..., description="ObjectId of the owning restaurant user")
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    cuisine: str = Field(..., min_length=1)
    dietary_tags: List[DietaryTag] = Field(default_factory=list)
    original_price: float = Field(..., ge=0)
    discounted_price: float = Field(..., ge=0)
    discount_percentage: int = 0
    quantity: int = Field(..., ge=1)
    quantity_remaining: int = Field(..., ge=0)
    pickup_window: PickupWindow
    images: List[ListingImage] = Field(default_factory=list)
    status: ListingStatus = ListingStatus.ACTIVE
    expires_at: datetime


# -------------------- Orders --------------------

class Order(_Document):
    customer_id: str
    restaurant_id: str
    listing_id: str
    listing_title: Optional[str] = Field(None, description="Listing title at the time of order")
    quantity: int = Field(..., ge=1)
    total_price: float = Field(..., ge=0)
    platform_fee: float = Field(0, ge=0)
    restaurant_earnings: float
    status: OrderStatus = OrderStatus.RESERVED
    pickup_code: str = Field(..., pattern=r"^[1-9][0-9]{5}$")
    payment_method: PaymentMethod = PaymentMethod.MPESA
    payment_id: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


# -------------------- Request bodies --------------------

class RegisterRequest(BaseModel):
    role: Role = Role.CUSTOMER
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    business_name: Optional[str] = None
    address: Optional[Address] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class ListingDraft(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    cuisine: str = Field(..., min_length=1)
    dietary_tags: List[DietaryTag] = Field(default_factory=list)
    original_price: float = Field(..., gt=0)
    discounted_price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    pickup_start: datetime
    pickup_end: datetime


class ListingPatch(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    cuisine: Optional[str] = Field(None, min_length=1)
    dietary_tags: Optional[List[DietaryTag]] = None
    original_price: Optional[float] = Field(None, gt=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=1)
    pickup_start: Optional[datetime] = None
    pickup_end: Optional[datetime] = None


class CreateOrderRequest(BaseModel):
    listing_id: str
    quantity: int = Field(..., ge=1)
    payment_method: PaymentMethod = PaymentMethod.MPESA


class PaymentRequest(BaseModel):
    payment_id: Optional[str] = Field(None, max_length=100)


class PickupRequest(BaseModel):
    pickup_code: str


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=2000)
