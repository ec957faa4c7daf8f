"""
Database Schemas for the HomeDish Hub marketplace

Each Pydantic model maps to a MongoDB collection.

Collections:
- users
- meals
- orders
- payments
- reviews
- favorites
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    USER = "user"
    CHEF_PENDING = "chef-pending"
    CHEF = "chef"
    ADMIN_PENDING = "admin-pending"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    FRAUD = "fraud"


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    DELIVERED = "delivered"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "paid"


class Document(BaseModel):
    # enums are stored as their plain string values
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class User(Document):
    """
    Users collection schema
    Collection name: "users"
    """
    uid: Optional[str] = Field(None, description="External auth provider UID")
    name: str = Field(..., description="Display name")
    email: EmailStr = Field(..., description="Email address, unique lookup key")
    image: Optional[str] = Field(None, description="Profile image URL")
    address: Optional[str] = Field(None, description="Delivery address")
    role: Role = Field(Role.USER)
    status: AccountStatus = Field(AccountStatus.ACTIVE)


class Meal(Document):
    """
    Meals collection schema
    Collection name: "meals"
    """
    name: str = Field(..., description="Meal name")
    image: Optional[str] = Field(None, description="Image URL")
    price: float = Field(..., gt=0, description="Unit price")
    ingredients: List[str] = Field(default_factory=list)
    estimatedDeliveryTime: Optional[str] = Field(None, description="e.g. 30-40 min")
    chefExperience: Optional[str] = None
    rating: float = Field(0, ge=0, le=5, description="Average review rating")
    chefId: str
    chefName: Optional[str] = None
    chefEmail: EmailStr


class Order(Document):
    """
    Orders collection schema
    Collection name: "orders"
    """
    foodId: str
    mealName: str
    chefId: str
    chefEmail: EmailStr
    userEmail: EmailStr
    userAddress: Optional[str] = None
    price: float = Field(..., gt=0, description="Unit price read from the meal at order time")
    quantity: int = Field(..., ge=1)
    totalPrice: float = Field(..., gt=0)
    orderStatus: OrderStatus = OrderStatus.PENDING
    paymentStatus: PaymentStatus = PaymentStatus.PENDING
    orderTime: datetime


class Payment(Document):
    """
    Payments ledger schema, append-only
    Collection name: "payments"
    """
    email: EmailStr
    orderId: str
    transactionId: str = Field(..., description="Provider payment intent id")
    amount: int = Field(..., description="Amount in minor units")
    currency: str
    paidAt: datetime


class Review(Document):
    """
    Reviews collection schema
    Collection name: "reviews"
    """
    foodId: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    reviewerName: Optional[str] = None
    reviewerImage: Optional[str] = None
    reviewerEmail: EmailStr
    date: datetime


class Favorite(Document):
    """
    Favorites collection schema, unique per (userEmail, foodId)
    Collection name: "favorites"
    """
    userEmail: EmailStr
    foodId: str
    mealName: str
    chefId: str
    chefName: Optional[str] = None
    price: float
    addedTime: datetime
