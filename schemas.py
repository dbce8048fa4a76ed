"""
Database Schemas for the Marketplace

Each Pydantic model describes a MongoDB document (or an embedded part of one).
Collection name is lowercase of the class name.
- Order -> "order" (OrderItem, Tracking, TrackingUpdate embedded)
- Product / Store -> "product" / "store", both hosting embedded Review arrays
"""

from pydantic import BaseModel, Field
from typing import List, Literal, Optional
from datetime import datetime

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered")
OrderStatus = Literal["pending", "processing", "shipped", "delivered"]


class OrderItem(BaseModel):
    product: str = Field(..., description="Product _id (string)")
    quantity: int = Field(..., ge=1, description="Units ordered")
    price: float = Field(..., ge=0, description="Unit price captured at order time")


class TrackingUpdate(BaseModel):
    status: str = Field(..., min_length=1, description="Status label of the event")
    description: Optional[str] = None
    location: Optional[str] = None
    timestamp: Optional[datetime] = Field(None, description="Server-assigned on append")


class Tracking(BaseModel):
    number: Optional[str] = None
    carrier: Optional[str] = None
    estimatedDelivery: Optional[datetime] = None
    updates: List[TrackingUpdate] = Field(default_factory=list)


class Order(BaseModel):
    user: str = Field(..., description="Owning user _id (string)")
    store: str = Field(..., description="Store _id (string)")
    items: List[OrderItem] = Field(..., min_length=1)
    total: float = Field(..., ge=0, description="Sum of price x quantity at creation")
    status: OrderStatus = "pending"
    shippingInfo: dict = Field(default_factory=dict, description="Opaque address/contact data")
    tracking: Optional[Tracking] = None


class Review(BaseModel):
    user: str = Field(..., description="Reviewing user _id (string)")
    rating: int = Field(..., ge=1, le=5, description="Rating 1-5")
    comment: str = Field(..., min_length=1, description="Review text")
    date: Optional[datetime] = None
