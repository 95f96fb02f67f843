"""
Database Schemas for the Store API

Collections:
- user: admins and customers, approved by an admin before they can sign in
- product: catalog items, deactivated instead of deleted once ordered
- order: customer orders with their line items embedded
- payment: provider-confirmed payments, one per transaction id
- chat_message: support chat, one thread per customer
- chat_thread: latest activity per thread, kept up to date on every post
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

Role = Literal["admin", "customer"]
UserStatus = Literal["pending", "approved", "rejected"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "completed"]


class User(BaseModel):
    id: Optional[str] = None
    full_name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: str = Field(..., description="bcrypt hash")
    role: Role = Field("customer", description="role: admin or customer")
    status: UserStatus = Field("pending", description="Only approved users can sign in")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Product(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., gt=0, description="Unit price")
    stock_quantity: int = Field(0, ge=0, description="Units in stock")
    category: str = Field(..., min_length=1)
    image_url: Optional[str] = None
    is_active: bool = Field(True, description="Inactive products are hidden from the catalog")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderItem(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., gt=0, description="Price captured at purchase time")


class Order(BaseModel):
    id: Optional[str] = None
    customer_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., gt=0)
    status: OrderStatus = "pending"
    shipping_address: str = Field(..., min_length=1)
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    version: int = Field(0, ge=0, description="Bumped on every status change")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Payment(BaseModel):
    id: Optional[str] = None
    order_id: str
    amount: float = Field(..., gt=0)
    payment_method: str = "stripe"
    transaction_id: str = Field(..., min_length=1)
    status: PaymentStatus = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ChatMessage(BaseModel):
    id: Optional[str] = None
    customer_id: str = Field(..., description="Thread key")
    sender_id: str
    sender_role: Role
    content: str = Field(..., min_length=1)
    is_read: bool = False
    created_at: Optional[datetime] = None


class ChatThread(BaseModel):
    customer_id: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
