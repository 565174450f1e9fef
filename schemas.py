"""
Database Schemas for the Storefront API

Each Pydantic model corresponds to a MongoDB collection (lowercased name).
Indexes are created at startup by database.ensure_indexes().
"""
from __future__ import annotations
from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional, Literal
from datetime import datetime

Role = Literal['user', 'admin', 'superadmin']
ProductStatus = Literal['active', 'inactive']
OrderStatus = Literal['pending', 'confirmed', 'processing', 'shipped', 'out-for-delivery', 'delivered', 'cancelled']
OrderPaymentStatus = Literal['pending', 'paid', 'refunded']
PaymentStatus = Literal['pending', 'processing', 'succeeded', 'failed', 'canceled', 'refunded']
PaymentMethod = Literal['card', 'bank_transfer', 'wallet', 'other']
RefundReason = Literal['duplicate', 'fraudulent', 'requested_by_customer', 'other']

class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = 'user'
    photo: Optional[str] = None
    createdAt: Optional[datetime] = None

class Category(BaseModel):
    name: str
    slug: str

class Review(BaseModel):
    id: str
    userId: str
    name: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    createdAt: Optional[datetime] = None

class Product(BaseModel):
    name: str
    slug: str
    description: str
    price: float = Field(..., ge=0, description='Price in dollars')
    discount: float = Field(0, ge=0, le=100, description='Percent off')
    stock: int = Field(0, ge=0)
    inStock: bool = True
    status: ProductStatus = 'active'
    photos: List[str] = []
    sizes: List[str] = []
    colors: List[str] = []
    categories: List[str] = []
    reviews: List[Review] = []
    rating: float = Field(0, ge=0, le=5)
    numReviews: int = 0

class CartItem(BaseModel):
    productId: str
    quantity: int = Field(..., ge=1, le=10)
    price: float = Field(..., ge=0, description='Unit price captured when added')
    selectedSize: Optional[str] = None
    selectedColor: Optional[str] = None
    addedAt: datetime
    expiresAt: datetime

class Cart(BaseModel):
    userId: str
    items: List[CartItem] = []
    totalItems: int = 0
    totalPrice: float = 0
    version: int = 0
    lastUpdated: Optional[datetime] = None

class ShippingAddress(BaseModel):
    address: str
    city: str
    postalCode: str
    country: str

class OrderItem(BaseModel):
    productId: str
    name: str
    price: float
    qty: int = Field(..., ge=1)
    total: float

class OrderPhoto(BaseModel):
    url: str
    publicId: str

class Order(BaseModel):
    userId: str
    items: List[OrderItem]
    shippingAddress: ShippingAddress
    paymentMethod: str
    itemsPrice: float
    shippingPrice: float
    taxPrice: float = 0
    totalPrice: float
    status: OrderStatus = 'pending'
    paymentStatus: OrderPaymentStatus = 'pending'
    isDelivered: bool = False
    deliveredAt: Optional[datetime] = None
    photos: List[OrderPhoto] = []

class CardDetails(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    funding: Optional[str] = None

class Payment(BaseModel):
    userId: str
    orderId: str
    stripePaymentIntentId: str
    stripeClientSecret: str
    amount: float = Field(..., ge=0)
    currency: str = 'USD'
    status: PaymentStatus = 'pending'
    paymentMethod: PaymentMethod = 'card'
    paymentMethodDetails: Optional[CardDetails] = None
    description: str
    metadata: dict = {}
    refundedAmount: float = Field(0, ge=0)
    refundReason: Optional[RefundReason] = None
    failureCode: Optional[str] = None
    failureMessage: Optional[str] = None
    processedAt: Optional[datetime] = None
    refundedAt: Optional[datetime] = None
    version: int = 0

class WebhookEvent(BaseModel):
    eventId: str
    type: str
    receivedAt: datetime
