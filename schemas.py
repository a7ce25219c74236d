"""
Database Schemas for the STES pool-equipment storefront

Each Pydantic model corresponds to a MongoDB collection (lowercased name).
Embedded documents (addresses, wishlist items, push subscriptions) are
plain sub-models.
"""
from __future__ import annotations
from pydantic import BaseModel, EmailStr, Field
from typing import Dict, List, Literal, Optional
from datetime import datetime

Category = Literal['pools', 'pumps-motors', 'filters', 'chemicals', 'cleaning', 'heating', 'lighting', 'accessories', 'maintenance']
AddressType = Literal['home', 'work', 'other']
OrderStatus = Literal['pending', 'confirmed', 'processing', 'shipped', 'delivered', 'cancelled']
NotificationType = Literal['email', 'sms', 'push', 'in-app']
NotificationCategory = Literal['order_update', 'delivery', 'promotion', 'newsletter', 'reminder', 'welcome', 'test']
NotificationStatus = Literal['pending', 'sent', 'delivered', 'failed', 'read']

PHONE_PATTERN = r'^(\+216)?[0-9]{8}$'
TIME_PATTERN = r'^([01]?[0-9]|2[0-3]):[0-5][0-9]$'


class RatingStats(BaseModel):
    averageRating: float = 0
    totalReviews: int = 0
    ratingDistribution: Dict[str, int] = Field(default_factory=lambda: {str(i): 0 for i in range(1, 6)})


class Review(BaseModel):
    customer: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., max_length=100)
    comment: str = Field(..., max_length=1000)
    verified: bool = False
    createdAt: Optional[datetime] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    price: float = Field(..., ge=0, description='Price in TND')
    category: Category
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    image: str = '/api/placeholder/300/200'
    images: List[str] = []
    tags: List[str] = []
    inStock: bool = True
    stockQuantity: int = Field(0, ge=0)
    featured: bool = False
    sku: Optional[str] = None
    reviews: List[Review] = []
    ratingStats: RatingStats = Field(default_factory=RatingStats)


class Address(BaseModel):
    id: Optional[str] = None
    type: AddressType = 'home'
    firstName: str = Field(..., min_length=1, max_length=50)
    lastName: str = Field(..., min_length=1, max_length=50)
    company: Optional[str] = None
    address1: str = Field(..., min_length=1)
    address2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postalCode: str = Field(..., min_length=1)
    country: str = 'Tunisia'
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    isDefault: bool = False


class Customer(BaseModel):
    firstName: str = Field(..., min_length=1, max_length=50)
    lastName: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password_hash: str
    phone: Optional[str] = None
    isActive: bool = True
    loginAttempts: int = 0
    lockUntil: Optional[datetime] = None
    lastLogin: Optional[datetime] = None
    addresses: List[Address] = []
    loyaltyPoints: int = 0
    createdAt: Optional[datetime] = None


class ProductSnapshot(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = None
    image: Optional[str] = None
    category: Optional[str] = None


class WishlistItem(BaseModel):
    productId: str
    productSnapshot: ProductSnapshot = Field(default_factory=ProductSnapshot)
    addedAt: Optional[datetime] = None


class Wishlist(BaseModel):
    customer: str
    items: List[WishlistItem] = []
    isPublic: bool = False
    name: str = 'Ma liste de souhaits'
    description: str = ''


class OrderItem(BaseModel):
    productId: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class StatusEvent(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None
    location: Optional[str] = None
    updatedBy: str = 'system'


class OrderCustomer(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    address: Dict[str, Optional[str]] = {}


class Order(BaseModel):
    orderNumber: str
    trackingCode: str
    customerId: Optional[str] = None
    customer: OrderCustomer
    items: List[OrderItem]
    shippingCost: float = Field(0, ge=0)
    totalAmount: float = Field(..., ge=0)
    status: OrderStatus = 'pending'
    statusHistory: List[StatusEvent] = []
    estimatedDelivery: Optional[datetime] = None
    actualDelivery: Optional[datetime] = None
    isUrgent: bool = False
    deliveryInstructions: Optional[str] = Field(None, max_length=300)
    notes: Optional[str] = None


class EmailChannel(BaseModel):
    enabled: bool = True
    orderUpdates: bool = True
    deliveryUpdates: bool = True
    promotions: bool = True
    newsletter: bool = True


class SmsChannel(BaseModel):
    enabled: bool = False
    orderUpdates: bool = False
    deliveryUpdates: bool = False
    urgentOnly: bool = True


class PushChannel(BaseModel):
    enabled: bool = False
    orderUpdates: bool = False
    deliveryUpdates: bool = False
    promotions: bool = False
    inApp: bool = True


class QuietHours(BaseModel):
    enabled: bool = False
    start: str = Field('22:00', pattern=TIME_PATTERN)
    end: str = Field('08:00', pattern=TIME_PATTERN)


class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscription(BaseModel):
    endpoint: str
    keys: PushKeys
    isActive: bool = True
    lastUsed: Optional[datetime] = None


class NotificationPreferences(BaseModel):
    customer: str
    email: EmailChannel = Field(default_factory=EmailChannel)
    sms: SmsChannel = Field(default_factory=SmsChannel)
    push: PushChannel = Field(default_factory=PushChannel)
    pushSubscriptions: List[PushSubscription] = []
    timezone: str = 'Africa/Tunis'
    quietHours: QuietHours = Field(default_factory=QuietHours)


class NotificationLog(BaseModel):
    customer: str
    type: NotificationType
    category: NotificationCategory
    title: str = Field(..., max_length=100)
    message: str = Field(..., max_length=500)
    status: NotificationStatus = 'pending'
    failureReason: Optional[str] = None
    priority: Literal['low', 'normal', 'high', 'urgent'] = 'normal'
    orderId: Optional[str] = None
    sentAt: Optional[datetime] = None
