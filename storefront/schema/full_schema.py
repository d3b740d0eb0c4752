import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid6 import uuid7
from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid
from sqlmodel import Column, SQLModel, Field, Relationship, String
from storefront.common.utils import now


# --------------------------------------------------------------------------------------------
# enums , stored as their string values

class ProductStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDING = "refunding"     # a refund is out at the provider
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    CARD_GATEWAY = "card_gateway"
    WALLET_GATEWAY = "wallet_gateway"


class SettlementTiming(str, enum.Enum):
    IMMEDIATE = "immediate"   # stock committed when the order is created
    DEFERRED = "deferred"     # stock committed when the gateway confirms payment


class CancelledBy(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    SYSTEM = "system"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


# --------------------------------------------------------------------------------------------
# collaborators owned by other parts of the storefront , read (and for product , stock mutated) by checkout

class Users(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(), unique=True, index=True, nullable=False))
    email: Optional[str] = Field(default=None, sa_column=Column(String(320), nullable=True, unique=True))
    name: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))


class Address(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(sa_column=Column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False))
    full_name: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = Field(default="US", nullable=False)
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    deleted_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))


class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(255), nullable=False))
    sku: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    price: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))                 # cents
    online_price: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    status: str = Field(default=ProductStatus.ACTIVE.value, sa_column=Column(String(16), nullable=False, index=True))
    quantity: int = Field(default=0, sa_column=Column(Integer, nullable=False))               # available stock
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))


# user --> cart (1:1) , created lazily on first add and emptied (not deleted) when it turns into an order
class Cart(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(sa_column=Column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True, unique=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))

    cart_items: List["CartItem"] = Relationship(back_populates="cart")


class CartItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    cart_id: int = Field(sa_column=Column(ForeignKey("cart.id", ondelete="CASCADE"), nullable=False, index=True))
    product_id: int = Field(sa_column=Column(ForeignKey("product.id", ondelete="CASCADE"), nullable=False))
    quantity: int = Field(default=1)
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    cart: "Cart" = Relationship(back_populates="cart_items")

    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", name="uq_cart_product"),
    )


# --------------------------------------------------------------------------------------------
# order aggregate : Orders + OrderItem rows + exactly one Payment , always written together

class Orders(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(), unique=True, index=True, nullable=False))
    order_number: str = Field(sa_column=Column(String(32), unique=True, nullable=False))
    user_id: int = Field(sa_column=Column(Integer, ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False))
    status: str = Field(default=OrderStatus.PENDING.value, sa_column=Column(String(16), nullable=False, index=True))
    payment_status: str = Field(default=OrderPaymentStatus.PENDING.value, sa_column=Column(String(16), nullable=False, index=True))
    payment_method: str = Field(sa_column=Column(String(32), nullable=False))
    settlement_timing: str = Field(sa_column=Column(String(16), nullable=False))
    currency: str = Field(default="USD", sa_column=Column(String(8), nullable=False))
    subtotal: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))   # cents
    tax: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    shipping: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    total: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    # copied , not referenced , so later address edits never rewrite history
    shipping_address: dict = Field(sa_column=Column(JSON, nullable=False))
    billing_address: dict = Field(sa_column=Column(JSON, nullable=False))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    # set once when every line's stock was decremented , cleared once when it is given back
    stock_committed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    cancellation_reason: Optional[str] = Field(default=None, sa_column=Column(String(255), nullable=True))
    cancellation_notes: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    cancelled_by: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True, index=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True, index=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))

    items: List["OrderItem"] = Relationship(back_populates="order", sa_relationship_kwargs={"cascade": "all, delete-orphan"})
    payment: Optional["Payment"] = Relationship(back_populates="order", sa_relationship_kwargs={"uselist": False, "cascade": "all, delete-orphan"})

    __table_args__ = (
        Index("ix_orders_user_pending_checkout", "user_id", "payment_method", "payment_status", "created_at"),
        Index("ix_orders_status_cancelled_at", "status", "cancelled_at"),
    )


class OrderItem(SQLModel, table=True):
    """Price is captured at order time and never follows later catalog changes."""

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True))
    product_id: int = Field(sa_column=Column(Integer, ForeignKey("product.id", ondelete="RESTRICT"), nullable=False))
    product_name: str = Field(sa_column=Column(String(255), nullable=False))
    quantity: int = Field(sa_column=Column(Integer, nullable=False))
    unit_price: int = Field(sa_column=Column(BigInteger, nullable=False))
    total_price: int = Field(sa_column=Column(BigInteger, nullable=False))

    order: "Orders" = Relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="uq_order_product"),
    )


class Payment(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(default_factory=uuid7, sa_column=Column(Uuid(), unique=True, index=True, nullable=False))
    order_id: int = Field(sa_column=Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True))
    provider: str = Field(sa_column=Column(String(32), nullable=False))                # "cod" , "card" , "wallet"
    payment_method: str = Field(sa_column=Column(String(32), nullable=False))
    correlation_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, unique=True))  # payment intent / gateway order id
    capture_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    amount: int = Field(sa_column=Column(BigInteger, nullable=False))
    currency: str = Field(default="USD", sa_column=Column(String(8), nullable=False))
    status: str = Field(default=PaymentStatus.PENDING.value, sa_column=Column(String(16), nullable=False, index=True))
    refunded_amount: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    gateway_response: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))
    paid_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    order: "Orders" = Relationship(back_populates="payment")


# every webhook delivery we accepted past signature verification , one row per provider event id
class PaymentWebhookEvent(SQLModel, table=True):

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(sa_column=Column(String(32), nullable=False, index=True))
    provider_event_id: str = Field(sa_column=Column(String(128), nullable=False))
    event_type: Optional[str] = Field(default=None, sa_column=Column(String(64), nullable=True))
    correlation_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    order_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True, index=True))
    payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    status: str = Field(default=WebhookEventStatus.RECEIVED.value, sa_column=Column(String(16), nullable=False))
    attempts: int = Field(default=1, sa_column=Column(Integer, nullable=False))
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    processed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True, index=True))
    created_at: datetime = Field(default_factory=now, sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_provider_event"),
    )
