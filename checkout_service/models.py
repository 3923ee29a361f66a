import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED})


# Defines the ORM model for an 'Order' stored in the database.
class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    total_cents = Column(Integer, nullable=False)  # Minor units, never floats.
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value)
    address_id = Column(String(36), ForeignKey("addresses.id"), nullable=True)
    # Correlation key to the payment gateway; the unique index is the last idempotency guard.
    payment_intent_id = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.position",
    )

    @property
    def status_enum(self) -> OrderStatus:
        return OrderStatus(self.status)


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    # Snapshot of the unit price at purchase time.
    price_cents = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False, default=0)  # Cart line order.
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    order = relationship("Order", back_populates="items")


# A product as far as checkout is concerned: its price and how many units are left.
class Product(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False, default="")
    price_cents = Column(Integer, nullable=False)
    discount_price_cents = Column(Integer, nullable=True)
    stock = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)  # Bumped on every stock write.

    @property
    def effective_price_cents(self) -> int:
        if self.discount_price_cents is not None:
            return self.discount_price_cents
        return self.price_cents


class Address(Base):
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    street = Column(String, nullable=False)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postal_code = Column(String, nullable=False)
    country = Column(String, nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


# Gateway events already applied, keyed by the gateway's event id.
class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
