"""Database models for the Fulfillment Service."""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from shared.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class PaymentStatus(str, Enum):
    """Payment sub-status of an order."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    """Carrier-reported status, normalized."""
    PROCESSING = "processing"
    PACKED = "packed"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class CourierStrategy(str, Enum):
    CHEAPEST = "cheapest"
    FASTEST = "fastest"


class AlertPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Store(Base):
    """Merchant and its fulfillment settings."""

    __tablename__ = "stores"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    contact_email = Column(String(255), nullable=True)

    # Merchant-owned payment gateway webhook secret (encrypted)
    stripe_webhook_secret = Column(Text, nullable=True)
    stripe_credentials_verified = Column(Boolean, default=False, nullable=False)

    courier_strategy = Column(String(20), default=CourierStrategy.CHEAPEST.value, nullable=False)
    auto_create_shipment = Column(Boolean, default=True, nullable=False)
    default_package = Column(JSONType, nullable=True)  # {"length", "breadth", "height", "weight"}
    pickup_pincode = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """Order aggregate root. Status columns are written only by OrderStateMachine."""

    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    order_number = Column(String(50), nullable=False)

    # Customer
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    shipping_address = Column(JSONType, nullable=False)

    # Totals
    subtotal = Column(Float, nullable=False, default=0.0)
    shipping_cost = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    payment_method = Column(String(20), default="stripe", nullable=False)

    # Status
    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    order_status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False, index=True)
    fulfillment_status = Column(String(30), nullable=True)

    # Gateway correlation
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_error = Column(Text, nullable=True)

    # Carrier
    shipping_provider = Column(String(20), nullable=True)
    awb_code = Column(String(100), nullable=True, index=True)
    carrier_shipment_id = Column(String(100), nullable=True)
    courier_name = Column(String(255), nullable=True)
    label_url = Column(Text, nullable=True)
    estimated_delivery_date = Column(DateTime, nullable=True)

    # Timestamps
    paid_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("OrderItem", lazy="selectin", order_by="OrderItem.id")

    __table_args__ = (
        UniqueConstraint("store_id", "order_number", name="uq_orders_store_number"),
        Index("ix_orders_status_created", "order_status", "created_at"),
    )


class OrderItem(Base):
    """Line item. Immutable after creation."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Uuid, nullable=False)
    variant_id = Column(Uuid, nullable=True)
    product_title = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid, primary_key=True, default=uuid4)
    store_id = Column(Uuid, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    track_quantity = Column(Boolean, nullable=False, default=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Uuid, primary_key=True, default=uuid4)
    product_id = Column(Uuid, ForeignKey("products.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    track_quantity = Column(Boolean, nullable=False, default=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class InventoryReservation(Base):
    """Temporary stock hold placed at checkout."""

    __tablename__ = "inventory_reservations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, nullable=False, index=True)
    product_id = Column(Uuid, nullable=False)
    variant_id = Column(Uuid, nullable=True)
    quantity = Column(Integer, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "product_id", "variant_id", name="uq_reservation_line"),
    )


class Refund(Base):
    """Refund recorded from the payment gateway."""

    __tablename__ = "refunds"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    is_full = Column(Boolean, nullable=False)
    gateway_ref = Column(String(255), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "gateway_ref", "amount", name="uq_refund_gateway_amount"),
    )


class ShippingProviderConfig(Base):
    """Carrier account configured by a merchant."""

    __tablename__ = "shipping_provider_configs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    store_id = Column(Uuid, ForeignKey("stores.id"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    credentials = Column(Text, nullable=False)  # encrypted JSON
    pickup_location = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "provider", name="uq_provider_per_store"),
    )


class ShipmentEvent(Base):
    """Append-only carrier tracking activity."""

    __tablename__ = "shipment_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=False, index=True)
    awb_code = Column(String(100), nullable=True)
    event_date = Column(String(64), nullable=False)  # carrier timestamp as reported
    status = Column(String(100), nullable=False)
    activity = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "event_date", "status", name="uq_shipment_event"),
    )


class MerchantAlert(Base):
    """Dashboard notification for the merchant."""

    __tablename__ = "merchant_alerts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    store_id = Column(Uuid, nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String(20), default=AlertPriority.NORMAL.value, nullable=False)
    data = Column(JSONType, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
