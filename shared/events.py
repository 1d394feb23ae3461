"""Event definitions for order fulfillment notifications."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types emitted by the fulfillment backbone."""

    # Order events
    ORDER_CONFIRMED = "order.confirmed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_SHIPPED = "order.shipped"
    ORDER_DELIVERED = "order.delivered"

    # Shipment events
    SHIPMENT_CREATED = "shipment.created"
    SHIPMENT_FAILED = "shipment.failed"

    # Payment events
    PAYMENT_REFUNDED = "payment.refunded"


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    event_id: UUID = Field(default_factory=uuid4)
    event_type: EventType
    aggregate_id: UUID  # order id
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    version: int = Field(default=1)
    correlation_id: UUID  # For tracing across services
    causation_id: Optional[UUID] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OrderEvent(BaseEvent):
    """Common payload for customer-facing order notifications."""
    order_id: UUID
    order_number: str
    store_id: UUID
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None


class OrderConfirmedEvent(OrderEvent):
    """Emitted once when a payment confirms an order."""
    event_type: EventType = EventType.ORDER_CONFIRMED
    total_amount: float


class OrderCancelledEvent(OrderEvent):
    """Emitted when an unpaid order expires or is cancelled."""
    event_type: EventType = EventType.ORDER_CANCELLED
    reason: str


class OrderShippedEvent(OrderEvent):
    """Emitted when the carrier reports the package picked up."""
    event_type: EventType = EventType.ORDER_SHIPPED
    awb_code: str
    courier_name: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class OrderDeliveredEvent(OrderEvent):
    """Emitted when the carrier reports delivery."""
    event_type: EventType = EventType.ORDER_DELIVERED
    awb_code: str
    delivered_at: datetime


class ShipmentCreatedEvent(OrderEvent):
    """Emitted when a carrier shipment is attached to an order."""
    event_type: EventType = EventType.SHIPMENT_CREATED
    provider: str
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    label_url: Optional[str] = None


class ShipmentFailedEvent(OrderEvent):
    """Emitted to the merchant when automatic shipment creation is exhausted."""
    event_type: EventType = EventType.SHIPMENT_FAILED
    merchant_email: Optional[str] = None
    error: str
    attempts: int


class PaymentRefundedEvent(OrderEvent):
    """Emitted when a refund has been recorded against an order."""
    event_type: EventType = EventType.PAYMENT_REFUNDED
    amount: float
    is_full: bool


# Event Registry for deserialization
EVENT_REGISTRY: Dict[EventType, type[BaseEvent]] = {
    EventType.ORDER_CONFIRMED: OrderConfirmedEvent,
    EventType.ORDER_CANCELLED: OrderCancelledEvent,
    EventType.ORDER_SHIPPED: OrderShippedEvent,
    EventType.ORDER_DELIVERED: OrderDeliveredEvent,

    EventType.SHIPMENT_CREATED: ShipmentCreatedEvent,
    EventType.SHIPMENT_FAILED: ShipmentFailedEvent,

    EventType.PAYMENT_REFUNDED: PaymentRefundedEvent,
}


def deserialize_event(event_data: Dict[str, Any]) -> BaseEvent:
    """Deserialize event from dictionary."""
    event_type = EventType(event_data["event_type"])
    event_class = EVENT_REGISTRY.get(event_type, BaseEvent)
    return event_class(**event_data)
