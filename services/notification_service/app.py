"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import FastAPI

from shared.config import Settings
from shared.events import (
    BaseEvent,
    EventType,
    OrderCancelledEvent,
    OrderConfirmedEvent,
    OrderDeliveredEvent,
    OrderShippedEvent,
    PaymentRefundedEvent,
    ShipmentCreatedEvent,
    ShipmentFailedEvent,
)
from shared.message_broker import MessageBroker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(
    service_name="notification-service",
    service_port=8005,
)

# Message broker
message_broker = MessageBroker(settings.rabbitmq_url)

Email = Tuple[str, str, str]  # recipient, subject, body


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""

    # Startup
    logger.info("Starting Notification Service...")

    await message_broker.connect()
    await subscribe_to_events()

    logger.info("Notification Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Notification Service...")
    await message_broker.disconnect()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "notification-service"}


# Notification Logic
async def send_email(recipient: str, subject: str, body: str):
    """
    Send email notification.

    In a real system, this would integrate with SendGrid, SES, or similar.
    """
    logger.info(f"[EMAIL] To: {recipient}")
    logger.info(f"[EMAIL] Subject: {subject}")
    logger.info(f"[EMAIL] Body: {body}")
    logger.info("-" * 60)


def _date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "TBD"


def render_email(event: BaseEvent) -> Optional[Email]:
    """Build the email for an event; None when there is nobody to send it to."""
    if isinstance(event, ShipmentFailedEvent):
        if not event.merchant_email:
            return None
        return (
            event.merchant_email,
            f"Action needed: shipment for order {event.order_number} failed",
            f"We could not create a shipment for order {event.order_number} after "
            f"{event.attempts} attempts. Last error: {event.error}. "
            f"Please create the shipment manually from your dashboard.",
        )

    recipient = getattr(event, "customer_email", None)
    if not recipient:
        return None
    name = event.customer_name or "there"

    if isinstance(event, OrderConfirmedEvent):
        return (
            recipient,
            f"Order {event.order_number} confirmed",
            f"Hi {name}, we received your payment of {event.total_amount:.2f} "
            f"and your order is being prepared for shipment.",
        )
    if isinstance(event, OrderCancelledEvent):
        return (
            recipient,
            f"Order {event.order_number} cancelled",
            f"Hi {name}, your order was cancelled: {event.reason}.",
        )
    if isinstance(event, ShipmentCreatedEvent):
        courier = event.courier_name or "our delivery partner"
        tracking = f" Tracking number: {event.awb_code}." if event.awb_code else ""
        return (
            recipient,
            f"Order {event.order_number} is ready to ship",
            f"Hi {name}, your order will be delivered by {courier}.{tracking}",
        )
    if isinstance(event, OrderShippedEvent):
        return (
            recipient,
            f"Order {event.order_number} shipped",
            f"Hi {name}, your order is on its way ({event.awb_code}). "
            f"Estimated delivery: {_date(event.estimated_delivery)}",
        )
    if isinstance(event, OrderDeliveredEvent):
        return (
            recipient,
            f"Order {event.order_number} delivered",
            f"Hi {name}, your order was delivered on {_date(event.delivered_at)}.",
        )
    if isinstance(event, PaymentRefundedEvent):
        kind = "full" if event.is_full else "partial"
        return (
            recipient,
            f"Refund for order {event.order_number}",
            f"Hi {name}, a {kind} refund of {event.amount:.2f} has been processed.",
        )
    return None


async def handle_notification(event: BaseEvent):
    email = render_email(event)
    if email is None:
        logger.info(f"No recipient for {event.event_type.value} on order {event.aggregate_id}")
        return
    await send_email(*email)


# Event Handlers
async def subscribe_to_events():
    """Subscribe to fulfillment events for notifications."""

    async def log_all_events(event: BaseEvent):
        """Log all events for audit purposes."""
        logger.info(
            f"Event received: {event.event_type.value} "
            f"(id={event.event_id}, correlation={event.correlation_id})"
        )

    for event_type in EventType:
        await message_broker.subscribe_to_event(
            event_type,
            f"notification_service_{event_type.value.replace('.', '_')}",
            handle_notification,
        )

    # Subscribe to all events for logging
    await message_broker.subscribe_to_pattern(
        "*.*",
        "notification_service_all_events",
        log_all_events,
    )

    logger.info("Subscribed to notification events")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
