"""Customer and merchant notifications, delivered through the outbox."""
import logging
from typing import Optional, Protocol

from shared.events import (
    BaseEvent,
    OrderCancelledEvent,
    OrderConfirmedEvent,
    OrderDeliveredEvent,
    OrderShippedEvent,
    PaymentRefundedEvent,
    ShipmentCreatedEvent,
    ShipmentFailedEvent,
)
from shared.outbox import save_event_to_outbox

from .models import AlertPriority, MerchantAlert, Order

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify_order_confirmed(self, order: Order) -> None:
        ...

    async def notify_order_cancelled(self, order: Order, reason: str) -> None:
        ...

    async def notify_shipment_created(self, order: Order) -> None:
        ...

    async def notify_shipment_failed(self, order: Order, error: str, attempts: int,
                                     merchant_email: Optional[str] = None) -> None:
        ...

    async def notify_refund_processed(self, order: Order, amount: float, is_full: bool) -> None:
        ...

    async def notify_order_shipped(self, order: Order) -> None:
        ...

    async def notify_order_delivered(self, order: Order) -> None:
        ...


def _order_fields(order: Order) -> dict:
    return {
        "aggregate_id": order.id,
        "correlation_id": order.id,
        "order_id": order.id,
        "order_number": order.order_number,
        "store_id": order.store_id,
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
    }


class OutboxNotifier:
    """Writes one outbox row per notification, each in its own transaction."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _emit(self, event: BaseEvent):
        async with self.session_factory() as session:
            await save_event_to_outbox(session, event)
            await session.commit()
        logger.info(f"Queued {event.event_type.value} notification for order {event.aggregate_id}")

    async def notify_order_confirmed(self, order: Order) -> None:
        await self._emit(OrderConfirmedEvent(**_order_fields(order), total_amount=order.total_amount))

    async def notify_order_cancelled(self, order: Order, reason: str) -> None:
        await self._emit(OrderCancelledEvent(**_order_fields(order), reason=reason))

    async def notify_shipment_created(self, order: Order) -> None:
        await self._emit(ShipmentCreatedEvent(
            **_order_fields(order),
            provider=order.shipping_provider or "self",
            awb_code=order.awb_code,
            courier_name=order.courier_name,
            label_url=order.label_url,
        ))

    async def notify_shipment_failed(self, order: Order, error: str, attempts: int,
                                     merchant_email: Optional[str] = None) -> None:
        await self._emit(ShipmentFailedEvent(
            **_order_fields(order),
            merchant_email=merchant_email,
            error=error,
            attempts=attempts,
        ))

    async def notify_refund_processed(self, order: Order, amount: float, is_full: bool) -> None:
        await self._emit(PaymentRefundedEvent(**_order_fields(order), amount=amount, is_full=is_full))

    async def notify_order_shipped(self, order: Order) -> None:
        await self._emit(OrderShippedEvent(
            **_order_fields(order),
            awb_code=order.awb_code or "",
            courier_name=order.courier_name,
            estimated_delivery=order.estimated_delivery_date,
        ))

    async def notify_order_delivered(self, order: Order) -> None:
        await self._emit(OrderDeliveredEvent(
            **_order_fields(order),
            awb_code=order.awb_code or "",
            delivered_at=order.delivered_at or order.updated_at,
        ))


class MerchantAlerts:
    """Dashboard alerts for merchants."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def shipment_failed(self, order: Order, error: str, attempts: int) -> MerchantAlert:
        alert = MerchantAlert(
            store_id=order.store_id,
            type="system",
            title="Shipment Creation Failed",
            message=(
                f"Automatic shipment creation failed for order {order.order_number} "
                f"after {attempts} attempts: {error}. Please create the shipment manually."
            ),
            priority=AlertPriority.HIGH.value,
            data={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "error": error,
                "attempts": attempts,
            },
        )
        async with self.session_factory() as session:
            session.add(alert)
            await session.commit()

        logger.warning(f"Merchant alert raised for order {order.order_number}: {error}")
        return alert
