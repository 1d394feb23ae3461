"""Shipment tracking: carrier lookups, status pushes and the local event log."""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .carriers.base import TrackingEvent
from .carriers.shiprocket import map_shiprocket_status
from .errors import CarrierError
from .models import FulfillmentStatus, Order, ShipmentEvent
from .notifier import Notifier
from .registry import MANUAL, ProviderRegistry
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)

PROCESSING_MESSAGE = "Your order is being processed. Tracking details will be available once it ships."


class ShipmentLog:
    """Append-only shipment activity per order, deduplicated by (date, status)."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def record(self, order_id: UUID, awb_code: Optional[str], events: Iterable[TrackingEvent]) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShipmentEvent.event_date, ShipmentEvent.status).where(ShipmentEvent.order_id == order_id)
            )
            seen = {(row.event_date, row.status) for row in result}

            added = 0
            for event in events:
                key = (event.date, event.status)
                if not event.status or key in seen:
                    continue
                seen.add(key)
                session.add(ShipmentEvent(
                    order_id=order_id,
                    awb_code=awb_code,
                    event_date=event.date,
                    status=event.status,
                    activity=event.activity,
                    location=event.location,
                ))
                added += 1

            if not added:
                return 0
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Shipment events for order {order_id} were recorded concurrently")
                return 0

        logger.info(f"Recorded {added} shipment events for order {order_id}")
        return added

    async def history(self, order_id: UUID) -> List[TrackingEvent]:
        """Newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShipmentEvent)
                .where(ShipmentEvent.order_id == order_id)
                .order_by(ShipmentEvent.created_at.desc(), ShipmentEvent.event_date.desc())
            )
            rows = result.scalars().all()

        return [
            TrackingEvent(date=row.event_date, status=row.status, activity=row.activity or "",
                          location=row.location or "")
            for row in rows
        ]


def _event_dict(event: TrackingEvent) -> Dict[str, str]:
    return {"date": event.date, "status": event.status, "activity": event.activity, "location": event.location}


class TrackingService:
    def __init__(
        self,
        state: OrderStateMachine,
        registry: ProviderRegistry,
        shipment_log: ShipmentLog,
        notifier: Notifier,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.state = state
        self.registry = registry
        self.shipment_log = shipment_log
        self.notifier = notifier
        self._now = clock

    async def public_lookup(self, order_number: str, email: Optional[str] = None) -> Dict[str, Any]:
        """
        Customer-facing tracking by order number.

        When an email is given it must match the order; a mismatch looks the
        same as an unknown order. Carrier failures fall back to the events
        already stored locally.
        """
        order = await self.state.get_by_number(order_number, email=email)

        response: Dict[str, Any] = {
            "order_number": order.order_number,
            "order_status": order.order_status,
            "fulfillment_status": order.fulfillment_status,
            "courier_name": order.courier_name,
            "awb_code": order.awb_code,
            "estimated_delivery": order.estimated_delivery_date.isoformat() if order.estimated_delivery_date else None,
            "current_location": None,
            "events": [],
        }

        if not order.awb_code:
            response["message"] = PROCESSING_MESSAGE
            return response

        events: List[TrackingEvent] = []
        if order.shipping_provider and order.shipping_provider != "self":
            try:
                resolved = await self.registry.resolve(order.store_id, order.shipping_provider)
                if resolved is not MANUAL:
                    tracking = await resolved.adapter.track_shipment(order.awb_code)
                    await self.shipment_log.record(order.id, order.awb_code, tracking.events)
                    events = tracking.events
                    response["current_location"] = tracking.current_location
                    response["carrier_status"] = tracking.current_status
                    if tracking.estimated_delivery:
                        response["estimated_delivery"] = tracking.estimated_delivery
            except CarrierError as e:
                logger.warning(f"Live tracking for {order.order_number} unavailable, using stored events: {e}")

        if not events:
            events = await self.shipment_log.history(order.id)

        response["events"] = [_event_dict(event) for event in events]
        return response

    async def handle_carrier_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a Shiprocket status push to the order that owns the AWB."""
        awb_code = payload.get("awb") or payload.get("awb_code")
        if not awb_code:
            logger.warning("Carrier webhook without AWB ignored")
            return {"status": "ignored"}

        order = await self.state.get_by_awb(str(awb_code))
        raw_status = payload.get("current_status") or payload.get("shipment_status") or ""
        fulfillment_status = map_shiprocket_status(raw_status)

        events = [
            TrackingEvent(
                date=str(scan.get("date") or ""),
                status=str(scan.get("sr-status-label") or scan.get("status") or ""),
                activity=scan.get("activity") or "",
                location=scan.get("location") or "",
            )
            for scan in payload.get("scans") or []
        ]
        if raw_status:
            events.append(TrackingEvent(
                date=str(payload.get("current_timestamp") or self._now().isoformat()),
                status=raw_status,
                activity=f"Status updated to {raw_status}",
                location="",
            ))
        await self.shipment_log.record(order.id, order.awb_code, events)

        transition = await self.state.advance_fulfillment(order.id, fulfillment_status)
        if transition.fresh:
            await self._notify_progress(transition.order, fulfillment_status)

        logger.info(f"Order {order.order_number} fulfillment status: {fulfillment_status} ({raw_status})")
        return {"status": "ok", "fulfillment_status": fulfillment_status}

    async def _notify_progress(self, order: Order, fulfillment_status: str):
        try:
            if fulfillment_status == FulfillmentStatus.DELIVERED.value:
                await self.notifier.notify_order_delivered(order)
            elif fulfillment_status in (FulfillmentStatus.SHIPPED.value, FulfillmentStatus.OUT_FOR_DELIVERY.value):
                await self.notifier.notify_order_shipped(order)
        except Exception:
            logger.error(f"Progress notification for {order.order_number} failed", exc_info=True)
