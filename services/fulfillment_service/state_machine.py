"""Order lifecycle transitions."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from .errors import InvalidTransition, OrderNotFound
from .models import FulfillmentStatus, Order, OrderStatus, PaymentStatus, Refund

logger = logging.getLogger(__name__)

SHIPPED_FROM = (OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value)
DELIVERED_FROM = SHIPPED_FROM + (OrderStatus.SHIPPED.value,)
TERMINAL_ORDER_STATES = (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)


@dataclass
class TransitionResult:
    """Outcome of a transition; fresh is False when the order was already past it."""
    fresh: bool
    order: Order


@dataclass
class RefundResult:
    recorded: bool  # False for a redelivered refund event
    refunded: bool  # True when this call moved the order to refunded
    order: Order


class OrderStateMachine:
    """
    The only writer of order status columns.

    Every transition is a single conditional UPDATE keyed on the current
    state, so concurrent or repeated calls for the same order apply at most
    once and never block each other.
    """

    def __init__(self, session_factory, clock: Callable[[], datetime] = datetime.utcnow):
        self.session_factory = session_factory
        self._now = clock

    async def get_order(self, order_id: UUID) -> Order:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            return order

    async def get_by_number(
        self,
        order_number: str,
        store_id: Optional[UUID] = None,
        email: Optional[str] = None,
    ) -> Order:
        """Order numbers repeat across stores; narrow by store or customer email."""
        query = select(Order).where(Order.order_number == order_number)
        if store_id is not None:
            query = query.where(Order.store_id == store_id)
        if email:
            query = query.where(func.lower(func.trim(Order.customer_email)) == email.strip().lower())
        query = query.order_by(Order.created_at.desc())
        async with self.session_factory() as session:
            result = await session.execute(query.limit(1))
            order = result.scalar_one_or_none()
            if order is None:
                raise OrderNotFound(order_number)
            return order

    async def get_by_gateway_ref(self, payment_intent_id: str) -> Order:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.payment_intent_id == payment_intent_id).limit(1)
            )
            order = result.scalar_one_or_none()
            if order is None:
                raise OrderNotFound(payment_intent_id)
            return order

    async def get_by_awb(self, awb_code: str) -> Order:
        async with self.session_factory() as session:
            result = await session.execute(select(Order).where(Order.awb_code == awb_code).limit(1))
            order = result.scalar_one_or_none()
            if order is None:
                raise OrderNotFound(awb_code)
            return order

    async def _transition(self, order_id: UUID, conditions: list, values: dict) -> TransitionResult:
        values.setdefault("updated_at", self._now())
        async with self.session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, *conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            order = await session.get(Order, order_id, populate_existing=True)
            if order is None:
                raise OrderNotFound(order_id)

        return TransitionResult(fresh=result.rowcount == 1, order=order)

    async def mark_paid(self, order_id: UUID, gateway_ref: Optional[str] = None) -> TransitionResult:
        """pending|failed -> paid, order confirmed. A no-op once paid or refunded."""
        values = {
            "payment_status": PaymentStatus.PAID.value,
            "order_status": OrderStatus.CONFIRMED.value,
            "paid_at": self._now(),
            "payment_error": None,
            "cancelled_at": None,
        }
        if gateway_ref:
            values["payment_intent_id"] = gateway_ref

        result = await self._transition(
            order_id,
            [Order.payment_status.notin_((PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value))],
            values,
        )
        if result.fresh:
            logger.info(f"Order {result.order.order_number} marked paid")
        else:
            logger.info(f"Order {result.order.order_number} already {result.order.payment_status}, skipping")
        return result

    async def mark_expired_or_cancelled(self, order_id: UUID, reason: str = "Checkout session expired") -> TransitionResult:
        """pending -> failed/cancelled. A no-op for paid, failed or refunded orders."""
        result = await self._transition(
            order_id,
            [Order.payment_status.notin_((
                PaymentStatus.PAID.value,
                PaymentStatus.FAILED.value,
                PaymentStatus.REFUNDED.value,
            ))],
            {
                "payment_status": PaymentStatus.FAILED.value,
                "order_status": OrderStatus.CANCELLED.value,
                "payment_error": reason,
                "cancelled_at": self._now(),
            },
        )
        if result.fresh:
            logger.info(f"Order {result.order.order_number} cancelled: {reason}")
        return result

    async def record_refund(
        self,
        order_id: UUID,
        amount: float,
        is_full: bool,
        gateway_ref: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Append a refund record, deduplicated by (order, gateway_ref, amount).

        A full refund also moves a paid order to refunded.
        """
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)

            existing = await session.execute(
                select(Refund.id).where(
                    Refund.order_id == order_id,
                    Refund.gateway_ref == gateway_ref,
                    Refund.amount == amount,
                )
            )
            if existing.first() is not None:
                logger.info(f"Refund {gateway_ref} ({amount}) already recorded for order {order.order_number}")
                return RefundResult(recorded=False, refunded=False, order=order)

            refunded = False
            try:
                session.add(Refund(
                    order_id=order_id,
                    amount=amount,
                    is_full=is_full,
                    gateway_ref=gateway_ref,
                    reason=reason,
                ))

                if is_full:
                    now = self._now()
                    result = await session.execute(
                        update(Order)
                        .where(Order.id == order_id, Order.payment_status == PaymentStatus.PAID.value)
                        .values(
                            payment_status=PaymentStatus.REFUNDED.value,
                            order_status=OrderStatus.REFUNDED.value,
                            refunded_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    refunded = result.rowcount == 1

                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"Refund {gateway_ref} for order {order_id} recorded concurrently")
                order = await session.get(Order, order_id, populate_existing=True)
                return RefundResult(recorded=False, refunded=False, order=order)

            order = await session.get(Order, order_id, populate_existing=True)

        logger.info(
            f"Recorded {'full' if is_full else 'partial'} refund of {amount} "
            f"for order {order.order_number}"
        )
        return RefundResult(recorded=True, refunded=refunded, order=order)

    async def attach_shipment(
        self,
        order_id: UUID,
        provider: str,
        awb_code: Optional[str],
        courier_name: Optional[str] = None,
        label_url: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
        carrier_shipment_id: Optional[str] = None,
    ) -> TransitionResult:
        """Record carrier shipment fields once; the first attach moves the order to processing."""
        return await self._transition(
            order_id,
            [
                Order.awb_code.is_(None),
                Order.carrier_shipment_id.is_(None),
                Order.payment_status == PaymentStatus.PAID.value,
                Order.order_status.in_(SHIPPED_FROM),
            ],
            {
                "shipping_provider": provider,
                "awb_code": awb_code,
                "carrier_shipment_id": carrier_shipment_id,
                "courier_name": courier_name,
                "label_url": label_url,
                "estimated_delivery_date": estimated_delivery,
                "order_status": OrderStatus.PROCESSING.value,
                "fulfillment_status": FulfillmentStatus.PROCESSING.value,
            },
        )

    async def mark_self_fulfilled(self, order_id: UUID) -> TransitionResult:
        return await self._transition(
            order_id,
            [Order.shipping_provider.is_(None), Order.payment_status == PaymentStatus.PAID.value],
            {"shipping_provider": "self"},
        )

    async def advance_fulfillment(self, order_id: UUID, fulfillment_status: str) -> TransitionResult:
        """
        Apply a carrier-reported status.

        The normalized status is always stored; shipped and delivered also
        advance order_status when the order is behind them.
        """
        order = await self.get_order(order_id)
        if order.order_status in TERMINAL_ORDER_STATES:
            raise InvalidTransition(order_id, order.order_status, fulfillment_status)

        now = self._now()
        if fulfillment_status in (FulfillmentStatus.SHIPPED.value, FulfillmentStatus.OUT_FOR_DELIVERY.value):
            result = await self._transition(
                order_id,
                [Order.order_status.in_(SHIPPED_FROM)],
                {
                    "order_status": OrderStatus.SHIPPED.value,
                    "fulfillment_status": fulfillment_status,
                    "shipped_at": now,
                },
            )
        elif fulfillment_status == FulfillmentStatus.DELIVERED.value:
            result = await self._transition(
                order_id,
                [Order.order_status.in_(DELIVERED_FROM)],
                {
                    "order_status": OrderStatus.DELIVERED.value,
                    "fulfillment_status": fulfillment_status,
                    "shipped_at": func.coalesce(Order.shipped_at, now),
                    "delivered_at": now,
                },
            )
        else:
            result = TransitionResult(fresh=False, order=order)

        if not result.fresh:
            await self._transition(
                order_id,
                [Order.order_status.notin_(TERMINAL_ORDER_STATES)],
                {"fulfillment_status": fulfillment_status},
            )
            result = TransitionResult(fresh=False, order=await self.get_order(order_id))

        return result
