"""Drives an order from verified payment to attached shipment."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.stop import stop_base

from shared.config import Settings

from .carriers.base import (
    PackageDimensions,
    RateQuote,
    ShipmentItem,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    select_rate,
)
from .errors import (
    AuthenticationFailed,
    CarrierError,
    FulfillmentError,
    InvalidTransition,
    NoServiceableRoute,
    OrderNotFound,
    RemoteError,
)
from .inventory import InventoryLedger, LineItem
from .models import Order, PaymentStatus
from .notifier import MerchantAlerts, Notifier
from .registry import MANUAL, ProviderRegistry, ResolvedProvider
from .state_machine import OrderStateMachine
from .tracking import ShipmentLog
from .webhook_verifier import PaymentEvent

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RemoteError, AuthenticationFailed)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for carrier calls."""
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    deadline: Optional[float] = 60.0  # seconds for the whole sequence

    def delay_for(self, failed_attempts: int) -> float:
        """Sleep after the n-th failed attempt: base * factor^(n-1), capped."""
        return min(self.base_delay * self.backoff_factor ** (failed_attempts - 1), self.max_delay)

    @classmethod
    def background(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.shipment_max_attempts,
            base_delay=settings.shipment_base_delay,
            backoff_factor=settings.shipment_backoff_factor,
            max_delay=settings.shipment_max_delay,
            deadline=settings.shipment_deadline,
        )

    @classmethod
    def interactive(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.interactive_max_attempts,
            base_delay=settings.interactive_base_delay,
            backoff_factor=settings.shipment_backoff_factor,
            max_delay=settings.interactive_deadline,
            deadline=settings.interactive_deadline,
        )


class stop_before_deadline(stop_base):
    """Stop when the next backoff would end past the deadline."""

    def __init__(self, policy: RetryPolicy, started_at: float, clock: Callable[[], float]):
        self.policy = policy
        self.started_at = started_at
        self.clock = clock

    def __call__(self, retry_state: RetryCallState) -> bool:
        if self.policy.deadline is None:
            return False
        elapsed = self.clock() - self.started_at
        next_delay = self.policy.delay_for(retry_state.attempt_number)
        return elapsed + next_delay > self.policy.deadline


@dataclass
class ShipmentAttempt:
    attempt_number: int
    provider: str
    error: Optional[str]
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ShipmentOutcome:
    success: bool
    provider: Optional[str] = None
    manual: bool = False
    tracking_id: Optional[str] = None
    courier_name: Optional[str] = None
    rate: Optional[float] = None
    label_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    error: Optional[str] = None
    attempts: List[ShipmentAttempt] = field(default_factory=list)


class FulfillmentOrchestrator:
    """
    Consumes verified payment events.

    Duplicate deliveries are absorbed by the state machine: only the call
    that actually moves an order to paid touches inventory or carriers.
    """

    def __init__(
        self,
        state: OrderStateMachine,
        inventory: InventoryLedger,
        registry: ProviderRegistry,
        notifier: Notifier,
        alerts: MerchantAlerts,
        shipment_log: Optional[ShipmentLog] = None,
        policy: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.inventory = inventory
        self.registry = registry
        self.notifier = notifier
        self.alerts = alerts
        self.shipment_log = shipment_log
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    async def _resolve_order(self, event: PaymentEvent) -> Order:
        if event.order_id:
            return await self.state.get_order(event.order_id)
        if event.payment_intent:
            return await self.state.get_by_gateway_ref(event.payment_intent)
        raise OrderNotFound(f"event {event.id}")

    async def _safely(self, description: str, call, *args, **kwargs):
        """Run a side effect that must not undo or block the committed state change."""
        try:
            await call(*args, **kwargs)
        except Exception:
            logger.error(f"{description} failed", exc_info=True)

    # Payment events

    async def on_payment_confirmed(self, event: PaymentEvent, ship_inline: bool = True) -> Optional[Order]:
        """
        Returns the order when this call confirmed it; None for a duplicate.

        With ship_inline=False the caller is responsible for scheduling
        create_shipment_with_retry.
        """
        order = await self._resolve_order(event)
        transition = await self.state.mark_paid(order.id, event.payment_intent)
        if not transition.fresh:
            return None

        order = transition.order
        items = [LineItem.from_order_item(item) for item in order.items]
        await self._safely(f"Inventory reduction for {order.order_number}", self.inventory.reduce, items)
        await self._safely(f"Reservation release for {order.order_number}", self.inventory.release, order.id)
        await self._safely("Order confirmation notification", self.notifier.notify_order_confirmed, order)

        if ship_inline:
            await self.create_shipment_with_retry(order.id)
        return order

    async def on_payment_expired(self, event: PaymentEvent) -> bool:
        order = await self._resolve_order(event)
        if order.payment_status == PaymentStatus.PAID.value:
            logger.info(f"Ignoring expiry for paid order {order.order_number}")
            return False

        transition = await self.state.mark_expired_or_cancelled(order.id, "Checkout session expired")
        if transition.fresh:
            await self._safely(f"Reservation release for {order.order_number}", self.inventory.release, order.id)
            await self._safely(
                "Cancellation notification",
                self.notifier.notify_order_cancelled,
                transition.order,
                "Checkout session expired",
            )
        return transition.fresh

    async def on_charge_refunded(self, event: PaymentEvent) -> bool:
        """Record the refund; a full refund also restores stock."""
        order = await self._resolve_order(event)

        amount = event.amount_refunded
        is_full = amount >= order.total_amount
        gateway_ref = event.object.get("id") or event.payment_intent or event.id

        result = await self.state.record_refund(order.id, amount, is_full, gateway_ref)
        if not result.recorded:
            return False

        if result.refunded:
            items = [LineItem.from_order_item(item) for item in result.order.items]
            await self._safely(f"Inventory restore for {order.order_number}", self.inventory.restore, items)

        await self._safely(
            "Refund notification", self.notifier.notify_refund_processed, result.order, amount, is_full
        )
        return True

    # Shipments

    def _shipment_request(
        self,
        order: Order,
        resolved: ResolvedProvider,
        package: Optional[PackageDimensions],
    ) -> ShipmentRequest:
        address = order.shipping_address or {}
        street = ", ".join(
            part for part in (address.get("address_line1"), address.get("address_line2")) if part
        )
        return ShipmentRequest(
            order_number=order.order_number,
            customer_name=address.get("name") or order.customer_name,
            customer_phone=order.customer_phone or address.get("phone") or "",
            customer_email=order.customer_email,
            delivery_address=street,
            delivery_city=address.get("city", ""),
            delivery_state=address.get("state", ""),
            delivery_pincode=str(address.get("pincode") or address.get("postal_code") or ""),
            delivery_country=address.get("country") or "India",
            pickup_pincode=resolved.pickup_pincode,
            pickup_location=resolved.pickup_location,
            items=[
                ShipmentItem(name=i.product_title, quantity=i.quantity, price=i.unit_price, sku=i.sku)
                for i in order.items
            ],
            order_value=order.subtotal or order.total_amount,
            package=package or resolved.package,
            cod=order.payment_method == "cod",
        )

    async def create_shipment_with_retry(
        self,
        order_id: UUID,
        preference: Optional[str] = None,
        package: Optional[PackageDimensions] = None,
        policy: Optional[RetryPolicy] = None,
        escalate: bool = True,
        strategy: Optional[str] = None,
    ) -> ShipmentOutcome:
        """
        Create a carrier shipment for a paid order.

        Transport and authentication failures are retried per the policy;
        NoServiceableRoute and NotConfigured fail immediately. On failure the
        order stays paid/confirmed and, when escalate is set, the merchant is
        notified once. Nothing retries automatically after that.
        """
        policy = policy or self.policy
        order = await self.state.get_order(order_id)

        if order.payment_status != PaymentStatus.PAID.value:
            raise InvalidTransition(order_id, order.payment_status, "shipment")
        if order.awb_code or order.carrier_shipment_id:
            logger.info(f"Order {order.order_number} already has shipment {order.awb_code}")
            return ShipmentOutcome(
                success=True,
                provider=order.shipping_provider,
                tracking_id=order.awb_code,
                courier_name=order.courier_name,
                label_url=order.label_url,
                estimated_delivery=order.estimated_delivery_date,
            )

        attempts: List[ShipmentAttempt] = []
        provider_name = preference or "unknown"
        try:
            resolved = await self.registry.resolve(order.store_id, preference, automatic=escalate)
            if resolved is MANUAL:
                await self.state.mark_self_fulfilled(order.id)
                logger.info(f"Order {order.order_number} will be fulfilled by the merchant")
                return ShipmentOutcome(success=True, provider="self", manual=True)

            provider_name = resolved.provider.value
            if strategy:
                resolved.strategy = strategy
            request = self._shipment_request(order, resolved, package)
            result, quote = await self._create_with_retry(resolved, request, policy, attempts)

        except CarrierError as e:
            error = str(e)
            logger.warning(
                f"Shipment creation for {order.order_number} via {provider_name} failed "
                f"after {len(attempts)} attempts: {error}"
            )
            if escalate:
                await self._escalate(order, error, max(len(attempts), 1))
            return ShipmentOutcome(success=False, provider=provider_name, error=error, attempts=attempts)

        except Exception as e:
            logger.error(f"Unexpected error creating shipment for {order.order_number}", exc_info=True)
            if escalate:
                await self._escalate(order, str(e), max(len(attempts), 1))
            return ShipmentOutcome(success=False, provider=provider_name, error=str(e), attempts=attempts)

        transition = await self.state.attach_shipment(
            order.id,
            provider=provider_name,
            awb_code=result.tracking_id,
            courier_name=result.courier_name,
            label_url=result.label_url,
            estimated_delivery=result.estimated_delivery,
            carrier_shipment_id=result.shipment_id,
        )
        if transition.fresh:
            logger.info(
                f"Shipment {result.tracking_id} ({result.courier_name}) attached to order {order.order_number}"
            )
            if self.shipment_log is not None:
                created_event = TrackingEvent(
                    date=datetime.utcnow().isoformat(),
                    status="SHIPMENT CREATED",
                    activity=f"Shipment created with {result.courier_name or provider_name}",
                )
                await self._safely(
                    "Shipment event log", self.shipment_log.record, order.id, result.tracking_id, [created_event]
                )
            await self._safely("Shipment notification", self.notifier.notify_shipment_created, transition.order)
        else:
            logger.warning(
                f"Order {order.order_number} changed while its shipment was created; "
                f"carrier shipment {result.shipment_id} not attached"
            )

        return ShipmentOutcome(
            success=True,
            provider=provider_name,
            tracking_id=result.tracking_id,
            courier_name=result.courier_name,
            rate=quote.rate,
            label_url=result.label_url,
            estimated_delivery=result.estimated_delivery,
            attempts=attempts,
        )

    async def _create_with_retry(
        self,
        resolved: ResolvedProvider,
        request: ShipmentRequest,
        policy: RetryPolicy,
        attempts: List[ShipmentAttempt],
    ):
        adapter = resolved.adapter
        created: Optional[ShipmentResult] = None
        chosen: Optional[RateQuote] = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts) | stop_before_deadline(policy, self._clock(), self._clock),
            wait=wait_exponential(
                multiplier=policy.base_delay,
                exp_base=policy.backoff_factor,
                max=policy.max_delay,
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            sleep=self._sleep,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                try:
                    if created is None:
                        quotes = await adapter.get_rates(request.rate_request())
                        chosen = select_rate(quotes, resolved.strategy)
                        if chosen is None:
                            raise NoServiceableRoute(
                                f"No courier serves {request.pickup_pincode} -> {request.delivery_pincode}",
                                provider=adapter.name,
                            )
                        created = await adapter.create_shipment(request, chosen)
                    # A shipment created on an earlier attempt only needs its tracking id.
                    created = await adapter.assign_tracking_id(created, chosen)
                except FulfillmentError as e:
                    attempts.append(ShipmentAttempt(number, adapter.name, str(e)))
                    logger.warning(f"Shipment attempt {number}/{policy.max_attempts} via {adapter.name} failed: {e}")
                    raise

                attempts.append(ShipmentAttempt(number, adapter.name, None))

        return created, chosen

    async def _escalate(self, order: Order, error: str, attempts: int):
        merchant_email = None
        try:
            store = await self.registry.get_store(order.store_id)
            merchant_email = store.contact_email
        except FulfillmentError:
            logger.warning(f"Store {order.store_id} not found while escalating {order.order_number}")

        await self._safely(
            "Shipment failure notification",
            self.notifier.notify_shipment_failed,
            order,
            error,
            attempts,
            merchant_email,
        )
        await self._safely("Merchant alert", self.alerts.shipment_failed, order, error, attempts)
