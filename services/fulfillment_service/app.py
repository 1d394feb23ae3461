"""Fulfillment Service FastAPI application."""
import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import UUID

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis import asyncio as aioredis

from shared.config import Settings
from shared.database import Database
from shared.encryption import CredentialCipher
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher
from shared.rate_limit import InMemoryRateLimiter, RedisRateLimiter

from .carriers.base import PackageDimensions, RateQuote, RateRequest
from .errors import (
    CredentialValidationError,
    FulfillmentError,
    InsufficientStock,
    OrderNotFound,
    StateError,
    VerificationError,
)
from .inventory import InventoryLedger, LineItem
from .models import CourierStrategy
from .notifier import MerchantAlerts, Notifier, OutboxNotifier
from .orchestrator import FulfillmentOrchestrator, RetryPolicy
from .registry import ProviderRegistry
from .state_machine import OrderStateMachine
from .token_cache import InMemoryTokenCache, RedisTokenCache, TokenCache
from .tracking import ShipmentLog, TrackingService
from .webhook_verifier import StoreSecretResolver, WebhookVerifier

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Settings
settings = Settings(service_name="fulfillment-service", service_port=8000)

MAINTENANCE_INTERVAL = 60

# Database and message broker
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: OutboxPublisher = None
http_client: httpx.AsyncClient = None
redis_client: aioredis.Redis = None
cleanup_task: asyncio.Task = None


@dataclass
class FulfillmentContainer:
    """Everything the routes need, built once per process."""
    settings: Settings
    state: OrderStateMachine
    inventory: InventoryLedger
    registry: ProviderRegistry
    orchestrator: FulfillmentOrchestrator
    tracking: TrackingService
    verifier: WebhookVerifier
    rate_limiter: Any
    interactive_policy: RetryPolicy


container: FulfillmentContainer = None


def build_container(
    settings: Settings,
    session_factory,
    cipher: CredentialCipher,
    http_client: httpx.AsyncClient,
    token_cache: TokenCache,
    rate_limiter,
    notifier: Optional[Notifier] = None,
    sleep=asyncio.sleep,
) -> FulfillmentContainer:
    notifier = notifier or OutboxNotifier(session_factory)
    state = OrderStateMachine(session_factory)
    inventory = InventoryLedger(session_factory)
    registry = ProviderRegistry(session_factory, cipher, http_client, token_cache)
    shipment_log = ShipmentLog(session_factory)

    orchestrator = FulfillmentOrchestrator(
        state=state,
        inventory=inventory,
        registry=registry,
        notifier=notifier,
        alerts=MerchantAlerts(session_factory),
        shipment_log=shipment_log,
        policy=RetryPolicy.background(settings),
        sleep=sleep,
    )

    return FulfillmentContainer(
        settings=settings,
        state=state,
        inventory=inventory,
        registry=registry,
        orchestrator=orchestrator,
        tracking=TrackingService(state, registry, shipment_log, notifier),
        verifier=WebhookVerifier(
            settings.stripe_webhook_secret or None,
            StoreSecretResolver(session_factory, cipher),
        ),
        rate_limiter=rate_limiter,
        interactive_policy=RetryPolicy.interactive(settings),
    )


async def run_maintenance(inventory: InventoryLedger, publisher: OutboxPublisher):
    """Drop expired checkout holds, requeue failed notifications and purge delivered ones."""
    jobs = (
        ("Reservation cleanup", inventory.cleanup_expired),
        ("Outbox retry", publisher.retry_failed_messages),
        ("Outbox purge", publisher.purge_published),
    )
    for name, job in jobs:
        try:
            await job()
        except Exception:
            logger.error(f"{name} failed", exc_info=True)


async def maintenance_loop(inventory: InventoryLedger, publisher: OutboxPublisher):
    while True:
        await run_maintenance(inventory, publisher)
        await asyncio.sleep(MAINTENANCE_INTERVAL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher, http_client, redis_client, cleanup_task, container

    # Startup
    logger.info("Starting Fulfillment Service...")

    await database.create_tables()
    await message_broker.connect()

    outbox_publisher = OutboxPublisher(
        session_factory=database.session_factory,
        message_broker=message_broker,
        poll_interval=1,
        batch_size=100,
    )
    await outbox_publisher.start()

    http_client = httpx.AsyncClient(timeout=settings.carrier_timeout)

    if settings.token_cache_backend == "redis":
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        token_cache = RedisTokenCache(redis_client)
        rate_limiter = RedisRateLimiter(redis_client, settings.tracking_rate_limit, settings.tracking_rate_window)
    else:
        token_cache = InMemoryTokenCache()
        rate_limiter = InMemoryRateLimiter(settings.tracking_rate_limit, settings.tracking_rate_window)

    container = build_container(
        settings,
        database.session_factory,
        CredentialCipher(settings.credentials_encryption_key),
        http_client,
        token_cache,
        rate_limiter,
    )
    cleanup_task = asyncio.create_task(maintenance_loop(container.inventory, outbox_publisher))

    logger.info("Fulfillment Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Fulfillment Service...")
    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    if outbox_publisher:
        await outbox_publisher.stop()
    if http_client:
        await http_client.aclose()
    if redis_client:
        await redis_client.close()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Fulfillment Service", lifespan=lifespan)


def get_container() -> FulfillmentContainer:
    if container is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return container


async def require_merchant(
    x_api_key: Optional[str] = Header(default=None),
    services: FulfillmentContainer = Depends(get_container),
):
    expected = services.settings.merchant_api_key
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")


# Request/Response models
class PackageModel(BaseModel):
    """Package dimensions in cm and kg."""
    length: float
    breadth: float
    height: float
    weight: float


class CreateShipmentRequest(BaseModel):
    """Dashboard request to ship a paid order."""
    order_id: UUID
    courier_preference: Optional[CourierStrategy] = None
    provider: Optional[str] = None
    package: Optional[PackageModel] = None


class SaveProviderRequest(BaseModel):
    provider: str
    credentials: Dict[str, Any]
    is_default: bool = False
    pickup_location: Optional[str] = None


class RatesRequest(BaseModel):
    delivery_pincode: str
    pickup_pincode: Optional[str] = None
    package: Optional[PackageModel] = None
    cod: bool = False
    order_value: float = 0.0


def _state_error_status(error: StateError) -> int:
    return 404 if isinstance(error, OrderNotFound) else 409


def quote_json(quote: Optional[RateQuote]) -> Optional[Dict[str, Any]]:
    if quote is None:
        return None
    return {
        "provider": quote.provider,
        "courier_code": quote.courier_code,
        "courier_name": quote.courier_name,
        "rate": quote.rate,
        "eta_days": quote.eta_days,
        "cod_charges": quote.cod_charges,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "fulfillment-service"}


@app.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: FulfillmentContainer = Depends(get_container),
):
    """Verified payment gateway events drive the order lifecycle."""
    body = await request.body()
    try:
        event = await services.verifier.verify(body, request.headers.get("stripe-signature"))
    except VerificationError as e:
        logger.warning(f"Rejected payment webhook: {e}")
        raise HTTPException(status_code=e.status_code, detail=str(e))

    orchestrator = services.orchestrator
    try:
        if event.type == "checkout.session.completed":
            order = await orchestrator.on_payment_confirmed(event, ship_inline=False)
            if order is not None:
                background_tasks.add_task(orchestrator.create_shipment_with_retry, order.id)
        elif event.type == "checkout.session.expired":
            await orchestrator.on_payment_expired(event)
        elif event.type == "charge.refunded":
            await orchestrator.on_charge_refunded(event)
        else:
            logger.info(f"Ignoring payment event type {event.type}")
    except StateError as e:
        logger.warning(f"Payment event {event.id} ({event.type}) not applied: {e}")
    except Exception:
        logger.error(f"Error processing payment event {event.id}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True}


@app.post("/shipments", dependencies=[Depends(require_merchant)])
async def create_shipment(
    request: CreateShipmentRequest,
    services: FulfillmentContainer = Depends(get_container),
):
    """Create a shipment on demand; failures come back to the caller instead of alerting."""
    package = PackageDimensions(**request.package.model_dump()) if request.package else None
    try:
        outcome = await services.orchestrator.create_shipment_with_retry(
            request.order_id,
            preference=request.provider,
            package=package,
            policy=services.interactive_policy,
            escalate=False,
            strategy=request.courier_preference.value if request.courier_preference else None,
        )
    except StateError as e:
        raise HTTPException(status_code=_state_error_status(e), detail=str(e))

    if not outcome.success:
        return JSONResponse(
            status_code=502,
            content={
                "success": False,
                "provider": outcome.provider,
                "error": outcome.error,
                "attempts": len(outcome.attempts),
            },
        )

    return {
        "success": True,
        "provider": outcome.provider,
        "manual": outcome.manual,
        "tracking_id": outcome.tracking_id,
        "courier_name": outcome.courier_name,
        "rate": outcome.rate,
        "label_url": outcome.label_url,
        "estimated_delivery": outcome.estimated_delivery.isoformat() if outcome.estimated_delivery else None,
    }


@app.get("/tracking/public")
async def public_tracking(
    request: Request,
    order_number: str,
    email: Optional[str] = None,
    services: FulfillmentContainer = Depends(get_container),
):
    client_ip = request.client.host if request.client else "unknown"
    if not await services.rate_limiter.hit(f"tracking:{client_ip}"):
        raise HTTPException(status_code=429, detail="Too many tracking requests")

    try:
        return await services.tracking.public_lookup(order_number, email)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")


@app.get("/stores/{store_id}/shipping-providers", dependencies=[Depends(require_merchant)])
async def list_shipping_providers(store_id: UUID, services: FulfillmentContainer = Depends(get_container)):
    return {"providers": await services.registry.list_providers(store_id)}


@app.post("/stores/{store_id}/shipping-providers", dependencies=[Depends(require_merchant)])
async def save_shipping_provider(
    store_id: UUID,
    request: SaveProviderRequest,
    services: FulfillmentContainer = Depends(get_container),
):
    try:
        config = await services.registry.save_provider(
            store_id,
            request.provider,
            request.credentials,
            is_default=request.is_default,
            pickup_location=request.pickup_location,
        )
    except CredentialValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except FulfillmentError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "provider": config.provider,
        "is_default": config.is_default,
        "is_active": config.is_active,
        "pickup_location": config.pickup_location,
    }


@app.delete("/stores/{store_id}/shipping-providers/{provider}", dependencies=[Depends(require_merchant)])
async def remove_shipping_provider(
    store_id: UUID,
    provider: str,
    services: FulfillmentContainer = Depends(get_container),
):
    if not await services.registry.remove_provider(store_id, provider):
        raise HTTPException(status_code=404, detail=f"Provider {provider} is not configured")
    return {"removed": provider}


@app.post("/stores/{store_id}/rates", dependencies=[Depends(require_merchant)])
async def shipping_rates(
    store_id: UUID,
    request: RatesRequest,
    services: FulfillmentContainer = Depends(get_container),
):
    """Quotes from every configured carrier, cheapest first, with the store's recommended pick."""
    try:
        store = await services.registry.get_store(store_id)
    except FulfillmentError as e:
        raise HTTPException(status_code=404, detail=str(e))

    package = (
        PackageDimensions(**request.package.model_dump())
        if request.package
        else PackageDimensions.from_dict(store.default_package)
    )
    rates = await services.registry.get_rates_for_store(
        store_id,
        RateRequest(
            pickup_pincode=request.pickup_pincode or store.pickup_pincode or "",
            delivery_pincode=request.delivery_pincode,
            package=package,
            cod=request.cod,
            order_value=request.order_value,
        ),
    )
    return {
        "rates": [quote_json(q) for q in rates.quotes],
        "strategy": rates.strategy,
        "cheapest": quote_json(rates.cheapest),
        "fastest": quote_json(rates.fastest),
        "recommended": quote_json(rates.recommended),
    }


@app.post("/orders/{order_id}/reservations", dependencies=[Depends(require_merchant)])
async def reserve_order_stock(order_id: UUID, services: FulfillmentContainer = Depends(get_container)):
    """Hold stock for an order entering checkout."""
    try:
        order = await services.state.get_order(order_id)
        created = await services.inventory.reserve(
            order.id,
            [LineItem.from_order_item(item) for item in order.items],
            minutes=services.settings.reservation_minutes,
        )
    except OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InsufficientStock as e:
        return JSONResponse(status_code=409, content={"detail": str(e), "unavailable": e.unavailable})

    return {"order_id": str(order_id), "reserved": created}


@app.get("/products/{product_id}/availability", dependencies=[Depends(require_merchant)])
async def product_availability(
    product_id: UUID,
    variant_id: Optional[UUID] = None,
    services: FulfillmentContainer = Depends(get_container),
):
    """Stock net of active checkout holds; null when the item does not track quantity."""
    available = await services.inventory.effective_availability(product_id, variant_id)
    return {
        "product_id": str(product_id),
        "variant_id": str(variant_id) if variant_id else None,
        "available": available,
    }


@app.post("/webhooks/carriers/shiprocket")
async def shiprocket_webhook(request: Request, services: FulfillmentContainer = Depends(get_container)):
    """Carrier status pushes are always acknowledged so the carrier does not retry."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Shiprocket webhook body is not JSON")
        return {"status": "ignored"}
    if not isinstance(payload, dict):
        return {"status": "ignored"}

    try:
        return await services.tracking.handle_carrier_webhook(payload)
    except StateError as e:
        logger.warning(f"Shiprocket webhook not applied: {e}")
        return {"status": "ignored"}
    except Exception:
        logger.error("Error processing Shiprocket webhook", exc_info=True)
        return {"status": "error"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
