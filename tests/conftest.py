import hashlib
import hmac
import json
import time
from uuid import uuid4

import httpx
import pytest

from shared.database import Database
from shared.encryption import CredentialCipher
import shared.outbox  # noqa: F401  registers the outbox table
from services.fulfillment_service.models import (
    Order,
    OrderItem,
    PaymentStatus,
    Product,
    ProductVariant,
    Store,
)


@pytest.fixture()
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.sqlite'}")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture()
def session_factory(database):
    return database.session_factory


@pytest.fixture()
def cipher():
    return CredentialCipher(CredentialCipher.generate_key())


@pytest.fixture()
def make_store(session_factory):
    async def _make(**overrides) -> Store:
        values = {
            "name": "Acme Tees",
            "contact_email": "owner@acme.test",
            "pickup_pincode": "400001",
        }
        values.update(overrides)
        store = Store(**values)
        async with session_factory() as session:
            session.add(store)
            await session.commit()
        return store

    return _make


@pytest.fixture()
def make_product(session_factory):
    async def _make(store: Store, quantity: int = 10, track_quantity: bool = True, title: str = "T-Shirt") -> Product:
        product = Product(store_id=store.id, title=title, quantity=quantity, track_quantity=track_quantity)
        async with session_factory() as session:
            session.add(product)
            await session.commit()
        return product

    return _make


@pytest.fixture()
def make_variant(session_factory):
    async def _make(product: Product, quantity: int = 5, title: str = "Large") -> ProductVariant:
        variant = ProductVariant(product_id=product.id, title=title, quantity=quantity)
        async with session_factory() as session:
            session.add(variant)
            await session.commit()
        return variant

    return _make


@pytest.fixture()
def make_order(session_factory):
    async def _make(
        store: Store,
        lines=(),
        order_number: str = "ORD-1",
        total_amount: float = 500.0,
        payment_intent_id: str = "pi_test_1",
        payment_status: str = PaymentStatus.PENDING.value,
        **overrides,
    ) -> Order:
        order = Order(
            store_id=store.id,
            order_number=order_number,
            customer_name="Asha Rao",
            customer_email=overrides.pop("customer_email", "asha@example.com"),
            customer_phone="9999999999",
            shipping_address={
                "name": "Asha Rao",
                "address_line1": "12 MG Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "pincode": "560001",
                "country": "India",
            },
            subtotal=total_amount,
            total_amount=total_amount,
            payment_intent_id=payment_intent_id,
            payment_status=payment_status,
            **overrides,
        )
        async with session_factory() as session:
            session.add(order)
            await session.flush()
            for product, quantity, *variant in lines:
                session.add(OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    variant_id=variant[0].id if variant else None,
                    product_title=product.title,
                    quantity=quantity,
                    unit_price=100.0,
                ))
            await session.commit()
        return order

    return _make


def stripe_signature(payload: bytes, secret: str, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture()
def sign():
    return stripe_signature


@pytest.fixture()
def stripe_event():
    def _build(event_type: str, data_object: dict) -> bytes:
        return json.dumps({
            "id": f"evt_{uuid4().hex[:12]}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }).encode()

    return _build


class RecordingNotifier:
    """Notifier double that records every call."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    async def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    async def notify_order_confirmed(self, order):
        await self._record("order_confirmed", order.order_number)

    async def notify_order_cancelled(self, order, reason):
        await self._record("order_cancelled", order.order_number, reason)

    async def notify_shipment_created(self, order):
        await self._record("shipment_created", order.order_number, order.awb_code)

    async def notify_shipment_failed(self, order, error, attempts, merchant_email=None):
        await self._record("shipment_failed", order.order_number, error, attempts, merchant_email)

    async def notify_refund_processed(self, order, amount, is_full):
        await self._record("refund_processed", order.order_number, amount, is_full)

    async def notify_order_shipped(self, order):
        await self._record("order_shipped", order.order_number)

    async def notify_order_delivered(self, order):
        await self._record("order_delivered", order.order_number)

    def names(self):
        return [call[0] for call in self.calls]


@pytest.fixture()
def notifier():
    return RecordingNotifier()


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSleeper:
    """Records requested delays and advances the paired clock instead of sleeping."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        self.clock.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def sleeper(clock):
    return FakeSleeper(clock)


class FakeCarrierAPI:
    """
    Routes carrier HTTP calls to canned responses by method and path suffix.

    A route given several responses returns them in order and then keeps
    returning the last one.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def route(self, method: str, path: str, *responses):
        self.routes[(method, path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, path), responses in self.routes.items():
            if request.method == method and request.url.path.endswith(path):
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                if isinstance(response, httpx.Response):
                    return response
                return httpx.Response(200, json=response)
        return httpx.Response(404, json={"message": f"no route for {request.url.path}"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path.endswith(path))

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path.endswith(path)][-1]

    def shiprocket(self, token: str = "tok-1", awb: str = "SR123456"):
        """Install a Shiprocket account that logs in, quotes, ships and tracks."""
        self.route("POST", "/auth/login", {"token": token})
        self.route("GET", "/courier/serviceability", {
            "status": 200,
            "data": {"available_courier_companies": [
                {"courier_company_id": 10, "courier_name": "Delhivery Surface", "rate": 120.0,
                 "estimated_delivery_days": "5", "cod_charges": 0},
                {"courier_company_id": 11, "courier_name": "Xpressbees", "rate": 95.0,
                 "estimated_delivery_days": "4", "cod_charges": 0},
            ]},
        })
        self.route("POST", "/orders/create/adhoc", {
            "order_id": 5001, "shipment_id": 7001, "status": "NEW", "status_code": 1,
            "awb_code": "", "courier_name": "",
        })
        self.route("POST", "/courier/assign/awb", {
            "awb_assign_status": 1,
            "response": {"data": {"awb_code": awb, "courier_name": "Xpressbees"}},
        })
        self.route("POST", "/courier/generate/label", {"label_created": 1, "label_url": "https://labels.test/7001.pdf"})
        self.route("GET", f"/courier/track/awb/{awb}", {
            "tracking_data": {
                "track_status": 1,
                "shipment_track": [{"current_status": "In Transit", "destination": "Bengaluru", "edd": "2026-10-25"}],
                "shipment_track_activities": [
                    {"date": "2026-10-20 18:00:00", "status": "IN TRANSIT", "activity": "Reached hub",
                     "location": "Pune"},
                    {"date": "2026-10-20 10:00:00", "status": "PICKED UP", "activity": "Shipment picked up",
                     "location": "Mumbai"},
                ],
            },
        })
        return self


@pytest.fixture()
def carrier_api():
    return FakeCarrierAPI()


@pytest.fixture()
async def http_client(carrier_api):
    client = carrier_api.client()
    yield client
    await client.aclose()
