import httpx
import pytest

from services.fulfillment_service.carriers.base import TrackingEvent
from services.fulfillment_service.errors import OrderNotFound
from services.fulfillment_service.models import OrderStatus
from services.fulfillment_service.registry import ProviderRegistry
from services.fulfillment_service.state_machine import OrderStateMachine
from services.fulfillment_service.token_cache import InMemoryTokenCache
from services.fulfillment_service.tracking import PROCESSING_MESSAGE, ShipmentLog, TrackingService


@pytest.fixture()
def state(session_factory):
    return OrderStateMachine(session_factory)


@pytest.fixture()
def registry(session_factory, cipher, http_client):
    return ProviderRegistry(session_factory, cipher, http_client, InMemoryTokenCache())


@pytest.fixture()
def shipment_log(session_factory):
    return ShipmentLog(session_factory)


@pytest.fixture()
def tracking(state, registry, shipment_log, notifier):
    return TrackingService(state, registry, shipment_log, notifier)


@pytest.fixture()
async def store(make_store):
    return await make_store()


@pytest.fixture()
async def shipped_order(state, registry, carrier_api, store, make_order):
    """A paid order with a Shiprocket shipment attached."""
    carrier_api.shiprocket()
    await registry.save_provider(store.id, "shiprocket", {"email": "ops@acme.test", "password": "secret"})
    order = await make_order(store, order_number="ORD-42")
    await state.mark_paid(order.id)
    await state.attach_shipment(order.id, "shiprocket", "SR123456", courier_name="Xpressbees",
                                carrier_shipment_id="7001")
    return order


async def test_shipment_log_ignores_repeated_events(shipment_log, store, make_order):
    order = await make_order(store)
    events = [
        TrackingEvent(date="2026-10-20 10:00:00", status="PICKED UP"),
        TrackingEvent(date="2026-10-20 18:00:00", status="IN TRANSIT", location="Pune"),
        TrackingEvent(date="2026-10-20 19:00:00", status=""),
    ]

    assert await shipment_log.record(order.id, "SR1", events) == 2
    assert await shipment_log.record(order.id, "SR1", events) == 0
    assert {e.status for e in await shipment_log.history(order.id)} == {"PICKED UP", "IN TRANSIT"}


async def test_unshipped_order_reports_processing(tracking, state, store, make_order):
    order = await make_order(store, order_number="ORD-9")
    await state.mark_paid(order.id)

    result = await tracking.public_lookup("ORD-9")

    assert result["message"] == PROCESSING_MESSAGE
    assert result["awb_code"] is None
    assert result["events"] == []


async def test_lookup_with_wrong_email_looks_like_unknown_order(tracking, shipped_order):
    with pytest.raises(OrderNotFound):
        await tracking.public_lookup("ORD-42", email="someone@else.test")
    with pytest.raises(OrderNotFound):
        await tracking.public_lookup("ORD-404")

    result = await tracking.public_lookup("ORD-42", email=" Asha@Example.com ")
    assert result["order_number"] == "ORD-42"


async def test_lookup_by_email_finds_the_order_among_stores_sharing_a_number(tracking, make_store, make_order,
                                                                           shipped_order):
    other_store = await make_store(name="Other Tees")
    await make_order(other_store, order_number="ORD-42", customer_email="ravi@example.com")

    mine = await tracking.public_lookup("ORD-42", email="asha@example.com")
    theirs = await tracking.public_lookup("ORD-42", email="ravi@example.com")

    assert mine["awb_code"] == "SR123456"
    assert theirs["awb_code"] is None


async def test_live_tracking_is_stored_locally(tracking, shipment_log, shipped_order):
    result = await tracking.public_lookup("ORD-42")

    assert result["carrier_status"] == "In Transit"
    assert result["current_location"] == "Bengaluru"
    assert [e["status"] for e in result["events"]] == ["IN TRANSIT", "PICKED UP"]
    assert len(await shipment_log.history(shipped_order.id)) == 2


async def test_carrier_outage_falls_back_to_stored_events(tracking, carrier_api, shipment_log, shipped_order):
    await shipment_log.record(shipped_order.id, "SR123456", [TrackingEvent(date="2026-10-20", status="PICKED UP")])
    carrier_api.route("GET", "/courier/track/awb/SR123456", httpx.Response(503))

    result = await tracking.public_lookup("ORD-42")

    assert [e["status"] for e in result["events"]] == ["PICKED UP"]
    assert "carrier_status" not in result


async def test_status_push_advances_the_order_once(tracking, state, notifier, shipment_log, shipped_order):
    push = {
        "awb": "SR123456",
        "current_status": "IN TRANSIT",
        "current_timestamp": "2026-10-21 09:00:00",
        "scans": [{"date": "2026-10-20 10:00:00", "activity": "Picked up", "sr-status-label": "PICKED UP"}],
    }

    first = await tracking.handle_carrier_webhook(push)
    again = await tracking.handle_carrier_webhook(push)

    assert first == {"status": "ok", "fulfillment_status": "shipped"}
    assert again == first
    assert notifier.names() == ["order_shipped"]
    assert (await state.get_order(shipped_order.id)).order_status == OrderStatus.SHIPPED.value
    assert len(await shipment_log.history(shipped_order.id)) == 2


async def test_delivery_push_notifies_customer(tracking, state, notifier, shipped_order):
    await tracking.handle_carrier_webhook({"awb": "SR123456", "current_status": "DELIVERED"})

    order = await state.get_order(shipped_order.id)
    assert order.order_status == OrderStatus.DELIVERED.value
    assert order.delivered_at is not None
    assert notifier.names() == ["order_delivered"]


async def test_push_without_awb_is_ignored(tracking):
    assert await tracking.handle_carrier_webhook({"current_status": "DELIVERED"}) == {"status": "ignored"}


async def test_push_for_unknown_awb_raises(tracking):
    with pytest.raises(OrderNotFound):
        await tracking.handle_carrier_webhook({"awb": "NOPE", "current_status": "DELIVERED"})
