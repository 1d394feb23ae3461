import json

import httpx
import pytest

from services.fulfillment_service.carriers.base import (
    RateQuote,
    RateRequest,
    ShipmentItem,
    ShipmentRequest,
)
from services.fulfillment_service.carriers.bluedart import BlueDartAdapter
from services.fulfillment_service.carriers.delhivery import DelhiveryAdapter
from services.fulfillment_service.carriers.shippo import ShippoAdapter
from services.fulfillment_service.carriers.shiprocket import ShiprocketAdapter, map_shiprocket_status
from services.fulfillment_service.errors import (
    AuthenticationFailed,
    NoServiceableRoute,
    NotConfigured,
    RemoteError,
)
from services.fulfillment_service.token_cache import InMemoryTokenCache

SHIPROCKET_CREDENTIALS = {"email": "ops@acme.test", "password": "secret"}


def shipment_request(**overrides):
    values = dict(
        order_number="ORD-1",
        customer_name="Asha Rao",
        customer_phone="9999999999",
        delivery_address="12 MG Road",
        delivery_city="Bengaluru",
        delivery_state="Karnataka",
        delivery_pincode="560001",
        pickup_pincode="400001",
        items=[ShipmentItem(name="T-Shirt", quantity=2, price=250.0)],
        order_value=500.0,
    )
    values.update(overrides)
    return ShipmentRequest(**values)


def shiprocket(http_client, cache=None):
    return ShiprocketAdapter(SHIPROCKET_CREDENTIALS, http_client, token_cache=cache, cache_key="store-1:shiprocket")


# Shiprocket

async def test_shiprocket_reuses_cached_login(carrier_api, http_client):
    carrier_api.shiprocket()
    adapter = shiprocket(http_client, InMemoryTokenCache())

    first = await adapter.get_rates(RateRequest("400001", "560001"))
    await adapter.get_rates(RateRequest("400001", "560001"))

    assert carrier_api.count("/auth/login") == 1
    assert carrier_api.last("/courier/serviceability").headers["Authorization"] == "Bearer tok-1"
    assert [(q.courier_code, q.rate, q.eta_days) for q in first] == [("10", 120.0, 5), ("11", 95.0, 4)]


async def test_rejected_session_evicts_cached_token(carrier_api, http_client):
    carrier_api.shiprocket(token="fresh-token")
    carrier_api.route(
        "GET",
        "/courier/serviceability",
        httpx.Response(401, json={"message": "Token expired"}),
        {"data": {"available_courier_companies": []}},
    )
    cache = InMemoryTokenCache()
    await cache.set("store-1:shiprocket", "stale-token", 3600)
    adapter = shiprocket(http_client, cache)

    with pytest.raises(AuthenticationFailed):
        await adapter.get_rates(RateRequest("400001", "560001"))
    assert await cache.get("store-1:shiprocket") is None

    assert await adapter.get_rates(RateRequest("400001", "560001")) == []
    assert carrier_api.count("/auth/login") == 1
    assert await cache.get("store-1:shiprocket") == "fresh-token"


async def test_server_error_is_a_remote_error_with_status(carrier_api, http_client):
    carrier_api.shiprocket()
    carrier_api.route("GET", "/courier/serviceability", httpx.Response(502, text="Bad Gateway"))

    with pytest.raises(RemoteError) as exc_info:
        await shiprocket(http_client).get_rates(RateRequest("400001", "560001"))
    assert exc_info.value.status_code == 502
    assert exc_info.value.provider == "shiprocket"


async def test_malformed_body_is_a_remote_error(carrier_api, http_client):
    carrier_api.shiprocket()
    carrier_api.route("GET", "/courier/serviceability", httpx.Response(200, content=b"<html>maintenance</html>"))

    with pytest.raises(RemoteError):
        await shiprocket(http_client).get_rates(RateRequest("400001", "560001"))


async def test_json_of_the_wrong_shape_is_a_remote_error(carrier_api, http_client):
    carrier_api.shiprocket()
    carrier_api.route("GET", "/courier/serviceability", [1, 2])
    carrier_api.route("GET", "/kinko/v1/invoice/charges/.json", {"error": "maintenance"})

    with pytest.raises(RemoteError, match="unexpected list body"):
        await shiprocket(http_client).get_rates(RateRequest("400001", "560001"))
    delhivery = DelhiveryAdapter({"api_token": "dl-token", "warehouse_name": "Main"}, http_client)
    with pytest.raises(RemoteError, match="unexpected dict body"):
        await delhivery.get_rates(RateRequest("400001", "560001"))


async def test_transport_failure_is_a_remote_error(carrier_api, http_client):
    carrier_api.route("POST", "/auth/login", httpx.ConnectError("connection refused"))

    with pytest.raises(RemoteError):
        await shiprocket(http_client).validate_credentials()


async def test_rejected_login_is_an_authentication_failure(carrier_api, http_client):
    carrier_api.route("POST", "/auth/login", httpx.Response(400, json={"message": "Invalid credentials"}))

    with pytest.raises(AuthenticationFailed):
        await shiprocket(http_client).validate_credentials()


async def test_missing_credentials_fail_without_calling_the_carrier(carrier_api, http_client):
    adapter = ShiprocketAdapter({"email": "ops@acme.test"}, http_client)

    assert not adapter.is_configured()
    with pytest.raises(NotConfigured):
        await adapter.get_rates(RateRequest("400001", "560001"))
    assert carrier_api.requests == []


async def test_shiprocket_assigns_awb_after_creating_the_order(carrier_api, http_client):
    carrier_api.shiprocket(awb="SR999")
    adapter = shiprocket(http_client)
    quote = RateQuote(provider="shiprocket", courier_code="11", courier_name="Xpressbees", rate=95.0, eta_days=4)

    created = await adapter.create_shipment(shipment_request(), quote)
    assert created.shipment_id == "7001"
    assert created.tracking_id is None

    result = await adapter.assign_tracking_id(created, quote)

    assert result.tracking_id == "SR999"
    assert result.label_url == "https://labels.test/7001.pdf"
    assigned = json.loads(carrier_api.last("/courier/assign/awb").content)
    assert assigned == {"shipment_id": 7001, "courier_id": 11}
    order_body = json.loads(carrier_api.last("/orders/create/adhoc").content)
    assert order_body["order_id"] == "ORD-1"
    assert order_body["payment_method"] == "Prepaid"


async def test_shiprocket_keeps_the_awb_when_the_label_fails(carrier_api, http_client):
    carrier_api.shiprocket(awb="SR999")
    carrier_api.route("POST", "/courier/generate/label", httpx.Response(500, json={"message": "label service down"}))
    adapter = shiprocket(http_client)
    quote = RateQuote(provider="shiprocket", courier_code="11", courier_name="Xpressbees", rate=95.0, eta_days=4)

    created = await adapter.create_shipment(shipment_request(), quote)
    result = await adapter.assign_tracking_id(created, quote)

    assert result.tracking_id == "SR999"
    assert result.label_url is None
    assert await adapter.assign_tracking_id(result, quote) is result
    assert carrier_api.count("/courier/assign/awb") == 1


async def test_shiprocket_order_rejection_is_a_remote_error(carrier_api, http_client):
    carrier_api.shiprocket()
    carrier_api.route("POST", "/orders/create/adhoc", {"status_code": 422, "message": "Invalid pincode"})
    quote = RateQuote(provider="shiprocket", courier_code="11", courier_name="Xpressbees", rate=95.0, eta_days=4)

    with pytest.raises(RemoteError, match="Invalid pincode"):
        await shiprocket(http_client).create_shipment(shipment_request(), quote)


async def test_shiprocket_tracking_lists_activities(carrier_api, http_client):
    carrier_api.shiprocket()

    tracking = await shiprocket(http_client).track_shipment("SR123456")

    assert tracking.current_status == "In Transit"
    assert tracking.current_location == "Bengaluru"
    assert [e.status for e in tracking.events] == ["IN TRANSIT", "PICKED UP"]


@pytest.mark.parametrize(
    "label, normalized",
    [
        ("NEW", "processing"),
        ("Manifested", "packed"),
        ("In Transit", "shipped"),
        ("OUT FOR DELIVERY", "out_for_delivery"),
        ("Delivered", "delivered"),
        ("RTO INITIATED", "returned"),
        ("LOST", "cancelled"),
        ("Something new", "processing"),
        (None, "processing"),
    ],
)
def test_shiprocket_status_mapping(label, normalized):
    assert map_shiprocket_status(label) == normalized


async def test_shiprocket_serviceability_and_cancellation(carrier_api, http_client):
    carrier_api.shiprocket()
    carrier_api.route("POST", "/orders/cancel/shipment/awbs", {"status": 1, "message": "Cancelled"})
    adapter = shiprocket(http_client)

    assert await adapter.check_serviceability("400001", "560001") is True
    assert await adapter.cancel_shipment("SR123456") is True
    assert json.loads(carrier_api.last("/orders/cancel/shipment/awbs").content) == {"awbs": ["SR123456"]}


# Delhivery

async def test_delhivery_quotes_and_token_header(carrier_api, http_client):
    carrier_api.route("GET", "/kinko/v1/invoice/charges/.json", [{"total_amount": 85.5, "cod_charges": 0}])
    adapter = DelhiveryAdapter({"api_token": "dl-token", "warehouse_name": "Main"}, http_client)

    quotes = await adapter.get_rates(RateRequest("400001", "560001"))

    assert [(q.courier_name, q.rate) for q in quotes] == [("Delhivery", 85.5)]
    request = carrier_api.last("/kinko/v1/invoice/charges/.json")
    assert request.headers["Authorization"] == "Token dl-token"
    assert request.url.params["cgm"] == "500"


async def test_delhivery_failed_manifest_is_a_remote_error(carrier_api, http_client):
    carrier_api.route("POST", "/cmu/create.json", {"success": False, "rmk": "Pincode not serviceable"})
    adapter = DelhiveryAdapter({"api_token": "dl-token", "warehouse_name": "Main"}, http_client)
    quote = RateQuote(provider="delhivery", courier_code="delhivery", courier_name="Delhivery", rate=85.5, eta_days=5)

    with pytest.raises(RemoteError, match="Pincode not serviceable"):
        await adapter.create_shipment(shipment_request(), quote)


async def test_delhivery_waybill_is_the_tracking_id(carrier_api, http_client):
    carrier_api.route("POST", "/cmu/create.json", {"success": True, "packages": [{"waybill": "DL555"}]})
    adapter = DelhiveryAdapter({"api_token": "dl-token", "warehouse_name": "Main"}, http_client)
    quote = RateQuote(provider="delhivery", courier_code="delhivery", courier_name="Delhivery", rate=85.5, eta_days=5)

    result = await adapter.create_shipment(shipment_request(), quote)

    assert result.tracking_id == "DL555"
    assert "DL555" in result.tracking_url


# Blue Dart

BLUEDART_CREDENTIALS = {"api_key": "jwt", "client_code": "C1", "license_key": "L1", "login_id": "acme"}


async def test_bluedart_offers_surface_and_express(carrier_api, http_client):
    carrier_api.route("POST", "/API/RateCalculator/GetFreightRate", {
        "FreightRateResult": {"ResponseCode": "200", "TotalFreightCharge": 100, "CODAmount": 0},
    })

    quotes = await BlueDartAdapter(BLUEDART_CREDENTIALS, http_client).get_rates(RateRequest("400001", "560001"))

    assert [(q.courier_code, q.rate, q.eta_days) for q in quotes] == [
        ("bluedart_surface", 100.0, 5),
        ("bluedart_express", 130.0, 2),
    ]
    assert carrier_api.last("/API/RateCalculator/GetFreightRate").headers["ClientID"] == "C1"


async def test_bluedart_without_rate_returns_no_quotes(carrier_api, http_client):
    carrier_api.route("POST", "/API/RateCalculator/GetFreightRate", {
        "FreightRateResult": {"ResponseCode": "500", "ErrorMessage": "Pincode not serviced"},
    })

    assert await BlueDartAdapter(BLUEDART_CREDENTIALS, http_client).get_rates(RateRequest("400001", "560001")) == []


# Shippo

async def test_shippo_buys_the_quoted_rate(carrier_api, http_client):
    carrier_api.route("POST", "/transactions", {
        "status": "SUCCESS",
        "object_id": "txn_1",
        "tracking_number": "9400100000000000000000",
        "label_url": "https://shippo.test/label.pdf",
    })
    quote = RateQuote(provider="shippo", courier_code="usps_priority", courier_name="USPS - Priority",
                      rate=8.5, eta_days=2, rate_id="rate_abc")

    result = await ShippoAdapter({"api_token": "shippo_test"}, http_client).create_shipment(
        shipment_request(delivery_country="US"), quote
    )

    assert result.tracking_id == "9400100000000000000000"
    assert json.loads(carrier_api.last("/transactions").content)["rate"] == "rate_abc"
    assert carrier_api.count("/shipments") == 0


async def test_shippo_purchase_error_is_a_remote_error(carrier_api, http_client):
    carrier_api.route("POST", "/transactions", {"status": "ERROR", "messages": [{"text": "Address invalid"}]})
    quote = RateQuote(provider="shippo", courier_code="usps_priority", courier_name="USPS", rate=8.5,
                      eta_days=2, rate_id="rate_abc")

    with pytest.raises(RemoteError, match="Address invalid"):
        await ShippoAdapter({"api_token": "shippo_test"}, http_client).create_shipment(shipment_request(), quote)


async def test_shippo_without_rates_has_no_serviceable_route(carrier_api, http_client):
    carrier_api.route("POST", "/shipments", {"rates": []})
    quote = RateQuote(provider="shippo", courier_code="usps_priority", courier_name="USPS", rate=8.5, eta_days=2)

    with pytest.raises(NoServiceableRoute):
        await ShippoAdapter({"api_token": "shippo_test"}, http_client).create_shipment(shipment_request(), quote)
