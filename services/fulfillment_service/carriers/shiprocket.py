"""Shiprocket aggregator adapter."""
import logging
from dataclasses import replace
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from ..errors import AuthenticationFailed, CarrierError, RemoteError
from .base import (
    CarrierAdapter,
    ProviderKind,
    RateQuote,
    RateRequest,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingResult,
)

logger = logging.getLogger(__name__)

SHIPROCKET_API_BASE = "https://apiv2.shiprocket.in/v1/external"

# Login tokens are valid for 10 days; refresh a day early.
TOKEN_TTL_SECONDS = 9 * 24 * 3600

STATUS_MAP = {
    "NEW": "processing",
    "AWB ASSIGNED": "processing",
    "LABEL GENERATED": "processing",
    "PICKUP SCHEDULED": "processing",
    "PICKUP QUEUED": "processing",
    "MANIFESTED": "packed",
    "SHIPPED": "shipped",
    "IN TRANSIT": "shipped",
    "OUT FOR DELIVERY": "out_for_delivery",
    "DELIVERED": "delivered",
    "CANCELED": "cancelled",
    "RTO INITIATED": "returned",
    "RTO DELIVERED": "returned",
    "LOST": "cancelled",
    "DAMAGED": "cancelled",
}


def map_shiprocket_status(status: Optional[str]) -> str:
    """Normalize a Shiprocket status label; unknown labels count as processing."""
    if not status:
        return "processing"
    return STATUS_MAP.get(status.strip().upper(), "processing")


class ShiprocketAdapter(CarrierAdapter):
    kind = ProviderKind.SHIPROCKET
    base_url = SHIPROCKET_API_BASE
    required_credentials = ("email", "password")

    async def _login(self) -> str:
        self._require_configured()
        try:
            response = await self.http.post(
                f"{self.base_url}/auth/login",
                json={"email": self.credentials["email"], "password": self.credentials["password"]},
            )
        except httpx.HTTPError as e:
            raise RemoteError(f"shiprocket login failed: {e}", provider=self.name) from e

        if 400 <= response.status_code < 500:
            raise AuthenticationFailed("shiprocket login rejected", provider=self.name)
        if response.status_code >= 500:
            raise RemoteError(
                f"shiprocket login error: {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteError("shiprocket login returned a malformed body", provider=self.name) from e
        if not isinstance(body, dict):
            raise RemoteError("shiprocket login returned a malformed body", provider=self.name)
        token = body.get("token")
        if not token:
            raise AuthenticationFailed("shiprocket login returned no token", provider=self.name)
        return token

    async def _get_token(self) -> str:
        if self.token_cache and self.cache_key:
            cached = await self.token_cache.get(self.cache_key)
            if cached:
                return cached

        token = await self._login()
        if self.token_cache and self.cache_key:
            await self.token_cache.set(self.cache_key, token, TOKEN_TTL_SECONDS)
        return token

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self._get_token()}"}

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            return await super()._request(method, path, **kwargs)
        except AuthenticationFailed:
            # Cached session expired or was revoked; next attempt logs in again.
            if self.token_cache and self.cache_key:
                await self.token_cache.evict(self.cache_key)
            raise

    async def validate_credentials(self) -> None:
        await self._login()

    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str) -> bool:
        quotes = await self.get_rates(RateRequest(pickup_pincode, delivery_pincode))
        return bool(quotes)

    async def get_rates(self, request: RateRequest) -> List[RateQuote]:
        params = {
            "pickup_postcode": request.pickup_pincode,
            "delivery_postcode": request.delivery_pincode,
            "weight": str(request.package.weight),
            "cod": "1" if request.cod else "0",
            "length": str(request.package.length),
            "breadth": str(request.package.breadth),
            "height": str(request.package.height),
        }
        data = await self._request("GET", "/courier/serviceability", params=params)
        couriers = (data.get("data") or {}).get("available_courier_companies") or []

        return [
            RateQuote(
                provider=self.name,
                courier_code=str(c.get("courier_company_id")),
                courier_name=c.get("courier_name", "Unknown"),
                rate=float(c.get("rate") or c.get("freight_charge") or 0),
                eta_days=int(c.get("estimated_delivery_days") or 5),
                cod_charges=float(c.get("cod_charges") or 0),
            )
            for c in couriers
        ]

    async def create_shipment(self, request: ShipmentRequest, quote: RateQuote) -> ShipmentResult:
        first_name, _, last_name = request.customer_name.partition(" ")
        order_data = {
            "order_id": request.order_number,
            "order_date": date.today().isoformat(),
            "pickup_location": request.pickup_location,
            "billing_customer_name": first_name or request.customer_name,
            "billing_last_name": last_name,
            "billing_address": request.delivery_address,
            "billing_city": request.delivery_city,
            "billing_pincode": request.delivery_pincode,
            "billing_state": request.delivery_state,
            "billing_country": request.delivery_country,
            "billing_email": request.customer_email or "",
            "billing_phone": request.customer_phone,
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item.name,
                    "sku": item.sku or f"{request.order_number}-{index}",
                    "units": item.quantity,
                    "selling_price": item.price,
                }
                for index, item in enumerate(request.items, start=1)
            ],
            "payment_method": "COD" if request.cod else "Prepaid",
            "sub_total": request.order_value,
            "length": request.package.length,
            "breadth": request.package.breadth,
            "height": request.package.height,
            "weight": request.package.weight,
        }

        data = await self._request("POST", "/orders/create/adhoc", json=order_data)
        if (data.get("status_code") or 0) >= 400 or not data.get("shipment_id"):
            message = data.get("message")
            raise RemoteError(message or "Failed to create order in Shiprocket", provider=self.name)

        awb_code = data.get("awb_code") or None
        return ShipmentResult(
            provider=self.name,
            shipment_id=str(data["shipment_id"]),
            tracking_id=awb_code,
            courier_name=data.get("courier_name") or quote.courier_name,
            tracking_url=f"https://shiprocket.co/tracking/{awb_code}" if awb_code else None,
        )

    async def assign_tracking_id(self, result: ShipmentResult, quote: RateQuote) -> ShipmentResult:
        if result.tracking_id:
            return result

        data = await self._request(
            "POST",
            "/courier/assign/awb",
            json={"shipment_id": int(result.shipment_id), "courier_id": int(quote.courier_code)},
        )
        awb = (data.get("response") or {}).get("data") or {}
        if not awb.get("awb_code"):
            raise RemoteError("Shiprocket did not assign an AWB", provider=self.name)

        logger.info(f"Shiprocket AWB {awb['awb_code']} assigned to shipment {result.shipment_id}")

        try:
            label_url = await self.generate_label(result.shipment_id)
        except CarrierError as e:
            logger.warning(f"Shiprocket label for shipment {result.shipment_id} not generated: {e}")
            label_url = None

        return replace(
            result,
            tracking_id=awb["awb_code"],
            courier_name=awb.get("courier_name") or result.courier_name,
            label_url=label_url,
            tracking_url=f"https://shiprocket.co/tracking/{awb['awb_code']}",
        )

    async def generate_label(self, shipment_id: str) -> Optional[str]:
        data = await self._request(
            "POST", "/courier/generate/label", json={"shipment_id": [int(shipment_id)]}
        )
        return data.get("label_url")

    async def track_shipment(self, awb_code: str) -> TrackingResult:
        data = await self._request("GET", f"/courier/track/awb/{awb_code}")
        tracking = data.get("tracking_data") or {}
        if not tracking or tracking.get("track_status") == 0:
            raise RemoteError("Shiprocket tracking not available", provider=self.name)

        shipment_track = (tracking.get("shipment_track") or [{}])[0]
        events = [
            TrackingEvent(
                date=activity.get("date", ""),
                status=activity.get("status", ""),
                activity=activity.get("activity", ""),
                location=activity.get("location") or "",
            )
            for activity in tracking.get("shipment_track_activities") or []
        ]
        return TrackingResult(
            provider=self.name,
            awb_code=awb_code,
            current_status=shipment_track.get("current_status") or "In Transit",
            events=events,
            current_location=shipment_track.get("destination"),
            estimated_delivery=shipment_track.get("edd"),
            delivered_at=shipment_track.get("delivered_date"),
        )

    async def cancel_shipment(self, awb_code: str) -> bool:
        data = await self._request("POST", "/orders/cancel/shipment/awbs", json={"awbs": [awb_code]})
        return data.get("status") == 1
