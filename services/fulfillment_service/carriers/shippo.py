"""Shippo multi-carrier broker adapter (US shipments)."""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..errors import NoServiceableRoute, RemoteError
from .base import (
    CarrierAdapter,
    PackageDimensions,
    ProviderKind,
    RateQuote,
    RateRequest,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingResult,
)

logger = logging.getLogger(__name__)

SHIPPO_API_BASE = "https://api.goshippo.com"

TRACKING_CARRIERS = ("usps", "ups", "fedex", "dhl_express")

KG_TO_LB = 2.205
CM_TO_IN = 0.3937


def _parcel(package: PackageDimensions) -> Dict[str, str]:
    return {
        "length": str(math.ceil(package.length * CM_TO_IN)),
        "width": str(math.ceil(package.breadth * CM_TO_IN)),
        "height": str(math.ceil(package.height * CM_TO_IN)),
        "distance_unit": "in",
        "weight": str(math.ceil(package.weight * KG_TO_LB)),
        "mass_unit": "lb",
    }


class ShippoAdapter(CarrierAdapter):
    kind = ProviderKind.SHIPPO
    base_url = SHIPPO_API_BASE
    required_credentials = ("api_token",)

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"ShippoToken {self.credentials['api_token']}"}

    def _address_from(self, pickup_pincode: str, pickup_location: str = "Warehouse") -> Dict[str, Any]:
        address = {
            "name": "Warehouse",
            "street1": pickup_location,
            "zip": pickup_pincode,
            "country": "US",
        }
        address.update(self.credentials.get("from_address") or {})
        return address

    async def _create_rated_shipment(
        self,
        address_from: Dict[str, Any],
        address_to: Dict[str, Any],
        package: PackageDimensions,
    ) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/shipments",
            json={
                "address_from": address_from,
                "address_to": address_to,
                "parcels": [_parcel(package)],
                "async": False,
            },
        )

    def _quotes(self, shipment: Dict[str, Any]) -> List[RateQuote]:
        quotes = []
        for rate in shipment.get("rates") or []:
            if not rate.get("amount"):
                continue
            servicelevel = rate.get("servicelevel") or {}
            quotes.append(RateQuote(
                provider=self.name,
                courier_code=servicelevel.get("token") or rate.get("provider") or "shippo",
                courier_name=f"{rate.get('provider', 'Carrier')} - {servicelevel.get('name', 'Standard')}",
                rate=float(rate["amount"]),
                eta_days=int(rate.get("estimated_days") or rate.get("days") or 5),
                rate_id=rate.get("object_id"),
            ))
        return quotes

    async def validate_credentials(self) -> None:
        await self._request("GET", "/addresses")

    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str) -> bool:
        quotes = await self.get_rates(RateRequest(pickup_pincode, delivery_pincode))
        return bool(quotes)

    async def get_rates(self, request: RateRequest) -> List[RateQuote]:
        shipment = await self._create_rated_shipment(
            self._address_from(request.pickup_pincode),
            {"zip": request.delivery_pincode, "country": request.delivery_country or "US"},
            request.package,
        )
        return self._quotes(shipment)

    async def create_shipment(self, request: ShipmentRequest, quote: RateQuote) -> ShipmentResult:
        rate_id = quote.rate_id
        if not rate_id:
            shipment = await self._create_rated_shipment(
                self._address_from(request.pickup_pincode, request.pickup_location),
                {
                    "name": request.customer_name,
                    "street1": request.delivery_address,
                    "city": request.delivery_city,
                    "state": request.delivery_state,
                    "zip": request.delivery_pincode,
                    "country": request.delivery_country,
                    "phone": request.customer_phone,
                    "email": request.customer_email,
                },
                request.package,
            )
            quotes = self._quotes(shipment)
            if not quotes:
                raise NoServiceableRoute("Shippo returned no rates for this route", provider=self.name)
            matching = [q for q in quotes if q.courier_code == quote.courier_code]
            chosen = min(matching or quotes, key=lambda q: q.rate)
            rate_id = chosen.rate_id
            quote = chosen

        transaction = await self._request(
            "POST",
            "/transactions",
            json={"rate": rate_id, "label_file_type": "PDF", "async": False},
        )
        if transaction.get("status") != "SUCCESS":
            messages = transaction.get("messages") or [{}]
            raise RemoteError(messages[0].get("text") or "Shippo label purchase failed", provider=self.name)

        return ShipmentResult(
            provider=self.name,
            shipment_id=transaction.get("object_id"),
            tracking_id=transaction.get("tracking_number"),
            courier_name=quote.courier_name,
            label_url=transaction.get("label_url"),
            tracking_url=transaction.get("tracking_url_provider"),
            estimated_delivery=datetime.utcnow() + timedelta(days=quote.eta_days),
        )

    async def track_shipment(self, awb_code: str) -> TrackingResult:
        tracking: Optional[Dict[str, Any]] = None
        for carrier in TRACKING_CARRIERS:
            try:
                data = await self._request("GET", f"/tracks/{carrier}/{awb_code}")
            except RemoteError:
                continue
            if data.get("tracking_status"):
                tracking = data
                break

        if not tracking:
            raise RemoteError("Shippo tracking not available", provider=self.name)

        events = []
        for event in tracking.get("tracking_history") or []:
            location = event.get("location") or {}
            events.append(TrackingEvent(
                date=event.get("status_date", ""),
                status=event.get("status", ""),
                activity=event.get("status_details") or event.get("status", ""),
                location=f"{location.get('city', '')}, {location.get('state', '')}" if location else "",
            ))

        current = tracking["tracking_status"]
        return TrackingResult(
            provider=self.name,
            awb_code=awb_code,
            current_status=current.get("status") or "UNKNOWN",
            events=events,
            estimated_delivery=tracking.get("eta"),
            delivered_at=current.get("status_date") if current.get("status") == "DELIVERED" else None,
        )

    async def cancel_shipment(self, awb_code: str) -> bool:
        # Shippo refunds the label by transaction id
        data = await self._request("POST", "/refunds", json={"transaction": awb_code})
        return data.get("status") in ("QUEUED", "PENDING", "SUCCESS")

    async def generate_label(self, shipment_id: str) -> Optional[str]:
        data = await self._request("GET", f"/transactions/{shipment_id}")
        return data.get("label_url")
