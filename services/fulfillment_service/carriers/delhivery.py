"""Delhivery regional courier adapter."""
import json
import logging
import math
from datetime import datetime
from typing import Dict, List, Optional

from ..errors import RemoteError
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

DELHIVERY_API_BASE = "https://track.delhivery.com/api"


class DelhiveryAdapter(CarrierAdapter):
    kind = ProviderKind.DELHIVERY
    base_url = DELHIVERY_API_BASE
    required_credentials = ("api_token", "warehouse_name")

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.credentials['api_token']}"}

    def _charges_params(self, request: RateRequest) -> Dict[str, str]:
        return {
            "md": "E",
            "ss": "Delivered",
            "d_pin": request.delivery_pincode,
            "o_pin": request.pickup_pincode,
            "cgm": str(math.ceil(request.package.weight * 1000)),
            "pt": "COD" if request.cod else "Pre-paid",
            "cod": str(request.order_value if request.cod else 0),
        }

    async def validate_credentials(self) -> None:
        probe = RateRequest(pickup_pincode="400001", delivery_pincode="110001")
        await self._request(
            "GET", "/kinko/v1/invoice/charges/.json", expect=list, params=self._charges_params(probe)
        )

    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str) -> bool:
        data = await self._request(
            "GET", "/c/api/pin-codes/json/", params={"filter_codes": delivery_pincode}
        )
        return bool(data.get("delivery_codes"))

    async def get_rates(self, request: RateRequest) -> List[RateQuote]:
        data = await self._request(
            "GET", "/kinko/v1/invoice/charges/.json", expect=list, params=self._charges_params(request)
        )

        return [
            RateQuote(
                provider=self.name,
                courier_code="delhivery",
                courier_name="Delhivery",
                rate=float(row.get("total_amount") or 0),
                eta_days=int(row.get("estimated_delivery_days") or 5),
                cod_charges=float(row.get("cod_charges") or 0),
            )
            for row in data
        ]

    async def create_shipment(self, request: ShipmentRequest, quote: RateQuote) -> ShipmentResult:
        shipment = {
            "name": request.customer_name,
            "add": request.delivery_address,
            "pin": request.delivery_pincode,
            "city": request.delivery_city,
            "state": request.delivery_state,
            "country": request.delivery_country,
            "phone": request.customer_phone,
            "order": request.order_number,
            "payment_mode": "COD" if request.cod else "Prepaid",
            "return_pin": request.pickup_pincode,
            "products_desc": ", ".join(item.name for item in request.items),
            "cod_amount": request.order_value if request.cod else 0,
            "order_date": datetime.utcnow().isoformat(),
            "total_amount": request.order_value,
            "quantity": sum(item.quantity for item in request.items),
            "waybill": "",
            "shipment_width": request.package.breadth,
            "shipment_height": request.package.height,
            "weight": math.ceil(request.package.weight * 1000),
            "shipping_mode": "Surface",
            "address_type": "home",
        }
        payload = {
            "shipments": [shipment],
            "pickup_location": {"name": self.credentials["warehouse_name"]},
        }

        data = await self._request(
            "POST",
            "/cmu/create.json",
            data={"format": "json", "data": json.dumps(payload)},
        )
        if not data.get("success"):
            message = data.get("rmk")
            raise RemoteError(message or "Failed to create Delhivery shipment", provider=self.name)

        waybill = ((data.get("packages") or [{}])[0]).get("waybill")
        return ShipmentResult(
            provider=self.name,
            shipment_id=waybill,
            tracking_id=waybill,
            courier_name="Delhivery",
            tracking_url=f"https://www.delhivery.com/track/package/{waybill}" if waybill else None,
        )

    async def track_shipment(self, awb_code: str) -> TrackingResult:
        data = await self._request("GET", "/v1/packages/json/", params={"waybill": awb_code})
        shipment = ((data.get("ShipmentData") or [{}])[0]).get("Shipment")
        if not shipment:
            raise RemoteError("Delhivery shipment not found", provider=self.name)

        events = []
        for scan in shipment.get("Scans") or []:
            detail = scan.get("ScanDetail") or {}
            events.append(TrackingEvent(
                date=detail.get("ScanDateTime", ""),
                status=detail.get("Scan", ""),
                activity=detail.get("Instructions") or detail.get("Scan", ""),
                location=detail.get("ScannedLocation", ""),
            ))

        status = shipment.get("Status") or {}
        return TrackingResult(
            provider=self.name,
            awb_code=awb_code,
            current_status=status.get("Status") or "In Transit",
            events=events,
            current_location=status.get("StatusLocation"),
            estimated_delivery=shipment.get("ExpectedDeliveryDate"),
            delivered_at=status.get("StatusDateTime") if status.get("Status") == "Delivered" else None,
        )

    async def cancel_shipment(self, awb_code: str) -> bool:
        data = await self._request(
            "POST", "/p/edit", data={"waybill": awb_code, "cancellation": "true"}
        )
        return bool(data.get("status"))

    async def generate_label(self, shipment_id: str) -> Optional[str]:
        # Packing slips are served as PDF by this URL; the response body is the slip metadata.
        await self._request("GET", "/p/packing_slip", expect=None, params={"wbns": shipment_id})
        return f"{self.base_url}/p/packing_slip?wbns={shipment_id}&pdf=true"
