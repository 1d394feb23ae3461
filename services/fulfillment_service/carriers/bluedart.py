"""Blue Dart premium courier adapter."""
import logging
import math
from datetime import date, datetime
from typing import Any, Dict, List, Optional

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

BLUEDART_API_BASE = "https://netconnect.bluedart.com/Ver1.10"
BLUEDART_TRACKING_URL = "https://www.bluedart.com/tracking"

EXPRESS_MULTIPLIER = 1.3


class BlueDartAdapter(CarrierAdapter):
    kind = ProviderKind.BLUEDART
    base_url = BLUEDART_API_BASE
    required_credentials = ("api_key", "client_code", "license_key", "login_id")

    async def _auth_headers(self) -> Dict[str, str]:
        return {
            "JWTToken": self.credentials["api_key"],
            "ClientID": self.credentials["client_code"],
        }

    def _profile(self) -> Dict[str, str]:
        return {
            "Api_type": "S",
            "LicenceKey": self.credentials["license_key"],
            "LoginID": self.credentials["login_id"],
        }

    async def validate_credentials(self) -> None:
        await self.check_serviceability("400001", "110001")

    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str) -> bool:
        data = await self._request(
            "POST",
            "/API/Finder/GetServicablePincodeList",
            json={"pinCode": delivery_pincode, "profile": self._profile()},
        )
        return bool(data.get("ServiceablePinCodeResult"))

    async def get_rates(self, request: RateRequest) -> List[RateQuote]:
        data = await self._request(
            "POST",
            "/API/RateCalculator/GetFreightRate",
            json={
                "originPinCode": request.pickup_pincode,
                "destinationPinCode": request.delivery_pincode,
                "actualWeight": str(math.ceil(request.package.weight * 1000)),
                "invoiceValue": str(request.order_value),
                "productCode": "C" if request.cod else "A",
                "pieceCount": "1",
                "isInsured": "false",
                "profile": self._profile(),
            },
        )
        result = data.get("FreightRateResult") or {}
        if str(result.get("ResponseCode")) != "200":
            logger.info(f"Blue Dart returned no rate: {result.get('ErrorMessage')}")
            return []

        freight = float(result.get("TotalFreightCharge") or 0)
        cod_charges = float(result.get("CODAmount") or 0)
        return [
            RateQuote(
                provider=self.name,
                courier_code="bluedart_surface",
                courier_name="Blue Dart Surface",
                rate=freight,
                eta_days=5,
                cod_charges=cod_charges,
            ),
            RateQuote(
                provider=self.name,
                courier_code="bluedart_express",
                courier_name="Blue Dart Express",
                rate=round(freight * EXPRESS_MULTIPLIER, 2),
                eta_days=2,
                cod_charges=cod_charges,
            ),
        ]

    async def create_shipment(self, request: ShipmentRequest, quote: RateQuote) -> ShipmentResult:
        package = request.package
        body: Dict[str, Any] = {
            "Request": {
                "Consignee": {
                    "ConsigneeAddress1": request.delivery_address[:100],
                    "ConsigneeAddress2": request.delivery_address[100:200],
                    "ConsigneeAttention": request.customer_name,
                    "ConsigneeMobile": request.customer_phone,
                    "ConsigneeName": request.customer_name,
                    "ConsigneePincode": request.delivery_pincode,
                },
                "Services": {
                    "ActualWeight": str(math.ceil(package.weight * 1000)),
                    "CollectableAmount": str(request.order_value if request.cod else 0),
                    "Commodity": {
                        "CommodityDetail1": ", ".join(i.name for i in request.items)[:100],
                    },
                    "CreditReferenceNo": request.order_number,
                    "DeclaredValue": str(request.order_value),
                    "Dimensions": f"{package.length}X{package.breadth}X{package.height}",
                    "InvoiceNo": request.order_number,
                    "ItemCount": str(len(request.items)),
                    "PickupDate": date.today().isoformat(),
                    "PickupTime": "1000",
                    "PieceCount": "1",
                    "ProductCode": "C" if request.cod else "A",
                    "SubProductCode": "E" if quote.courier_code == "bluedart_express" else "",
                },
                "Shipper": {
                    "CustomerAddress1": request.pickup_location,
                    "CustomerCode": self.credentials["client_code"],
                    "CustomerEmailID": request.customer_email or "",
                    "CustomerName": self.credentials["login_id"],
                    "CustomerPincode": request.pickup_pincode,
                    "IsToPayCustomer": "false",
                },
            },
            "Profile": self._profile(),
        }

        data = await self._request("POST", "/API/Pickup/GenerateWaybill", json=body)
        result = data.get("GenerateWaybillResult") or {}
        if result.get("IsError") is not False or not result.get("AWBNo"):
            statuses = result.get("Status") or [{}]
            message = statuses[0].get("StatusInformation") if statuses else None
            raise RemoteError(message or "Failed to create Blue Dart shipment", provider=self.name)

        awb = result["AWBNo"]
        return ShipmentResult(
            provider=self.name,
            shipment_id=awb,
            tracking_id=awb,
            courier_name="Blue Dart",
            tracking_url=f"{BLUEDART_TRACKING_URL}?tracknumbers={awb}",
            estimated_delivery=_parse_date(result.get("ExpectedDeliveryDate")),
        )

    async def track_shipment(self, awb_code: str) -> TrackingResult:
        data = await self._request(
            "POST",
            "/API/Tracking/GetTrackingData",
            json={"AWBNo": awb_code, "Profile": self._profile()},
        )
        tracking = data.get("GetTrackingDataResult")
        if not tracking or tracking.get("IsError"):
            message = (tracking or {}).get("StatusInformation")
            raise RemoteError(message or "Blue Dart tracking not found", provider=self.name)

        scans = tracking.get("ScanDetails") or []
        events = [
            TrackingEvent(
                date=f"{scan.get('ScanDate', '')} {scan.get('ScanTime', '')}".strip(),
                status=scan.get("Scan", ""),
                activity=scan.get("ScanDescription") or scan.get("Scan", ""),
                location=scan.get("Location", ""),
            )
            for scan in scans
        ]
        latest = scans[0] if scans else {}
        return TrackingResult(
            provider=self.name,
            awb_code=awb_code,
            current_status=latest.get("Scan") or "In Transit",
            events=events,
            current_location=latest.get("Location"),
            estimated_delivery=tracking.get("ExpectedDeliveryDate"),
            delivered_at=latest.get("ScanDate") if latest.get("Scan") == "DELIVERED" else None,
        )

    async def cancel_shipment(self, awb_code: str) -> bool:
        data = await self._request(
            "POST",
            "/API/Pickup/CancelWaybill",
            json={"AWBNo": awb_code, "Profile": self._profile()},
        )
        result = data.get("CancelWaybillResult") or {}
        return result.get("IsError") is False

    async def generate_label(self, shipment_id: str) -> Optional[str]:
        data = await self._request(
            "POST",
            "/API/Pickup/GetShipmentLabel",
            json={"AWBNo": shipment_id, "Profile": self._profile()},
        )
        image = (data.get("GetShipmentLabelResult") or {}).get("LabelImage")
        return f"data:application/pdf;base64,{image}" if image else None


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
