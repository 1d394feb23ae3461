"""Carrier adapter contract and shared value types."""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from ..errors import AuthenticationFailed, NotConfigured, RemoteError
from ..token_cache import TokenCache

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Closed set of carriers the registry can resolve."""
    SHIPROCKET = "shiprocket"
    DELHIVERY = "delhivery"
    BLUEDART = "bluedart"
    SHIPPO = "shippo"
    SELF = "self"


@dataclass(frozen=True)
class PackageDimensions:
    length: float  # cm
    breadth: float
    height: float
    weight: float  # kg

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PackageDimensions":
        if not data:
            return DEFAULT_PACKAGE
        return cls(
            length=float(data.get("length", DEFAULT_PACKAGE.length)),
            breadth=float(data.get("breadth", DEFAULT_PACKAGE.breadth)),
            height=float(data.get("height", DEFAULT_PACKAGE.height)),
            weight=float(data.get("weight", DEFAULT_PACKAGE.weight)),
        )


DEFAULT_PACKAGE = PackageDimensions(length=20, breadth=15, height=10, weight=0.5)


@dataclass
class RateRequest:
    pickup_pincode: str
    delivery_pincode: str
    package: PackageDimensions = DEFAULT_PACKAGE
    cod: bool = False
    order_value: float = 0.0
    delivery_country: str = "IN"


@dataclass(frozen=True)
class RateQuote:
    provider: str
    courier_code: str
    courier_name: str
    rate: float
    eta_days: int
    cod_charges: float = 0.0
    rate_id: Optional[str] = None  # carrier-side handle needed to buy this rate


@dataclass
class ShipmentItem:
    name: str
    quantity: int
    price: float
    sku: Optional[str] = None


@dataclass
class ShipmentRequest:
    order_number: str
    customer_name: str
    customer_phone: str
    delivery_address: str
    delivery_city: str
    delivery_state: str
    delivery_pincode: str
    pickup_pincode: str
    items: List[ShipmentItem]
    order_value: float
    customer_email: Optional[str] = None
    delivery_country: str = "India"
    pickup_location: str = "Primary"
    package: PackageDimensions = DEFAULT_PACKAGE
    cod: bool = False

    def rate_request(self) -> RateRequest:
        return RateRequest(
            pickup_pincode=self.pickup_pincode,
            delivery_pincode=self.delivery_pincode,
            package=self.package,
            cod=self.cod,
            order_value=self.order_value,
        )


@dataclass
class ShipmentResult:
    provider: str
    shipment_id: Optional[str] = None
    tracking_id: Optional[str] = None
    courier_name: Optional[str] = None
    label_url: Optional[str] = None
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


@dataclass(frozen=True)
class TrackingEvent:
    date: str
    status: str
    activity: str = ""
    location: str = ""


@dataclass
class TrackingResult:
    provider: str
    awb_code: str
    current_status: str
    events: List[TrackingEvent] = field(default_factory=list)
    current_location: Optional[str] = None
    estimated_delivery: Optional[str] = None
    delivered_at: Optional[str] = None


def select_rate(quotes: List[RateQuote], strategy: str) -> Optional[RateQuote]:
    """
    Pick one quote.

    cheapest: lowest rate, ties broken by lowest eta.
    fastest: lowest eta, ties broken by lowest rate.
    """
    if not quotes:
        return None
    if strategy == "fastest":
        return min(quotes, key=lambda q: (q.eta_days, q.rate))
    return min(quotes, key=lambda q: (q.rate, q.eta_days))


class CarrierAdapter(ABC):
    """One carrier account, bound to a merchant's decrypted credentials."""

    kind: ProviderKind
    base_url: str
    required_credentials: tuple = ()

    def __init__(
        self,
        credentials: Dict[str, Any],
        http_client: httpx.AsyncClient,
        token_cache: Optional[TokenCache] = None,
        cache_key: Optional[str] = None,
    ):
        self.credentials = credentials or {}
        self.http = http_client
        self.token_cache = token_cache
        self.cache_key = cache_key

    @property
    def name(self) -> str:
        return self.kind.value

    def is_configured(self) -> bool:
        return all(self.credentials.get(key) for key in self.required_credentials)

    def _require_configured(self):
        if not self.is_configured():
            missing = [k for k in self.required_credentials if not self.credentials.get(k)]
            raise NotConfigured(
                f"{self.name} credentials incomplete (missing: {', '.join(missing)})",
                provider=self.name,
            )

    async def _auth_headers(self) -> Dict[str, str]:
        return {}

    async def _request(self, method: str, path: str, expect: Optional[type] = dict, **kwargs) -> Any:
        """
        Perform an authenticated call and decode the JSON body.

        401/403 raise AuthenticationFailed; transport failures, other non-2xx
        statuses, undecodable bodies and bodies that are not an instance of
        `expect` raise RemoteError. Pass expect=None to accept any JSON.
        """
        self._require_configured()
        headers = dict(await self._auth_headers())
        headers.update(kwargs.pop("headers", {}) or {})
        url = f"{self.base_url}{path}"

        try:
            response = await self.http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteError(f"{self.name} request failed: {e}", provider=self.name) from e

        if response.status_code in (401, 403):
            raise AuthenticationFailed(
                f"{self.name} rejected credentials ({response.status_code})",
                provider=self.name,
            )
        if response.status_code >= 400:
            logger.error(f"{self.name} API error {response.status_code}: {response.text[:500]}")
            raise RemoteError(
                f"{self.name} API error: {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise RemoteError(f"{self.name} returned a malformed body", provider=self.name) from e

        if expect is not None and not isinstance(body, expect):
            raise RemoteError(
                f"{self.name} returned an unexpected {type(body).__name__} body for {path}",
                provider=self.name,
            )
        return body

    @abstractmethod
    async def validate_credentials(self) -> None:
        """Live probe. Raises a CarrierError when the credentials do not work."""

    @abstractmethod
    async def check_serviceability(self, pickup_pincode: str, delivery_pincode: str) -> bool:
        ...

    @abstractmethod
    async def get_rates(self, request: RateRequest) -> List[RateQuote]:
        ...

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest, quote: RateQuote) -> ShipmentResult:
        ...

    async def assign_tracking_id(self, result: ShipmentResult, quote: RateQuote) -> ShipmentResult:
        """Follow-up call for carriers that allocate the AWB separately."""
        return result

    @abstractmethod
    async def track_shipment(self, awb_code: str) -> TrackingResult:
        ...

    @abstractmethod
    async def cancel_shipment(self, awb_code: str) -> bool:
        ...

    @abstractmethod
    async def generate_label(self, shipment_id: str) -> Optional[str]:
        ...
