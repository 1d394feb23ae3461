"""Authentication and normalization of inbound payment gateway webhooks."""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

import stripe

from shared.encryption import CredentialCipher, EncryptionError

from .errors import InvalidPayload, InvalidSignature, MissingSignature, NoSecretConfigured
from .models import Store

logger = logging.getLogger(__name__)

SecretResolver = Callable[[str], Awaitable[Optional[str]]]


def _as_uuid(value: Any) -> Optional[UUID]:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


@dataclass
class PaymentEvent:
    """A verified gateway event, reduced to what fulfillment needs."""
    id: str
    type: str
    object: Dict[str, Any] = field(default_factory=dict)
    verified_with: str = "platform"  # platform | merchant

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.object.get("metadata") or {}

    @property
    def order_id(self) -> Optional[UUID]:
        return _as_uuid(self.metadata.get("order_id"))

    @property
    def store_id(self) -> Optional[UUID]:
        return _as_uuid(self.metadata.get("store_id"))

    @property
    def payment_intent(self) -> Optional[str]:
        intent = self.object.get("payment_intent")
        if isinstance(intent, dict):
            return intent.get("id")
        return intent

    @property
    def amount_refunded(self) -> float:
        """Refunded amount in major currency units."""
        return (self.object.get("amount_refunded") or 0) / 100


class WebhookVerifier:
    """
    Verifies a Stripe-style signature against the platform secret, then
    falls back to the secret of the merchant named in the event metadata.

    Pure: no state changes happen here.
    """

    def __init__(
        self,
        platform_secret: Optional[str],
        merchant_secret_resolver: SecretResolver,
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self.platform_secret = platform_secret
        self.resolve_merchant_secret = merchant_secret_resolver
        self.tolerance = tolerance

    def _verify(self, body: bytes, signature: str, secret: str) -> bool:
        try:
            stripe.Webhook.construct_event(body, signature, secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError:
            return False
        except ValueError as e:
            raise InvalidPayload(f"Malformed webhook body: {e}") from e
        return True

    async def verify(self, body: bytes, signature: Optional[str]) -> PaymentEvent:
        if not signature:
            raise MissingSignature("Missing Stripe-Signature header")

        verified_with = None
        if self.platform_secret and self._verify(body, signature, self.platform_secret):
            verified_with = "platform"

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise InvalidPayload("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise InvalidPayload("Webhook body is not a JSON object")

        data_object = (payload.get("data") or {}).get("object") or {}

        if verified_with is None:
            store_id = (data_object.get("metadata") or {}).get("store_id")
            if not store_id:
                if not self.platform_secret:
                    raise NoSecretConfigured("No webhook secret configured")
                logger.warning("Webhook failed platform verification and names no store")
                raise InvalidSignature("Invalid signature")

            merchant_secret = await self.resolve_merchant_secret(str(store_id))
            if not merchant_secret:
                if not self.platform_secret:
                    logger.error(f"No webhook secret configured for store {store_id}")
                    raise NoSecretConfigured(f"No webhook secret configured for store {store_id}")
                logger.warning(f"Webhook failed platform verification and store {store_id} has no secret")
                raise InvalidSignature("Invalid signature")

            if not self._verify(body, signature, merchant_secret):
                logger.warning(f"Webhook signature invalid for platform and store {store_id}")
                raise InvalidSignature("Invalid signature")
            verified_with = "merchant"

        event = PaymentEvent(
            id=str(payload.get("id") or ""),
            type=str(payload.get("type") or ""),
            object=data_object,
            verified_with=verified_with,
        )
        logger.info(f"Verified {event.type} event {event.id} with {verified_with} secret")
        return event


class StoreSecretResolver:
    """Looks up a merchant's own webhook secret, if their gateway account is verified."""

    def __init__(self, session_factory, cipher: CredentialCipher):
        self.session_factory = session_factory
        self.cipher = cipher

    async def __call__(self, store_id: str) -> Optional[str]:
        store_uuid = _as_uuid(store_id)
        if store_uuid is None:
            return None

        async with self.session_factory() as session:
            store = await session.get(Store, store_uuid)

        if store is None or not store.stripe_webhook_secret or not store.stripe_credentials_verified:
            return None
        try:
            return self.cipher.decrypt(store.stripe_webhook_secret)
        except EncryptionError:
            logger.error(f"Stored webhook secret for store {store_id} cannot be decrypted", exc_info=True)
            return None
