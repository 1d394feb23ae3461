"""Exception hierarchy for the fulfillment service."""
from typing import Optional


class FulfillmentError(Exception):
    """Base class for all fulfillment errors."""
    pass


# Webhook verification
class VerificationError(FulfillmentError):
    """The inbound payment event could not be authenticated."""
    status_code = 400


class MissingSignature(VerificationError):
    pass


class InvalidPayload(VerificationError):
    pass


class NoSecretConfigured(VerificationError):
    status_code = 500


class InvalidSignature(VerificationError):
    pass


# Order state
class StateError(FulfillmentError):
    pass


class OrderNotFound(StateError):
    def __init__(self, reference):
        super().__init__(f"Order {reference} not found")
        self.reference = reference


class InvalidTransition(StateError):
    def __init__(self, order_id, current: str, target: str):
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target


# Inventory
class InsufficientStock(FulfillmentError):
    """Checkout tried to reserve more than is in stock."""

    def __init__(self, unavailable: list):
        titles = ", ".join(item["title"] for item in unavailable)
        super().__init__(f"Insufficient stock for: {titles}")
        self.unavailable = unavailable


# Carriers
class CarrierError(FulfillmentError):
    """Base class for carrier adapter failures."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class NotConfigured(CarrierError):
    """Credentials missing or incomplete for the provider."""
    pass


class AuthenticationFailed(CarrierError):
    """The carrier rejected the credentials or session token."""
    pass


class NoServiceableRoute(CarrierError):
    """The carrier returned no rates for the route."""
    pass


class RemoteError(CarrierError):
    """Transport failure, non-2xx response or malformed body."""

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, provider)
        self.status_code = status_code


class CredentialValidationError(FulfillmentError):
    """Credentials failed the live probe and were not saved."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Invalid {provider} credentials: {reason}")
        self.provider = provider
        self.reason = reason
