import pytest

from services.fulfillment_service.errors import (
    InvalidPayload,
    InvalidSignature,
    MissingSignature,
    NoSecretConfigured,
)
from services.fulfillment_service.webhook_verifier import StoreSecretResolver, WebhookVerifier

PLATFORM_SECRET = "whsec_platform_test"
MERCHANT_SECRET = "whsec_merchant_test"
STORE_ID = "6f1c2a56-2f35-4b8e-9f43-2b8a3c1d9e10"


def resolver_for(secrets):
    async def resolve(store_id):
        return secrets.get(store_id)

    return resolve


def completed_session(stripe_event, store_id=STORE_ID):
    return stripe_event("checkout.session.completed", {
        "id": "cs_test_1",
        "payment_intent": "pi_test_1",
        "metadata": {"order_id": "0b9f8c1e-6d7a-4e0b-8f3c-1a2b3c4d5e6f", "store_id": store_id},
    })


async def test_platform_secret_verifies(stripe_event, sign):
    body = completed_session(stripe_event)
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({}))

    event = await verifier.verify(body, sign(body, PLATFORM_SECRET))

    assert event.type == "checkout.session.completed"
    assert event.verified_with == "platform"
    assert str(event.order_id) == "0b9f8c1e-6d7a-4e0b-8f3c-1a2b3c4d5e6f"
    assert event.payment_intent == "pi_test_1"


async def test_merchant_secret_is_the_fallback(stripe_event, sign):
    body = completed_session(stripe_event)
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({STORE_ID: MERCHANT_SECRET}))

    event = await verifier.verify(body, sign(body, MERCHANT_SECRET))

    assert event.verified_with == "merchant"
    assert str(event.store_id) == STORE_ID


async def test_merchant_secret_works_without_platform_secret(stripe_event, sign):
    body = completed_session(stripe_event)
    verifier = WebhookVerifier(None, resolver_for({STORE_ID: MERCHANT_SECRET}))

    event = await verifier.verify(body, sign(body, MERCHANT_SECRET))

    assert event.verified_with == "merchant"


async def test_neither_secret_matching_is_rejected(stripe_event, sign):
    body = completed_session(stripe_event)
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({STORE_ID: MERCHANT_SECRET}))

    with pytest.raises(InvalidSignature):
        await verifier.verify(body, sign(body, "whsec_someone_else"))


async def test_missing_signature_is_rejected(stripe_event):
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({}))

    with pytest.raises(MissingSignature):
        await verifier.verify(completed_session(stripe_event), None)


async def test_tampered_body_is_rejected(stripe_event, sign):
    body = completed_session(stripe_event)
    signature = sign(body, PLATFORM_SECRET)
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({STORE_ID: MERCHANT_SECRET}))

    with pytest.raises(InvalidSignature):
        await verifier.verify(body.replace(b"pi_test_1", b"pi_test_2"), signature)


async def test_store_without_secret_falls_back_to_platform_rejection(stripe_event, sign):
    body = completed_session(stripe_event)
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({}))

    with pytest.raises(InvalidSignature) as exc_info:
        await verifier.verify(body, sign(body, "whsec_forged"))
    assert exc_info.value.status_code == 400


async def test_store_without_secret_and_no_platform_secret_is_a_configuration_error(stripe_event, sign):
    body = completed_session(stripe_event)
    verifier = WebhookVerifier(None, resolver_for({}))

    with pytest.raises(NoSecretConfigured) as exc_info:
        await verifier.verify(body, sign(body, MERCHANT_SECRET))
    assert exc_info.value.status_code == 500


async def test_no_secret_anywhere_is_a_configuration_error(stripe_event, sign):
    body = stripe_event("checkout.session.completed", {"id": "cs_test_1", "metadata": {}})
    verifier = WebhookVerifier(None, resolver_for({}))

    with pytest.raises(NoSecretConfigured):
        await verifier.verify(body, sign(body, MERCHANT_SECRET))


async def test_signed_body_that_is_not_json_is_invalid_payload(sign):
    body = b"not json at all"
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({}))

    with pytest.raises(InvalidPayload):
        await verifier.verify(body, sign(body, PLATFORM_SECRET))


async def test_stale_signature_is_rejected(stripe_event, sign):
    body = completed_session(stripe_event)
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({STORE_ID: MERCHANT_SECRET}))

    with pytest.raises(InvalidSignature):
        await verifier.verify(body, sign(body, PLATFORM_SECRET, timestamp=1_000_000_000))


async def test_refund_amount_is_in_major_units(stripe_event, sign):
    body = stripe_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_test_1", "amount_refunded": 25050})
    verifier = WebhookVerifier(PLATFORM_SECRET, resolver_for({}))

    event = await verifier.verify(body, sign(body, PLATFORM_SECRET))

    assert event.amount_refunded == 250.5


async def test_store_secret_requires_verified_gateway_account(session_factory, cipher, make_store):
    verified = await make_store(
        stripe_webhook_secret=cipher.encrypt(MERCHANT_SECRET),
        stripe_credentials_verified=True,
    )
    unverified = await make_store(
        name="Unverified",
        stripe_webhook_secret=cipher.encrypt(MERCHANT_SECRET),
        stripe_credentials_verified=False,
    )
    resolve = StoreSecretResolver(session_factory, cipher)

    assert await resolve(str(verified.id)) == MERCHANT_SECRET
    assert await resolve(str(unverified.id)) is None
    assert await resolve("not-a-uuid") is None
