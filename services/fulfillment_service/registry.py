"""Per-merchant carrier configuration and adapter resolution."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

import httpx
from sqlalchemy import select, update

from shared.encryption import CredentialCipher, mask_secret

from .carriers.base import (
    CarrierAdapter,
    PackageDimensions,
    ProviderKind,
    RateQuote,
    RateRequest,
    select_rate,
)
from .carriers.bluedart import BlueDartAdapter
from .carriers.delhivery import DelhiveryAdapter
from .carriers.shippo import ShippoAdapter
from .carriers.shiprocket import ShiprocketAdapter
from .errors import CarrierError, CredentialValidationError, NotConfigured
from .models import CourierStrategy, ShippingProviderConfig, Store
from .token_cache import TokenCache, token_key

logger = logging.getLogger(__name__)

ADAPTERS: Dict[ProviderKind, type[CarrierAdapter]] = {
    ProviderKind.SHIPROCKET: ShiprocketAdapter,
    ProviderKind.DELHIVERY: DelhiveryAdapter,
    ProviderKind.BLUEDART: BlueDartAdapter,
    ProviderKind.SHIPPO: ShippoAdapter,
}

SELF_DELIVERY_RATE = RateQuote(
    provider=ProviderKind.SELF.value,
    courier_code="self",
    courier_name="Standard Delivery",
    rate=50.0,
    eta_days=5,
)


class ManualFulfillment:
    """The merchant ships this order themselves."""

    def __repr__(self):
        return "MANUAL"


MANUAL = ManualFulfillment()


@dataclass
class ResolvedProvider:
    provider: ProviderKind
    adapter: CarrierAdapter
    strategy: str
    package: PackageDimensions
    pickup_pincode: str
    pickup_location: str


@dataclass
class StoreRates:
    """Merged quotes for a store with the cheapest and fastest picks."""

    quotes: List[RateQuote]
    strategy: str
    cheapest: Optional[RateQuote]
    fastest: Optional[RateQuote]

    @property
    def recommended(self) -> Optional[RateQuote]:
        if self.strategy == CourierStrategy.FASTEST.value:
            return self.fastest
        return self.cheapest


class ProviderRegistry:
    """Resolves carrier adapters for merchants and manages their credentials."""

    def __init__(
        self,
        session_factory,
        cipher: CredentialCipher,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache,
    ):
        self.session_factory = session_factory
        self.cipher = cipher
        self.http = http_client
        self.token_cache = token_cache

    def build_adapter(self, store_id: UUID, provider: ProviderKind, credentials: Dict[str, Any]) -> CarrierAdapter:
        adapter_cls = ADAPTERS.get(provider)
        if adapter_cls is None:
            raise NotConfigured(f"No adapter for provider {provider.value}", provider=provider.value)
        return adapter_cls(
            credentials,
            self.http,
            token_cache=self.token_cache,
            cache_key=token_key(store_id, provider.value),
        )

    async def evict_token(self, store_id: UUID, provider: str):
        await self.token_cache.evict(token_key(store_id, provider))

    async def _get_store(self, session, store_id: UUID) -> Store:
        store = await session.get(Store, store_id)
        if store is None:
            raise NotConfigured(f"Store {store_id} not found")
        return store

    async def get_store(self, store_id: UUID) -> Store:
        async with self.session_factory() as session:
            return await self._get_store(session, store_id)

    async def resolve(
        self,
        store_id: UUID,
        preference: Optional[str] = None,
        automatic: bool = False,
    ) -> Union[ResolvedProvider, ManualFulfillment]:
        """
        Pick the carrier for a shipment.

        Returns MANUAL when no carrier is configured, the chosen carrier is
        "self", or (for automatic creation) the merchant disabled it.
        """
        async with self.session_factory() as session:
            store = await self._get_store(session, store_id)

            if automatic and not store.auto_create_shipment:
                logger.info(f"Automatic shipment creation disabled for store {store_id}")
                return MANUAL
            if preference == ProviderKind.SELF.value:
                return MANUAL

            result = await session.execute(
                select(ShippingProviderConfig)
                .where(
                    ShippingProviderConfig.store_id == store_id,
                    ShippingProviderConfig.is_active.is_(True),
                )
                .order_by(ShippingProviderConfig.created_at)
            )
            configs = result.scalars().all()

        if preference:
            configs = [c for c in configs if c.provider == preference]
            if not configs:
                raise NotConfigured(f"Provider {preference} is not configured", provider=preference)

        if not configs:
            return MANUAL

        config = next((c for c in configs if c.is_default), configs[0])
        if config.provider == ProviderKind.SELF.value:
            return MANUAL

        kind = ProviderKind(config.provider)
        adapter = self.build_adapter(store_id, kind, self.cipher.decrypt_json(config.credentials))

        return ResolvedProvider(
            provider=kind,
            adapter=adapter,
            strategy=store.courier_strategy or CourierStrategy.CHEAPEST.value,
            package=PackageDimensions.from_dict(store.default_package),
            pickup_pincode=store.pickup_pincode or "",
            pickup_location=config.pickup_location or "Primary",
        )

    async def save_provider(
        self,
        store_id: UUID,
        provider: str,
        credentials: Dict[str, Any],
        is_default: bool = False,
        pickup_location: Optional[str] = None,
    ) -> ShippingProviderConfig:
        """Probe the credentials live, then encrypt and upsert them."""
        try:
            kind = ProviderKind(provider)
        except ValueError:
            raise CredentialValidationError(provider, "unknown provider")
        if kind == ProviderKind.SELF:
            raise CredentialValidationError(provider, "manual delivery needs no configuration")

        adapter_cls = ADAPTERS[kind]
        # Probe without the token cache so a stale session cannot mask bad credentials.
        adapter = adapter_cls(credentials, self.http)
        if not adapter.is_configured():
            missing = [k for k in adapter.required_credentials if not credentials.get(k)]
            raise CredentialValidationError(provider, f"missing {', '.join(missing)}")
        try:
            await adapter.validate_credentials()
        except CarrierError as e:
            logger.warning(f"Credential probe failed for {provider} (store {store_id}): {e}")
            raise CredentialValidationError(provider, str(e)) from e

        async with self.session_factory() as session:
            await self._get_store(session, store_id)

            result = await session.execute(
                select(ShippingProviderConfig).where(ShippingProviderConfig.store_id == store_id)
            )
            configs = result.scalars().all()
            config = next((c for c in configs if c.provider == provider), None)
            has_other_default = any(c.is_default and c.provider != provider for c in configs)

            if config is None:
                config = ShippingProviderConfig(store_id=store_id, provider=provider)
                session.add(config)

            config.credentials = self.cipher.encrypt_json(credentials)
            config.is_active = True
            config.pickup_location = pickup_location or config.pickup_location
            config.updated_at = datetime.utcnow()

            make_default = is_default or not has_other_default
            if make_default and has_other_default:
                await session.execute(
                    update(ShippingProviderConfig)
                    .where(
                        ShippingProviderConfig.store_id == store_id,
                        ShippingProviderConfig.provider != provider,
                    )
                    .values(is_default=False)
                )
            config.is_default = make_default or bool(config.is_default)

            await session.commit()
            await session.refresh(config)

        await self.evict_token(store_id, provider)
        logger.info(f"Saved {provider} credentials for store {store_id} (default={config.is_default})")
        return config

    async def remove_provider(self, store_id: UUID, provider: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShippingProviderConfig).where(
                    ShippingProviderConfig.store_id == store_id,
                    ShippingProviderConfig.provider == provider,
                )
            )
            config = result.scalar_one_or_none()
            if config is None:
                return False

            was_default = config.is_default
            await session.delete(config)
            await session.flush()

            if was_default:
                result = await session.execute(
                    select(ShippingProviderConfig)
                    .where(
                        ShippingProviderConfig.store_id == store_id,
                        ShippingProviderConfig.is_active.is_(True),
                    )
                    .order_by(ShippingProviderConfig.created_at)
                    .limit(1)
                )
                successor = result.scalar_one_or_none()
                if successor is not None:
                    successor.is_default = True
                    logger.info(f"{successor.provider} is now the default provider for store {store_id}")

            await session.commit()

        await self.evict_token(store_id, provider)
        logger.info(f"Removed {provider} from store {store_id}")
        return True

    async def list_providers(self, store_id: UUID) -> List[Dict[str, Any]]:
        """Configured providers with every credential value masked."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ShippingProviderConfig)
                .where(ShippingProviderConfig.store_id == store_id)
                .order_by(ShippingProviderConfig.created_at)
            )
            configs = result.scalars().all()

        providers = []
        for config in configs:
            credentials = self.cipher.decrypt_json(config.credentials)
            providers.append({
                "provider": config.provider,
                "is_active": config.is_active,
                "is_default": config.is_default,
                "pickup_location": config.pickup_location,
                "credentials": {k: mask_secret(str(v)) for k, v in credentials.items()},
            })
        return providers

    async def get_rates_for_store(self, store_id: UUID, request: RateRequest) -> StoreRates:
        """
        Quotes from every active provider, merged and sorted by rate.

        A provider that fails is skipped; with none configured the flat
        self-delivery rate is returned. The store's courier strategy decides
        which of the cheapest and fastest quotes is recommended.
        """
        async with self.session_factory() as session:
            store = await self._get_store(session, store_id)
            result = await session.execute(
                select(ShippingProviderConfig).where(
                    ShippingProviderConfig.store_id == store_id,
                    ShippingProviderConfig.is_active.is_(True),
                )
            )
            configs = result.scalars().all()

        strategy = store.courier_strategy or CourierStrategy.CHEAPEST.value
        if not configs:
            return self._compare([SELF_DELIVERY_RATE], strategy)

        quotes: List[RateQuote] = []
        for config in configs:
            kind = ProviderKind(config.provider)
            if kind == ProviderKind.SELF:
                quotes.append(SELF_DELIVERY_RATE)
                continue
            adapter = self.build_adapter(store_id, kind, self.cipher.decrypt_json(config.credentials))
            try:
                quotes.extend(await adapter.get_rates(request))
            except CarrierError as e:
                logger.warning(f"Rate fetch from {config.provider} failed for store {store_id}: {e}")

        return self._compare(quotes, strategy)

    @staticmethod
    def _compare(quotes: List[RateQuote], strategy: str) -> StoreRates:
        return StoreRates(
            quotes=sorted(quotes, key=lambda q: (q.rate, q.eta_days)),
            strategy=strategy,
            cheapest=select_rate(quotes, CourierStrategy.CHEAPEST.value),
            fastest=select_rate(quotes, CourierStrategy.FASTEST.value),
        )