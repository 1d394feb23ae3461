"""Stock ledger: reserve at checkout, reduce on payment, restore on refund."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select

from .errors import InsufficientStock
from .models import InventoryReservation, OrderItem, Product, ProductVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    product_id: UUID
    quantity: int
    variant_id: Optional[UUID] = None
    title: str = ""

    @classmethod
    def from_order_item(cls, item: OrderItem) -> "LineItem":
        return cls(
            product_id=item.product_id,
            quantity=item.quantity,
            variant_id=item.variant_id,
            title=item.product_title,
        )


class InventoryLedger:
    """
    Per-product (or per-variant) stock counts.

    Items whose track_quantity flag is off are never touched. Reductions that
    would go negative are clamped at zero and logged as an oversell.
    """

    def __init__(self, session_factory, clock: Callable[[], datetime] = datetime.utcnow):
        self.session_factory = session_factory
        self._now = clock

    @staticmethod
    def _lock_order(items: Iterable[LineItem]) -> List[LineItem]:
        # Lock rows in id order.
        return sorted(items, key=lambda item: str(item.variant_id or item.product_id))

    async def _locked_row(self, session, item: LineItem):
        model = ProductVariant if item.variant_id else Product
        row_id = item.variant_id or item.product_id
        result = await session.execute(
            select(model).where(model.id == row_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def reduce(self, items: Iterable[LineItem]) -> None:
        """Commit sold quantities against stock."""
        async with self.session_factory() as session:
            for item in self._lock_order(items):
                row = await self._locked_row(session, item)
                if row is None:
                    logger.warning(f"Cannot reduce stock: product {item.product_id} (variant {item.variant_id}) not found")
                    continue
                if not row.track_quantity:
                    continue

                remaining = row.quantity - item.quantity
                if remaining < 0:
                    logger.warning(
                        f"Oversell on {row.id}: had {row.quantity}, sold {item.quantity}; clamping to 0"
                    )
                    remaining = 0
                row.quantity = remaining

            await session.commit()

    async def restore(self, items: Iterable[LineItem]) -> None:
        """Put refunded quantities back into stock."""
        async with self.session_factory() as session:
            for item in self._lock_order(items):
                row = await self._locked_row(session, item)
                if row is None:
                    logger.warning(f"Cannot restore stock: product {item.product_id} (variant {item.variant_id}) not found")
                    continue
                if not row.track_quantity:
                    continue
                row.quantity = row.quantity + item.quantity

            await session.commit()

    async def release(self, order_id: UUID) -> int:
        """Drop every reservation held for the order."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(InventoryReservation).where(InventoryReservation.order_id == order_id)
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"Released {result.rowcount} reservations for order {order_id}")
        return result.rowcount

    async def _held(self, session, product_id: UUID, variant_id: Optional[UUID] = None,
                    exclude_order_id: Optional[UUID] = None) -> int:
        query = select(func.coalesce(func.sum(InventoryReservation.quantity), 0)).where(
            InventoryReservation.product_id == product_id,
            InventoryReservation.expires_at > self._now(),
        )
        if variant_id:
            query = query.where(InventoryReservation.variant_id == variant_id)
        else:
            query = query.where(InventoryReservation.variant_id.is_(None))
        if exclude_order_id is not None:
            query = query.where(InventoryReservation.order_id != exclude_order_id)
        return int((await session.execute(query)).scalar_one())

    async def check_availability(self, items: Iterable[LineItem],
                                 exclude_order_id: Optional[UUID] = None) -> List[Dict]:
        """Items that cannot be fulfilled from stock net of other checkouts' active holds."""
        unavailable = []
        async with self.session_factory() as session:
            for item in items:
                product = await session.get(Product, item.product_id)
                if product is None:
                    unavailable.append({"product_id": str(item.product_id), "title": item.title or "Unknown product",
                                        "requested": item.quantity, "available": 0})
                    continue

                row = product
                if item.variant_id:
                    row = await session.get(ProductVariant, item.variant_id)
                    if row is None or row.product_id != product.id:
                        unavailable.append({"product_id": str(item.product_id), "title": item.title or product.title,
                                            "requested": item.quantity, "available": 0})
                        continue

                if not row.track_quantity:
                    continue
                available = max(0, row.quantity - await self._held(
                    session, item.product_id, item.variant_id, exclude_order_id
                ))
                if available < item.quantity:
                    unavailable.append({"product_id": str(item.product_id), "title": item.title or row.title,
                                        "requested": item.quantity, "available": available})
        return unavailable

    async def reserve(self, order_id: UUID, items: List[LineItem], minutes: int = 15) -> int:
        """
        Place temporary holds for a checkout.

        Lines already reserved for this order are skipped. Raises
        InsufficientStock without reserving anything when any line is short.
        """
        unavailable = await self.check_availability(items, exclude_order_id=order_id)
        if unavailable:
            raise InsufficientStock(unavailable)

        expires_at = self._now() + timedelta(minutes=minutes)
        created = 0
        async with self.session_factory() as session:
            result = await session.execute(
                select(InventoryReservation.product_id, InventoryReservation.variant_id)
                .where(InventoryReservation.order_id == order_id)
            )
            existing = {(row.product_id, row.variant_id) for row in result}

            for item in items:
                if (item.product_id, item.variant_id) in existing:
                    continue
                session.add(InventoryReservation(
                    order_id=order_id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    expires_at=expires_at,
                ))
                created += 1

            await session.commit()

        logger.info(f"Reserved {created} lines for order {order_id} until {expires_at.isoformat()}")
        return created

    async def cleanup_expired(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(InventoryReservation).where(InventoryReservation.expires_at < self._now())
            )
            await session.commit()

        logger.info(f"Cleaned up {result.rowcount} expired reservations")
        return result.rowcount

    async def effective_availability(self, product_id: UUID, variant_id: Optional[UUID] = None) -> Optional[int]:
        """Stock minus active holds; None for items that do not track quantity."""
        async with self.session_factory() as session:
            row = await session.get(ProductVariant if variant_id else Product, variant_id or product_id)
            if row is None:
                return 0
            if not row.track_quantity:
                return None

            reserved = await self._held(session, product_id, variant_id)

        return max(0, row.quantity - reserved)
