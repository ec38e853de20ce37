"""
Inventory Service — command handlers (write side)

Every write follows the same order:

    1. change the row and commit
    2. publish a StockUpdateEvent

The two steps do not share a transaction. A failed publish is logged and
the committed write stands; consumers see the store and the event stream
agree eventually, not atomically.

Deduct and release for one product are serialized by a per-product lock so
the sufficiency check and the decrement are never interleaved with another
change to the same product. The conditional UPDATE in store.py still
guards against writers in other processes.
"""

import asyncio
import logging
import random
import weakref

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockflow.broker import BrokerClient, Exchange
from stockflow.errors import (
    Conflict,
    InsufficientStock,
    NotFound,
    UpstreamUnavailable,
    ValidationError,
)

from . import queries, store
from .events import StockUpdateEvent
from .models import CreateItemRequest, InventoryItem, StockCheckResult

logger = logging.getLogger(__name__)

PRODUCT_CODE_PREFIX = "INV-"


def generate_product_code() -> str:
    return f"{PRODUCT_CODE_PREFIX}{random.randrange(1_000_000_000):09d}"


def _require_positive(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive number", detail={"quantity": quantity})


class InventoryService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: BrokerClient,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, product_code: str) -> asyncio.Lock:
        lock = self._locks.get(product_code)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[product_code] = lock
        return lock

    # ── Reads ────────────────────────────────────

    async def get_item(self, product_code: str) -> InventoryItem:
        async with self.session_factory() as session:
            return await queries.get_item(session, product_code)

    async def check_stock(self, product_code: str, quantity: int) -> StockCheckResult:
        async with self.session_factory() as session:
            return await queries.check_stock(session, product_code, quantity)

    # ── Writes ───────────────────────────────────

    async def generate_unique_product_code(self, session: AsyncSession) -> str:
        while True:
            product_code = generate_product_code()
            if await store.find_item(session, product_code) is None:
                return product_code

    async def create_item(self, req: CreateItemRequest) -> InventoryItem:
        async with self.session_factory() as session:
            if req.product_code:
                if await store.find_item(session, req.product_code) is not None:
                    raise Conflict(
                        "Item with this product code already exists",
                        detail={"productCode": req.product_code},
                    )
                product_code = req.product_code
            else:
                product_code = await self.generate_unique_product_code(session)

            item = InventoryItem(
                product_code=product_code,
                name=req.name,
                description=req.description,
                quantity=req.quantity,
                price=req.price,
            )
            try:
                await store.insert_item(session, item)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise Conflict(
                    "Item with this product code already exists",
                    detail={"productCode": product_code},
                ) from e

        logger.info("Item created: %s", item.product_code)
        await self._emit(StockUpdateEvent.for_change(item.product_code, item.name, 0, item.quantity))
        return item

    async def update_stock(self, product_code: str, quantity: int) -> InventoryItem:
        """Set the stock of ``product_code`` to ``quantity``."""
        _require_positive(quantity)
        async with self._lock_for(product_code):
            async with self.session_factory() as session:
                item = await store.find_item(session, product_code)
                if item is None:
                    raise NotFound("Item not found", detail={"productCode": product_code})
                await store.set_quantity(session, product_code, quantity)
                await session.commit()

        logger.info("Stock updated for item %s. New stock: %d", item.name, quantity)
        await self._emit(
            StockUpdateEvent.for_change(product_code, item.name, item.quantity, quantity)
        )
        return item.model_copy(update={"quantity": quantity})

    async def deduct_stock(self, product_code: str, quantity: int) -> int:
        """Take ``quantity`` units out of stock. Returns the remaining stock."""
        _require_positive(quantity)
        async with self._lock_for(product_code):
            async with self.session_factory() as session:
                item = await store.find_item(session, product_code)
                if item is None:
                    raise NotFound(queries.ITEM_NOT_FOUND, detail={"productCode": product_code})
                if item.quantity < quantity or not await store.deduct_quantity(
                    session, product_code, quantity
                ):
                    await session.rollback()
                    raise InsufficientStock(
                        f"Insufficient stock for {item.name}. "
                        f"Requested: {quantity}, Available: {item.quantity}",
                        detail={"productCode": product_code, "currentStock": item.quantity},
                    )
                after = await store.find_item(session, product_code)
                await session.commit()

        logger.info("Deducted %d of %s, %d left", quantity, product_code, after.quantity)
        await self._emit(
            StockUpdateEvent.for_change(
                product_code, item.name, after.quantity + quantity, after.quantity
            )
        )
        return after.quantity

    async def release_stock(self, product_code: str, quantity: int) -> int:
        """Put ``quantity`` units back (compensation for a failed order). Returns the new stock."""
        _require_positive(quantity)
        async with self._lock_for(product_code):
            async with self.session_factory() as session:
                if not await store.add_quantity(session, product_code, quantity):
                    raise NotFound(queries.ITEM_NOT_FOUND, detail={"productCode": product_code})
                after = await store.find_item(session, product_code)
                await session.commit()

        logger.info("Released %d of %s, %d now in stock", quantity, product_code, after.quantity)
        await self._emit(
            StockUpdateEvent.for_change(
                product_code, after.name, after.quantity - quantity, after.quantity
            )
        )
        return after.quantity

    async def _emit(self, event: StockUpdateEvent) -> None:
        try:
            await self.broker.publish(Exchange.INVENTORY, event.routing_key, event.to_wire())
        except UpstreamUnavailable as e:
            logger.error(
                "Failed to publish %s event for product %s: %s",
                event.event_type,
                event.product_code,
                e,
            )
            return
        logger.info("Published %s event for product %s", event.event_type, event.product_code)
