"""
Inventory Service — query handlers (read side)

Side-effect free; both the HTTP API and the stock-check responder read
through here.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from stockflow.errors import NotFound

from . import store
from .models import InventoryItem, StockCheckResult

logger = logging.getLogger(__name__)

ITEM_NOT_FOUND = "Item not found in inventory"


async def get_item(session: AsyncSession, product_code: str) -> InventoryItem:
    item = await store.find_item(session, product_code)
    if item is None:
        raise NotFound("Item not found", detail={"productCode": product_code})
    logger.info("Fetched stock for item %s: %s", item.name, item.product_code)
    return item


async def check_stock(
    session: AsyncSession, product_code: str, quantity: int
) -> StockCheckResult:
    """Can ``quantity`` units of ``product_code`` be taken right now?"""
    item = await store.find_item(session, product_code)
    if item is None:
        logger.info("Stock check failed: product %s not found", product_code)
        return StockCheckResult(available=False, message=ITEM_NOT_FOUND, current_stock=0)

    available = quantity <= item.quantity
    return StockCheckResult(
        available=available,
        message=(
            "Stock available"
            if available
            else f"Insufficient stock. Requested: {quantity}, Available: {item.quantity}"
        ),
        current_stock=item.quantity,
        unit_price=item.price,
    )
