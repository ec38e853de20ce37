"""Order Service — query handlers (read side)"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from stockflow.errors import NotFound

from . import store
from .models import Order


async def get_order(session: AsyncSession, order_id: str) -> Order:
    """Malformed ids are reported the same way as unknown ones."""
    try:
        normalized = str(UUID(order_id))
    except (TypeError, ValueError):
        raise NotFound("Order not found", detail={"id": order_id}) from None
    order = await store.find_order(session, normalized)
    if order is None:
        raise NotFound("Order not found", detail={"id": order_id})
    return order
