"""
Order Service — store

Orders live in the order service's own database; the product code is a
plain column, validated at creation time over the broker rather than by a
foreign key.
"""

from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, Integer, MetaData, String, Table, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .models import Order, OrderStatus

metadata = MetaData()

orders_table = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("product_code", String(64), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("total_price", Float, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def insert_order(session: AsyncSession, order: Order) -> Order:
    """Insert and return the order with its store-assigned id."""
    saved = order.model_copy(update={"id": str(uuid4())})
    await session.execute(
        insert(orders_table).values(
            id=saved.id,
            product_code=saved.product_code,
            quantity=saved.quantity,
            total_price=saved.total_price,
            status=saved.status.value,
            created_at=saved.created_at,
        )
    )
    return saved


async def find_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(select(orders_table).where(orders_table.c.id == order_id))
    row = result.fetchone()
    if not row:
        return None
    return Order(
        id=row.id,
        product_code=row.product_code,
        quantity=row.quantity,
        total_price=float(row.total_price),
        status=OrderStatus(row.status),
        created_at=row.created_at,
    )
