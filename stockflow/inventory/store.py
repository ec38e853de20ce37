"""
Inventory Service — store

The inventory database belongs to this service alone (database per service).
Functions here take an open session and never commit; the caller decides
the transaction boundary.

Quantity changes use conditional UPDATEs so a row can never go negative,
whichever process issues them.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .models import InventoryItem

metadata = MetaData()

inventory_table = Table(
    "inventory",
    metadata,
    Column("product_code", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("quantity", Integer, nullable=False),
    Column("price", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _to_item(row) -> InventoryItem:
    return InventoryItem(
        product_code=row.product_code,
        name=row.name,
        description=row.description,
        quantity=row.quantity,
        price=float(row.price),
    )


async def find_item(session: AsyncSession, product_code: str) -> InventoryItem | None:
    result = await session.execute(
        select(inventory_table).where(inventory_table.c.product_code == product_code)
    )
    row = result.fetchone()
    return _to_item(row) if row else None


async def insert_item(session: AsyncSession, item: InventoryItem) -> None:
    """Raises IntegrityError if the product code is taken."""
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(inventory_table).values(
            product_code=item.product_code,
            name=item.name,
            description=item.description,
            quantity=item.quantity,
            price=item.price,
            created_at=now,
            updated_at=now,
        )
    )


async def set_quantity(session: AsyncSession, product_code: str, quantity: int) -> bool:
    result = await session.execute(
        update(inventory_table)
        .where(inventory_table.c.product_code == product_code)
        .values(quantity=quantity, updated_at=datetime.now(timezone.utc))
    )
    return result.rowcount == 1


async def deduct_quantity(session: AsyncSession, product_code: str, quantity: int) -> bool:
    """Subtract only if enough stock is left. False means nothing changed."""
    result = await session.execute(
        update(inventory_table)
        .where(
            inventory_table.c.product_code == product_code,
            inventory_table.c.quantity >= quantity,
        )
        .values(
            quantity=inventory_table.c.quantity - quantity,
            updated_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount == 1


async def add_quantity(session: AsyncSession, product_code: str, quantity: int) -> bool:
    result = await session.execute(
        update(inventory_table)
        .where(inventory_table.c.product_code == product_code)
        .values(
            quantity=inventory_table.c.quantity + quantity,
            updated_at=datetime.now(timezone.utc),
        )
    )
    return result.rowcount == 1
