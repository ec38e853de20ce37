"""
Order Service — models

State transitions inside one create_order call:
    PENDING (in memory) → CONFIRMED (persisted)
Any failure before persistence rejects the request; no FAILED row is written.
"""

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import Field

from stockflow.schemas import CamelModel


class OrderStatus(StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class Order(CamelModel):
    id: str | None = None
    product_code: str
    quantity: int
    total_price: float
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CreateOrderRequest(CamelModel):
    product_code: str = ""
    quantity: int = Field(strict=True)
