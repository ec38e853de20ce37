"""
Inventory Service — models

InventoryItem is what the store holds and what callers get back. The
Stock* models are the bodies exchanged over the broker with the order
service; their field names are part of the cross-service contract.
"""

from pydantic import Field

from stockflow.schemas import CamelModel


class InventoryItem(CamelModel):
    product_code: str
    name: str
    description: str = ""
    quantity: int = Field(ge=0)
    price: float = Field(ge=0)


class CreateItemRequest(CamelModel):
    """productCode is generated when omitted"""
    product_code: str | None = None
    name: str = Field(min_length=1)
    description: str = ""
    quantity: int = Field(ge=0, strict=True)
    price: float = Field(ge=0)


class UpdateStockRequest(CamelModel):
    quantity: int = Field(gt=0, strict=True)


# ── Broker payloads ──────────────────────────────


class StockRequest(CamelModel):
    """Body of inventory.stock.check / deduct / release"""
    product_code: str = Field(min_length=1)
    quantity: int = Field(gt=0, strict=True)


class StockCheckResult(CamelModel):
    available: bool
    message: str
    current_stock: int = 0
    unit_price: float | None = None
    error: str | None = None


class StockChangeResult(CamelModel):
    """Reply to deduct / release. ``error`` carries an errors.py code on failure."""
    success: bool
    message: str | None = None
    error: str | None = None
    current_stock: int | None = None
