"""
Inventory Service — event definitions

Stock change notifications published after each committed write. They are
fire-and-forget: the inventory service never waits for a consumer.
"""

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import Field

from stockflow.broker.topology import RoutingKey, event_routing_key
from stockflow.schemas import CamelModel


class InventoryEventType(StrEnum):
    STOCK_ADDED = "STOCK_ADDED"
    STOCK_REDUCED = "STOCK_REDUCED"


class StockUpdateEvent(CamelModel):
    """The quantity of one product changed"""
    event_type: InventoryEventType
    product_code: str
    previous_quantity: int
    new_quantity: int
    product_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def routing_key(self) -> RoutingKey:
        return event_routing_key(self.event_type)

    @classmethod
    def for_change(
        cls,
        product_code: str,
        product_name: str,
        previous_quantity: int,
        new_quantity: int,
    ) -> "StockUpdateEvent":
        """STOCK_ADDED when the quantity did not go down, STOCK_REDUCED otherwise."""
        event_type = (
            InventoryEventType.STOCK_ADDED
            if new_quantity >= previous_quantity
            else InventoryEventType.STOCK_REDUCED
        )
        return cls(
            event_type=event_type,
            product_code=product_code,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            product_name=product_name,
        )
