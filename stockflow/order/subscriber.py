"""
Order Service — stock event subscriber

Listens to inventory.stock.added / inventory.stock.reduced and records the
latest known stock per product. Events are fire-and-forget: anything
published while this service is down is lost, so the snapshot is
informational only and never used to accept or reject an order. It is
served read-only under /queries/stock.
"""

import logging
from typing import Any

from stockflow.broker import BrokerClient, Reply
from stockflow.broker.topology import EVENT_KEYS
from stockflow.errors import NotFound

logger = logging.getLogger(__name__)


class StockEventSubscriber:
    def __init__(self, broker: BrokerClient):
        self.broker = broker
        self.last_known_stock: dict[str, int] = {}

    async def start(self) -> None:
        for key in EVENT_KEYS:
            await self.broker.subscribe(key, self.handle_event)

    async def handle_event(self, payload: dict[str, Any], reply: Reply | None) -> None:
        try:
            product_code = payload["productCode"]
            new_quantity = int(payload["newQuantity"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed stock event: %s", payload)
            return
        self.last_known_stock[product_code] = new_quantity
        logger.info(
            "Stock event %s: %s %s → %s",
            payload.get("eventType"),
            product_code,
            payload.get("previousQuantity"),
            new_quantity,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "products": [
                {"productCode": code, "lastKnownStock": qty}
                for code, qty in sorted(self.last_known_stock.items())
            ]
        }

    def last_known(self, product_code: str) -> dict[str, Any]:
        if product_code not in self.last_known_stock:
            raise NotFound(
                "No stock event seen for this product", detail={"productCode": product_code}
            )
        return {"productCode": product_code, "lastKnownStock": self.last_known_stock[product_code]}
