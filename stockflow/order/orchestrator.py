"""
Order Service — order choreography

Creates an order only after the inventory service has agreed to give up
the stock. The inventory service is reached over the broker with
request/response calls; the two services share no database.

  ┌──────────────────────────────────────────────────────────┐
  │  0. Validate input (no broker traffic on failure)        │
  │  1. inventory.stock.check  → available? unit price       │
  │  2. inventory.stock.deduct → stock taken                 │
  │  3. Persist the order as CONFIRMED                       │
  │     └─ fails → inventory.stock.release (compensation)    │
  └──────────────────────────────────────────────────────────┘

Every failure is terminal for the attempt and surfaces to the caller as
one of the errors in stockflow.errors. Nothing is retried here.
"""

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockflow.broker import BrokerClient, Exchange, RoutingKey
from stockflow.errors import (
    InsufficientStock,
    InternalError,
    NotFound,
    StockflowError,
    UpstreamUnavailable,
    ValidationError,
)

from . import queries, store
from .models import Order, OrderStatus

logger = logging.getLogger(__name__)

# error codes the inventory service may put in a deduct reply
_DEDUCT_ERRORS: dict[str, type[StockflowError]] = {
    NotFound.default_code: NotFound,
    InsufficientStock.default_code: InsufficientStock,
    ValidationError.default_code: ValidationError,
}


def validate_order_input(product_code: Any, quantity: Any) -> None:
    errors = []
    if not isinstance(product_code, str) or not product_code.strip():
        errors.append("productCode should not be empty")
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        errors.append("quantity must be a positive number")
    if errors:
        raise ValidationError("; ".join(errors), detail={"errors": errors})


class OrderChoreography:
    """Runs create_order against the inventory service and the order store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: BrokerClient,
        timeout: float | None = None,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.timeout = timeout

    async def create_order(self, product_code: str, quantity: int) -> Order:
        validate_order_input(product_code, quantity)
        stock_request = {"productCode": product_code, "quantity": quantity}

        # ── Step 1: check stock ─────────────────────
        check = await self._request(RoutingKey.STOCK_CHECK, stock_request)
        if check.get("error") == InternalError.default_code:
            raise InternalError(
                check.get("message") or "Stock check failed",
                detail={"productCode": product_code},
            )
        if not check.get("available"):
            message = check.get("message") or "Insufficient stock"
            logger.info("Order rejected for %s x%d: %s", product_code, quantity, message)
            raise InsufficientStock(
                message,
                detail={"productCode": product_code, "currentStock": check.get("currentStock")},
            )

        unit_price = check.get("unitPrice")
        if isinstance(unit_price, bool) or not isinstance(unit_price, (int, float)):
            raise InternalError(
                "Stock check reply carried no unit price",
                detail={"productCode": product_code},
            )
        order = Order(
            product_code=product_code,
            quantity=quantity,
            total_price=quantity * unit_price,
            status=OrderStatus.PENDING,
        )

        # ── Step 2: deduct stock ────────────────────
        deduct = await self._request(RoutingKey.STOCK_DEDUCT, stock_request)
        if not deduct.get("success"):
            error_cls = _DEDUCT_ERRORS.get(deduct.get("error"), InternalError)
            message = deduct.get("message") or "Stock deduction failed"
            logger.info("Stock deduction refused for %s x%d: %s", product_code, quantity, message)
            raise error_cls(message, detail={"productCode": product_code})

        # ── Step 3: persist the confirmed order ─────
        order.status = OrderStatus.CONFIRMED
        try:
            async with self.session_factory() as session:
                saved = await store.insert_order(session, order)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Persisting order for %s x%d failed: %s", product_code, quantity, e)
            released = await self._compensate(product_code, quantity)
            raise InternalError(
                "Order could not be saved",
                detail={"productCode": product_code, "stockReleased": released},
            ) from e

        logger.info("Order %s confirmed: %s x%d", saved.id, product_code, quantity)
        return saved

    async def get_order(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            return await queries.get_order(session, order_id)

    async def _request(self, routing_key: RoutingKey, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self.broker.publish_with_response(
                Exchange.INVENTORY, routing_key, payload, timeout=self.timeout
            )
        except UpstreamUnavailable as e:
            logger.warning("%s failed: %s", routing_key, e)
            raise UpstreamUnavailable(
                f"Inventory service unavailable: {e.message}",
                detail={"routingKey": str(routing_key), "cause": e.code},
            ) from e

    async def _compensate(self, product_code: str, quantity: int) -> bool:
        """Give back stock deducted for an order that was never saved."""
        try:
            reply = await self._request(
                RoutingKey.STOCK_RELEASE, {"productCode": product_code, "quantity": quantity}
            )
        except UpstreamUnavailable:
            reply = {}
        if not reply.get("success"):
            logger.critical(
                "Compensation failed: %d of %s deducted without an order (%s)",
                quantity,
                product_code,
                reply.get("message", "no reply"),
            )
            return False
        logger.warning("Released %d of %s after failed order persistence", quantity, product_code)
        return True
