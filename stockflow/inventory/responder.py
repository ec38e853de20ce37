"""
Inventory Service — broker responder

Answers the order service's stock commands:

    inventory.stock.check    → StockCheckResult   (read only)
    inventory.stock.deduct   → StockChangeResult
    inventory.stock.release  → StockChangeResult  (compensation)

Business rejections are returned in the reply, not raised, so the
requester always gets an answer it can map to an error. Anything
unexpected is logged and answered with ``internal_error``.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError as PayloadError
from sqlalchemy.exc import SQLAlchemyError

from stockflow.broker import BrokerClient, Reply, RoutingKey
from stockflow.errors import InsufficientStock, InternalError, NotFound, ValidationError

from .commands import InventoryService
from .models import StockChangeResult, StockCheckResult, StockRequest

logger = logging.getLogger(__name__)


class InventoryResponder:
    def __init__(self, service: InventoryService, broker: BrokerClient):
        self.service = service
        self.broker = broker

    async def start(self) -> None:
        await self.broker.subscribe(RoutingKey.STOCK_CHECK, self.handle_check)
        await self.broker.subscribe(RoutingKey.STOCK_DEDUCT, self.handle_deduct)
        await self.broker.subscribe(RoutingKey.STOCK_RELEASE, self.handle_release)

    async def handle_check(self, payload: dict[str, Any], reply: Reply | None) -> None:
        try:
            req = StockRequest.model_validate(payload)
        except PayloadError as e:
            result = StockCheckResult(
                available=False,
                message=f"Invalid stock request: {e.error_count()} error(s)",
            )
        else:
            try:
                result = await self.service.check_stock(req.product_code, req.quantity)
            except SQLAlchemyError:
                logger.exception("Store failure during check_stock for %s", req.product_code)
                result = StockCheckResult(
                    available=False,
                    message="Inventory store error",
                    error=InternalError.default_code,
                )
        await self._reply(RoutingKey.STOCK_CHECK, reply, result.to_wire())

    async def handle_deduct(self, payload: dict[str, Any], reply: Reply | None) -> None:
        result = await self._change(self.service.deduct_stock, payload)
        await self._reply(RoutingKey.STOCK_DEDUCT, reply, result.to_wire())

    async def handle_release(self, payload: dict[str, Any], reply: Reply | None) -> None:
        result = await self._change(self.service.release_stock, payload)
        await self._reply(RoutingKey.STOCK_RELEASE, reply, result.to_wire())

    async def _change(
        self,
        operation: Callable[[str, int], Awaitable[int]],
        payload: dict[str, Any],
    ) -> StockChangeResult:
        try:
            req = StockRequest.model_validate(payload)
        except PayloadError as e:
            return StockChangeResult(
                success=False,
                error=ValidationError.default_code,
                message=f"Invalid stock request: {e.error_count()} error(s)",
            )

        try:
            current = await operation(req.product_code, req.quantity)
        except (NotFound, InsufficientStock, ValidationError) as e:
            logger.warning("Rejected %s for %s: %s", operation.__name__, req.product_code, e.message)
            return StockChangeResult(success=False, error=e.code, message=e.message)
        except SQLAlchemyError:
            logger.exception("Store failure during %s for %s", operation.__name__, req.product_code)
            return StockChangeResult(
                success=False, error=InternalError.default_code, message="Inventory store error"
            )
        return StockChangeResult(success=True, message="Stock updated", current_stock=current)

    async def _reply(self, routing_key: str, reply: Reply | None, body: dict[str, Any]) -> None:
        if reply is None:
            logger.warning("%s request carried no reply destination", routing_key)
            return
        await reply(body)
