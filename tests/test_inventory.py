"""Inventory service, queries and broker responder against a real SQLite store."""
from __future__ import annotations

import asyncio
import re
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from fakes import FakeRedis
from helpers import mock_broker, sqlite_sessions
from stockflow.broker import BrokerClient, Exchange, RoutingKey
from stockflow.errors import (
    Conflict,
    InsufficientStock,
    NotFound,
    PublishError,
    ValidationError,
)
from stockflow.inventory import store
from stockflow.inventory.commands import InventoryService, generate_product_code
from stockflow.inventory.events import InventoryEventType, StockUpdateEvent
from stockflow.inventory.models import CreateItemRequest
from stockflow.inventory.responder import InventoryResponder


def _item(**overrides) -> CreateItemRequest:
    data = {"name": "Test Product", "description": "Test Description", "quantity": 100, "price": 29.99}
    data.update(overrides)
    return CreateItemRequest(**data)


def _events(broker) -> list[dict]:
    return [call.args[2] for call in broker.publish.await_args_list]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestStockUpdateEvent:
    def test_increase_is_stock_added(self) -> None:
        event = StockUpdateEvent.for_change("P-1", "Widget", 10, 15)
        assert event.event_type is InventoryEventType.STOCK_ADDED
        assert event.routing_key is RoutingKey.STOCK_ADDED

    def test_unchanged_counts_as_added(self) -> None:
        assert StockUpdateEvent.for_change("P-1", "Widget", 10, 10).event_type == "STOCK_ADDED"

    def test_decrease_is_stock_reduced(self) -> None:
        event = StockUpdateEvent.for_change("P-1", "Widget", 10, 4)
        assert event.event_type is InventoryEventType.STOCK_REDUCED
        assert event.routing_key is RoutingKey.STOCK_REDUCED

    def test_wire_format_is_camel_case(self) -> None:
        wire = StockUpdateEvent.for_change("P-1", "Widget", 10, 4).to_wire()
        assert set(wire) == {
            "eventType",
            "productCode",
            "previousQuantity",
            "newQuantity",
            "productName",
            "timestamp",
        }
        assert wire["eventType"] == "STOCK_REDUCED"


# ---------------------------------------------------------------------------
# InventoryService
# ---------------------------------------------------------------------------


class TestInventoryService:
    def test_generated_product_code_format(self) -> None:
        for _ in range(20):
            assert re.fullmatch(r"INV-\d{9}", generate_product_code())

    def test_create_without_code_then_fetch(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                broker = mock_broker()
                service = InventoryService(sessions, broker)
                created = await service.create_item(_item())
                assert re.fullmatch(r"INV-\d{9}", created.product_code)

                fetched = await service.get_item(created.product_code)
                assert (fetched.name, fetched.quantity, fetched.price) == (
                    "Test Product",
                    100,
                    29.99,
                )

                [event] = _events(broker)
                assert event["eventType"] == "STOCK_ADDED"
                assert (event["previousQuantity"], event["newQuantity"]) == (0, 100)
                assert broker.publish.await_args.args[:2] == (
                    Exchange.INVENTORY,
                    RoutingKey.STOCK_ADDED,
                )
        asyncio.run(run())

    def test_generated_code_is_rerolled_on_collision(self, tmp_path: Path, monkeypatch) -> None:
        codes = iter(["INV-000000001", "INV-000000001", "INV-000000002"])
        monkeypatch.setattr(
            "stockflow.inventory.commands.generate_product_code", lambda: next(codes)
        )

        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                service = InventoryService(sessions, mock_broker())
                first = await service.create_item(_item())
                second = await service.create_item(_item())
                assert first.product_code == "INV-000000001"
                assert second.product_code == "INV-000000002"
        asyncio.run(run())

    def test_duplicate_product_code_conflicts(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                broker = mock_broker()
                service = InventoryService(sessions, broker)
                await service.create_item(_item(product_code="PROD-1"))
                with pytest.raises(Conflict):
                    await service.create_item(_item(product_code="PROD-1"))
                assert broker.publish.await_count == 1
        asyncio.run(run())

    def test_get_missing_item(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                with pytest.raises(NotFound):
                    await InventoryService(sessions, mock_broker()).get_item("INV-999999999")
        asyncio.run(run())

    def test_update_stock_emits_delta_event(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                broker = mock_broker()
                service = InventoryService(sessions, broker)
                await service.create_item(_item(product_code="PROD-1"))

                updated = await service.update_stock("PROD-1", 50)
                assert updated.quantity == 50
                assert (await service.get_item("PROD-1")).quantity == 50

                raised = await service.update_stock("PROD-1", 80)
                assert raised.quantity == 80

                _, reduced, added = _events(broker)
                assert reduced["eventType"] == "STOCK_REDUCED"
                assert (reduced["previousQuantity"], reduced["newQuantity"]) == (100, 50)
                assert added["eventType"] == "STOCK_ADDED"
                assert (added["previousQuantity"], added["newQuantity"]) == (50, 80)
        asyncio.run(run())

    def test_update_stock_rejects_unknown_and_non_positive(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                service = InventoryService(sessions, mock_broker())
                with pytest.raises(NotFound):
                    await service.update_stock("INV-999999999", 50)
                with pytest.raises(ValidationError):
                    await service.update_stock("INV-999999999", 0)
        asyncio.run(run())

    def test_event_failure_does_not_roll_back_write(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                broker = mock_broker()
                broker.publish = AsyncMock(side_effect=PublishError("broker down"))
                service = InventoryService(sessions, broker)
                created = await service.create_item(_item(product_code="PROD-1"))
                assert created.quantity == 100
                assert (await service.update_stock("PROD-1", 7)).quantity == 7
                assert (await service.get_item("PROD-1")).quantity == 7
        asyncio.run(run())

    def test_check_stock(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                service = InventoryService(sessions, mock_broker())
                await service.create_item(_item(product_code="PROD-1", quantity=5, price=10))

                ok = await service.check_stock("PROD-1", 5)
                assert (ok.available, ok.current_stock, ok.unit_price) == (True, 5, 10)
                assert ok.message == "Stock available"

                short = await service.check_stock("PROD-1", 6)
                assert not short.available
                assert short.message == "Insufficient stock. Requested: 6, Available: 5"

                missing = await service.check_stock("NOPE", 1)
                assert missing.to_wire() == {
                    "available": False,
                    "message": "Item not found in inventory",
                    "currentStock": 0,
                    "unitPrice": None,
                    "error": None,
                }
        asyncio.run(run())

    def test_deduct_and_release(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                broker = mock_broker()
                service = InventoryService(sessions, broker)
                await service.create_item(_item(product_code="PROD-1", quantity=10))

                assert await service.deduct_stock("PROD-1", 4) == 6
                assert await service.release_stock("PROD-1", 4) == 10

                _, reduced, added = _events(broker)
                assert reduced["eventType"] == "STOCK_REDUCED"
                assert (reduced["previousQuantity"], reduced["newQuantity"]) == (10, 6)
                assert added["eventType"] == "STOCK_ADDED"
                assert (added["previousQuantity"], added["newQuantity"]) == (6, 10)
        asyncio.run(run())

    def test_deduct_rejections(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                broker = mock_broker()
                service = InventoryService(sessions, broker)
                await service.create_item(_item(product_code="PROD-1", quantity=3))
                with pytest.raises(NotFound):
                    await service.deduct_stock("NOPE", 1)
                with pytest.raises(InsufficientStock):
                    await service.deduct_stock("PROD-1", 4)
                with pytest.raises(NotFound):
                    await service.release_stock("NOPE", 1)
                assert (await service.get_item("PROD-1")).quantity == 3
                assert broker.publish.await_count == 1
        asyncio.run(run())

    def test_concurrent_deductions_never_oversell(self, tmp_path: Path) -> None:
        async def run() -> None:
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                service = InventoryService(sessions, mock_broker())
                await service.create_item(_item(product_code="PROD-1", quantity=100))

                results = await asyncio.gather(
                    *(service.deduct_stock("PROD-1", 60) for _ in range(3)),
                    return_exceptions=True,
                )
                succeeded = [r for r in results if isinstance(r, int)]
                rejected = [r for r in results if isinstance(r, InsufficientStock)]
                assert succeeded == [40]
                assert len(rejected) == 2
                assert (await service.get_item("PROD-1")).quantity == 40
        asyncio.run(run())


# ---------------------------------------------------------------------------
# InventoryResponder over the broker
# ---------------------------------------------------------------------------


class TestInventoryResponder:
    def test_responder_answers_stock_commands(self, tmp_path: Path) -> None:
        async def run() -> None:
            server = FakeRedis()
            async with sqlite_sessions(tmp_path / "inv.db", store.init_schema) as sessions:
                async with BrokerClient(server, poll_interval=0.05) as inventory_side, \
                        BrokerClient(server, poll_interval=0.05, default_timeout=1.0) as caller:
                    service = InventoryService(sessions, inventory_side)
                    await InventoryResponder(service, inventory_side).start()
                    await service.create_item(_item(product_code="PROD-1", quantity=10, price=5))

                    async def ask(key: RoutingKey, payload: dict) -> dict:
                        return await caller.publish_with_response(Exchange.INVENTORY, key, payload)

                    check = await ask(RoutingKey.STOCK_CHECK, {"productCode": "PROD-1", "quantity": 2})
                    assert check == {
                        "available": True,
                        "message": "Stock available",
                        "currentStock": 10,
                        "unitPrice": 5.0,
                        "error": None,
                    }

                    deduct = await ask(RoutingKey.STOCK_DEDUCT, {"productCode": "PROD-1", "quantity": 2})
                    assert deduct["success"] is True
                    assert deduct["currentStock"] == 8

                    short = await ask(RoutingKey.STOCK_DEDUCT, {"productCode": "PROD-1", "quantity": 50})
                    assert (short["success"], short["error"]) == (False, "insufficient_stock")

                    missing = await ask(RoutingKey.STOCK_DEDUCT, {"productCode": "NOPE", "quantity": 1})
                    assert (missing["success"], missing["error"]) == (False, "not_found")

                    bad = await ask(RoutingKey.STOCK_DEDUCT, {"productCode": "PROD-1", "quantity": -1})
                    assert (bad["success"], bad["error"]) == (False, "validation_error")

                    release = await ask(RoutingKey.STOCK_RELEASE, {"productCode": "PROD-1", "quantity": 2})
                    assert (release["success"], release["currentStock"]) == (True, 10)

                    reduced = server.payloads_on("inventory:inventory.stock.reduced")
                    assert [(e["previousQuantity"], e["newQuantity"]) for e in reduced] == [(10, 8)]
        asyncio.run(run())

    def test_invalid_check_payload(self) -> None:
        async def run() -> None:
            service = AsyncMock(spec=InventoryService)
            reply = AsyncMock()
            responder = InventoryResponder(service, mock_broker())
            await responder.handle_check({"quantity": "many"}, reply)
            body = reply.await_args.args[0]
            assert body["available"] is False
            assert body["message"].startswith("Invalid stock request")
            service.check_stock.assert_not_called()
        asyncio.run(run())

    def test_start_subscribes_command_keys(self) -> None:
        async def run() -> None:
            broker = mock_broker()
            await InventoryResponder(AsyncMock(spec=InventoryService), broker).start()
            keys = [call.args[0] for call in broker.subscribe.await_args_list]
            assert keys == [RoutingKey.STOCK_CHECK, RoutingKey.STOCK_DEDUCT, RoutingKey.STOCK_RELEASE]
        asyncio.run(run())

    def test_check_store_failure_replies_internal_error(self) -> None:
        async def run() -> None:
            service = AsyncMock(spec=InventoryService)
            service.check_stock.side_effect = OperationalError("SELECT", {}, Exception("gone"))
            reply = AsyncMock()
            await InventoryResponder(service, mock_broker()).handle_check(
                {"productCode": "PROD-1", "quantity": 1}, reply
            )
            body = reply.await_args.args[0]
            assert (body["available"], body["error"]) == (False, "internal_error")
        asyncio.run(run())

    @pytest.mark.parametrize("quantity", [True, "2", 2.0])
    def test_non_integer_quantity_is_rejected(self, quantity) -> None:
        async def run() -> None:
            service = AsyncMock(spec=InventoryService)
            reply = AsyncMock()
            await InventoryResponder(service, mock_broker()).handle_deduct(
                {"productCode": "PROD-1", "quantity": quantity}, reply
            )
            body = reply.await_args.args[0]
            assert (body["success"], body["error"]) == (False, "validation_error")
            service.deduct_stock.assert_not_called()
        asyncio.run(run())
