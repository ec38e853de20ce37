"""
Inventory Service — FastAPI entry point

Owns the inventory database and answers stock commands from the order
service over the broker. The HTTP API is for operators and tests.

┌───────────────┐  inventory.stock.check/deduct  ┌───────────────────┐
│ Order Service │ ────────── Redis ────────────▶ │ Inventory Service │
│               │ ◀──────── replies ──────────── │                   │
└───────────────┘                                └────────┬──────────┘
                      inventory.stock.added/reduced       │
              ◀──────────────── events ───────────────────┘
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from stockflow.broker import BrokerClient
from stockflow.errors import register_exception_handlers
from stockflow.logs import configure_logging

from . import store
from .commands import InventoryService
from .models import CreateItemRequest, InventoryItem, UpdateStockRequest
from .responder import InventoryResponder

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./inventory.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(LOG_LEVEL)
    await store.init_schema(engine)
    broker = BrokerClient(aioredis.from_url(REDIS_URL, decode_responses=True))
    await broker.start()
    service = InventoryService(async_session, broker)
    await InventoryResponder(service, broker).start()
    app.state.inventory = service
    yield
    await broker.stop()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
register_exception_handlers(app)


def get_inventory(request: Request) -> InventoryService:
    return request.app.state.inventory


# ── Endpoints ────────────────────────────────────


@app.post("/api/v1/inventory", response_model=InventoryItem, status_code=201)
async def create_item(
    req: CreateItemRequest, inventory: InventoryService = Depends(get_inventory)
):
    return await inventory.create_item(req)


@app.get("/api/v1/inventory/{product_code}", response_model=InventoryItem)
async def get_item(product_code: str, inventory: InventoryService = Depends(get_inventory)):
    return await inventory.get_item(product_code)


@app.put("/api/v1/inventory/{product_code}/stock", response_model=InventoryItem)
async def update_stock(
    product_code: str,
    req: UpdateStockRequest,
    inventory: InventoryService = Depends(get_inventory),
):
    return await inventory.update_stock(product_code, req.quantity)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
