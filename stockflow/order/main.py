"""
Order Service — FastAPI entry point

Takes orders and confirms them only after the inventory service has
deducted the stock (see orchestrator.py). Shares no database with the
inventory service; all coordination goes through the broker.
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
from .models import CreateOrderRequest, Order
from .orchestrator import OrderChoreography
from .subscriber import StockEventSubscriber

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./orders.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
RPC_TIMEOUT = float(os.environ.get("RPC_TIMEOUT", "5.0"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(LOG_LEVEL)
    await store.init_schema(engine)
    broker = BrokerClient(
        aioredis.from_url(REDIS_URL, decode_responses=True),
        default_timeout=RPC_TIMEOUT,
    )
    await broker.start()
    stock_events = StockEventSubscriber(broker)
    await stock_events.start()
    app.state.stock_events = stock_events
    app.state.orders = OrderChoreography(async_session, broker, RPC_TIMEOUT)
    yield
    await broker.stop()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
register_exception_handlers(app)


def get_orders(request: Request) -> OrderChoreography:
    return request.app.state.orders


def get_stock_events(request: Request) -> StockEventSubscriber:
    return request.app.state.stock_events


# ── Endpoints ────────────────────────────────────


@app.post("/api/v1/orders", response_model=Order, status_code=201)
async def create_order(req: CreateOrderRequest, orders: OrderChoreography = Depends(get_orders)):
    return await orders.create_order(req.product_code, req.quantity)


@app.get("/api/v1/orders/{order_id}", response_model=Order)
async def get_order(order_id: str, orders: OrderChoreography = Depends(get_orders)):
    return await orders.get_order(order_id)


@app.get("/queries/stock")
async def query_stock_snapshot(
    stock_events: StockEventSubscriber = Depends(get_stock_events),
):
    return stock_events.snapshot()


@app.get("/queries/stock/{product_code}")
async def query_product_stock(
    product_code: str, stock_events: StockEventSubscriber = Depends(get_stock_events)
):
    return stock_events.last_known(product_code)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
