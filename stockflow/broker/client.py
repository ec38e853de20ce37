"""
Broker — client

Wraps one Redis connection and gives both services three primitives:

    publish               fire-and-forget
    subscribe             pattern subscription; handlers may reply
    publish_with_response request/response over pub/sub

Request/response works by correlation id:

  ┌─────────────┐  inventory:inventory.stock.check   ┌─────────────┐
  │ order svc   │ ─────────────────────────────────▶ │ inventory   │
  │ (waiter id) │  {correlationId, replyTo, payload} │ svc         │
  │             │ ◀───────────────────────────────── │             │
  └─────────────┘        reply:<process token>       └─────────────┘

Every process owns one reply channel. Each outstanding request registers a
future under its correlation id; the dispatch loop resolves it when the
reply arrives, ``asyncio.wait_for`` expires it otherwise. Whichever happens
first wins, and the table entry is popped exactly once.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from stockflow.errors import NotConnected, PublishError, TimedOut, UpstreamUnavailable

from .topology import (
    COMMAND_KEYS,
    EVENT_KEYS,
    Exchange,
    channel_for,
    reply_channel,
    split_channel,
)

logger = logging.getLogger(__name__)

Reply = Callable[[dict[str, Any]], Awaitable[None]]
Handler = Callable[[dict[str, Any], Reply | None], Awaitable[None]]

DEFAULT_TIMEOUT = 5.0


def _text(value: str | bytes | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode()
    return value


class BrokerClient:
    """Process-scoped broker connection. Start once, share, stop once."""

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        poll_interval: float = 1.0,
    ):
        self.redis = redis
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.reply_to: str | None = None
        self._pubsub: Any = None
        self._listener: asyncio.Task | None = None
        self._handlers: dict[str, Handler] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._inflight: set[asyncio.Task] = set()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Lifecycle ────────────────────────────────

    async def start(self) -> None:
        """Connect, open the reply channel and start the dispatch loop."""
        if self._connected:
            return
        try:
            await self.redis.ping()
            self._pubsub = self.redis.pubsub()
            self.reply_to = reply_channel(uuid4().hex)
            await self._pubsub.subscribe(self.reply_to)
        except RedisError as e:
            raise UpstreamUnavailable(f"Broker unreachable: {e}") from e

        self._declare_topology()
        self._connected = True
        self._listener = asyncio.create_task(self._listen(), name="broker-dispatch")
        logger.info("Broker client connected (reply channel %s)", self.reply_to)

    async def stop(self) -> None:
        """Stop dispatching, fail outstanding requests and release the connection."""
        if not self._connected:
            return
        self._connected = False

        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Broker dispatch loop had stopped with an error")
            self._listener = None

        for correlation_id in list(self._pending):
            future = self._pending.pop(correlation_id, None)
            if future is not None and not future.done():
                future.set_exception(NotConnected("Broker client stopped"))

        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.punsubscribe()
            await self._pubsub.aclose()
        except RedisError:
            logger.warning("Error while closing broker subscriptions", exc_info=True)
        finally:
            self._pubsub = None
            self._handlers.clear()
            await self.redis.aclose()
        logger.info("Broker client disconnected")

    async def __aenter__(self) -> "BrokerClient":
        await self.start()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.stop()

    def _declare_topology(self) -> None:
        for key in COMMAND_KEYS:
            logger.debug("Declared command channel %s", channel_for(Exchange.INVENTORY, key))
        for key in EVENT_KEYS:
            logger.debug("Declared event channel %s", channel_for(Exchange.INVENTORY, key))

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise NotConnected("Broker client is not connected")

    # ── Publish / Subscribe ──────────────────────

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: dict[str, Any],
        *,
        correlation_id: str | None = None,
        reply_to: str | None = None,
    ) -> int:
        """
        Send one message. Returns how many subscribers received it.

        Failures raise immediately and are never retried here; retry policy
        belongs to the caller.
        """
        envelope = {
            "correlationId": correlation_id,
            "replyTo": reply_to,
            "payload": payload,
        }
        return await self._send(channel_for(exchange, routing_key), envelope)

    async def _send(self, channel: str, envelope: dict[str, Any]) -> int:
        self._ensure_connected()
        try:
            body = json.dumps(envelope, default=str)
        except (TypeError, ValueError) as e:
            raise PublishError(f"Cannot encode message for {channel}: {e}") from e
        try:
            return await self.redis.publish(channel, body)
        except RedisError as e:
            raise PublishError(f"Publish to {channel} failed: {e}") from e

    async def subscribe(
        self,
        routing_key_pattern: str,
        handler: Handler,
        exchange: str = Exchange.INVENTORY,
    ) -> None:
        """
        Invoke ``handler(payload, reply)`` once per matching message.

        ``reply`` is None unless the sender asked for a response. Exceptions
        raised by the handler are logged and the message is dropped.
        """
        self._ensure_connected()
        pattern = channel_for(exchange, routing_key_pattern)
        self._handlers[pattern] = handler
        try:
            await self._pubsub.psubscribe(pattern)
        except RedisError as e:
            self._handlers.pop(pattern, None)
            raise UpstreamUnavailable(f"Subscribe to {pattern} failed: {e}") from e
        logger.info("Subscribed to %s", pattern)

    # ── Request / Response ───────────────────────

    async def publish_with_response(
        self,
        exchange: str,
        routing_key: str,
        payload: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Publish a request and suspend until its reply or the timeout.

        Raises TimedOut when no reply arrives in time; a reply arriving
        afterwards is discarded by the dispatch loop.
        """
        self._ensure_connected()
        timeout = self.default_timeout if timeout is None else timeout
        correlation_id = uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future

        try:
            receivers = await self.publish(
                exchange,
                routing_key,
                payload,
                correlation_id=correlation_id,
                reply_to=self.reply_to,
            )
            if receivers == 0:
                logger.warning("No subscriber received %s (%s)", routing_key, correlation_id)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise TimedOut(
                f"No reply to {routing_key} within {timeout}s",
                detail={"correlationId": correlation_id, "routingKey": str(routing_key)},
            ) from None
        finally:
            self._pending.pop(correlation_id, None)

    # ── Dispatch loop ────────────────────────────

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_interval
                )
            except RedisError:
                logger.exception("Broker connection error, retrying")
                await asyncio.sleep(self.poll_interval)
                continue
            if message is None:
                continue
            try:
                self._dispatch(message)
            except Exception:
                logger.exception("Dropping message that could not be dispatched")

    def _dispatch(self, message: dict[str, Any]) -> None:
        channel = _text(message.get("channel"))
        try:
            envelope = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Dropping undecodable message on %s", channel)
            return
        if not isinstance(envelope, dict):
            logger.warning("Dropping malformed envelope on %s", channel)
            return

        if message["type"] == "message" and channel == self.reply_to:
            self._resolve(envelope)
            return
        if message["type"] != "pmessage":
            return

        handler = self._handlers.get(_text(message.get("pattern")))
        if handler is None:
            return
        task = asyncio.create_task(self._run_handler(channel, handler, envelope))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def _resolve(self, envelope: dict[str, Any]) -> None:
        correlation_id = envelope.get("correlationId")
        if not isinstance(correlation_id, str):
            logger.warning("Dropping reply without a usable correlation id")
            return
        future = self._pending.pop(correlation_id, None)
        if future is None or future.done():
            logger.debug("Discarding reply for unknown or expired request %s", correlation_id)
            return
        payload = envelope.get("payload")
        future.set_result(payload if isinstance(payload, dict) else {})

    async def _run_handler(
        self, channel: str, handler: Handler, envelope: dict[str, Any]
    ) -> None:
        _, routing_key = split_channel(channel)
        correlation_id = envelope.get("correlationId")
        reply_to = envelope.get("replyTo")

        reply: Reply | None = None
        if reply_to:

            async def reply(payload: dict[str, Any]) -> None:
                await self._send(
                    reply_to,
                    {"correlationId": correlation_id, "replyTo": None, "payload": payload},
                )

        try:
            await handler(envelope.get("payload") or {}, reply)
        except Exception:
            logger.exception("Handler for %s failed (%s)", routing_key, correlation_id)
