"""
Broker — topology

The single source of truth for every exchange and routing key used between
the inventory and order services. Both sides import these values; a
misspelled key would otherwise be a silent integration failure.

Redis pub/sub has no exchanges, so an (exchange, routing key) pair is
flattened into one channel name:

    inventory + inventory.stock.check  →  "inventory:inventory.stock.check"

Subscription patterns use Redis glob syntax (``inventory.stock.*``).
"""

from enum import StrEnum

CHANNEL_SEPARATOR = ":"
REPLY_PREFIX = "reply"


class Exchange(StrEnum):
    INVENTORY = "inventory"


class RoutingKey(StrEnum):
    # commands (request/response)
    STOCK_CHECK = "inventory.stock.check"
    STOCK_DEDUCT = "inventory.stock.deduct"
    STOCK_RELEASE = "inventory.stock.release"
    # events (fire-and-forget)
    STOCK_ADDED = "inventory.stock.added"
    STOCK_REDUCED = "inventory.stock.reduced"


COMMAND_KEYS: tuple[RoutingKey, ...] = (
    RoutingKey.STOCK_CHECK,
    RoutingKey.STOCK_DEDUCT,
    RoutingKey.STOCK_RELEASE,
)
EVENT_KEYS: tuple[RoutingKey, ...] = (
    RoutingKey.STOCK_ADDED,
    RoutingKey.STOCK_REDUCED,
)


def channel_for(exchange: str, routing_key: str) -> str:
    """Channel (or channel pattern) carrying ``routing_key`` on ``exchange``."""
    return f"{exchange}{CHANNEL_SEPARATOR}{routing_key}"


def split_channel(channel: str) -> tuple[str, str]:
    """Inverse of :func:`channel_for`."""
    exchange, _, routing_key = channel.partition(CHANNEL_SEPARATOR)
    return exchange, routing_key


def reply_channel(token: str) -> str:
    return f"{REPLY_PREFIX}{CHANNEL_SEPARATOR}{token}"


def event_routing_key(event_type: str) -> RoutingKey:
    """STOCK_ADDED → inventory.stock.added, STOCK_REDUCED → inventory.stock.reduced"""
    suffix = event_type.lower().removeprefix("stock_")
    return RoutingKey(f"inventory.stock.{suffix}")
