from .client import BrokerClient, Handler, Reply
from .topology import Exchange, RoutingKey, channel_for, event_routing_key

__all__ = [
    "BrokerClient",
    "Exchange",
    "Handler",
    "Reply",
    "RoutingKey",
    "channel_for",
    "event_routing_key",
]
