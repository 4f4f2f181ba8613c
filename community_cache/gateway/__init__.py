"""
Remote data gateway adapters.

The cache talks to the remote structured-data service only through the
RemoteGateway interface:

    >>> from community_cache.gateway import InMemoryGateway
    >>> gateway = InMemoryGateway()
    >>> rows = await gateway.query("posts", order=Order("created_at", ascending=False))

Cosmos DB (imported lazily so the Azure SDK is only loaded when used):

    >>> from community_cache.gateway.cosmos import CosmosGateway
"""

from .base import Filter, Order, RemoteGateway, Subscription
from .memory import InMemoryGateway

__all__ = [
    "Filter",
    "Order",
    "RemoteGateway",
    "Subscription",
    "InMemoryGateway",
]
