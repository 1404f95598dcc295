"""Session routing between the local engine and the collective."""

from amphibian.routing.cache import LRUCache
from amphibian.routing.router import (
    RouterResponse,
    RoutingDecision,
    SessionRouter,
    extract_json_fragment,
)

__all__ = [
    "LRUCache",
    "RouterResponse",
    "RoutingDecision",
    "SessionRouter",
    "extract_json_fragment",
]
