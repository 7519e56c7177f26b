"""
Resolver interface between the gateway and the analytics backend.

The gateway never queries the backend itself: it hands a LogicalQuery to
an injected Resolver and caches whatever comes back.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional


class QueryKind(str, Enum):
    """Cacheable analytics queries."""
    POOL = "pool"
    SWAPS = "swaps"
    TVL = "tvl"


@dataclass(frozen=True)
class LogicalQuery:
    """A backend query identified independently of its wire format."""
    kind: QueryKind
    entity_id: str
    page: int = 0

    @property
    def cache_key(self) -> str:
        if self.kind == QueryKind.SWAPS:
            return f"swaps:{self.entity_id}:{self.page}"
        return f"{self.kind.value}:{self.entity_id}"


class Resolver(ABC):
    """Computes the result of a logical query."""

    @abstractmethod
    async def resolve(self, query: LogicalQuery) -> Optional[Any]:
        """Return the result, or None when the entity does not exist."""


class EmptyResolver(Resolver):
    """Resolver for a gateway started without a backend: nothing exists."""

    async def resolve(self, query: LogicalQuery) -> Optional[Any]:
        return None


class FunctionResolver(Resolver):
    """Dispatches each query kind to a plain (sync or async) function."""

    def __init__(self, handlers: Dict[QueryKind, Callable[[LogicalQuery], Any]]):
        self.handlers = dict(handlers)

    async def resolve(self, query: LogicalQuery) -> Optional[Any]:
        handler = self.handlers.get(query.kind)
        if handler is None:
            return None
        result = handler(query)
        if inspect.isawaitable(result):
            result = await result
        return result
