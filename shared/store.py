"""
Key-value store contract consumed by the gateway.

The gateway only needs a handful of primitives from its backing store:
get/set/delete with TTL, an atomic increment that carries its own expiry,
set-if-absent for uniqueness indexes, and small member sets for listing.
Every implementation must raise ``StoreUnavailableError`` when a call fails
or exceeds its timeout so callers can apply their fallback policy.
"""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Set


class KeyValueStore(ABC):
    """Abstract shared store. Implementations must be safe across processes."""

    # Whether scan_prefix() enumerates keys exactly.
    supports_prefix_scan: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        """Store a value, expiring after ``ttl_ms`` milliseconds when given."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool:
        """Atomically store a value only when the key does not exist."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""

    @abstractmethod
    async def incr_with_expiry(self, key: str, ttl_ms: int) -> int:
        """Atomically increment a counter and (re)arm its expiry."""

    @abstractmethod
    async def scan_prefix(self, prefix: str) -> List[str]:
        """Return every key starting with ``prefix``."""

    @abstractmethod
    async def add_members(self, set_key: str, members: Iterable[str]) -> None:
        """Add members to a set."""

    @abstractmethod
    async def remove_members(self, set_key: str, members: Iterable[str]) -> None:
        """Remove members from a set."""

    @abstractmethod
    async def members(self, set_key: str) -> Set[str]:
        """Return every member of a set."""

    async def ping(self) -> bool:
        """Return True when the store is reachable."""
        return True

    async def close(self) -> None:
        """Release connections held by the store."""
