"""
Cache invalidation driven by new-data signals from the indexing pipeline.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from shared.logging import get_logger
from ..caching.cache_layer import CacheLayer
from .resolvers import LogicalQuery, QueryKind


class NewDataEvent(BaseModel):
    """Signal that fresh data was indexed for some pools."""
    pool_ids: List[str] = Field(..., min_length=1, description="Pools whose data changed")
    block_number: Optional[int] = Field(None, ge=0, description="Block that produced the data")


def pool_cache_keys(pool_id: str, swap_pages: int = 10) -> List[str]:
    """Every cache key derived from a pool, with swap pages enumerated."""
    keys = [
        LogicalQuery(QueryKind.POOL, pool_id).cache_key,
        LogicalQuery(QueryKind.TVL, pool_id).cache_key,
    ]
    keys.extend(LogicalQuery(QueryKind.SWAPS, pool_id, page).cache_key for page in range(swap_pages))
    return keys


class CacheInvalidator:
    """Maps changed entities to the cache keys derived from them."""

    def __init__(self, cache: CacheLayer, swap_pages_tracked: int = 10):
        self.cache = cache
        self.swap_pages_tracked = swap_pages_tracked
        self.logger = get_logger("gateway.invalidation")

    async def invalidate_pool(self, pool_id: str) -> int:
        """Drop the pool, its TVL and every page of its swaps."""
        swap_keys = pool_cache_keys(pool_id, self.swap_pages_tracked)[2:]
        removed = await self.cache.delete_many([
            LogicalQuery(QueryKind.POOL, pool_id).cache_key,
            LogicalQuery(QueryKind.TVL, pool_id).cache_key,
        ])
        removed += await self.cache.delete_by_prefix(f"{QueryKind.SWAPS.value}:{pool_id}:", candidates=swap_keys)
        self.logger.info("Pool cache invalidated", pool_id=pool_id, keys_removed=removed)
        return removed

    async def handle_new_data(self, event: NewDataEvent) -> int:
        removed = 0
        for pool_id in dict.fromkeys(event.pool_ids):
            removed += await self.invalidate_pool(pool_id)
        return removed
