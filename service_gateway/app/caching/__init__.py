"""
Caching for the Gateway Service.
"""

from .cache_layer import CacheLayer, CacheResult

__all__ = [
    "CacheLayer",
    "CacheResult",
]
