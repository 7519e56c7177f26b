"""
Adapters package for the Gateway Service.

Contains the clients for infrastructure the gateway depends on. Adapters
map their backend's failures onto shared errors and stay free of side
effects outside explicit calls.
"""

from .redis_store import RedisStore

__all__ = [
    "RedisStore",
]
