"""
Gateway domain: request orchestration, resolvers and cache invalidation.
"""

from .gateway import GatewayMiddleware, GatewayResponse, RequestContext, RoutePolicy
from .invalidation import CacheInvalidator, NewDataEvent, pool_cache_keys
from .resolvers import EmptyResolver, FunctionResolver, LogicalQuery, QueryKind, Resolver

__all__ = [
    "CacheInvalidator",
    "EmptyResolver",
    "FunctionResolver",
    "GatewayMiddleware",
    "GatewayResponse",
    "LogicalQuery",
    "NewDataEvent",
    "QueryKind",
    "RequestContext",
    "Resolver",
    "RoutePolicy",
    "pool_cache_keys",
]
