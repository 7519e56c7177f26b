"""
Per-request orchestration: authenticate, authorize, meter, then serve.

A single GatewayMiddleware is built at startup and handed to the route
handlers. It holds the token verifier, the quota enforcer, the cache and
the resolver, and applies them in a fixed order:

1. extract the bearer token
2. verify it
3. check the route's required role
4. count the request against the caller's quota
5. serve through the cache, resolving on a miss

Once the caller is known, every response (and every rejection from step 3
on) carries the caller's rate limit headers.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from shared.errors import (
    InsufficientPermissionsError,
    InvalidTokenError,
    ResourceNotFoundError,
    TokenExpiredError,
    UnauthenticatedError,
)
from shared.logging import get_logger, set_client_context
from shared.metrics import MetricsCollector
from ..auth.jwks import JWKSVerifier
from ..auth.tokens import TokenClaims, TokenService
from ..caching.cache_layer import CacheLayer
from ..credentials.models import Role
from ..ratelimit.quota import QuotaDecision, QuotaEnforcer
from .resolvers import LogicalQuery, QueryKind, Resolver


DEFAULT_TTLS: Dict[QueryKind, int] = {
    QueryKind.POOL: 300,
    QueryKind.SWAPS: 300,
    QueryKind.TVL: 60,
}


@dataclass(frozen=True)
class RoutePolicy:
    """Access requirements of a route."""
    required_role: Optional[Role] = Role.READ
    public: bool = False
    metered: bool = True


PUBLIC = RoutePolicy(required_role=None, public=True, metered=False)
READ = RoutePolicy(Role.READ)
WRITE = RoutePolicy(Role.WRITE)
ADMIN = RoutePolicy(Role.ADMIN)


@dataclass
class RequestContext:
    """What the gateway learned about the caller."""
    claims: Optional[TokenClaims] = None
    quota: Optional[QuotaDecision] = None

    @property
    def client_id(self) -> Optional[str]:
        return self.claims.sub if self.claims else None

    @property
    def anonymous(self) -> bool:
        return self.claims is None

    def headers(self) -> Dict[str, str]:
        return self.quota.headers() if self.quota else {}


@dataclass
class GatewayResponse:
    """Resolved payload plus the headers to send with it."""
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)
    cache_hit: bool = False


class GatewayMiddleware:
    """Authentication, authorization, quota and cache-aside for data routes."""

    def __init__(
        self,
        verifier: Union[TokenService, JWKSVerifier],
        quota: QuotaEnforcer,
        cache: CacheLayer,
        resolver: Resolver,
        *,
        ttls: Optional[Dict[QueryKind, int]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.verifier = verifier
        self.quota = quota
        self.cache = cache
        self.resolver = resolver
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.metrics = metrics
        self.logger = get_logger("gateway.middleware")

    @staticmethod
    def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
        """Return the token of a ``Bearer`` Authorization header, if any."""
        if not authorization:
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None

    async def authenticate(self, authorization: Optional[str], policy: RoutePolicy = READ) -> Optional[TokenClaims]:
        """Verify the caller's token. Public routes treat bad tokens as anonymous."""
        token = self.extract_bearer_token(authorization)
        if token is None:
            if policy.public:
                return None
            raise UnauthenticatedError("No token provided")

        try:
            claims = self.verifier.verify(token)
            if inspect.isawaitable(claims):
                claims = await claims
        except (InvalidTokenError, TokenExpiredError) as e:
            if policy.public:
                self.logger.info("Ignoring invalid token on public route", code=e.code)
                return None
            self.logger.info("Token rejected", code=e.code, reason=e.details.get("reason"))
            raise

        set_client_context(claims.sub)
        return claims

    def authorize(self, claims: TokenClaims, policy: RoutePolicy) -> None:
        """Raise InsufficientPermissionsError when the route's role is missing."""
        if policy.required_role is None:
            return
        if not claims.has_role(policy.required_role):
            self.logger.warning(
                "Insufficient permissions",
                client_id=claims.sub,
                required_role=policy.required_role.value,
                roles=claims.roles
            )
            raise InsufficientPermissionsError(policy.required_role.value)

    async def admit(self, authorization: Optional[str], policy: RoutePolicy = READ) -> RequestContext:
        """Run steps 1-4 and return the caller's context."""
        claims = await self.authenticate(authorization, policy)
        if claims is None:
            return RequestContext()

        try:
            self.authorize(claims, policy)
        except InsufficientPermissionsError as e:
            status = await self.quota.status(claims.sub, claims.quota_per_window)
            e.headers.update(status.headers())
            raise

        if not policy.metered:
            return RequestContext(claims=claims)

        decision = await self.quota.check(claims.sub, claims.quota_per_window)
        if not decision.allowed:
            raise decision.to_error()
        return RequestContext(claims=claims, quota=decision)

    async def serve(self, query: LogicalQuery, context: RequestContext) -> GatewayResponse:
        """Serve a query through the cache, resolving on a miss."""
        result = await self.cache.fetch(
            query.cache_key,
            self.ttls[query.kind],
            lambda: self.resolver.resolve(query),
        )
        headers = context.headers()
        headers["X-Cache"] = "HIT" if result.hit else "MISS"

        if result.value is None:
            raise ResourceNotFoundError(query.kind.value, query.entity_id, headers=headers)
        return GatewayResponse(body=result.value, headers=headers, cache_hit=result.hit)

    async def handle(self, authorization: Optional[str], query: LogicalQuery,
                     policy: RoutePolicy = READ) -> GatewayResponse:
        """Full pipeline for one data request."""
        context = await self.admit(authorization, policy)
        return await self.serve(query, context)
