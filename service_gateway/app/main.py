"""
FluxSight Access Gateway service.

Exchanges API keys for tokens, serves the analytics routes behind the
gateway middleware, and exposes client administration and cache
invalidation for operators and the indexing pipeline.
"""

import time
from typing import Any, Callable, Dict, Optional

from fastapi import Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ResourceNotFoundError, StoreUnavailableError, UnauthenticatedError, UnknownCredentialError
from shared.store import KeyValueStore
from .adapters.redis_store import RedisStore
from .auth.jwks import JWKSVerifier
from .auth.tokens import TokenService
from .caching.cache_layer import CacheLayer
from .credentials.models import (
    ClientCreateRequest,
    ClientCreatedResponse,
    ClientListResponse,
    ClientQuotaUpdateRequest,
    ClientResponse,
    ClientStatusUpdateRequest,
)
from .credentials.service import CredentialService
from .domain.gateway import ADMIN, READ, WRITE, GatewayMiddleware, RequestContext, RoutePolicy
from .domain.invalidation import CacheInvalidator, NewDataEvent
from .domain.resolvers import EmptyResolver, LogicalQuery, QueryKind, Resolver
from .ratelimit.quota import QuotaEnforcer


QUOTA_STATUS = RoutePolicy(required_role=None, metered=False)


class RefreshRequest(BaseModel):
    """Request model for refreshing an access token."""
    refresh_token: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    """Tokens returned by credential exchange and refresh."""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        store: Optional[KeyValueStore] = None,
        resolver: Optional[Resolver] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__("gateway", 8000, config or get_config("gateway", 8000))
        self.clock = clock
        self.store = store or RedisStore(self.config.redis_url, self.config.store_timeout_seconds)

        self.credentials = CredentialService(self.store, clock=clock)
        self.token_service = TokenService.from_config(self.config, clock=clock, metrics=self.metrics)
        self.jwks_verifier = (
            JWKSVerifier(self.config.jwks_url, issuer=self.config.jwt_issuer, clock=clock)
            if self.config.jwks_url else None
        )
        self.quota = QuotaEnforcer(self.store, self.config.quota_window_ms, clock=clock, metrics=self.metrics)
        self.cache = CacheLayer(
            self.store,
            self.config.cache_namespace,
            prefix_scan=self.config.cache_prefix_scan,
            metrics=self.metrics,
        )
        self.invalidator = CacheInvalidator(self.cache, self.config.cache_swap_pages_tracked)
        self.gateway = GatewayMiddleware(
            self.jwks_verifier or self.token_service,
            self.quota,
            self.cache,
            resolver or EmptyResolver(),
            ttls={
                QueryKind.POOL: self.config.cache_ttl_pools,
                QueryKind.SWAPS: self.config.cache_ttl_swaps,
                QueryKind.TVL: self.config.cache_ttl_tvl,
            },
            metrics=self.metrics,
        )

        @self.app.on_event("startup")
        async def _startup():
            if self.jwks_verifier:
                await self.jwks_verifier.warmup()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.store.close()
            if self.jwks_verifier:
                await self.jwks_verifier.close()

        self._setup_auth_routes()
        self._setup_data_routes()
        self._setup_internal_routes()
        self._setup_admin_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    async def _check_dependencies(self) -> Dict[str, str]:
        try:
            await self.store.ping()
            store_status = "ok"
        except StoreUnavailableError:
            store_status = "error"
        dependencies = {"store": store_status}
        if self.jwks_verifier:
            dependencies["jwks"] = await self.jwks_verifier.check_health()
        return dependencies

    def _set_rate_limit_headers(self, response: Response, context: RequestContext) -> None:
        """Propagate rate limiting metadata via standard headers."""
        for name, value in context.headers().items():
            response.headers[name] = value

    def _setup_auth_routes(self):
        """Token exchange and key discovery."""

        @self.app.post("/auth/token", response_model=TokenResponse)
        async def exchange_api_key(request: Request):
            """Exchange an API key for an access/refresh token pair."""
            api_key = request.headers.get(self.config.credential_header)
            if not api_key:
                raise UnauthenticatedError("API key required", {"header": self.config.credential_header})

            identity = await self.credentials.authenticate(api_key)
            if identity is None:
                raise UnknownCredentialError()

            pair = self.token_service.issue_token_pair(identity)
            return TokenResponse(
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                token_type=pair.token_type,
                expires_in=pair.expires_in,
            )

        @self.app.post("/auth/refresh", response_model=TokenResponse)
        async def refresh_token(body: RefreshRequest):
            """Mint a new access token. The refresh token is returned unchanged."""
            access_token = self.token_service.refresh(body.refresh_token)
            return TokenResponse(
                access_token=access_token,
                refresh_token=body.refresh_token,
                expires_in=self.token_service.access_ttl,
            )

        @self.app.get("/.well-known/jwks.json")
        async def jwks():
            """Public signing keys."""
            return self.token_service.jwks()

        @self.app.get("/auth/public-key", response_class=PlainTextResponse)
        async def public_key():
            """Public signing key as PEM."""
            return self.token_service.public_key_pem()

    def _setup_data_routes(self):
        """Analytics routes served through the gateway middleware."""

        async def serve(authorization: Optional[str], query: LogicalQuery) -> JSONResponse:
            result = await self.gateway.handle(authorization, query, READ)
            return JSONResponse(content=jsonable_encoder(result.body), headers=result.headers)

        @self.app.get("/api/v1/pools/{pool_id}")
        async def get_pool(pool_id: str, authorization: Optional[str] = Header(None)):
            """Pool details."""
            return await serve(authorization, LogicalQuery(QueryKind.POOL, pool_id))

        @self.app.get("/api/v1/pools/{pool_id}/swaps")
        async def get_pool_swaps(
            pool_id: str,
            page: int = Query(0, ge=0),
            authorization: Optional[str] = Header(None),
        ):
            """One page of a pool's recent swaps."""
            return await serve(authorization, LogicalQuery(QueryKind.SWAPS, pool_id, page))

        @self.app.get("/api/v1/pools/{pool_id}/tvl")
        async def get_pool_tvl(pool_id: str, authorization: Optional[str] = Header(None)):
            """Current TVL of a pool."""
            return await serve(authorization, LogicalQuery(QueryKind.TVL, pool_id))

        @self.app.get("/api/v1/rate-limit")
        async def get_rate_limit(response: Response, authorization: Optional[str] = Header(None)):
            """Caller's quota in the current window. Does not count as a request."""
            context = await self.gateway.admit(authorization, QUOTA_STATUS)
            status = await self.quota.status(context.client_id, context.claims.quota_per_window)
            context.quota = status
            self._set_rate_limit_headers(response, context)
            return {
                "client_id": context.client_id,
                "limit": status.limit,
                "remaining": status.remaining,
                "reset_time": status.reset_time.isoformat(),
                "window_ms": self.quota.window_ms,
                "degraded": status.degraded,
            }

    def _setup_internal_routes(self):
        """Signals from the indexing pipeline."""

        @self.app.post("/internal/events/new-data")
        async def new_data(event: NewDataEvent, response: Response,
                           authorization: Optional[str] = Header(None)):
            """Invalidate cached data derived from the given pools."""
            context = await self.gateway.admit(authorization, WRITE)
            self._set_rate_limit_headers(response, context)
            removed = await self.invalidator.handle_new_data(event)
            return {
                "pool_ids": event.pool_ids,
                "keys_removed": removed,
                "prefix_scan": self.cache.scans_prefixes,
            }

    def _setup_admin_routes(self):
        """Client administration."""

        async def admit_admin(authorization: Optional[str], response: Response) -> RequestContext:
            context = await self.gateway.admit(authorization, ADMIN)
            self._set_rate_limit_headers(response, context)
            return context

        @self.app.post("/admin/clients", response_model=ClientCreatedResponse, status_code=201)
        async def create_client(body: ClientCreateRequest, response: Response,
                                authorization: Optional[str] = Header(None)):
            """Register a client. The API key is only ever returned here."""
            context = await admit_admin(authorization, response)
            identity, api_key = await self.credentials.create_client(
                body.display_name, body.tier, created_by=context.client_id
            )
            return ClientCreatedResponse(client=ClientResponse.from_identity(identity), api_key=api_key)

        @self.app.get("/admin/clients", response_model=ClientListResponse)
        async def list_clients(response: Response, authorization: Optional[str] = Header(None)):
            await admit_admin(authorization, response)
            clients = [ClientResponse.from_identity(identity) for identity in await self.credentials.list_clients()]
            return ClientListResponse(clients=clients, total=len(clients))

        @self.app.get("/admin/clients/{client_id}", response_model=ClientResponse)
        async def get_client(client_id: str, response: Response, authorization: Optional[str] = Header(None)):
            await admit_admin(authorization, response)
            identity = await self.credentials.get_client(client_id)
            if identity is None:
                raise ResourceNotFoundError("client", client_id)
            return ClientResponse.from_identity(identity)

        @self.app.patch("/admin/clients/{client_id}/status", response_model=ClientResponse)
        async def update_status(client_id: str, body: ClientStatusUpdateRequest, response: Response,
                                authorization: Optional[str] = Header(None)):
            """Suspend or reactivate a client. Issued tokens stay valid until they expire."""
            await admit_admin(authorization, response)
            identity = await self.credentials.update_status(client_id, body.status)
            return ClientResponse.from_identity(identity)

        @self.app.patch("/admin/clients/{client_id}/quota", response_model=ClientResponse)
        async def update_quota(client_id: str, body: ClientQuotaUpdateRequest, response: Response,
                               authorization: Optional[str] = Header(None)):
            await admit_admin(authorization, response)
            identity = await self.credentials.update_quota(client_id, body.quota_per_window)
            return ClientResponse.from_identity(identity)

        @self.app.post("/admin/clients/{client_id}/quota/reset")
        async def reset_quota(client_id: str, response: Response, authorization: Optional[str] = Header(None)):
            """Clear the client's counter for the current window."""
            await admit_admin(authorization, response)
            await self.credentials.require_client(client_id)
            await self.quota.reset(client_id)
            return {"client_id": client_id, "reset": True}

        @self.app.delete("/admin/clients/{client_id}")
        async def delete_client(client_id: str, response: Response, purge: bool = Query(False),
                                authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
            """Suspend a client, or remove it entirely with ``purge=true``."""
            await admit_admin(authorization, response)
            if purge:
                await self.credentials.purge_client(client_id)
                return {"client_id": client_id, "status": "PURGED"}
            identity = await self.credentials.delete_client(client_id)
            return {"client_id": client_id, "status": identity.status.value}


def create_app():
    """Create FastAPI application."""
    service = GatewayService()
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
