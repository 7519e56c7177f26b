"""
FluxSight Access Gateway service package.

The gateway fronts analytics requests, enforcing:
- Authentication: API keys exchanged for RS256 access/refresh tokens
- Authorization: role checks derived from the client tier
- Quotas: fixed-window counters shared through Redis
- Caching: cache-aside responses with pool-level invalidation

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: Redis-backed key-value store.
- app.auth: Signing keys, token issuance/verification, remote JWKS.
- app.credentials: Client identities and API key lifecycle.
- app.caching: Namespaced cache layer.
- app.ratelimit: Fixed-window quota enforcement.
- app.domain: Gateway pipeline, resolvers and invalidation.
"""
