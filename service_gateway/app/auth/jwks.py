"""
JSON Web Key Set (JWKS) verification for processes that do not hold the signing key.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from shared.errors import GatewayError, InvalidSignatureError, InvalidTokenError, TokenExpiredError
from shared.logging import get_logger
from .tokens import ACCESS, TokenClaims, decode_token, parse_unverified


class JWKSUnavailableError(GatewayError):
    """The key set could not be fetched."""

    status_code = 503

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("JWKS_UNAVAILABLE", "Service temporarily unavailable", details)


class JWKSVerifier:
    """Verifies gateway tokens against a remote JWKS endpoint."""

    def __init__(
        self,
        jwks_url: str,
        issuer: Optional[str] = None,
        *,
        refresh_interval: int = 300,
        min_refresh_interval: float = 30.0,
        http_timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.refresh_interval = refresh_interval
        self.min_refresh_interval = min_refresh_interval
        self.clock = clock
        self.logger = get_logger("gateway.auth.jwks")

        self._keys: Optional[List[Dict[str, Any]]] = None
        self._last_refresh: float = 0.0
        self._last_fetch_attempt: Optional[float] = None
        self._lock = asyncio.Lock()
        self._client = http_client or httpx.AsyncClient(timeout=http_timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def warmup(self) -> None:
        """Eagerly load JWKS metadata so the first request does not pay the cost."""
        try:
            await self._refresh_keys(force=True)
        except JWKSUnavailableError as exc:
            self.logger.warning("JWKS warmup failed", error=str(exc.details))

    async def verify(self, token: str, expected_type: Optional[str] = ACCESS) -> TokenClaims:
        """Verify a token with the published key matching its ``kid``."""
        header, _ = parse_unverified(token)
        kid = header.get("kid")
        if not isinstance(kid, str):
            raise InvalidSignatureError("JWT header missing key id (kid)")

        key_data = await self._get_key(kid)
        if not key_data:
            raise InvalidSignatureError("Signing key not found for token", {"kid": kid})

        try:
            return decode_token(
                token,
                key_data,
                algorithms=[key_data.get("alg", "RS256")],
                issuer=self.issuer,
                expected_type=expected_type,
                now=self.clock(),
            )
        except (InvalidTokenError, TokenExpiredError) as exc:
            self.logger.info("Token rejected", kid=kid, code=exc.code)
            raise

    async def check_health(self) -> str:
        """Return 'ok' if the JWKS endpoint responds correctly, otherwise 'error'."""
        try:
            await self._refresh_keys(force=False)
            return "ok"
        except JWKSUnavailableError as exc:
            self.logger.error("JWKS health check failed", error=str(exc.details))
            return "error"

    async def _get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Fetch the JWKS and return the key matching the provided kid."""
        await self._refresh_keys(force=False)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key

        # Key might be rotated; refetch, but at most once per min_refresh_interval.
        if not self._can_force_refresh():
            self.logger.info("Unknown kid, refetch throttled", kid=kid)
            return None
        await self._refresh_keys(force=True)
        for key in self._keys or []:
            if key.get("kid") == kid:
                return key
        return None

    def _is_fresh(self) -> bool:
        return self._keys is not None and (self.clock() - self._last_refresh) < self.refresh_interval

    def _can_force_refresh(self) -> bool:
        if self._last_fetch_attempt is None:
            return True
        return (self.clock() - self._last_fetch_attempt) >= self.min_refresh_interval

    async def _refresh_keys(self, *, force: bool) -> None:
        """Refresh the JWKS if the cache is stale."""
        if not force and self._is_fresh():
            return

        async with self._lock:
            if not force and self._is_fresh():
                return
            if force and not self._can_force_refresh():
                return

            self._last_fetch_attempt = self.clock()
            try:
                response = await self._client.get(self.jwks_url)
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise JWKSUnavailableError({"error": str(exc)}) from exc

            keys = payload.get("keys") if isinstance(payload, dict) else None
            if not isinstance(keys, list):
                raise JWKSUnavailableError({"error": "JWKS response missing 'keys' array"})

            self._keys = keys
            self._last_refresh = self.clock()
            self.logger.info("JWKS refreshed", key_count=len(keys))
