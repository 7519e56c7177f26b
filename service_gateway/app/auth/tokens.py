"""
Access and refresh token issuance and verification.

Tokens are RS256 JWTs carrying the client id, its roles and its quota.
Verification order matters: the token is parsed, then its signature is
checked, and only a token with a valid signature can be reported expired.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from jose import JWTError, jwt

from shared.errors import (
    InvalidRefreshTokenError,
    InvalidSignatureError,
    InvalidTokenError,
    MalformedTokenError,
    TokenExpiredError,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..credentials.models import ClientIdentity
from .keys import SigningKeyPair


ACCESS = "access"
REFRESH = "refresh"

_EXPIRY_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_EXPIRY_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expiry(value: Union[str, int]) -> int:
    """Convert a duration such as ``15m`` or ``7d`` to seconds."""
    if isinstance(value, int) and not isinstance(value, bool):
        if value <= 0:
            raise ValueError(f"Token lifetime must be positive: {value}")
        return value

    match = _EXPIRY_PATTERN.match(str(value))
    if not match:
        raise ValueError(f"Invalid expiry format: {value!r}")
    seconds = int(match.group(1)) * _EXPIRY_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Token lifetime must be positive: {value!r}")
    return seconds


@dataclass(frozen=True)
class TokenClaims:
    """Verified token contents."""

    sub: str
    roles: List[str]
    quota_per_window: int
    iat: int
    exp: int
    typ: str = ACCESS
    iss: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def has_role(self, role: Any) -> bool:
        return _role_value(role) in self.roles

    def has_any_role(self, roles: Iterable[Any]) -> bool:
        return any(self.has_role(role) for role in roles)


@dataclass(frozen=True)
class TokenPair:
    """Tokens handed out by a credential exchange."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


def _role_value(role: Any) -> str:
    return getattr(role, "value", role)


def parse_unverified(token: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Parse header and claims without trusting them."""
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedTokenError()
    try:
        header = jwt.get_unverified_header(token)
        claims = jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise MalformedTokenError(details={"error": str(exc)}) from exc
    return header, claims


def decode_token(token: str, key: Union[str, Dict[str, Any]], *, algorithms: List[str],
                 issuer: Optional[str], expected_type: Optional[str], now: float) -> TokenClaims:
    """
    Verify a parsed token with the given key.

    Raises InvalidSignatureError for bad signatures, algorithms or issuers,
    MalformedTokenError when required claims are missing, TokenExpiredError
    when ``now`` is past ``exp`` and InvalidTokenError for the wrong ``typ``.
    """
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=algorithms,
            issuer=issuer,
            options={"verify_exp": False, "verify_aud": False, "verify_nbf": False},
        )
    except JWTError as exc:
        raise InvalidSignatureError(details={"error": str(exc)}) from exc

    claims = _claims_from_payload(payload)

    if now > claims.exp:
        raise TokenExpiredError(details={"expired_at": claims.exp})

    if expected_type is not None and claims.typ != expected_type:
        raise InvalidTokenError(
            "Unexpected token type",
            {"reason": "wrong_type", "expected": expected_type, "actual": claims.typ}
        )
    return claims


def _claims_from_payload(payload: Dict[str, Any]) -> TokenClaims:
    sub = payload.get("sub")
    roles = payload.get("roles")
    quota = payload.get("quota_per_window")
    iat = payload.get("iat")
    exp = payload.get("exp")

    if not isinstance(sub, str) or not sub:
        raise MalformedTokenError("Token missing subject claim")
    if not isinstance(roles, list) or not all(isinstance(role, str) for role in roles):
        raise MalformedTokenError("Token missing roles claim")
    if isinstance(quota, bool) or not isinstance(quota, int):
        raise MalformedTokenError("Token missing quota claim")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise MalformedTokenError("Token missing expiry claim")
    if isinstance(iat, bool) or not isinstance(iat, (int, float)):
        raise MalformedTokenError("Token missing issued-at claim")

    return TokenClaims(
        sub=sub,
        roles=list(roles),
        quota_per_window=quota,
        iat=int(iat),
        exp=int(exp),
        typ=payload.get("typ", ACCESS),
        iss=payload.get("iss"),
        raw=payload,
    )


class TokenService:
    """Issues and verifies the gateway's RS256 tokens."""

    def __init__(
        self,
        key_pair: SigningKeyPair,
        *,
        issuer: str = "fluxsight-gateway",
        access_token_expiry: Union[str, int] = "15m",
        refresh_token_expiry: Union[str, int] = "7d",
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.key_pair = key_pair
        self.issuer = issuer
        self.access_ttl = parse_expiry(access_token_expiry)
        self.refresh_ttl = parse_expiry(refresh_token_expiry)
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("gateway.auth.tokens")

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.time,
                    metrics: Optional[MetricsCollector] = None) -> "TokenService":
        key_pair = SigningKeyPair.from_config(
            config.jwt_private_key_path,
            config.jwt_public_key_path,
            config.jwt_key_id,
        )
        return cls(
            key_pair,
            issuer=config.jwt_issuer,
            access_token_expiry=config.jwt_access_token_expiry,
            refresh_token_expiry=config.jwt_refresh_token_expiry,
            clock=clock,
            metrics=metrics,
        )

    def _record(self, operation: str, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("token_operations_total", operation=operation, status=status)

    def _sign(self, sub: str, roles: List[str], quota_per_window: int, token_type: str, ttl: int) -> str:
        issued_at = int(self.clock())
        claims = {
            "sub": sub,
            "roles": roles,
            "quota_per_window": quota_per_window,
            "iat": issued_at,
            "exp": issued_at + ttl,
            "typ": token_type,
            "iss": self.issuer,
        }
        return jwt.encode(
            claims,
            self.key_pair.private_pem,
            algorithm=self.key_pair.algorithm,
            headers={"kid": self.key_pair.key_id},
        )

    def issue_token_pair(self, identity: ClientIdentity) -> TokenPair:
        """Issue access and refresh tokens for an identity."""
        roles = identity.effective_roles
        quota = identity.effective_quota
        pair = TokenPair(
            access_token=self._sign(identity.id, roles, quota, ACCESS, self.access_ttl),
            refresh_token=self._sign(identity.id, roles, quota, REFRESH, self.refresh_ttl),
            expires_in=self.access_ttl,
        )
        self._record("issue", "success")
        self.logger.info("Token pair issued", client_id=identity.id, roles=roles, quota_per_window=quota)
        return pair

    def verify(self, token: str, expected_type: Optional[str] = ACCESS) -> TokenClaims:
        """Verify a token signed by this service."""
        try:
            header, _ = parse_unverified(token)
            kid = header.get("kid")
            if kid is not None and kid != self.key_pair.key_id:
                raise InvalidSignatureError("Unknown signing key", {"kid": kid})
            claims = decode_token(
                token,
                self.key_pair.public_pem,
                algorithms=[self.key_pair.algorithm],
                issuer=self.issuer,
                expected_type=expected_type,
                now=self.clock(),
            )
        except (InvalidTokenError, TokenExpiredError) as exc:
            self._record("verify", exc.code.lower())
            raise
        self._record("verify", "success")
        return claims

    def refresh(self, refresh_token: str) -> str:
        """Mint a new access token from a refresh token. The refresh token is not rotated."""
        try:
            claims = self.verify(refresh_token, expected_type=REFRESH)
        except TokenExpiredError as exc:
            self._record("refresh", exc.code.lower())
            raise InvalidRefreshTokenError("Refresh token expired", {"reason": "expired"}) from exc
        except InvalidTokenError as exc:
            self._record("refresh", exc.code.lower())
            raise InvalidRefreshTokenError(details=exc.details) from exc
        access_token = self._sign(claims.sub, claims.roles, claims.quota_per_window, ACCESS, self.access_ttl)
        self._record("refresh", "success")
        self.logger.info("Access token refreshed", client_id=claims.sub)
        return access_token

    def jwks(self) -> Dict[str, Any]:
        return self.key_pair.jwks()

    def public_key_pem(self) -> str:
        return self.key_pair.public_pem
