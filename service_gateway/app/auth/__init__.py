"""
Token issuance and verification for the Access Gateway service.
"""

from .jwks import JWKSUnavailableError, JWKSVerifier
from .keys import SigningKeyPair
from .tokens import ACCESS, REFRESH, TokenClaims, TokenPair, TokenService, parse_expiry

__all__ = [
    "ACCESS",
    "JWKSUnavailableError",
    "JWKSVerifier",
    "REFRESH",
    "SigningKeyPair",
    "TokenClaims",
    "TokenPair",
    "TokenService",
    "parse_expiry",
]
