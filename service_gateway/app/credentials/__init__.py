"""
Client credentials for the Gateway Service.
"""

from .models import ClientIdentity, ClientStatus, Role, Tier, TIER_CONFIG
from .service import CredentialService, hash_credential

__all__ = [
    "ClientIdentity",
    "ClientStatus",
    "CredentialService",
    "Role",
    "TIER_CONFIG",
    "Tier",
    "hash_credential",
]
