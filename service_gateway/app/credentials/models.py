"""
Client identity data models for the Gateway Service.
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field, asdict
from enum import Enum

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Client tiers."""
    FREE = "FREE"
    STANDARD = "STANDARD"
    ENTERPRISE = "ENTERPRISE"


class Role(str, Enum):
    """Permissions carried in token claims."""
    READ = "READ"
    WRITE = "WRITE"
    ADMIN = "ADMIN"


class ClientStatus(str, Enum):
    """Client lifecycle status."""
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


@dataclass(frozen=True)
class TierConfig:
    """Quota and default roles granted by a tier."""
    quota_per_window: int
    roles: List[Role]


TIER_CONFIG: Dict[Tier, TierConfig] = {
    Tier.FREE: TierConfig(quota_per_window=100, roles=[Role.READ]),
    Tier.STANDARD: TierConfig(quota_per_window=1000, roles=[Role.READ]),
    Tier.ENTERPRISE: TierConfig(quota_per_window=10000, roles=[Role.READ, Role.WRITE, Role.ADMIN]),
}


@dataclass
class ClientIdentity:
    """A registered API client. Only the SHA-256 of its key is kept."""
    id: str
    display_name: str
    credential_hash: str
    tier: Tier
    roles: List[Role]
    quota_per_window: int
    status: ClientStatus = ClientStatus.ACTIVE
    created_at: str = ""
    last_used_at: Optional[str] = None
    created_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == ClientStatus.ACTIVE

    @property
    def effective_roles(self) -> List[str]:
        """Roles to place in tokens. Suspended clients get none."""
        if not self.is_active:
            return []
        return [role.value for role in self.roles]

    @property
    def effective_quota(self) -> int:
        """Quota to place in tokens. Suspended clients get zero."""
        return self.quota_per_window if self.is_active else 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["roles"] = [role.value for role in self.roles]
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientIdentity":
        return cls(
            id=data["id"],
            display_name=data["display_name"],
            credential_hash=data["credential_hash"],
            tier=Tier(data["tier"]),
            roles=[Role(role) for role in data.get("roles", [])],
            quota_per_window=int(data["quota_per_window"]),
            status=ClientStatus(data.get("status", ClientStatus.ACTIVE.value)),
            created_at=data.get("created_at", ""),
            last_used_at=data.get("last_used_at"),
            created_by=data.get("created_by"),
            metadata=data.get("metadata") or {},
        )


class ClientCreateRequest(BaseModel):
    """Request model for registering a client."""
    display_name: str = Field(..., min_length=1, max_length=200, description="Human-readable client name")
    tier: str = Field(..., description="FREE, STANDARD or ENTERPRISE")


class ClientStatusUpdateRequest(BaseModel):
    """Request model for suspending or reactivating a client."""
    status: ClientStatus = Field(..., description="New status")


class ClientQuotaUpdateRequest(BaseModel):
    """Request model for overriding a client's quota."""
    quota_per_window: int = Field(..., ge=0, description="Requests allowed per window")


class ClientResponse(BaseModel):
    """Public view of a client. Never includes the credential hash."""
    id: str
    display_name: str
    tier: Tier
    roles: List[Role]
    quota_per_window: int
    status: ClientStatus
    created_at: str
    last_used_at: Optional[str] = None
    created_by: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: ClientIdentity) -> "ClientResponse":
        return cls(
            id=identity.id,
            display_name=identity.display_name,
            tier=identity.tier,
            roles=identity.roles,
            quota_per_window=identity.quota_per_window,
            status=identity.status,
            created_at=identity.created_at,
            last_used_at=identity.last_used_at,
            created_by=identity.created_by,
        )


class ClientCreatedResponse(BaseModel):
    """Response for client registration. The API key is shown only here."""
    client: ClientResponse
    api_key: str


class ClientListResponse(BaseModel):
    """Response model for client list."""
    clients: List[ClientResponse]
    total: int
