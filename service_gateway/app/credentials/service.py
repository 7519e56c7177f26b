"""
Credential service: client registration and API key authentication.
"""

import hashlib
import json
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple, Union

from shared.errors import ClientNotFoundError, InvalidTierError, StoreUnavailableError, ValidationError
from shared.logging import get_logger
from shared.store import KeyValueStore
from .models import ClientIdentity, ClientStatus, TIER_CONFIG, Tier


CLIENT_PREFIX = "client:"
CREDENTIAL_INDEX_PREFIX = "client_key:"
LAST_USED_PREFIX = "client_last_used:"
STATUS_PREFIX = "client_status:"
QUOTA_PREFIX = "client_quota:"
CLIENT_SET_KEY = "clients"


def hash_credential(plaintext: str) -> str:
    """SHA-256 hex digest of an API key."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def generate_credential() -> str:
    """New plaintext API key: 32 random bytes, hex encoded."""
    return secrets.token_hex(32)


class CredentialService:
    """Registers clients and resolves API keys to identities."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time,
                 max_generation_attempts: int = 3):
        self.store = store
        self.clock = clock
        self.max_generation_attempts = max_generation_attempts
        self.logger = get_logger("gateway.credentials")

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()

    @staticmethod
    def _parse_tier(tier: Union[Tier, str]) -> Tier:
        if isinstance(tier, Tier):
            return tier
        try:
            return Tier(str(tier).upper())
        except ValueError:
            raise InvalidTierError(tier)

    async def create_client(self, display_name: str, tier: Union[Tier, str],
                            created_by: Optional[str] = None) -> Tuple[ClientIdentity, str]:
        """Register a client. Returns the identity and the plaintext key, shown once."""
        resolved_tier = self._parse_tier(tier)
        if not display_name or not display_name.strip():
            raise ValidationError("display_name must not be empty")

        tier_config = TIER_CONFIG[resolved_tier]
        client_id = str(uuid.uuid4())

        for _ in range(self.max_generation_attempts):
            plaintext = generate_credential()
            credential_hash = hash_credential(plaintext)
            if await self.store.set_if_absent(CREDENTIAL_INDEX_PREFIX + credential_hash, client_id):
                break
        else:
            raise ValidationError("Could not generate a unique API key")

        identity = ClientIdentity(
            id=client_id,
            display_name=display_name.strip(),
            credential_hash=credential_hash,
            tier=resolved_tier,
            roles=list(tier_config.roles),
            quota_per_window=tier_config.quota_per_window,
            status=ClientStatus.ACTIVE,
            created_at=self._now_iso(),
            created_by=created_by,
        )
        try:
            await self._save(identity)
            await self.store.add_members(CLIENT_SET_KEY, [client_id])
        except StoreUnavailableError:
            await self._discard_partial(identity)
            raise

        self.logger.info("Client created", client_id=client_id, tier=resolved_tier.value, created_by=created_by)
        return identity, plaintext

    async def authenticate(self, plaintext: Optional[str]) -> Optional[ClientIdentity]:
        """Resolve an API key. Unknown and suspended keys both return None."""
        if not plaintext:
            return None

        client_id = await self.store.get(CREDENTIAL_INDEX_PREFIX + hash_credential(plaintext))
        if client_id is None:
            self.logger.info("Unknown API key presented")
            return None

        identity = await self.get_client(client_id)
        if identity is None or not identity.is_active:
            self.logger.info("Inactive client presented API key", client_id=client_id)
            return None

        identity.last_used_at = self._now_iso()
        await self.store.set(LAST_USED_PREFIX + client_id, identity.last_used_at)
        return identity

    async def get_client(self, client_id: str) -> Optional[ClientIdentity]:
        """Get a client by id, or None."""
        raw = await self.store.get(CLIENT_PREFIX + client_id)
        if raw is None:
            return None
        identity = ClientIdentity.from_dict(json.loads(raw))
        status = await self.store.get(STATUS_PREFIX + client_id)
        if status is not None:
            identity.status = ClientStatus(status)
        quota = await self.store.get(QUOTA_PREFIX + client_id)
        if quota is not None:
            identity.quota_per_window = int(quota)
        last_used = await self.store.get(LAST_USED_PREFIX + client_id)
        if last_used is not None:
            identity.last_used_at = last_used
        return identity

    async def require_client(self, client_id: str) -> ClientIdentity:
        identity = await self.get_client(client_id)
        if identity is None:
            raise ClientNotFoundError(client_id)
        return identity

    async def list_clients(self) -> List[ClientIdentity]:
        """List every registered client, oldest first."""
        clients = []
        for client_id in await self.store.members(CLIENT_SET_KEY):
            identity = await self.get_client(client_id)
            if identity is not None:
                clients.append(identity)
        return sorted(clients, key=lambda identity: (identity.created_at, identity.id))

    async def update_status(self, client_id: str, status: Union[ClientStatus, str]) -> ClientIdentity:
        """Suspend or reactivate a client. Issued tokens are unaffected."""
        try:
            new_status = ClientStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid status: {status}", {"status": str(status)})

        identity = await self.require_client(client_id)
        await self.store.set(STATUS_PREFIX + client_id, new_status.value)
        identity.status = new_status
        self.logger.info("Client status updated", client_id=client_id, status=new_status.value)
        return identity

    async def update_quota(self, client_id: str, quota_per_window: int) -> ClientIdentity:
        """Override a client's per-window quota."""
        if quota_per_window < 0:
            raise ValidationError("quota_per_window must be >= 0", {"quota_per_window": quota_per_window})

        identity = await self.require_client(client_id)
        await self.store.set(QUOTA_PREFIX + client_id, str(quota_per_window))
        identity.quota_per_window = quota_per_window
        self.logger.info("Client quota updated", client_id=client_id, quota_per_window=quota_per_window)
        return identity

    async def delete_client(self, client_id: str) -> ClientIdentity:
        """Soft delete: the client is suspended and kept for audit."""
        return await self.update_status(client_id, ClientStatus.SUSPENDED)

    async def purge_client(self, client_id: str) -> None:
        """Remove a client record and its key index."""
        identity = await self.require_client(client_id)
        await self.store.delete(
            CLIENT_PREFIX + client_id,
            CREDENTIAL_INDEX_PREFIX + identity.credential_hash,
            LAST_USED_PREFIX + client_id,
            STATUS_PREFIX + client_id,
            QUOTA_PREFIX + client_id,
        )
        await self.store.remove_members(CLIENT_SET_KEY, [client_id])
        self.logger.info("Client purged", client_id=client_id)

    async def _save(self, identity: ClientIdentity) -> None:
        data = identity.to_dict()
        # Mutable fields live under their own keys; this record holds creation-time values.
        data.pop("last_used_at", None)
        await self.store.set(CLIENT_PREFIX + identity.id, json.dumps(data))

    async def _discard_partial(self, identity: ClientIdentity) -> None:
        """Best-effort removal of a half-written registration."""
        try:
            await self.store.delete(
                CLIENT_PREFIX + identity.id,
                CREDENTIAL_INDEX_PREFIX + identity.credential_hash,
            )
        except StoreUnavailableError as e:
            self.logger.error("Could not clean up partial client", client_id=identity.id, operation=e.operation)
