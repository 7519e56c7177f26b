"""
RSA signing keys for gateway tokens.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk

from shared.logging import get_logger


logger = get_logger("gateway.auth.keys")


@dataclass(frozen=True)
class SigningKeyPair:
    """PEM encoded RS256 key pair and the key id published with it."""

    private_pem: str
    public_pem: str
    key_id: str
    algorithm: str = "RS256"

    @classmethod
    def generate(cls, key_id: str, key_size: int = 2048) -> "SigningKeyPair":
        """Generate an ephemeral key pair."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls._from_private_key(private_key, key_id)

    @classmethod
    def from_files(cls, private_key_path: str, public_key_path: Optional[str], key_id: str) -> "SigningKeyPair":
        """Load a key pair from PEM files. The public half is derived when no path is given."""
        private_bytes = Path(private_key_path).read_bytes()
        private_key = serialization.load_pem_private_key(private_bytes, password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError(f"{private_key_path} does not contain an RSA private key")

        if public_key_path:
            public_pem = Path(public_key_path).read_text()
            return cls(private_pem=private_bytes.decode("utf-8"), public_pem=public_pem, key_id=key_id)
        return cls._from_private_key(private_key, key_id)

    @classmethod
    def from_config(cls, private_key_path: Optional[str], public_key_path: Optional[str],
                    key_id: str) -> "SigningKeyPair":
        """Load configured keys, or generate ephemeral ones when none are configured."""
        if private_key_path:
            logger.info("Loading signing key", path=private_key_path, kid=key_id)
            return cls.from_files(private_key_path, public_key_path, key_id)

        logger.warning(
            "No signing key configured, generating an ephemeral key pair; "
            "tokens will not survive a restart",
            kid=key_id
        )
        return cls.generate(key_id)

    @classmethod
    def _from_private_key(cls, private_key: rsa.RSAPrivateKey, key_id: str) -> "SigningKeyPair":
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        ).decode("utf-8")
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode("utf-8")
        return cls(private_pem=private_pem, public_pem=public_pem, key_id=key_id)

    def public_jwk(self) -> Dict[str, Any]:
        """Public key as a JWK entry."""
        key = jwk.construct(self.public_pem, self.algorithm).to_dict()
        key.update({"kid": self.key_id, "use": "sig", "alg": self.algorithm})
        return key

    def jwks(self) -> Dict[str, Any]:
        """Public key set document."""
        return {"keys": [self.public_jwk()]}
