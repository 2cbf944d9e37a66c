"""HMAC-SHA256 manifest signing with key-id indirection for rotation."""

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Optional

from inspectseal_api.sealing.errors import SigningKeyError
from inspectseal_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

SIGNATURE_ALGORITHM = "HMAC-SHA256"


@dataclass(frozen=True)
class SigningKey:
    """A resolved signing key."""

    key_id: str
    secret: bytes

    def __post_init__(self):
        if not self.key_id:
            raise SigningKeyError("Signing key id must not be empty")
        if not self.secret:
            raise SigningKeyError(f"Signing key {self.key_id} has empty key material")

    @classmethod
    def from_hex(cls, key_id: str, key_hex: str) -> "SigningKey":
        """Build a key from hex-encoded material."""
        try:
            secret = bytes.fromhex(key_hex)
        except (TypeError, ValueError) as e:
            raise SigningKeyError(f"Signing key {key_id} is not valid hex: {e}") from e
        return cls(key_id=key_id, secret=secret)

    def __repr__(self) -> str:
        return f"SigningKey(key_id={self.key_id!r})"


def hmac_sign(data: bytes, key: bytes) -> str:
    """Sign data with HMAC-SHA256, returning base64."""
    digest = hmac.new(key, data, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def hmac_verify(data: bytes, signature: str, key: bytes) -> bool:
    """Verify a base64 HMAC-SHA256 signature in constant time."""
    if not isinstance(signature, str):
        return False
    expected = hmac_sign(data, key)
    # Compare the encoded form so non-canonical base64 never matches
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


class KeyRing:
    """Active signing key plus retired keys kept for verification."""

    def __init__(self, active: SigningKey, legacy: Optional[Iterable[SigningKey]] = None):
        """Initialize key ring."""
        self._active = active
        self._legacy = {key.key_id: key for key in (legacy or [])}

    @property
    def active(self) -> SigningKey:
        """Key used for new signatures."""
        return self._active

    @property
    def legacy_key_ids(self) -> list[str]:
        return sorted(self._legacy)

    def resolve(self, key_id: str) -> Optional[SigningKey]:
        """Resolve a key id: active key first, then legacy keys. None if unknown."""
        if key_id == self._active.key_id:
            return self._active
        return self._legacy.get(key_id)

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyRing":
        """Build the key ring from environment configuration."""
        if not settings.manifest_signing_key_id or not settings.manifest_signing_key:
            raise SigningKeyError(
                "MANIFEST_SIGNING_KEY_ID and MANIFEST_SIGNING_KEY must be configured to seal exports"
            )
        active = SigningKey.from_hex(settings.manifest_signing_key_id, settings.manifest_signing_key)

        try:
            legacy_table = json.loads(settings.manifest_signing_keys_legacy or "{}")
        except json.JSONDecodeError as e:
            raise SigningKeyError(f"MANIFEST_SIGNING_KEYS_LEGACY is not valid JSON: {e}") from e
        if not isinstance(legacy_table, dict):
            raise SigningKeyError("MANIFEST_SIGNING_KEYS_LEGACY must be a JSON object of key_id -> hex key")

        legacy = [SigningKey.from_hex(str(key_id), str(key_hex)) for key_id, key_hex in legacy_table.items()]
        logger.info(
            f"Key ring loaded with active key {active.key_id}",
            extra={"legacy_key_ids": sorted(legacy_table)},
        )
        return cls(active, legacy)


@lru_cache()
def get_key_ring() -> KeyRing:
    """Get key ring instance based on settings."""
    return KeyRing.from_settings(get_settings())
