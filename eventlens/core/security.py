import hashlib
import hmac
import secrets
from typing import Protocol

import structlog

logger = structlog.get_logger()


class CredentialVerifier(Protocol):
    """verify(credential) -> principal name, or None to reject"""

    enabled: bool

    def verify(self, credential: str | None) -> str | None:
        ...


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key() -> tuple[str, str]:
    """New random key and the digest to put in API_KEY_HASHES"""
    api_key = f"el_{secrets.token_urlsafe(32)}"
    return api_key, hash_api_key(api_key)


class ApiKeyVerifier:
    """Accepts keys whose SHA-256 digest is configured; disabled when none are"""

    def __init__(self, key_hashes: frozenset[str]):
        self._hashes = tuple(key_hashes)
        self.enabled = bool(self._hashes)

    def verify(self, credential: str | None) -> str | None:
        if not credential:
            return None

        digest = hash_api_key(credential)
        matched = False
        # compare against every configured hash so timing does not reveal which one matched
        for known in self._hashes:
            matched |= hmac.compare_digest(digest, known)

        if not matched:
            logger.warning("api_key_rejected", key_prefix=digest[:8])
            return None
        return f"api_key:{digest[:12]}"
