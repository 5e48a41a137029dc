"""API key issuance and validation.

Keys look like ``sk_<64 hex chars>`` (256 random bits). Only the SHA-256 hex
digest is stored; the plaintext is handed back exactly once, from
:meth:`ApiKeyManager.create_api_key` or :meth:`ApiKeyManager.rotate_api_key`.

Ownership checks are the caller's job: update, delete and rotate act on any
key id they are given.
"""

import hashlib
import logging
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from tenantauth.security.rbac import has_api_permission
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import ApiKey, ApiKeyView, utc_now

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "sk_"

_UNSET: Any = object()


@dataclass(frozen=True)
class ApiKeyContext:
    """Identity resolved from a valid API key."""

    api_key_id: str
    user_id: str
    organization_id: Optional[str]
    permissions: Tuple[str, ...] = field(default_factory=tuple)

    def has_permission(self, resource: str, action: str) -> bool:
        return has_api_permission(self.permissions, resource, action)


def generate_api_key(prefix: str = API_KEY_PREFIX) -> str:
    """New plaintext key: prefix followed by 32 random bytes as hex."""
    return f"{prefix}{secrets.token_hex(32)}"


def hash_api_key(key: str) -> str:
    """SHA-256 hex digest of a plaintext key."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat a naive expiry as UTC so it compares with the clock."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApiKeyManager:
    """Create, validate, rotate, update and delete API keys."""

    def __init__(self, store: CredentialStore, prefix: str = API_KEY_PREFIX):
        """Initialize the manager.

        Args:
            store: Credential store
            prefix: Literal tag every key starts with
        """
        self.store = store
        self.prefix = prefix

    def create_api_key(
        self,
        user_id: str,
        name: str,
        organization_id: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[str, ApiKeyView]:
        """Issue a key.

        Args:
            user_id: Owner of the key
            name: Friendly name
            organization_id: Organization the key is scoped to
            permissions: ``"resource:action"`` grants
            expires_at: Optional expiry

        Returns:
            Tuple of (plaintext key, redacted record)
        """
        plaintext = generate_api_key(self.prefix)
        now = utc_now()
        api_key = ApiKey(
            key_id=f"key_{secrets.token_hex(12)}",
            name=name,
            hashed_key=hash_api_key(plaintext),
            user_id=user_id,
            organization_id=organization_id,
            permissions=list(permissions or []),
            expires_at=as_utc(expires_at),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_api_key(api_key)
        logger.info(f"Created API key {api_key.key_id} for user {user_id}")
        return plaintext, api_key.view()

    def validate_api_key(
        self, key: Optional[str], now: Optional[datetime] = None
    ) -> Optional[ApiKeyContext]:
        """Resolve a presented key to its context.

        Unknown, inactive and expired keys all yield None.

        Args:
            key: Presented plaintext key
            now: Current time (defaults to the clock)

        Returns:
            ApiKeyContext, or None if the key is not usable
        """
        if not key or not key.startswith(self.prefix):
            return None

        now = now or utc_now()
        record = self.store.get_api_key_by_hash(hash_api_key(key))
        if record is None or not record.is_active:
            return None
        expires_at = as_utc(record.expires_at)
        if expires_at is not None and expires_at <= as_utc(now):
            return None

        try:
            self.store.touch_api_key(record.key_id, now)
        except sqlite3.Error as e:
            logger.warning(f"Could not record use of API key {record.key_id}: {e}")

        return ApiKeyContext(
            api_key_id=record.key_id,
            user_id=record.user_id,
            organization_id=record.organization_id,
            permissions=tuple(record.permissions),
        )

    def rotate_api_key(self, key_id: str) -> Optional[Tuple[str, ApiKeyView]]:
        """Replace a key's secret, keeping its id and metadata.

        The previous plaintext stops validating immediately.

        Returns:
            Tuple of (new plaintext, redacted record), or None if the key is unknown
        """
        if self.store.get_api_key(key_id) is None:
            return None

        plaintext = generate_api_key(self.prefix)
        if not self.store.replace_api_key_hash(key_id, hash_api_key(plaintext)):
            return None

        logger.info(f"Rotated API key {key_id}")
        updated = self.store.get_api_key(key_id)
        return plaintext, updated.view()

    def update_api_key(
        self,
        key_id: str,
        name: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        is_active: Optional[bool] = None,
        expires_at: Any = _UNSET,
    ) -> Optional[ApiKeyView]:
        """Change a key's name, permissions, active flag or expiry.

        ``expires_at=None`` clears the expiry; leave it out to keep it.

        Returns:
            The updated record, or None if the key is unknown
        """
        fields: dict = {}
        if name is not None:
            fields["name"] = name
        if permissions is not None:
            fields["permissions"] = list(permissions)
        if is_active is not None:
            fields["is_active"] = is_active
        if expires_at is not _UNSET:
            fields["expires_at"] = as_utc(expires_at)

        if not self.store.update_api_key(key_id, **fields):
            return None

        logger.info(f"Updated API key {key_id}: {sorted(fields)}")
        return self.get_api_key(key_id)

    def delete_api_key(self, key_id: str) -> bool:
        """Delete a key. Returns True if it existed."""
        deleted = self.store.delete_api_key(key_id)
        if deleted:
            logger.info(f"Deleted API key {key_id}")
        return deleted

    def get_api_key(self, key_id: str) -> Optional[ApiKeyView]:
        record = self.store.get_api_key(key_id)
        return record.view() if record else None

    def list_user_keys(self, user_id: str) -> List[ApiKeyView]:
        return [record.view() for record in self.store.list_api_keys_by_user(user_id)]

    def list_organization_keys(self, organization_id: str) -> List[ApiKeyView]:
        return [
            record.view() for record in self.store.list_api_keys_by_organization(organization_id)
        ]
