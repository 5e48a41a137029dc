"""Audit trail.

Events are written to the ``audit_log`` table and mirrored as JSON to the
``tenantauth.audit_events`` logger. Recording an event never raises: a failing
audit write is logged locally and the caller carries on.
"""

import logging
import secrets
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from tenantauth.core.logging_setup import AuditLogger
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import AuditLogEntry, utc_now

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Types of auditable actions."""

    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"

    USER_CREATE = "user_create"
    USER_UPDATE = "user_update"
    USER_DEACTIVATE = "user_deactivate"

    ORGANIZATION_CREATE = "organization_create"
    ORGANIZATION_UPDATE = "organization_update"
    ORGANIZATION_DELETE = "organization_delete"
    MEMBER_ADD = "member_add"
    MEMBER_REMOVE = "member_remove"
    MEMBER_ROLE_CHANGE = "member_role_change"
    INVITE_SEND = "invite_send"
    INVITE_ACCEPT = "invite_accept"
    INVITE_REJECT = "invite_reject"

    API_KEY_CREATE = "api_key_create"
    API_KEY_UPDATE = "api_key_update"
    API_KEY_DELETE = "api_key_delete"
    API_KEY_ROTATE = "api_key_rotate"
    API_KEY_USE = "api_key_use"

    TWO_FA_SETUP = "two_fa_setup"
    TWO_FA_ENABLE = "two_fa_enable"
    TWO_FA_DISABLE = "two_fa_disable"
    TWO_FA_VERIFY = "two_fa_verify"
    TWO_FA_BACKUP_CODES = "two_fa_backup_codes"
    ACCOUNT_LOCKED = "account_locked"
    PERMISSION_DENIED = "permission_denied"


class AuditResource(str, Enum):
    """Resource types referenced by audit events."""

    USER = "user"
    ORGANIZATION = "organization"
    ORGANIZATION_MEMBER = "organization_member"
    ORGANIZATION_INVITE = "organization_invite"
    SUBSCRIPTION = "subscription"
    API_KEY = "api_key"
    TWO_FA = "two_fa"
    AUDIT_LOG = "audit_log"


def _value(item: Union[str, Enum]) -> str:
    return item.value if isinstance(item, Enum) else item


class AuditTrail:
    """Best-effort recorder and query interface for audit events."""

    def __init__(self, store: CredentialStore, audit_logger: Optional[AuditLogger] = None):
        """Initialize the trail.

        Args:
            store: Credential store holding the ``audit_log`` table
            audit_logger: JSON audit channel (created without a file if None)
        """
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()

    def log_event(
        self,
        action: Union[AuditAction, str],
        resource: Union[AuditResource, str],
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        """Record an event.

        Returns:
            The stored entry, or None if it could not be written
        """
        try:
            entry = AuditLogEntry(
                log_id=f"log_{secrets.token_hex(10)}",
                created_at=utc_now(),
                user_id=user_id,
                organization_id=organization_id,
                action=_value(action),
                resource=_value(resource),
                resource_id=resource_id,
                details=details or {},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.store.insert_audit_log(entry)
            self.audit_logger.log_event(
                action=entry.action,
                resource=entry.resource,
                user_id=user_id,
                organization_id=organization_id,
                resource_id=resource_id,
                details=entry.details,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return entry
        except Exception:
            logger.exception(f"Failed to log audit event {_value(action)}")
            return None

    def get_audit_logs(
        self,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        actions: Optional[Iterable[Union[AuditAction, str]]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        """Query recorded events, newest first."""
        return self.store.get_audit_logs(
            user_id=user_id,
            organization_id=organization_id,
            actions=[_value(a) for a in actions] if actions else None,
            limit=limit,
            offset=offset,
        )
