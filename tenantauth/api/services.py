"""Service wiring for the HTTP application.

Everything a request needs is built once per application and stored on
``app.state.services``; handlers reach it through :func:`get_services`.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from tenantauth.audit import AuditTrail
from tenantauth.core.config import Config
from tenantauth.core.logging_setup import AuditLogger
from tenantauth.notifications import EmailNotifier
from tenantauth.organizations import OrganizationManager
from tenantauth.security.api_keys import ApiKeyManager
from tenantauth.security.rate_limit import LockoutLimiter, get_rate_limit_config
from tenantauth.security.sessions import SessionAuthenticator
from tenantauth.security.two_factor import TwoFactorEngine
from tenantauth.security.users import UserManager
from tenantauth.storage.database import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Components shared by all requests of one application."""

    config: Config
    store: CredentialStore
    audit: AuditTrail
    authenticator: SessionAuthenticator
    limiter: LockoutLimiter
    two_factor: TwoFactorEngine
    users: UserManager
    api_keys: ApiKeyManager
    organizations: OrganizationManager
    notifier: EmailNotifier
    cookie_name: str = "session_token"


def build_services(
    config: Config,
    db_path: Optional[str] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> Services:
    """Construct the component graph from configuration.

    Args:
        config: Application configuration
        db_path: Database path override (``database.path`` if None)
        audit_logger: JSON audit channel

    Returns:
        Wired services
    """
    store = CredentialStore(db_path or config.get("database.path", "data/tenantauth.db"))
    audit = AuditTrail(store, audit_logger)
    limiter = LockoutLimiter(store)

    secret_key = config.get("auth.secret_key") or None
    if secret_key is None:
        logger.warning("auth.secret_key is not set; sessions will not survive a restart")

    authenticator = SessionAuthenticator(
        store,
        secret_key=secret_key,
        algorithm=config.get("auth.algorithm", "HS256"),
        session_ttl_hours=int(config.get("auth.session_ttl_hours", 24 * 7)),
    )
    two_factor = TwoFactorEngine.from_config(
        store,
        config,
        limiter=limiter,
        rate_limit=get_rate_limit_config("two_factor", config),
    )
    users = UserManager(
        store,
        authenticator,
        limiter=limiter,
        two_factor=two_factor,
        audit=audit,
        min_password_length=int(config.get("auth.password_min_length", 8)),
    )
    notifier = EmailNotifier.from_config(config)
    organizations = OrganizationManager(
        store,
        notifier=notifier,
        audit=audit,
        invite_ttl_days=int(config.get("organizations.invite_ttl_days", 7)),
    )

    return Services(
        config=config,
        store=store,
        audit=audit,
        authenticator=authenticator,
        limiter=limiter,
        two_factor=two_factor,
        users=users,
        api_keys=ApiKeyManager(store, prefix=config.get("api_keys.prefix", "sk_")),
        organizations=organizations,
        notifier=notifier,
        cookie_name=config.get("auth.cookie_name", "session_token"),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
