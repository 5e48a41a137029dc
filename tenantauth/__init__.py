"""tenantauth - access control core for a multi-tenant SaaS service.

Role-based permissions, session and API-key authentication, TOTP two-factor
authentication and failed-attempt lockout, backed by SQLite.
"""

__version__ = "0.1.0"

from tenantauth.security.api_keys import ApiKeyManager
from tenantauth.security.rate_limit import LockoutLimiter
from tenantauth.security.rbac import has_permission, require_permission
from tenantauth.security.two_factor import TwoFactorEngine
from tenantauth.storage.database import CredentialStore

__all__ = [
    "ApiKeyManager",
    "CredentialStore",
    "LockoutLimiter",
    "TwoFactorEngine",
    "has_permission",
    "require_permission",
    "__version__",
]
