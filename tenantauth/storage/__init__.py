"""Storage layer for tenantauth.

This package contains:
- Pydantic record types
- The SQLite credential store
"""

from tenantauth.storage.database import CredentialStore

__all__ = ["CredentialStore"]
