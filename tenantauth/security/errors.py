"""Exception types shared by the security components.

Each maps onto one HTTP status at the API edge (see ``tenantauth.api.errors``).
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from tenantauth.security.rate_limit import RateLimitResult


class TenantAuthError(Exception):
    """Base class for errors that translate to a client-facing HTTP status."""

    pass


class AuthenticationError(TenantAuthError):
    """Raised when no identity can be resolved for the caller."""

    pass


class AuthorizationError(TenantAuthError):
    """Raised (or returned) when an identity lacks a required permission."""

    def __init__(
        self,
        message: str = "Forbidden - Insufficient permissions",
        required: Optional[str] = None,
        current: Optional[str] = None,
    ):
        super().__init__(message)
        self.required = required
        self.current = current


class RateLimitError(TenantAuthError):
    """Raised when attempts are exhausted or the account is locked.

    ``locked_now`` is set when the rejected attempt is the one that locked the account.
    """

    def __init__(self, message: str, result: "RateLimitResult", locked_now: bool = False):
        super().__init__(message)
        self.result = result
        self.locked_now = locked_now


class ValidationFailedError(TenantAuthError):
    """A presented credential (code, key) was rejected.

    The message is deliberately generic so callers cannot tell which check failed.
    """

    def __init__(self, message: str = "Invalid verification code"):
        super().__init__(message)


class NotFoundError(TenantAuthError):
    """Raised when a referenced record does not exist."""

    pass


class UserNotFoundError(NotFoundError):
    """Raised when a user id does not resolve to a user."""

    def __init__(self, user_id: str):
        super().__init__("User not found")
        self.user_id = user_id


class ConflictError(TenantAuthError):
    """Raised when a write would violate a uniqueness rule."""

    pass


class MembershipError(TenantAuthError):
    """Raised when a membership change would break an organization invariant."""

    pass


class TwoFactorStateError(TenantAuthError):
    """Raised when a two-factor operation is invalid for the current state."""

    pass


class TwoFactorRequiredError(TenantAuthError):
    """Raised when a password was correct but a second factor is still needed."""

    def __init__(self, message: str, user_id: str):
        super().__init__(message)
        self.user_id = user_id
