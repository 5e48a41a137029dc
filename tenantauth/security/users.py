"""User accounts: signup, sign-in and administration."""

import logging
import secrets
from typing import List, Optional, Tuple

from tenantauth.audit import AuditAction, AuditResource, AuditTrail
from tenantauth.security.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitError,
    TwoFactorRequiredError,
    UserNotFoundError,
    ValidationFailedError,
)
from tenantauth.security.rate_limit import (
    LockoutLimiter,
    RateLimitResult,
    get_rate_limit_error_message,
)
from tenantauth.security.sessions import SessionAuthenticator
from tenantauth.security.two_factor import TwoFactorEngine
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import Role, Session, User, utc_now

logger = logging.getLogger(__name__)


class UserManager:
    """Account lifecycle on top of the credential store."""

    def __init__(
        self,
        store: CredentialStore,
        authenticator: SessionAuthenticator,
        limiter: Optional[LockoutLimiter] = None,
        two_factor: Optional[TwoFactorEngine] = None,
        audit: Optional[AuditTrail] = None,
        min_password_length: int = 8,
    ):
        """Initialize user manager.

        Args:
            store: Credential store
            authenticator: Session issuer and password hasher
            limiter: Lockout limiter consulted at sign-in
            two_factor: Engine used to check second factors at sign-in
            audit: Audit trail for account events
            min_password_length: Shortest accepted password
        """
        self.store = store
        self.authenticator = authenticator
        self.limiter = limiter or LockoutLimiter(store)
        self.two_factor = two_factor
        self.audit = audit
        self.min_password_length = min_password_length

    def _audit(self, action: AuditAction, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log_event(action, AuditResource.USER, **kwargs)

    def validate_password(self, password: str) -> Tuple[bool, List[str]]:
        """Check a password against the policy.

        Returns:
            Tuple of (is_valid, list_of_errors)
        """
        errors = []
        if len(password) < self.min_password_length:
            errors.append(f"Password must be at least {self.min_password_length} characters")
        if password.strip() != password:
            errors.append("Password must not start or end with whitespace")
        return len(errors) == 0, errors

    def create_user(
        self,
        email: str,
        password: str,
        name: str = "",
        role: Role = Role.USER,
    ) -> User:
        """Register a new account.

        Raises:
            ValueError: If the password does not meet the policy
            ConflictError: If the email is already registered
        """
        email = email.strip().lower()
        if self.store.get_user_by_email(email):
            raise ConflictError(f"Email '{email}' already registered")

        is_valid, errors = self.validate_password(password)
        if not is_valid:
            raise ValueError(f"Password validation failed: {'; '.join(errors)}")

        password_hash, salt = self.authenticator.hash_password(password)
        now = utc_now()
        user = User(
            user_id=f"user_{secrets.token_hex(8)}",
            email=email,
            name=name,
            password_hash=password_hash,
            role=role,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_user(user, salt)

        self._audit(
            AuditAction.USER_CREATE,
            user_id=user.user_id,
            resource_id=user.user_id,
            details={"role": user.role},
        )
        logger.info(f"Created user {user.user_id}")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        return self.store.list_users(limit=limit, offset=offset)

    def authenticate(
        self,
        email: str,
        password: str,
        totp_code: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, str, Session]:
        """Sign a user in.

        Args:
            email: Account email
            password: Plain text password
            totp_code: Second factor (TOTP or backup code) when 2FA is enabled
            ip_address: Client IP address
            user_agent: Client user agent

        Returns:
            Tuple of (user, session token, session)

        Raises:
            AuthenticationError: Unknown email, wrong password or inactive account
            RateLimitError: The account is locked, or this attempt locked it (``locked_now``)
            TwoFactorRequiredError: 2FA is enabled and no code was given
            ValidationFailedError: The second factor was rejected
        """
        credentials = self.store.get_user_credentials(email)
        if credentials is None:
            self._audit(
                AuditAction.LOGIN_FAILED,
                details={"reason": "unknown_email"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AuthenticationError("Invalid email or password")

        user, salt = credentials

        is_locked, locked_until = self.limiter.is_user_locked(user.user_id)
        if is_locked:
            result = RateLimitResult(
                allowed=False,
                remaining=0,
                is_locked=True,
                locked_until=locked_until,
                reset_at=locked_until,
            )
            raise RateLimitError(get_rate_limit_error_message(result), result)

        if not self.authenticator.verify_password(password, user.password_hash, salt):
            self._audit(
                AuditAction.LOGIN_FAILED,
                user_id=user.user_id,
                details={"reason": "bad_password"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AuthenticationError("Invalid email or password")

        if not user.is_active:
            raise AuthenticationError("User account is disabled")

        if self.two_factor is not None and self.two_factor.status(user.user_id).is_enabled:
            if not totp_code:
                raise TwoFactorRequiredError("Two-factor authentication required", user.user_id)

            verification = self.two_factor.verify(user.user_id, totp_code)
            if not verification.is_valid:
                result = verification.rate_limit
                if result is not None and result.is_locked:
                    raise RateLimitError(
                        get_rate_limit_error_message(result), result, locked_now=True
                    )
                raise ValidationFailedError(
                    get_rate_limit_error_message(result) if result else "Invalid verification code"
                )

        token, session = self.authenticator.create_session(
            user, ip_address=ip_address, user_agent=user_agent
        )
        self._audit(
            AuditAction.LOGIN,
            user_id=user.user_id,
            details={"session_id": session.session_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(f"User authenticated: {user.user_id}")
        return user, token, session

    def resolve_session(self, token: Optional[str]) -> Optional[User]:
        """User behind a session token, or None if it does not resolve to an active user."""
        if not token:
            return None
        try:
            token_data = self.authenticator.verify_token(token)
        except AuthenticationError as e:
            logger.debug(f"Session token rejected: {e}")
            return None

        user = self.store.get_user(token_data.user_id)
        if user is None or not user.is_active:
            return None
        return user

    def logout(self, session_id: str, user_id: Optional[str] = None) -> None:
        self.authenticator.revoke_session(session_id)
        self._audit(AuditAction.LOGOUT, user_id=user_id, details={"session_id": session_id})

    def update_user_role(self, user_id: str, role: Role, changed_by: Optional[str] = None) -> User:
        """Change a user's global role.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        if not self.store.update_user_fields(user_id, role=Role(role).value):
            raise UserNotFoundError(user_id)

        self._audit(
            AuditAction.USER_UPDATE,
            user_id=changed_by,
            resource_id=user_id,
            details={"role": Role(role).value},
        )
        return self.store.get_user(user_id)

    def deactivate_user(self, user_id: str, changed_by: Optional[str] = None) -> User:
        """Disable sign-in for a user and end their sessions.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        if not self.store.update_user_fields(user_id, is_active=False):
            raise UserNotFoundError(user_id)

        self.authenticator.revoke_all_user_sessions(user_id)
        self._audit(AuditAction.USER_DEACTIVATE, user_id=changed_by, resource_id=user_id)
        return self.store.get_user(user_id)
