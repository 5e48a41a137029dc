"""Session tokens and password hashing.

A session is a signed JWT carried in the session cookie plus a ``sessions``
row holding the token's hash. A token only resolves while its row is active
and unexpired, so revoking the row logs the browser out immediately.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple

import jwt
from pydantic import BaseModel

from tenantauth.security.errors import AuthenticationError
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import Session, SessionStatus, User, utc_now

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 100_000


class TokenData(BaseModel):
    """Decoded session token."""

    user_id: str
    session_id: str
    role: str
    exp: datetime
    iat: Optional[datetime] = None


class SessionAuthenticator:
    """JWT session issuance backed by server-side session records."""

    def __init__(
        self,
        store: CredentialStore,
        secret_key: Optional[str] = None,
        algorithm: str = "HS256",
        session_ttl_hours: int = 24 * 7,
    ):
        """Initialize the authenticator.

        Args:
            store: Credential store for session rows
            secret_key: Signing key (random per process if None)
            algorithm: JWT algorithm
            session_ttl_hours: Lifetime of a session
        """
        self.store = store
        self.secret_key = secret_key or secrets.token_hex(32)
        self.algorithm = algorithm
        self.session_ttl = timedelta(hours=session_ttl_hours)

    def hash_password(self, password: str, salt: Optional[str] = None) -> Tuple[str, str]:
        """Hash a password with PBKDF2-SHA256.

        Args:
            password: Plain text password
            salt: Salt for hashing (generated if None)

        Returns:
            Tuple of (password_hash, salt)
        """
        if salt is None:
            salt = secrets.token_hex(16)

        password_hash = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS
        ).hex()
        return password_hash, salt

    def verify_password(self, password: str, password_hash: str, salt: str) -> bool:
        computed_hash, _ = self.hash_password(password, salt)
        return secrets.compare_digest(computed_hash, password_hash)

    def _hash_token(self, token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def create_session(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[str, Session]:
        """Issue a session token for ``user``.

        Returns:
            Tuple of (token, session record)
        """
        now = utc_now()
        expires_at = now + self.session_ttl
        session_id = f"sess_{secrets.token_hex(16)}"

        payload = {
            "user_id": user.user_id,
            "session_id": session_id,
            "role": user.role,
            "iat": now,
            "nbf": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

        session = Session(
            session_id=session_id,
            user_id=user.user_id,
            token_hash=self._hash_token(token),
            created_at=now,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
            status=SessionStatus.ACTIVE,
        )
        self.store.save_session(session)
        return token, session

    def verify_token(self, token: str) -> TokenData:
        """Decode a session token and check its backing session.

        Raises:
            AuthenticationError: If the token is invalid, expired or revoked
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Session has expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid session token: {e}")

        session_id = payload.get("session_id")
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            raise AuthenticationError("Unknown session")
        if session.status != SessionStatus.ACTIVE.value:
            raise AuthenticationError("Session has been revoked")
        if session.expires_at <= utc_now():
            raise AuthenticationError("Session has expired")
        if not secrets.compare_digest(session.token_hash, self._hash_token(token)):
            raise AuthenticationError("Session token mismatch")

        return TokenData(
            user_id=payload["user_id"],
            session_id=session_id,
            role=payload.get("role", "user"),
            exp=datetime.fromtimestamp(payload["exp"], tz=session.expires_at.tzinfo),
            iat=(
                datetime.fromtimestamp(payload["iat"], tz=session.expires_at.tzinfo)
                if payload.get("iat")
                else None
            ),
        )

    def revoke_session(self, session_id: str) -> None:
        self.store.revoke_session(session_id)
        logger.info(f"Revoked session: {session_id}")

    def revoke_all_user_sessions(self, user_id: str) -> int:
        revoked = self.store.revoke_all_user_sessions(user_id)
        logger.info(f"Revoked {revoked} sessions for user: {user_id}")
        return revoked
