"""SQLite persistence for tenantauth.

``CredentialStore`` is the only component that touches the database. Each public
method runs in its own connection and transaction. Operations that must check
and write several rows atomically (organization creation, owner-count guards,
invite acceptance, backup-code consumption) take a write lock up front with
``BEGIN IMMEDIATE``.
"""

import json
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional, Tuple, Union

from tenantauth.security.errors import ConflictError, MembershipError
from tenantauth.storage.models import (
    ApiKey,
    AuditLogEntry,
    MemberDetail,
    Organization,
    OrganizationInvite,
    OrganizationMember,
    OrganizationRole,
    Session,
    SessionStatus,
    TwoFactorAuth,
    User,
    utc_now,
)

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class CredentialStore:
    """SQLite database for users, organizations, keys, 2FA and audit records."""

    API_KEY_COLUMNS = ("name", "permissions", "is_active", "expires_at")
    ORGANIZATION_COLUMNS = ("name", "description", "website", "logo", "is_active")

    def __init__(self, db_path: Union[str, Path] = "data/tenantauth.db"):
        """Initialize the store and create the schema if needed.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def _get_connection(self, immediate: bool = False):
        """Get a connection that commits on success and rolls back on error.

        Args:
            immediate: Take the database write lock before the first statement
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Create tables and indexes."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    email TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    password_hash TEXT NOT NULL,
                    password_salt TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    login_attempts INTEGER NOT NULL DEFAULT 0,
                    last_failed_attempt TEXT,
                    locked_until TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    ip_address TEXT,
                    user_agent TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS organizations (
                    organization_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    slug TEXT UNIQUE NOT NULL,
                    description TEXT,
                    website TEXT,
                    logo TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS organization_members (
                    member_id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'member',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    joined_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (organization_id, user_id),
                    FOREIGN KEY (organization_id) REFERENCES organizations(organization_id),
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS organization_invites (
                    invite_id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'member',
                    invited_by TEXT NOT NULL,
                    token TEXT UNIQUE NOT NULL,
                    expires_at TEXT NOT NULL,
                    is_accepted INTEGER NOT NULL DEFAULT 0,
                    accepted_at TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (organization_id) REFERENCES organizations(organization_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    key_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    hashed_key TEXT UNIQUE NOT NULL,
                    user_id TEXT NOT NULL,
                    organization_id TEXT,
                    permissions TEXT NOT NULL DEFAULT '[]',
                    expires_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_used_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS two_factor_auth (
                    user_id TEXT PRIMARY KEY,
                    secret TEXT,
                    backup_codes TEXT NOT NULL DEFAULT '[]',
                    is_enabled INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    log_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    user_id TEXT,
                    organization_id TEXT,
                    action TEXT NOT NULL,
                    resource TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT DEFAULT '{}',
                    ip_address TEXT,
                    user_agent TEXT
                )
            """
            )

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_members_user ON organization_members(user_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_invites_org "
                "ON organization_invites(organization_id)"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_user ON api_keys(user_id)")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_api_keys_org ON api_keys(organization_id)"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_org ON audit_log(organization_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at)")

        logger.debug(f"Credential store initialized at {self.db_path}")

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def insert_user(self, user: User, salt: str) -> None:
        """Insert a new user.

        Raises:
            ConflictError: If the email is already registered
        """
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        user_id, email, name, password_hash, password_salt, role,
                        is_active, login_attempts, last_failed_attempt, locked_until,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        user.user_id,
                        user.email,
                        user.name,
                        user.password_hash,
                        salt,
                        user.role,
                        int(user.is_active),
                        user.login_attempts,
                        _iso(user.last_failed_attempt),
                        _iso(user.locked_until),
                        user.created_at.isoformat(),
                        user.updated_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Email '{user.email}' already registered") from e

    def get_user(self, user_id: str) -> Optional[User]:
        """Get a user by ID."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get a user by email address."""
        result = self.get_user_credentials(email)
        return result[0] if result else None

    def get_user_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        """Get a user and their password salt by email."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (email.strip().lower(),)
            ).fetchone()
            if row:
                return self._row_to_user(row), row["password_salt"]
        return None

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        """List users, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC LIMIT ? OFFSET ?", (limit, offset)
            ).fetchall()
            return [self._row_to_user(row) for row in rows]

    def update_user_fields(self, user_id: str, **fields: Any) -> bool:
        """Update role, name or active flag of a user.

        Returns:
            True if a row was updated
        """
        allowed = {"role", "name", "is_active"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update user fields: {sorted(unknown)}")
        if not fields:
            return False

        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE users SET {assignments}, updated_at = ? WHERE user_id = ?",
                (*values, utc_now().isoformat(), user_id),
            )
            return cursor.rowcount > 0

    def update_rate_limit_state(
        self,
        user_id: str,
        login_attempts: int,
        last_failed_attempt: Optional[datetime],
        locked_until: Optional[datetime],
    ) -> None:
        """Overwrite the attempt counter and lockout columns of a user."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE users
                SET login_attempts = ?, last_failed_attempt = ?, locked_until = ?, updated_at = ?
                WHERE user_id = ?
            """,
                (
                    login_attempts,
                    _iso(last_failed_attempt),
                    _iso(locked_until),
                    utc_now().isoformat(),
                    user_id,
                ),
            )

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            role=row["role"],
            is_active=bool(row["is_active"]),
            login_attempts=row["login_attempts"] or 0,
            last_failed_attempt=_dt(row["last_failed_attempt"]),
            locked_until=_dt(row["locked_until"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def save_session(self, session: Session) -> None:
        """Insert or replace a session."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sessions (
                    session_id, user_id, token_hash, created_at, expires_at,
                    ip_address, user_agent, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    session.session_id,
                    session.user_id,
                    session.token_hash,
                    session.created_at.isoformat(),
                    session.expires_at.isoformat(),
                    session.ip_address,
                    session.user_agent,
                    session.status,
                ),
            )

    def get_session(self, session_id: str) -> Optional[Session]:
        """Get a session by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            if row:
                return Session(
                    session_id=row["session_id"],
                    user_id=row["user_id"],
                    token_hash=row["token_hash"],
                    created_at=_dt(row["created_at"]),
                    expires_at=_dt(row["expires_at"]),
                    ip_address=row["ip_address"],
                    user_agent=row["user_agent"],
                    status=SessionStatus(row["status"]),
                )
        return None

    def revoke_session(self, session_id: str) -> None:
        """Mark a session revoked."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE sessions SET status = 'revoked' WHERE session_id = ?", (session_id,)
            )

    def revoke_all_user_sessions(self, user_id: str) -> int:
        """Revoke every active session of a user.

        Returns:
            Number of sessions revoked
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET status = 'revoked' WHERE user_id = ? AND status = 'active'",
                (user_id,),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def insert_api_key(self, api_key: ApiKey) -> None:
        """Insert a new API key record."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO api_keys (
                    key_id, name, hashed_key, user_id, organization_id, permissions,
                    expires_at, is_active, last_used_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    api_key.key_id,
                    api_key.name,
                    api_key.hashed_key,
                    api_key.user_id,
                    api_key.organization_id,
                    json.dumps(api_key.permissions),
                    _iso(api_key.expires_at),
                    int(api_key.is_active),
                    _iso(api_key.last_used_at),
                    api_key.created_at.isoformat(),
                    api_key.updated_at.isoformat(),
                ),
            )

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        """Get an API key by ID."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM api_keys WHERE key_id = ?", (key_id,)).fetchone()
            return self._row_to_api_key(row) if row else None

    def get_api_key_by_hash(self, hashed_key: str) -> Optional[ApiKey]:
        """Get an active API key by the hash of its secret."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE hashed_key = ? AND is_active = 1", (hashed_key,)
            ).fetchone()
            return self._row_to_api_key(row) if row else None

    def list_api_keys_by_user(self, user_id: str) -> List[ApiKey]:
        """All API keys owned by a user, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM api_keys WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
            ).fetchall()
            return [self._row_to_api_key(row) for row in rows]

    def list_api_keys_by_organization(self, organization_id: str) -> List[ApiKey]:
        """All API keys scoped to an organization, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM api_keys WHERE organization_id = ? ORDER BY created_at DESC",
                (organization_id,),
            ).fetchall()
            return [self._row_to_api_key(row) for row in rows]

    def update_api_key(self, key_id: str, **fields: Any) -> bool:
        """Update mutable API key columns.

        Returns:
            True if a row was updated
        """
        unknown = set(fields) - set(self.API_KEY_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update API key fields: {sorted(unknown)}")
        if not fields:
            return self.get_api_key(key_id) is not None

        values: List[Any] = []
        for name, value in fields.items():
            if name == "permissions":
                values.append(json.dumps(list(value)))
            elif name == "is_active":
                values.append(int(value))
            elif name == "expires_at":
                values.append(_iso(value))
            else:
                values.append(value)

        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE api_keys SET {assignments}, updated_at = ? WHERE key_id = ?",
                (*values, utc_now().isoformat(), key_id),
            )
            return cursor.rowcount > 0

    def replace_api_key_hash(self, key_id: str, hashed_key: str) -> bool:
        """Swap the stored hash of a key in place.

        Returns:
            True if the key existed
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE api_keys SET hashed_key = ?, updated_at = ? WHERE key_id = ?",
                (hashed_key, utc_now().isoformat(), key_id),
            )
            return cursor.rowcount > 0

    def touch_api_key(self, key_id: str, used_at: datetime) -> None:
        """Record the last-used time of a key."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE key_id = ?",
                (used_at.isoformat(), key_id),
            )

    def delete_api_key(self, key_id: str) -> bool:
        """Delete an API key.

        Returns:
            True if a row was deleted
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM api_keys WHERE key_id = ?", (key_id,))
            return cursor.rowcount > 0

    def _row_to_api_key(self, row: sqlite3.Row) -> ApiKey:
        return ApiKey(
            key_id=row["key_id"],
            name=row["name"],
            hashed_key=row["hashed_key"],
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            permissions=json.loads(row["permissions"] or "[]"),
            expires_at=_dt(row["expires_at"]),
            is_active=bool(row["is_active"]),
            last_used_at=_dt(row["last_used_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorAuth]:
        """Get the 2FA record of a user."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_auth WHERE user_id = ?", (user_id,)
            ).fetchone()
            return self._row_to_two_factor(row) if row else None

    def save_two_factor(self, record: TwoFactorAuth) -> None:
        """Insert or overwrite the single 2FA record of a user."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO two_factor_auth (
                    user_id, secret, backup_codes, is_enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    secret = excluded.secret,
                    backup_codes = excluded.backup_codes,
                    is_enabled = excluded.is_enabled,
                    updated_at = excluded.updated_at
            """,
                (
                    record.user_id,
                    record.secret,
                    json.dumps(record.backup_codes),
                    int(record.is_enabled),
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )

    def set_two_factor_enabled(self, user_id: str, enabled: bool) -> bool:
        """Flip the enabled flag. Returns True if a record existed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE two_factor_auth SET is_enabled = ?, updated_at = ? WHERE user_id = ?",
                (int(enabled), utc_now().isoformat(), user_id),
            )
            return cursor.rowcount > 0

    def consume_backup_code(self, user_id: str, code: str) -> bool:
        """Remove ``code`` from an enabled record's backup codes.

        The read and the write share one locked transaction, so a code can be
        consumed at most once even under concurrent requests.

        Returns:
            True if the code was present and has been removed
        """
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT backup_codes FROM two_factor_auth WHERE user_id = ? AND is_enabled = 1",
                (user_id,),
            ).fetchone()
            if not row:
                return False

            codes: List[str] = json.loads(row["backup_codes"] or "[]")
            match = next((c for c in codes if secrets.compare_digest(c, code)), None)
            if match is None:
                return False

            codes.remove(match)
            conn.execute(
                "UPDATE two_factor_auth SET backup_codes = ?, updated_at = ? WHERE user_id = ?",
                (json.dumps(codes), utc_now().isoformat(), user_id),
            )
            return True

    def _row_to_two_factor(self, row: sqlite3.Row) -> TwoFactorAuth:
        return TwoFactorAuth(
            user_id=row["user_id"],
            secret=row["secret"],
            backup_codes=json.loads(row["backup_codes"] or "[]"),
            is_enabled=bool(row["is_enabled"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Organizations and membership
    # ------------------------------------------------------------------

    def create_organization(self, organization: Organization, owner: OrganizationMember) -> None:
        """Insert an organization and its owner membership in one transaction.

        Raises:
            ConflictError: If the slug is already taken
        """
        try:
            with self._get_connection(immediate=True) as conn:
                conn.execute(
                    """
                    INSERT INTO organizations (
                        organization_id, name, slug, description, website, logo,
                        is_active, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        organization.organization_id,
                        organization.name,
                        organization.slug,
                        organization.description,
                        organization.website,
                        organization.logo,
                        int(organization.is_active),
                        organization.created_at.isoformat(),
                        organization.updated_at.isoformat(),
                    ),
                )
                self._insert_member(conn, owner)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Organization slug '{organization.slug}' is already taken") from e

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        """Get an organization by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM organizations WHERE organization_id = ?", (organization_id,)
            ).fetchone()
            return self._row_to_organization(row) if row else None

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        """Get an organization by slug."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM organizations WHERE slug = ?", (slug,)).fetchone()
            return self._row_to_organization(row) if row else None

    def update_organization(self, organization_id: str, **fields: Any) -> bool:
        """Update mutable organization columns.

        Returns:
            True if a row was updated
        """
        unknown = set(fields) - set(self.ORGANIZATION_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update organization fields: {sorted(unknown)}")
        if not fields:
            return self.get_organization(organization_id) is not None

        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE organizations SET {assignments}, updated_at = ? WHERE organization_id = ?",
                (*values, utc_now().isoformat(), organization_id),
            )
            return cursor.rowcount > 0

    def delete_organization(self, organization_id: str) -> bool:
        """Delete an organization with its memberships and invites.

        Returns:
            True if the organization existed
        """
        with self._get_connection(immediate=True) as conn:
            conn.execute(
                "DELETE FROM organization_members WHERE organization_id = ?", (organization_id,)
            )
            conn.execute(
                "DELETE FROM organization_invites WHERE organization_id = ?", (organization_id,)
            )
            cursor = conn.execute(
                "DELETE FROM organizations WHERE organization_id = ?", (organization_id,)
            )
            return cursor.rowcount > 0

    def list_user_organizations(self, user_id: str) -> List[Tuple[Organization, str]]:
        """Organizations with an active membership for the user, with the user's role."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT o.*, m.role AS member_role
                FROM organizations o
                JOIN organization_members m ON m.organization_id = o.organization_id
                WHERE m.user_id = ? AND m.is_active = 1
                ORDER BY o.created_at
            """,
                (user_id,),
            ).fetchall()
            return [(self._row_to_organization(row), row["member_role"]) for row in rows]

    def add_member(self, member: OrganizationMember) -> None:
        """Insert a membership.

        Raises:
            ConflictError: If the user is already a member
        """
        try:
            with self._get_connection() as conn:
                self._insert_member(conn, member)
        except sqlite3.IntegrityError as e:
            raise ConflictError("User is already a member of this organization") from e

    def get_member(self, member_id: str) -> Optional[OrganizationMember]:
        """Get a membership by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM organization_members WHERE member_id = ?", (member_id,)
            ).fetchone()
            return self._row_to_member(row) if row else None

    def get_membership(
        self, organization_id: str, user_id: str, active_only: bool = True
    ) -> Optional[OrganizationMember]:
        """Get the membership of ``user_id`` in ``organization_id``."""
        query = "SELECT * FROM organization_members WHERE organization_id = ? AND user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        with self._get_connection() as conn:
            row = conn.execute(query, (organization_id, user_id)).fetchone()
            return self._row_to_member(row) if row else None

    def list_members(self, organization_id: str) -> List[MemberDetail]:
        """Members of an organization joined with user email and name."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT m.*, u.email AS email, u.name AS name
                FROM organization_members m
                LEFT JOIN users u ON u.user_id = m.user_id
                WHERE m.organization_id = ?
                ORDER BY m.joined_at
            """,
                (organization_id,),
            ).fetchall()
            return [
                MemberDetail(
                    **self._row_to_member(row).model_dump(),
                    email=row["email"],
                    name=row["name"],
                )
                for row in rows
            ]

    def change_member_role(
        self, organization_id: str, member_id: str, role: OrganizationRole
    ) -> Optional[OrganizationMember]:
        """Change a member's role, refusing to demote the last owner.

        Returns:
            The updated membership, or None if it does not exist in the organization

        Raises:
            MembershipError: If the change would leave the organization without an owner
        """
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM organization_members WHERE member_id = ? AND organization_id = ?",
                (member_id, organization_id),
            ).fetchone()
            if not row:
                return None

            is_owner = row["role"] == OrganizationRole.OWNER.value
            demoting_owner = is_owner and role != OrganizationRole.OWNER
            if demoting_owner and self._count_owners(conn, organization_id) <= 1:
                raise MembershipError("Cannot demote the last owner of the organization")

            now = utc_now().isoformat()
            conn.execute(
                "UPDATE organization_members SET role = ?, updated_at = ? WHERE member_id = ?",
                (OrganizationRole(role).value, now, member_id),
            )
            updated = conn.execute(
                "SELECT * FROM organization_members WHERE member_id = ?", (member_id,)
            ).fetchone()
            return self._row_to_member(updated)

    def remove_member(self, organization_id: str, member_id: str) -> bool:
        """Delete a membership, refusing to remove the last owner.

        Returns:
            True if the membership existed and was removed

        Raises:
            MembershipError: If the member is the organization's last owner
        """
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT role FROM organization_members WHERE member_id = ? AND organization_id = ?",
                (member_id, organization_id),
            ).fetchone()
            if not row:
                return False

            is_owner = row["role"] == OrganizationRole.OWNER.value
            if is_owner and self._count_owners(conn, organization_id) <= 1:
                raise MembershipError("Cannot remove the last owner of the organization")

            conn.execute("DELETE FROM organization_members WHERE member_id = ?", (member_id,))
            return True

    def _count_owners(self, conn: sqlite3.Connection, organization_id: str) -> int:
        row = conn.execute(
            """
            SELECT COUNT(*) AS owners FROM organization_members
            WHERE organization_id = ? AND role = 'owner' AND is_active = 1
        """,
            (organization_id,),
        ).fetchone()
        return row["owners"]

    def _insert_member(self, conn: sqlite3.Connection, member: OrganizationMember) -> None:
        conn.execute(
            """
            INSERT INTO organization_members (
                member_id, organization_id, user_id, role, is_active, joined_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
            (
                member.member_id,
                member.organization_id,
                member.user_id,
                member.role,
                int(member.is_active),
                member.joined_at.isoformat(),
                member.updated_at.isoformat(),
            ),
        )

    def _row_to_organization(self, row: sqlite3.Row) -> Organization:
        return Organization(
            organization_id=row["organization_id"],
            name=row["name"],
            slug=row["slug"],
            description=row["description"],
            website=row["website"],
            logo=row["logo"],
            is_active=bool(row["is_active"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def _row_to_member(self, row: sqlite3.Row) -> OrganizationMember:
        return OrganizationMember(
            member_id=row["member_id"],
            organization_id=row["organization_id"],
            user_id=row["user_id"],
            role=row["role"],
            is_active=bool(row["is_active"]),
            joined_at=_dt(row["joined_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    def insert_invite(self, invite: OrganizationInvite) -> None:
        """Insert an invite."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO organization_invites (
                    invite_id, organization_id, email, role, invited_by, token,
                    expires_at, is_accepted, accepted_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    invite.invite_id,
                    invite.organization_id,
                    invite.email,
                    invite.role,
                    invite.invited_by,
                    invite.token,
                    invite.expires_at.isoformat(),
                    int(invite.is_accepted),
                    _iso(invite.accepted_at),
                    invite.created_at.isoformat(),
                ),
            )

    def get_invite(self, invite_id: str) -> Optional[OrganizationInvite]:
        """Get an invite by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM organization_invites WHERE invite_id = ?", (invite_id,)
            ).fetchone()
            return self._row_to_invite(row) if row else None

    def get_invite_by_token(self, token: str) -> Optional[OrganizationInvite]:
        """Get an invite by token."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM organization_invites WHERE token = ?", (token,)
            ).fetchone()
            return self._row_to_invite(row) if row else None

    def list_invites(
        self, organization_id: str, include_accepted: bool = False
    ) -> List[OrganizationInvite]:
        """Invites of an organization, newest first."""
        query = "SELECT * FROM organization_invites WHERE organization_id = ?"
        if not include_accepted:
            query += " AND is_accepted = 0"
        query += " ORDER BY created_at DESC"
        with self._get_connection() as conn:
            rows = conn.execute(query, (organization_id,)).fetchall()
            return [self._row_to_invite(row) for row in rows]

    def delete_invite(self, invite_id: str) -> bool:
        """Delete an invite. Returns True if it existed."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM organization_invites WHERE invite_id = ?", (invite_id,)
            )
            return cursor.rowcount > 0

    def accept_invite(
        self, token: str, member: OrganizationMember, now: datetime
    ) -> Optional[OrganizationMember]:
        """Redeem an invite token into a membership.

        ``member`` supplies the new membership's id and user; its organization
        and role are taken from the invite.

        Returns:
            The created membership, or None if the token is unknown, already
            accepted, expired, or the user is already a member
        """
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM organization_invites WHERE token = ? AND is_accepted = 0",
                (token,),
            ).fetchone()
            if not row:
                return None

            invite = self._row_to_invite(row)
            if invite.is_expired(now):
                return None

            existing = conn.execute(
                "SELECT 1 FROM organization_members WHERE organization_id = ? AND user_id = ?",
                (invite.organization_id, member.user_id),
            ).fetchone()
            if existing:
                return None

            created = member.model_copy(
                update={
                    "organization_id": invite.organization_id,
                    "role": invite.role,
                    "joined_at": now,
                    "updated_at": now,
                }
            )
            self._insert_member(conn, created)
            conn.execute(
                """
                UPDATE organization_invites SET is_accepted = 1, accepted_at = ?
                WHERE invite_id = ?
            """,
                (now.isoformat(), invite.invite_id),
            )
            return created

    def _row_to_invite(self, row: sqlite3.Row) -> OrganizationInvite:
        return OrganizationInvite(
            invite_id=row["invite_id"],
            organization_id=row["organization_id"],
            email=row["email"],
            role=row["role"],
            invited_by=row["invited_by"],
            token=row["token"],
            expires_at=_dt(row["expires_at"]),
            is_accepted=bool(row["is_accepted"]),
            accepted_at=_dt(row["accepted_at"]),
            created_at=_dt(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def insert_audit_log(self, entry: AuditLogEntry) -> None:
        """Append an audit record."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    log_id, created_at, user_id, organization_id, action, resource,
                    resource_id, details, ip_address, user_agent
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    entry.log_id,
                    entry.created_at.isoformat(),
                    entry.user_id,
                    entry.organization_id,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    json.dumps(entry.details, default=str),
                    entry.ip_address,
                    entry.user_agent,
                ),
            )

    def get_audit_logs(
        self,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        actions: Optional[Iterable[str]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        """Query audit records, newest first."""
        query = "SELECT * FROM audit_log WHERE 1=1"
        params: List[Any] = []

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if organization_id:
            query += " AND organization_id = ?"
            params.append(organization_id)

        action_list = list(actions or [])
        if action_list:
            query += f" AND action IN ({', '.join('?' for _ in action_list)})"
            params.extend(action_list)

        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [
                AuditLogEntry(
                    log_id=row["log_id"],
                    created_at=_dt(row["created_at"]),
                    user_id=row["user_id"],
                    organization_id=row["organization_id"],
                    action=row["action"],
                    resource=row["resource"],
                    resource_id=row["resource_id"],
                    details=json.loads(row["details"] or "{}"),
                    ip_address=row["ip_address"],
                    user_agent=row["user_agent"],
                )
                for row in rows
            ]

    def count_audit_logs(self, user_id: Optional[str] = None) -> int:
        """Count audit records, optionally for one user."""
        with self._get_connection() as conn:
            if user_id:
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM audit_log WHERE user_id = ?", (user_id,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS total FROM audit_log").fetchone()
            return row["total"]
