"""Two-factor authentication (TOTP with single-use backup codes).

Per-user lifecycle::

    absent --setup--> provisioned --enable(code)--> enabled
                          ^                            |
                          +-------- setup <-- disable -+

``disable`` wipes the secret and backup codes, so turning 2FA back on always
goes through a fresh ``setup``. Every code check (enable and verify) is
metered by the :class:`~tenantauth.security.rate_limit.LockoutLimiter`.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import string
import struct
import time
import urllib.parse
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO
from typing import List, Optional

import qrcode

from tenantauth.core.config import Config
from tenantauth.security.errors import RateLimitError, TwoFactorStateError
from tenantauth.security.rate_limit import (
    TWO_FA_RATE_LIMIT,
    LockoutLimiter,
    RateLimitConfig,
    RateLimitResult,
    get_rate_limit_error_message,
)
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import TwoFactorAuth, utc_now

logger = logging.getLogger(__name__)

BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


class TOTPGenerator:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1)."""

    def __init__(self, secret: Optional[str] = None, digits: int = 6, interval: int = 30):
        """Initialize TOTP generator.

        Args:
            secret: Base32-encoded secret (generated if None)
            digits: Number of digits in OTP (default: 6)
            interval: Time step in seconds (default: 30)
        """
        self.secret = secret or self.generate_secret()
        self.digits = digits
        self.interval = interval

    @staticmethod
    def generate_secret(length: int = 20) -> str:
        """Generate a random base32-encoded secret.

        Args:
            length: Length of secret in bytes

        Returns:
            Base32-encoded secret without padding
        """
        random_bytes = secrets.token_bytes(length)
        return base64.b32encode(random_bytes).decode("utf-8").rstrip("=")

    def _get_counter(self, timestamp: Optional[float] = None) -> int:
        if timestamp is None:
            timestamp = time.time()
        return int(timestamp // self.interval)

    def _hotp(self, counter: int) -> str:
        """HOTP value for one counter (RFC 4226 dynamic truncation)."""
        secret_bytes = base64.b32decode(
            self.secret.upper() + "=" * ((8 - len(self.secret) % 8) % 8)
        )
        counter_bytes = struct.pack(">Q", counter)
        digest = hmac.new(secret_bytes, counter_bytes, hashlib.sha1).digest()

        offset = digest[-1] & 0x0F
        code = struct.unpack(">I", digest[offset : offset + 4])[0]
        code &= 0x7FFFFFFF
        code %= 10**self.digits

        return str(code).zfill(self.digits)

    def generate(self, timestamp: Optional[float] = None) -> str:
        """Code for the time step containing ``timestamp`` (now if None)."""
        return self._hotp(self._get_counter(timestamp))

    def verify(self, otp: str, timestamp: Optional[float] = None, window: int = 2) -> bool:
        """Verify a TOTP.

        Args:
            otp: Code to verify
            timestamp: Unix timestamp (current time if None)
            window: Number of steps accepted before and after the current one

        Returns:
            True if the code matches any step in the window
        """
        if len(otp) != self.digits or not otp.isascii() or not otp.isdigit():
            return False

        counter = self._get_counter(timestamp)
        for i in range(-window, window + 1):
            if secrets.compare_digest(self._hotp(counter + i), otp):
                return True
        return False

    def get_provisioning_uri(self, account_name: str, issuer: str) -> str:
        """``otpauth://`` URI for authenticator apps.

        Args:
            account_name: Label shown in the app, usually the email
            issuer: Service name

        Returns:
            otpauth:// URI
        """
        params = {
            "secret": self.secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": str(self.digits),
            "period": str(self.interval),
        }
        query = urllib.parse.urlencode(params)
        label = urllib.parse.quote(f"{issuer}:{account_name}")
        return f"otpauth://totp/{label}?{query}"


def render_qr_data_url(data: str) -> str:
    """Render ``data`` as a QR code PNG and return it as a ``data:`` URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def generate_backup_codes(count: int = 10, length: int = 8) -> List[str]:
    """Random upper-case alphanumeric single-use codes."""
    return [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(length))
        for _ in range(count)
    ]


def normalize_code(code: str) -> Optional[str]:
    """Strip whitespace and upper-case; None if the result cannot be a code."""
    cleaned = "".join(code.split()).upper()
    if not cleaned or not cleaned.isascii() or not cleaned.isalnum():
        return None
    return cleaned


@dataclass
class TwoFactorSetup:
    """Material shown to the user once, at setup."""

    secret: str
    provisioning_uri: str
    qr_code_url: str
    backup_codes: List[str]


@dataclass
class TwoFactorVerification:
    """Outcome of an enable or verify call."""

    is_valid: bool
    backup_code_used: bool = False
    rate_limit: Optional[RateLimitResult] = None


@dataclass
class TwoFactorStatus:
    """What a user may learn about their own enrolment."""

    is_enabled: bool
    has_backup_codes: bool
    backup_codes_count: int


class TwoFactorEngine:
    """Provision, enable, verify and disable TOTP for users."""

    def __init__(
        self,
        store: CredentialStore,
        limiter: Optional[LockoutLimiter] = None,
        issuer: str = "SaaS App",
        window: int = 2,
        backup_code_count: int = 10,
        backup_code_length: int = 8,
        rate_limit: RateLimitConfig = TWO_FA_RATE_LIMIT,
    ):
        """Initialize the engine.

        Args:
            store: Credential store
            limiter: Attempt limiter (one is created over ``store`` if None)
            issuer: Issuer name embedded in provisioning URIs
            window: Accepted TOTP steps either side of now
            backup_code_count: Number of backup codes issued at setup
            backup_code_length: Characters per backup code
            rate_limit: Attempt policy for code checks
        """
        self.store = store
        self.limiter = limiter or LockoutLimiter(store)
        self.issuer = issuer
        self.window = window
        self.backup_code_count = backup_code_count
        self.backup_code_length = backup_code_length
        self.rate_limit = rate_limit

    @classmethod
    def from_config(
        cls,
        store: CredentialStore,
        config: Config,
        limiter: Optional[LockoutLimiter] = None,
        rate_limit: RateLimitConfig = TWO_FA_RATE_LIMIT,
    ) -> "TwoFactorEngine":
        return cls(
            store,
            limiter=limiter,
            issuer=config.get("two_factor.issuer", "SaaS App"),
            window=int(config.get("two_factor.window", 2)),
            backup_code_count=int(config.get("two_factor.backup_code_count", 10)),
            backup_code_length=int(config.get("two_factor.backup_code_length", 8)),
            rate_limit=rate_limit,
        )

    def setup(self, user_id: str, email: str) -> TwoFactorSetup:
        """Provision a new secret and backup codes (not yet enabled).

        Raises:
            TwoFactorStateError: If 2FA is already enabled for the user
        """
        existing = self.store.get_two_factor(user_id)
        if existing is not None and existing.is_enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled")

        totp = TOTPGenerator()
        backup_codes = generate_backup_codes(self.backup_code_count, self.backup_code_length)
        now = utc_now()

        self.store.save_two_factor(
            TwoFactorAuth(
                user_id=user_id,
                secret=totp.secret,
                backup_codes=backup_codes,
                is_enabled=False,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
        )

        uri = totp.get_provisioning_uri(email, self.issuer)
        logger.info(f"Provisioned two-factor secret for user {user_id}")
        return TwoFactorSetup(
            secret=totp.secret,
            provisioning_uri=uri,
            qr_code_url=render_qr_data_url(uri),
            backup_codes=list(backup_codes),
        )

    def _ensure_allowed(self, user_id: str, now: datetime) -> None:
        result = self.limiter.check_rate_limit(user_id, self.rate_limit, now)
        if not result.allowed:
            raise RateLimitError(get_rate_limit_error_message(result, now), result)

    def _fail(self, user_id: str, now: datetime) -> TwoFactorVerification:
        result = self.limiter.record_failed_attempt(user_id, self.rate_limit, now)
        return TwoFactorVerification(is_valid=False, rate_limit=result)

    def _succeed(self, user_id: str, backup_code_used: bool = False) -> TwoFactorVerification:
        self.limiter.reset_attempts(user_id)
        return TwoFactorVerification(is_valid=True, backup_code_used=backup_code_used)

    def enable(
        self, user_id: str, code: str, now: Optional[datetime] = None
    ) -> TwoFactorVerification:
        """Turn on 2FA after the user proves they hold the provisioned secret.

        Raises:
            RateLimitError: If attempts are exhausted or the account is locked
            TwoFactorStateError: If there is no provisioned secret, or 2FA is already on
        """
        now = now or utc_now()
        self._ensure_allowed(user_id, now)

        record = self.store.get_two_factor(user_id)
        if record is None or not record.secret:
            raise TwoFactorStateError("Two-factor authentication has not been set up")
        if record.is_enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled")

        candidate = normalize_code(code)
        totp = TOTPGenerator(secret=record.secret)
        if candidate is None or not totp.verify(candidate, now.timestamp(), self.window):
            logger.info(f"Rejected two-factor enable code for user {user_id}")
            return self._fail(user_id, now)

        self.store.set_two_factor_enabled(user_id, True)
        logger.info(f"Two-factor authentication enabled for user {user_id}")
        return self._succeed(user_id)

    def verify(
        self, user_id: str, code: str, now: Optional[datetime] = None
    ) -> TwoFactorVerification:
        """Check a TOTP or backup code for a user with 2FA enabled.

        A matching backup code is consumed. Users without an enabled record
        always fail, and the failure is counted like any other. Repeated
        guesses against an account that never enrolled will therefore lock it
        too, so callers must have authenticated the user first.

        Raises:
            RateLimitError: If attempts are exhausted or the account is locked
        """
        now = now or utc_now()
        self._ensure_allowed(user_id, now)

        record = self.store.get_two_factor(user_id)
        candidate = normalize_code(code)
        if record is None or not record.is_enabled or candidate is None:
            return self._fail(user_id, now)

        if self.store.consume_backup_code(user_id, candidate):
            logger.info(f"Backup code used by user {user_id}")
            return self._succeed(user_id, backup_code_used=True)

        if record.secret and TOTPGenerator(secret=record.secret).verify(
            candidate, now.timestamp(), self.window
        ):
            return self._succeed(user_id)

        return self._fail(user_id, now)

    def disable(self, user_id: str) -> bool:
        """Turn 2FA off and discard the secret and backup codes.

        Returns:
            True if the user had a 2FA record
        """
        record = self.store.get_two_factor(user_id)
        if record is None:
            return False

        self.store.save_two_factor(
            record.model_copy(
                update={
                    "secret": None,
                    "backup_codes": [],
                    "is_enabled": False,
                    "updated_at": utc_now(),
                }
            )
        )
        logger.info(f"Two-factor authentication disabled for user {user_id}")
        return True

    def status(self, user_id: str) -> TwoFactorStatus:
        record = self.store.get_two_factor(user_id)
        if record is None:
            return TwoFactorStatus(is_enabled=False, has_backup_codes=False, backup_codes_count=0)
        count = len(record.backup_codes) if record.is_enabled else 0
        return TwoFactorStatus(
            is_enabled=record.is_enabled,
            has_backup_codes=count > 0,
            backup_codes_count=count,
        )

    def regenerate_backup_codes(self, user_id: str) -> List[str]:
        """Replace all backup codes of an enabled record.

        Raises:
            TwoFactorStateError: If 2FA is not enabled
        """
        record = self.store.get_two_factor(user_id)
        if record is None or not record.is_enabled:
            raise TwoFactorStateError("Two-factor authentication is not enabled")

        codes = generate_backup_codes(self.backup_code_count, self.backup_code_length)
        self.store.save_two_factor(
            record.model_copy(update={"backup_codes": codes, "updated_at": utc_now()})
        )
        logger.info(f"Regenerated backup codes for user {user_id}")
        return list(codes)
