"""Outbound email for organization invitations and security alerts."""

import asyncio
import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from datetime import datetime
from html import escape
from typing import Optional

from tenantauth.core.config import Config

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    """A rendered email ready for delivery."""

    to: str
    subject: str
    text: str
    html: str


class EmailNotifier:
    """SMTP sender. Delivery runs in the default executor."""

    def __init__(
        self,
        enabled: bool = False,
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        from_address: str = "noreply@localhost",
        use_tls: bool = True,
        app_url: str = "http://localhost:8000",
    ):
        self.enabled = enabled
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_address = from_address
        self.use_tls = use_tls
        self.app_url = app_url.rstrip("/")

    @classmethod
    def from_config(cls, config: Config) -> "EmailNotifier":
        return cls(
            enabled=bool(config.get("email.enabled", False)),
            smtp_host=config.get("email.smtp_host", "localhost"),
            smtp_port=int(config.get("email.smtp_port", 587)),
            smtp_user=config.get("email.smtp_user") or None,
            smtp_password=config.get("email.smtp_password") or None,
            from_address=config.get("email.from_address", "noreply@localhost"),
            use_tls=bool(config.get("email.use_tls", True)),
            app_url=config.get("email.app_url", "http://localhost:8000"),
        )

    def invitation_message(
        self, email: str, organization_name: str, role: str, token: str
    ) -> EmailMessage:
        """Render the invitation email for ``email``."""
        accept_url = f"{self.app_url}/api/invites/{token}/accept"
        text = f"""
You have been invited to join {organization_name} as {role}.

Accept the invitation: {accept_url}

This invitation expires in 7 days.
        """
        html = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <h2>Join {escape(organization_name)}</h2>
    <p>You have been invited to join <strong>{escape(organization_name)}</strong>
       as <strong>{escape(role)}</strong>.</p>
    <p><a href="{escape(accept_url)}">Accept the invitation</a></p>
    <p style="font-size: 12px; color: #6c757d;">This invitation expires in 7 days.</p>
</body>
</html>
        """
        return EmailMessage(
            to=email,
            subject=f"Invitation to join {organization_name}",
            text=text,
            html=html,
        )

    def welcome_message(self, email: str, name: str = "") -> EmailMessage:
        """Render the welcome email sent after signup."""
        greeting = f"Hello {name}," if name else "Hello,"
        dashboard_url = f"{self.app_url}/dashboard"
        text = f"""
{greeting}

Your account has been created. Sign in to get started: {dashboard_url}
        """
        html = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <h2>Welcome!</h2>
    <p>{escape(greeting)}</p>
    <p>Your account has been created.</p>
    <p><a href="{escape(dashboard_url)}">Go to the dashboard</a></p>
</body>
</html>
        """
        return EmailMessage(
            to=email, subject="Welcome! Your account is ready", text=text, html=html
        )

    def security_alert_message(
        self,
        email: str,
        name: str,
        action: str,
        timestamp: datetime,
        ip_address: Optional[str] = None,
    ) -> EmailMessage:
        """Render an alert about security-relevant account activity."""
        when = timestamp.strftime("%Y-%m-%d %H:%M:%S %Z").strip()
        lines = [f"Activity: {action}", f"Time: {when}"]
        if ip_address:
            lines.append(f"IP address: {ip_address}")
        details = "\n".join(lines)
        greeting = f"Hello {name}," if name else "Hello,"
        items = "".join(f"<li>{escape(line)}</li>" for line in lines)
        text = f"""
{greeting}

We noticed the following activity on your account:

{details}

If this was not you, change your password and review your two-factor settings.
        """
        html = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <h2 style="color: #dc3545;">Security alert</h2>
    <p>{escape(greeting)}</p>
    <p>We noticed the following activity on your account:</p>
    <ul>{items}</ul>
    <p>If this was not you, change your password and review your two-factor settings.</p>
</body>
</html>
        """
        return EmailMessage(
            to=email, subject="Security alert: account activity detected", text=text, html=html
        )

    async def send(self, message: EmailMessage) -> bool:
        """Deliver a message.

        Returns:
            True if sent, False if email delivery is disabled

        Raises:
            smtplib.SMTPException, OSError: If delivery fails
        """
        if not self.enabled:
            logger.debug(f"Email disabled; not sending '{message.subject}'")
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_address
        msg["To"] = message.to
        msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._send_smtp, msg)
        except Exception as e:
            logger.error(f"Failed to send email to {message.to}: {e}")
            raise

        logger.info(f"Sent email '{message.subject}' to {message.to}")
        return True

    async def send_invitation(
        self, email: str, organization_name: str, role: str, token: str
    ) -> bool:
        return await self.send(self.invitation_message(email, organization_name, role, token))

    async def send_welcome(self, email: str, name: str = "") -> bool:
        return await self.send(self.welcome_message(email, name))

    async def send_security_alert(
        self,
        email: str,
        name: str,
        action: str,
        timestamp: datetime,
        ip_address: Optional[str] = None,
    ) -> bool:
        return await self.send(
            self.security_alert_message(email, name, action, timestamp, ip_address)
        )

    async def deliver(self, message: EmailMessage) -> bool:
        """Send without raising.

        Returns:
            True if sent, False if disabled or delivery failed
        """
        try:
            return await self.send(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Email '{message.subject}' to {message.to} not delivered: {e}")
            return False

    def _send_smtp(self, msg: MIMEMultipart) -> None:
        """Send via SMTP (blocking)."""
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)
