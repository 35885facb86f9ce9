"""
core/mailer.py -- Outbound transactional email (password reset links).

The auth core hands over (recipient, raw_token) and never waits on the
result: the API layer schedules send_password_reset_email() as a background
task after the response is written. Delivery failures are logged for
operators and never surface to the client, which always sees the same
generic "if the address exists, a link was sent" message.

Without SMTP_HOST configured the mailer runs in dev mode: it logs that a
message would have been sent, but never the link itself, because the link
carries the raw reset token.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from urllib.parse import urlencode

from core.config import Settings

logger = logging.getLogger("marketplace.mailer")

_RESET_SUBJECT = "Reset your password"


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def describe_lifetime(seconds: int) -> str:
    """Render a TTL for humans: "1 hour", "90 minutes", "2 days"."""
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size and seconds % size == 0:
            count = seconds // size
            return f"{count} {unit}" if count == 1 else f"{count} {unit}s"
    return f"{seconds} seconds" if seconds != 1 else "1 second"


class Mailer:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.sender = settings.smtp_from
        self.frontend_url = settings.frontend_url.rstrip("/")
        self.link_lifetime = describe_lifetime(settings.reset_token_ttl_seconds)

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def reset_link(self, raw_token: str) -> str:
        return f"{self.frontend_url}/reset-password?{urlencode({'token': raw_token})}"

    def build_reset_message(self, to: str, raw_token: str) -> EmailMessage:
        link = self.reset_link(raw_token)
        msg = EmailMessage()
        msg["Subject"] = _RESET_SUBJECT
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(
            "You requested a password reset.\n\n"
            f"Open this link to choose a new password: {link}\n\n"
            f"This link expires in {self.link_lifetime}.\n"
            "If you did not request this, you can safely ignore this email.\n"
        )
        msg.add_alternative(
            "<p>You requested a password reset.</p>"
            f'<p><a href="{link}">Click here to reset your password</a></p>'
            f"<p>This link expires in {self.link_lifetime}.</p>"
            "<p>If you did not request this, you can safely ignore this email.</p>",
            subtype="html",
        )
        return msg

    def send_password_reset_email(self, to: str, raw_token: str) -> bool:
        """Send the reset link. Returns False (and logs) on any delivery failure."""
        if not self.is_configured:
            logger.info("Mailer in dev mode; reset email for %s not sent", redact_email(to))
            return True

        msg = self.build_reset_message(to, raw_token)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send reset email to %s", redact_email(to))
            return False
        logger.info("Sent reset email to %s", redact_email(to))
        return True
