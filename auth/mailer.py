"""
auth/mailer.py -- Password reset email delivery.

Renders the reset email with Jinja2 (auth/templates/mailer/) and sends it over
SMTP. Delivery problems never reach the user: the reset-request response is
deliberately identical whether or not the address exists and whether or not
the mail went out, so every failure here is logged and swallowed.

Modes:
  MAIL_ENABLED=false   -- nothing is rendered or sent (debug log only).
  no SMTP_HOST         -- dev mode: the message is logged instead of sent,
                          with the recipient redacted.
  otherwise            -- SMTP, with STARTTLS when SMTP_USE_TLS=true.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from auth.models import User
from core.config import Settings, get_settings

logger = logging.getLogger("simpleauth.mailer")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

RESET_SUBJECT = "Reset your password"


def redact_email(email: str) -> str:
    """Keep enough of an address to debug delivery without logging PII."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class PasswordsMailer:
    """Sends password reset links.

    Usage:
        mailer = PasswordsMailer()
        mailer.send_password_reset(user, issued.token)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._env = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host and self.settings.mail_from)

    def reset_url(self, token: str) -> str:
        return f"{self.settings.app_url}/passwords/{token}/edit"

    def build_password_reset(self, user: User, token: str) -> EmailMessage:
        """Render the reset email (plain text with an HTML alternative)."""
        context = {
            "user": user,
            "token": token,
            "reset_url": self.reset_url(token),
            "expires_minutes": max(1, self.settings.reset_token_expiry // 60),
        }
        message = EmailMessage()
        message["Subject"] = RESET_SUBJECT
        message["From"] = self.settings.mail_from
        message["To"] = user.email_address
        message.set_content(self._env.get_template("mailer/reset.txt").render(**context))
        message.add_alternative(self._env.get_template("mailer/reset.html").render(**context), subtype="html")
        return message

    def send_password_reset(self, user: User, token: str) -> bool:
        """Render and deliver the reset email. Returns True if handed to SMTP.

        Never raises.
        """
        recipient = redact_email(user.email_address)
        if not self.settings.mail_enabled:
            logger.debug("Password reset email disabled. Skipping email for %s", recipient)
            return False
        try:
            message = self.build_password_reset(user, token)
            if not self.is_configured:
                logger.info("Mail dev mode: reset email for %s not sent (no SMTP_HOST)", recipient)
                return False
            self._send(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send password reset email to %s: %s", recipient, exc)
            return False
        except Exception:
            logger.exception("Failed to send password reset email to %s", recipient)
            return False
        logger.info("Password reset email sent to %s", recipient)
        return True

    def _send(self, message: EmailMessage) -> None:
        s = self.settings
        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as smtp:
            if s.smtp_use_tls:
                smtp.starttls(context=ssl.create_default_context())
            if s.smtp_user:
                smtp.login(s.smtp_user, s.smtp_password)
            smtp.send_message(message)
