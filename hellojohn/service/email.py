from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from string import Template
from typing import Dict, Optional, Tuple

from hellojohn.logging import get_logger
from hellojohn.security.secretbox import SecretBox, SecretBoxError
from hellojohn.store.models import SMTPSettings, Tenant

logger = get_logger(__name__)

TEMPLATE_VERIFY_EMAIL = "verify_email"
TEMPLATE_RESET_PASSWORD = "reset_password"

_DEFAULT_TEMPLATES: Dict[str, Tuple[str, str]] = {
    TEMPLATE_VERIFY_EMAIL: (
        "Verify your email for $tenant",
        "Hi,\n\nConfirm your email address for $tenant by visiting the link below:\n\n"
        "$link\n\nThe link expires in $ttl.\n",
    ),
    TEMPLATE_RESET_PASSWORD: (
        "Reset your $tenant password",
        "Hi,\n\nWe received a request to reset your $tenant password. Visit the link below "
        "to choose a new one:\n\n$link\n\nThe link expires in $ttl. If you did not ask "
        "for this, you can ignore this email.\n",
    ),
}


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def describe_ttl(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return "1 hour" if hours == 1 else f"{hours} hours"
    minutes = max(1, seconds // 60)
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


class EmailService:
    """Transactional mail sent with each tenant's own SMTP settings.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Tenant mail templates per language, with built-in defaults
    - Fallback to logging when the tenant has no SMTP host (dev mode)
    """

    def __init__(self, *, secretbox: Optional[SecretBox] = None, from_name: str = "HelloJohn") -> None:
        self.secretbox = secretbox
        self.from_name = from_name

    @staticmethod
    def is_configured(smtp: Optional[SMTPSettings]) -> bool:
        return bool(smtp and smtp.host and smtp.from_email)

    def _password(self, smtp: SMTPSettings) -> str:
        if smtp.password or not smtp.password_enc:
            return smtp.password
        if self.secretbox is None:
            logger.error("email_password_unavailable", host=smtp.host, reason="secretbox key missing")
            return ""
        try:
            return self.secretbox.decrypt(smtp.password_enc)
        except SecretBoxError as exc:
            logger.error("email_password_unavailable", host=smtp.host, error=str(exc))
            return ""

    def render(self, tenant: Tenant, template_id: str, **context: str) -> Tuple[str, str]:
        """Subject and body for ``template_id`` in the tenant's language."""
        subject, body = _DEFAULT_TEMPLATES[template_id]
        custom = tenant.settings.template(tenant.language or "en", template_id)
        if custom is not None:
            subject = custom.subject or subject
            body = custom.body or body
        values = {"tenant": tenant.name or tenant.slug, **context}
        return Template(subject).safe_substitute(values), Template(body).safe_substitute(values)

    def _send_email(self, smtp: Optional[SMTPSettings], to_email: str, subject: str, text_body: str) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured(smtp):
            # dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{smtp.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain", "utf-8"))

            context = ssl.create_default_context()
            password = self._password(smtp)
            logger.debug(
                "email_connecting",
                host=smtp.host,
                port=smtp.port,
                use_tls=smtp.use_tls,
                to=redact_email(to_email),
            )

            if smtp.use_tls:
                with smtplib.SMTP(smtp.host, smtp.port, timeout=30) as server:
                    server.starttls(context=context)
                    if smtp.username and password:
                        server.login(smtp.username, password)
                    server.sendmail(smtp.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(smtp.host, smtp.port, context=context, timeout=30) as server:
                    if smtp.username and password:
                        server.login(smtp.username, password)
                    server.sendmail(smtp.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=smtp.host,
                user=smtp.username,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=smtp.host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=smtp.host,
                port=smtp.port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_password_reset(self, tenant: Tenant, to_email: str, link: str, ttl_seconds: int) -> bool:
        subject, body = self.render(
            tenant, TEMPLATE_RESET_PASSWORD, link=link, ttl=describe_ttl(ttl_seconds), email=to_email
        )
        return self._send_email(tenant.settings.smtp, to_email, subject, body)

    def send_email_verification(self, tenant: Tenant, to_email: str, link: str, ttl_seconds: int) -> bool:
        subject, body = self.render(
            tenant, TEMPLATE_VERIFY_EMAIL, link=link, ttl=describe_ttl(ttl_seconds), email=to_email
        )
        return self._send_email(tenant.settings.smtp, to_email, subject, body)
