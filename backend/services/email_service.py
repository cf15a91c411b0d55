"""Transactional email: SMTP when configured, log-only otherwise."""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from email.utils import formataddr

logger = logging.getLogger(__name__)


class EmailService:
    def __init__(
        self,
        *,
        host: str | None,
        port: int,
        user: str | None,
        password: str | None,
        from_email: str,
        from_name: str,
        frontend_url: str,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.frontend_url = (frontend_url or "").rstrip("/")
        self.outbox: list[dict] = []

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            from_email=settings.MAIL_FROM,
            from_name=settings.MAIL_FROM_NAME,
            frontend_url=settings.FRONTEND_URL,
        )

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.host)

    def send(self, to_email: str, subject: str, body: str) -> bool:
        if not self.smtp_enabled:
            # Console mode keeps the message for local inspection.
            self.outbox.append({"to": to_email, "subject": subject, "body": body})
            logger.info(f"Email (console mode) to={to_email} subject={subject!r}")
            return True

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email))
        msg["To"] = to_email
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.sendmail(self.from_email, [to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"Email send failed to={to_email} subject={subject!r}: {exc}")
            return False
        logger.info(f"Email sent to={to_email} subject={subject!r}")
        return True

    def send_verification_email(self, to_email: str, first_name: str | None, token: str) -> bool:
        link = f"{self.frontend_url}/verify-email?token={token}"
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        body = (
            f"{greeting}\n\n"
            "Welcome to ProteinLens. Confirm your email address to start scanning meals:\n\n"
            f"{link}\n\n"
            "This link expires in 24 hours. If you did not create an account, ignore this email.\n"
        )
        return self.send(to_email, "Verify your ProteinLens email", body)

    def send_password_reset_email(self, to_email: str, first_name: str | None, token: str) -> bool:
        link = f"{self.frontend_url}/reset-password?token={token}"
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        body = (
            f"{greeting}\n\n"
            "We received a request to reset your ProteinLens password:\n\n"
            f"{link}\n\n"
            "This link expires in 1 hour and can be used once. "
            "If you did not ask for a reset, you can ignore this email.\n"
        )
        return self.send(to_email, "Reset your ProteinLens password", body)

    def send_password_changed_email(self, to_email: str, first_name: str | None) -> bool:
        greeting = f"Hi {first_name}," if first_name else "Hi,"
        body = (
            f"{greeting}\n\n"
            "Your ProteinLens password was just changed and all other sessions were signed out.\n"
            "If this was not you, reset your password immediately.\n"
        )
        return self.send(to_email, "Your ProteinLens password was changed", body)


_EMAIL_SERVICE: EmailService | None = None


def get_email_service() -> EmailService:
    global _EMAIL_SERVICE
    if _EMAIL_SERVICE is None:
        from config import settings

        _EMAIL_SERVICE = EmailService.from_settings(settings)
    return _EMAIL_SERVICE
