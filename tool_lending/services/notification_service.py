from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage

from tool_lending.config import Settings


LOGGER = logging.getLogger("tool_lending.notifications")

RESET_SUBJECT = "Password reset code"


def _reset_body(name: str, code: str, ttl_minutes: int) -> str:
    return (
        f"Hello {name},\n\n"
        f"Your password reset code is: {code}\n\n"
        f"The code expires in {ttl_minutes} minutes. "
        "If you did not ask for it, ignore this message.\n"
    )


class Notifier(ABC):
    """Outbound channel for user notifications."""

    def __init__(self, code_ttl_minutes: int = 15):
        self.code_ttl_minutes = code_ttl_minutes

    @abstractmethod
    def send_password_reset_code(self, email: str, name: str, code: str) -> None:
        """Deliver a one-time reset code; raise on delivery failure."""


class LogNotifier(Notifier):
    def send_password_reset_code(self, email: str, name: str, code: str) -> None:
        LOGGER.info("Password reset code for %s (%s): %s", email, name, code)


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        user: str = "",
        password: str = "",
        code_ttl_minutes: int = 15,
        timeout: float = 10.0,
    ):
        super().__init__(code_ttl_minutes)
        if not host or not sender:
            raise RuntimeError("EMAIL_HOST and EMAIL_FROM are required for the smtp notification backend.")
        self.host = host
        self.port = port
        self.sender = sender
        self.user = user
        self.password = password
        self.timeout = timeout

    def send_password_reset_code(self, email: str, name: str, code: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = email
        message["Subject"] = RESET_SUBJECT
        message.set_content(_reset_body(name, code, self.code_ttl_minutes))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.user:
                smtp.starttls()
                smtp.login(self.user, self.password)
            smtp.send_message(message)
        LOGGER.info("Password reset code sent to %s", email)


def build_notifier(settings: Settings) -> Notifier:
    if settings.notification_backend == "smtp":
        return SmtpNotifier(
            host=settings.email_host,
            port=settings.email_port,
            sender=settings.email_from,
            user=settings.email_user,
            password=settings.email_password,
            code_ttl_minutes=settings.reset_code_ttl_minutes,
        )
    return LogNotifier(settings.reset_code_ttl_minutes)


def deliver_reset_code(notifier: Notifier, email: str, name: str, code: str) -> bool:
    """Fire-and-forget delivery; a failed send leaves the code in the server log."""
    try:
        notifier.send_password_reset_code(email, name, code)
    except Exception:
        LOGGER.exception("Could not deliver reset code to %s", email)
        LOGGER.warning("Fallback password reset code for %s: %s", email, code)
        return False
    return True
