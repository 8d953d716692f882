from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "emails"


class EmailService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )
        self.enabled = bool(self.settings.smtp_host)
        if not self.enabled:
            logger.warning("Email service not configured, outgoing mail is disabled")

    def render(self, template: str, **context: object) -> str:
        return self.env.get_template(template).render(**context)

    def send(self, to: str, subject: str, html: str) -> bool:
        if not self.enabled:
            logger.info(f"email_skipped: to={to} subject={subject!r}")
            return False

        message = EmailMessage()
        message["From"] = self.settings.email_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html, subtype="html")

        s = self.settings
        try:
            if s.smtp_port == 465:
                with smtplib.SMTP_SSL(
                    s.smtp_host, s.smtp_port, context=ssl.create_default_context()
                ) as smtp:
                    self._login_and_send(smtp, message)
            else:
                with smtplib.SMTP(s.smtp_host, s.smtp_port) as smtp:
                    smtp.starttls(context=ssl.create_default_context())
                    self._login_and_send(smtp, message)
        except (smtplib.SMTPException, OSError):
            logger.exception(f"email_failed: to={to} subject={subject!r}")
            return False
        logger.info(f"email_sent: to={to} subject={subject!r}")
        return True

    def _login_and_send(self, smtp: smtplib.SMTP, message: EmailMessage) -> None:
        if self.settings.smtp_user and self.settings.smtp_password:
            smtp.login(self.settings.smtp_user, self.settings.smtp_password)
        smtp.send_message(message)

    def send_welcome_email(self, to: str, first_name: str) -> bool:
        html = self.render(
            "welcome.html",
            first_name=first_name,
            app_url=self.settings.frontend_url,
        )
        return self.send(to, "Welcome to Expense Tracker", html)

    def send_password_reset_email(self, to: str, first_name: str, token: str) -> bool:
        reset_url = f"{self.settings.frontend_url}/reset-password?token={token}"
        html = self.render(
            "password_reset.html",
            first_name=first_name,
            reset_url=reset_url,
        )
        return self.send(to, "Reset your Expense Tracker password", html)
