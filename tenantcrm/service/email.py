from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Optional

from tenantcrm.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30


class EmailService:
    """Password reset, welcome and invitation mail over SMTP.

    Without ``smtp_host`` and a sender address, messages are logged and
    reported as delivered so local setups work without a mail server.
    Delivery failures are logged and reported as ``False``; nothing raises
    into the auth flows that trigger a send.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Tenant CRM",
        frontend_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = (frontend_url or "http://localhost:5173").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _compose(self, to_email: str, subject: str, text_body: str, html_body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to_email
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> bool:
        if not self.is_configured:
            logger.info("email_not_sent_unconfigured", to_email=to_email, subject=subject)
            return True
        message = self._compose(to_email, subject, text_body, html_body)
        try:
            with self._open() as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                host=self.smtp_host,
                smtp_code=exc.smtp_code,
                error=str(exc),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to_email=to_email)
            return False
        except (smtplib.SMTPException, OSError) as exc:
            # OSError covers refused connections, timeouts and TLS failures
            logger.error(
                "email_delivery_failed",
                to_email=to_email,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to_email=to_email, subject=subject)
        return True

    def build_reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={token}"

    def send_password_reset_email(self, to_email: str, reset_url: str, name: Optional[str] = None) -> bool:
        greeting = f"Hi {name}," if name else "Hi,"
        text_body = (
            f"{greeting}\n\n"
            "We received a request to reset your password. Open the link below "
            "within the next hour to choose a new one:\n\n"
            f"{reset_url}\n\n"
            "If you did not request this, you can ignore this email."
        )
        html_body = (
            f"<p>{escape(greeting)}</p>"
            "<p>We received a request to reset your password. The link expires in one hour.</p>"
            f'<p><a href="{escape(reset_url, quote=True)}">Reset password</a></p>'
            "<p>If you did not request this, you can ignore this email.</p>"
        )
        return self.send(to_email, "Reset your password", text_body, html_body)

    def send_welcome_email(self, to_email: str, name: str, company_name: str) -> bool:
        login_url = f"{self.frontend_url}/login"
        text_body = (
            f"Hi {name},\n\n"
            f"Your workspace for {company_name} is ready. Sign in at {login_url}."
        )
        html_body = (
            f"<p>Hi {escape(name)},</p>"
            f"<p>Your workspace for <strong>{escape(company_name)}</strong> is ready.</p>"
            f'<p><a href="{escape(login_url, quote=True)}">Sign in</a></p>'
        )
        return self.send(to_email, f"Welcome to {company_name}", text_body, html_body)

    def build_invite_url(self, token: str) -> str:
        return f"{self.frontend_url}/accept-invite?token={token}"

    def send_team_invite_email(
        self, to_email: str, invite_url: str, company_name: str, inviter_name: str, role: str
    ) -> bool:
        text_body = (
            f"{inviter_name} invited you to join {company_name} as {role}.\n\n"
            "Open the link below to set your password:\n\n"
            f"{invite_url}"
        )
        html_body = (
            f"<p>{escape(inviter_name)} invited you to join "
            f"<strong>{escape(company_name)}</strong> as {escape(role)}.</p>"
            f'<p><a href="{escape(invite_url, quote=True)}">Accept invitation</a></p>'
        )
        return self.send(to_email, f"You have been invited to {company_name}", text_body, html_body)

    async def send_password_reset_email_async(
        self, to_email: str, reset_url: str, name: Optional[str] = None
    ) -> bool:
        return await asyncio.to_thread(self.send_password_reset_email, to_email, reset_url, name)

    async def send_welcome_email_async(self, to_email: str, name: str, company_name: str) -> bool:
        return await asyncio.to_thread(self.send_welcome_email, to_email, name, company_name)

    async def send_team_invite_email_async(
        self, to_email: str, invite_url: str, company_name: str, inviter_name: str, role: str
    ) -> bool:
        return await asyncio.to_thread(
            self.send_team_invite_email, to_email, invite_url, company_name, inviter_name, role
        )
