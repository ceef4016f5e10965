from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Dict, Optional, Protocol

from identity_engine.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    FEDERATED_VERIFICATION = "federated_verification"
    PASSWORD_SET = "password_set"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET = "password_reset"
    PASSWORD_RESET_SUCCESS = "password_reset_success"


class EmailSender(Protocol):
    def send(
        self,
        kind: EmailKind,
        recipient: str,
        *,
        token: Optional[str] = None,
        name: Optional[str] = None,
    ) -> bool: ...


async def deliver(
    sender: EmailSender,
    kind: EmailKind,
    recipient: str,
    *,
    token: Optional[str] = None,
    name: Optional[str] = None,
) -> bool:
    """Run a blocking sender off the event loop; transport errors become False."""
    try:
        return await asyncio.to_thread(sender.send, kind, recipient, token=token, name=name)
    except Exception as exc:
        logger.error(
            "email_send_failed",
            kind=kind.value,
            to=redact_email(recipient),
            error_type=type(exc).__name__,
        )
        return False


@dataclass(frozen=True)
class _Template:
    subject: str
    headline: str
    body: str
    link_path: Optional[str]
    button: Optional[str]
    footnote: str = ""


_TEMPLATES: Dict[EmailKind, _Template] = {
    EmailKind.EMAIL_VERIFICATION: _Template(
        subject="Verify Your Email - {app}",
        headline="Verify your email address",
        body="Thanks for signing up. Please confirm your email address to finish setting up your account.",
        link_path="/verify-email?token={token}",
        button="Verify Email Address",
        footnote="This link expires in 24 hours.",
    ),
    EmailKind.FEDERATED_VERIFICATION: _Template(
        subject="Verify Your Google Sign-In - {app}",
        headline="Confirm your Google sign-in",
        body="You signed in with Google. Please confirm this email address to complete your registration.",
        link_path="/verify-email?token={token}&provider=google",
        button="Verify Email Address",
        footnote="This link expires in 24 hours.",
    ),
    EmailKind.PASSWORD_SET: _Template(
        subject="Password Set Successfully - {app}",
        headline="Your password has been set",
        body="You can now sign in with your email address and password in addition to Google Sign-In.",
        link_path="/login",
        button="Go to Login",
        footnote="If you did not make this change, reset your password immediately.",
    ),
    EmailKind.PASSWORD_CHANGED: _Template(
        subject="Password Changed - {app}",
        headline="Your password was changed",
        body="The password for your account was just changed and every session was signed out.",
        link_path=None,
        button=None,
        footnote="If you did not make this change, reset your password immediately.",
    ),
    EmailKind.PASSWORD_RESET: _Template(
        subject="Reset Your Password - {app}",
        headline="Reset your password",
        body="We received a request to reset your password. Use the link below to choose a new one.",
        link_path="/reset-password?token={token}",
        button="Reset My Password",
        footnote="This link expires in 1 hour. If you didn't request this, you can safely ignore this email.",
    ),
    EmailKind.PASSWORD_RESET_SUCCESS: _Template(
        subject="Password Reset Successful - {app}",
        headline="Your password has been reset",
        body="Your password was reset and every existing session was signed out.",
        link_path="/login",
        button="Go to Login",
        footnote="If you did not make this change, contact support immediately.",
    ),
}


class SmtpEmailSender:
    """Transactional mail over SMTP.

    Supports:
    - STARTTLS or implicit TLS
    - one template per ``EmailKind``
    - logging instead of sending when SMTP is not configured (dev mode)
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
        from_name: str = "Quanby Task Manager",
        base_url: str = "http://localhost:4200",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def render(
        self, kind: EmailKind, *, token: Optional[str] = None, name: Optional[str] = None
    ) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for ``kind``."""
        template = _TEMPLATES[kind]
        subject = template.subject.format(app=self.from_name)
        greeting = f"Hi {name}," if name else "Hi,"
        url = None
        if template.link_path:
            url = self.base_url + template.link_path.format(token=token or "")

        text_lines = [greeting, "", template.body]
        if url:
            text_lines += ["", url]
        if template.footnote:
            text_lines += ["", template.footnote]
        text_lines += ["", "---", self.from_name]
        text_body = "\n".join(text_lines)

        action = ""
        if url and template.button:
            safe_url = html.escape(url, quote=True)
            action = (
                f'<p style="margin: 30px 0;"><a href="{safe_url}" class="button">{template.button}</a></p>'
                f'<p class="link-text">If the button doesn\'t work, copy and paste this URL: {safe_url}</p>'
            )
        html_body = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .link-text {{ font-size: 12px; color: #5b6470; word-break: break-all; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{template.headline}</h1>
        <p>{html.escape(greeting)}</p>
        <p>{template.body}</p>
        {action}
        <p>{template.footnote}</p>
        <div class="footer"><p>{html.escape(self.from_name)}</p></div>
    </div>
</body>
</html>
"""
        return subject, html_body, text_body

    def send(
        self,
        kind: EmailKind,
        recipient: str,
        *,
        token: Optional[str] = None,
        name: Optional[str] = None,
    ) -> bool:
        subject, html_body, text_body = self.render(kind, token=token, name=name)
        return self._send_email(recipient, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_email(to_email))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
