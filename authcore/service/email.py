from __future__ import annotations

import html
import smtplib
import ssl
from email.message import EmailMessage
from typing import List, Optional, Protocol, Tuple

from authcore.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30


class Notifier(Protocol):
    def send_password_reset_email(self, email: str, token: str) -> bool: ...

    def send_mfa_setup_email(self, email: str, qr_code_url: str, secret: str) -> bool: ...

    def send_email_verification_link(self, email: str, token: str) -> bool: ...


_PAGE = """<!DOCTYPE html>
<html lang="en">
<body style="margin:0;background:#f4f6f8;font-family:Helvetica,Arial,sans-serif;color:#1f2933;">
<table role="presentation" width="100%" cellpadding="0" cellspacing="0">
<tr><td align="center" style="padding:32px 16px;">
<table role="presentation" width="560" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:6px;padding:32px;">
<tr><td>
<h2 style="margin-top:0;">{title}</h2>
{body}
<p style="margin-top:32px;font-size:12px;color:#6b7280;">{product} &middot; automated security notice, replies are not read.</p>
</td></tr>
</table>
</td></tr>
</table>
</body>
</html>
"""

_BUTTON = (
    '<p><a href="{url}" style="display:inline-block;padding:10px 20px;background:#1d4ed8;'
    'color:#ffffff;border-radius:4px;text-decoration:none;">{label}</a></p>'
)


def redact_address(email: str) -> str:
    """``alice@example.com`` -> ``al***@example.com`` for log lines."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP delivery of account security emails.

    Without an SMTP host the service only logs what it would have sent.
    Every send reports success as a bool; SMTP problems are logged and never
    propagate into login, reset or enrollment.
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
        from_name: str = "AuthCore",
        base_url: Optional[str] = None,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.credentials = (smtp_user, smtp_password) if smtp_user and smtp_password else None
        self.smtp_use_tls = smtp_use_tls
        self.sender = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.sender)

    def _compose(
        self,
        to_email: str,
        subject: str,
        title: str,
        paragraphs: List[str],
        *,
        link: Optional[Tuple[str, str]] = None,
        extra_html: str = "",
        extra_text: str = "",
    ) -> EmailMessage:
        blocks = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        lines = [title, ""] + paragraphs
        if link:
            label, url = link
            blocks.insert(1, _BUTTON.format(url=html.escape(url), label=html.escape(label)))
            blocks.append(f'<p style="font-size:13px;">Or open: {html.escape(url)}</p>')
            lines += ["", url]
        if extra_text:
            lines += ["", extra_text]

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.sender}>"
        msg["To"] = to_email
        msg.set_content("\n".join(lines + ["", f"-- {self.from_name}", ""]))
        msg.add_alternative(
            _PAGE.format(
                title=html.escape(title),
                body="\n".join(blocks) + extra_html,
                product=html.escape(self.from_name),
            ),
            subtype="html",
        )
        return msg

    def _connect(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
            return server
        return smtplib.SMTP_SSL(
            self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
        )

    def _deliver(self, msg: EmailMessage) -> bool:
        recipient = redact_address(msg["To"])
        if not self.is_configured:
            logger.info("email_not_sent_smtp_unconfigured", to=recipient, subject=msg["Subject"])
            return True

        try:
            with self._connect(ssl.create_default_context()) as server:
                if self.credentials:
                    server.login(*self.credentials)
                server.sendmail(self.sender, msg["To"], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_smtp_login_rejected",
                host=self.smtp_host,
                smtp_status=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_delivered", to=recipient, subject=msg["Subject"])
        return True

    def send_password_reset_email(self, email: str, token: str) -> bool:
        return self._deliver(
            self._compose(
                email,
                "Password Reset Request",
                "Reset your password",
                [
                    "Someone asked to reset the password for this account. Use the link below to choose a new one.",
                    f"The link stops working after {self.reset_ttl_minutes} minutes.",
                    "If this wasn't you, no action is needed.",
                ],
                link=("Reset password", f"{self.base_url}/reset-password?token={token}"),
            )
        )

    def send_email_verification_link(self, email: str, token: str) -> bool:
        return self._deliver(
            self._compose(
                email,
                "Verify your email address",
                "Confirm your email",
                [
                    "Confirm this address to finish setting up your account.",
                    f"The link stops working after {self.verification_ttl_hours} hours.",
                ],
                link=("Verify email", f"{self.base_url}/verify-email?token={token}"),
            )
        )

    def send_mfa_setup_email(self, email: str, qr_code_url: str, secret: str) -> bool:
        extra_html = (
            f'\n<p style="text-align:center;"><img src="{html.escape(qr_code_url)}" '
            'alt="Authenticator QR code" width="200"></p>'
            f'\n<p style="text-align:center;font-family:monospace;background:#f4f6f8;padding:8px;">'
            f"{html.escape(secret)}</p>"
        )
        return self._deliver(
            self._compose(
                email,
                "Multi-Factor Authentication Setup",
                "Set up your authenticator",
                [
                    "Scan the QR code with your authenticator app, or type in the key below.",
                    "Treat this key like a password and do not share it.",
                ],
                extra_html=extra_html,
                extra_text=f"Key: {secret}",
            )
        )
