from __future__ import annotations

import html
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional
from urllib.parse import urlencode

from pixora_auth.logging import get_logger

logger = get_logger(__name__)

BRAND = "Pixora Craftt"


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Welcome/verification, password reset, password changed and login alert emails
    - Fallback to logging when not configured (dev mode)

    Every ``send_*`` method is blocking; the :class:`~pixora_auth.service.notifier.Notifier`
    runs them off the event loop.
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
        from_name: str = BRAND,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}/{path}?{urlencode({'token': token})}"

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
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
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

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Connection refused, DNS failure, socket timeout
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    @staticmethod
    def _layout(title: str, first_name: str, paragraphs: list[str], button: Optional[tuple[str, str]] = None) -> str:
        name = html.escape(first_name)
        body = "\n".join(f"            <p>{p}</p>" for p in paragraphs)
        action = ""
        if button:
            label, url = button
            safe_url = html.escape(url, quote=True)
            action = f"""
            <p style="text-align: center; margin: 30px 0;">
                <a href="{safe_url}" class="button">{label}</a>
            </p>
            <p>If the button doesn't work, copy and paste this link into your browser:</p>
            <p style="word-break: break-all;">{safe_url}</p>"""
        year = datetime.now(timezone.utc).year
        return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title} - {BRAND}</title>
    <style>
        body {{ font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; margin: 0; padding: 0; background-color: #f8fafc; }}
        .container {{ max-width: 600px; margin: 0 auto; background-color: #ffffff; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #667eea; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; font-weight: 600; }}
        .footer {{ margin-top: 40px; text-align: center; color: #64748b; font-size: 14px; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <h2>Hi {name},</h2>
{body}{action}
        <p>Best regards,<br>The {BRAND} Team</p>
        <div class="footer">
            <p>&copy; {year} {BRAND}. All rights reserved.</p>
        </div>
    </div>
</body>
</html>
"""

    def send_welcome_email(self, to_email: str, first_name: str, token: str) -> bool:
        """Welcome a new account and ask it to verify its address."""
        verify_url = self._link("verify-email", token)
        subject = f"Welcome to {BRAND} - Verify Your Email"
        html_body = self._layout(
            f"Welcome to {BRAND}!",
            first_name,
            [
                f"Welcome to {BRAND}! We're excited to have you on board.",
                "To get started, please verify your email address:",
            ],
            ("Verify Email Address", verify_url),
        )
        text_body = f"""Welcome to {BRAND}!

Hi {first_name},

To get started, please verify your email address by visiting this link:
{verify_url}

This verification link will expire in 30 minutes for security reasons.

If you didn't create an account with us, please ignore this email.

---
The {BRAND} Team
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, first_name: str, token: str) -> bool:
        """Send a fresh verification link."""
        verify_url = self._link("verify-email", token)
        subject = f"Verify Your Email Address - {BRAND}"
        html_body = self._layout(
            "Verify Your Email",
            first_name,
            [
                "Please verify your email address to complete your account setup.",
                "This verification link will expire in 30 minutes for security reasons.",
            ],
            ("Verify Email Address", verify_url),
        )
        text_body = f"""Verify Your Email - {BRAND}

Hi {first_name},

Please verify your email address to complete your account setup.

Verification link: {verify_url}

This verification link will expire in 30 minutes for security reasons.

---
The {BRAND} Team
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, first_name: str, token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = self._link("reset-password", token)
        subject = f"Reset Your Password - {BRAND}"
        html_body = self._layout(
            "Reset Your Password",
            first_name,
            [
                "We received a request to reset your password.",
                "This password reset link will expire in 15 minutes for security reasons.",
                "If you didn't request a password reset, please ignore this email and your password will remain unchanged.",
            ],
            ("Reset Password", reset_url),
        )
        text_body = f"""Reset Your Password - {BRAND}

Hi {first_name},

We received a request to reset your password. Visit this link to set a new password:
{reset_url}

This password reset link will expire in 15 minutes for security reasons.

If you didn't request a password reset, please ignore this email and your password will remain unchanged.

---
The {BRAND} Team
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str, first_name: str) -> bool:
        subject = f"Password Changed Successfully - {BRAND}"
        html_body = self._layout(
            "Password Changed",
            first_name,
            [
                "Your password was changed and every active session was signed out.",
                "If you didn't make this change, reset your password immediately and contact support.",
            ],
        )
        text_body = f"""Password Changed - {BRAND}

Hi {first_name},

Your password was changed and every active session was signed out.

If you didn't make this change, reset your password immediately and contact support.

---
The {BRAND} Team
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_login_alert(
        self,
        to_email: str,
        first_name: str,
        *,
        ip_addr: Optional[str],
        device: str,
        login_time: datetime,
    ) -> bool:
        subject = f"New Login to Your Account - {BRAND}"
        when = login_time.strftime("%Y-%m-%d %H:%M UTC")
        details = f"Time: {when}<br>IP address: {html.escape(ip_addr or 'unknown')}<br>Device: {html.escape(device)}"
        html_body = self._layout(
            "New Login Detected",
            first_name,
            [
                "We noticed a new sign-in to your account.",
                details,
                "If this wasn't you, reset your password immediately.",
            ],
        )
        text_body = f"""New Login Detected - {BRAND}

Hi {first_name},

We noticed a new sign-in to your account.

Time: {when}
IP address: {ip_addr or 'unknown'}
Device: {device}

If this wasn't you, reset your password immediately.

---
The {BRAND} Team
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_mfa_setup_confirmation(self, to_email: str, first_name: str) -> bool:
        """Send confirmation that two-factor authentication was enabled."""
        subject = f"Two-Factor Authentication Enabled - {BRAND}"
        html_body = self._layout(
            "Two-factor authentication enabled",
            first_name,
            [
                "Two-factor authentication has been enabled on your account.",
                "You will now need a code from your authenticator app when signing in.",
                "If you didn't make this change, please contact support immediately.",
            ],
        )
        text_body = f"""Two-factor authentication enabled

Hi {first_name},

Two-factor authentication has been enabled on your account.

You will now need a code from your authenticator app when signing in.

If you didn't make this change, please contact support immediately.

---
The {BRAND} Team
"""
        return self._send_email(to_email, subject, html_body, text_body)
