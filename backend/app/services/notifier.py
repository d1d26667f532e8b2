from __future__ import annotations

import logging
from dataclasses import dataclass
from html import escape as html_escape
from typing import Protocol

from app.core.config import settings
from app.services.email import EmailDeliveryError, EmailNotConfiguredError, send_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None
    message_id: str | None = None


class Notifier(Protocol):
    def send_verification(self, email: str, name: str, verification_url: str, code: str) -> DeliveryResult:
        ...

    def send_two_factor_code(self, email: str, name: str, code: str) -> DeliveryResult:
        ...


def _expires_text(minutes: int) -> str:
    if minutes % 60 == 0 and minutes >= 60:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def _code_block(code: str) -> str:
    return (
        '<div style="margin: 24px 0; background: #fff; border: 2px dashed #8B5CF6; color: #8B5CF6; '
        'font-size: 32px; font-weight: bold; letter-spacing: 6px; text-align: center; padding: 18px;">'
        f"{html_escape(code)}</div>"
    )


def render_verification_email(name: str, verification_url: str, code: str, expires_minutes: int) -> tuple[str, str, str]:
    app_name = settings.APP_NAME
    expires_text = _expires_text(expires_minutes)
    subject = f"Verify your email - {app_name}"

    text_body = "\n".join(
        [
            f"Hi {name},",
            "",
            "Please verify your email by clicking the link below:",
            verification_url,
            "",
            "Or enter this code in the app:",
            code,
            "",
            f"The link and code expire in {expires_text}.",
            "If you did not create this account, you can ignore this email.",
        ]
    )

    html_body = f"""
    <html>
      <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
        <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
          <h2>Hi {html_escape(name)}!</h2>
          <p>Please verify your email address for {html_escape(app_name)}.</p>
          <p style="text-align: center;">
            <a href="{html_escape(verification_url, quote=True)}"
               style="display: inline-block; background: #8B5CF6; color: white; padding: 12px 30px; text-decoration: none; border-radius: 5px;">
              Verify Email Address
            </a>
          </p>
          <p>Or enter this code in the app:</p>
          {_code_block(code)}
          <p>The link and code expire in {expires_text}.</p>
          <p>If you did not create this account, you can safely ignore this email.</p>
        </div>
      </body>
    </html>
    """.strip()

    return subject, text_body, html_body


def render_two_factor_email(name: str, code: str, expires_minutes: int) -> tuple[str, str, str]:
    app_name = settings.APP_NAME
    expires_text = _expires_text(expires_minutes)
    subject = f"Your sign-in code - {app_name}"

    text_body = "\n".join(
        [
            f"Hi {name},",
            "",
            f"Your {app_name} sign-in code is:",
            code,
            "",
            f"This code expires in {expires_text}.",
            "If you did not try to sign in, change your password.",
        ]
    )

    html_body = f"""
    <html>
      <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
        <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
          <h2>Hi {html_escape(name)}!</h2>
          <p>Use the code below to finish signing in to {html_escape(app_name)}:</p>
          {_code_block(code)}
          <p>This code expires in {expires_text}.</p>
          <p>If you did not try to sign in, change your password.</p>
        </div>
      </body>
    </html>
    """.strip()

    return subject, text_body, html_body


class EmailNotifier:
    """
    Delivers credentials through app.services.email. Never raises; every outcome
    is reported as a DeliveryResult so storage and delivery stay independent.
    """

    def send_verification(self, email: str, name: str, verification_url: str, code: str) -> DeliveryResult:
        subject, text_body, html_body = render_verification_email(
            name,
            verification_url,
            code,
            expires_minutes=settings.EMAIL_VERIFY_TOKEN_EXPIRE_HOURS * 60,
        )
        return self._deliver(email, subject, text_body, html_body, from_email=settings.FROM_EMAIL, kind="verification")

    def send_two_factor_code(self, email: str, name: str, code: str) -> DeliveryResult:
        subject, text_body, html_body = render_two_factor_email(
            name,
            code,
            expires_minutes=settings.TWO_FACTOR_CODE_TTL_MINUTES,
        )
        return self._deliver(
            email,
            subject,
            text_body,
            html_body,
            from_email=settings.SECURITY_FROM_EMAIL or settings.FROM_EMAIL,
            kind="two_factor",
        )

    def _deliver(
        self,
        email: str,
        subject: str,
        text_body: str,
        html_body: str,
        *,
        from_email: str | None,
        kind: str,
    ) -> DeliveryResult:
        try:
            msg_id = send_email(to_email=email, subject=subject, body=text_body, html=html_body, from_email=from_email)
        except EmailNotConfiguredError as e:
            logger.error("Email delivery not configured (%s email to=%s): %s", kind, email, e)
            return DeliveryResult(success=False, error=f"Email delivery not configured: {e}")
        except EmailDeliveryError as e:
            logger.warning("Email delivery failed (%s email to=%s): %s", kind, email, e)
            return DeliveryResult(success=False, error=str(e))

        logger.info(
            "%s email queued to=%s provider=%s msg_id=%s", kind, email, settings.EMAIL_PROVIDER or "resend", msg_id
        )
        return DeliveryResult(success=True, message_id=msg_id)
