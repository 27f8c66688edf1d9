"""
core/mailer.py -- Outbound email for magic links and address verification.

The auth flow only mints and records a token; delivery is fire-and-forget.
Neither send_magic_link() nor send_verification_email() raises: a delivery
failure is logged and the token stays valid, so the HTTP response shape cannot
reveal anything about the address. Routes schedule it as a FastAPI background task so the Resend call
happens after the response is sent.

Transports:
  ResendTransport -- production, via the `resend` SDK.
  LogTransport    -- development fallback when Resend is not configured. Logs
                     the recipient only; the link is echoed by the route in
                     debug mode instead.
"""

from __future__ import annotations

import html
import logging
from typing import TYPE_CHECKING, Protocol

import resend

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("zorem.mailer")


class EmailTransport(Protocol):
    def deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None: ...


class ResendTransport:
    def __init__(self, api_key: str, from_email: str) -> None:
        self._api_key = api_key
        self._from_email = from_email

    def deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        resend.api_key = self._api_key
        response = resend.Emails.send(
            {
                "from": self._from_email,
                "to": [to_email],
                "subject": subject,
                "html": html_body,
                "text": text_body,
            }
        )
        logger.info("Email sent via Resend (id=%s)", response.get("id") if isinstance(response, dict) else "?")


class LogTransport:
    def deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        logger.info("Email transport not configured; dropping %r to %s", subject, to_email)


def render_link_email(title: str, intro: str, cta_text: str, cta_url: str) -> str:
    safe_url = html.escape(cta_url, quote=True)
    return (
        '<div style="font-family:Inter,system-ui,sans-serif;max-width:560px;margin:0 auto;padding:24px">'
        f'<h2 style="margin:0 0 12px;color:#111">{html.escape(title)}</h2>'
        f'<p style="margin:0 0 16px;color:#444;line-height:1.5">{html.escape(intro)}</p>'
        f'<p style="margin:0 0 20px"><a href="{safe_url}" style="display:inline-block;background:#111;'
        f'color:#fff;text-decoration:none;padding:12px 16px;border-radius:10px">{html.escape(cta_text)}</a></p>'
        '<p style="margin:0 0 8px;color:#666;font-size:12px">'
        "If the button doesn't work, copy and paste this link:</p>"
        f'<p style="margin:0;color:#111;font-size:12px;word-break:break-all">{safe_url}</p>'
        "</div>"
    )


class Mailer:
    def __init__(self, transport: EmailTransport) -> None:
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        if settings.email_configured:
            return cls(ResendTransport(settings.resend_api_key, settings.resend_from_email))
        if not settings.debug:
            logger.warning("RESEND_API_KEY / RESEND_FROM_EMAIL not set -- magic links will not be delivered")
        return cls(LogTransport())

    def send_magic_link(self, to_email: str, magic_link_url: str) -> None:
        html_body = render_link_email(
            title="Sign in to Zorem",
            intro="Use this link to sign in. This link expires soon for your security.",
            cta_text="Sign in",
            cta_url=magic_link_url,
        )
        text_body = f"Sign in to Zorem: {magic_link_url}"
        self._send(to_email, "Your Zorem sign-in link", html_body, text_body, "magic link")

    def send_verification_email(self, to_email: str, verification_url: str) -> None:
        html_body = render_link_email(
            title="Verify your email",
            intro="Thanks for signing up! Please verify your email to activate your account.",
            cta_text="Verify email",
            cta_url=verification_url,
        )
        text_body = f"Verify your email for Zorem: {verification_url}"
        self._send(to_email, "Verify your email for Zorem", html_body, text_body, "verification")

    def _send(self, to_email: str, subject: str, html_body: str, text_body: str, kind: str) -> None:
        try:
            self._transport.deliver(to_email, subject, html_body, text_body)
        except Exception:
            # The token is already recorded and valid; the caller already answered.
            logger.exception("Failed to deliver %s email", kind)
