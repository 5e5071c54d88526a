"""Reset-code delivery through a transactional email HTTP API (Resend-compatible)."""

from __future__ import annotations

import logging

import httpx

from httpxlogtransport import HttpxLogTransport, transport_set_logger

L = logging.getLogger("mailer")
transport_set_logger(L)

DEFAULT_API_URL = "https://api.resend.com/emails"
DEFAULT_SENDER = "Admin Security <onboarding@resend.dev>"


class EmailSendError(Exception):
    def __init__(self, details: str):
        super().__init__(details)
        self.details = details


def _describe_failure(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        message = ""
        try:
            body = response.json()
            if isinstance(body, dict):
                message = str(body.get("message") or body.get("error") or "")
        except ValueError:
            message = response.text[:200]
        return f"{response.status_code} {message}".strip()
    return exc.__class__.__name__


class ResetCodeMailer:
    """Sends the one-time reset code.

    A preferred sender that the provider rejects (commonly an unverified
    domain) is retried once with the provider's default sender.
    """

    def __init__(
        self,
        api_key: str | None,
        preferred_sender: str | None = None,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = (api_key or "").strip()
        self.preferred_sender = (preferred_sender or "").strip() or None
        self.api_url = api_url
        self._client = httpx.Client(
            transport=HttpxLogTransport(transport or httpx.HTTPTransport()),
            timeout=timeout_seconds,
        )

    def configured(self) -> bool:
        return bool(self.api_key)

    def _senders(self) -> list[str]:
        if self.preferred_sender and self.preferred_sender != DEFAULT_SENDER:
            return [self.preferred_sender, DEFAULT_SENDER]
        return [DEFAULT_SENDER]

    def _post(self, sender: str, recipient: str, subject: str, text: str, html: str) -> None:
        response = self._client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": sender,
                "to": [recipient],
                "subject": subject,
                "text": text,
                "html": html,
            },
        )
        response.raise_for_status()

    def send_reset_code(self, recipient: str, code: str, ttl_minutes: int) -> str:
        """Deliver ``code`` to ``recipient``; returns the sender that succeeded."""
        if not self.configured():
            raise EmailSendError("email provider is not configured")

        subject = "Your admin passcode reset code"
        text = (
            f"Your admin passcode reset code is {code}.\n\n"
            f"It expires in {ttl_minutes} minutes and can be used only once.\n"
            "If you did not request this, you can ignore this email.\n"
        )
        html = (
            f"<p>Your admin passcode reset code is <strong>{code}</strong>.</p>"
            f"<p>It expires in {ttl_minutes} minutes and can be used only once.</p>"
            "<p>If you did not request this, you can ignore this email.</p>"
        )

        details = ""
        for sender in self._senders():
            try:
                self._post(sender, recipient, subject, text, html)
                return sender
            except httpx.HTTPError as exc:
                details = _describe_failure(exc)
                L.warning("Reset code email via %s failed: %s", sender, details)

        raise EmailSendError(details or "email delivery failed")
