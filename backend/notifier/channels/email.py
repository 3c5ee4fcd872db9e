"""
email.py — Email delivery via the Resend REST API.

Delivery mechanism:
    • HTTP POST (JSON) with a Bearer API key
    • HTML body plus a plain-text alternative
    • Opens and clicks reported later through the delivery webhook

═══════════════════════════════════════════════════════════════════════════
RESEND API
═══════════════════════════════════════════════════════════════════════════

    POST {base}/emails
    Authorization: Bearer re_…
    {
        "from": "ChoreMinder <notifications@choreminder.app>",
        "to": ["parent@example.com"],
        "subject": "Reminder: Feed the cat",
        "html": "<div>…</div>",
        "text": "Hi Sam, …"
    }

    200 → {"id": "49a3999c-…"}
    422 → {"statusCode": 422, "name": "validation_error", "message": "…"}

Addresses on the blocklist (full address or bare domain) fail
``validate_address`` and are never sent to.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

import httpx

from backend.notifier.channels.base import SIMULATION, ProviderResult, request, simulated_id
from backend.notifier.scheduling.models import Channel
from backend.notifier.scheduling.templates import RenderedContent

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ResendEmailProvider:
    """Resend-backed email, or a logging simulation."""

    channel = Channel.EMAIL

    def __init__(
        self,
        *,
        mode: str = SIMULATION,
        api_key: Optional[str] = None,
        from_address: str = "ChoreMinder <notifications@choreminder.app>",
        blocklist: Iterable[str] = (),
        base_url: str = "https://api.resend.com",
        client: Optional[httpx.Client] = None,
    ):
        self.mode = mode
        if mode != SIMULATION and not (api_key and client):
            raise ValueError(f"email provider '{mode}' needs an API key and an HTTP client")
        self._api_key = api_key
        self._from = from_address
        self._blocklist = {entry.strip().lower() for entry in blocklist if entry.strip()}
        self._base_url = base_url.rstrip("/")
        self._client = client

    def is_blocked(self, address: str) -> bool:
        address = address.strip().lower()
        domain = address.rsplit("@", 1)[-1]
        return address in self._blocklist or domain in self._blocklist

    def validate_address(self, address: str) -> bool:
        if not address or not _EMAIL_RE.match(address.strip()):
            return False
        return not self.is_blocked(address)

    def send(self, address: str, content: RenderedContent) -> ProviderResult:
        subject = content.subject or "ChoreMinder notification"

        if self.mode == SIMULATION:
            logger.info(
                "[EMAIL] → %s: subject='%s' | %d chars",
                address, subject, len(content.body),
                extra={"channel": self.channel.value},
            )
            return ProviderResult(
                provider_message_id=simulated_id(self.channel),
                raw={"mode": "simulated", "to": address, "subject": subject},
            )

        payload = {
            "from": self._from,
            "to": [address],
            "subject": subject,
            "text": content.body,
        }
        if content.html:
            payload["html"] = content.html

        response = request(
            self._client,
            self.channel,
            "POST",
            f"{self._base_url}/emails",
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        body = response.json()
        logger.info(
            "[EMAIL/Resend] %s → %s",
            body.get("id"), address,
            extra={"channel": self.channel.value},
        )
        return ProviderResult(provider_message_id=body.get("id"), raw=body)
