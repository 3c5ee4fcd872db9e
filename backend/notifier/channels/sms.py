"""
sms.py — SMS delivery via the Twilio Messages API.

Delivery mechanism:
    • HTTP POST (form-encoded) to Twilio with basic auth
    • Payload: ≤160 chars GSM 7-bit, ≤70 chars Unicode per segment
    • Delivery receipts arrive later on the status callback webhook

═══════════════════════════════════════════════════════════════════════════
TWILIO MESSAGES API
═══════════════════════════════════════════════════════════════════════════

    POST {base}/Accounts/{AccountSid}/Messages.json
        To=+15551234567
        From=+15557654321
        Body=ChoreMinder: Reminder - "Feed the cat" is pending. ...
        StatusCallback=https://.../api/v1/webhooks/delivery

    201 → {"sid": "SM…", "status": "queued", ...}
    400 → {"code": 21211, "message": "Invalid 'To' Phone Number"}

Phone numbers are normalised to E.164: non-digits are stripped and bare
10-digit numbers are treated as North American (prefixed with 1).

Default mode is simulation: nothing leaves the process, the message is
logged and a synthetic SID returned.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx

from backend.notifier.channels.base import SIMULATION, ProviderResult, request, simulated_id
from backend.notifier.scheduling.models import Channel
from backend.notifier.scheduling.templates import RenderedContent

logger = logging.getLogger(__name__)

SMS_SEGMENT_GSM7 = 160
SMS_SEGMENT_UCS2 = 70
_MULTIPART_GSM7 = 153
_MULTIPART_UCS2 = 67

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(number: str) -> str:
    """E.164 form of ``number`` (``"(555) 123-4567"`` → ``"+15551234567"``)."""
    digits = _NON_DIGITS.sub("", number or "")
    if len(digits) == 10 and not digits.startswith("1"):
        digits = "1" + digits
    return f"+{digits}" if digits else ""


def is_valid_phone(number: str) -> bool:
    digits = normalize_phone(number)[1:]
    return 8 <= len(digits) <= 15


def estimate_segments(body: str) -> int:
    """Number of SMS segments the carrier will bill for ``body``."""
    if not body:
        return 1
    unicode_body = any(ord(ch) > 127 for ch in body)
    single = SMS_SEGMENT_UCS2 if unicode_body else SMS_SEGMENT_GSM7
    if len(body) <= single:
        return 1
    part = _MULTIPART_UCS2 if unicode_body else _MULTIPART_GSM7
    return -(-len(body) // part)


class TwilioSMSProvider:
    """Twilio-backed SMS, or a logging simulation when ``mode="simulation"``."""

    channel = Channel.SMS
    address_prefix = ""

    def __init__(
        self,
        *,
        mode: str = SIMULATION,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        status_callback_url: Optional[str] = None,
        base_url: str = "https://api.twilio.com/2010-04-01",
        client: Optional[httpx.Client] = None,
    ):
        self.mode = mode
        if mode != SIMULATION and not (account_sid and auth_token and from_number and client):
            raise ValueError(
                f"{self.channel.value} provider '{mode}' needs account SID, "
                "auth token, sender number and an HTTP client"
            )
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from = from_number
        self._status_callback = status_callback_url
        self._base_url = base_url.rstrip("/")
        self._client = client

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_valid_phone(address)

    def _format_address(self, number: str) -> str:
        return f"{self.address_prefix}{normalize_phone(number)}"

    def send(self, address: str, content: RenderedContent) -> ProviderResult:
        """
        Send ``content.body`` to ``address``.

        Raises
        ------
        ProviderTransientError / ProviderPermanentError
            See ``channels.base.request``.
        """
        to = self._format_address(address)

        if self.mode == SIMULATION:
            logger.info(
                "[%s] → %s: %d chars (%d segments) '%s'",
                self.channel.value.upper(), to, len(content.body),
                estimate_segments(content.body),
                content.body[:80] + ("..." if len(content.body) > 80 else ""),
                extra={"channel": self.channel.value},
            )
            return ProviderResult(
                provider_message_id=simulated_id(self.channel),
                raw={"mode": "simulated", "to": to, "segments": estimate_segments(content.body)},
            )

        form: Dict[str, Any] = {
            "To": to,
            "From": f"{self.address_prefix}{self._from}",
            "Body": content.body,
        }
        if self._status_callback:
            form["StatusCallback"] = self._status_callback

        response = request(
            self._client,
            self.channel,
            "POST",
            f"{self._base_url}/Accounts/{self._account_sid}/Messages.json",
            data=form,
            auth=(self._account_sid, self._auth_token),
        )
        body = response.json()
        logger.info(
            "[%s/Twilio] %s → %s (%s)",
            self.channel.value.upper(), body.get("sid"), to, body.get("status"),
            extra={"channel": self.channel.value},
        )
        return ProviderResult(provider_message_id=body.get("sid"), raw=body)
