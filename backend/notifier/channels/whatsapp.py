"""
whatsapp.py — WhatsApp delivery via Twilio.

Same Messages API as SMS; both ``To`` and ``From`` carry a
``whatsapp:`` prefix (``whatsapp:+15551234567``). Bodies may be up to
4096 characters and are not split into segments.
"""

from __future__ import annotations

from backend.notifier.channels.sms import TwilioSMSProvider
from backend.notifier.scheduling.models import Channel


class TwilioWhatsAppProvider(TwilioSMSProvider):
    channel = Channel.WHATSAPP
    address_prefix = "whatsapp:"

    def validate_address(self, address: str) -> bool:
        if address and address.startswith(self.address_prefix):
            address = address[len(self.address_prefix):]
        return super().validate_address(address)

    def _format_address(self, number: str) -> str:
        if number.startswith(self.address_prefix):
            number = number[len(self.address_prefix):]
        return super()._format_address(number)
