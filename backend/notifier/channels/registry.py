"""
registry.py — Builds the channel → provider map from settings.

A channel whose provider is misconfigured is left out of the map (with a
warning) rather than failing startup; the router then skips that channel.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import httpx

from backend.notifier.channels.base import SIMULATION, ChannelProvider
from backend.notifier.channels.email import ResendEmailProvider
from backend.notifier.channels.sms import TwilioSMSProvider
from backend.notifier.channels.whatsapp import TwilioWhatsAppProvider
from backend.notifier.core.config import Settings
from backend.notifier.scheduling.models import Channel

logger = logging.getLogger(__name__)


def needs_http(config: Settings) -> bool:
    return any(
        mode != SIMULATION
        for mode in (config.SMS_PROVIDER, config.WHATSAPP_PROVIDER, config.EMAIL_PROVIDER)
    )


def build_providers(
    config: Settings,
    http_client: Optional[httpx.Client] = None,
) -> Dict[Channel, ChannelProvider]:
    """
    Instantiate one provider per channel.

    Parameters
    ----------
    config : Settings
    http_client : httpx.Client | None
        Shared client for real providers; unused in simulation mode.

    Returns
    -------
    dict
        Channel → provider, omitting channels that could not be configured.
    """
    providers: Dict[Channel, ChannelProvider] = {}

    twilio_kwargs = dict(
        account_sid=config.TWILIO_ACCOUNT_SID,
        auth_token=config.TWILIO_AUTH_TOKEN,
        status_callback_url=config.TWILIO_STATUS_CALLBACK_URL,
        base_url=config.TWILIO_API_BASE_URL,
        client=http_client,
    )
    factories = {
        Channel.SMS: lambda: TwilioSMSProvider(
            mode=config.SMS_PROVIDER,
            from_number=config.TWILIO_PHONE_NUMBER,
            **twilio_kwargs,
        ),
        Channel.WHATSAPP: lambda: TwilioWhatsAppProvider(
            mode=config.WHATSAPP_PROVIDER,
            from_number=config.TWILIO_WHATSAPP_NUMBER or config.TWILIO_PHONE_NUMBER,
            **twilio_kwargs,
        ),
        Channel.EMAIL: lambda: ResendEmailProvider(
            mode=config.EMAIL_PROVIDER,
            api_key=config.RESEND_API_KEY,
            from_address=config.EMAIL_FROM,
            blocklist=config.EMAIL_BLOCKLIST,
            base_url=config.RESEND_API_BASE_URL,
            client=http_client,
        ),
    }

    for channel, factory in factories.items():
        try:
            providers[channel] = factory()
        except ValueError as exc:
            logger.warning("Channel %s disabled: %s", channel.value, exc)

    logger.info(
        "Providers: %s",
        ", ".join(f"{c.value}={getattr(p, 'mode', '?')}" for c, p in providers.items()) or "none",
    )
    return providers
