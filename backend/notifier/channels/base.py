"""
base.py — Provider interface and shared HTTP error classification.

═══════════════════════════════════════════════════════════════════════════
ERROR CLASSIFICATION
═══════════════════════════════════════════════════════════════════════════

    Failure                              Class        Worker reaction
    ──────────────────────────────────   ──────────   ─────────────────────
    timeout / connection error           transient    retry same channel
    HTTP 429, HTTP 5xx                   transient    retry same channel
    HTTP 4xx (bad number, unsubscribed)  permanent    next channel at once
    address fails validate_address       permanent    next channel at once
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from backend.notifier.core.errors import ProviderPermanentError, ProviderTransientError
from backend.notifier.scheduling.models import Channel, DeliveryOutcome
from backend.notifier.scheduling.templates import RenderedContent

logger = logging.getLogger(__name__)

SIMULATION = "simulation"


@dataclass(frozen=True)
class ProviderResult:
    """What a provider reports for one accepted send."""
    provider_message_id: Optional[str]
    outcome: DeliveryOutcome = DeliveryOutcome.SENT
    raw: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ChannelProvider(Protocol):
    channel: Channel

    def send(self, address: str, content: RenderedContent) -> ProviderResult:
        ...

    def validate_address(self, address: str) -> bool:
        ...


def simulated_id(channel: Channel) -> str:
    return f"SIM-{channel.value.upper()}-{uuid.uuid4().hex[:12]}"


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    code = body.get("code") or body.get("name")
    return str(code) if code is not None else None


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:200]


def request(
    client: httpx.Client,
    channel: Channel,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform a provider HTTP call, translating failures into ProviderErrors.

    Raises
    ------
    ProviderTransientError
        Timeout, transport failure, HTTP 429 or 5xx.
    ProviderPermanentError
        Any other non-2xx response.
    """
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise ProviderTransientError(channel.value, f"timeout: {exc}", error_code="timeout") from exc
    except httpx.TransportError as exc:
        raise ProviderTransientError(channel.value, f"transport error: {exc}", error_code="transport") from exc

    if response.is_success:
        return response

    code = _error_code(response) or str(response.status_code)
    text = f"HTTP {response.status_code}: {_error_text(response)}"
    if response.status_code == 429 or response.status_code >= 500:
        raise ProviderTransientError(channel.value, text, error_code=code)
    raise ProviderPermanentError(channel.value, text, error_code=code)
