"""
router.py — Channel selection and quiet-hours deferral.

═══════════════════════════════════════════════════════════════════════════
ROUTING STEPS
═══════════════════════════════════════════════════════════════════════════

    1. Load the recipient's ChannelPreference (or the default order)
    2. Notification type disabled?      → no channels, reason=type_disabled
    3. Inside quiet hours and not URGENT → defer_until = window end
    4. Order = message snapshot if any, else preference order
    5. Drop channels with no configured provider

Quiet hours are evaluated in the recipient's own timezone, so a
22:00 → 07:00 window in Europe/Berlin defers a message created at
23:30 Berlin time to 07:00 Berlin time the next morning, whatever the
server clock says.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Collection, List, Optional, Sequence

from backend.notifier.scheduling.models import (
    Channel,
    ChannelPreference,
    NotificationType,
    Priority,
    RouteDecision,
)
from backend.notifier.scheduling.recipients import RecipientDirectory

logger = logging.getLogger(__name__)


class ChannelRouter:
    """Decides which channels to try, in which order, and when."""

    def __init__(
        self,
        directory: RecipientDirectory,
        *,
        default_channels: Sequence[Channel],
        available_channels: Collection[Channel],
    ):
        self._directory = directory
        self.default_preference = ChannelPreference(channels=list(default_channels))
        self._available = {Channel(c) for c in available_channels}

    def preference_for(self, recipient_id: str) -> ChannelPreference:
        return self._directory.preference_for(recipient_id) or self.default_preference

    def is_available(self, channel: Channel) -> bool:
        return channel in self._available

    def ordered_channels(self, recipient_id: str) -> List[Channel]:
        """Preference order restricted to channels with a provider."""
        return [c for c in self.preference_for(recipient_id).channels if c in self._available]

    def route(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        now: datetime,
        *,
        priority: Priority = Priority.MEDIUM,
        snapshot: Optional[Sequence[Channel]] = None,
    ) -> RouteDecision:
        """
        Ordered fallback list for a recipient, or a deferral.

        Parameters
        ----------
        recipient_id : str
        notification_type : NotificationType
        now : datetime
            Aware UTC instant used for the quiet-hours check.
        priority : Priority
            URGENT skips quiet hours.
        snapshot : sequence of Channel | None
            Channel order frozen on the message; used instead of the current
            preference order when given.

        Returns
        -------
        RouteDecision
        """
        pref = self.preference_for(recipient_id)

        if not pref.allows(notification_type):
            logger.info(
                "Recipient %s disabled %s notifications",
                recipient_id, notification_type.value,
                extra={"recipient_id": recipient_id},
            )
            return RouteDecision(channels=[], reason="type_disabled")

        quiet = pref.quiet_hours
        if quiet is not None and priority != Priority.URGENT and quiet.contains(now):
            defer_until = quiet.window_end(now)
            logger.info(
                "Quiet hours for %s, deferring to %s",
                recipient_id, defer_until.isoformat(),
                extra={"recipient_id": recipient_id},
            )
            return RouteDecision(defer_until=defer_until, reason="quiet_hours")

        order: List[Channel] = list(snapshot) if snapshot else list(pref.channels)
        channels = [c for c in order if c in self._available]
        if not channels:
            return RouteDecision(channels=[], reason="no_provider")
        return RouteDecision(channels=channels)
