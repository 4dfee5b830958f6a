"""Channel selection for a single notification."""
from __future__ import annotations

import logging
from datetime import datetime, time
from typing import Optional, Tuple

from .classifier import effective_priority
from .config import CRITICAL_CHANNELS, QUIET_HOURS_CRITICAL_CHANNELS, RoutingConfig
from .models import Channel, Notification, Priority, RecipientStatus, ordered_channels, utcnow
from .preferences import NotificationPreferences, QuietHours

LOGGER = logging.getLogger(__name__)


def _minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def is_in_quiet_hours(quiet_hours: QuietHours, now: datetime, config: Optional[RoutingConfig] = None) -> bool:
    """True when ``now`` (local time) falls inside the window; handles windows past midnight."""
    if not quiet_hours.enabled:
        return False
    local = config.localize(now) if config else now
    current = local.hour * 60 + local.minute
    start = _minutes(quiet_hours.start)
    end = _minutes(quiet_hours.end)
    if start == end:
        return False
    if start < end:
        return start <= current < end
    return current >= start or current < end


def default_channels(notification: Notification, config: RoutingConfig) -> Tuple[Channel, ...]:
    return ordered_channels(config.rule_for(notification.effective_priority).default_channels)


def select_channels(
    notification: Notification,
    preferences: Optional[NotificationPreferences],
    status: Optional[RecipientStatus] = None,
    *,
    now: Optional[datetime] = None,
    config: Optional[RoutingConfig] = None,
) -> Tuple[Channel, ...]:
    """Ordered channels to attempt; an empty tuple means suppressed."""
    config = config or RoutingConfig()
    now = now or utcnow()
    priority = effective_priority(notification, preferences)

    if preferences is None:
        return default_channels(notification, config)

    if priority is Priority.CRITICAL:
        return CRITICAL_CHANNELS

    if status is not None and status.delegated:
        LOGGER.info(
            "Suppressing %s for %s: on vacation, delegated to %s",
            notification.id,
            notification.recipient_id,
            status.delegate_id,
        )
        return ()

    if is_in_quiet_hours(preferences.quiet_hours, now, config):
        if priority is Priority.CRITICAL:
            return QUIET_HOURS_CRITICAL_CHANNELS
        LOGGER.info("Suppressing %s for %s: quiet hours", notification.id, notification.recipient_id)
        return ()

    override = preferences.override_for(notification.type)
    if override is not None and override.channels is not None:
        return tuple(c for c in override.channels if preferences.channel_config(c).enabled)

    return tuple(c for c in preferences.enabled_channels() if preferences.channel_config(c).accepts(notification.type))
