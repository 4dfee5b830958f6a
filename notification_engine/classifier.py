"""Priority and batch-tier classification."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from .config import RoutingConfig
from .models import BatchTier, Notification, NotificationType, Priority, utcnow
from .preferences import NotificationPreferences

# Used when a routing rule carries no deadline window.
INSTANT_DEADLINE_HOURS = 24
HOURLY_DEADLINE_HOURS = 72

DEADLINE_TYPES = frozenset(
    {
        NotificationType.POORTWACHTER_WEEK1,
        NotificationType.POORTWACHTER_WEEK6,
        NotificationType.POORTWACHTER_WEEK42,
        NotificationType.POORTWACHTER_DEADLINE_APPROACHING,
        NotificationType.POORTWACHTER_DEADLINE_MISSED,
        NotificationType.CONTRACT_EXPIRING,
        NotificationType.CERTIFICATE_EXPIRING,
        NotificationType.CONTRACT_RENEWAL_NEEDED,
        NotificationType.PERFORMANCE_REVIEW_DUE,
        NotificationType.DOCUMENT_SIGNATURE_NEEDED,
        NotificationType.TASK_OVERDUE,
    }
)

COMPLIANCE_FLAGS = ("legal_compliance", "wet_poortwachter", "compliance_required")

# "3 days", "1 day", and the Dutch "2 dagen" that older producers still emit.
_DAYS_PATTERN = re.compile(r"(\d+)\s*(?:days?|dag(?:en)?)\b", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class Classification:
    priority: Priority
    batch_tier: BatchTier


def effective_priority(notification: Notification, preferences: Optional[NotificationPreferences] = None) -> Priority:
    if preferences is not None:
        override = preferences.override_for(notification.type)
        if override is not None and override.priority is not None:
            return override.priority
    return Priority(notification.priority)


def concerns_deadline(notification: Notification) -> bool:
    if notification.deadline is not None:
        return True
    if notification.type in DEADLINE_TYPES:
        return True
    if any(notification.metadata.get(flag) is True for flag in COMPLIANCE_FLAGS):
        return True
    return bool(notification.deep_link and "deadline" in notification.deep_link)


def deadline_windows(config: RoutingConfig) -> Tuple[float, float]:
    """Hours left below which a deadline forces the instant and hourly tiers.

    The critical rule's ``deadline_hours`` bounds the instant window and the
    high rule's bounds the hourly one.
    """
    instant = config.rule_for(Priority.CRITICAL).deadline_hours or INSTANT_DEADLINE_HOURS
    hourly = config.rule_for(Priority.HIGH).deadline_hours or HOURLY_DEADLINE_HOURS
    return instant, hourly


def estimate_hours_until_deadline(notification: Notification, now: datetime, config: RoutingConfig) -> float:
    """Best-effort hours left until the notification's deadline.

    An explicit ``deadline`` wins. Otherwise the first "N day(s)" in the body
    is used, and when nothing parses the configured default applies.
    """
    if notification.deadline is not None:
        delta = config.localize(notification.deadline) - config.localize(now)
        return delta.total_seconds() / 3600
    match = _DAYS_PATTERN.search(notification.body or "")
    if match:
        return int(match.group(1)) * 24
    return float(config.default_deadline_hours)


def classify(
    notification: Notification,
    preferences: Optional[NotificationPreferences] = None,
    *,
    now: Optional[datetime] = None,
    config: Optional[RoutingConfig] = None,
) -> Classification:
    config = config or RoutingConfig()
    now = now or utcnow()
    priority = effective_priority(notification, preferences)

    if priority is Priority.CRITICAL:
        return Classification(priority, BatchTier.INSTANT)

    if concerns_deadline(notification):
        hours = estimate_hours_until_deadline(notification, now, config)
        instant_window, hourly_window = deadline_windows(config)
        if hours < instant_window:
            return Classification(priority, BatchTier.INSTANT)
        if hours < hourly_window:
            return Classification(priority, BatchTier.HOURLY)

    if priority is Priority.HIGH:
        return Classification(priority, BatchTier.HOURLY)
    if priority is Priority.LOW:
        return Classification(priority, BatchTier.WEEKLY)
    return Classification(priority, BatchTier.DAILY)
