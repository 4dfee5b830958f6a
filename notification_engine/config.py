"""Shared configuration defaults for the notification engine."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import ConfigurationError
from .models import Channel, Priority

LOGGER = logging.getLogger(__name__)

ALL_CHANNELS: Tuple[Channel, ...] = (Channel.IN_APP, Channel.EMAIL, Channel.SMS, Channel.PUSH)
CRITICAL_CHANNELS: Tuple[Channel, ...] = (Channel.IN_APP, Channel.EMAIL, Channel.SMS)
QUIET_HOURS_CRITICAL_CHANNELS: Tuple[Channel, ...] = (Channel.IN_APP, Channel.EMAIL)
# Channels able to carry a multi-item digest.
DIGEST_CHANNELS: Tuple[Channel, ...] = (Channel.IN_APP, Channel.EMAIL)

DEFAULT_DIGEST_HOUR = 9
DEFAULT_DIGEST_WEEKDAY = 0  # Monday
DEFAULT_DEADLINE_HOURS = 72
DEFAULT_CHANNEL_TIMEOUT = 10.0
DEFAULT_MAX_WORKERS = 4
# A claim older than this belongs to a worker that died mid-flush.
DEFAULT_CLAIM_LEASE_MINUTES = 15

VALID_DIGEST_PREFERENCES = {"instant", "hourly", "daily", "weekly"}


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    after_minutes: int
    channels: Tuple[Channel, ...]


@dataclass(slots=True, frozen=True)
class RoutingRule:
    """Static routing for one priority tier."""

    priority: Priority
    default_channels: Tuple[Channel, ...]
    deadline_hours: Optional[int] = None
    retry: Optional[RetryPolicy] = None


DEFAULT_ROUTING_RULES: Tuple[RoutingRule, ...] = (
    RoutingRule(
        priority=Priority.CRITICAL,
        default_channels=ALL_CHANNELS,
        deadline_hours=24,
        retry=RetryPolicy(after_minutes=120, channels=(Channel.SMS, Channel.EMAIL)),
    ),
    RoutingRule(
        priority=Priority.HIGH,
        default_channels=(Channel.IN_APP, Channel.EMAIL, Channel.PUSH),
        deadline_hours=72,
    ),
    RoutingRule(priority=Priority.NORMAL, default_channels=(Channel.IN_APP, Channel.EMAIL)),
    RoutingRule(priority=Priority.LOW, default_channels=(Channel.IN_APP,)),
)


def _zone_exists(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _timezone_from_env() -> str:
    name = os.getenv("NOTIFY_TIMEZONE", os.getenv("CELERY_TIMEZONE", "UTC"))
    if _zone_exists(name):
        return name
    LOGGER.warning("Unknown timezone %r in environment; falling back to UTC", name)
    return "UTC"


def _rules_by_priority(rules) -> Dict[Priority, RoutingRule]:
    return {rule.priority: rule for rule in rules}


@dataclass(slots=True, frozen=True)
class RoutingConfig:
    """Immutable engine configuration passed in at construction time."""

    rules: Mapping[Priority, RoutingRule] = field(default_factory=lambda: _rules_by_priority(DEFAULT_ROUTING_RULES))
    timezone: str = "UTC"
    digest_hour: int = DEFAULT_DIGEST_HOUR
    digest_weekday: int = DEFAULT_DIGEST_WEEKDAY
    default_deadline_hours: int = DEFAULT_DEADLINE_HOURS
    channel_timeout: float = DEFAULT_CHANNEL_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    claim_lease_minutes: int = DEFAULT_CLAIM_LEASE_MINUTES

    def __post_init__(self) -> None:
        if not _zone_exists(self.timezone):
            raise ConfigurationError(f"Unknown timezone: {self.timezone!r}")
        missing = [p.value for p in Priority if p not in self.rules]
        if missing:
            raise ValueError(f"Routing rules missing for priorities: {', '.join(missing)}")
        if not 0 <= self.digest_hour <= 23:
            raise ValueError("digest_hour must be between 0 and 23")
        if not 0 <= self.digest_weekday <= 6:
            raise ValueError("digest_weekday must be between 0 (Monday) and 6 (Sunday)")
        for rule in self.rules.values():
            if rule.retry and not set(rule.retry.channels) <= set(rule.default_channels):
                raise ValueError(f"Retry channels for {rule.priority.value} must narrow its default channels")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def localize(self, moment: datetime) -> datetime:
        """Express ``moment`` in the configured zone; naive values are taken as local."""
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def rule_for(self, priority: Priority) -> RoutingRule:
        return self.rules.get(Priority(priority), self.rules[Priority.NORMAL])

    @classmethod
    def from_env(cls) -> "RoutingConfig":
        return cls(
            timezone=_timezone_from_env(),
            digest_hour=int(os.getenv("NOTIFY_DIGEST_HOUR", str(DEFAULT_DIGEST_HOUR))),
            digest_weekday=int(os.getenv("NOTIFY_DIGEST_WEEKDAY", str(DEFAULT_DIGEST_WEEKDAY))),
            default_deadline_hours=int(os.getenv("NOTIFY_DEFAULT_DEADLINE_HOURS", str(DEFAULT_DEADLINE_HOURS))),
            channel_timeout=float(os.getenv("NOTIFY_CHANNEL_TIMEOUT", str(DEFAULT_CHANNEL_TIMEOUT))),
            max_workers=int(os.getenv("NOTIFY_MAX_WORKERS", str(DEFAULT_MAX_WORKERS))),
            claim_lease_minutes=int(os.getenv("NOTIFY_CLAIM_LEASE_MINUTES", str(DEFAULT_CLAIM_LEASE_MINUTES))),
        )
