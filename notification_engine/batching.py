from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .classifier import classify, effective_priority
from .config import RoutingConfig
from .models import BatchTier, Notification, NotificationBatch, Priority, utcnow
from .preferences import NotificationPreferences

LOGGER = logging.getLogger(__name__)

PreferencesLookup = Callable[[str], Optional[NotificationPreferences]]


def compute_scheduled_send(tier: BatchTier, now: datetime, config: Optional[RoutingConfig] = None) -> datetime:
    """Send time for a tier: now, in an hour, next digest hour, or next digest weekday."""
    config = config or RoutingConfig()
    tier = BatchTier(tier)
    if now.tzinfo is None:
        now = config.localize(now)
    if tier is BatchTier.INSTANT:
        return now
    if tier is BatchTier.HOURLY:
        return now + timedelta(hours=1)

    local = config.localize(now)
    if tier is BatchTier.DAILY:
        target = local.replace(hour=config.digest_hour, minute=0, second=0, microsecond=0)
        if target < local:
            target += timedelta(days=1)
        return target

    days_ahead = (config.digest_weekday - local.weekday()) % 7
    target = (local + timedelta(days=days_ahead)).replace(hour=config.digest_hour, minute=0, second=0, microsecond=0)
    if target < local:
        target += timedelta(days=7)
    return target


def should_batch(notification: Notification, preferences: Optional[NotificationPreferences]) -> bool:
    if effective_priority(notification, preferences) is Priority.CRITICAL:
        return False
    if notification.retry_count > 0:
        return False
    digest_preference = preferences.digest_preference if preferences else "daily"
    return digest_preference != "instant"


class Batcher:
    """Groups pending notifications into per-recipient, per-tier batches."""

    def __init__(self, config: Optional[RoutingConfig] = None) -> None:
        self.config = config or RoutingConfig()

    def schedule(
        self,
        notification: Notification,
        preferences: Optional[NotificationPreferences],
        now: datetime,
    ) -> Tuple[BatchTier, datetime]:
        now = self.config.localize(now) if now.tzinfo is None else now
        if not should_batch(notification, preferences):
            return BatchTier.INSTANT, now
        tier = classify(notification, preferences, now=now, config=self.config).batch_tier
        return tier, compute_scheduled_send(tier, now, self.config)

    def batch(
        self,
        notifications: Iterable[Notification],
        now: Optional[datetime] = None,
        preferences_for: Optional[PreferencesLookup] = None,
    ) -> Dict[str, List[NotificationBatch]]:
        now = now or utcnow()
        if now.tzinfo is None:
            now = self.config.localize(now)
        batches: Dict[str, List[NotificationBatch]] = {}
        grouped: Dict[Tuple[str, BatchTier], NotificationBatch] = {}

        for notification in notifications:
            if notification.is_cancelled or notification.is_sent:
                continue
            preferences = preferences_for(notification.recipient_id) if preferences_for else None
            if notification.batch_tier is None or notification.scheduled_send is None:
                tier, when = self.schedule(notification, preferences, now)
                notification.assign_route(notification.channels, when, tier)

            recipient_batches = batches.setdefault(notification.recipient_id, [])
            if not should_batch(notification, preferences):
                single = NotificationBatch(
                    recipient_id=notification.recipient_id,
                    batch_tier=notification.batch_tier,
                    scheduled_send=notification.scheduled_send,
                )
                single.add(notification)
                recipient_batches.append(single)
                continue

            key = (notification.recipient_id, notification.batch_tier)
            batch = grouped.get(key)
            if batch is None:
                batch = NotificationBatch(
                    recipient_id=notification.recipient_id,
                    batch_tier=notification.batch_tier,
                    scheduled_send=notification.scheduled_send,
                )
                grouped[key] = batch
                recipient_batches.append(batch)
            elif notification.scheduled_send < batch.scheduled_send:
                batch.scheduled_send = notification.scheduled_send
            batch.add(notification)

        return {recipient: items for recipient, items in batches.items() if items}


def due_batches(batches: Dict[str, List[NotificationBatch]], now: datetime) -> List[NotificationBatch]:
    return [batch for items in batches.values() for batch in items if batch.scheduled_send <= now]
