from __future__ import annotations

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .batching import Batcher, due_batches
from .channels import ChannelDispatcher, DeliveryOutcome
from .classifier import classify
from .config import DIGEST_CHANNELS, RoutingConfig
from .digest import build_digest
from .escalation import (
    DEFAULT_ESCALATION_RULES,
    EscalationEvaluator,
    EscalationRule,
    TargetResolver,
    metadata_target_resolver,
    retry_channels,
    retry_delay,
    should_retry,
)
from .exceptions import ConfigurationError
from .models import (
    BatchTier,
    Channel,
    DeliveryLogEntry,
    DeliveryStatus,
    DispatchRequest,
    Escalation,
    Notification,
    NotificationBatch,
    RecipientStatus,
    utcnow,
)
from .preferences import NotificationPreferences, load_preferences
from .routing import is_in_quiet_hours, select_channels

LOGGER = logging.getLogger(__name__)

StatusLookup = Callable[[str], Optional[RecipientStatus]]


@dataclass(slots=True)
class TickResult:
    batches: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    def merge(self, other: "TickResult") -> None:
        self.batches += other.batches
        self.sent += other.sent
        self.retried += other.retried
        self.failed += other.failed
        self.skipped += other.skipped


class NotificationService:
    """Classifies, routes, batches and delivers notifications for a store.

    The scheduler calls :meth:`tick` periodically to flush due batches and
    :meth:`run_escalations` to fire escalation rules. Producers call
    :meth:`submit`.
    """

    def __init__(
        self,
        store,
        dispatcher: ChannelDispatcher,
        *,
        config: Optional[RoutingConfig] = None,
        escalation_rules: Iterable[EscalationRule] = DEFAULT_ESCALATION_RULES,
        resolve_target: TargetResolver = metadata_target_resolver,
        status_for: Optional[StatusLookup] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or RoutingConfig()
        self.batcher = Batcher(self.config)
        self.escalations = EscalationEvaluator(escalation_rules, store, resolve_target)
        self.status_for = status_for
        self.clock = clock

    def preferences_for(self, recipient_id: str) -> Optional[NotificationPreferences]:
        return load_preferences(recipient_id, self.store.preferences_for(recipient_id))

    def _status(self, recipient_id: str, preferences: Optional[NotificationPreferences]) -> Optional[RecipientStatus]:
        if self.status_for is not None:
            return self.status_for(recipient_id)
        return preferences.recipient_status() if preferences else None

    def _suppression_reason(self, preferences, status, now: datetime) -> str:
        if status is not None and status.delegated:
            return f"suppressed: vacation mode, delegated to {status.delegate_id}"
        if preferences is not None and is_in_quiet_hours(preferences.quiet_hours, now, self.config):
            return "suppressed: quiet hours"
        return "suppressed: no enabled channel accepts this type"

    def _route(self, notification: Notification, now: datetime) -> None:
        preferences = self.preferences_for(notification.recipient_id)
        notification.routed_priority = classify(notification, preferences, now=now, config=self.config).priority
        status = self._status(notification.recipient_id, preferences)
        channels = select_channels(notification, preferences, status, now=now, config=self.config)
        tier, when = self.batcher.schedule(notification, preferences, now)
        notification.assign_route(channels, when, tier)
        if channels:
            notification.status = DeliveryStatus.PENDING
            return
        notification.status = DeliveryStatus.SUPPRESSED
        self.store.append_log(
            DeliveryLogEntry(
                notification_id=notification.id,
                channel=None,
                recipient=notification.recipient_id,
                sent_at=now,
                status=DeliveryStatus.SUPPRESSED,
                error=self._suppression_reason(preferences, status, now),
            )
        )

    def submit(self, notification: Notification, now: Optional[datetime] = None) -> Notification:
        now = now or self.clock()
        self._route(notification, now)
        self.store.save(notification)
        LOGGER.info(
            "Queued %s %s for %s: tier=%s channels=%s",
            notification.effective_priority.value,
            notification.type.value,
            notification.recipient_id,
            notification.batch_tier.value,
            ",".join(c.value for c in notification.channels) or "-",
        )
        return notification

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or self.clock()
        lease_cutoff = now - timedelta(minutes=self.config.claim_lease_minutes)
        released = self.store.release_stale(lease_cutoff)
        if released:
            LOGGER.warning("Released %d notifications whose dispatch claim expired before %s", released, lease_cutoff)

        pending = self.store.pending()
        for notification in pending:
            if notification.batch_tier is not None:
                continue
            try:
                self._route(notification, now)
            except ConfigurationError:
                LOGGER.exception("Could not route notification %s; leaving it pending", notification.id)
                continue
            self.store.save(notification)
        pending = [n for n in pending if n.status is DeliveryStatus.PENDING and n.batch_tier is not None]

        batches = self.batcher.batch(pending, now, self.preferences_for)
        by_recipient: Dict[str, List[NotificationBatch]] = defaultdict(list)
        for batch in due_batches(batches, now):
            by_recipient[batch.recipient_id].append(batch)

        result = TickResult()
        if not by_recipient:
            return result

        workers = max(1, min(self.config.max_workers, len(by_recipient)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify-recipient") as pool:
            futures = [pool.submit(self._flush_all, recipient_batches, now) for recipient_batches in by_recipient.values()]
            for future in futures:
                result.merge(future.result())
        LOGGER.info(
            "Flushed %d batches: %d sent, %d retrying, %d failed, %d skipped",
            result.batches,
            result.sent,
            result.retried,
            result.failed,
            result.skipped,
        )
        return result

    def _flush_all(self, batches: List[NotificationBatch], now: datetime) -> TickResult:
        result = TickResult()
        for batch in batches:
            result.merge(self.flush(batch, now))
        return result

    def flush(self, batch: NotificationBatch, now: Optional[datetime] = None) -> TickResult:
        """Deliver one batch; cancelled or already-claimed members are skipped."""
        now = now or self.clock()
        result = TickResult(batches=1)
        members: List[Notification] = []
        for notification in batch.notifications:
            if notification.is_cancelled or not self.store.claim(notification.id, now):
                result.skipped += 1
                continue
            notification.status = DeliveryStatus.DISPATCHING
            notification.claimed_at = now
            members.append(notification)
        if not members:
            return result

        outcomes: Dict[str, Dict[Channel, DeliveryOutcome]] = {m.id: {} for m in members}
        digest_channels = set()
        if batch.batch_tier is not BatchTier.INSTANT:
            payloads = {}
            for channel in DIGEST_CHANNELS:
                on_channel = [m for m in members if channel in m.channels]
                if on_channel:
                    payloads[channel] = build_digest(
                        batch.recipient_id, on_channel, batch.scheduled_send, batch.batch_tier, channel
                    )
            for channel, outcome in self.dispatcher.dispatch(payloads).items():
                digest_channels.add(channel)
                for member in members:
                    if channel in member.channels:
                        outcomes[member.id][channel] = outcome

        for member in members:
            direct = {
                channel: DispatchRequest(
                    recipient_id=member.recipient_id,
                    channel=channel,
                    title=member.title,
                    body=member.body,
                    actions=tuple(member.actions),
                    deep_link=member.deep_link,
                    notification_id=member.id,
                )
                for channel in member.channels
                if channel not in digest_channels
            }
            outcomes[member.id].update(self.dispatcher.dispatch(direct))

        for member in members:
            self._settle(member, outcomes[member.id], now, result)
        return result

    def _log(self, member: Notification, channel: Optional[Channel], status: DeliveryStatus, now: datetime, error=None) -> None:
        self.store.append_log(
            DeliveryLogEntry(
                notification_id=member.id,
                channel=channel,
                recipient=member.recipient_id,
                sent_at=now,
                status=status,
                error=error,
            )
        )

    def _settle(self, member: Notification, outcomes: Dict[Channel, DeliveryOutcome], now: datetime, result: TickResult) -> None:
        for channel, outcome in outcomes.items():
            self._log(member, channel, DeliveryStatus.SENT if outcome.ok else DeliveryStatus.FAILED, now, outcome.error)

        if any(outcome.ok for outcome in outcomes.values()):
            member.mark_sent(now)
            result.sent += 1
        else:
            failed = [channel for channel, outcome in outcomes.items() if not outcome.ok]
            retryable = any(outcome.retryable for outcome in outcomes.values())
            if retryable and should_retry(member, failed, self.config):
                member.retry_count += 1
                member.assign_route(
                    retry_channels(member, self.config),
                    now + timedelta(minutes=retry_delay(member, self.config)),
                )
                member.status = DeliveryStatus.PENDING
                result.retried += 1
                LOGGER.info("Retrying %s over %s at %s", member.id, ",".join(c.value for c in member.channels), member.scheduled_send)
            else:
                member.status = DeliveryStatus.FAILED
                reason = "retries exhausted" if retryable else "permanent delivery failure"
                self._log(member, None, DeliveryStatus.FAILED, now, reason)
                result.failed += 1
                LOGGER.warning("Delivery of %s to %s failed: %s", member.id, member.recipient_id, reason)
        self.store.save(member)

    def run_escalations(self, now: Optional[datetime] = None) -> List[Escalation]:
        now = now or self.clock()
        fired = self.escalations.evaluate(self.store.delivered(), now)
        for escalation in fired:
            if escalation.notification is not None:
                self.submit(escalation.notification, now)
        return fired

    def _update(self, notification_id: str, change: Callable[[Notification], None]) -> Optional[Notification]:
        notification = self.store.get(notification_id)
        if notification is None:
            LOGGER.warning("Notification %s not found", notification_id)
            return None
        change(notification)
        self.store.save(notification)
        return notification

    def mark_read(self, notification_id: str, now: Optional[datetime] = None) -> Optional[Notification]:
        when = now or self.clock()
        return self._update(notification_id, lambda n: n.mark_read(when))

    def mark_actioned(self, notification_id: str, now: Optional[datetime] = None) -> Optional[Notification]:
        when = now or self.clock()
        return self._update(notification_id, lambda n: n.mark_actioned(when))

    def cancel(self, notification_id: str) -> Optional[Notification]:
        return self._update(notification_id, lambda n: n.cancel())
