"""Retry policy for failed deliveries and escalation rules for unanswered notifications."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .config import RoutingConfig
from .models import (
    Channel,
    DeliveryStatus,
    Escalation,
    Notification,
    NotificationType,
    Priority,
    RelatedEntity,
    ordered_channels,
    utcnow,
)
from .templates import create_notification

LOGGER = logging.getLogger(__name__)

MAX_RETRY_CYCLES = 1


def should_retry(notification: Notification, failed_channels: Sequence[Channel], config: Optional[RoutingConfig] = None) -> bool:
    rule = (config or RoutingConfig()).rule_for(notification.effective_priority)
    if rule.retry is None or not failed_channels:
        return False
    return notification.retry_count < MAX_RETRY_CYCLES


def retry_channels(notification: Notification, config: Optional[RoutingConfig] = None) -> Tuple[Channel, ...]:
    rule = (config or RoutingConfig()).rule_for(notification.effective_priority)
    return ordered_channels(rule.retry.channels) if rule.retry else ()


def retry_delay(notification: Notification, config: Optional[RoutingConfig] = None) -> int:
    """Minutes to wait before the retry attempt."""
    rule = (config or RoutingConfig()).rule_for(notification.effective_priority)
    return rule.retry.after_minutes if rule.retry else 0


class TriggerKind(str, Enum):
    NO_RESPONSE = "no_response"
    DEADLINE_APPROACHING = "deadline_approaching"
    SLA_BREACH = "sla_breach"


class EscalationTarget(str, Enum):
    MANAGER = "manager"
    HR_DIRECTOR = "hr_director"
    C_LEVEL = "c_level"


class EscalationAction(str, Enum):
    NOTIFY = "notify"
    REASSIGN = "reassign"
    AUTO_APPROVE = "auto_approve"


class EscalationState(str, Enum):
    NOT_FIRED = "not_fired"
    FIRED = "fired"
    RESOLVED = "resolved"


@dataclass(slots=True, frozen=True)
class EscalationRule:
    id: str
    name: str
    trigger: TriggerKind
    after_hours: float
    escalate_to: EscalationTarget
    action: EscalationAction = EscalationAction.NOTIFY
    notification_type: Optional[NotificationType] = None
    description: Optional[str] = None
    enabled: bool = True

    def applies_to(self, notification: Notification) -> bool:
        if not self.enabled:
            return False
        return self.notification_type is None or self.notification_type == notification.type


DEFAULT_ESCALATION_RULES: Tuple[EscalationRule, ...] = (
    EscalationRule(
        id="poortwachter-week1-contact",
        name="Week 1 contact not confirmed",
        trigger=TriggerKind.NO_RESPONSE,
        after_hours=24,
        escalate_to=EscalationTarget.MANAGER,
        notification_type=NotificationType.POORTWACHTER_WEEK1,
    ),
    EscalationRule(
        id="poortwachter-week6-analysis",
        name="Week 6 problem analysis not started",
        trigger=TriggerKind.NO_RESPONSE,
        after_hours=12,
        escalate_to=EscalationTarget.HR_DIRECTOR,
        notification_type=NotificationType.POORTWACHTER_WEEK6,
    ),
    EscalationRule(
        id="leave-approval-pending",
        name="Leave request pending",
        trigger=TriggerKind.SLA_BREACH,
        after_hours=48,
        escalate_to=EscalationTarget.HR_DIRECTOR,
        notification_type=NotificationType.LEAVE_APPROVAL_NEEDED,
    ),
)

# (role, source notification) -> recipient id of the escalation target
TargetResolver = Callable[[EscalationTarget, Notification], Optional[str]]


def metadata_target_resolver(role: EscalationTarget, notification: Notification) -> Optional[str]:
    """Producers put e.g. ``manager_id`` in metadata; env vars name org-wide fallbacks."""
    return notification.metadata.get(f"{role.value}_id") or os.getenv(f"NOTIFY_ESCALATE_{role.value.upper()}")


def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


class EscalationEvaluator:
    """Fires each rule at most once per notification.

    State per (notification id, rule id) lives in the store and only moves
    forward: not_fired -> fired, or either of those -> resolved once the
    recipient acts on the notification.
    """

    def __init__(self, rules: Iterable[EscalationRule], store, resolve_target: TargetResolver) -> None:
        self.rules = tuple(rules)
        self.store = store
        self.resolve_target = resolve_target

    def triggered(self, rule: EscalationRule, notification: Notification, now: datetime) -> bool:
        if rule.trigger is TriggerKind.NO_RESPONSE:
            if notification.status is DeliveryStatus.FAILED:
                return True
            return notification.sent_at is not None and _hours_between(notification.sent_at, now) >= rule.after_hours
        if rule.trigger is TriggerKind.DEADLINE_APPROACHING:
            return notification.deadline is not None and _hours_between(now, notification.deadline) <= rule.after_hours
        if rule.trigger is TriggerKind.SLA_BREACH:
            return _hours_between(notification.created_at, now) >= rule.after_hours
        return False

    def evaluate(self, notifications: Iterable[Notification], now: Optional[datetime] = None) -> List[Escalation]:
        now = now or utcnow()
        fired: List[Escalation] = []
        for notification in notifications:
            if notification.is_cancelled:
                continue
            for rule in self.rules:
                if not rule.applies_to(notification):
                    continue
                if notification.actioned:
                    if self.store.escalation_state(notification.id, rule.id) is not EscalationState.RESOLVED:
                        self.store.resolve_escalation(notification.id, rule.id)
                    continue
                if not self.triggered(rule, notification, now):
                    continue
                escalation = self._fire(rule, notification, now)
                if escalation is not None:
                    fired.append(escalation)
        return fired

    def _fire(self, rule: EscalationRule, notification: Notification, now: datetime) -> Optional[Escalation]:
        if self.store.escalation_state(notification.id, rule.id) is not EscalationState.NOT_FIRED:
            return None
        target = self.resolve_target(rule.escalate_to, notification)
        if not target:
            LOGGER.warning(
                "No %s found to escalate notification %s under rule %s",
                rule.escalate_to.value,
                notification.id,
                rule.id,
            )
            return None
        if not self.store.fire_escalation(notification.id, rule.id):
            return None

        reason = f"{rule.description or rule.name} (after {rule.after_hours:g} hours)."
        escalation_notification = None
        if rule.action is not EscalationAction.AUTO_APPROVE:
            escalation_notification = create_notification(
                target,
                NotificationType.ESCALATION_RAISED,
                {"subject": notification.title, "reason": reason},
                priority=Priority.CRITICAL if rule.escalate_to is EscalationTarget.C_LEVEL else Priority.HIGH,
                related_entity=notification.related_entity or RelatedEntity("notification", notification.id),
                deep_link=notification.deep_link,
                metadata={
                    "escalation_rule": rule.id,
                    "escalation_action": rule.action.value,
                    "escalated_from": notification.recipient_id,
                    "source_notification": notification.id,
                },
                created_at=now,
            )
        LOGGER.info("Escalated notification %s to %s under rule %s", notification.id, target, rule.id)
        return Escalation(
            notification_id=notification.id,
            rule_id=rule.id,
            escalated_from=notification.recipient_id,
            escalated_to=target,
            action=rule.action.value,
            reason=reason,
            created_at=now,
            notification=escalation_notification,
        )
