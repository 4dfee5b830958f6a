from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .exceptions import InvariantViolation, NotificationFrozenError


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


# Canonical channel ordering used for every channel set the engine returns.
CHANNEL_ORDER: Tuple[Channel, ...] = (Channel.IN_APP, Channel.EMAIL, Channel.SMS, Channel.PUSH)


def ordered_channels(channels) -> Tuple[Channel, ...]:
    wanted = {Channel(c) for c in channels}
    return tuple(c for c in CHANNEL_ORDER if c in wanted)


class BatchTier(str, Enum):
    INSTANT = "instant"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class NotificationType(str, Enum):
    # Wet Poortwachter sick-leave deadlines
    POORTWACHTER_WEEK1 = "poortwachter_week1"
    POORTWACHTER_WEEK6 = "poortwachter_week6"
    POORTWACHTER_WEEK42 = "poortwachter_week42"
    POORTWACHTER_DEADLINE_APPROACHING = "poortwachter_deadline_approaching"
    POORTWACHTER_DEADLINE_MISSED = "poortwachter_deadline_missed"

    CONTRACT_EXPIRING = "contract_expiring"
    CERTIFICATE_EXPIRING = "certificate_expiring"
    CONTRACT_RENEWAL_NEEDED = "contract_renewal_needed"

    PERFORMANCE_REVIEW_DUE = "performance_review_due"
    PERFORMANCE_REVIEW_SCHEDULED = "performance_review_scheduled"

    LEAVE_APPROVAL_NEEDED = "leave_approval_needed"
    OVERTIME_APPROVAL_NEEDED = "overtime_approval_needed"
    DOCUMENT_SIGNATURE_NEEDED = "document_signature_needed"
    BUDGET_APPROVAL_NEEDED = "budget_approval_needed"
    EXPENSE_APPROVAL_NEEDED = "expense_approval_needed"

    CASE_STATUS_CHANGED = "case_status_changed"
    TASK_ASSIGNED = "task_assigned"
    TASK_COMPLETED = "task_completed"
    TASK_OVERDUE = "task_overdue"

    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_READY_FOR_SIGNING = "document_ready_for_signing"

    NEW_TEAM_MEMBER = "new_team_member"
    TEAM_MEMBER_ONBOARDING = "team_member_onboarding"
    TEAM_MEMBER_OFFBOARDING = "team_member_offboarding"

    TIMESHEET_MISSING = "timesheet_missing"
    MEETING_UPCOMING = "meeting_upcoming"

    BIRTHDAY_TODAY = "birthday_today"
    WORK_ANNIVERSARY = "work_anniversary"
    COLLEAGUE_ACHIEVEMENT = "colleague_achievement"

    SYSTEM_UPDATE = "system_update"
    MAINTENANCE_SCHEDULED = "maintenance_scheduled"

    ESCALATION_RAISED = "escalation_raised"


class ActionKind(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    VIEW = "view"
    SNOOZE = "snooze"
    COMPLETE = "complete"
    CUSTOM = "custom"


class ActionStyle(str, Enum):
    PRIMARY = "primary"
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"
    CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class NotificationAction:
    """Button rendered next to a notification (approve, view, ...)."""

    label: str
    kind: ActionKind = ActionKind.VIEW
    style: ActionStyle = ActionStyle.DEFAULT
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "kind": self.kind.value, "style": self.style.value, "url": self.url}


@dataclass(slots=True, frozen=True)
class RelatedEntity:
    kind: str  # case, leave_request, task, ...
    id: str


@dataclass(slots=True)
class Notification:
    """A single event addressed to exactly one recipient.

    Content and identity are fixed at creation. Routing (``channels`` and
    ``scheduled_send``) is assigned by the engine and frozen once ``sent_at``
    is recorded; afterwards only the read/actioned markers may change.
    """

    recipient_id: str
    type: NotificationType
    priority: Priority
    title: str
    body: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    actions: Sequence[NotificationAction] = field(default_factory=tuple)
    related_entity: Optional[RelatedEntity] = None
    deep_link: Optional[str] = None
    deadline: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    batch_tier: Optional[BatchTier] = None
    channels: Tuple[Channel, ...] = ()
    scheduled_send: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    retry_count: int = 0
    claimed_at: Optional[datetime] = None
    # Priority after per-recipient overrides; the declared priority is kept.
    routed_priority: Optional[Priority] = None

    read: bool = False
    read_at: Optional[datetime] = None
    actioned: bool = False
    actioned_at: Optional[datetime] = None

    @property
    def effective_priority(self) -> Priority:
        return Priority(self.routed_priority or self.priority)

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None

    @property
    def is_cancelled(self) -> bool:
        return self.status is DeliveryStatus.CANCELLED

    def assign_route(self, channels: Sequence[Channel], scheduled_send: datetime, batch_tier: Optional[BatchTier] = None) -> None:
        if self.is_sent:
            raise NotificationFrozenError(f"Notification {self.id} was sent at {self.sent_at.isoformat()}; routing is frozen")
        self.channels = ordered_channels(channels)
        self.scheduled_send = scheduled_send
        if batch_tier is not None:
            self.batch_tier = batch_tier

    def mark_sent(self, when: datetime) -> None:
        if self.is_sent:
            return
        self.sent_at = when
        self.status = DeliveryStatus.SENT

    def mark_read(self, when: datetime) -> None:
        if not self.read:
            self.read = True
            self.read_at = when

    def mark_actioned(self, when: datetime) -> None:
        self.mark_read(when)
        if not self.actioned:
            self.actioned = True
            self.actioned_at = when

    def cancel(self) -> None:
        if self.is_sent:
            raise NotificationFrozenError(f"Notification {self.id} was already delivered and cannot be cancelled")
        self.status = DeliveryStatus.CANCELLED


@dataclass(slots=True, frozen=True)
class RecipientStatus:
    """Transient recipient state sourced from the profile."""

    vacation: bool = False
    delegate_id: Optional[str] = None

    @property
    def delegated(self) -> bool:
        return self.vacation and bool(self.delegate_id)


@dataclass(slots=True)
class NotificationBatch:
    """Notifications for one recipient and tier that share a send time."""

    recipient_id: str
    batch_tier: BatchTier
    scheduled_send: datetime
    notifications: List[Notification] = field(default_factory=list)

    def add(self, notification: Notification) -> None:
        if notification.recipient_id != self.recipient_id:
            raise InvariantViolation(
                f"Batch for {self.recipient_id} cannot hold notification {notification.id} for {notification.recipient_id}"
            )
        if notification.batch_tier is not None and notification.batch_tier is not self.batch_tier:
            raise InvariantViolation(
                f"Batch tier {self.batch_tier.value} cannot hold notification {notification.id} of tier {notification.batch_tier.value}"
            )
        if any(existing.id == notification.id for existing in self.notifications):
            raise InvariantViolation(f"Notification {notification.id} is already in this batch")
        self.notifications.append(notification)

    def __len__(self) -> int:
        return len(self.notifications)


@dataclass(slots=True, frozen=True)
class DispatchRequest:
    """Payload for one notification on one channel."""

    recipient_id: str
    channel: Channel
    title: str
    body: str
    actions: Tuple[NotificationAction, ...] = ()
    deep_link: Optional[str] = None
    notification_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "notification",
            "notification_id": self.notification_id,
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "title": self.title,
            "body": self.body,
            "actions": [action.to_dict() for action in self.actions],
            "deep_link": self.deep_link,
        }


@dataclass(slots=True, frozen=True)
class DigestItem:
    id: str
    title: str
    body: str
    type: NotificationType
    priority: Priority
    deep_link: Optional[str] = None
    actions: Tuple[NotificationAction, ...] = ()

    @classmethod
    def from_notification(cls, notification: Notification) -> "DigestItem":
        return cls(
            id=notification.id,
            title=notification.title,
            body=notification.body,
            type=notification.type,
            priority=notification.effective_priority,
            deep_link=notification.deep_link,
            actions=tuple(notification.actions),
        )


@dataclass(slots=True, frozen=True)
class DigestSection:
    title: str
    icon: str
    items: Tuple[DigestItem, ...]


@dataclass(slots=True, frozen=True)
class DigestPayload:
    """Rendered digest for one recipient, handed to the delivery layer."""

    recipient_id: str
    batch_tier: BatchTier
    sections: Tuple[DigestSection, ...]
    scheduled_send: datetime
    subject: str
    channel: Optional[Channel] = None

    @property
    def item_ids(self) -> List[str]:
        return [item.id for section in self.sections for item in section.items]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "digest",
            "recipient_id": self.recipient_id,
            "channel": self.channel.value if self.channel else None,
            "batch_tier": self.batch_tier.value,
            "subject": self.subject,
            "scheduled_send": self.scheduled_send.isoformat(),
            "sections": [
                {
                    "title": section.title,
                    "icon": section.icon,
                    "items": [
                        {
                            "id": item.id,
                            "title": item.title,
                            "body": item.body,
                            "type": item.type.value,
                            "priority": item.priority.value,
                            "deep_link": item.deep_link,
                            "actions": [action.to_dict() for action in item.actions],
                        }
                        for item in section.items
                    ],
                }
                for section in self.sections
            ],
        }


@dataclass(slots=True, frozen=True)
class DeliveryLogEntry:
    """Audit record; appended once and never updated."""

    notification_id: str
    channel: Optional[Channel]
    recipient: str
    sent_at: datetime
    status: DeliveryStatus
    error: Optional[str] = None


@dataclass(slots=True, frozen=True)
class Escalation:
    notification_id: str
    rule_id: str
    escalated_from: str
    escalated_to: Optional[str]
    action: str
    reason: str
    created_at: datetime
    notification: Optional[Notification] = None
