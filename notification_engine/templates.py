"""Per-type notification templates."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

from .exceptions import TemplateNotFoundError
from .models import (
    ActionKind,
    ActionStyle,
    Notification,
    NotificationAction,
    NotificationType,
    Priority,
    RelatedEntity,
)

LOGGER = logging.getLogger(__name__)

FALLBACK_TITLE = "Notification"
FALLBACK_BODY = "You have received an update."


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass(slots=True, frozen=True)
class NotificationTemplate:
    type: NotificationType
    title: str
    body: str
    priority: Priority
    actions: Tuple[NotificationAction, ...] = ()

    def render(self, data: Mapping[str, Any]) -> Tuple[str, str]:
        values = _Blank({k: "" if v is None else v for k, v in data.items()})
        return self.title.format_map(values), self.body.format_map(values)


@dataclass(slots=True, frozen=True)
class RenderedNotification:
    title: str
    body: str
    priority: Priority
    actions: Tuple[NotificationAction, ...] = ()


_VIEW = NotificationAction("View case", ActionKind.VIEW, ActionStyle.DEFAULT)

TEMPLATES: Dict[NotificationType, NotificationTemplate] = {
    t.type: t
    for t in (
        NotificationTemplate(
            type=NotificationType.POORTWACHTER_WEEK1,
            title="Gatekeeper Act: week 1, direct contact needed",
            body="{employee_name} reported sick. Get in touch today to understand the situation.",
            priority=Priority.HIGH,
            actions=(NotificationAction("Contact log", ActionKind.CUSTOM, ActionStyle.PRIMARY), _VIEW),
        ),
        NotificationTemplate(
            type=NotificationType.POORTWACHTER_WEEK6,
            title="URGENT: week 6 problem analysis due",
            body="Case {case_id}: the problem analysis must be completed today. Days left: {days_left}",
            priority=Priority.CRITICAL,
        ),
        NotificationTemplate(
            type=NotificationType.POORTWACHTER_WEEK42,
            title="Week 42: plan of action review",
            body="After 42 weeks of absence the plan of action must be evaluated and adjusted.",
            priority=Priority.HIGH,
        ),
        NotificationTemplate(
            type=NotificationType.POORTWACHTER_DEADLINE_APPROACHING,
            title="Gatekeeper deadline in {days} days",
            body="{deadline_type} deadline on {deadline_date}, due in {days} days. Start preparing now.",
            priority=Priority.HIGH,
        ),
        NotificationTemplate(
            type=NotificationType.POORTWACHTER_DEADLINE_MISSED,
            title="COMPLIANCE: gatekeeper deadline missed",
            body="{deadline_type} deadline of {deadline_date} has passed. Escalation required.",
            priority=Priority.CRITICAL,
        ),
        NotificationTemplate(
            type=NotificationType.LEAVE_APPROVAL_NEEDED,
            title="Leave request awaiting approval",
            body="{employee_name} requests {days} days of leave ({start_date} - {end_date})",
            priority=Priority.NORMAL,
            actions=(
                NotificationAction("Approve", ActionKind.APPROVE, ActionStyle.PRIMARY),
                NotificationAction("Deny", ActionKind.DENY, ActionStyle.DESTRUCTIVE),
                NotificationAction("Details", ActionKind.VIEW, ActionStyle.DEFAULT),
            ),
        ),
        NotificationTemplate(
            type=NotificationType.TASK_ASSIGNED,
            title="New task: {task_title}",
            body="{task_description}",
            priority=Priority.NORMAL,
        ),
        NotificationTemplate(
            type=NotificationType.TASK_OVERDUE,
            title="Task overdue: {task_title}",
            body="Deadline was {due_date}. {days_overdue} days late.",
            priority=Priority.HIGH,
        ),
        NotificationTemplate(
            type=NotificationType.DOCUMENT_SIGNATURE_NEEDED,
            title="Document to sign: {document_name}",
            body="Please sign the {document_type}, required by {deadline}",
            priority=Priority.HIGH,
            actions=(
                NotificationAction("Sign now", ActionKind.CUSTOM, ActionStyle.PRIMARY),
                NotificationAction("View document", ActionKind.VIEW, ActionStyle.DEFAULT),
            ),
        ),
        NotificationTemplate(
            type=NotificationType.CASE_STATUS_CHANGED,
            title="Case update: {case_id}",
            body="Status changed to: {new_status}",
            priority=Priority.NORMAL,
        ),
        NotificationTemplate(
            type=NotificationType.CONTRACT_EXPIRING,
            title="Contract expiring soon",
            body="The contract of {employee_name} expires in {days} days ({end_date})",
            priority=Priority.HIGH,
        ),
        NotificationTemplate(
            type=NotificationType.NEW_TEAM_MEMBER,
            title="Welcome: {new_member_name}",
            body="{new_member_name} starts as {role} in {department}. Start date: {start_date}",
            priority=Priority.NORMAL,
        ),
        NotificationTemplate(
            type=NotificationType.BIRTHDAY_TODAY,
            title="Birthday today: {employee_name}",
            body="Wish {employee_name} a happy birthday!",
            priority=Priority.LOW,
        ),
        NotificationTemplate(
            type=NotificationType.TIMESHEET_MISSING,
            title="Timesheet missing",
            body="Your timesheet for {period} still needs to be filled in",
            priority=Priority.NORMAL,
        ),
        NotificationTemplate(
            type=NotificationType.ESCALATION_RAISED,
            title="Escalation: {subject}",
            body="{reason} Action required.",
            priority=Priority.HIGH,
            actions=(NotificationAction("Open", ActionKind.VIEW, ActionStyle.PRIMARY),),
        ),
    )
}


def get_template(notification_type: NotificationType) -> NotificationTemplate:
    try:
        return TEMPLATES[NotificationType(notification_type)]
    except (KeyError, ValueError) as exc:
        raise TemplateNotFoundError(f"No template registered for {notification_type!r}") from exc


def format_notification(notification_type: NotificationType, data: Mapping[str, Any]) -> RenderedNotification:
    """Render title and body for ``notification_type``; unknown types get a generic text."""
    try:
        template = get_template(notification_type)
    except TemplateNotFoundError as exc:
        LOGGER.warning("Falling back to generic template: %s", exc)
        return RenderedNotification(title=FALLBACK_TITLE, body=FALLBACK_BODY, priority=Priority.NORMAL)
    title, body = template.render(data)
    return RenderedNotification(
        title=title,
        body=body,
        priority=template.priority,
        actions=template.actions,
    )


def create_notification(
    recipient_id: str,
    notification_type: NotificationType,
    data: Optional[Mapping[str, Any]] = None,
    *,
    title: Optional[str] = None,
    body: Optional[str] = None,
    priority: Optional[Priority] = None,
    related_entity: Optional[RelatedEntity] = None,
    deep_link: Optional[str] = None,
    deadline: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
    created_at: Optional[datetime] = None,
) -> Notification:
    """Build an unclassified notification from producer input."""
    rendered = format_notification(notification_type, data or {})
    extra: Dict[str, Any] = {}
    if created_at is not None:
        extra["created_at"] = created_at
    return Notification(
        recipient_id=recipient_id,
        type=NotificationType(notification_type),
        priority=Priority(priority) if priority else rendered.priority,
        title=title or rendered.title,
        body=body or rendered.body,
        actions=rendered.actions,
        related_entity=related_entity,
        deep_link=deep_link,
        deadline=deadline,
        metadata=dict(metadata or {}),
        **extra,
    )
