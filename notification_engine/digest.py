from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    BatchTier,
    Channel,
    DigestItem,
    DigestPayload,
    DigestSection,
    Notification,
    Priority,
)

SECTION_ORDER: Tuple[Priority, ...] = (Priority.CRITICAL, Priority.HIGH, Priority.NORMAL, Priority.LOW)

SECTION_HEADINGS: Dict[Priority, Tuple[str, str]] = {
    Priority.CRITICAL: ("Urgent (action required)", "🔴"),
    Priority.HIGH: ("Important", "🟠"),
    Priority.NORMAL: ("Updates", "🟡"),
    Priority.LOW: ("Information", "🟢"),
}

TIER_LABELS = {
    BatchTier.INSTANT: "Notification",
    BatchTier.HOURLY: "Hourly digest",
    BatchTier.DAILY: "Daily digest",
    BatchTier.WEEKLY: "Weekly digest",
}


def format_sections(notifications: Iterable[Notification]) -> List[DigestSection]:
    """Split notifications into priority sections; empty sections are left out."""
    buckets: Dict[Priority, List[DigestItem]] = {priority: [] for priority in SECTION_ORDER}
    for notification in notifications:
        buckets[notification.effective_priority].append(DigestItem.from_notification(notification))

    sections: List[DigestSection] = []
    for priority in SECTION_ORDER:
        items = buckets[priority]
        if not items:
            continue
        title, icon = SECTION_HEADINGS[priority]
        sections.append(DigestSection(title=title, icon=icon, items=tuple(items)))
    return sections


def digest_subject(sections: Iterable[DigestSection], tier: BatchTier) -> str:
    sections = list(sections)
    total = sum(len(section.items) for section in sections)
    urgent = sum(len(s.items) for s in sections if s.title == SECTION_HEADINGS[Priority.CRITICAL][0])
    subject = f"{TIER_LABELS[BatchTier(tier)]}: {total} notification{'s' if total != 1 else ''}"
    if urgent:
        subject += f" ({urgent} urgent)"
    return subject


def build_digest(
    recipient_id: str,
    notifications: Iterable[Notification],
    scheduled_send: datetime,
    tier: BatchTier,
    channel: Optional[Channel] = None,
) -> DigestPayload:
    sections = format_sections(notifications)
    return DigestPayload(
        recipient_id=recipient_id,
        batch_tier=BatchTier(tier),
        sections=tuple(sections),
        scheduled_send=scheduled_send,
        subject=digest_subject(sections, tier),
        channel=channel,
    )


def render_digest_text(payload: DigestPayload) -> str:
    """Plain-text body for email clients without HTML."""
    lines: List[str] = [payload.subject, ""]
    for section in payload.sections:
        lines.append(f"{section.icon} {section.title} ({len(section.items)})")
        for item in section.items:
            lines.append(f"- {item.title}")
            if item.body:
                lines.append(f"  {item.body}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
