"""Storage for pending notifications, claims, escalation state and the delivery log.

``MemoryStore`` backs tests and single-process use; ``SqlStore`` persists the
same state through SQLAlchemy so several scheduler workers can share it.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .escalation import EscalationState
from .models import (
    ActionKind,
    ActionStyle,
    BatchTier,
    Channel,
    DeliveryLogEntry,
    DeliveryStatus,
    Notification,
    NotificationAction,
    NotificationType,
    Priority,
    RelatedEntity,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

_RESENDABLE = (DeliveryStatus.SENT, DeliveryStatus.FAILED)


class MemoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._notifications: Dict[str, Notification] = {}
        self._log: List[DeliveryLogEntry] = []
        self._escalations: Dict[Tuple[str, str], EscalationState] = {}
        self._preferences: Dict[str, Mapping[str, Any]] = {}

    def save(self, notification: Notification) -> None:
        with self._lock:
            self._notifications[notification.id] = notification

    def get(self, notification_id: str) -> Optional[Notification]:
        return self._notifications.get(notification_id)

    def pending(self) -> List[Notification]:
        with self._lock:
            return [n for n in self._notifications.values() if n.status is DeliveryStatus.PENDING]

    def delivered(self) -> List[Notification]:
        with self._lock:
            return [n for n in self._notifications.values() if n.status in _RESENDABLE]

    def claim(self, notification_id: str, now: Optional[datetime] = None) -> bool:
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None or notification.status is not DeliveryStatus.PENDING:
                return False
            notification.status = DeliveryStatus.DISPATCHING
            notification.claimed_at = now or utcnow()
            return True

    def release_stale(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                n
                for n in self._notifications.values()
                if n.status is DeliveryStatus.DISPATCHING and n.claimed_at is not None and n.claimed_at < cutoff
            ]
            for notification in stale:
                notification.status = DeliveryStatus.PENDING
            return len(stale)

    def append_log(self, entry: DeliveryLogEntry) -> None:
        with self._lock:
            self._log.append(entry)

    def log_entries(self, notification_id: Optional[str] = None) -> List[DeliveryLogEntry]:
        with self._lock:
            return [e for e in self._log if notification_id is None or e.notification_id == notification_id]

    def escalation_state(self, notification_id: str, rule_id: str) -> EscalationState:
        return self._escalations.get((notification_id, rule_id), EscalationState.NOT_FIRED)

    def fire_escalation(self, notification_id: str, rule_id: str) -> bool:
        key = (notification_id, rule_id)
        with self._lock:
            if self._escalations.get(key, EscalationState.NOT_FIRED) is not EscalationState.NOT_FIRED:
                return False
            self._escalations[key] = EscalationState.FIRED
            return True

    def resolve_escalation(self, notification_id: str, rule_id: str) -> None:
        with self._lock:
            self._escalations[(notification_id, rule_id)] = EscalationState.RESOLVED

    def preferences_for(self, recipient_id: str) -> Optional[Mapping[str, Any]]:
        return self._preferences.get(recipient_id)

    def save_preferences(self, recipient_id: str, raw: Mapping[str, Any]) -> None:
        with self._lock:
            self._preferences[recipient_id] = dict(raw)


Base = declarative_base()


class NotificationRecord(Base):
    __tablename__ = "notifications"
    # Insertion order; ids are random.
    seq = Column(Integer, primary_key=True)
    id = Column(String(64), unique=True, nullable=False)
    recipient_id = Column(String(80), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    priority = Column(String(16), nullable=False)
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False, default="")
    actions = Column(JSON, default=list)
    related_kind = Column(String(64))
    related_id = Column(String(64))
    deep_link = Column(String(255))
    deadline = Column(DateTime)
    extra = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False)
    batch_tier = Column(String(16))
    channels = Column(JSON, default=list)
    scheduled_send = Column(DateTime)
    sent_at = Column(DateTime)
    status = Column(String(16), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime)
    routed_priority = Column(String(16))
    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime)
    actioned = Column(Boolean, nullable=False, default=False)
    actioned_at = Column(DateTime)


class PreferencesRecord(Base):
    __tablename__ = "notification_preferences"
    recipient_id = Column(String(80), primary_key=True)
    data = Column(JSON, nullable=False, default=dict)


class EscalationStateRecord(Base):
    __tablename__ = "escalation_states"
    __table_args__ = (UniqueConstraint("notification_id", "rule_id", name="uq_escalation_notification_rule"),)
    id = Column(Integer, primary_key=True)
    notification_id = Column(String(64), nullable=False)
    rule_id = Column(String(64), nullable=False)
    state = Column(String(16), nullable=False)


class DeliveryLogRecord(Base):
    __tablename__ = "notification_logs"
    id = Column(Integer, primary_key=True)
    notification_id = Column(String(64), nullable=False, index=True)
    channel = Column(String(16))
    recipient = Column(String(80), nullable=False)
    sent_at = Column(DateTime, nullable=False)
    status = Column(String(16), nullable=False)
    error = Column(Text)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _apply(record: NotificationRecord, notification: Notification) -> None:
    record.recipient_id = notification.recipient_id
    record.type = NotificationType(notification.type).value
    record.priority = Priority(notification.priority).value
    record.title = notification.title
    record.body = notification.body
    record.actions = [action.to_dict() for action in notification.actions]
    record.related_kind = notification.related_entity.kind if notification.related_entity else None
    record.related_id = notification.related_entity.id if notification.related_entity else None
    record.deep_link = notification.deep_link
    record.deadline = _to_db(notification.deadline)
    record.extra = dict(notification.metadata)
    record.created_at = _to_db(notification.created_at)
    record.batch_tier = notification.batch_tier.value if notification.batch_tier else None
    record.channels = [Channel(c).value for c in notification.channels]
    record.scheduled_send = _to_db(notification.scheduled_send)
    record.sent_at = _to_db(notification.sent_at)
    record.status = DeliveryStatus(notification.status).value
    record.retry_count = notification.retry_count
    record.claimed_at = _to_db(notification.claimed_at)
    record.routed_priority = Priority(notification.routed_priority).value if notification.routed_priority else None
    record.read = notification.read
    record.read_at = _to_db(notification.read_at)
    record.actioned = notification.actioned
    record.actioned_at = _to_db(notification.actioned_at)


def _to_notification(record: NotificationRecord) -> Notification:
    related = RelatedEntity(record.related_kind, record.related_id) if record.related_kind else None
    return Notification(
        id=record.id,
        recipient_id=record.recipient_id,
        type=NotificationType(record.type),
        priority=Priority(record.priority),
        title=record.title,
        body=record.body or "",
        actions=tuple(
            NotificationAction(a["label"], ActionKind(a["kind"]), ActionStyle(a["style"]), a.get("url"))
            for a in (record.actions or [])
        ),
        related_entity=related,
        deep_link=record.deep_link,
        deadline=_from_db(record.deadline),
        metadata=dict(record.extra or {}),
        created_at=_from_db(record.created_at),
        batch_tier=BatchTier(record.batch_tier) if record.batch_tier else None,
        channels=tuple(Channel(c) for c in (record.channels or [])),
        scheduled_send=_from_db(record.scheduled_send),
        sent_at=_from_db(record.sent_at),
        status=DeliveryStatus(record.status),
        retry_count=record.retry_count or 0,
        claimed_at=_from_db(record.claimed_at),
        routed_priority=Priority(record.routed_priority) if record.routed_priority else None,
        read=bool(record.read),
        read_at=_from_db(record.read_at),
        actioned=bool(record.actioned),
        actioned_at=_from_db(record.actioned_at),
    )


class SqlStore:
    def __init__(self, database_url: str) -> None:
        engine_kwargs: Dict[str, Any] = {"future": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
                engine_kwargs["poolclass"] = StaticPool
            pool_pre_ping = False
        else:
            pool_pre_ping = True
        self.engine = create_engine(database_url, pool_pre_ping=pool_pre_ping, **engine_kwargs)
        self.Session = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        Base.metadata.create_all(bind=self.engine)

    def _record(self, session, notification_id: str) -> Optional[NotificationRecord]:
        query = select(NotificationRecord).where(NotificationRecord.id == notification_id)
        return session.scalars(query).first()

    def save(self, notification: Notification) -> None:
        with self.Session.begin() as session:
            record = self._record(session, notification.id)
            if record is None:
                record = NotificationRecord(id=notification.id)
                session.add(record)
            _apply(record, notification)

    def get(self, notification_id: str) -> Optional[Notification]:
        with self.Session() as session:
            record = self._record(session, notification_id)
            return _to_notification(record) if record else None

    def _by_status(self, *statuses: DeliveryStatus) -> List[Notification]:
        query = (
            select(NotificationRecord)
            .where(NotificationRecord.status.in_([s.value for s in statuses]))
            .order_by(NotificationRecord.seq)
        )
        with self.Session() as session:
            return [_to_notification(r) for r in session.scalars(query)]

    def pending(self) -> List[Notification]:
        return self._by_status(DeliveryStatus.PENDING)

    def delivered(self) -> List[Notification]:
        return self._by_status(*_RESENDABLE)

    def claim(self, notification_id: str, now: Optional[datetime] = None) -> bool:
        query = (
            update(NotificationRecord)
            .where(
                NotificationRecord.id == notification_id,
                NotificationRecord.status == DeliveryStatus.PENDING.value,
            )
            .values(status=DeliveryStatus.DISPATCHING.value, claimed_at=_to_db(now or utcnow()))
        )
        with self.Session.begin() as session:
            return session.execute(query).rowcount == 1

    def release_stale(self, cutoff: datetime) -> int:
        query = (
            update(NotificationRecord)
            .where(
                NotificationRecord.status == DeliveryStatus.DISPATCHING.value,
                NotificationRecord.claimed_at < _to_db(cutoff),
            )
            .values(status=DeliveryStatus.PENDING.value)
        )
        with self.Session.begin() as session:
            return session.execute(query).rowcount

    def append_log(self, entry: DeliveryLogEntry) -> None:
        with self.Session.begin() as session:
            session.add(
                DeliveryLogRecord(
                    notification_id=entry.notification_id,
                    channel=entry.channel.value if entry.channel else None,
                    recipient=entry.recipient,
                    sent_at=_to_db(entry.sent_at),
                    status=entry.status.value,
                    error=entry.error,
                )
            )

    def log_entries(self, notification_id: Optional[str] = None) -> List[DeliveryLogEntry]:
        query = select(DeliveryLogRecord).order_by(DeliveryLogRecord.id)
        if notification_id is not None:
            query = query.where(DeliveryLogRecord.notification_id == notification_id)
        with self.Session() as session:
            return [
                DeliveryLogEntry(
                    notification_id=r.notification_id,
                    channel=Channel(r.channel) if r.channel else None,
                    recipient=r.recipient,
                    sent_at=_from_db(r.sent_at),
                    status=DeliveryStatus(r.status),
                    error=r.error,
                )
                for r in session.scalars(query)
            ]

    def _escalation_record(self, session, notification_id: str, rule_id: str) -> Optional[EscalationStateRecord]:
        query = select(EscalationStateRecord).where(
            EscalationStateRecord.notification_id == notification_id,
            EscalationStateRecord.rule_id == rule_id,
        )
        return session.scalars(query).first()

    def escalation_state(self, notification_id: str, rule_id: str) -> EscalationState:
        with self.Session() as session:
            record = self._escalation_record(session, notification_id, rule_id)
            return EscalationState(record.state) if record else EscalationState.NOT_FIRED

    def fire_escalation(self, notification_id: str, rule_id: str) -> bool:
        try:
            with self.Session.begin() as session:
                session.add(
                    EscalationStateRecord(
                        notification_id=notification_id,
                        rule_id=rule_id,
                        state=EscalationState.FIRED.value,
                    )
                )
        except IntegrityError:
            LOGGER.debug("Escalation %s/%s already recorded", notification_id, rule_id)
            return False
        return True

    def resolve_escalation(self, notification_id: str, rule_id: str) -> None:
        try:
            with self.Session.begin() as session:
                record = self._escalation_record(session, notification_id, rule_id)
                if record is None:
                    session.add(
                        EscalationStateRecord(
                            notification_id=notification_id,
                            rule_id=rule_id,
                            state=EscalationState.RESOLVED.value,
                        )
                    )
                else:
                    record.state = EscalationState.RESOLVED.value
        except IntegrityError:
            # Another worker inserted the row first; move it to resolved.
            with self.Session.begin() as session:
                record = self._escalation_record(session, notification_id, rule_id)
                record.state = EscalationState.RESOLVED.value

    def preferences_for(self, recipient_id: str) -> Optional[Mapping[str, Any]]:
        with self.Session() as session:
            record = session.get(PreferencesRecord, recipient_id)
            return dict(record.data) if record else None

    def save_preferences(self, recipient_id: str, raw: Mapping[str, Any]) -> None:
        with self.Session.begin() as session:
            record = session.get(PreferencesRecord, recipient_id)
            if record is None:
                session.add(PreferencesRecord(recipient_id=recipient_id, data=dict(raw)))
            else:
                record.data = dict(raw)
