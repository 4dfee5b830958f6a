from datetime import datetime, timezone
import threading

import pytest

from notification_engine.channels import ChannelDispatcher
from notification_engine.exceptions import PermanentDeliveryError, TransientDeliveryError
from notification_engine.models import Channel, Notification, NotificationType, Priority
from notification_engine.service import NotificationService
from notification_engine.store import MemoryStore

# A Wednesday.
NOW = datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_notification():
    def _make(**overrides):
        values = {
            "recipient_id": "emp-1",
            "type": NotificationType.TASK_ASSIGNED,
            "priority": Priority.NORMAL,
            "title": "New task: expense report",
            "body": "Please file your expense report",
            "created_at": NOW,
        }
        values.update(overrides)
        return Notification(**values)

    return _make


class RecordingSender:
    """Collects payloads; can be told to fail transiently or permanently."""

    def __init__(self, fail=None):
        self.fail = fail
        self.payloads = []
        self._lock = threading.Lock()

    def __call__(self, payload):
        with self._lock:
            self.payloads.append(payload)
        if self.fail == "transient":
            raise TransientDeliveryError("provider returned 503", channel=payload.channel)
        if self.fail == "permanent":
            raise PermanentDeliveryError("invalid address", channel=payload.channel)


@pytest.fixture
def senders():
    return {channel: RecordingSender() for channel in Channel}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, senders):
    return NotificationService(store, ChannelDispatcher(senders, timeout=2.0), clock=lambda: NOW)
