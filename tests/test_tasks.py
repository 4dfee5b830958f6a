import pytest

from notification_engine import tasks
from notification_engine.models import DeliveryStatus, NotificationType, Priority


@pytest.fixture
def patched_service(monkeypatch, service):
    monkeypatch.setattr(tasks, "get_service", lambda: service)
    return service


def test_notification_from_payload():
    notification = tasks.notification_from_payload(
        {
            "recipient_id": "mgr-1",
            "type": "leave_approval_needed",
            "data": {"employee_name": "Sam", "days": 2, "start_date": "2026-11-02", "end_date": "2026-11-03"},
            "related_entity": {"kind": "leave_request", "id": 88},
            "deadline": "2026-10-16T17:00:00+00:00",
            "metadata": {"hr_director_id": "hrd-1"},
        }
    )
    assert notification.type is NotificationType.LEAVE_APPROVAL_NEEDED
    assert notification.body == "Sam requests 2 days of leave (2026-11-02 - 2026-11-03)"
    assert notification.related_entity.id == "88"
    assert notification.deadline.tzinfo is not None
    assert notification.metadata == {"hr_director_id": "hrd-1"}


def test_submit_and_process_tasks(patched_service, store, senders):
    notification_id = tasks.submit_notification(
        {
            "recipient_id": "emp-1",
            "type": "poortwachter_week6",
            "data": {"case_id": "C-7", "days_left": 0},
        }
    )

    stored = store.get(notification_id)
    assert stored.priority is Priority.CRITICAL
    assert stored.title == "URGENT: week 6 problem analysis due"

    assert tasks.process_due_batches() == "1"
    assert store.get(notification_id).status is DeliveryStatus.SENT
    assert tasks.check_escalations() == "0"


def test_cancel_task(patched_service, store):
    notification_id = tasks.submit_notification({"recipient_id": "emp-1", "type": "task_assigned", "data": {}})
    assert tasks.cancel_notification(notification_id)
    assert store.get(notification_id).status is DeliveryStatus.CANCELLED
    assert not tasks.cancel_notification("missing")


def test_tick_errors_are_logged_and_raised(monkeypatch, caplog):
    class Broken:
        def tick(self):
            raise RuntimeError("database unavailable")

    monkeypatch.setattr(tasks, "get_service", lambda: Broken())
    with pytest.raises(RuntimeError):
        tasks.process_due_batches()
    assert "Notification tick aborted" in caplog.text


def test_get_service_reads_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("NOTIFY_TIMEZONE", "Europe/Amsterdam")
    monkeypatch.setenv("NOTIFY_DIGEST_HOUR", "8")
    monkeypatch.delenv("NOTIFY_DELIVERY_WEBHOOK_URL", raising=False)
    tasks.get_service.cache_clear()
    try:
        service = tasks.get_service()
        assert service.config.timezone == "Europe/Amsterdam"
        assert service.config.digest_hour == 8
        assert service.store.pending() == []
    finally:
        tasks.get_service.cache_clear()
