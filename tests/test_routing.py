from datetime import datetime, time, timezone

import pytest

from notification_engine.config import RoutingConfig
from notification_engine.models import Channel, NotificationType, Priority, RecipientStatus
from notification_engine.preferences import QuietHours, parse_preferences
from notification_engine.routing import is_in_quiet_hours, select_channels

NIGHT = QuietHours(enabled=True, start=time(22, 0), end=time(8, 0))


def _at(hour, minute=0):
    return datetime(2026, 10, 14, hour, minute, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "hour, minute, expected",
    [
        (23, 30, True),
        (3, 0, True),
        (12, 0, False),
        (22, 0, True),
        (7, 59, True),
        (8, 0, False),
        (21, 59, False),
    ],
)
def test_quiet_hours_across_midnight(hour, minute, expected):
    assert is_in_quiet_hours(NIGHT, _at(hour, minute)) is expected


def test_quiet_hours_same_day_window_and_disabled():
    lunch = QuietHours(enabled=True, start=time(12, 0), end=time(13, 0))
    assert is_in_quiet_hours(lunch, _at(12, 30))
    assert not is_in_quiet_hours(lunch, _at(13, 0))
    assert not is_in_quiet_hours(QuietHours(enabled=False, start=time(0, 0), end=time(23, 59)), _at(12))
    assert not is_in_quiet_hours(QuietHours(enabled=True, start=time(9, 0), end=time(9, 0)), _at(9))


def test_quiet_hours_use_local_time():
    config = RoutingConfig(timezone="Europe/Amsterdam")
    # 21:30 UTC is 23:30 in Amsterdam during summer time.
    assert is_in_quiet_hours(NIGHT, _at(21, 30), config)
    assert not is_in_quiet_hours(NIGHT, _at(21, 30))


@pytest.mark.parametrize(
    "priority, expected",
    [
        (Priority.CRITICAL, (Channel.IN_APP, Channel.EMAIL, Channel.SMS, Channel.PUSH)),
        (Priority.HIGH, (Channel.IN_APP, Channel.EMAIL, Channel.PUSH)),
        (Priority.NORMAL, (Channel.IN_APP, Channel.EMAIL)),
        (Priority.LOW, (Channel.IN_APP,)),
    ],
)
def test_defaults_without_preferences(make_notification, now, priority, expected):
    assert select_channels(make_notification(priority=priority), None, now=now) == expected


@pytest.mark.parametrize("vacation", [False, True])
@pytest.mark.parametrize("quiet", [False, True])
@pytest.mark.parametrize("channels_enabled", [False, True])
def test_critical_is_never_suppressed(make_notification, vacation, quiet, channels_enabled):
    prefs = parse_preferences(
        "emp-1",
        {
            "quiet_hours": {"enabled": quiet, "start": "22:00", "end": "08:00"},
            "vacation_mode": {"enabled": vacation, "delegate_to": "emp-2"},
            "channels": {name: {"enabled": channels_enabled} for name in ("in_app", "email", "sms", "push")},
        },
    )
    status = prefs.recipient_status()
    channels = select_channels(make_notification(priority=Priority.CRITICAL), prefs, status, now=_at(23, 30))
    assert channels
    assert channels == (Channel.IN_APP, Channel.EMAIL, Channel.SMS)


def test_critical_includes_sms_even_when_disabled(make_notification, now):
    prefs = parse_preferences("emp-1", {"channels": {"sms": {"enabled": False}}})
    notification = make_notification(type=NotificationType.POORTWACHTER_WEEK6, priority=Priority.CRITICAL)
    assert Channel.SMS in select_channels(notification, prefs, now=now)


def test_vacation_with_delegate_suppresses(make_notification, now):
    prefs = parse_preferences("mgr-1", {"vacation_mode": {"enabled": True, "delegate_to": "mgr-2"}})
    notification = make_notification(recipient_id="mgr-1", type=NotificationType.LEAVE_APPROVAL_NEEDED)
    assert select_channels(notification, prefs, prefs.recipient_status(), now=now) == ()


def test_vacation_without_delegate_still_delivers(make_notification, now):
    prefs = parse_preferences("mgr-1", {})
    status = RecipientStatus(vacation=True)
    assert select_channels(make_notification(), prefs, status, now=now) == (Channel.IN_APP, Channel.EMAIL)


def test_quiet_hours_suppress_non_critical(make_notification):
    prefs = parse_preferences("emp-1", {"quiet_hours": {"enabled": True, "start": "22:00", "end": "08:00"}})
    assert select_channels(make_notification(priority=Priority.HIGH), prefs, now=_at(3)) == ()
    assert select_channels(make_notification(priority=Priority.HIGH), prefs, now=_at(12)) == (
        Channel.IN_APP,
        Channel.EMAIL,
    )


def test_enabled_channels_filtered_by_type_lists(make_notification, now):
    prefs = parse_preferences(
        "emp-1",
        {
            "channels": {
                "in_app": {"enabled": True, "types": ["all"]},
                "email": {"enabled": True, "types": ["leave_approval_needed"]},
                "sms": {"enabled": True, "types": ["task_assigned"]},
                "push": {"enabled": False},
            }
        },
    )
    assert select_channels(make_notification(), prefs, now=now) == (Channel.IN_APP, Channel.SMS)
    leave = make_notification(type=NotificationType.LEAVE_APPROVAL_NEEDED)
    assert select_channels(leave, prefs, now=now) == (Channel.IN_APP, Channel.EMAIL)


def test_type_override_replaces_type_lists(make_notification, now):
    prefs = parse_preferences(
        "emp-1",
        {
            "channels": {"push": {"enabled": True}},
            "type_overrides": {"task_assigned": {"channels": ["push", "sms"]}},
        },
    )
    assert select_channels(make_notification(), prefs, now=now) == (Channel.PUSH,)
