import logging
from datetime import time

import pytest

from notification_engine.exceptions import PreferencesError
from notification_engine.models import Channel, NotificationType, Priority
from notification_engine.preferences import ChannelConfig, load_preferences, parse_preferences


def test_defaults_fill_missing_sections():
    prefs = parse_preferences("emp-1", {})
    assert prefs.digest_preference == "daily"
    assert prefs.enabled_channels() == (Channel.IN_APP, Channel.EMAIL)
    assert not prefs.quiet_hours.enabled
    assert prefs.quiet_hours.start == time(22, 0)
    assert prefs.recipient_status().delegated is False


def test_parses_full_document():
    prefs = parse_preferences(
        "emp-1",
        {
            "digest_preference": "Weekly",
            "quiet_hours": {"enabled": True, "start": "23:15", "end": "06:45"},
            "vacation_mode": {"enabled": True, "delegate_id": "emp-9"},
            "channels": {
                "sms": {"enabled": True, "types": "poortwachter_week6, task_overdue"},
                "push": True,
            },
            "type_overrides": {
                "birthday_today": {"channels": ["push", "in_app"], "priority_override": "normal"},
            },
        },
    )
    assert prefs.digest_preference == "weekly"
    assert (prefs.quiet_hours.start, prefs.quiet_hours.end) == (time(23, 15), time(6, 45))
    assert prefs.recipient_status().delegate_id == "emp-9"
    assert prefs.sms.accepts(NotificationType.TASK_OVERDUE)
    assert not prefs.sms.accepts(NotificationType.TASK_ASSIGNED)
    assert prefs.push.accepts(NotificationType.BIRTHDAY_TODAY)
    override = prefs.override_for(NotificationType.BIRTHDAY_TODAY)
    assert override.channels == (Channel.IN_APP, Channel.PUSH)
    assert override.priority is Priority.NORMAL


def test_disabled_channel_drops_type_list():
    prefs = parse_preferences("emp-1", {"channels": {"email": {"enabled": False, "types": ["task_assigned"]}}})
    assert prefs.email == ChannelConfig(enabled=False)


def test_disabled_channel_with_types_is_rejected():
    with pytest.raises(PreferencesError):
        ChannelConfig(enabled=False, types=frozenset({NotificationType.TASK_ASSIGNED}))


@pytest.mark.parametrize(
    "raw",
    [
        ["not", "a", "mapping"],
        {"digest_preference": "sometimes"},
        {"quiet_hours": "22-08"},
        {"quiet_hours": {"enabled": True, "start": "late", "end": "08:00"}},
        {"channels": {"fax": {"enabled": True}}},
        {"channels": {"email": "yes"}},
        {"channels": {"email": {"enabled": True, "types": ["coffee_break"]}}},
        {"type_overrides": {"coffee_break": {"channels": ["email"]}}},
        {"type_overrides": {"task_assigned": {"priority": "urgent"}}},
        {"type_overrides": {"task_assigned": "email"}},
        {"channels": {"email": {"enabled": True, "types": 5}}},
        {"type_overrides": {"task_assigned": {"channels": 5}}},
        {"type_overrides": ["task_assigned"]},
    ],
)
def test_malformed_preferences_raise(raw):
    with pytest.raises(PreferencesError):
        parse_preferences("emp-1", raw)


def test_load_preferences_falls_back_to_none(caplog):
    assert load_preferences("emp-1", None) is None
    with caplog.at_level(logging.WARNING, logger="notification_engine.preferences"):
        assert load_preferences("emp-1", {"digest_preference": "sometimes"}) is None
    assert "Ignoring malformed preferences for emp-1" in caplog.text


@pytest.mark.parametrize(
    "raw",
    [
        {"channels": {"email": {"enabled": True, "types": 5}}},
        {"type_overrides": {"task_assigned": {"channels": 5}}},
    ],
)
def test_load_preferences_tolerates_wrongly_typed_lists(raw):
    assert load_preferences("emp-2", raw) is None
