from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import time
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .config import VALID_DIGEST_PREFERENCES
from .exceptions import PreferencesError
from .models import Channel, NotificationType, Priority, RecipientStatus, ordered_channels

LOGGER = logging.getLogger(__name__)

ALL_TYPES = "all"

DEFAULT_NOTIFICATION_PREFS: Dict[str, Any] = {
    "digest_preference": "daily",
    "quiet_hours": {"enabled": False, "start": "22:00", "end": "08:00"},
    "vacation_mode": {"enabled": False, "delegate_to": None},
    "channels": {
        "in_app": {"enabled": True, "types": [ALL_TYPES]},
        "email": {"enabled": True, "types": [ALL_TYPES]},
        "sms": {"enabled": False},
        "push": {"enabled": False},
    },
    "type_overrides": {},
}


@dataclass(slots=True, frozen=True)
class QuietHours:
    enabled: bool = False
    start: time = time(22, 0)
    end: time = time(8, 0)


@dataclass(slots=True, frozen=True)
class VacationMode:
    enabled: bool = False
    delegate_to: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ChannelConfig:
    """Either enabled with a type filter (``None`` = all types) or disabled."""

    enabled: bool = False
    types: Optional[FrozenSet[NotificationType]] = None

    def __post_init__(self) -> None:
        if not self.enabled and self.types:
            raise PreferencesError("A disabled channel cannot carry a type filter")

    def accepts(self, notification_type: NotificationType) -> bool:
        if not self.enabled:
            return False
        return self.types is None or notification_type in self.types


@dataclass(slots=True, frozen=True)
class TypeOverride:
    channels: Optional[Tuple[Channel, ...]] = None
    priority: Optional[Priority] = None


@dataclass(slots=True, frozen=True)
class NotificationPreferences:
    """Read-only snapshot of a recipient's notification settings."""

    recipient_id: str = ""
    digest_preference: str = "daily"
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    vacation_mode: VacationMode = field(default_factory=VacationMode)
    in_app: ChannelConfig = field(default_factory=lambda: ChannelConfig(enabled=True))
    email: ChannelConfig = field(default_factory=lambda: ChannelConfig(enabled=True))
    sms: ChannelConfig = field(default_factory=ChannelConfig)
    push: ChannelConfig = field(default_factory=ChannelConfig)
    type_overrides: Mapping[NotificationType, TypeOverride] = field(default_factory=dict)

    def channel_config(self, channel: Channel) -> ChannelConfig:
        if channel is Channel.IN_APP:
            return self.in_app
        if channel is Channel.EMAIL:
            return self.email
        if channel is Channel.SMS:
            return self.sms
        if channel is Channel.PUSH:
            return self.push
        raise ValueError(f"Unknown channel: {channel!r}")

    def enabled_channels(self) -> Tuple[Channel, ...]:
        return tuple(c for c in Channel if self.channel_config(c).enabled)

    def override_for(self, notification_type: NotificationType) -> Optional[TypeOverride]:
        return self.type_overrides.get(notification_type)

    def recipient_status(self) -> RecipientStatus:
        return RecipientStatus(vacation=self.vacation_mode.enabled, delegate_id=self.vacation_mode.delegate_to)


def _parse_time(value: Any, label: str) -> time:
    if isinstance(value, time):
        return value
    try:
        hour, minute = str(value).split(":", 1)
        return time(int(hour), int(minute[:2]))
    except (TypeError, ValueError) as exc:
        raise PreferencesError(f"Invalid {label} time: {value!r}") from exc


def _names(value: Any, label: str) -> Tuple[str, ...]:
    """A comma-separated string or a list of strings."""
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, (list, tuple, set, frozenset)) and all(isinstance(part, str) for part in value):
        return tuple(value)
    raise PreferencesError(f"{label} must be a list of names, got {value!r}")


def _parse_types(raw_types: Any) -> Optional[FrozenSet[NotificationType]]:
    if raw_types is None:
        return None
    raw_types = _names(raw_types, "Channel types")
    if ALL_TYPES in raw_types:
        return None
    try:
        return frozenset(NotificationType(t) for t in raw_types)
    except ValueError as exc:
        raise PreferencesError(f"Unknown notification type in channel config: {exc}") from exc


def _parse_channel(name: str, raw: Any) -> ChannelConfig:
    if isinstance(raw, bool):
        return ChannelConfig(enabled=raw)
    if not isinstance(raw, Mapping):
        raise PreferencesError(f"Channel config for {name} must be a mapping")
    enabled = bool(raw.get("enabled", False))
    if not enabled:
        return ChannelConfig(enabled=False)
    return ChannelConfig(enabled=True, types=_parse_types(raw.get("types", [ALL_TYPES])))


def _parse_overrides(raw: Any) -> Dict[NotificationType, TypeOverride]:
    overrides: Dict[NotificationType, TypeOverride] = {}
    if not raw:
        return overrides
    if not isinstance(raw, Mapping):
        raise PreferencesError("type_overrides must be a mapping")
    for type_name, data in raw.items():
        if not isinstance(data, Mapping):
            raise PreferencesError(f"Override for {type_name!r} must be a mapping")
        channels = data.get("channels")
        if channels is not None:
            channels = _names(channels, f"Override channels for {type_name!r}")
        try:
            notification_type = NotificationType(type_name)
            priority = data.get("priority_override") or data.get("priority")
            overrides[notification_type] = TypeOverride(
                channels=ordered_channels(channels) if channels is not None else None,
                priority=Priority(priority) if priority else None,
            )
        except (TypeError, ValueError) as exc:
            raise PreferencesError(f"Invalid override for {type_name!r}: {exc}") from exc
    return overrides


def parse_preferences(recipient_id: str, raw: Optional[Mapping[str, Any]]) -> NotificationPreferences:
    """Build preferences from a stored mapping, filling gaps from the defaults."""
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise PreferencesError(f"Preferences for {recipient_id} must be a mapping")
    merged = {**DEFAULT_NOTIFICATION_PREFS, **raw}

    digest = str(merged.get("digest_preference") or "daily").lower()
    if digest not in VALID_DIGEST_PREFERENCES:
        raise PreferencesError(f"Unknown digest preference {digest!r} for {recipient_id}")

    quiet_raw = merged.get("quiet_hours") or {}
    vacation_raw = merged.get("vacation_mode") or {}
    if not isinstance(quiet_raw, Mapping) or not isinstance(vacation_raw, Mapping):
        raise PreferencesError(f"quiet_hours and vacation_mode for {recipient_id} must be mappings")
    quiet = QuietHours(
        enabled=bool(quiet_raw.get("enabled", False)),
        start=_parse_time(quiet_raw.get("start", "22:00"), "quiet hours start"),
        end=_parse_time(quiet_raw.get("end", "08:00"), "quiet hours end"),
    )

    vacation = VacationMode(
        enabled=bool(vacation_raw.get("enabled", False)),
        delegate_to=vacation_raw.get("delegate_to") or vacation_raw.get("delegate_id") or None,
    )

    channels_override = merged.get("channels") or {}
    if not isinstance(channels_override, Mapping):
        raise PreferencesError(f"channels for {recipient_id} must be a mapping")
    channels_raw = {**DEFAULT_NOTIFICATION_PREFS["channels"], **channels_override}
    unknown = set(channels_raw) - {c.value for c in Channel}
    if unknown:
        raise PreferencesError(f"Unknown channels in preferences: {', '.join(sorted(unknown))}")

    return NotificationPreferences(
        recipient_id=recipient_id,
        digest_preference=digest,
        quiet_hours=quiet,
        vacation_mode=vacation,
        in_app=_parse_channel("in_app", channels_raw["in_app"]),
        email=_parse_channel("email", channels_raw["email"]),
        sms=_parse_channel("sms", channels_raw["sms"]),
        push=_parse_channel("push", channels_raw["push"]),
        type_overrides=_parse_overrides(merged.get("type_overrides")),
    )


def load_preferences(recipient_id: str, raw: Optional[Mapping[str, Any]]) -> Optional[NotificationPreferences]:
    """Like :func:`parse_preferences` but falls back to default routing on bad input."""
    if raw is None:
        return None
    try:
        return parse_preferences(recipient_id, raw)
    except PreferencesError as exc:
        LOGGER.warning("Ignoring malformed preferences for %s, using default routing: %s", recipient_id, exc)
        return None


__all__ = [
    "ChannelConfig",
    "NotificationPreferences",
    "QuietHours",
    "TypeOverride",
    "VacationMode",
    "load_preferences",
    "parse_preferences",
]
