"""Error taxonomy for the notification engine."""
from __future__ import annotations

from typing import Optional


class NotificationEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NotificationEngineError):
    """Bad preferences or template configuration for a single notification."""


class PreferencesError(ConfigurationError):
    pass


class TemplateNotFoundError(ConfigurationError):
    pass


class DeliveryError(NotificationEngineError):
    """A channel provider rejected or failed a dispatch request."""

    retryable = False

    def __init__(self, message: str, *, channel: Optional[str] = None) -> None:
        super().__init__(message)
        self.channel = channel


class TransientDeliveryError(DeliveryError):
    """Timeouts, 5xx responses and dropped connections."""

    retryable = True


class PermanentDeliveryError(DeliveryError):
    """Invalid recipient address or a request the provider will never accept."""


class InvariantViolation(NotificationEngineError):
    """A programming error such as a batch mixing recipients."""


class NotificationFrozenError(InvariantViolation):
    """Delivery routing was changed after the notification was sent."""
