from __future__ import annotations

import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Union

import requests

from .config import DEFAULT_CHANNEL_TIMEOUT
from .exceptions import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from .models import Channel, DigestPayload, DispatchRequest

LOGGER = logging.getLogger(__name__)

Payload = Union[DispatchRequest, DigestPayload]
Sender = Callable[[Payload], None]


@dataclass(slots=True, frozen=True)
class DeliveryOutcome:
    channel: Channel
    ok: bool
    error: Optional[str] = None
    retryable: bool = False


class WebhookSender:
    """Hands payloads to an external delivery provider over HTTP."""

    def __init__(self, url: str, *, token: Optional[str] = None, timeout: float = 5.0) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout

    def __call__(self, payload: Payload) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            resp = requests.post(self.url, headers=headers, data=json.dumps(payload.to_dict()), timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientDeliveryError(f"Delivery provider unreachable: {exc}", channel=payload.channel) from exc
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientDeliveryError(
                f"Delivery provider responded with {resp.status_code}: {resp.text[:120]}", channel=payload.channel
            )
        if resp.status_code >= 400:
            raise PermanentDeliveryError(
                f"Delivery provider rejected payload with {resp.status_code}: {resp.text[:120]}", channel=payload.channel
            )


def senders_from_env() -> Dict[Channel, Sender]:
    """One webhook sender per channel; ``NOTIFY_WEBHOOK_<CHANNEL>`` overrides the shared URL."""
    shared_url = os.getenv("NOTIFY_DELIVERY_WEBHOOK_URL")
    token = os.getenv("NOTIFY_DELIVERY_TOKEN")
    timeout = float(os.getenv("NOTIFY_CHANNEL_TIMEOUT", str(DEFAULT_CHANNEL_TIMEOUT)))
    senders: Dict[Channel, Sender] = {}
    for channel in Channel:
        url = os.getenv(f"NOTIFY_WEBHOOK_{channel.value.upper()}") or shared_url
        if not url:
            LOGGER.warning("No delivery webhook configured for %s; channel disabled", channel.value)
            continue
        senders[channel] = WebhookSender(url, token=token, timeout=timeout)
    return senders


class ChannelDispatcher:
    """Sends one payload per channel concurrently with a per-call time limit."""

    def __init__(self, senders: Mapping[Channel, Sender], timeout: float = DEFAULT_CHANNEL_TIMEOUT) -> None:
        self.senders = dict(senders)
        self.timeout = timeout

    def _send(self, channel: Channel, payload: Payload) -> DeliveryOutcome:
        sender = self.senders.get(channel)
        if sender is None:
            LOGGER.info("Skipping %s delivery to %s: no sender configured", channel.value, payload.recipient_id)
            return DeliveryOutcome(channel, False, f"No sender configured for {channel.value}")
        try:
            sender(payload)
        except DeliveryError as exc:
            LOGGER.warning("Delivery over %s to %s failed: %s", channel.value, payload.recipient_id, exc)
            return DeliveryOutcome(channel, False, str(exc), retryable=exc.retryable)
        except Exception as exc:  # provider adapters are third-party code
            LOGGER.exception("Unexpected error delivering over %s to %s", channel.value, payload.recipient_id)
            return DeliveryOutcome(channel, False, str(exc), retryable=True)
        return DeliveryOutcome(channel, True)

    def dispatch(self, payloads: Mapping[Channel, Payload]) -> Dict[Channel, DeliveryOutcome]:
        if not payloads:
            return {}
        executor = ThreadPoolExecutor(max_workers=len(payloads), thread_name_prefix="notify-channel")
        try:
            futures = {executor.submit(self._send, channel, payload): channel for channel, payload in payloads.items()}
            done, _ = wait(futures, timeout=self.timeout)
            outcomes: Dict[Channel, DeliveryOutcome] = {}
            for future, channel in futures.items():
                if future in done:
                    outcomes[channel] = future.result()
                else:
                    LOGGER.warning("Delivery over %s timed out after %.1fs", channel.value, self.timeout)
                    outcomes[channel] = DeliveryOutcome(channel, False, f"Timed out after {self.timeout}s", retryable=True)
            return outcomes
        finally:
            # A hung sender must not hold up the remaining channels.
            executor.shutdown(wait=False, cancel_futures=True)
