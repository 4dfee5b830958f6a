import json
import threading

import pytest
import requests

from notification_engine import channels
from notification_engine.channels import ChannelDispatcher, WebhookSender, senders_from_env
from notification_engine.exceptions import PermanentDeliveryError, TransientDeliveryError
from notification_engine.models import Channel, DispatchRequest


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


def _request(channel=Channel.EMAIL):
    return DispatchRequest(
        recipient_id="emp-1",
        channel=channel,
        title="New task: expense report",
        body="Please file your expense report",
        notification_id="n-1",
    )


def test_webhook_sender_posts_json(monkeypatch):
    calls = []

    def fake_post(url, headers, data, timeout):
        calls.append((url, headers, json.loads(data), timeout))
        return FakeResponse(202)

    monkeypatch.setattr(channels.requests, "post", fake_post)
    WebhookSender("https://delivery.example/hook", token="secret", timeout=3.0)(_request())

    [(url, headers, body, timeout)] = calls
    assert url == "https://delivery.example/hook"
    assert headers["Authorization"] == "Bearer secret"
    assert body["kind"] == "notification"
    assert body["channel"] == "email"
    assert body["notification_id"] == "n-1"
    assert timeout == 3.0


@pytest.mark.parametrize("status", [500, 503, 429])
def test_webhook_server_errors_are_transient(monkeypatch, status):
    monkeypatch.setattr(channels.requests, "post", lambda *a, **kw: FakeResponse(status, "busy"))
    with pytest.raises(TransientDeliveryError):
        WebhookSender("https://delivery.example/hook")(_request())


def test_webhook_client_errors_are_permanent(monkeypatch):
    monkeypatch.setattr(channels.requests, "post", lambda *a, **kw: FakeResponse(422, "bad phone number"))
    with pytest.raises(PermanentDeliveryError) as excinfo:
        WebhookSender("https://delivery.example/hook")(_request(Channel.SMS))
    assert excinfo.value.channel is Channel.SMS
    assert not excinfo.value.retryable


def test_webhook_timeout_is_transient(monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(channels.requests, "post", fake_post)
    with pytest.raises(TransientDeliveryError) as excinfo:
        WebhookSender("https://delivery.example/hook")(_request())
    assert excinfo.value.retryable


def test_senders_from_env(monkeypatch):
    monkeypatch.setenv("NOTIFY_DELIVERY_WEBHOOK_URL", "https://delivery.example/all")
    monkeypatch.setenv("NOTIFY_WEBHOOK_SMS", "https://sms.example/send")
    monkeypatch.delenv("NOTIFY_WEBHOOK_PUSH", raising=False)
    senders = senders_from_env()
    assert set(senders) == set(Channel)
    assert senders[Channel.SMS].url == "https://sms.example/send"
    assert senders[Channel.PUSH].url == "https://delivery.example/all"


def test_senders_from_env_without_urls(monkeypatch):
    monkeypatch.delenv("NOTIFY_DELIVERY_WEBHOOK_URL", raising=False)
    for channel in Channel:
        monkeypatch.delenv(f"NOTIFY_WEBHOOK_{channel.value.upper()}", raising=False)
    assert senders_from_env() == {}


def test_dispatcher_reports_each_channel(senders):
    senders[Channel.SMS].fail = "permanent"
    senders[Channel.PUSH].fail = "transient"
    dispatcher = ChannelDispatcher(senders, timeout=2.0)

    outcomes = dispatcher.dispatch({channel: _request(channel) for channel in Channel})

    assert outcomes[Channel.IN_APP].ok and outcomes[Channel.EMAIL].ok
    assert not outcomes[Channel.SMS].ok and not outcomes[Channel.SMS].retryable
    assert not outcomes[Channel.PUSH].ok and outcomes[Channel.PUSH].retryable


def test_dispatcher_missing_sender_and_unexpected_error():
    def broken(payload):
        raise RuntimeError("adapter crashed")

    dispatcher = ChannelDispatcher({Channel.EMAIL: broken}, timeout=2.0)
    outcomes = dispatcher.dispatch({Channel.EMAIL: _request(), Channel.SMS: _request(Channel.SMS)})

    assert outcomes[Channel.EMAIL].retryable
    assert outcomes[Channel.EMAIL].error == "adapter crashed"
    assert not outcomes[Channel.SMS].ok
    assert not outcomes[Channel.SMS].retryable


def test_slow_channel_times_out_without_blocking_others(senders):
    release = threading.Event()

    def hung(payload):
        release.wait(5)

    dispatcher = ChannelDispatcher({Channel.EMAIL: senders[Channel.EMAIL], Channel.SMS: hung}, timeout=0.2)
    try:
        outcomes = dispatcher.dispatch({Channel.EMAIL: _request(), Channel.SMS: _request(Channel.SMS)})
    finally:
        release.set()

    assert outcomes[Channel.EMAIL].ok
    assert not outcomes[Channel.SMS].ok
    assert outcomes[Channel.SMS].retryable
    assert "Timed out" in outcomes[Channel.SMS].error


def test_dispatch_nothing():
    assert ChannelDispatcher({}).dispatch({}) == {}
