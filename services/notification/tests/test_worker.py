# pytest services/notification/tests/test_worker.py -q

import json
from types import SimpleNamespace

import pytest

import services.notification.worker as worker

JOB = {
    "type": "sms",
    "to": "+94771234567",
    "message": "EMERGENCY! I need help!",
    "emergency_id": "sos_abc",
    "user_id": "uid-alice",
}


class FakeChannel:
    def __init__(self):
        self.acked = []
        self.nacked = []
        self.published = []

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue):
        self.nacked.append((delivery_tag, requeue))

    def basic_publish(self, exchange, routing_key, body, properties):
        self.published.append((routing_key, json.loads(body), properties.headers))


class FakeTwilio:
    def __init__(self, status="sent"):
        self.status = status
        self.sent = []

    def send_sms(self, to_phone, message):
        self.sent.append((to_phone, message))
        return {"status": self.status, "sid": "SM1", "error": None if self.status == "sent" else "nope"}


def _method(tag=7):
    return SimpleNamespace(delivery_tag=tag, routing_key="notifications")


def _props(retry=None):
    return SimpleNamespace(headers={"x-retry-count": retry} if retry is not None else None)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def handle(sleeps):
    def _handle(message, channel, properties=None):
        worker.message_handler(
            message, channel, _method(), properties or _props(), sleep=sleeps.append
        )

    return _handle


@pytest.mark.parametrize("retry,expected", [(0, 1), (1, 2), (3, 8), (5, 32), (6, 60), (10, 60)])
def test_retry_delay_is_capped(retry, expected):
    assert worker.retry_delay(retry) == expected


def test_successful_send_is_acked(monkeypatch, handle):
    twilio = FakeTwilio()
    monkeypatch.setattr(worker, "get_twilio_client", lambda: twilio)
    channel = FakeChannel()

    handle(JOB, channel)

    assert twilio.sent == [("+94771234567", "EMERGENCY! I need help!")]
    assert channel.acked == [7]
    assert channel.published == []


def test_failed_send_is_republished_with_next_retry(monkeypatch, handle, sleeps):
    monkeypatch.setattr(worker, "get_twilio_client", lambda: FakeTwilio(status="failed"))
    channel = FakeChannel()

    handle(JOB, channel, _props(retry=2))

    assert sleeps == [4]
    assert channel.published == [("notifications", JOB, {"x-retry-count": 3})]
    assert channel.acked == [7]
    assert channel.nacked == []


def test_gives_up_after_max_retries(monkeypatch, handle, sleeps):
    monkeypatch.setattr(worker, "get_twilio_client", lambda: FakeTwilio(status="failed"))
    channel = FakeChannel()

    handle(JOB, channel, _props(retry=5))

    assert channel.nacked == [(7, False)]
    assert channel.published == []
    assert sleeps == []


def test_unconfigured_twilio_counts_as_failure(monkeypatch, handle):
    def no_twilio():
        raise ValueError("Missing Twilio configuration")

    monkeypatch.setattr(worker, "get_twilio_client", no_twilio)
    channel = FakeChannel()

    handle(JOB, channel)

    assert channel.published[0][2] == {"x-retry-count": 1}


def test_unknown_message_type_is_acked(handle):
    channel = FakeChannel()

    handle({"type": "carrier-pigeon"}, channel)

    assert channel.acked == [7]


def test_incomplete_job_is_not_sent(monkeypatch):
    twilio = FakeTwilio()
    monkeypatch.setattr(worker, "get_twilio_client", lambda: twilio)

    assert worker.process_sms_notification({"type": "sms", "to": "+94771234567"}) is False
    assert twilio.sent == []
