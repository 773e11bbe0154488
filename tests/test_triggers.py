import jwt
import pytest
import requests

from config import TriggerConfig
from recon_engine.triggers import (
    HttpTrigger,
    QueueTrigger,
    build_trigger,
    decode_trigger_token,
    issue_trigger_token,
)


class FakeResponse:
    def __init__(self, status_code: int, text: str = ""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def test_token_round_trip() -> None:
    token = issue_trigger_token("s3cret", "audit_1")
    claims = decode_trigger_token(token, "s3cret")
    assert claims["sub"] == "audit_1"

    with pytest.raises(jwt.InvalidTokenError):
        decode_trigger_token(token, "other-secret")


def test_expired_token_is_rejected() -> None:
    token = issue_trigger_token("s3cret", "audit_1", ttl_seconds=-10)
    with pytest.raises(jwt.ExpiredSignatureError):
        decode_trigger_token(token, "s3cret")


def test_http_trigger_sends_signed_request() -> None:
    session = FakeSession(response=FakeResponse(202))
    trigger = HttpTrigger("http://worker/api/chunks/process", signing_secret="s3cret", session=session)

    assert trigger.send("audit_1") is True
    call = session.calls[0]
    assert call["json"] == {"audit_id": "audit_1"}
    token = call["headers"]["Authorization"].split(" ", 1)[1]
    assert decode_trigger_token(token, "s3cret")["sub"] == "audit_1"


def test_http_trigger_reports_failures() -> None:
    assert HttpTrigger("http://worker", session=FakeSession(response=FakeResponse(500, "nope"))).send("a") is False

    offline = FakeSession(error=requests.exceptions.ConnectionError("down"))
    assert HttpTrigger("http://worker", session=offline).send("a") is False
    assert "Authorization" not in offline.calls[0]["headers"]


def test_build_trigger() -> None:
    http = build_trigger(TriggerConfig(mode="http", endpoint_url="http://worker", signing_secret="x"))
    assert isinstance(http, HttpTrigger)
    assert isinstance(build_trigger(TriggerConfig(mode="http", endpoint_url=None)), QueueTrigger)
    assert isinstance(build_trigger(TriggerConfig(mode="local")), QueueTrigger)


def test_queue_trigger_drain_respects_limit() -> None:
    class CountingScheduler:
        def __init__(self):
            self.calls = []

        def process_next(self, audit_id):
            self.calls.append(audit_id)
            return object()

    trigger = QueueTrigger()
    for audit_id in ("a1", "a2", "a3"):
        trigger.fire(audit_id)

    scheduler = CountingScheduler()
    assert trigger.drain(scheduler, max_items=2) == 2
    assert scheduler.calls == ["a1", "a2"]
    assert trigger.pending() == 1
