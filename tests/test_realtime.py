from __future__ import annotations

import httpx
import pytest

from stagecall import realtime
from stagecall.realtime import (
    LoggingPushSender,
    RealtimeHub,
    WebhookPushSender,
    get_push_sender,
    set_push_sender,
)


def test_publish_records_bounded_history():
    hub = RealtimeHub(history_size=2)

    for index in range(3):
        assert hub.publish("rehearsal_updated", {"n": index}, ["m1", "m1", "m2"]) == 2

    history = hub.history("m1")
    assert [event["n"] for event in history] == [1, 2]
    assert history[-1]["type"] == "rehearsal_updated"
    assert history[-1]["target_member_ids"] == ["m1", "m2"]
    assert hub.history("m3") == []

    hub.clear()
    assert hub.history("m1") == []


def test_webhook_sender_posts_json(monkeypatch):
    calls = []

    def fake_post(url, *, json, timeout):
        calls.append((url, json, timeout))
        return httpx.Response(202, request=httpx.Request("POST", url))

    monkeypatch.setattr(realtime.httpx, "post", fake_post)
    sender = WebhookPushSender("https://push.example.org/hook", timeout=1.5)

    sender.send("m1", title="New rehearsal: Run", body="On Monday", metadata={"rehearsal_id": "r1"})

    assert calls == [
        (
            "https://push.example.org/hook",
            {
                "member_id": "m1",
                "title": "New rehearsal: Run",
                "body": "On Monday",
                "type": "info",
                "metadata": {"rehearsal_id": "r1"},
            },
            1.5,
        )
    ]


def test_webhook_sender_raises_on_error(monkeypatch):
    def fake_post(url, *, json, timeout):
        return httpx.Response(500, request=httpx.Request("POST", url))

    monkeypatch.setattr(realtime.httpx, "post", fake_post)

    with pytest.raises(httpx.HTTPStatusError):
        WebhookPushSender("https://push.example.org/hook").send(
            "m1", title="t", body=None, metadata={}
        )


def test_default_push_sender_is_logging_without_url(monkeypatch):
    monkeypatch.setattr(realtime, "_push_sender", None)
    try:
        assert isinstance(get_push_sender(), LoggingPushSender)
        custom = LoggingPushSender()
        set_push_sender(custom)
        assert get_push_sender() is custom
    finally:
        set_push_sender(None)
