"""Tests for discord_api.py request helpers."""

import pytest
import requests

import discord_api as dc


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


_calls = []
_responses = []


def _fake_request(method, url, headers=None, timeout=None, **kwargs):
    _calls.append({"method": method, "url": url, "headers": headers, **kwargs})
    result = _responses.pop(0)
    if isinstance(result, Exception):
        raise result
    return result


@pytest.fixture(autouse=True)
def fake_requests(monkeypatch):
    _calls.clear()
    _responses.clear()
    monkeypatch.setattr(requests, "request", _fake_request)
    monkeypatch.setattr(dc, "BOT_TOKEN", "")
    dc.init("secret")


def test_auth_header():
    _responses.append(_FakeResponse(200, []))
    dc.fetch_page("10")
    assert _calls[0]["headers"] == {"Authorization": "Bot secret"}
    assert _calls[0]["url"] == "https://discord.com/api/v10/channels/10/messages"


def test_fetch_page_sorts_newest_first_and_passes_before():
    _responses.append(_FakeResponse(200, [{"id": "5"}, {"id": "9"}, {"id": "7"}]))
    page = dc.fetch_page("10", limit=50, before="12")
    assert [m["id"] for m in page] == ["9", "7", "5"]
    assert _calls[0]["params"] == {"limit": 50, "before": "12"}


def test_fetch_page_clamps_limit():
    _responses.append(_FakeResponse(200, []))
    assert dc.fetch_page("10", limit=500) == []
    assert _calls[0]["params"] == {"limit": 100}


def test_fetch_page_failure_is_none():
    _responses.append(_FakeResponse(403, {"message": "Missing Access"}, text="Missing Access"))
    assert dc.fetch_page("10") is None
    _responses.append(requests.ConnectionError("down"))
    assert dc.fetch_page("10") is None


def test_fetch_new_messages_oldest_first():
    _responses.append(_FakeResponse(200, [{"id": "30"}, {"id": "21"}, {"id": "25"}]))
    msgs = dc.fetch_new_messages("10", "20")
    assert [m["id"] for m in msgs] == ["21", "25", "30"]
    assert _calls[0]["params"]["after"] == "20"


def test_fetch_member():
    _responses.append(_FakeResponse(200, {"user": {"id": "42"}}))
    assert dc.fetch_member("1", "42") == {"user": {"id": "42"}}
    assert _calls[0]["url"].endswith("/guilds/1/members/42")

    _responses.append(_FakeResponse(404, {}, text="Unknown Member"))
    assert dc.fetch_member("1", "43") is None


def test_send_to_channel():
    _responses.append(_FakeResponse(200, {"id": "1"}))
    assert dc.send_to_channel("10", "hi") is True
    assert _calls[0]["method"] == "POST"
    assert _calls[0]["json"] == {"content": "hi"}


def test_send_to_channel_silent_and_truncated():
    _responses.append(_FakeResponse(200, {"id": "1"}))
    dc.send_to_channel("10", "x" * 3000, silent=True)
    payload = _calls[0]["json"]
    assert len(payload["content"]) == dc.DISCORD_MAX_LENGTH
    assert payload["allowed_mentions"] == {"parse": []}


def test_send_direct_opens_dm_then_sends():
    _responses.append(_FakeResponse(200, {"id": "dm99"}))
    _responses.append(_FakeResponse(200, {"id": "m1"}))
    assert dc.send_direct("42", "hello") is True
    assert _calls[0]["json"] == {"recipient_id": "42"}
    assert _calls[1]["url"].endswith("/channels/dm99/messages")


def test_send_direct_failure():
    _responses.append(_FakeResponse(403, {}, text="Cannot send messages to this user"))
    assert dc.send_direct("42", "hello") is False
    assert len(_calls) == 1
