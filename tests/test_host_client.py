"""Tests for HttpHostClient against an httpx MockTransport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from butler_sync.exceptions import HostClientError, HostTimeoutError
from butler_sync.host import HostClient, HttpHostClient, first_text_part
from tests.conftest import FakeHost, user_message


class Recorder:
    """MockTransport handler replaying queued responses and recording requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _call(recorder: Recorder, method: str, *args, **kwargs):
    async def scenario():
        async with HttpHostClient(
            "http://host.test/", max_retries=2, transport=httpx.MockTransport(recorder)
        ) as client:
            return await getattr(client, method)(*args, **kwargs)

    return asyncio.run(scenario())


class TestEndpoints:
    def test_session_messages(self):
        recorder = Recorder(httpx.Response(200, json=[user_message("hi", "ses_1"), "junk"]))
        messages = _call(recorder, "session_messages", "ses_1", limit=3)
        assert messages == [user_message("hi", "ses_1")]
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/session/ses_1/message"
        assert request.url.params["limit"] == "3"

    def test_create_session(self):
        recorder = Recorder(httpx.Response(200, json={"id": "ses_tmp"}))
        assert _call(recorder, "create_session", "commit-msg-gen") == "ses_tmp"
        assert json.loads(recorder.requests[0].content) == {"title": "commit-msg-gen"}

    def test_create_session_without_id(self):
        assert _call(Recorder(httpx.Response(200, json={})), "create_session", "x") is None

    def test_prompt(self):
        reply = {"parts": [{"type": "step-start"}, {"type": "text", "text": "feat: add toggle"}]}
        recorder = Recorder(httpx.Response(200, json=reply))
        text = _call(recorder, "prompt", "ses_tmp", provider="anthropic", model="small", system="sys", text="go")
        assert text == "feat: add toggle"
        body = json.loads(recorder.requests[0].content)
        assert body["model"] == {"providerID": "anthropic", "modelID": "small"}
        assert body["tools"] == {}
        assert body["parts"] == [{"type": "text", "text": "go"}]
        assert recorder.requests[0].url.path == "/session/ses_tmp/message"

    def test_delete_and_title(self):
        recorder = Recorder(httpx.Response(200))
        _call(recorder, "delete_session", "ses_tmp")
        _call(recorder, "update_session_title", "ses_1", "my-branch")
        assert [r.method for r in recorder.requests] == ["DELETE", "PATCH"]
        assert json.loads(recorder.requests[1].content) == {"title": "my-branch"}


class TestErrors:
    def test_server_error_retried(self):
        recorder = Recorder(httpx.Response(503), httpx.Response(200, json={"id": "ses_tmp"}))
        assert _call(recorder, "create_session", "x") == "ses_tmp"
        assert len(recorder.requests) == 2

    def test_server_error_exhausted(self):
        recorder = Recorder(httpx.Response(500, text="boom"))
        with pytest.raises(HostClientError) as exc_info:
            _call(recorder, "create_session", "x")
        assert exc_info.value.status_code == 500
        assert len(recorder.requests) == 3

    def test_client_error_not_retried(self):
        recorder = Recorder(httpx.Response(404, text="no such session"))
        with pytest.raises(HostClientError) as exc_info:
            _call(recorder, "session_messages", "ses_missing")
        assert exc_info.value.status_code == 404
        assert len(recorder.requests) == 1

    def test_timeout(self):
        recorder = Recorder(httpx.ReadTimeout("slow"))
        with pytest.raises(HostTimeoutError):
            _call(recorder, "session_messages", "ses_1")
        assert len(recorder.requests) == 1

    def test_bad_body(self):
        recorder = Recorder(httpx.Response(200, text="<html>"))
        with pytest.raises(HostClientError):
            _call(recorder, "session_messages", "ses_1")


class TestProtocol:
    def test_implementations_satisfy_protocol(self):
        assert isinstance(HttpHostClient("http://host.test"), HostClient)
        assert isinstance(FakeHost(), HostClient)

    def test_first_text_part(self):
        assert first_text_part([{"type": "tool"}, {"type": "text", "text": "a"}, {"type": "text", "text": "b"}]) == "a"
        assert first_text_part([{"type": "text", "text": ""}]) is None
        assert first_text_part("nope") is None
