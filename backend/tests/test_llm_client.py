from __future__ import annotations

import io
import json
import urllib.error

import pytest

from nvdrs_ipv.config import LLMSettings
from nvdrs_ipv.llm_client import LLMClient, RateLimiter, render_user_prompt


def _settings(**kwargs) -> LLMSettings:
    values = {
        "api_url": "http://llm.test/v1/chat/completions",
        "model": "test-model",
        "retry_attempts": 3,
        "retry_base_delay_seconds": 1.0,
    }
    values.update(kwargs)
    return LLMSettings(**values)


def _completion(content: str) -> bytes:
    return json.dumps({
        "id": "chatcmpl-1",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 50, "completion_tokens": 10, "total_tokens": 60},
    }).encode()


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        "http://llm.test", code, "error", {}, io.BytesIO(b'{"error": "nope"}')
    )


class ScriptedOpener:
    """Returns or raises the scripted outcomes in order, recording requests."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def __call__(self, request, timeout):
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_successful_call_returns_content_and_usage() -> None:
    opener = ScriptedOpener(_completion('{"detected": true}'))
    client = LLMClient(_settings(api_key="sk-test"), opener=opener, sleep=lambda s: None)

    invocation = client.invoke("system", "user")

    assert invocation.ok
    assert invocation.response_raw == '{"detected": true}'
    assert invocation.total_tokens == 60
    assert invocation.attempts == 1
    body = json.loads(opener.requests[0].data)
    assert body["messages"][0] == {"role": "system", "content": "system"}
    assert body["temperature"] == pytest.approx(0.1)
    assert opener.requests[0].get_header("Authorization") == "Bearer sk-test"


def test_transient_errors_are_retried_with_backoff() -> None:
    sleeps = []
    opener = ScriptedOpener(
        _http_error(503),
        urllib.error.URLError("connection refused"),
        _completion('{"detected": false}'),
    )
    client = LLMClient(_settings(), opener=opener, sleep=sleeps.append)

    invocation = client.invoke("system", "user")

    assert invocation.ok
    assert invocation.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_return_transient_error() -> None:
    sleeps = []
    opener = ScriptedOpener(_http_error(429), _http_error(500), TimeoutError("timed out"))
    client = LLMClient(_settings(), opener=opener, sleep=sleeps.append)

    invocation = client.invoke("system", "user")

    assert not invocation.ok
    assert invocation.error_kind == "transient"
    assert invocation.attempts == 3
    assert sleeps == [1.0, 2.0]


def test_client_errors_are_not_retried() -> None:
    sleeps = []
    opener = ScriptedOpener(_http_error(400))
    client = LLMClient(_settings(), opener=opener, sleep=sleeps.append)

    invocation = client.invoke("system", "user")

    assert invocation.error_kind == "non_transient"
    assert invocation.status_code == 400
    assert invocation.attempts == 1
    assert sleeps == []
    assert len(opener.requests) == 1


def test_malformed_envelope_is_not_retried() -> None:
    opener = ScriptedOpener(b"<html>gateway</html>")
    client = LLMClient(_settings(), opener=opener, sleep=lambda s: None)

    invocation = client.invoke("system", "user")

    assert invocation.error_kind == "non_transient"
    assert invocation.response_raw == "<html>gateway</html>"


@pytest.mark.parametrize("envelope", [
    {"choices": [{"message": "oops"}]},
    {"choices": [{"message": {"content": [{"type": "text", "text": "hi"}]}}]},
    {"choices": [{"message": {"content": "{}"}}], "usage": "lots"},
    {"choices": ["text"]},
    {"choices": {"message": {"content": "{}"}}},
])
def test_unexpected_envelope_shapes_are_returned_as_errors(envelope) -> None:
    opener = ScriptedOpener(json.dumps(envelope).encode())
    client = LLMClient(_settings(), opener=opener, sleep=lambda s: None)

    invocation = client.invoke("system", "user")

    assert not invocation.ok
    assert invocation.error_kind == "non_transient"
    assert invocation.error.startswith("Malformed response envelope")
    assert invocation.attempts == 1
    assert len(opener.requests) == 1


def test_non_integer_usage_is_dropped() -> None:
    envelope = {
        "id": 7,
        "choices": [{"message": {"content": '{"detected": true}'}}],
        "usage": {"prompt_tokens": "50", "completion_tokens": 10, "total_tokens": None},
    }
    client = LLMClient(_settings(), opener=ScriptedOpener(json.dumps(envelope).encode()),
                       sleep=lambda s: None)

    invocation = client.invoke("system", "user")

    assert invocation.ok
    assert invocation.prompt_tokens is None
    assert invocation.completion_tokens == 10
    assert invocation.response_id == "7"


def test_render_user_prompt_leaves_other_braces() -> None:
    template = 'Narrative: {narrative}\nReply as {"detected": bool}'

    assert render_user_prompt(template, "  V was stabbed.  ") == (
        'Narrative: V was stabbed.\nReply as {"detected": bool}'
    )


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_rate_limiter_blocks_until_window_slides() -> None:
    clock = FakeClock()
    limiter = RateLimiter(2, 60.0, clock=clock, sleep=clock.sleep)

    assert limiter.acquire()
    assert limiter.acquire()
    assert limiter.acquire()

    assert clock.now == pytest.approx(60.0)


def test_rate_limiter_gives_up_after_max_wait() -> None:
    clock = FakeClock()
    limiter = RateLimiter(1, 60.0, clock=clock, sleep=clock.sleep)

    assert limiter.acquire()
    assert not limiter.acquire(max_wait=5.0)
    assert clock.now == pytest.approx(5.0)


def test_client_uses_configured_rate_limit() -> None:
    client = LLMClient(_settings(rate_limit_requests=90), opener=ScriptedOpener())

    assert client.rate_limiter.max_requests == 90
    assert client.rate_limiter.window_seconds == pytest.approx(60.0)
