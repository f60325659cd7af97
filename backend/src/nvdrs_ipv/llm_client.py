"""
Client for OpenAI-chat-completion-compatible endpoints.

Handles request building, retries with exponential backoff, a shared
request-rate ceiling, and token counting. ``invoke`` never raises for API
failures: the terminal error is returned inside the ModelInvocation.
Uses stdlib only (urllib.request) for HTTP.
"""

import json
import logging
import socket
import ssl
import threading
import time
import urllib.error
import urllib.request
from collections import deque

from pydantic import ValidationError

from nvdrs_ipv.config import LLMSettings
from nvdrs_ipv.schemas import ModelInvocation

logger = logging.getLogger(__name__)

_USER_AGENT = "nvdrs-ipv/1.0 (IPV narrative classification)"

# HTTP statuses worth retrying besides 5xx.
_RETRYABLE_STATUS = {408, 425, 429}


class RateLimiter:
    """Allow at most ``max_requests`` acquisitions per rolling ``window_seconds``.

    Thread-safe; one instance is shared by every call of a run.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock=time.monotonic, sleep=time.sleep):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._stamps: deque[float] = deque()
        self._lock = threading.Lock()

    def acquire(self, max_wait: float | None = None) -> bool:
        """Block until a slot is free. Returns False if ``max_wait`` runs out first."""
        deadline = None if max_wait is None else self._clock() + max_wait
        while True:
            with self._lock:
                now = self._clock()
                while self._stamps and now - self._stamps[0] >= self.window_seconds:
                    self._stamps.popleft()
                if len(self._stamps) < self.max_requests:
                    self._stamps.append(now)
                    return True
                wait = self.window_seconds - (now - self._stamps[0])
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self._sleep(max(wait, 0.0))


class _TransientError(Exception):
    pass


class _PermanentError(Exception):
    pass


def render_user_prompt(template: str, narrative: str) -> str:
    """Fill the ``{narrative}`` placeholder. Other braces are left untouched."""
    return template.replace("{narrative}", narrative.strip())


class LLMClient:
    """Wrapper around a chat-completions endpoint."""

    def __init__(self, settings: LLMSettings, rate_limiter: RateLimiter | None = None,
                 opener=None, sleep=time.sleep):
        self.settings = settings
        self.api_url = settings.api_url
        self.model = settings.model
        self.default_temperature = settings.temperature
        self.max_tokens = settings.max_tokens
        self.timeout = settings.timeout_seconds
        self.retry_attempts = settings.retry_attempts
        self.retry_delay = settings.retry_base_delay_seconds
        if rate_limiter is None and settings.rate_limit_requests:
            rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
        self.rate_limiter = rate_limiter
        self._opener = opener or self._urlopen
        self._sleep = sleep
        self._ctx = ssl.create_default_context()

    def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        temperature: float | None = None,
        timeout: float | None = None,
    ) -> ModelInvocation:
        """Send one (system, user) prompt pair and return the recorded exchange."""
        model = model or self.model
        temp = temperature if temperature is not None else self.default_temperature
        timeout = timeout or self.timeout

        body = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temp,
        }
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens

        record = {
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "model": model,
            "temperature": temp,
        }

        started = time.monotonic()
        last_error = None
        last_status = None
        last_body = None
        attempt = 0
        for attempt in range(1, self.retry_attempts + 1):
            if self.rate_limiter is not None and not self.rate_limiter.acquire(
                max_wait=self.rate_limiter.window_seconds + timeout
            ):
                last_error = "Rate limiter wait exceeded"
                last_status = None
                break

            try:
                payload = self._post(body, timeout)
                completion = _extract_completion(payload)
                try:
                    return ModelInvocation(
                        **record,
                        **completion,
                        attempts=attempt,
                        latency_seconds=time.monotonic() - started,
                    )
                except ValidationError as e:
                    raise _PermanentError(
                        None, f"Malformed response envelope: {e.error_count()} invalid fields",
                        json.dumps(payload)[:2000],
                    ) from e
            except _PermanentError as e:
                status, message, err_body = e.args
                logger.warning("LLM call failed permanently (status %s): %s", status, message)
                return ModelInvocation(
                    **record,
                    response_raw=err_body,
                    error=message,
                    error_kind="non_transient",
                    status_code=status,
                    attempts=attempt,
                    latency_seconds=time.monotonic() - started,
                )
            except _TransientError as e:
                last_status, last_error, last_body = e.args
                if attempt < self.retry_attempts:
                    wait = self.retry_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "LLM call failed (attempt %d): %s. Retrying in %.1fs...",
                        attempt, last_error, wait,
                    )
                    self._sleep(wait)

        logger.error("LLM call failed after %d attempts: %s", attempt, last_error)
        return ModelInvocation(
            **record,
            response_raw=last_body,
            error=f"LLM call failed after {attempt} attempts: {last_error}",
            error_kind="transient",
            status_code=last_status,
            attempts=attempt,
            latency_seconds=time.monotonic() - started,
        )

    def _post(self, body: dict, timeout: float) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": _USER_AGENT,
        }
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        req = urllib.request.Request(
            self.api_url,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            raw = self._opener(req, timeout)
        except urllib.error.HTTPError as e:
            err_body = _read_error_body(e)
            message = f"HTTP {e.code}: {e.reason}"
            if e.code >= 500 or e.code in _RETRYABLE_STATUS:
                raise _TransientError(e.code, message, err_body) from e
            raise _PermanentError(e.code, message, err_body) from e
        except (urllib.error.URLError, ConnectionError, TimeoutError, socket.timeout) as e:
            reason = getattr(e, "reason", e)
            raise _TransientError(None, f"Connection error: {reason}", None) from e

        try:
            return json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
            raise _PermanentError(None, f"Malformed response envelope: {e}", text[:2000]) from e

    def _urlopen(self, req: urllib.request.Request, timeout: float) -> bytes:
        with urllib.request.urlopen(req, timeout=timeout, context=self._ctx) as resp:
            return resp.read()


def _read_error_body(error: urllib.error.HTTPError) -> str | None:
    try:
        data = error.read()
    except (OSError, AttributeError):
        return None
    if not data:
        return None
    return data.decode("utf-8", errors="replace")[:2000]


def _extract_completion(payload: dict) -> dict:
    """Pull message content and usage out of a chat-completions response."""
    if not isinstance(payload, dict):
        raise _PermanentError(None, "Malformed response envelope: not an object", str(payload)[:2000])
    if payload.get("error"):
        err = payload["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise _PermanentError(None, f"API error: {message}", json.dumps(payload)[:2000])

    envelope = json.dumps(payload)[:2000]

    content = None
    choices = payload.get("choices") or []
    if not isinstance(choices, list):
        raise _PermanentError(None, "Malformed response envelope: choices is not a list", envelope)
    if choices:
        choice = choices[0]
        if not isinstance(choice, dict):
            raise _PermanentError(None, "Malformed response envelope: choice is not an object", envelope)
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise _PermanentError(None, "Malformed response envelope: message is not an object", envelope)
        content = message.get("content")
        if content is None:
            content = choice.get("text")
        if content is not None and not isinstance(content, str):
            raise _PermanentError(None, "Malformed response envelope: content is not a string", envelope)

    usage = payload.get("usage") or {}
    if not isinstance(usage, dict):
        raise _PermanentError(None, "Malformed response envelope: usage is not an object", envelope)
    response_id = payload.get("id")
    return {
        "response_raw": content,
        "prompt_tokens": _token_count(usage.get("prompt_tokens")),
        "completion_tokens": _token_count(usage.get("completion_tokens")),
        "total_tokens": _token_count(usage.get("total_tokens")),
        "response_id": str(response_id) if response_id is not None else None,
    }


def _token_count(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value
