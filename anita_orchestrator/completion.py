"""
Chat completion transport for OpenAI-compatible endpoints.

Requests use bearer auth. Streaming responses are read as server-sent
event lines ("data: {...}") until "data: [DONE]". Connection errors and
timeouts are retried with exponential backoff; HTTP errors surface at
once with the provider's error message.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import json
import time
from typing import Iterator, Optional

import requests

from .config import (
    DEFAULT_API_BASE,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MODEL,
    DEFAULT_REQUEST_TIMEOUT,
)
from .errors import AbortError, TransportError
from .logs import log, verbose_log
from .registry import CancellationToken
from .store import TOKEN_USAGE_KEY, BlobStore

CONNECT_TIMEOUT = 10
SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"
APP_TITLE = "Anita"

USAGE_FIELDS = ("prompt_tokens", "completion_tokens", "total_tokens")


class UsageTracker:
    """Accumulates token usage for this process and across runs."""

    def __init__(self, blobs: Optional[BlobStore] = None):
        self.blobs = blobs
        self.session = {name: 0 for name in USAGE_FIELDS}
        self.session["requests"] = 0
        stored = (blobs.get(TOKEN_USAGE_KEY, {}) or {}) if blobs else {}
        total = stored.get("total", {}) if isinstance(stored, dict) else {}
        self.total = {name: int(total.get(name, 0)) for name in (*USAGE_FIELDS, "requests")}

    def record(self, usage: dict) -> None:
        """Add one response's usage block to the session and total counters."""
        if not usage:
            return
        for counters in (self.session, self.total):
            for name in USAGE_FIELDS:
                counters[name] += int(usage.get(name, 0) or 0)
            counters["requests"] += 1
        if self.blobs is not None:
            self.blobs.set(TOKEN_USAGE_KEY, {"session": self.session, "total": self.total})
        verbose_log(
            f"Tokens: {usage.get('prompt_tokens', 0)} in, "
            f"{usage.get('completion_tokens', 0)} out",
            "API",
        )

    def format_summary(self) -> str:
        return (
            f"Session: {self.session['total_tokens']:,} tokens in {self.session['requests']} requests | "
            f"Total: {self.total['total_tokens']:,} tokens in {self.total['requests']} requests"
        )


def error_message(resp: requests.Response) -> str:
    """The provider's error.message, verbatim when present."""
    try:
        payload = resp.json()
    except ValueError:
        return resp.text.strip() or f"HTTP {resp.status_code}"
    if isinstance(payload, dict) and payload.get("error"):
        return error_message_from_payload(payload)
    return resp.text.strip() or f"HTTP {resp.status_code}"


class CompletionService:
    """Sends message lists to the chat completions endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        api_base: str = DEFAULT_API_BASE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        request_timeout: int = DEFAULT_REQUEST_TIMEOUT,
        usage: Optional[UsageTracker] = None,
        http: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.url = api_base.rstrip("/") + "/chat/completions"
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.request_timeout = request_timeout
        self.usage = usage or UsageTracker()
        self.http = http or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": APP_TITLE,
        }

    def _sleep(self, seconds: float, token: Optional[CancellationToken]) -> None:
        if token is None:
            time.sleep(seconds)
        elif token.wait(seconds):
            raise AbortError("Request cancelled during backoff")

    def _post(
        self,
        messages: list[dict],
        model: Optional[str],
        stream: bool,
        token: Optional[CancellationToken],
    ) -> requests.Response:
        payload = {"model": model or self.model, "messages": messages, "stream": stream}
        if stream:
            payload["stream_options"] = {"include_usage": True}

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            if token is not None:
                token.raise_if_cancelled()
            try:
                verbose_log(
                    f"POST {self.url} model={payload['model']} messages={len(messages)} "
                    f"stream={stream} attempt={attempt + 1}",
                    "API",
                )
                resp = self.http.post(
                    self.url,
                    headers=self._headers(),
                    json=payload,
                    timeout=(CONNECT_TIMEOUT, self.request_timeout),
                    stream=stream,
                )
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                last_error = e
                delay = self.backoff_base * (2 ** attempt)
                log(f"{type(e).__name__} on attempt {attempt + 1}/{self.max_retries}: {e}", "API")
                if attempt + 1 < self.max_retries:
                    self._sleep(delay, token)
                continue

            if not 200 <= resp.status_code < 300:
                message = error_message(resp)
                resp.close()
                log(f"HTTP {resp.status_code}: {message}", "API")
                raise TransportError(message, status_code=resp.status_code)
            return resp

        raise TransportError(f"Request failed after {self.max_retries} attempts: {last_error}")

    def chat(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> str:
        """Return the full completion text for a message list."""
        resp = self._post(messages, model, stream=False, token=token)
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from completion endpoint: {e}") from e
        finally:
            resp.close()
        if token is not None:
            token.raise_if_cancelled()
        self.usage.record(data.get("usage") or {})
        choices = data.get("choices") or []
        if not choices:
            raise TransportError(error_message_from_payload(data))
        return (choices[0].get("message") or {}).get("content") or ""

    def stream_chat(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        """Yield completion text chunks as they arrive.

        Cancelling the token closes the open response; the generator then
        raises AbortError.
        """
        resp = self._post(messages, model, stream=True, token=token)
        close_on_cancel = token.on_cancel(resp.close) if token is not None else None
        try:
            for line in resp.iter_lines(decode_unicode=True):
                if token is not None:
                    token.raise_if_cancelled()
                if not line or not line.startswith(SSE_DATA_PREFIX):
                    continue
                data = line[len(SSE_DATA_PREFIX):].strip()
                if data == SSE_DONE:
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    verbose_log(f"Skipping malformed stream line: {data[:80]}", "API")
                    continue
                if chunk.get("error"):
                    raise TransportError(error_message_from_payload(chunk))
                if chunk.get("usage"):
                    self.usage.record(chunk["usage"])
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                content = (choices[0].get("delta") or {}).get("content")
                if content:
                    yield content
        except (requests.exceptions.RequestException, AttributeError, ValueError, OSError) as e:
            if token is not None and token.cancelled:
                raise AbortError("Stream cancelled") from e
            raise TransportError(f"Stream interrupted: {e}") from e
        finally:
            if close_on_cancel is not None:
                token.remove_callback(close_on_cancel)
            resp.close()
        if token is not None:
            token.raise_if_cancelled()


def error_message_from_payload(payload: dict) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return "Completion endpoint returned no choices"
