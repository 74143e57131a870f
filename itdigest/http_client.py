"""HTTP client with a default timeout, a project User-Agent and bounded retries."""

from __future__ import annotations

import random
import re
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from http import HTTPStatus
from urllib.parse import urlsplit, urlunsplit

import requests
from requests.structures import CaseInsensitiveDict

from .version import user_agent as default_user_agent

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.5

_INTEGER_RE = re.compile(r"[+-]?\d+")


class HTTPStatusError(Exception):
    """A retryable HTTP status seen during a request attempt."""

    def __init__(self, status: int, headers: Mapping[str, str] | None = None) -> None:
        self.status = status
        self.headers = headers
        super().__init__(status)

    def __str__(self) -> str:
        try:
            phrase = HTTPStatus(self.status).phrase
        except ValueError:
            phrase = ""
        return f"http {self.status} {phrase}"


class RetriesExhaustedError(Exception):
    """Raised when every attempt of a request failed transiently."""

    def __init__(self, method: str, url: str, attempts: int, last_error: BaseException | None) -> None:
        self.method = method
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{method} {url}: giving up after {attempts} attempts: {last_error}")


def default_url_sanitizer(url: str) -> str:
    """Mask the password part of any userinfo in ``url``."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable>"
    userinfo, at, hostport = parts.netloc.rpartition("@")
    if not at:
        return url
    user, colon, _ = userinfo.partition(":")
    if not colon:
        return url
    return urlunsplit(parts._replace(netloc=f"{user}:xxxxx@{hostport}"))


def _sleep_for(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def _is_retryable_status(code: int) -> bool:
    return code == HTTPStatus.TOO_MANY_REQUESTS or code >= 500


def retry_after(headers: Mapping[str, str] | None) -> float:
    """Return the delay in seconds requested by a Retry-After header, or 0."""
    if not headers:
        return 0.0
    value = CaseInsensitiveDict(headers).get("Retry-After")
    if not value:
        return 0.0
    if _INTEGER_RE.fullmatch(value):
        seconds = int(value)
        return float(seconds) if seconds > 0 else 0.0
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return 0.0
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return delta if delta > 0 else 0.0


def backoff(attempt: int, base: float) -> float:
    """Return ``base * 2**(attempt-1)`` jittered by up to 25% either way."""
    attempt = max(attempt, 1)
    delay = base * (2 ** (attempt - 1))
    jitter = random.uniform(0, delay / 2) - delay / 4
    return delay + jitter


class HttpClient:
    """A requests session wrapper that retries network errors, 429 and 5xx."""

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], None] | None = None,
        url_sanitizer: Callable[[str], str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._session = session if session is not None else requests.Session()
        self._user_agent = user_agent or default_user_agent()
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep if sleep is not None else _sleep_for
        self._url_sanitizer = url_sanitizer if url_sanitizer is not None else default_url_sanitizer
        self._timeout = timeout

    def set_url_sanitizer(self, fn: Callable[[str], str] | None) -> None:
        """Install the function that renders URLs in error messages; None is ignored."""
        if fn is not None:
            self._url_sanitizer = fn

    def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
    ) -> requests.Response:
        """Send a request, retrying transient failures.

        The response is streamed; the caller reads and closes it. A
        Retry-After header overrides the jittered exponential backoff.
        """
        request_headers = CaseInsensitiveDict(headers or {})
        if not request_headers.get("User-Agent"):
            request_headers["User-Agent"] = self._user_agent

        attempts = self._max_retries + 1
        last_error: BaseException | None = None
        for attempt in range(attempts):
            if attempt > 0:
                delay = backoff(attempt, self._base_delay)
                if isinstance(last_error, HTTPStatusError):
                    requested = retry_after(last_error.headers)
                    if requested > 0:
                        delay = requested
                self._sleep(delay)

            try:
                response = self._session.request(
                    method,
                    url,
                    headers=dict(request_headers),
                    data=data,
                    timeout=self._timeout,
                    stream=True,
                )
            except requests.RequestException as exc:
                last_error = exc
                continue

            if not _is_retryable_status(response.status_code):
                return response
            response.close()
            last_error = HTTPStatusError(response.status_code, response.headers)

        raise RetriesExhaustedError(
            method, self._url_sanitizer(url), max(attempts, 0), last_error
        ) from last_error