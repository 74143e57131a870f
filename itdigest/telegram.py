"""Minimal Telegram Bot API client for sending messages."""

from __future__ import annotations

import json
import re
from enum import StrEnum

import requests

from .http_client import HttpClient, RetriesExhaustedError, default_url_sanitizer

MAX_MESSAGE_BYTES = 4096
_MAX_RESPONSE_BODY = 1 << 20
_BOT_PATH_RE = re.compile(r"/bot[^/]+")


class ParseMode(StrEnum):
    """The Bot API ``parse_mode`` parameter."""

    NONE = ""
    MARKDOWN_V2 = "MarkdownV2"
    HTML = "HTML"


class TelegramError(Exception):
    """Raised when a message cannot be delivered."""


def sanitize_url(url: str) -> str:
    """Mask the ``/bot<TOKEN>`` path segment so tokens never reach error text."""
    from urllib.parse import urlsplit, urlunsplit

    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable>"
    path = _BOT_PATH_RE.sub("/bot-REDACTED", parts.path)
    return default_url_sanitizer(urlunsplit(parts._replace(path=path)))


def token_from_env(value: str) -> str:
    """Return ``value`` if it is a non-empty bot token."""
    if not value:
        raise ValueError("empty telegram bot token")
    return value


def _snippet(body: bytes) -> str:
    text = body[:200].decode("utf-8", errors="replace")
    if len(body) > 200:
        text += "…"
    return text.replace("\n", " ")


def _read_limited(response: requests.Response, limit: int) -> bytes:
    buf = bytearray()
    for chunk in response.iter_content(chunk_size=65536):
        buf += chunk
        if len(buf) > limit:
            raise TelegramError(f"telegram response exceeds {limit} bytes")
    return bytes(buf)


class Bot:
    """Sends messages through the Bot API ``sendMessage`` endpoint."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.telegram.org",
        http: HttpClient | None = None,
    ) -> None:
        self._token = token
        self._base_url = base_url
        self._http = http if http is not None else HttpClient()
        # The token lives in the URL path, so errors must never show it.
        self._http.set_url_sanitizer(sanitize_url)

    def send_message(self, chat: str, text: str, mode: ParseMode | str = ParseMode.NONE) -> int:
        """Post ``text`` to ``chat`` and return the Telegram message id."""
        size = len(text.encode("utf-8"))
        if size > MAX_MESSAGE_BYTES:
            raise TelegramError(f"message too long: {size} bytes (max {MAX_MESSAGE_BYTES})")

        payload = {"chat_id": chat, "text": text}
        mode = ParseMode(mode)
        if mode is not ParseMode.NONE:
            payload["parse_mode"] = mode.value
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

        url = f"{self._base_url}/bot{self._token}/sendMessage"
        try:
            response = self._http.request(
                "POST", url, headers={"Content-Type": "application/json"}, data=body
            )
        except RetriesExhaustedError as exc:
            raise TelegramError(f"send to telegram: {exc}") from exc

        with response:
            try:
                raw = _read_limited(response, _MAX_RESPONSE_BODY)
            except requests.RequestException as exc:
                raise TelegramError(f"read telegram response: {exc}") from exc

        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            raise TelegramError(f"decode telegram response: {exc} (body: {_snippet(raw)})") from exc
        if not isinstance(decoded, dict):
            raise TelegramError(f"decode telegram response: not an object (body: {_snippet(raw)})")

        if not decoded.get("ok"):
            code = decoded.get("error_code", 0)
            description = decoded.get("description", "")
            raise TelegramError(f"telegram error: code={code} {description}")
        result = decoded.get("result") or {}
        return int(result.get("message_id", 0))