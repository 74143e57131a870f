"""RSS/Atom feed aggregation and URL canonicalisation for the daily digest."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from xml.etree.ElementTree import Element, ParseError

import requests
from defusedxml import DefusedXmlException
from defusedxml.ElementTree import fromstring

from .http_client import HttpClient, RetriesExhaustedError
from .strs import first_non_empty

# Many feeds stamp items at 00:00 UTC on the publication date, so a 24h
# window would miss same-day items; seen-article tracking prevents repeats.
DEFAULT_LOOKBACK = timedelta(hours=48)
DEFAULT_CONCURRENCY = 4
MAX_FEED_BYTES = 10 << 20

_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"
_TRACKING_PARAMS = frozenset({"fbclid", "gclid"})


class FeedError(Exception):
    """Raised when one or more feeds cannot be fetched or parsed.

    When raised by :meth:`FeedFetcher.fetch_all`, ``items`` holds everything
    gathered from the feeds that did succeed and ``errors`` every failure.
    """

    def __init__(
        self,
        message: str,
        items: Sequence[Item] = (),
        errors: Sequence[FeedError] = (),
    ) -> None:
        super().__init__(message)
        self.items = list(items)
        self.errors = list(errors)


@dataclass(frozen=True)
class Item:
    """A single feed entry accepted for the digest."""

    source: str
    title: str
    url: str
    published: datetime
    summary: str


@dataclass(frozen=True)
class Feed:
    """A configured feed source."""

    name: str
    url: str


@dataclass(frozen=True)
class FeedEntry:
    """An entry as parsed from an RSS or Atom document."""

    title: str = ""
    link: str = ""
    guid: str = ""
    description: str = ""
    content: str = ""
    published: datetime | None = None
    updated: datetime | None = None


def sanitize_url(url: str) -> str:
    """Strip userinfo, query string and fragment so secrets stay out of logs."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "<unparseable>"
    host = parts.netloc.rpartition("@")[2]
    return urlunsplit((parts.scheme, host, parts.path, "", ""))


def canonical_url_hash(raw_url: str) -> str:
    """Return the SHA-256 hex digest of the canonical form of ``raw_url``.

    Scheme and host are lower-cased, the fragment and utm_*/fbclid/gclid
    parameters dropped, and trailing slashes removed. Unparseable input is
    hashed verbatim.
    """
    return hashlib.sha256(_canonicalize(raw_url).encode("utf-8")).hexdigest()


def _canonicalize(raw: str) -> str:
    try:
        parts = urlsplit(raw)
    except ValueError:
        return raw
    userinfo, at, hostport = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{hostport.lower()}"

    query = parts.query
    params = parse_qsl(query, keep_blank_values=True)
    if params:
        kept = [
            (key, value)
            for key, value in params
            if not key.startswith("utm_") and key not in _TRACKING_PARAMS
        ]
        kept.sort(key=lambda pair: pair[0])
        query = urlencode(kept)

    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme.lower(), netloc, path, query, ""))


def _local(tag: str) -> str:
    return tag.rpartition("}")[2]


def _text(element: Element) -> str:
    return "".join(element.itertext()).strip()


def _parse_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _rss_entry(element: Element) -> FeedEntry:
    fields: dict[str, str] = {}
    for child in element:
        name = _local(child.tag)
        value = _text(child)
        if name == "link" and not value:
            value = (child.get("href") or "").strip()
        if value and name not in fields:
            fields[name] = value
    return FeedEntry(
        title=fields.get("title", ""),
        link=fields.get("link", ""),
        guid=fields.get("guid", ""),
        description=fields.get("description", ""),
        content=fields.get("encoded", ""),
        published=_parse_date(first_non_empty(fields.get("pubDate", ""), fields.get("date", ""))),
        updated=_parse_date(fields.get("updated", "")),
    )


def _atom_link(element: Element) -> str:
    hrefs = [
        (link.get("rel", "alternate"), (link.get("href") or "").strip())
        for link in element
        if _local(link.tag) == "link"
    ]
    preferred = next((href for rel, href in hrefs if rel == "alternate" and href), "")
    return preferred or next((href for _, href in hrefs if href), "")


def _atom_entry(element: Element) -> FeedEntry:
    fields: dict[str, str] = {}
    for child in element:
        name = _local(child.tag)
        value = _text(child)
        if value and name not in fields:
            fields[name] = value
    return FeedEntry(
        title=fields.get("title", ""),
        link=_atom_link(element),
        guid=fields.get("id", ""),
        description=fields.get("summary", ""),
        content=fields.get("content", ""),
        published=_parse_date(first_non_empty(fields.get("published", ""), fields.get("issued", ""))),
        updated=_parse_date(first_non_empty(fields.get("updated", ""), fields.get("modified", ""))),
    )


def parse_feed(data: bytes | str) -> list[FeedEntry]:
    """Parse an RSS 2.0, RSS 1.0 (RDF) or Atom document into entries."""
    try:
        root = fromstring(data)
    except (ParseError, DefusedXmlException) as exc:
        raise FeedError(f"invalid feed XML: {exc}") from exc

    kind = _local(root.tag)
    if kind == "feed":
        return [_atom_entry(child) for child in root if _local(child.tag) == "entry"]
    if kind == "rss":
        channel = next((child for child in root if _local(child.tag) == "channel"), None)
        if channel is None:
            return []
        return [_rss_entry(child) for child in channel if _local(child.tag) == "item"]
    if kind == "RDF":
        return [_rss_entry(child) for child in root if _local(child.tag) == "item"]
    raise FeedError(f"unsupported feed format: <{kind}>")


class FeedFetcher:
    """Fetches feeds concurrently and keeps items inside a lookback window.

    No deduplication happens here; callers filter against seen articles.
    Feed URLs may carry keys in their query strings, so the HTTP client is
    always given :func:`sanitize_url` for its error messages.
    """

    def __init__(
        self,
        feeds: Sequence[Feed],
        http: HttpClient,
        lookback: timedelta = DEFAULT_LOOKBACK,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        http.set_url_sanitizer(sanitize_url)
        self._feeds = list(feeds)
        self._http = http
        self._lookback = lookback
        self._concurrency = concurrency

    def fetch_all(self) -> list[Item]:
        """Fetch every feed and return the items published within the window.

        A failing feed does not stop the others. If any failed, a
        :class:`FeedError` describing the first failure is raised, carrying
        all collected items and every error.
        """
        cutoff = datetime.now(timezone.utc) - self._lookback
        with ThreadPoolExecutor(max_workers=max(1, self._concurrency)) as pool:
            outcomes = list(pool.map(lambda feed: self._outcome(feed, cutoff), self._feeds))

        items = [item for found, _ in outcomes for item in found]
        errors = [error for _, error in outcomes if error is not None]
        if errors:
            raise FeedError(str(errors[0]), items=items, errors=errors) from errors[0]
        return items

    def _outcome(self, feed: Feed, cutoff: datetime) -> tuple[list[Item], FeedError | None]:
        try:
            return self._fetch_one(feed, cutoff), None
        except FeedError as exc:
            return [], exc

    def _fetch_one(self, feed: Feed, cutoff: datetime) -> list[Item]:
        try:
            body = self._fetch_body(feed.url)
        except (FeedError, RetriesExhaustedError, requests.RequestException) as exc:
            raise FeedError(f"fetch {feed.name} ({sanitize_url(feed.url)}): {exc}") from exc
        try:
            entries = parse_feed(body)
        except FeedError as exc:
            raise FeedError(f"parse {feed.name}: {exc}") from exc

        items = []
        for entry in entries:
            published = entry.published or entry.updated
            if published is None or published < cutoff:
                continue
            url = first_non_empty(entry.link, entry.guid)
            if not url:
                continue
            items.append(
                Item(
                    source=feed.name,
                    title=entry.title,
                    url=url,
                    published=published,
                    summary=first_non_empty(entry.description, entry.content),
                )
            )
        return items

    def _fetch_body(self, url: str) -> bytes:
        response = self._http.request("GET", url, headers={"Accept": _ACCEPT})
        with response:
            if response.status_code != 200:
                raise FeedError(f"http {response.status_code}")
            buf = bytearray()
            for chunk in response.iter_content(chunk_size=65536):
                buf += chunk
                if len(buf) > MAX_FEED_BYTES:
                    raise FeedError(f"feed body exceeds {MAX_FEED_BYTES} bytes")
        return bytes(buf)