# itdigest

`itdigest` is a library for a Telegram bot that follows news for software engineers.

- **Release announcements.** Sources list upstream release candidates, each a package and
  a version. Every unseen candidate is rendered, posted to a channel and stored, so it is
  never posted twice.
- **Feed collection.** RSS and Atom feeds are fetched at the same time and parsed. Only
  entries inside a lookback window are kept.

The state is kept in a SQLite database: seen releases, seen articles, and a log of every
post.

## Modules

| Module | Contents |
| --- | --- |
| `itdigest.http_client` | `HttpClient` wraps `requests`. It sets a default User-Agent and a timeout. It retries network errors, 429 and 5xx with jittered exponential backoff and honours `Retry-After`. When retries run out it raises `RetriesExhaustedError`, and the URL in that error is passed through a sanitizer first. |
| `itdigest.telegram` | `Bot.send_message` for the Bot API `sendMessage` call. Also `ParseMode`, `TelegramError`, `token_from_env`, and `sanitize_url`, which masks the `/bot<token>` path segment. |
| `itdigest.markdownv2` | `escape_markdown_v2` escapes plain text but keeps inline code, fenced blocks and `[text](url)` links. `escape_markdown_v2_code` and `escape_markdown_v2_url` escape text for code and for link URLs. `truncate_markdown_v2` never cuts inside a code span or a fence. |
| `itdigest.news` | `FeedFetcher` fetches feeds within a lookback window, 48 hours by default. `parse_feed` reads RSS 2.0, RSS 1.0 (RDF) and Atom. `canonical_url_hash` gives a stable identifier that ignores case, fragments, trailing slashes and tracking parameters. |
| `itdigest.store` | `open_store` returns a `Store`. The store has `migrate` and the `releases`, `articles` and `posts` repositories. |
| `itdigest.releasewatch` | `Runner` runs one pass of the release flow: fetch candidates, skip the seen ones, render, post or dry-run, and record. |

## Examples

### Escaping text for Telegram

```python
from itdigest.markdownv2 import escape_markdown_v2, truncate_markdown_v2

escape_markdown_v2("fixes #123")                       # 'fixes \\#123'
escape_markdown_v2("see [npm](https://foo.com/pkg)")   # the link stays a link
truncate_markdown_v2(long_text, "…", 4096)             # at most 4096 UTF-8 bytes
```

### Sending a message

```python
from itdigest.telegram import Bot, ParseMode

bot = Bot(token="token")
message_id = bot.send_message("@my_channel", "*hello*", ParseMode.MARKDOWN_V2)
```

An error reply from Telegram raises `TelegramError`. Text longer than 4096 bytes is
refused before anything is sent.

### Collecting feed items

```python
from itdigest.http_client import HttpClient
from itdigest.news import Feed, FeedError, FeedFetcher, canonical_url_hash

fetcher = FeedFetcher([Feed("Example", "https://example.com/feed.xml")], HttpClient())
try:
    items = fetcher.fetch_all()
except FeedError as exc:
    items = exc.items  # what the feeds that worked returned

hashes = [canonical_url_hash(item.url) for item in items]
```

A feed that fails does not stop the others. If any feed failed, `fetch_all` raises a
`FeedError` that describes the first failure. The error's `items` holds every collected
item and its `errors` holds every failure.

### Keeping state

```python
from itdigest.store import Kind, open_store

with open_store("state.db") as store:
    store.migrate()
    if not store.releases.has_seen("some-package", "1.2.3"):
        store.releases.record_seen("some-package", "1.2.3", 42, "https://example.com/r/1.2.3")
    store.posts.record(Kind.RELEASE, '{"version": "1.2.3"}', 42)
```

A second `migrate` call does nothing. `get_latest_seen` raises `NotFoundError` when the
package has no stored rows.

### Watching releases

A `Source` has a `name` and a `candidates()` method that returns `Candidate`s. Each
candidate holds a package, a version, and a render callable that returns an
`Announcement`. To skip a release for now without failing the run, the render callable
raises the error that `deferred("reason")` returns.

`Runner.run` returns a `RunResult`, and its `posted_count()` tells how many releases were
posted. Errors from single sources or candidates do not stop the pass. At the end they are
raised together as one `RunError`, which also carries the partial `result`. In dry-run mode
the rendered messages are written to `dry_out`, or to standard output, and nothing is sent
or stored.

## What is not included

- No ranking or summarising of feed items. Collected items are returned as they are, and
  choosing or rewriting them for a digest is left to the caller.
- No command-line program and no scheduler. The package is a library; a caller drives
  `Runner.run` and `FeedFetcher.fetch_all`.
- No release sources. `Source` is only a protocol, and the caller supplies the
  implementations.