"""SQLite state: schema migrations and small repositories over the data model."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum


class NotFoundError(LookupError):
    """Raised when a lookup finds no matching row."""


class MigrationError(Exception):
    """Raised when the schema migrations cannot be loaded or applied."""


class Kind(StrEnum):
    """The kind of message recorded in ``posts_log``."""

    RELEASE = "release"
    DIGEST = "digest"


@dataclass(frozen=True)
class Migration:
    """One versioned schema change."""

    version: int
    name: str
    sql: str


@dataclass(frozen=True)
class Release:
    """A posted upstream release as stored in ``releases_seen``."""

    package: str
    version: str
    posted_at: datetime
    tg_message_id: int | None = None
    release_url: str | None = None


@dataclass(frozen=True)
class SeenArticle:
    """A row of ``articles_seen``."""

    url_hash: str
    url: str
    title: str | None = None
    source: str | None = None
    seen_at: datetime | None = None
    posted_at: datetime | None = None


_INITIAL_SCHEMA = """
CREATE TABLE releases_seen (
    package        TEXT     NOT NULL,
    version        TEXT     NOT NULL,
    posted_at      DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    tg_message_id  INTEGER,
    release_url    TEXT,
    PRIMARY KEY (package, version)
);

CREATE INDEX idx_releases_seen_package_posted
    ON releases_seen (package, posted_at DESC);

CREATE TABLE articles_seen (
    url_hash   TEXT     PRIMARY KEY,
    url        TEXT     NOT NULL,
    title      TEXT,
    source     TEXT,
    seen_at    DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
    posted_at  DATETIME
);

CREATE TABLE posts_log (
    id             INTEGER  PRIMARY KEY AUTOINCREMENT,
    kind           TEXT     NOT NULL,
    payload_json   TEXT     NOT NULL,
    tg_message_id  INTEGER,
    created_at     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""

MIGRATIONS: tuple[Migration, ...] = (
    Migration(version=1, name="0001_init.sql", sql=_INITIAL_SCHEMA),
)

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
)


def parse_version(name: str) -> int:
    """Return the numeric version prefix of a ``NNNN_name.sql`` file name."""
    prefix, sep, _ = name.partition("_")
    if not sep:
        raise ValueError("expected NNNN_name.sql")
    try:
        return int(prefix)
    except ValueError as exc:
        raise ValueError(f"invalid version prefix {prefix!r}") from exc


def _ordered(migrations: Iterable[Migration]) -> list[Migration]:
    ordered = sorted(migrations, key=lambda m: m.version)
    for previous, current in zip(ordered, ordered[1:]):
        if previous.version == current.version:
            raise MigrationError(
                f"duplicate migration version {current.version} "
                f"({previous.name} and {current.name})"
            )
    return ordered


def _apply_one(connection: sqlite3.Connection, migration: Migration) -> None:
    script = (
        "BEGIN;\n"
        f"{migration.sql}\n;\n"
        f"INSERT INTO schema_migrations(version) VALUES ({int(migration.version)});\n"
        "COMMIT;\n"
    )
    try:
        connection.executescript(script)
    except sqlite3.Error as exc:
        if connection.in_transaction:
            connection.execute("ROLLBACK")
        raise MigrationError(f"apply {migration.name}: {exc}") from exc


def migrate(connection: sqlite3.Connection, migrations: Iterable[Migration]) -> None:
    """Apply every pending migration in version order, each in its own transaction."""
    try:
        connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version     INTEGER PRIMARY KEY,
                applied_at  DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        applied = {row[0] for row in connection.execute("SELECT version FROM schema_migrations")}
    except sqlite3.Error as exc:
        raise MigrationError(f"ensure schema_migrations: {exc}") from exc

    for migration in _ordered(migrations):
        if migration.version not in applied:
            _apply_one(connection, migration)


def _parse_timestamp(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ")


class Releases:
    """Repository for the ``releases_seen`` table."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection

    def has_seen(self, package: str, version: str) -> bool:
        """Report whether exactly this (package, version) pair was recorded."""
        row = self._conn.execute(
            "SELECT 1 FROM releases_seen WHERE package = ? AND version = ?",
            (package, version),
        ).fetchone()
        return row is not None

    def get_latest_seen(self, package: str) -> Release:
        """Return the most recently recorded release of ``package``."""
        row = self._conn.execute(
            """
            SELECT package, version, posted_at, tg_message_id, release_url
              FROM releases_seen
             WHERE package = ?
          ORDER BY posted_at DESC
             LIMIT 1
            """,
            (package,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"no release recorded for {package}")
        pkg, version, posted_at, message_id, url = row
        return Release(
            package=pkg,
            version=version,
            posted_at=_parse_timestamp(posted_at),
            tg_message_id=message_id,
            release_url=url,
        )

    def record_seen(
        self, package: str, version: str, tg_message_id: int = 0, release_url: str = ""
    ) -> None:
        """Record a posted release; repeating an existing pair changes nothing."""
        self._conn.execute(
            """
            INSERT OR IGNORE INTO releases_seen
                (package, version, tg_message_id, release_url)
            VALUES (?, ?, ?, ?)
            """,
            (package, version, tg_message_id or None, release_url or None),
        )


class Articles:
    """Repository for the ``articles_seen`` table."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection

    def seen(self, url_hash: str) -> bool:
        """Report whether an article with this URL hash was recorded."""
        row = self._conn.execute(
            "SELECT 1 FROM articles_seen WHERE url_hash = ? LIMIT 1", (url_hash,)
        ).fetchone()
        return row is not None

    def record(self, article: SeenArticle) -> None:
        """Record a seen article; repeating a URL hash changes nothing."""
        self._conn.execute(
            """
            INSERT OR IGNORE INTO articles_seen
                (url_hash, url, title, source, posted_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                article.url_hash,
                article.url,
                article.title,
                article.source,
                _format_timestamp(article.posted_at),
            ),
        )


class Posts:
    """Repository for ``posts_log``, the audit trail of every sent message."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._conn = connection

    def record(self, kind: Kind | str, payload_json: str, tg_message_id: int = 0) -> int:
        """Insert a log row and return its id."""
        cursor = self._conn.execute(
            "INSERT INTO posts_log (kind, payload_json, tg_message_id) VALUES (?, ?, ?)",
            (Kind(kind).value, payload_json, tg_message_id or None),
        )
        return int(cursor.lastrowid)

    def count(self, kind: Kind | str) -> int:
        """Return the number of logged posts of ``kind``."""
        (total,) = self._conn.execute(
            "SELECT COUNT(*) FROM posts_log WHERE kind = ?", (Kind(kind).value,)
        ).fetchone()
        return int(total)


class Store:
    """Owns the SQLite connection and the repositories built on it."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection
        self.releases = Releases(connection)
        self.articles = Articles(connection)
        self.posts = Posts(connection)

    def migrate(self) -> None:
        """Apply the bundled schema migrations that are still pending."""
        migrate(self.connection, MIGRATIONS)

    def close(self) -> None:
        """Close the underlying connection."""
        self.connection.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def open_store(dsn: str) -> Store:
    """Open (or create) the database at ``dsn``: a path or a ``file:`` URI.

    When the DSN carries no query string, WAL journaling, a busy timeout and
    foreign keys are switched on.
    """
    connection = sqlite3.connect(
        dsn,
        uri=dsn.startswith("file:"),
        isolation_level=None,
        check_same_thread=False,
    )
    try:
        if "?" not in dsn:
            for pragma in _PRAGMAS:
                connection.execute(pragma)
        connection.execute("SELECT 1").fetchone()
    except sqlite3.Error:
        connection.close()
        raise
    return Store(connection)