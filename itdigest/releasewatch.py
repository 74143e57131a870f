"""The release-announcement flow shared by the hourly watch command."""

from __future__ import annotations

import json
import logging
import sqlite3
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, TextIO

from .store import Kind, Posts, Releases
from .telegram import ParseMode

_DEFERRED_DEFAULT = "release deferred"


class DeferredError(Exception):
    """Raised by a render function to postpone posting without failing the run."""

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(reason or _DEFERRED_DEFAULT)

    def __str__(self) -> str:
        return self.reason or _DEFERRED_DEFAULT


def deferred(reason: str) -> DeferredError:
    """Return a :class:`DeferredError` for ``reason``, ready to be raised."""
    return DeferredError(reason)


@dataclass(frozen=True)
class Announcement:
    """The fully rendered output for an unseen candidate."""

    text: str
    release_url: str = ""
    payload: dict[str, Any] | None = None
    dry_run_title: str = ""


RenderFunc = Callable[[], "Announcement | None"]


@dataclass(frozen=True)
class Candidate:
    """A potential upstream release identified by a source.

    Expensive work belongs in ``render`` so that already-seen versions are
    skipped before any upstream calls are made.
    """

    package: str
    version: str
    render: RenderFunc | None
    source: str = ""


class Source(Protocol):
    """Something that cheaply lists release candidates."""

    name: str

    def candidates(self) -> Sequence[Candidate]: ...


class Sender(Protocol):
    """The part of the Telegram bot the runner needs."""

    def send_message(self, chat: str, text: str, mode: ParseMode | str) -> int: ...


@dataclass
class ItemResult:
    """What happened to one candidate."""

    source: str
    package: str
    version: str
    posted: bool = False
    seen: bool = False
    deferred: bool = False
    message_id: int = 0


@dataclass
class RunResult:
    """Summary of one runner pass."""

    items: list[ItemResult] = field(default_factory=list)

    def posted_count(self) -> int:
        """Return the number of candidates posted in this pass."""
        return sum(1 for item in self.items if item.posted)


class RunError(Exception):
    """Raised when one or more sources or candidates failed.

    ``result`` holds everything the pass did manage; ``errors`` every failure.
    """

    def __init__(self, errors: Sequence[Exception], result: RunResult) -> None:
        self.errors = list(errors)
        self.result = result
        super().__init__("\n".join(str(error) for error in self.errors))


class _CandidateFailure(Exception):
    """A single candidate could not be handled."""


@dataclass
class Runner:
    """Fetch candidates, skip seen ones, render, then post or dry-run, and record."""

    sources: Sequence[Source | None]
    channel: str
    bot: Sender | None
    releases: Releases
    posts: Posts
    logger: logging.Logger | None = None
    dry_run: bool = False
    dry_out: TextIO | None = None

    def run(self) -> RunResult:
        """Execute one pass; raise :class:`RunError` if anything failed."""
        log = self._log
        result = RunResult()
        errors: list[Exception] = []

        for source in self.sources:
            if source is None:
                continue
            name = source.name
            try:
                candidates = list(source.candidates())
            except Exception as exc:
                errors.append(_CandidateFailure(f"source {name} candidates: {exc}"))
                continue
            if not candidates:
                log.info("no release candidates: source=%s", name)
                continue
            for candidate in candidates:
                if not candidate.source:
                    candidate = replace(candidate, source=name)
                item = ItemResult(
                    source=candidate.source,
                    package=candidate.package,
                    version=candidate.version,
                )
                result.items.append(item)
                try:
                    self._handle(candidate, item)
                except _CandidateFailure as exc:
                    errors.append(exc)

        if errors:
            raise RunError(errors, result)
        return result

    @property
    def _log(self) -> logging.Logger:
        return self.logger if self.logger is not None else logging.getLogger(__name__)

    def _handle(self, cand: Candidate, item: ItemResult) -> None:
        log = self._log
        label = f"{cand.package} {cand.version}"
        if not cand.package:
            raise _CandidateFailure("release candidate package is required")
        if not cand.version:
            raise _CandidateFailure(f"release candidate {cand.package}: version is required")
        if cand.render is None:
            raise _CandidateFailure(f"release candidate {label}: render func is required")

        try:
            seen = self.releases.has_seen(cand.package, cand.version)
        except sqlite3.Error as exc:
            raise _CandidateFailure(f"store lookup {label}: {exc}") from exc
        if seen:
            item.seen = True
            log.info("no new release: source=%s package=%s version=%s",
                     cand.source, cand.package, cand.version)
            return

        try:
            announcement = cand.render()
        except DeferredError as exc:
            item.deferred = True
            log.info("release deferred: source=%s package=%s version=%s reason=%s",
                     cand.source, cand.package, cand.version, exc)
            return
        except Exception as exc:
            raise _CandidateFailure(f"render release {label}: {exc}") from exc
        if announcement is None:
            raise _CandidateFailure(f"render release {label}: nil announcement")
        if not announcement.text:
            raise _CandidateFailure(f"render release {label}: empty announcement")

        if self.dry_run:
            self._print_dry_run(cand, announcement)
            return

        if self.bot is None:
            raise _CandidateFailure(f"telegram send {label}: no sender configured")
        try:
            message_id = self.bot.send_message(
                self.channel, announcement.text, ParseMode.MARKDOWN_V2
            )
        except Exception as exc:
            raise _CandidateFailure(f"telegram send {label}: {exc}") from exc
        item.posted = True
        item.message_id = message_id

        try:
            self.releases.record_seen(
                cand.package, cand.version, message_id, announcement.release_url
            )
        except sqlite3.Error as exc:
            raise _CandidateFailure(f"record release {label}: {exc}") from exc

        try:
            payload = json.dumps(self._payload(cand, announcement), sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise _CandidateFailure(f"marshal release payload {label}: {exc}") from exc
        try:
            self.posts.record(Kind.RELEASE, payload, message_id)
        except sqlite3.Error as exc:
            log.warning("record posts_log failed: source=%s package=%s version=%s err=%s",
                        cand.source, cand.package, cand.version, exc)

        log.info("posted release: source=%s package=%s version=%s message_id=%d",
                 cand.source, cand.package, cand.version, message_id)

    @staticmethod
    def _payload(cand: Candidate, announcement: Announcement) -> dict[str, Any]:
        if announcement.payload:
            return announcement.payload
        return {
            "source": cand.source,
            "package": cand.package,
            "version": cand.version,
            "url": announcement.release_url,
        }

    def _print_dry_run(self, cand: Candidate, announcement: Announcement) -> None:
        out = self.dry_out if self.dry_out is not None else sys.stdout
        title = announcement.dry_run_title or f"{cand.package} {cand.version}"
        size = len(announcement.text.encode("utf-8"))
        self._log.info(
            "dry-run: rendering release message; no Telegram send, no DB writes: "
            "source=%s package=%s version=%s bytes=%d",
            cand.source, cand.package, cand.version, size,
        )
        out.write(
            f"\n---- RELEASE {title} - {size} bytes ----\n"
            f"{announcement.text}\n---- END DRY-RUN ----\n"
        )