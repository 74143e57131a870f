import io
import json
from dataclasses import dataclass, field

import pytest

from itdigest.releasewatch import (
    Announcement,
    Candidate,
    DeferredError,
    ItemResult,
    RunError,
    Runner,
    RunResult,
    deferred,
)
from itdigest.store import Kind, open_store
from itdigest.telegram import ParseMode


@pytest.fixture
def store(tmp_path):
    st = open_store(str(tmp_path / "t.db"))
    st.migrate()
    yield st
    st.close()


@dataclass
class FakeSource:
    name: str
    items: list = field(default_factory=list)
    error: Exception | None = None

    def candidates(self):
        if self.error is not None:
            raise self.error
        return self.items


@dataclass
class FakeSender:
    calls: int = 0
    messages: list = field(default_factory=list)
    error: Exception | None = None

    def send_message(self, chat, text, mode):
        self.calls += 1
        self.messages.append(text)
        if mode != ParseMode.MARKDOWN_V2:
            raise RuntimeError("unexpected parse mode")
        if self.error is not None:
            raise self.error
        return 100 + self.calls


def announcement(pkg, version):
    return Announcement(
        text=f"*{pkg}* `{version}`",
        release_url=f"https://example.com/{version}",
        payload={"package": pkg, "version": version},
    )


def candidate(source, pkg, version):
    return Candidate(
        source=source,
        package=pkg,
        version=version,
        render=lambda: announcement(pkg, version),
    )


def make_runner(store, sources, bot, **kwargs):
    return Runner(
        sources=sources,
        channel="@ch",
        bot=bot,
        releases=store.releases,
        posts=store.posts,
        **kwargs,
    )


def test_posts_and_records_multiple_sources(store):
    bot = FakeSender()
    runner = make_runner(
        store,
        [
            FakeSource("one", [candidate("one", "pkg-one", "1.0.0")]),
            FakeSource("two", [candidate("two", "pkg-two", "2.0.0")]),
        ],
        bot,
    )
    res = runner.run()
    assert res.posted_count() == 2
    assert bot.calls == 2
    assert store.releases.has_seen("pkg-one", "1.0.0")
    assert store.releases.has_seen("pkg-two", "2.0.0")
    assert store.posts.count(Kind.RELEASE) == 2
    assert [item.message_id for item in res.items] == [101, 102]


def test_skips_seen_before_render(store):
    store.releases.record_seen("pkg", "1.0.0", 42, "https://example.com/old")
    rendered = []

    def render():
        rendered.append(True)
        return announcement("pkg", "1.0.0")

    cand = Candidate(source="src", package="pkg", version="1.0.0", render=render)
    bot = FakeSender()
    res = make_runner(store, [FakeSource("src", [cand])], bot).run()
    assert len(res.items) == 1
    assert res.items[0].seen is True
    assert rendered == []
    assert bot.calls == 0


def test_dry_run_skips_writes(store):
    bot = FakeSender()
    out = io.StringIO()
    runner = make_runner(
        store,
        [FakeSource("src", [candidate("src", "pkg", "1.0.0")])],
        bot,
        dry_run=True,
        dry_out=out,
    )
    res = runner.run()
    assert res.posted_count() == 0
    assert bot.calls == 0
    assert not store.releases.has_seen("pkg", "1.0.0")
    assert "RELEASE pkg 1.0.0" in out.getvalue()
    assert "---- END DRY-RUN ----" in out.getvalue()


def test_dry_run_uses_custom_title(store):
    out = io.StringIO()
    cand = Candidate(
        package="pkg",
        version="1.0.0",
        render=lambda: Announcement(text="hello", dry_run_title="Custom"),
    )
    make_runner(store, [FakeSource("src", [cand])], FakeSender(), dry_run=True, dry_out=out).run()
    assert "---- RELEASE Custom - 5 bytes ----\nhello\n" in out.getvalue()


def test_defers_cleanly(store):
    def render():
        raise deferred("upstream signals disagree")

    cand = Candidate(source="src", package="pkg", version="1.0.0", render=render)
    bot = FakeSender()
    res = make_runner(store, [FakeSource("src", [cand])], bot).run()
    assert len(res.items) == 1
    assert res.items[0].deferred is True
    assert bot.calls == 0
    assert not store.releases.has_seen("pkg", "1.0.0")


def test_deferred_error_message():
    assert str(deferred("waiting")) == "waiting"
    assert str(DeferredError()) == "release deferred"


def test_continues_after_source_error(store):
    bot = FakeSender()
    runner = make_runner(
        store,
        [
            FakeSource("broken", error=RuntimeError("boom")),
            FakeSource("healthy", [candidate("healthy", "pkg", "1.0.0")]),
        ],
        bot,
    )
    with pytest.raises(RunError) as info:
        runner.run()
    assert "source broken candidates: boom" in str(info.value)
    assert info.value.result.posted_count() == 1
    assert bot.calls == 1
    assert store.releases.has_seen("pkg", "1.0.0")


def test_continues_after_candidate_error(store):
    def render():
        raise RuntimeError("render boom")

    broken = Candidate(source="broken", package="pkg-broken", version="1.0.0", render=render)
    bot = FakeSender()
    runner = make_runner(
        store,
        [
            FakeSource("broken", [broken]),
            FakeSource("healthy", [candidate("healthy", "pkg", "1.0.0")]),
        ],
        bot,
    )
    with pytest.raises(RunError) as info:
        runner.run()
    assert "render release pkg-broken 1.0.0: render boom" in str(info.value)
    assert info.value.result.posted_count() == 1
    assert bot.calls == 1
    assert store.releases.has_seen("pkg", "1.0.0")


def test_returns_source_errors(store):
    runner = make_runner(store, [FakeSource("broken", error=RuntimeError("boom"))], FakeSender())
    with pytest.raises(RunError, match="source broken candidates: boom"):
        runner.run()


def test_candidate_source_defaults_to_source_name(store):
    cand = Candidate(package="pkg", version="1.0.0", render=lambda: announcement("pkg", "1.0.0"))
    res = make_runner(store, [FakeSource("named", [cand])], FakeSender()).run()
    assert res.items[0].source == "named"


@pytest.mark.parametrize(
    "cand, message",
    [
        (Candidate(package="", version="1", render=lambda: None), "package is required"),
        (Candidate(package="pkg", version="", render=lambda: None), "pkg: version is required"),
        (Candidate(package="pkg", version="1", render=None), "pkg 1: render func is required"),
        (Candidate(package="pkg", version="1", render=lambda: None), "pkg 1: nil announcement"),
        (
            Candidate(package="pkg", version="1", render=lambda: Announcement(text="")),
            "pkg 1: empty announcement",
        ),
    ],
)
def test_invalid_candidates_are_reported(store, cand, message):
    bot = FakeSender()
    with pytest.raises(RunError) as info:
        make_runner(store, [FakeSource("src", [cand])], bot).run()
    assert message in str(info.value)
    assert len(info.value.result.items) == 1
    assert bot.calls == 0


def test_send_failure_is_reported_and_not_recorded(store):
    bot = FakeSender(error=RuntimeError("down"))
    runner = make_runner(store, [FakeSource("src", [candidate("src", "pkg", "1.0.0")])], bot)
    with pytest.raises(RunError, match="telegram send pkg 1.0.0: down"):
        runner.run()
    assert not store.releases.has_seen("pkg", "1.0.0")
    assert store.posts.count(Kind.RELEASE) == 0


def test_default_payload_is_logged(store):
    cand = Candidate(
        package="pkg",
        version="2.0.0",
        render=lambda: Announcement(text="text", release_url="https://example.com/r"),
    )
    make_runner(store, [FakeSource("src", [cand])], FakeSender()).run()
    (payload,) = store.connection.execute("SELECT payload_json FROM posts_log").fetchone()
    assert json.loads(payload) == {
        "source": "src",
        "package": "pkg",
        "version": "2.0.0",
        "url": "https://example.com/r",
    }


def test_none_sources_and_empty_candidates_are_skipped(store):
    res = make_runner(store, [None, FakeSource("empty")], FakeSender()).run()
    assert res.items == []


def test_run_result_posted_count():
    result = RunResult(
        items=[
            ItemResult(source="s", package="a", version="1", posted=True),
            ItemResult(source="s", package="b", version="1", seen=True),
            ItemResult(source="s", package="c", version="1", posted=True),
        ]
    )
    assert result.posted_count() == 2
    assert RunResult().posted_count() == 0