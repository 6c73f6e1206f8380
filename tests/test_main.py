#!/usr/bin/env python3
"""
Tests for the CLI entry points, run against a temporary database.
"""

import asyncio
import os
import signal

import pytest

import main
from config import config
from models import DatabaseQueue, ItemStatus

from fakes import FakeSource, make_document, make_items

FEEDS = {
    "alpha": {"url": "https://alpha.example.com/rss", "title": "Alpha"},
    "beta": {"url": "https://beta.example.com/rss", "title": "Beta"},
}


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "DATABASE_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setattr(config, "FEED_SOURCES", dict(FEEDS))
    monkeypatch.setattr(config, "IGNORED_LINK_PATTERNS", [])
    return tmp_path


def _use_source(monkeypatch, source):
    monkeypatch.setattr(main, "FeedSource", lambda: source)


async def _count_items():
    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        return await db.execute('count_items')
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_register_configured_feeds_skips_invalid_urls(cli_env, monkeypatch):
    monkeypatch.setattr(config, "FEED_SOURCES", {**FEEDS, "bad": {"url": "ftp://nowhere", "title": "Bad"}})
    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        assert await main.register_configured_feeds(db) == 2
        assert [f.title for f in await db.execute('list_feeds')] == ["Alpha", "Beta"]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_run_once_refreshes_configured_feeds(cli_env, monkeypatch):
    source = FakeSource({cfg["url"]: make_document(make_items(2, prefix=slug)) for slug, cfg in FEEDS.items()})
    _use_source(monkeypatch, source)

    assert await main.run_once(forced=True) is True
    assert sorted(source.calls) == sorted(cfg["url"] for cfg in FEEDS.values())
    assert await _count_items() == 4


@pytest.mark.asyncio
async def test_run_once_succeeds_with_partial_failure(cli_env, monkeypatch):
    source = FakeSource(
        {FEEDS["alpha"]["url"]: make_document(make_items(2))},
        errors={FEEDS["beta"]["url"]: "HTTP 500"},
    )
    _use_source(monkeypatch, source)

    assert await main.run_once(forced=False) is True
    assert await _count_items() == 2


@pytest.mark.asyncio
async def test_add_feed_rejects_invalid_url(cli_env):
    assert await main.add_feed("not a url", None) is False


@pytest.mark.asyncio
async def test_unread_and_mark_read(cli_env, monkeypatch, capsys):
    _use_source(monkeypatch, FakeSource({FEEDS["alpha"]["url"]: make_document(make_items(2))},
                                        errors={FEEDS["beta"]["url"]: "HTTP 500"}))
    await main.run_once(forced=True)
    capsys.readouterr()

    assert await main.show_unread(0) is True
    listing = capsys.readouterr().out
    assert "Article 0" in listing and "Article 1" in listing

    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        newest = (await db.execute('list_items', status=ItemStatus.UNREAD))[0]
    finally:
        await db.stop()

    assert await main.set_status(newest.id, ItemStatus.READ) is True
    await main.show_unread(0)
    listing = capsys.readouterr().out
    assert newest.title not in listing

    assert await main.set_status(9999, ItemStatus.READ) is False


async def _wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _capture_worker(monkeypatch):
    workers = []
    real_build_worker = main.build_worker

    def capturing_build_worker(db, source):
        worker = real_build_worker(db, source)
        workers.append(worker)
        return worker

    monkeypatch.setattr(main, "build_worker", capturing_build_worker)
    return workers


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="SIGUSR1 not available")
async def test_run_worker_refreshes_on_sigusr1_and_stops_on_sigterm(cli_env, monkeypatch):
    monkeypatch.setattr(config, "REFRESH_INTERVAL_MINUTES", 60)
    monkeypatch.setattr(config, "REFRESH_ON_STARTUP", False)
    source = FakeSource({cfg["url"]: make_document(make_items(2, prefix=slug)) for slug, cfg in FEEDS.items()})
    _use_source(monkeypatch, source)
    workers = _capture_worker(monkeypatch)

    task = asyncio.create_task(main.run_worker())
    # Signal handlers are installed in the same step that builds the worker
    await _wait_until(lambda: workers)
    worker = workers[0]

    os.kill(os.getpid(), signal.SIGUSR1)
    await _wait_until(lambda: len(source.calls) == 2 and worker.state.value == "idle")

    os.kill(os.getpid(), signal.SIGTERM)
    await asyncio.wait_for(task, timeout=3)

    assert await _count_items() == 4


@pytest.mark.asyncio
@pytest.mark.skipif(not hasattr(signal, "SIGUSR1"), reason="SIGUSR1 not available")
async def test_run_worker_stops_after_grace_period(cli_env, monkeypatch):
    monkeypatch.setattr(config, "REFRESH_INTERVAL_MINUTES", 60)
    monkeypatch.setattr(config, "REFRESH_ON_STARTUP", False)
    monkeypatch.setattr(main, "SHUTDOWN_GRACE_SECONDS", 0.1)
    gate = asyncio.Event()

    class BlockedSource(FakeSource):
        async def fetch(self, url, timeout):
            self.calls.append(url)
            await gate.wait()
            return make_document([])

    source = BlockedSource()
    _use_source(monkeypatch, source)
    workers = _capture_worker(monkeypatch)

    task = asyncio.create_task(main.run_worker())
    await _wait_until(lambda: workers)
    worker = workers[0]

    os.kill(os.getpid(), signal.SIGUSR1)
    await _wait_until(lambda: len(source.calls) == 2)

    os.kill(os.getpid(), signal.SIGTERM)
    # Returns once the grace period runs out even though the batch is still fetching
    await asyncio.wait_for(task, timeout=2)
    assert worker.state.value == "refreshing"

    gate.set()
    assert await worker.wait_for_inflight(timeout=2) is True
