"""
Cache policy engine tests.

Uses FakeFetcher (conftest) so no network is involved.

Run:
    pytest backend/tests/test_policy_engine.py -v
"""

import asyncio
import json

import pytest

from app_config import Mode
from image_cache.exceptions import UpstreamHTTPError
from conftest import FakeFetcher, add_cached_image, wait_for

HOST = "localhost:8080"


# ============================================
# 1. Serving decisions
# ============================================

class TestServe:
    """Local vs remote decisions for a single request"""

    @pytest.mark.asyncio
    async def test_empty_cache_fetches_synchronously(self, make_engine, clock):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher)
        clock.advance(1)

        url = await engine.serve(HOST)

        assert fetcher.calls == 1
        assert url.startswith(f"http://{HOST}/cache/")
        assert engine.store.count() == 1
        assert engine.last_update == clock()

    @pytest.mark.asyncio
    async def test_fresh_cache_serves_local_without_fetch(self, make_engine, tmp_path):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher, UpdateInterval=10)
        engine.store.ensure_dirs()
        add_cached_image(tmp_path / "cache", "1.jpg")

        url = await engine.serve(HOST)

        assert url == f"http://{HOST}/cache/1.jpg"
        assert fetcher.calls == 0

    @pytest.mark.asyncio
    async def test_stale_cache_serves_local_and_refreshes_in_background(self, make_engine, tmp_path, clock):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher, UpdateInterval=10)
        engine.store.ensure_dirs()
        add_cached_image(tmp_path / "cache", "1.jpg")
        await engine.start()
        try:
            clock.advance(10)
            url = await engine.serve(HOST)

            assert url == f"http://{HOST}/cache/1.jpg"
            await wait_for(lambda: engine.store.count() == 2)
            assert fetcher.calls == 1
            assert engine.last_update == clock()
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_background_triggers_coalesce(self, make_engine, tmp_path, clock):
        gate = asyncio.Event()
        fetcher = FakeFetcher(gate=gate)
        engine = make_engine(fetcher, UpdateInterval=10)
        engine.store.ensure_dirs()
        add_cached_image(tmp_path / "cache", "1.jpg")
        await engine.start()
        try:
            clock.advance(30)
            for _ in range(5):
                await engine.serve(HOST)
            await wait_for(lambda: fetcher.calls == 1)
            gate.set()
            await wait_for(lambda: engine.store.count() >= 2)
            await asyncio.sleep(0.05)
            # at most one follow-up for triggers that arrived during the fetch
            assert fetcher.calls <= 2
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_local_mode_never_fetches_when_stale(self, make_engine, tmp_path, clock):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher, Mode="local", UpdateInterval=1)
        engine.store.ensure_dirs()
        add_cached_image(tmp_path / "cache", "1.jpg")
        await engine.start()
        try:
            clock.advance(1000)
            for _ in range(3):
                assert await engine.serve(HOST) == f"http://{HOST}/cache/1.jpg"
            await asyncio.sleep(0.05)
            assert fetcher.calls == 0
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_invalid_entries_are_pruned_then_remote_fetch(self, make_engine, tmp_path):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher)
        cache = tmp_path / "cache"
        engine.store.ensure_dirs()
        add_cached_image(cache, "notes.txt", b"x")
        add_cached_image(cache, "empty.jpg", b"")

        url = await engine.serve(HOST)

        assert fetcher.calls == 1
        assert not (cache / "notes.txt").exists()
        assert not (cache / "empty.jpg").exists()
        assert engine.store.count() == 1
        assert url.endswith(".jpg")

    @pytest.mark.asyncio
    async def test_missing_cache_folder_is_treated_as_empty(self, make_engine):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher, CacheFolder="not-there-yet")

        url = await engine.serve(HOST)

        assert fetcher.calls == 1
        assert "/not-there-yet/" in url

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates_and_keeps_timestamp(self, make_engine, clock):
        fetcher = FakeFetcher(error=UpstreamHTTPError("https://x.org", 500))
        engine = make_engine(fetcher)
        before = engine.last_update
        clock.advance(5)

        with pytest.raises(UpstreamHTTPError):
            await engine.serve(HOST)

        assert engine.last_update == before

    @pytest.mark.asyncio
    async def test_https_scheme_is_preserved(self, make_engine):
        engine = make_engine(FakeFetcher())
        url = await engine.serve(HOST, scheme="https")
        assert url.startswith(f"https://{HOST}/cache/")


# ============================================
# 2. Single-flight
# ============================================

class TestSingleFlight:
    """Concurrent misses share one fetch"""

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self, make_engine):
        gate = asyncio.Event()
        fetcher = FakeFetcher(gate=gate)
        engine = make_engine(fetcher)

        tasks = [asyncio.create_task(engine.refresh(HOST)) for _ in range(5)]
        await wait_for(lambda: fetcher.calls == 1)
        gate.set()
        urls = await asyncio.gather(*tasks)

        assert fetcher.calls == 1
        assert len(set(urls)) == 1
        assert engine.store.count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, make_engine):
        gate = asyncio.Event()
        fetcher = FakeFetcher(gate=gate)
        engine = make_engine(fetcher)

        tasks = [asyncio.create_task(engine.serve(HOST)) for _ in range(5)]
        await wait_for(lambda: fetcher.calls == 1)
        # let every request finish its local lookup and join the fetch
        await asyncio.sleep(0.2)
        gate.set()
        urls = await asyncio.gather(*tasks)

        assert fetcher.calls == 1
        assert len(set(urls)) == 1

    @pytest.mark.asyncio
    async def test_shared_failure_reaches_every_waiter(self, make_engine):
        gate = asyncio.Event()
        fetcher = FakeFetcher(error=UpstreamHTTPError("https://x.org", 502), gate=gate)
        engine = make_engine(fetcher)

        tasks = [asyncio.create_task(engine.refresh(HOST)) for _ in range(3)]
        await wait_for(lambda: fetcher.calls == 1)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, UpstreamHTTPError) for r in results)
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_next_miss_after_completion_fetches_again(self, make_engine):
        fetcher = FakeFetcher(error=UpstreamHTTPError("https://x.org", 500))
        engine = make_engine(fetcher)

        for _ in range(2):
            with pytest.raises(UpstreamHTTPError):
                await engine.serve(HOST)

        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_fetch(self, make_engine):
        gate = asyncio.Event()
        fetcher = FakeFetcher(gate=gate)
        engine = make_engine(fetcher)

        first = asyncio.create_task(engine.refresh(HOST))
        await wait_for(lambda: fetcher.calls == 1)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        second = asyncio.create_task(engine.refresh(HOST))
        await asyncio.sleep(0)
        gate.set()

        assert (await second).startswith(f"http://{HOST}/cache/")
        assert fetcher.calls == 1


# ============================================
# 3. Size cap
# ============================================

class TestSizeCap:
    """MaxCacheSize switches the engine to local mode"""

    @pytest.mark.asyncio
    async def test_cap_walkthrough(self, make_engine, config_store, clock):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher, MaxCacheSize=2, UpdateInterval=10)

        # empty cache: synchronous fetch
        first = await engine.serve(HOST)
        assert fetcher.calls == 1
        assert engine.mode == Mode.REMOTE

        # within the interval: served locally
        clock.advance(5)
        assert await engine.serve(HOST) == first
        assert fetcher.calls == 1
        assert engine.mode == Mode.REMOTE

        # stale: refresh brings the count to the cap
        clock.advance(10)
        await engine.refresh(HOST)
        assert engine.store.count() == 2
        assert engine.mode == Mode.LOCAL
        assert json.loads(config_store.path.read_text())["Mode"] == "local"

        # local mode: no more fetches however stale
        await engine.start()
        try:
            clock.advance(1000)
            for _ in range(5):
                await engine.serve(HOST)
            await asyncio.sleep(0.05)
        finally:
            await engine.stop()
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_unlimited_cache_never_flips(self, make_engine):
        engine = make_engine(FakeFetcher(), MaxCacheSize=0)
        for _ in range(5):
            await engine.refresh(HOST)
        assert engine.store.count() == 5
        assert engine.mode == Mode.REMOTE

    @pytest.mark.asyncio
    async def test_reload_restores_remote_mode_after_manual_edit(self, make_engine, config_store):
        fetcher = FakeFetcher()
        engine = make_engine(fetcher, MaxCacheSize=1)
        await engine.refresh(HOST)
        assert engine.mode == Mode.LOCAL

        # reload alone keeps local: the flip was persisted
        await engine.reload_config()
        assert engine.mode == Mode.LOCAL

        raw = json.loads(config_store.path.read_text())
        raw.update({"Mode": "remote", "MaxCacheSize": 10})
        config_store.path.write_text(json.dumps(raw))
        config = await engine.reload_config()

        assert config.mode == Mode.REMOTE
        assert engine.mode == Mode.REMOTE
        assert engine.config.max_cache_size == 10


# ============================================
# 4. Config reload
# ============================================

class TestReload:
    """Config snapshot swaps"""

    @pytest.mark.asyncio
    async def test_reload_switches_cache_folder(self, make_engine, config_store, tmp_path):
        engine = make_engine(FakeFetcher())
        raw = json.loads(config_store.path.read_text())
        raw["CacheFolder"] = "images"
        config_store.path.write_text(json.dumps(raw))

        await engine.reload_config()

        assert engine.store.cache_dir == tmp_path / "images"
        assert engine.store.folder_name == "images"

    @pytest.mark.asyncio
    async def test_malformed_reload_keeps_previous_config(self, make_engine, config_store):
        from app_config import ConfigIOError

        engine = make_engine(FakeFetcher(), UpdateInterval=42)
        config_store.path.write_text("{broken")

        with pytest.raises(ConfigIOError):
            await engine.reload_config()

        assert engine.config.update_interval == 42
