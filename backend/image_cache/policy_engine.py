"""
Cache Policy Engine

Decides per request whether to serve a cached image, fetch a new one,
or both:
- Serve local when the cache is fresh or the mode is local
- Serve local and trigger a background refresh when the cache is stale
- Fetch synchronously when there is nothing to serve
- Switch to local mode once the cache reaches its size cap
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from app_config import AppConfig, ConfigIOError, ConfigStore, Mode
from .cache_store import CacheEntry, CacheStore
from .exceptions import ImageCacheError
from .remote_fetcher import RemoteFetcher

logger = logging.getLogger(__name__)


class CacheState:
    """
    Mutable state shared by concurrent requests.

    config and last_update are only written while holding lock.
    """

    def __init__(self, config: AppConfig, last_update: Optional[float] = None):
        self.config = config
        self.last_update = time.time() if last_update is None else last_update
        self.lock = asyncio.Lock()

    @property
    def mode(self) -> Mode:
        return self.config.mode


class CachePolicyEngine:
    """
    Orchestrates local serving and remote refreshes.

    Usage:
        engine = CachePolicyEngine(state, config_store, fetcher)
        await engine.start()
        url = await engine.serve("localhost:8080")
        await engine.stop()
    """

    def __init__(
        self,
        state: CacheState,
        config_store: ConfigStore,
        fetcher: RemoteFetcher,
        cache_root: Union[str, Path] = ".",
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.config_store = config_store
        self.fetcher = fetcher
        self.cache_root = Path(cache_root)
        self._clock = clock

        self._store: Optional[CacheStore] = None
        self._inflight: Optional[asyncio.Task] = None
        self._refresh_event = asyncio.Event()
        self._refresh_target: Tuple[str, str] = ("", "http")
        self._refresh_task: Optional[asyncio.Task] = None

    # ============================================
    # Accessors
    # ============================================

    @property
    def config(self) -> AppConfig:
        return self.state.config

    @property
    def mode(self) -> Mode:
        return self.state.mode

    @property
    def last_update(self) -> float:
        return self.state.last_update

    @property
    def store(self) -> CacheStore:
        """Cache store for the current config, rebuilt when the folder changes."""
        config = self.state.config
        cache_dir = self.cache_root / config.cache_folder
        store = self._store
        if store is None or store.cache_dir != cache_dir or store.tmp_dir.name != config.cache_tmp_folder:
            store = CacheStore(cache_dir, config.cache_tmp_folder)
            self._store = store
        return store

    # ============================================
    # Request path
    # ============================================

    async def serve(self, host: str, scheme: str = "http") -> str:
        """
        Produce an image URL for one request.

        Raises:
            ImageCacheError: nothing cached and the remote fetch failed
        """
        config = self.state.config
        store = self.store

        entry = await asyncio.to_thread(self._pick_local, store)
        if entry is None:
            logger.info("[CachePolicy] No local image available, fetching from remote")
            return await self.refresh(host, scheme)

        url = store.url_for(entry.name, host, scheme)
        logger.info(f"[CachePolicy] Serving local image: {entry.name}")
        if config.mode == Mode.LOCAL or not self.is_stale(config):
            return url

        self.request_refresh(host, scheme)
        return url

    def is_stale(self, config: Optional[AppConfig] = None) -> bool:
        config = config or self.state.config
        return self._clock() - self.state.last_update >= config.update_interval

    @staticmethod
    def _pick_local(store: CacheStore) -> Optional[CacheEntry]:
        try:
            store.prune_invalid()
            return store.pick_random()
        except OSError as e:
            logger.error(f"[CachePolicy] Failed to read cache folder: {e}")
            return None

    # ============================================
    # Refresh
    # ============================================

    async def refresh(self, host: str, scheme: str = "http") -> str:
        """
        Fetch one new image, sharing an in-flight fetch with concurrent callers.

        Returns:
            URL of the new cache entry (built from the first caller's host).
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._fetch(host, scheme))
        # A cancelled waiter must not cancel the shared fetch
        return await asyncio.shield(self._inflight)

    def request_refresh(self, host: str, scheme: str = "http") -> None:
        """Ask the background worker for a refresh. Repeated triggers coalesce."""
        self._refresh_target = (host, scheme)
        self._refresh_event.set()

    async def _fetch(self, host: str, scheme: str) -> str:
        config = self.state.config
        store = self.store
        try:
            url = await self.fetcher.fetch_and_cache(config, store, host, scheme)
        except ImageCacheError as e:
            logger.error(f"[CachePolicy] Remote retrieval failed: {e}")
            raise
        await self._after_fetch(store)
        return url

    async def _after_fetch(self, store: CacheStore) -> None:
        """Record the refresh and enforce the size cap."""
        async with self.state.lock:
            self.state.last_update = self._clock()
            config = self.state.config
            if config.max_cache_size == 0 or config.mode == Mode.LOCAL:
                return

            try:
                count = await asyncio.to_thread(store.count)
            except OSError as e:
                logger.error(f"[CachePolicy] Failed to count cache entries: {e}")
                return
            if count < config.max_cache_size:
                return

            new_config = config.with_mode(Mode.LOCAL)
            self.state.config = new_config
            logger.info(
                f"[CachePolicy] Limit of MaxCacheSize ({config.max_cache_size}) reached, "
                f"switching mode to local"
            )
            try:
                await asyncio.to_thread(self.config_store.save, new_config)
            except ConfigIOError as e:
                logger.error(f"[CachePolicy] Failed to persist local mode: {e}")

    # ============================================
    # Background worker
    # ============================================

    async def start(self) -> None:
        """Start the background refresh worker."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())
            logger.info("[CachePolicy] Background refresh worker started")

    async def stop(self) -> None:
        """Stop the worker and wait for any in-flight fetch."""
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        if self._inflight is not None and not self._inflight.done():
            try:
                await self._inflight
            except ImageCacheError:
                pass
            except Exception as e:
                logger.error(f"[CachePolicy] In-flight refresh failed during shutdown: {e}")

    async def _refresh_loop(self):
        while True:
            await self._refresh_event.wait()
            self._refresh_event.clear()
            host, scheme = self._refresh_target
            try:
                await self.refresh(host, scheme)
                logger.info("[CachePolicy] Background refresh finished")
            except ImageCacheError:
                # Already logged by _fetch; the next stale request retries
                pass
            except Exception as e:
                logger.error(f"[CachePolicy] Background refresh error: {e}", exc_info=True)

    # ============================================
    # Config
    # ============================================

    async def reload_config(self) -> AppConfig:
        """
        Reload the config file and swap the snapshot.

        Raises:
            ConfigIOError: the file could not be read; the old config stays active
        """
        config = await asyncio.to_thread(self.config_store.reload)
        async with self.state.lock:
            self.state.config = config
        return config
