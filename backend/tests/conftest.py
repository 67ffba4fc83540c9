"""
Image cache test configuration.

Fixtures and helpers shared by the test modules:
- Generated JPEG/PNG bytes (Pillow)
- A fake fetcher for policy tests that never touches the network
- Engine construction with a controllable clock
"""

import asyncio
import random
import sys
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

# Add backend directory to the Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from app_config import AppConfig, ConfigStore
from image_cache import CachePolicyEngine, CacheState, CacheStore


# ============================================
# Image helpers
# ============================================

def make_image_bytes(fmt: str = "PNG", size=(64, 64), noisy: bool = False, mode: str = "RGB") -> bytes:
    """
    Encode a test image.

    noisy=True fills it with seeded random pixels, which compress badly
    as PNG and well as JPEG.
    """
    if noisy:
        rng = random.Random(0)
        channels = len(mode)
        raw = bytes(rng.getrandbits(8) for _ in range(size[0] * size[1] * channels))
        img = Image.frombytes(mode, size, raw)
    else:
        color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
        img = Image.new(mode, size, color)
    output = BytesIO()
    img.save(output, format=fmt)
    return output.getvalue()


JPEG_BYTES = make_image_bytes("JPEG")


# ============================================
# Fakes
# ============================================

class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetcher:
    """
    Stand-in for RemoteFetcher that writes a local JPEG.

    Set `gate` to an asyncio.Event to hold fetches until it is set,
    or `error` to make every fetch raise.
    """

    def __init__(self, error: Exception = None, gate: asyncio.Event = None):
        self.calls = 0
        self.error = error
        self.gate = gate

    async def fetch_and_cache(self, config, store, host, scheme="http"):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        store.ensure_dirs()
        name = store.new_name("jpg")
        store.write_entry(name, JPEG_BYTES)
        return store.url_for(name, host, scheme)

    async def close(self):
        pass


async def wait_for(predicate, timeout: float = 2.0):
    """Poll until predicate() is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_store(tmp_path):
    return ConfigStore(tmp_path / "config.json")


@pytest.fixture
def cache_dir(tmp_path):
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def make_engine(tmp_path, config_store, clock):
    """
    Factory for engines rooted in tmp_path.

    Usage:
        engine = make_engine(FakeFetcher(), MaxCacheSize=2)
    """

    def _make(fetcher=None, **config_fields):
        config = AppConfig(**config_fields)
        config_store.save(config)
        state = CacheState(config, last_update=clock())
        return CachePolicyEngine(
            state,
            config_store,
            fetcher or FakeFetcher(),
            cache_root=tmp_path,
            clock=clock,
        )

    return _make


def add_cached_image(cache_dir: Path, name: str, data: bytes = JPEG_BYTES) -> Path:
    path = cache_dir / name
    path.write_bytes(data)
    return path


def store_for(cache_dir: Path) -> CacheStore:
    return CacheStore(cache_dir)
