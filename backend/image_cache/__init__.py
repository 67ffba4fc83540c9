"""
Image Cache Module

Serves random images from a local cache folder, refilling it from
upstream image APIs.

Features:
- Random selection of cached images with lazy invalid-entry pruning
- Stale-cache background refresh with single-flight fetching
- JPEG recompression of downloaded images
- Entry-count cap that switches the service to local-only mode
"""

from .routes_fastapi import router
from .cache_store import CacheStore, CacheEntry
from .policy_engine import CachePolicyEngine, CacheState
from .remote_fetcher import RemoteFetcher

__all__ = [
    "router",
    "CacheStore",
    "CacheEntry",
    "CachePolicyEngine",
    "CacheState",
    "RemoteFetcher",
]
