"""
Image Cache API Routes

Provides endpoints for:
- Getting a random cached (or freshly fetched) image URL
- Serving cached image files
- Reloading the config file
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse, PlainTextResponse

from app_config import ConfigIOError, dump_config
from .cache_store import image_extension
from .exceptions import FilesystemError, ImageCacheError
from .policy_engine import CachePolicyEngine

logger = logging.getLogger(__name__)

EXT_TO_MEDIA_TYPE = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}

# ============================================
# Router
# ============================================

router = APIRouter(tags=["Image Cache"])


def get_engine(request: Request) -> CachePolicyEngine:
    return request.app.state.engine


# ============================================
# Endpoints
# ============================================

@router.get("/favicon.ico")
async def favicon():
    raise HTTPException(status_code=404, detail="Not Found")


@router.get("/reload", response_class=PlainTextResponse)
async def reload_config(request: Request):
    """
    Reload the config file from disk.

    A malformed file leaves the current config active.
    """
    engine = get_engine(request)
    try:
        config = await engine.reload_config()
    except ConfigIOError as e:
        logger.error(f"[ImageCache] Config reload failed: {e}")
        raise HTTPException(status_code=500, detail=f"Config reload failed: {e}")
    logger.debug(f"[ImageCache] Active config:\n{dump_config(config)}")
    return PlainTextResponse("Config reloaded")


@router.get("/", response_class=PlainTextResponse)
async def serve_image_url(request: Request):
    """
    Return the URL of a cached image as plain text.

    This endpoint:
    1. Serves a random cached image if one exists
    2. Triggers a background refresh when the cache is stale
    3. Fetches synchronously when the cache is empty

    Example:
        GET /  ->  http://localhost:8080/cache/1718000000000000002.jpg
    """
    engine = get_engine(request)
    host = request.headers.get("host") or request.url.netloc

    try:
        url = await engine.serve(host, request.url.scheme)
    except FilesystemError as e:
        raise HTTPException(status_code=500, detail=f"Cache write failed: {e}")
    except ImageCacheError as e:
        raise HTTPException(status_code=502, detail=f"Failed to retrieve image: {e}")

    return PlainTextResponse(url)


@router.get("/{folder}/{filename}")
async def serve_cached_file(folder: str, filename: str, request: Request):
    """
    Serve a cached image file.

    Example:
        GET /cache/1718000000000000002.jpg
    """
    store = get_engine(request).store
    if folder != store.folder_name:
        raise HTTPException(status_code=404, detail="Not Found")

    path = store.resolve(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="Not Found")

    return FileResponse(path, media_type=EXT_TO_MEDIA_TYPE[image_extension(filename)])
