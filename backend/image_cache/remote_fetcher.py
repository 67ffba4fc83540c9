"""
Remote Fetcher

Pulls one new image from a random upstream image API:
1. Picks a remote and GETs it
2. Uses the body directly if it is an image, otherwise extracts
   the first image URL from the (JSON/HTML) body and downloads it
3. Transcodes the download and publishes it to the cache folder
"""

import asyncio
import logging
import random
import re
from pathlib import Path
from typing import Optional

import httpx

from app_config.models import AppConfig
from .cache_store import CacheStore, image_extension
from .exceptions import (
    FilesystemError,
    ImageURLNotFound,
    UpstreamHTTPError,
)

logger = logging.getLogger(__name__)

ACCEPTED_STATUS_CODES = {200, 301, 302}

CONTENT_TYPE_TO_EXT = {
    "image/jpeg": "jpg",
    "image/png": "png",
}

# First absolute jpg/jpeg/png URL in a response body. The extension must
# end the path, so hosts or folders like "img.png-cdn" do not cut it short.
IMAGE_URL_PATTERN = re.compile(
    r"https?://[^\s\"'<>]+?\.(?:jpe?g|png)(?=$|[?#&\"'\s<>,;)\]}])",
    re.IGNORECASE,
)


def extension_for_content_type(content_type: str) -> str:
    """Cache extension for an image MIME type, or ''."""
    mime = content_type.split(";")[0].strip().lower()
    return CONTENT_TYPE_TO_EXT.get(mime, "")


def find_image_url(body: str) -> str:
    """First image URL in a text body (escaped slashes allowed), or ''."""
    match = IMAGE_URL_PATTERN.search(body.replace("\\/", "/"))
    return match.group(0) if match else ""


class RemoteFetcher:
    """
    Downloads, transcodes and caches images from upstream APIs.

    Usage:
        fetcher = RemoteFetcher(ImageTranscoder())
        url = await fetcher.fetch_and_cache(config, store, host="localhost:8080")
        await fetcher.close()
    """

    def __init__(
        self,
        transcoder,
        http_client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ):
        self.transcoder = transcoder
        self._rng = rng or random.Random()
        self.http_client = http_client or httpx.AsyncClient(
            follow_redirects=True,
            headers={
                "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
                "Accept": "image/*,application/json,text/html;q=0.9,*/*;q=0.8",
            },
        )

    async def close(self):
        """Close HTTP client."""
        await self.http_client.aclose()

    async def fetch_and_cache(
        self,
        config: AppConfig,
        store: CacheStore,
        host: str,
        scheme: str = "http",
    ) -> str:
        """
        Fetch one new image into the cache.

        Returns:
            Externally reachable URL of the new cache entry.

        Raises:
            UpstreamHTTPError, ImageURLNotFound, TranscodeError, FilesystemError
        """
        logger.info("[RemoteFetcher] --- Starting remote retrieval ---")
        remote = self._rng.choice(config.remotes)
        logger.info(f"[RemoteFetcher] Retrieving remote: {remote}")

        tmp_path = await self._download_from_remote(remote, store, config.fetch_timeout)
        try:
            data = await asyncio.to_thread(tmp_path.read_bytes)
        except OSError as e:
            raise FilesystemError(f"Failed to read {tmp_path}: {e}") from e

        result = await asyncio.to_thread(self.transcoder.transcode, data, config.image_quality)

        filename = store.new_name(result.extension)
        logger.info(f"[RemoteFetcher] Compressing image to: {filename}")
        await asyncio.to_thread(store.write_entry, filename, result.data)

        try:
            await asyncio.to_thread(tmp_path.unlink)
        except OSError as e:
            raise FilesystemError(f"Failed to remove {tmp_path}: {e}") from e
        logger.info(f"[RemoteFetcher] Removed uncompressed image: {tmp_path.name}")

        logger.info("[RemoteFetcher] --- Finished remote retrieval ---")
        return store.url_for(filename, host, scheme)

    async def _download_from_remote(self, remote: str, store: CacheStore, timeout: float) -> Path:
        """GET the remote and land the raw image in the tmp folder."""
        try:
            request = self.http_client.build_request("GET", remote, timeout=timeout)
            response = await self.http_client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamHTTPError(remote, message=f"Request failed: {e}") from e

        try:
            if response.status_code not in ACCEPTED_STATUS_CODES:
                raise UpstreamHTTPError(remote, response.status_code)

            extension = extension_for_content_type(response.headers.get("content-type", ""))
            if extension:
                # Response body is the image itself
                logger.info(f"[RemoteFetcher] Remote returned an image ({extension})")
                return await self._stream_to_tmp(response, remote, store, extension)

            try:
                await response.aread()
            except httpx.HTTPError as e:
                raise UpstreamHTTPError(remote, message=f"Failed to read body: {e}") from e
            image_url = find_image_url(response.text)
        finally:
            await response.aclose()

        if not image_url:
            raise ImageURLNotFound(remote)
        logger.info(f"[RemoteFetcher] Retrieving from URL: {image_url}")
        return await self._download_image(image_url, store, timeout)

    async def _download_image(self, url: str, store: CacheStore, timeout: float) -> Path:
        extension = image_extension(url) or "jpg"
        try:
            request = self.http_client.build_request("GET", url, timeout=timeout)
            response = await self.http_client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamHTTPError(url, message=f"Request failed: {e}") from e

        try:
            if response.is_error:
                raise UpstreamHTTPError(url, response.status_code)
            return await self._stream_to_tmp(response, url, store, extension)
        finally:
            await response.aclose()

    async def _stream_to_tmp(
        self,
        response: httpx.Response,
        url: str,
        store: CacheStore,
        extension: str,
    ) -> Path:
        await asyncio.to_thread(store.ensure_dirs)
        # A failed download may leave a partial tmp file behind
        tmp_path = store.tmp_path(store.new_name(extension))
        logger.info(f"[RemoteFetcher] Downloading image to: {tmp_path}")
        try:
            f = await asyncio.to_thread(open, tmp_path, "wb")
            try:
                async for chunk in response.aiter_bytes():
                    await asyncio.to_thread(f.write, chunk)
            finally:
                f.close()
        except OSError as e:
            raise FilesystemError(f"Failed to write {tmp_path}: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamHTTPError(url, message=f"Download interrupted: {e}") from e
        return tmp_path
