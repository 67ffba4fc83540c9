"""Image cache exception hierarchy."""

from typing import Optional


class ImageCacheError(Exception):
    """Base exception for all per-request image cache errors."""


class UpstreamHTTPError(ImageCacheError):
    """Remote source answered with an unaccepted status or could not be reached."""

    def __init__(self, url: str, status_code: Optional[int] = None, message: str = ""):
        self.url = url
        self.status_code = status_code
        detail = message or f"Invalid response status code {status_code}"
        super().__init__(f"{detail} ({url})")


class ImageURLNotFound(ImageCacheError):
    """No image URL could be extracted from a non-image response body."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"No image URL found in response from {url}")


class TranscodeError(ImageCacheError):
    """Downloaded data could not be decoded as an image."""


class FilesystemError(ImageCacheError):
    """Creating, writing or removing cache files failed."""
