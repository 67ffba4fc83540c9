"""
Image Cache Store

Filesystem view of the cache folder:
- Listing and random selection of cached images
- Extension and header checks for image validity
- Explicit pruning of invalid entries
- Monotonic file names for new entries

Cache structure:
cache_dir/
├── tmp/
│   └── 1718000000000000001.png   (pre-transcode downloads)
├── 1718000000000000002.jpg
└── ...
"""

import logging
import random
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import FilesystemError

logger = logging.getLogger(__name__)

IMAGE_EXT_PATTERN = re.compile(r".+\.(jpg|jpeg|png)$", re.IGNORECASE)

# Bytes read when checking that a file is readable
HEADER_SIZE = 512


@dataclass(frozen=True)
class CacheEntry:
    """A file in the cache directory."""
    name: str
    path: Path

    @property
    def extension(self) -> str:
        return image_extension(self.name)


def image_extension(filename: str) -> str:
    """Lower-cased jpg/jpeg/png extension of a filename or URL, or ''."""
    match = IMAGE_EXT_PATTERN.match(filename)
    return match.group(1).lower() if match else ""


class EntryNameGenerator:
    """
    Synthetic IDs for cache files.

    Based on time.time_ns() but strictly increasing, so two entries
    created in the same nanosecond tick never collide.
    """

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            self._last = max(time.time_ns(), self._last + 1)
            return str(self._last)


class CacheStore:
    """
    Filesystem abstraction over the cache folder.

    Blocking calls; callers on the event loop run them in a thread.
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        tmp_folder: str = "tmp",
        name_generator: Optional[EntryNameGenerator] = None,
        rng: Optional[random.Random] = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.tmp_dir = self.cache_dir / tmp_folder
        self._names = name_generator or EntryNameGenerator()
        self._rng = rng or random.Random()

    @property
    def folder_name(self) -> str:
        """URL path segment the cache is served under."""
        return self.cache_dir.name

    def ensure_dirs(self) -> None:
        """Create cache and tmp directories if they don't exist."""
        for directory in (self.cache_dir, self.tmp_dir):
            if directory.is_dir():
                continue
            logger.info(f"[CacheStore] Creating folder: {directory}")
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(f"Failed to create {directory}: {e}") from e

    def list_entries(self) -> List[CacheEntry]:
        """
        Snapshot of the files in the cache folder (directories skipped).

        Raises:
            OSError: the folder cannot be read
        """
        return [
            CacheEntry(name=p.name, path=p)
            for p in self.cache_dir.iterdir()
            if not p.is_dir()
        ]

    @staticmethod
    def is_valid_image(filename: str) -> bool:
        """Extension check only: jpg, jpeg or png in any case."""
        return image_extension(filename) != ""

    def is_readable_image(self, entry: CacheEntry) -> bool:
        """Extension check plus a header read; empty files are invalid."""
        if not self.is_valid_image(entry.name):
            return False
        try:
            with open(entry.path, "rb") as f:
                header = f.read(HEADER_SIZE)
        except OSError as e:
            logger.warning(f"[CacheStore] Failed to read {entry.name}: {e}")
            return False
        return len(header) > 0

    def prune_invalid(self) -> int:
        """
        Remove every entry that fails the readability check.

        Returns:
            Number of entries removed.
        """
        removed = 0
        for entry in self.list_entries():
            if not self.is_readable_image(entry):
                self.remove(entry)
                removed += 1
        if removed:
            logger.info(f"[CacheStore] Pruned {removed} invalid entries")
        return removed

    def pick_random(self) -> Optional[CacheEntry]:
        """Uniformly random valid image, or None if there is none."""
        candidates = [e for e in self.list_entries() if self.is_valid_image(e.name)]
        if not candidates:
            return None
        return self._rng.choice(candidates)

    def count(self) -> int:
        """Number of image entries."""
        return sum(1 for e in self.list_entries() if self.is_valid_image(e.name))

    def remove(self, entry: CacheEntry) -> bool:
        """Best-effort delete. Failures are logged, never raised."""
        try:
            entry.path.unlink()
            logger.debug(f"[CacheStore] Removed: {entry.name}")
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"[CacheStore] Failed to remove {entry.name}: {e}")
            return False

    def new_name(self, extension: str) -> str:
        return f"{self._names.next_id()}.{extension}"

    def tmp_path(self, filename: str) -> Path:
        return self.tmp_dir / filename

    def path_for(self, filename: str) -> Path:
        return self.cache_dir / filename

    def url_for(self, filename: str, host: str, scheme: str = "http") -> str:
        return f"{scheme}://{host}/{self.folder_name}/{filename}"

    def write_entry(self, filename: str, data: bytes) -> CacheEntry:
        """Publish a new cache file."""
        path = self.path_for(filename)
        try:
            path.write_bytes(data)
        except OSError as e:
            raise FilesystemError(f"Failed to write {path}: {e}") from e
        logger.debug(f"[CacheStore] Cached: {filename} ({len(data)} bytes)")
        return CacheEntry(name=filename, path=path)

    def resolve(self, filename: str) -> Optional[Path]:
        """
        Path of a servable cache file, or None.

        Only plain file names with an image extension resolve.
        """
        if not filename or "/" in filename or "\\" in filename or filename.startswith("."):
            return None
        if not self.is_valid_image(filename):
            return None
        path = self.path_for(filename)
        return path if path.is_file() else None
