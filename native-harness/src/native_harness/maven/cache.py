"""On-disk artifact cache keyed by exact coordinate.

Layout::

    <cache_dir>/<group>/<artifact>/<version>/<artifact>-<version>.<ext>
    <cache_dir>/<group>/<artifact>/<version>/extracted/...

Entries are immutable once written; a missing or corrupt file means the
artifact is downloaded again.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from native_harness.errors import ResolutionError
from native_harness.maven.coordinates import Coordinate
from native_harness.maven.repository import RepositoryClient

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSIONS = ("aar", "jar")


@dataclass(frozen=True)
class CacheEntry:
    coordinate: Coordinate
    path: Path
    size: int

    @property
    def is_aar(self) -> bool:
        return self.path.suffix == ".aar"


def _is_valid_archive(path: Path) -> bool:
    try:
        if path.stat().st_size <= 0:
            return False
        with zipfile.ZipFile(path) as zf:
            zf.infolist()
        return True
    except (OSError, zipfile.BadZipFile):
        return False


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ArtifactCache:
    def __init__(self, cache_dir: Path, client: RepositoryClient) -> None:
        self.cache_dir = Path(cache_dir)
        self._client = client
        self._locks: Dict[Coordinate, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._count_guard = threading.Lock()
        self.download_count = 0
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    @property
    def repositories(self) -> list[str]:
        return self._client.repositories

    def artifact_dir(self, coordinate: Coordinate) -> Path:
        return self.cache_dir / coordinate.group / coordinate.artifact / coordinate.version

    def artifact_path(self, coordinate: Coordinate, extension: str) -> Path:
        return (
            self.artifact_dir(coordinate)
            / f"{coordinate.artifact}-{coordinate.version}.{extension}"
        )

    def _lock_for(self, coordinate: Coordinate) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(coordinate)
            if lock is None:
                lock = self._locks[coordinate] = threading.Lock()
            return lock

    def _download(self, path: str) -> Optional[bytes]:
        hit = self._client.get(path)
        if hit is None:
            return None
        with self._count_guard:
            self.download_count += 1
        logger.info("downloaded %s (%d bytes)", hit.url, len(hit.content))
        return hit.content

    def cached(self, coordinate: Coordinate) -> Optional[CacheEntry]:
        for ext in ARCHIVE_EXTENSIONS:
            path = self.artifact_path(coordinate, ext)
            if path.exists() and _is_valid_archive(path):
                return CacheEntry(coordinate=coordinate, path=path, size=path.stat().st_size)
        return None

    def fetch(self, coordinate: Coordinate) -> Path:
        """Return the local archive for `coordinate`, downloading it at most once."""

        return self.entry(coordinate).path

    def entry(self, coordinate: Coordinate) -> CacheEntry:
        with self._lock_for(coordinate):
            hit = self.cached(coordinate)
            if hit is not None:
                logger.debug("cache hit %s -> %s", coordinate, hit.path)
                return hit

            for ext in ARCHIVE_EXTENSIONS:
                path = self.artifact_path(coordinate, ext)
                if path.exists():
                    logger.warning("cached %s is corrupt, re-downloading: %s", ext, path)
                    path.unlink()

                data = self._download(coordinate.repository_path(ext))
                if data is None:
                    continue
                _atomic_write(path, data)
                if not _is_valid_archive(path):
                    path.unlink(missing_ok=True)
                    raise ResolutionError(
                        f"downloaded {coordinate} is empty or not a valid archive ({ext})"
                    )
                return CacheEntry(coordinate=coordinate, path=path, size=path.stat().st_size)

        raise ResolutionError(
            f"could not download {coordinate}: no aar or jar found in any repository"
        )

    def fetch_pom(self, coordinate: Coordinate) -> bytes:
        """Raw POM bytes; the XML declaration decides the encoding."""

        pom_path = self.artifact_path(coordinate, "pom")
        with self._lock_for(coordinate):
            if pom_path.exists() and pom_path.stat().st_size > 0:
                return pom_path.read_bytes()
            data = self._download(coordinate.repository_path("pom"))
            if data is None:
                raise ResolutionError(f"could not download POM for {coordinate}")
            _atomic_write(pom_path, data)
            return data

    def fetch_metadata(self, coordinate: Coordinate) -> Optional[bytes]:
        """maven-metadata.xml is not cached: it lists versions that change over time."""

        hit = self._client.get(coordinate.metadata_path())
        if hit is None:
            return None
        return hit.content
