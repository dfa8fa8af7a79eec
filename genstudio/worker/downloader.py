"""
Artifact Downloader

Persist generated images/videos under the data directory:
- <base>/images/*, <base>/videos/*
- Streams to a .part file and renames on success
- Follows at most one redirect hop
- Non-2xx, empty bodies and interrupted transfers leave no file behind
- Concurrent downloads for the same task id share one transfer
"""

import asyncio
import os
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union
from urllib.parse import urljoin

import requests

from ..exceptions import DownloadError
from ..logging_config import download_logger
from .inflight import InFlightRegistry

CATEGORIES = ("images", "videos", "thumbnails")
REDIRECT_CODES = {301, 302, 303, 307, 308}
CHUNK_SIZE = 256 * 1024

# Characters Windows rejects in filenames, plus '#' and control characters
ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f#]+')


def sanitize_filename(text: str) -> str:
    cleaned = ILLEGAL_FILENAME_CHARS.sub("_", str(text or ""))
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return re.sub(r"[.\s]+$", "", cleaned)


def build_filename(text: str, fallback: str = "file", ext: str = ".mp4", now: Optional[datetime] = None) -> str:
    """Human-browsable name: ``<prompt prefix>_<YYYYmmdd_HHMMSS><ext>``."""
    prefix = sanitize_filename(text)[:18] or sanitize_filename(fallback)[:18] or "file"
    timestamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    base = f"{prefix}_{timestamp}"[:60]
    return f"{base}{ext}"


class ArtifactDownloader:
    """Fetch remote artifacts into category folders under ``base_dir``."""

    def __init__(
        self,
        base_dir: Union[str, Path],
        session: Optional[requests.Session] = None,
        timeout: float = 300.0,
        registry: Optional[InFlightRegistry] = None,
    ):
        self.base_dir = Path(base_dir)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.registry = registry or InFlightRegistry("downloads")
        self._closing = threading.Event()

    # ============================================================
    # FILESYSTEM
    # ============================================================

    def ensure_directories(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        for category in CATEGORIES:
            (self.base_dir / category).mkdir(parents=True, exist_ok=True)

    def category_dir(self, category: str) -> Path:
        if not category or sanitize_filename(category) != category or category in (".", ".."):
            raise ValueError(f"Invalid category: {category!r}")
        directory = self.base_dir / category
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def _reserve_path(self, directory: Path, name: str) -> Path:
        """First free ``name``, ``name_1``, ... in ``directory``.

        The ``.part`` sibling is created exclusively so two concurrent
        transfers never pick the same target.
        """
        first = directory / name
        stem, suffix = first.stem, first.suffix
        candidate = first
        counter = 1
        while True:
            if not candidate.exists():
                try:
                    fd = os.open(candidate.with_name(candidate.name + ".part"), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                except FileExistsError:
                    pass
                else:
                    os.close(fd)
                    return candidate
            candidate = directory / f"{stem}_{counter}{suffix}"
            counter += 1

    def _prepare_target(self, category: str, destination_name: str) -> Path:
        try:
            return self._reserve_path(self.category_dir(category), destination_name)
        except OSError as e:
            raise DownloadError(f"cannot write to {category}: {type(e).__name__}: {e}") from e

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            download_logger.warning("partial_file_cleanup_failed", path=str(path), error=str(e))

    # ============================================================
    # TRANSFER
    # ============================================================

    def _open(self, url: str) -> requests.Response:
        response = self.session.get(url, stream=True, allow_redirects=False, timeout=self.timeout)

        if response.status_code in REDIRECT_CODES:
            location = response.headers.get("Location")
            response.close()
            if not location:
                raise DownloadError(f"redirect ({response.status_code}) without a Location header")
            target = urljoin(url, location)
            download_logger.debug("download_redirect", url=url, target=target)
            response = self.session.get(target, stream=True, allow_redirects=False, timeout=self.timeout)
            if response.status_code in REDIRECT_CODES:
                response.close()
                raise DownloadError("too many redirects")

        if not 200 <= response.status_code < 300:
            response.close()
            raise DownloadError(f"server responded with HTTP {response.status_code}")

        return response

    def fetch(self, url: str, destination_name: str, category: str) -> str:
        """Blocking transfer of ``url`` to ``<base>/<category>/``. Returns the path."""
        target = self._prepare_target(category, destination_name)
        temp = target.with_name(target.name + ".part")
        saved = False

        try:
            response = self._open(url)
            written = 0
            try:
                with open(temp, "wb") as fh:
                    for chunk in response.iter_content(CHUNK_SIZE):
                        if self._closing.is_set():
                            raise DownloadError("download abandoned during shutdown")
                        if chunk:
                            fh.write(chunk)
                            written += len(chunk)
            finally:
                response.close()

            if written == 0:
                raise DownloadError("empty response body")

            os.replace(temp, target)
            saved = True
        except DownloadError:
            raise
        except (requests.RequestException, OSError) as e:
            raise DownloadError(f"{type(e).__name__}: {e}") from e
        finally:
            if not saved:
                self._remove(temp)

        download_logger.info("artifact_saved", url=url, path=str(target), bytes=written)
        return str(target)

    def save_bytes(self, data: bytes, destination_name: str, category: str) -> str:
        """Write an inline payload (e.g. base64 image) with the same temp-then-rename discipline."""
        if not data:
            raise DownloadError("empty payload")

        target = self._prepare_target(category, destination_name)
        temp = target.with_name(target.name + ".part")
        try:
            temp.write_bytes(data)
            os.replace(temp, target)
        except OSError as e:
            self._remove(temp)
            raise DownloadError(f"{type(e).__name__}: {e}") from e

        download_logger.info("artifact_saved", path=str(target), bytes=len(data))
        return str(target)

    async def download(
        self,
        url: str,
        destination_name: str,
        category: str,
        key: Optional[str] = None,
        reuse: Optional[Callable[[], Optional[str]]] = None,
        on_saved: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Download once per ``key``.

        ``reuse`` may return an already verified local path, skipping the
        transfer. ``on_saved`` runs inside the deduplicated unit, so callers
        arriving after the transfer finishes see its persisted result.
        """
        async def work() -> str:
            if reuse is not None:
                existing = reuse()
                if existing:
                    return existing
            path = await asyncio.to_thread(self.fetch, url, destination_name, category)
            if on_saved is not None:
                on_saved(path)
            return path

        if key is None:
            return await work()
        return await self.registry.run(key, work)

    def close(self) -> None:
        """Abandon transfers still streaming (their partial files are removed)."""
        self._closing.set()
