"""
WUIntegrate Downloader

Streams files to disk with bounded retries, skip-if-present and progress reporting
"""

from __future__ import annotations

import logging
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence

import requests

from wuintegrate_models import DownloadLink, NetworkError


logger = logging.getLogger(__name__)


# ============================================================
# SETTINGS
# ============================================================

DEFAULT_TIMEOUT = 30
DEFAULT_ATTEMPTS = 5
CHUNK_SIZE = 1024 * 256

ProgressCallback = Callable[[str, float], None]


# ============================================================
# HTTP HELPERS
# ============================================================

def build_session() -> requests.Session:
# Builds a session with stable headers

    s = requests.Session()
    s.headers.update(
        {
            "User-Agent": "wuintegrate",
            "Accept-Language": "en-US,en;q=0.9",
        }
    )
    return s


def console_progress(name: str, fraction: float) -> None:
# Rewrites a single progress line on the terminal

    percent = int(fraction * 100)
    sys.stdout.write(f"\r    {name}: {percent:3d}%")
    if fraction >= 1.0:
        sys.stdout.write("\n")
    sys.stdout.flush()


# ============================================================
# DOWNLOAD MANAGER
# ============================================================

class Downloader:

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        attempts: int = DEFAULT_ATTEMPTS,
        timeout: int = DEFAULT_TIMEOUT,
        backoff: float = 2.0,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.session = session or build_session()
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self.backoff = backoff
        self.progress = progress
        self.cancel = cancel or threading.Event()

    def download(self, url: str, destination: str) -> bool:
        """
        Download url into destination.

        Returns False when destination already exists and nothing was fetched.
        An existing file is never inspected, so a file truncated by a crash
        counts as complete.
        """
        if os.path.exists(destination):
            logger.debug("Already present, skipping: %s", destination)
            return False

        directory = os.path.dirname(destination)
        if directory:
            os.makedirs(directory, exist_ok=True)

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            if self.cancel.is_set():
                raise NetworkError(f"Download cancelled: {url}")
            try:
                self._stream(url, destination)
                return True
            except requests.RequestException as exc:
                last_error = exc
                self._discard(destination)
                logger.warning("Download attempt %d/%d failed for %s: %s", attempt, self.attempts, url, exc)
                if attempt < self.attempts and self.backoff:
                    time.sleep(self.backoff * attempt)

        raise NetworkError(f"Failed to download {url} after {self.attempts} attempts: {last_error}")

    def _stream(self, url: str, destination: str) -> None:
        name = os.path.basename(destination)

        with self.session.get(url, stream=True, timeout=self.timeout) as r:
            r.raise_for_status()
            total = int(r.headers.get("content-length") or 0)
            received = 0

            try:
                with open(destination, "wb") as h:
                    for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                        if self.cancel.is_set():
                            raise NetworkError(f"Download cancelled: {url}")
                        if not chunk:
                            continue
                        h.write(chunk)
                        received += len(chunk)
                        if self.progress and total:
                            self.progress(name, min(received / total, 1.0))
            except NetworkError:
                self._discard(destination)
                raise

        if self.progress and not total:
            self.progress(name, 1.0)

    @staticmethod
    def _discard(path: str) -> None:
        # Partial files from a failed attempt must not satisfy the skip check
        if os.path.exists(path):
            os.remove(path)

    def download_links(self, links: Sequence[DownloadLink], directory: str, workers: int = 1) -> List[str]:
    # Downloads every link into directory and returns the destination paths, one per file name

        os.makedirs(directory, exist_ok=True)

        # Two links naming the same file must not be written concurrently; the first one wins
        unique: Dict[str, DownloadLink] = {}
        for link in links:
            dest = os.path.join(directory, link.file_name)
            if dest in unique:
                logger.warning("Skipping %s: %s is already being downloaded", link.url, link.file_name)
                continue
            unique[dest] = link

        destinations = list(unique)
        if not destinations:
            return destinations

        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            futures = [
                pool.submit(self.download, link.url, dest)
                for dest, link in unique.items()
            ]
            try:
                for future in futures:
                    future.result()
            except BaseException:
                self.cancel.set()
                raise

        return destinations
