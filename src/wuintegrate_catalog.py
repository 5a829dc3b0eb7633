"""
WUIntegrate Catalog

Resolves update identifiers to direct package URLs through the Microsoft Update Catalog download dialog
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence
from urllib.parse import unquote, urlsplit

import requests
from bs4 import BeautifulSoup

from wuintegrate_downloader import DEFAULT_TIMEOUT, build_session
from wuintegrate_models import DownloadLink, NetworkError


logger = logging.getLogger(__name__)


# ============================================================
# MICROSOFT UPDATE CATALOG ENDPOINTS
# ============================================================

CATALOG_BASE = "https://www.catalog.update.microsoft.com"
DOWNLOAD_DIALOG_URL = f"{CATALOG_BASE}/DownloadDialog.aspx"

DOWNLOAD_URL_RE = re.compile(
    r"(https?://(?:dl\.delivery\.mp\.microsoft\.com|(?:catalog\.s\.)?download\.windowsupdate\.com)/[^'\"]*)"
)

FALLBACK_EXTENSION = ".cab"


# ============================================================
# REQUEST AND RESPONSE HELPERS
# ============================================================

def build_dialog_body(update_id: str) -> str:
# The DownloadDialog endpoint expects a JSON array in the updateIDs form field

    payload = json.dumps(
        {"size": 0, "updateID": update_id, "uidInfo": update_id},
        separators=(",", ":"),
    )
    return f"updateIDs=[{payload}]"


def file_name_from_url(url: str) -> str:
# Uses the last path segment, or a random name when the path has none

    name = os.path.basename(unquote(urlsplit(url).path))
    if not name:
        name = f"update_{uuid.uuid4()}{FALLBACK_EXTENSION}"
    return name


def link_fragments(dialog_html: str) -> List[str]:
# Collects the parts of the dialog that carry package links: script bodies and anchor targets

    soup = BeautifulSoup(dialog_html, "html.parser")

    fragments: List[str] = []
    for script in soup.find_all("script"):
        text = script.string or script.get_text()
        if text:
            fragments.append(text)
    for anchor in soup.find_all("a", href=True):
        fragments.append(anchor["href"])
    return fragments


def extract_download_links(update_id: str, dialog_html: str) -> List[DownloadLink]:
# Extracts every CDN package URL from the DownloadDialog response, first occurrence order

    seen: set[str] = set()
    links: List[DownloadLink] = []

    for fragment in link_fragments(dialog_html):
        fragment = fragment.replace("www.download.windowsupdate", "download.windowsupdate")
        for url in DOWNLOAD_URL_RE.findall(fragment):
            url = url.strip()
            if not url or url in seen:
                continue
            seen.add(url)
            links.append(DownloadLink(update_id=update_id, url=url, file_name=file_name_from_url(url)))

    return links


# ============================================================
# CATALOG CLIENT
# ============================================================

class CatalogClient:

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        attempts: int = 5,
        timeout: int = DEFAULT_TIMEOUT,
        backoff: float = 2.0,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.session = session or build_session()
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self.backoff = backoff
        self.cancel = cancel or threading.Event()

    def fetch_dialog(self, update_id: str) -> str:
    # Posts the update id to the download dialog, retrying transport failures and non-2xx answers

        last_error: Optional[BaseException] = None
        for attempt in range(1, self.attempts + 1):
            if self.cancel.is_set():
                raise NetworkError(f"Catalog lookup cancelled: {update_id}")
            try:
                r = self.session.post(
                    DOWNLOAD_DIALOG_URL,
                    data=build_dialog_body(update_id),
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=self.timeout,
                )
                r.raise_for_status()
                return r.text
            except requests.RequestException as exc:
                last_error = exc
                logger.warning("Catalog lookup %d/%d failed for %s: %s", attempt, self.attempts, update_id, exc)
                if attempt < self.attempts and self.backoff:
                    time.sleep(self.backoff * attempt)

        raise NetworkError(f"Catalog lookup failed for {update_id}: {last_error}")

    def lookup(self, update_id: str) -> List[DownloadLink]:
        """
        Resolve one update id to its download links.

        An empty list means the catalog offers nothing for this update and is
        not an error.
        """
        links = extract_download_links(update_id, self.fetch_dialog(update_id))
        if links:
            for link in links:
                logger.info("Found download link: %s", link.url)
        else:
            logger.info("No download links for %s", update_id)
        return links

    def lookup_many(self, update_ids: Sequence[str], workers: int = 1) -> List[List[DownloadLink]]:
        """
        Look up several update ids with a bounded pool, results in input order.

        The first failure cancels the batch: lookups that have not started are
        dropped and running ones stop before their next attempt.
        """
        if not update_ids:
            return []

        def guarded(update_id: str) -> List[DownloadLink]:
            # Set from the worker so the next queued lookup already sees it
            try:
                return self.lookup(update_id)
            except BaseException:
                self.cancel.set()
                raise

        pool = ThreadPoolExecutor(max_workers=max(1, workers))
        futures = [pool.submit(guarded, update_id) for update_id in update_ids]
        try:
            return [future.result() for future in futures]
        except BaseException:
            self.cancel.set()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        finally:
            pool.shutdown(wait=True)
