"""
WUIntegrate Archive

Fetches the offline update scan cabinet and extracts the manifest and localization cabinets
"""

from __future__ import annotations

import bisect
import fnmatch
import logging
import os
import shutil
import subprocess
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional

from wuintegrate_downloader import Downloader
from wuintegrate_models import LOCALIZATION_FRAGMENT, CatalogError, Locations


logger = logging.getLogger(__name__)


# ============================================================
# CATALOG SOURCE
# ============================================================

OFFLINE_CAB_URL = "https://catalog.s.download.windowsupdate.com/microsoftupdate/v6/wsusscan/wsusscn2.cab"

PACKAGE_CAB = "package.cab"
PACKAGE_XML = "package.xml"
INDEX_XML = "index.xml"
NESTED_CAB_PATTERN = "package*.cab"


# ============================================================
# CABINET INDEX
# ============================================================

class CabinetIndex:
    """
    Range-keyed index from index.xml.

    Each entry names a nested cabinet and the first revision id it holds; a
    revision lives in the cabinet with the greatest range start not above it.
    """

    def __init__(self) -> None:
        self._starts: List[int] = []
        self._names: Dict[int, str] = {}

    def add(self, range_start: int, name: str) -> None:
        if range_start not in self._names:
            bisect.insort(self._starts, range_start)
        self._names[range_start] = name

    def cab_for_revision(self, revision_id: int) -> Optional[str]:
        pos = bisect.bisect_right(self._starts, revision_id)
        if pos == 0:
            return None
        return self._names[self._starts[pos - 1]]

    @property
    def names(self) -> List[str]:
        return [self._names[start] for start in self._starts]

    def __len__(self) -> int:
        return len(self._starts)


def load_cabinet_index(path: str) -> CabinetIndex:
# Reads RANGESTART/NAME pairs from the first container element of index.xml

    index = CabinetIndex()
    if not os.path.isfile(path):
        logger.debug("No cabinet index at %s", path)
        return index

    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise CatalogError(f"Malformed cabinet index {path}: {exc}") from exc

    container = next(iter(root), None)
    if container is None:
        return index

    for element in container:
        range_start = element.get("RANGESTART")
        name = element.get("NAME")
        if range_start is None or name is None:
            continue
        try:
            index.add(int(range_start), name)
        except ValueError:
            continue

    logger.debug("Loaded cabinet index with %d entries", len(index))
    return index


# ============================================================
# CABINET EXTRACTION
# ============================================================

def extract_cab(
    source: str,
    destination: str,
    fragment: Optional[str] = None,
    tool: str = "cabextract",
) -> None:
# Extracts a cabinet with cabextract, optionally limited to a path fragment

    exe = shutil.which(tool)
    if not exe:
        raise CatalogError(f"Cabinet extractor not found: {tool}")

    os.makedirs(destination, exist_ok=True)

    cmd = [exe, "-q", "-d", destination]
    if fragment:
        cmd += ["-F", fragment]
    cmd.append(source)

    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        raise CatalogError(
            f"Failed to extract {source}: {result.stderr.strip() or result.returncode}"
        )


# ============================================================
# FETCH AND EXTRACT
# ============================================================

def fetch_and_extract(
    url: str,
    locations: Locations,
    downloader: Downloader,
    tool: str = "cabextract",
) -> List[str]:
# Downloads the offline cabinet (skipped when already on disk) and extracts it

    archive = locations.catalog_archive
    if downloader.download(url, archive):
        print(f"[+] Downloaded offline cabinet to {archive}")
    else:
        print(f"[*] Reusing offline cabinet at {archive}")

    if not os.path.isfile(archive):
        raise CatalogError(f"Offline cabinet missing: {archive}")

    extract_cab(archive, locations.extraction_dir, tool=tool)

    return sorted(
        os.path.join(locations.extraction_dir, name)
        for name in os.listdir(locations.extraction_dir)
    )


def extract_package_archive(locations: Locations, tool: str = "cabextract") -> str:
# Extracts package.cab and returns the path of the manifest inside it

    package_cab = os.path.join(locations.extraction_dir, PACKAGE_CAB)
    if not os.path.isfile(package_cab):
        raise CatalogError("package.cab was not detected.")

    extract_cab(package_cab, locations.package_dir, tool=tool)

    manifest = os.path.join(locations.package_dir, PACKAGE_XML)
    if not os.path.isfile(manifest):
        raise CatalogError("package.xml was not detected.")
    return manifest


def find_localization_cabs(locations: Locations, index: Optional[CabinetIndex] = None) -> List[str]:
# Lists nested package cabinets, excluding the manifest cabinet itself

    if not os.path.isdir(locations.extraction_dir):
        return []

    wanted = {name.lower() for name in index.names} if index else None

    cabs: List[str] = []
    for name in sorted(os.listdir(locations.extraction_dir)):
        lower = name.lower()
        if lower == PACKAGE_CAB or not fnmatch.fnmatch(lower, NESTED_CAB_PATTERN):
            continue
        if wanted is not None and lower not in wanted:
            logger.debug("Cabinet %s is not listed in the index, skipping", name)
            continue
        cabs.append(os.path.join(locations.extraction_dir, name))
    return cabs


def extract_localizations(
    locations: Locations,
    index: Optional[CabinetIndex] = None,
    tool: str = "cabextract",
) -> str:
# Extracts only the English localization records from every nested cabinet

    fragment = "/".join(LOCALIZATION_FRAGMENT) + "/*"
    for cab in find_localization_cabs(locations, index):
        logger.debug("Extracting %s from %s", fragment, cab)
        extract_cab(cab, locations.localization_root, fragment=fragment, tool=tool)

    if not os.path.isdir(locations.localization_dir):
        raise CatalogError("Localization path was not detected.")
    return locations.localization_dir


def cleanup_extraction(locations: Locations) -> None:
# Removes extracted cabinet contents, keeping the downloaded archive for reruns

    if os.path.isdir(locations.extraction_dir):
        shutil.rmtree(locations.extraction_dir)
