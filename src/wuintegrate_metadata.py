"""
WUIntegrate Metadata

Parses package.xml into update records and classifies them from their English localization records
"""

from __future__ import annotations

import logging
import os
import re
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional, Tuple

from wuintegrate_models import (
    Architecture,
    CatalogError,
    Classification,
    UpdateCatalog,
    UpdateRecord,
    WindowsVersion,
)


logger = logging.getLogger(__name__)


# ============================================================
# MANIFEST SCHEMA
# ============================================================

OFFLINE_SYNC_NS = "http://schemas.microsoft.com/msus/2004/02/OfflineSync"

SUPERSEDED_BY_TAG = f"{{{OFFLINE_SYNC_NS}}}SupersededBy"
PREREQUISITES_TAG = f"{{{OFFLINE_SYNC_NS}}}Prerequisites"


# ============================================================
# TITLE CLASSIFICATION
# ============================================================

KB_RE = re.compile(r"KB\d{7}")

# First match wins: every release name is listed before any shorter name it contains
OS_VERSION_PATTERNS: List[Tuple[re.Pattern[str], WindowsVersion]] = [
    (re.compile(pattern), version)
    for pattern, version in [
        (r"Windows Server 2008 R2", WindowsVersion.SERVER_2008_R2),
        (r"Windows Server 2008", WindowsVersion.SERVER_2008),
        (r"Windows Server 2012 R2", WindowsVersion.SERVER_2012_R2),
        (r"Windows Server 2012", WindowsVersion.SERVER_2012),
        (r"Windows Server 2016", WindowsVersion.SERVER_2016),
        (r"Windows Server 2019", WindowsVersion.SERVER_2019),
        (r"Windows Server 2022", WindowsVersion.SERVER_2022),
        (r"Windows Server 2025", WindowsVersion.SERVER_2025),
        (r"Windows 7", WindowsVersion.WINDOWS_7),
        (r"Windows 8\.1", WindowsVersion.WINDOWS_81),
        (r"Windows 10 Version 1507", WindowsVersion.WINDOWS_10_RTM),
        (r"Windows 10 Version 1511", WindowsVersion.WINDOWS_10_TH2),
        (r"Windows 10 Version 1607", WindowsVersion.WINDOWS_10_RS1),
        (r"Windows 10 Version 1703", WindowsVersion.WINDOWS_10_RS2),
        (r"Windows 10 Version 1709", WindowsVersion.WINDOWS_10_RS3),
        (r"Windows 10 Version 1803", WindowsVersion.WINDOWS_10_RS4),
        (r"Windows 10 Version 1809", WindowsVersion.WINDOWS_10_RS5),
        (r"Windows 10 Version 1903", WindowsVersion.WINDOWS_10_19H1),
        (r"Windows 10 Version 1909", WindowsVersion.WINDOWS_10_19H2),
        (r"Windows 10 Version 2004", WindowsVersion.WINDOWS_10_20H1),
        (r"Windows 10 Version 20H2", WindowsVersion.WINDOWS_10_20H2),
        (r"Windows 10 Version 21H1", WindowsVersion.WINDOWS_10_21H1),
        (r"Windows 10 Version 21H2", WindowsVersion.WINDOWS_10_21H2),
        (r"Windows 10 Version 22H2", WindowsVersion.WINDOWS_10_22H2),
        (r"Windows 11 Version 21H2", WindowsVersion.WINDOWS_11_21H2),
        (r"Windows 11 Version 22H2", WindowsVersion.WINDOWS_11_22H2),
        (r"Windows 11 Version 23H2", WindowsVersion.WINDOWS_11_23H2),
        (r"Windows 11 Version 24H2", WindowsVersion.WINDOWS_11_24H2),
        # Unversioned titles belong to the first release of each generation
        (r"Windows 10\b", WindowsVersion.WINDOWS_10_RTM),
        (r"Windows 11\b", WindowsVersion.WINDOWS_11_21H2),
    ]
]

ARCHITECTURE_PATTERNS: List[Tuple[re.Pattern[str], Architecture]] = [
    (re.compile(r"x64"), Architecture.X64),
    (re.compile(r"x86"), Architecture.X86),
    (re.compile(r"ARM64"), Architecture.ARM64),
]

# Titles without an architecture are the .NET Framework updates, which ship as x86
DEFAULT_ARCHITECTURE = Architecture.X86


def is_excluded_title(title: str) -> bool:
# Drivers, Office and SQL Server content cannot be serviced into an OS image

    return title == "Driver" or "Office" in title or "SQL" in title


def match_os_version(title: str) -> Optional[WindowsVersion]:
    for pattern, version in OS_VERSION_PATTERNS:
        if pattern.search(title):
            return version
    return None


def match_architecture(title: str) -> Architecture:
    for pattern, arch in ARCHITECTURE_PATTERNS:
        if pattern.search(title):
            return arch
    return DEFAULT_ARCHITECTURE


def classify_title(title: str) -> Optional[Classification]:
    """
    Derive KB number, OS version and architecture from an update title.

    Returns None for titles that are excluded or carry no KB number. The OS
    version may still be None; such records are pruned later as unusable.
    """
    if is_excluded_title(title):
        return None

    m = KB_RE.search(title)
    if not m:
        return None

    return Classification(
        kb_number=m.group(0),
        os_version=match_os_version(title),
        architecture=match_architecture(title),
    )


# ============================================================
# PASS A - MANIFEST
# ============================================================

def parse_creation_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def collect_ids(update: ET.Element, tag: str) -> Tuple[str, ...]:
# Reads the Id attribute of each child under the given container, skipping children without one

    ids: List[str] = []
    for container in update.findall(tag):
        for child in container:
            value = child.get("Id")
            if value is not None:
                ids.append(value)
    return tuple(ids)


def parse_update_element(update: ET.Element) -> Optional[UpdateRecord]:
    raw_revision = update.get("RevisionId")
    if raw_revision is None:
        logger.debug("Skipping Update element without RevisionId")
        return None
    try:
        revision_id = int(raw_revision)
    except ValueError:
        logger.debug("Skipping Update element with RevisionId %r", raw_revision)
        return None

    return UpdateRecord(
        revision_id=revision_id,
        update_id=update.get("UpdateId"),
        creation_date=parse_creation_date(update.get("CreationDate")),
        superseded_by=collect_ids(update, SUPERSEDED_BY_TAG),
        prerequisites=collect_ids(update, PREREQUISITES_TAG),
    )


def parse_manifest(path: str, workers: int = 4, catalog: Optional[UpdateCatalog] = None) -> UpdateCatalog:
    """
    Load every Update element of package.xml into an UpdateCatalog.

    Elements without a usable RevisionId are skipped. When a RevisionId
    repeats, the first record inserted is kept.
    """
    if not os.path.isfile(path):
        raise CatalogError(f"Manifest not found: {path}")

    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as exc:
        raise CatalogError(f"Malformed manifest {path}: {exc}") from exc

    container = next(iter(root), None)
    if container is None:
        raise CatalogError(f"Manifest {path} has no updates container")

    catalog = catalog if catalog is not None else UpdateCatalog()

    def insert(element: ET.Element) -> None:
        record = parse_update_element(element)
        if record is not None and not catalog.add(record):
            logger.debug("Duplicate RevisionId %d ignored", record.revision_id)

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        for _ in pool.map(insert, list(container)):
            pass

    logger.info("Loaded %d update records from %s", len(catalog), path)
    return catalog


# ============================================================
# PASS B - LOCALIZATION
# ============================================================

def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_localization_file(path: str) -> Optional[Classification]:
# Classifies one localization record, returning None when it must be skipped

    try:
        root = ET.parse(path).getroot()
    except ET.ParseError:
        logger.debug("Skipping unreadable localization file %s", path)
        return None

    title: Optional[str] = None
    has_description = False
    for child in root:
        name = local_name(child.tag)
        if name == "Title" and title is None:
            title = child.text or ""
        elif name == "Description":
            has_description = True

    if title is None or not has_description:
        return None

    return classify_title(title)


def apply_localizations(catalog: UpdateCatalog, localization_dir: str, workers: int = 4) -> int:
    """
    Fill in KB number, OS version and architecture from the localization files.

    Files are classified in a worker pool; results are written back by the
    calling thread only. Returns the number of records classified.
    """
    if not os.path.isdir(localization_dir):
        raise CatalogError(f"Localization path was not detected: {localization_dir}")

    targets: List[Tuple[int, str]] = []
    for name in os.listdir(localization_dir):
        try:
            revision_id = int(name)
        except ValueError:
            continue
        if revision_id not in catalog:
            continue
        targets.append((revision_id, os.path.join(localization_dir, name)))

    def classify(target: Tuple[int, str]) -> Tuple[int, Optional[Classification]]:
        revision_id, path = target
        return revision_id, parse_localization_file(path)

    classified = 0
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        for revision_id, classification in pool.map(classify, targets):
            if classification is None:
                continue
            catalog.classify(revision_id, classification)
            classified += 1

    logger.info("Classified %d of %d localization records", classified, len(targets))
    return classified
