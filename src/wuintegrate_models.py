"""
WUIntegrate Models

Shared data types, run locations and error types used by every stage
"""

from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple


# ============================================================
# ENUMS
# ============================================================

class WindowsVersion(Enum):
    UNKNOWN = "Unknown"
    WINDOWS_7 = "Windows7"
    WINDOWS_81 = "Windows81"
    WINDOWS_10_RTM = "Windows10RTM"
    WINDOWS_10_TH1 = "Windows10TH1"
    WINDOWS_10_TH2 = "Windows10TH2"
    WINDOWS_10_RS1 = "Windows10RS1"
    WINDOWS_10_RS2 = "Windows10RS2"
    WINDOWS_10_RS3 = "Windows10RS3"
    WINDOWS_10_RS4 = "Windows10RS4"
    WINDOWS_10_RS5 = "Windows10RS5"
    WINDOWS_10_19H1 = "Windows1019H1"
    WINDOWS_10_19H2 = "Windows1019H2"
    WINDOWS_10_20H1 = "Windows1020H1"
    WINDOWS_10_20H2 = "Windows1020H2"
    WINDOWS_10_21H1 = "Windows1021H1"
    WINDOWS_10_21H2 = "Windows1021H2"
    WINDOWS_10_22H2 = "Windows1022H2"
    WINDOWS_11_21H2 = "Windows1121H2"
    WINDOWS_11_22H2 = "Windows1122H2"
    WINDOWS_11_23H2 = "Windows1123H2"
    WINDOWS_11_24H2 = "Windows1124H2"
    SERVER_2008 = "WindowsServer2008"
    SERVER_2008_R2 = "WindowsServer2008R2"
    SERVER_2012 = "WindowsServer2012"
    SERVER_2012_R2 = "WindowsServer2012R2"
    SERVER_2016 = "WindowsServer2016"
    SERVER_2019 = "WindowsServer2019"
    SERVER_2022 = "WindowsServer2022"
    SERVER_2025 = "WindowsServer2025"

    @classmethod
    def parse(cls, text: str) -> "WindowsVersion":
        # Accepts either the tag value ("Windows1022H2") or the member name
        token = text.strip()
        for member in cls:
            if token.lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"Unknown Windows version: {text}")


class Architecture(Enum):
    X86 = "x86"
    X64 = "x64"
    ARM64 = "ARM64"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, text: str) -> "Architecture":
        token = text.strip().lower()
        if token in ("x64", "amd64"):
            return cls.X64
        if token in ("x86", "i386", "32-bit"):
            return cls.X86
        if token in ("arm64", "aarch64"):
            return cls.ARM64
        return cls.UNKNOWN


# ============================================================
# ERRORS
# ============================================================

class WUIntegrateError(Exception):
    """Base class for errors that end a run."""


class CatalogError(WUIntegrateError):
    """The offline catalog or one of its required parts is missing or malformed."""


class NetworkError(WUIntegrateError):
    """A transfer failed after exhausting its retries."""


class ServicingError(WUIntegrateError):
    """The image-servicing collaborator reported a failure."""


# ============================================================
# UPDATE RECORDS
# ============================================================

@dataclass(frozen=True)
class Classification:
    kb_number: Optional[str] = None
    os_version: Optional[WindowsVersion] = None
    architecture: Optional[Architecture] = None


@dataclass(frozen=True)
class UpdateRecord:
    revision_id: int
    update_id: Optional[str] = None
    creation_date: Optional[datetime] = None
    superseded_by: Tuple[str, ...] = ()
    prerequisites: Tuple[str, ...] = ()
    classification: Classification = field(default_factory=Classification)

    @property
    def kb_number(self) -> Optional[str]:
        return self.classification.kb_number

    @property
    def os_version(self) -> Optional[WindowsVersion]:
        return self.classification.os_version

    @property
    def architecture(self) -> Optional[Architecture]:
        return self.classification.architecture

    @property
    def is_usable(self) -> bool:
        return self.kb_number is not None and self.os_version is not None

    def classified(self, classification: Classification) -> "UpdateRecord":
        return replace(self, classification=classification)


@dataclass(frozen=True)
class DownloadLink:
    update_id: str
    url: str
    file_name: str


class UpdateCatalog:
    """
    Master map of revision id to update record for one run.

    Insertion is first-writer-wins and safe from worker threads. Classification
    is attached by replacing the whole record under the same lock.
    """

    def __init__(self) -> None:
        self._records: Dict[int, UpdateRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: UpdateRecord) -> bool:
        with self._lock:
            if record.revision_id in self._records:
                return False
            self._records[record.revision_id] = record
            return True

    def classify(self, revision_id: int, classification: Classification) -> None:
        with self._lock:
            self._records[revision_id] = self._records[revision_id].classified(classification)

    def get(self, revision_id: int) -> Optional[UpdateRecord]:
        return self._records.get(revision_id)

    def snapshot(self) -> List[UpdateRecord]:
        with self._lock:
            return list(self._records.values())

    def __contains__(self, revision_id: object) -> bool:
        return revision_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[UpdateRecord]:
        return iter(self.snapshot())


# ============================================================
# RUN LOCATIONS
# ============================================================

LOCALIZATION_FRAGMENT = ("l", "en")


@dataclass(frozen=True)
class Locations:
    root: str
    extraction_dir: str
    package_dir: str
    localization_root: str
    downloads_dir: str
    mount_dir: str

    @classmethod
    def under(cls, root: str) -> "Locations":
        extraction_dir = os.path.join(root, "scancab")
        return cls(
            root=root,
            extraction_dir=extraction_dir,
            package_dir=os.path.join(extraction_dir, "package"),
            localization_root=os.path.join(extraction_dir, "localizations"),
            downloads_dir=os.path.join(root, "updates"),
            mount_dir=os.path.join(root, "mount"),
        )

    @classmethod
    def default(cls) -> "Locations":
        return cls.under(os.path.join(tempfile.gettempdir(), "WUIntegrate"))

    @property
    def catalog_archive(self) -> str:
        return os.path.join(self.root, "wsusscn2.cab")

    @property
    def localization_dir(self) -> str:
        return os.path.join(self.localization_root, *LOCALIZATION_FRAGMENT)

    def create(self) -> None:
        for path in (self.root, self.extraction_dir, self.downloads_dir, self.mount_dir):
            os.makedirs(path, exist_ok=True)


@dataclass(frozen=True)
class RunConfig:
    version: WindowsVersion
    architecture: Architecture
    locations: Locations
    workers: int = 4
    attempts: int = 5
    timeout: int = 30
    cabextract: str = "cabextract"
    assume_yes: bool = False
    keep_scratch: bool = False
