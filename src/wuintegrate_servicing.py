"""
WUIntegrate Servicing

Injects downloaded .msu/.cab packages into an offline Windows image through DISM
"""

from __future__ import annotations

import ctypes
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import List, Protocol, Sequence

from wuintegrate_models import ServicingError


logger = logging.getLogger(__name__)

PACKAGE_EXTENSIONS = (".msu", ".cab")
SUCCESS_CODES = (0, 3010)


# ============================================================
# COLLABORATOR CONTRACT
# ============================================================

@dataclass(frozen=True)
class MountHandle:
    image_path: str
    index: int
    mount_dir: str


class ImageServicer(Protocol):

    def mount(self, image_path: str, index: int) -> MountHandle:
        ...

    def add_package(self, handle: MountHandle, package: str) -> None:
        ...

    def commit(self, handle: MountHandle) -> None:
        ...

    def discard(self, handle: MountHandle) -> None:
        ...


# ============================================================
# DISM COMMAND LINE
# ============================================================

def is_admin() -> bool:
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except Exception:
        return False


def run(argv: List[str]) -> int:
    p = subprocess.run(argv, text=True)
    return int(p.returncode or 0)


class DismServicer:

    def __init__(self, mount_dir: str, dism: str = "dism.exe") -> None:
        self.mount_dir = mount_dir
        self.dism = dism

    def _check(self, argv: List[str], action: str) -> None:
        code = run(argv)
        if code not in SUCCESS_CODES:
            raise ServicingError(f"DISM failed to {action} (exit code: {code})")

    def mount(self, image_path: str, index: int) -> MountHandle:
        os.makedirs(self.mount_dir, exist_ok=True)
        self._check(
            [self.dism, "/Mount-Image", f"/ImageFile:{image_path}", f"/Index:{index}", f"/MountDir:{self.mount_dir}"],
            "mount image",
        )
        return MountHandle(image_path=image_path, index=index, mount_dir=self.mount_dir)

    def add_package(self, handle: MountHandle, package: str) -> None:
        self._check(
            [self.dism, f"/Image:{handle.mount_dir}", "/Add-Package", f"/PackagePath:{package}", "/NoRestart"],
            f"add {os.path.basename(package)}",
        )

    def commit(self, handle: MountHandle) -> None:
        self._check([self.dism, "/Unmount-Image", f"/MountDir:{handle.mount_dir}", "/Commit"], "commit image")

    def discard(self, handle: MountHandle) -> None:
        self._check([self.dism, "/Unmount-Image", f"/MountDir:{handle.mount_dir}", "/Discard"], "discard image")


# ============================================================
# INTEGRATION
# ============================================================

def find_packages(paths: Sequence[str]) -> List[str]:
# Keeps the given paths that are existing .msu/.cab files, without duplicates

    packages: List[str] = []
    for path in paths:
        if path in packages or not os.path.isfile(path):
            continue
        if os.path.splitext(path)[1].lower() in PACKAGE_EXTENSIONS:
            packages.append(path)

    packages.sort(key=lambda p: os.path.basename(p).lower())
    return packages


def integrate_downloads(servicer: ImageServicer, handle: MountHandle, downloaded: Sequence[str]) -> List[str]:
    """
    Add the packages downloaded by this run to the mounted image.

    Only the given paths are considered; anything else in the downloads
    directory is left alone. Each package is deleted once it has been added.
    A package that fails is reported and left on disk; the remaining packages
    are still attempted. Returns the packages that were integrated.
    """
    packages = find_packages(downloaded)
    integrated: List[str] = []

    for i, path in enumerate(packages, start=1):
        print(f"[*] [{i}/{len(packages)}] Integrating {os.path.basename(path)}...")
        try:
            servicer.add_package(handle, path)
        except ServicingError as exc:
            print(f"[!] Failed to integrate update: {exc}")
            continue
        os.remove(path)
        integrated.append(path)

    return integrated
