"""
WUIntegrate Master

Finds the latest updates for a Windows image, downloads them and optionally integrates them
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import threading
from enum import Enum
from typing import Callable, List, Optional, Sequence

from wuintegrate_archive import (
    INDEX_XML,
    OFFLINE_CAB_URL,
    cleanup_extraction,
    extract_localizations,
    extract_package_archive,
    fetch_and_extract,
    load_cabinet_index,
)
from wuintegrate_catalog import CatalogClient
from wuintegrate_downloader import Downloader, build_session, console_progress
from wuintegrate_metadata import apply_localizations, parse_manifest
from wuintegrate_models import (
    Architecture,
    DownloadLink,
    Locations,
    RunConfig,
    UpdateCatalog,
    UpdateRecord,
    WindowsVersion,
    WUIntegrateError,
)
from wuintegrate_resolver import filter_architecture, filter_version, remove_unusable, resolve_latest
from wuintegrate_servicing import DismServicer, ImageServicer, MountHandle, integrate_downloads, is_admin


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING
# ============================================================

def configure_logging(verbose: bool = False) -> None:
# Plain stderr logging; urllib3 connection chatter is kept quiet

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for name in ("requests.packages.urllib3.connectionpool", "urllib3"):
        logging.getLogger(name).setLevel(logging.ERROR)


# ============================================================
# IMAGE IDENTIFICATION
# ============================================================

SERVER_BUILDS = {
    6001: WindowsVersion.SERVER_2008,
    7601: WindowsVersion.SERVER_2008_R2,
    9200: WindowsVersion.SERVER_2012,
    9600: WindowsVersion.SERVER_2012_R2,
    14393: WindowsVersion.SERVER_2016,
    17763: WindowsVersion.SERVER_2019,
    20348: WindowsVersion.SERVER_2022,
    26100: WindowsVersion.SERVER_2025,
}

# 1904x and 226x1 share servicing branches and are forced to their newest release
CLIENT_BUILDS = {
    7601: WindowsVersion.WINDOWS_7,
    9600: WindowsVersion.WINDOWS_81,
    10240: WindowsVersion.WINDOWS_10_RTM,
    10586: WindowsVersion.WINDOWS_10_TH2,
    14393: WindowsVersion.WINDOWS_10_RS1,
    15063: WindowsVersion.WINDOWS_10_RS2,
    16299: WindowsVersion.WINDOWS_10_RS3,
    17134: WindowsVersion.WINDOWS_10_RS4,
    17763: WindowsVersion.WINDOWS_10_RS5,
    18362: WindowsVersion.WINDOWS_10_19H1,
    18363: WindowsVersion.WINDOWS_10_19H2,
    19041: WindowsVersion.WINDOWS_10_22H2,
    19042: WindowsVersion.WINDOWS_10_22H2,
    19043: WindowsVersion.WINDOWS_10_22H2,
    19044: WindowsVersion.WINDOWS_10_22H2,
    19045: WindowsVersion.WINDOWS_10_22H2,
    22000: WindowsVersion.WINDOWS_11_21H2,
    22621: WindowsVersion.WINDOWS_11_23H2,
    22631: WindowsVersion.WINDOWS_11_23H2,
    26100: WindowsVersion.WINDOWS_11_24H2,
}


def windows_version_for_build(build: int, product_type: str) -> WindowsVersion:
# Maps an image build number and product type (WinNT or ServerNT) to a release

    if product_type == "ServerNT":
        return SERVER_BUILDS.get(build, WindowsVersion.UNKNOWN)
    if product_type == "WinNT":
        return CLIENT_BUILDS.get(build, WindowsVersion.UNKNOWN)
    return WindowsVersion.UNKNOWN


# ============================================================
# IO HELPERS
# ============================================================

def safe_input(prompt: str) -> str:
# Reads operator input safely

    try:
        return input(prompt)
    except EOFError:
        return ""


def prompt_yes_no(question: str) -> bool:
    answer = safe_input(f"{question} [y/N]: ").strip().lower()
    return answer in ("y", "yes")


# ============================================================
# UPDATE SYSTEM
# ============================================================

class RunState(Enum):
    BOOTSTRAPPED = "Bootstrapped"
    CATALOG_READY = "CatalogReady"
    FILTERED = "Filtered"
    RESOLVED = "Resolved"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    DOWNLOADING = "Downloading"
    DONE = "Done"
    FAILED = "Failed"


class UpdateSystem:
    """
    Drives one run from the offline cabinet to packages on disk.

    ``ready_to_integrate`` is only True once the operator approved the
    update list and every download finished. Cleanup hooks run, newest
    first, when the run fails.
    """

    def __init__(
        self,
        config: RunConfig,
        downloader: Optional[Downloader] = None,
        catalog_client: Optional[CatalogClient] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        catalog_url: str = OFFLINE_CAB_URL,
    ) -> None:
        self.config = config
        self.cancel = getattr(downloader, "cancel", None) or threading.Event()
        session = None
        if downloader is None or catalog_client is None:
            session = build_session()
        self.downloader = downloader or Downloader(
            session=session,
            attempts=config.attempts,
            timeout=config.timeout,
            progress=console_progress,
            cancel=self.cancel,
        )
        self.catalog_client = catalog_client or CatalogClient(
            session=session,
            attempts=config.attempts,
            timeout=config.timeout,
            cancel=self.cancel,
        )
        self.confirm = confirm or prompt_yes_no
        self.catalog_url = catalog_url

        self.state = RunState.BOOTSTRAPPED
        self.catalog: Optional[UpdateCatalog] = None
        self.selected: List[UpdateRecord] = []
        self.downloaded: List[str] = []
        self.ready_to_integrate = False
        self._cleanup: List[Callable[[], None]] = []

    def on_failure(self, hook: Callable[[], None]) -> None:
        self._cleanup.append(hook)

    # ---------------------------
    # STAGES
    # ---------------------------

    def load_catalog(self) -> UpdateCatalog:
        loc = self.config.locations
        tool = self.config.cabextract
        loc.create()

        print("[*] Downloading offline update scan cabinet...")
        fetch_and_extract(self.catalog_url, loc, self.downloader, tool=tool)

        print("[*] Extracting package cabinet...")
        manifest = extract_package_archive(loc, tool=tool)

        print("[*] Loading cabinet index...")
        index = load_cabinet_index(os.path.join(loc.extraction_dir, INDEX_XML))

        print("[*] Extracting localization files...")
        localization_dir = extract_localizations(loc, index, tool=tool)

        print("[*] Loading package.xml...")
        catalog = parse_manifest(manifest, workers=self.config.workers)
        print(f"[+] Update records: {len(catalog)}")

        print("[*] Classifying updates from localization files...")
        classified = apply_localizations(catalog, localization_dir, workers=self.config.workers)
        print(f"[+] Classified: {classified}")

        if not self.config.keep_scratch:
            cleanup_extraction(loc)

        return catalog

    def select(self, catalog: UpdateCatalog) -> List[UpdateRecord]:
        records = remove_unusable(catalog.snapshot())
        records = filter_architecture(records, self.config.architecture)
        records = filter_version(records, self.config.version)
        self.state = RunState.FILTERED
        print(f"[+] Candidates for {self.config.version.value} {self.config.architecture.value}: {len(records)}")

        latest = resolve_latest(records)
        self.state = RunState.RESOLVED
        print(f"[+] Latest updates: {len(latest)}")
        return latest

    def print_information(self) -> None:
        print()
        print("=== Updates To Integrate ===")
        print(f"Windows version: {self.config.version.value}")
        print(f"Architecture:    {self.config.architecture.value}")
        print(f"Updates:         {len(self.selected)}")
        for record in sorted(self.selected, key=lambda r: r.kb_number or ""):
            print(f"- {record.kb_number} (Revision {record.revision_id})")
        print()

    def download(self, records: Sequence[UpdateRecord]) -> List[str]:
        update_ids = [r.update_id for r in records if r.update_id]
        if not update_ids:
            print("[-] No updates to download.")
            return []

        print(f"[*] Getting download links for {len(update_ids)} update(s)...")
        results = self.catalog_client.lookup_many(update_ids, workers=self.config.workers)

        links: List[DownloadLink] = [link for found in results for link in found]
        if not links:
            print("[-] The catalog returned no download links.")
            return []

        print(f"[*] Downloading {len(links)} file(s) into {self.config.locations.downloads_dir}...")
        return self.downloader.download_links(
            links,
            self.config.locations.downloads_dir,
            workers=self.config.workers,
        )

    # ---------------------------
    # RUN
    # ---------------------------

    def run(self, catalog: Optional[UpdateCatalog] = None) -> RunState:
        try:
            self.catalog = catalog if catalog is not None else self.load_catalog()
            self.state = RunState.CATALOG_READY

            self.selected = self.select(self.catalog)
            self.print_information()

            self.state = RunState.AWAITING_CONFIRMATION
            question = "Are you sure you want to integrate updates? There is NO undoing this action."
            if not (self.config.assume_yes or self.confirm(question)):
                print("[-] Updates will not be integrated.")
                self.ready_to_integrate = False
                self.state = RunState.DONE
                return self.state

            self.state = RunState.DOWNLOADING
            self.downloaded = self.download(self.selected)
            self.ready_to_integrate = True
            self.state = RunState.DONE
            print("[+] Update system has finished.")
            return self.state

        except BaseException:
            self.state = RunState.FAILED
            self.ready_to_integrate = False
            self.cancel.set()
            self.run_cleanup()
            raise

    def run_cleanup(self) -> None:
        while self._cleanup:
            hook = self._cleanup.pop()
            try:
                hook()
            except WUIntegrateError as exc:
                logger.error("Cleanup step failed: %s", exc)


# ============================================================
# INTEGRATION
# ============================================================

def integrate(system: UpdateSystem, servicer: ImageServicer, handle: MountHandle) -> List[str]:
# Injects the packages this run downloaded when it was approved, then commits; otherwise discards the mount

    if not system.ready_to_integrate:
        servicer.discard(handle)
        return []

    print("[*] Integrating updates. This may take a while.")
    integrated = integrate_downloads(servicer, handle, system.downloaded)
    print("[*] Applying image changes...")
    servicer.commit(handle)
    return integrated


# ============================================================
# CLI
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Find, download and integrate the latest Windows updates for an offline image."
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--version", help="Windows release tag, e.g. Windows1022H2")
    target.add_argument("--build", type=int, help="image build number, e.g. 19045")
    parser.add_argument("--product-type", default="WinNT", choices=["WinNT", "ServerNT"])
    parser.add_argument("--arch", default="x64", help="x86, x64 or ARM64")
    parser.add_argument("--root", help="scratch directory (default: <temp>/WUIntegrate)")
    parser.add_argument("--workers", type=int, default=4)
    parser.add_argument("--yes", action="store_true", help="do not ask for confirmation")
    parser.add_argument("--keep-scratch", action="store_true", help="keep extracted cabinet contents")
    parser.add_argument("--cabextract", default="cabextract", help="cabinet extractor executable")
    parser.add_argument("--image", help="install.wim to integrate the downloaded updates into")
    parser.add_argument("--index", type=int, default=1, help="image index inside --image")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def config_from_args(args: argparse.Namespace) -> RunConfig:
    if args.version:
        version = WindowsVersion.parse(args.version)
    else:
        version = windows_version_for_build(args.build, args.product_type)
    if version == WindowsVersion.UNKNOWN:
        raise ValueError("Windows version is unsupported.")

    arch = Architecture.parse(args.arch)
    if arch == Architecture.UNKNOWN:
        raise ValueError(f"{args.arch} is not supported.")

    locations = Locations.under(args.root) if args.root else Locations.default()
    return RunConfig(
        version=version,
        architecture=arch,
        locations=locations,
        workers=max(1, args.workers),
        cabextract=args.cabextract,
        assume_yes=args.yes,
        keep_scratch=args.keep_scratch,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = config_from_args(args)
    except ValueError as exc:
        print(f"[X] {exc}")
        return 1

    print("[*] Running wuintegrate...")
    print(f"[+] Target: {config.version.value} {config.architecture.value}")

    system = UpdateSystem(config)
    servicer: Optional[DismServicer] = None
    handle: Optional[MountHandle] = None

    try:
        if args.image:
            if not is_admin():
                print("[!] Integration requires running as Administrator.")
            servicer = DismServicer(config.locations.mount_dir)
            print(f"[*] Mounting {args.image} (index {args.index})...")
            handle = servicer.mount(args.image, args.index)
            system.on_failure(lambda: servicer.discard(handle))

        system.run()

        if servicer and handle:
            integrate(system, servicer, handle)

    except KeyboardInterrupt:
        print("\n[!] Cancelled by user.")
        system.run_cleanup()
        return 130
    except (WUIntegrateError, OSError) as exc:
        print(f"[X] {exc}")
        system.run_cleanup()
        return 1
    finally:
        if not config.keep_scratch and os.path.isdir(config.locations.extraction_dir):
            shutil.rmtree(config.locations.extraction_dir, ignore_errors=True)

    print(f"[+] Finished: {system.state.value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
