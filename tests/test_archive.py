import os
import subprocess

import pytest

import wuintegrate_archive as archive
from conftest import FakeResponse, FakeSession, write
from wuintegrate_archive import (
    CabinetIndex,
    extract_cab,
    extract_localizations,
    extract_package_archive,
    fetch_and_extract,
    find_localization_cabs,
    load_cabinet_index,
)
from wuintegrate_downloader import Downloader
from wuintegrate_models import CatalogError


INDEX = """<?xml version="1.0" encoding="utf-8"?>
<CABLIST_ROOT>
  <CABLIST>
    <CAB NAME="package.cab" />
    <CAB NAME="package2.cab" RANGESTART="0" />
    <CAB NAME="package3.cab" RANGESTART="1000" />
    <CAB NAME="package4.cab" RANGESTART="5000" />
    <CAB NAME="broken.cab" RANGESTART="x" />
  </CABLIST>
</CABLIST_ROOT>
"""


def touch(path):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(b"MSCF")


@pytest.fixture
def fake_extract(monkeypatch):
    calls = []

    def extract(source, destination, fragment=None, tool="cabextract"):
        calls.append((os.path.basename(source), destination, fragment))
        os.makedirs(destination, exist_ok=True)
        if os.path.basename(source) == "wsusscn2.cab":
            touch(os.path.join(destination, "package.cab"))
            touch(os.path.join(destination, "package2.cab"))
        elif os.path.basename(source) == "package.cab":
            write(os.path.join(destination, "package.xml"), "<OfflineSyncPackage />")
        elif fragment:
            write(os.path.join(destination, "l", "en", "100"), "<LocalizedProperties />")

    monkeypatch.setattr(archive, "extract_cab", extract)
    return calls


# ---------------------------
# Cabinet index
# ---------------------------

def test_cabinet_index_maps_revision_to_range(tmp_path):
    index = load_cabinet_index(write(str(tmp_path / "index.xml"), INDEX))

    assert index.names == ["package2.cab", "package3.cab", "package4.cab"]
    assert index.cab_for_revision(999) == "package2.cab"
    assert index.cab_for_revision(1000) == "package3.cab"
    assert index.cab_for_revision(70000) == "package4.cab"


def test_cabinet_index_below_first_range():
    index = CabinetIndex()
    index.add(10, "package2.cab")
    assert index.cab_for_revision(5) is None


def test_missing_cabinet_index_is_empty(tmp_path):
    assert len(load_cabinet_index(str(tmp_path / "index.xml"))) == 0


# ---------------------------
# Fetch and extract
# ---------------------------

def test_second_fetch_performs_no_transfer(locations, fake_extract):
    session = FakeSession([FakeResponse(b"MSCF-archive")])
    downloader = Downloader(session=session, backoff=0)

    first = fetch_and_extract("https://example.invalid/wsusscn2.cab", locations, downloader)
    second = fetch_and_extract("https://example.invalid/wsusscn2.cab", locations, downloader)

    assert len(session.calls) == 1
    assert first == second
    assert [os.path.basename(p) for p in first] == ["package.cab", "package2.cab"]


def test_package_archive_yields_manifest(locations, fake_extract):
    touch(os.path.join(locations.extraction_dir, "package.cab"))
    manifest = extract_package_archive(locations)
    assert manifest == os.path.join(locations.package_dir, "package.xml")


def test_missing_package_archive_is_fatal(locations, fake_extract):
    with pytest.raises(CatalogError):
        extract_package_archive(locations)


def test_localization_cabs_exclude_manifest_cab(locations):
    for name in ("package.cab", "package2.cab", "Package3.cab", "other.cab", "index.xml"):
        touch(os.path.join(locations.extraction_dir, name))

    names = [os.path.basename(p) for p in find_localization_cabs(locations)]
    assert names == ["Package3.cab", "package2.cab"]

    index = CabinetIndex()
    index.add(0, "package2.cab")
    assert [os.path.basename(p) for p in find_localization_cabs(locations, index)] == ["package2.cab"]


def test_localizations_are_limited_to_english_fragment(locations, fake_extract):
    touch(os.path.join(locations.extraction_dir, "package2.cab"))

    path = extract_localizations(locations)

    assert path == locations.localization_dir
    assert fake_extract == [("package2.cab", locations.localization_root, "l/en/*")]


def test_missing_localization_dir_is_fatal(locations, fake_extract):
    with pytest.raises(CatalogError):
        extract_localizations(locations)


# ---------------------------
# cabextract
# ---------------------------

def test_extract_cab_builds_filtered_command(monkeypatch, tmp_path):
    seen = {}

    def fake_run(cmd, capture_output, text):
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr(archive.shutil, "which", lambda tool: "/usr/bin/cabextract")
    monkeypatch.setattr(archive.subprocess, "run", fake_run)

    extract_cab("/tmp/package2.cab", str(tmp_path / "out"), fragment="l/en/*")

    assert seen["cmd"] == ["/usr/bin/cabextract", "-q", "-d", str(tmp_path / "out"), "-F", "l/en/*", "/tmp/package2.cab"]


def test_extract_cab_failure_is_fatal(monkeypatch, tmp_path):
    monkeypatch.setattr(archive.shutil, "which", lambda tool: "/usr/bin/cabextract")
    monkeypatch.setattr(
        archive.subprocess,
        "run",
        lambda cmd, capture_output, text: subprocess.CompletedProcess(cmd, 1, "", "corrupt cabinet"),
    )

    with pytest.raises(CatalogError, match="corrupt cabinet"):
        extract_cab("/tmp/wsusscn2.cab", str(tmp_path / "out"))


def test_extract_cab_requires_tool(monkeypatch, tmp_path):
    monkeypatch.setattr(archive.shutil, "which", lambda tool: None)
    with pytest.raises(CatalogError):
        extract_cab("/tmp/wsusscn2.cab", str(tmp_path / "out"))
