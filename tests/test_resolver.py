from wuintegrate_models import Architecture, Classification, UpdateRecord, WindowsVersion
from wuintegrate_resolver import (
    filter_architecture,
    filter_version,
    remove_unusable,
    resolve_latest,
)


def rec(revision_id, superseded_by=(), kb="KB5000000", version=WindowsVersion.WINDOWS_10_22H2, arch=Architecture.X64):
    return UpdateRecord(
        revision_id=revision_id,
        update_id=f"guid-{revision_id}",
        superseded_by=tuple(str(s) for s in superseded_by),
        classification=Classification(kb_number=kb, os_version=version, architecture=arch),
    )


def ids(records):
    return {r.revision_id for r in records}


def test_superseded_candidate_is_removed():
    a, b, c = rec(1, superseded_by=[2]), rec(2), rec(3)
    assert ids(resolve_latest([a, b, c])) == {2, 3}


def test_superseder_outside_candidates_does_not_count():
    a = rec(1, superseded_by=[99])
    assert ids(resolve_latest([a])) == {1}


def test_chain_collapses_to_newest():
    a, b, c = rec(1, superseded_by=[2]), rec(2, superseded_by=[3]), rec(3)
    assert ids(resolve_latest([a, b, c])) == {3}


def test_chain_result_does_not_depend_on_order():
    a, b, c = rec(1, superseded_by=[2]), rec(2, superseded_by=[3]), rec(3)
    assert ids(resolve_latest([c, b, a])) == {3}
    assert ids(resolve_latest([b, c, a])) == {3}


def test_long_chain_collapses():
    records = [rec(i, superseded_by=[i + 1]) for i in range(1, 10)] + [rec(10)]
    assert ids(resolve_latest(records)) == {10}


def test_non_numeric_and_self_references_are_ignored():
    a = rec(1, superseded_by=["not-a-number", "1"])
    assert ids(resolve_latest([a])) == {1}


def test_multiple_superseders():
    a = rec(1, superseded_by=[50, 3])
    assert ids(resolve_latest([a, rec(3)])) == {3}


def test_resolve_does_not_modify_input():
    records = [rec(1, superseded_by=[2]), rec(2)]
    resolve_latest(records)
    assert ids(records) == {1, 2}


def test_empty_candidates():
    assert resolve_latest([]) == []


def test_remove_unusable_requires_kb_and_version():
    usable = rec(1)
    no_kb = rec(2, kb=None)
    no_version = rec(3, version=None)
    unclassified = UpdateRecord(revision_id=4)
    assert ids(remove_unusable([usable, no_kb, no_version, unclassified])) == {1}


def test_filters_keep_matching_and_unknown():
    x64 = rec(1)
    x86 = rec(2, arch=Architecture.X86)
    no_arch = rec(3, arch=None)
    assert ids(filter_architecture([x64, x86, no_arch], Architecture.X64)) == {1, 3}

    win11 = rec(4, version=WindowsVersion.WINDOWS_11_23H2)
    assert ids(filter_version([x64, win11], WindowsVersion.WINDOWS_10_22H2)) == {1}
