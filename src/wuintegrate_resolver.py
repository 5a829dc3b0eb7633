"""
WUIntegrate Resolver

Narrows the update catalog to the latest updates for one OS version and architecture
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Set

from wuintegrate_models import Architecture, UpdateRecord, WindowsVersion


logger = logging.getLogger(__name__)


# ============================================================
# FILTERS
# ============================================================

def remove_unusable(records: Iterable[UpdateRecord]) -> List[UpdateRecord]:
# Keeps only records that carry both a KB number and an OS version

    return [r for r in records if r.is_usable]


def filter_architecture(records: Iterable[UpdateRecord], arch: Architecture) -> List[UpdateRecord]:
# Drops records classified for another architecture

    return [r for r in records if r.architecture is None or r.architecture == arch]


def filter_version(records: Iterable[UpdateRecord], version: WindowsVersion) -> List[UpdateRecord]:
# Drops records classified for another OS version

    return [r for r in records if r.os_version is None or r.os_version == version]


# ============================================================
# SUPERSEDENCE
# ============================================================

def superseding_ids(record: UpdateRecord) -> Set[int]:
# Parses SupersededBy entries into revision ids, ignoring anything non-numeric

    ids: Set[int] = set()
    for entry in record.superseded_by:
        try:
            ids.add(int(entry))
        except ValueError:
            continue
    return ids


def superseded_in(snapshot: Dict[int, UpdateRecord]) -> Set[int]:
# One pass: revision ids in the snapshot superseded by another member of the same snapshot

    removed: Set[int] = set()
    for revision_id, record in snapshot.items():
        for other in superseding_ids(record):
            if other != revision_id and other in snapshot:
                removed.add(revision_id)
                break
    return removed


def resolve_latest(candidates: Iterable[UpdateRecord]) -> List[UpdateRecord]:
    """
    Return the candidates not superseded by any other candidate.

    Removals are decided against an unmodified snapshot, so the result does
    not depend on iteration order. One pass is enough: a chain A -> B -> C
    removes A and B together and keeps C, and a later pass over the
    survivors could never find a superseder that the first snapshot lacked.
    Superseders outside the candidate set are ignored.
    """
    snapshot: Dict[int, UpdateRecord] = {r.revision_id: r for r in candidates}

    removed = superseded_in(snapshot)
    logger.debug("Supersedence removed %d of %d update(s)", len(removed), len(snapshot))

    return sorted(
        (r for revision_id, r in snapshot.items() if revision_id not in removed),
        key=lambda r: r.revision_id,
    )
