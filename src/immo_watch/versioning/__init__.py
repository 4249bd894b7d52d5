"""Property identities, version chains and manual links."""

from immo_watch.models import EdgeKind, VersionEdge
from immo_watch.versioning.chain import (
    LinkResult,
    ManualLinkService,
    VersionHistoryEntry,
    find_chain_head,
)
from immo_watch.versioning.detector import (
    VersionPlan,
    apply_version_plan,
    detect_version,
    detect_versions_with_batch_awareness,
    merge_price_history,
    resolve_batch_version_chains,
)
from immo_watch.versioning.graph import VersionGraph
from immo_watch.versioning.identity import (
    compute_fuzzy_identity,
    compute_property_identity,
    could_be_same_property,
)

__all__ = [
    "EdgeKind",
    "LinkResult",
    "ManualLinkService",
    "VersionEdge",
    "VersionGraph",
    "VersionHistoryEntry",
    "VersionPlan",
    "apply_version_plan",
    "compute_fuzzy_identity",
    "compute_property_identity",
    "could_be_same_property",
    "detect_version",
    "detect_versions_with_batch_awareness",
    "find_chain_head",
    "merge_price_history",
    "resolve_batch_version_chains",
]
