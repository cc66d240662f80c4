"""
Conflict detection between two branches diverged from a common ancestor.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, List, Optional
from uuid import UUID

import structlog

from ..core import metrics
from ..core.cancellation import Deadline
from ..core.exceptions import NoCommonAncestorError, NotFoundError
from ..models.version_control import (
    FAMILY_CONFLICT_TYPE,
    ChangeFamily,
    Conflict,
    ModelChange,
    ModelVersion,
    VersionDiff,
)
from .version_store import VersionStore

logger = structlog.get_logger(__name__)

_FAMILY_LABELS = {
    ChangeFamily.GEOMETRY: "Geometry",
    ChangeFamily.MATERIAL: "Material",
    ChangeFamily.TEXTURE: "Texture",
    ChangeFamily.TRANSFORM: "Transform",
    ChangeFamily.METADATA: "Metadata",
}


class ConflictDetector:
    """
    Finds overlapping changes between a source and a target diff.

    Both diffs must be taken against the same common ancestor. A conflict is
    reported when both sides changed the same path within the same element
    family; each path produces at most one conflict per family.
    """

    def detect(self, source_diff: VersionDiff, target_diff: VersionDiff) -> List[Conflict]:
        conflicts: List[Conflict] = []
        for family in ChangeFamily:
            source_by_path: Dict[str, ModelChange] = {
                c.path: c for c in source_diff.changes if c.family == family
            }
            if not source_by_path:
                continue
            seen = set()
            for target_change in target_diff.changes:
                if target_change.family != family or target_change.path in seen:
                    continue
                source_change = source_by_path.get(target_change.path)
                if source_change is None:
                    continue
                seen.add(target_change.path)
                conflicts.append(self._conflict(family, source_change, target_change))

        for conflict in conflicts:
            metrics.asset_vcs_conflicts_detected_total.labels(type=conflict.type.value).inc()
        if conflicts:
            logger.info(
                "conflicts_detected",
                count=len(conflicts),
                paths=[c.path for c in conflicts],
            )
        return conflicts

    @staticmethod
    def _conflict(family: ChangeFamily, source: ModelChange, target: ModelChange) -> Conflict:
        return Conflict(
            type=FAMILY_CONFLICT_TYPE[family],
            path=source.path,
            description=(
                f"{_FAMILY_LABELS[family]} changed on both branches at {source.path} "
                f"(source: {source.type.value}, target: {target.type.value})"
            ),
            source_value=source.new_value,
            target_value=target.new_value,
        )


class AncestorResolver:
    """
    Nearest common ancestor lookup over the version DAG.

    Walks parent links (both parents of merge versions) breadth first from
    each head. Versions are loaded once per resolver and memoized; parents
    pruned by retention are treated as roots.
    """

    def __init__(self, store: VersionStore, deadline: Optional[Deadline] = None):
        self._store = store
        self._deadline = deadline
        self._versions: Dict[UUID, Optional[ModelVersion]] = {}

    def _load(self, version_id: UUID) -> Optional[ModelVersion]:
        if version_id not in self._versions:
            try:
                self._versions[version_id] = self._store.get_version(version_id, deadline=self._deadline)
            except NotFoundError:
                self._versions[version_id] = None
        return self._versions[version_id]

    def distances(self, head_id: UUID) -> Dict[UUID, int]:
        """Breadth-first distance from ``head_id`` to each reachable ancestor."""
        distances = {head_id: 0}
        queue = deque([head_id])
        while queue:
            current = queue.popleft()
            version = self._load(current)
            if version is None:
                continue
            for parent_id in version.parent_ids:
                if parent_id not in distances:
                    distances[parent_id] = distances[current] + 1
                    queue.append(parent_id)
        return distances

    def is_ancestor(self, ancestor_id: UUID, descendant_id: UUID) -> bool:
        return ancestor_id in self.distances(descendant_id)

    def find_common_ancestor(self, head_a: UUID, head_b: UUID) -> ModelVersion:
        """
        Nearest shared version of two heads.

        Ties on combined distance go to the newest version, then the lowest id.

        Raises:
            NoCommonAncestorError: if the histories never meet
        """
        from_a = self.distances(head_a)
        from_b = self.distances(head_b)
        shared = [
            v for v in (self._load(vid) for vid in from_a.keys() & from_b.keys()) if v is not None
        ]
        if not shared:
            raise NoCommonAncestorError(
                f"Versions {head_a} and {head_b} share no history",
                details={"head_a": str(head_a), "head_b": str(head_b)},
            )
        shared.sort(key=lambda v: (from_a[v.id] + from_b[v.id], -v.created_at.timestamp(), str(v.id)))
        return shared[0]
