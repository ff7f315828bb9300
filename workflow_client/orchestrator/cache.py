import logging
from enum import Enum
from typing import Dict, NamedTuple, Optional, Union

from ..models import ClusteringResult, EnhancedColorsResponse, ProcessingResult
from .state import EnhancementSelection, WorkflowStage

logger = logging.getLogger(__name__)


class Artifact(str, Enum):
    ENHANCED_COLORS = "enhanced_colors"
    ENHANCEMENT_SELECTION = "enhancement_selection"
    CLUSTERING_RESULT = "clustering_result"


# Stage that first needs each artifact; going back to or before it drops the artifact
PRODUCED_FOR: Dict[Artifact, WorkflowStage] = {
    Artifact.ENHANCED_COLORS: WorkflowStage.ENHANCEMENT,
    Artifact.ENHANCEMENT_SELECTION: WorkflowStage.CLUSTERING,
    Artifact.CLUSTERING_RESULT: WorkflowStage.RESULTS,
}

CachedValue = Union[EnhancedColorsResponse, EnhancementSelection, ClusteringResult]


class CacheKey(NamedTuple):
    session_id: str
    artifact: Artifact


class _Entry(NamedTuple):
    owner: ProcessingResult
    value: CachedValue


class StageCache:
    """Last good artifact per stage, scoped to the ProcessingResult it came from"""

    def __init__(self, metrics=None):
        self.metrics = metrics
        self._processing_result: Optional[ProcessingResult] = None
        self._entries: Dict[CacheKey, _Entry] = {}

    @property
    def processing_result(self) -> Optional[ProcessingResult]:
        return self._processing_result

    def replace_processing_result(self, result: ProcessingResult) -> None:
        """A new image invalidates everything downstream"""
        dropped = len(self._entries)
        self._entries.clear()
        self._processing_result = result
        logger.info(f"Cached processing result for session {result.session_id} (dropped {dropped} artifacts)")

    def get(self, artifact: Artifact) -> Optional[CachedValue]:
        value = self.peek(artifact)
        if self.metrics:
            self.metrics.cache_lookups_total.labels(
                artifact=artifact.value, result="hit" if value is not None else "miss"
            ).inc()
        return value

    def put(self, artifact: Artifact, value: CachedValue) -> None:
        if self._processing_result is None:
            raise ValueError(f"Cannot cache {artifact.value} without a processing result")
        key = CacheKey(self._processing_result.session_id, artifact)
        self._entries[key] = _Entry(self._processing_result, value)

    def peek(self, artifact: Artifact) -> Optional[CachedValue]:
        """Lookup without counting; used to build snapshots"""
        current = self._processing_result
        if current is None:
            return None
        entry = self._entries.get(CacheKey(current.session_id, artifact))
        # Same session id is not enough; the owning result must match structurally
        return entry.value if entry is not None and entry.owner == current else None

    def discard(self, artifact: Artifact) -> None:
        self._entries = {k: v for k, v in self._entries.items() if k.artifact != artifact}

    def discard_downstream(self, target: WorkflowStage) -> None:
        """Drop artifacts first needed by stages after the target"""
        for artifact, stage in PRODUCED_FOR.items():
            if stage.order > target.order:
                self.discard(artifact)

    def clear(self) -> None:
        self._entries.clear()
        self._processing_result = None
