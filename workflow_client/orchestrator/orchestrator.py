import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Dict, Iterable, List, Optional, TypeVar

from opentelemetry import trace

from ..config import EXPORT_TYPES
from ..errors import (
    ArtifactUnavailable,
    ExportBlocked,
    InvalidAssignment,
    InvalidSelection,
    StageError,
    WorkflowError,
)
from ..models import (
    ClusteringResult,
    EnhancedColorsResponse,
    ExportArtifact,
    ImageUpload,
    ProcessingResult,
)
from ..observability.metrics import Metrics, setup_metrics
from ..service import ServiceClient
from .cache import Artifact, StageCache
from .state import EnhancementSelection, ErrorInfo, WorkflowSnapshot, WorkflowStage

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

FALLBACK_MESSAGES = {
    'submit_image': "Failed to process image",
    'preview_enhancements': "Failed to generate enhancements",
    'select_method': "Failed to select enhancement method",
    'submit_assignment': "Failed to process clustering",
    'export': "Failed to export DXF",
}

BACK_TARGETS = {
    WorkflowStage.ENHANCEMENT: WorkflowStage.UPLOAD,
    WorkflowStage.CLUSTERING: WorkflowStage.ENHANCEMENT,
    WorkflowStage.RESULTS: WorkflowStage.CLUSTERING,
}


class _StaleResult(Exception):
    """A call settled after back/reset moved the workflow on"""


class _Step:
    def __init__(self, orchestrator: "WorkflowOrchestrator", epoch: int):
        self._orchestrator = orchestrator
        self.epoch = epoch

    async def call(self, awaitable: Awaitable[T]) -> T:
        result = await awaitable
        if self._orchestrator._epoch != self.epoch:
            raise _StaleResult()
        return result


class WorkflowOrchestrator:
    """Drives one upload -> enhancement -> clustering -> results workflow"""

    def __init__(self, client: ServiceClient, metrics: Optional[Metrics] = None):
        self.client = client
        self.metrics = metrics or setup_metrics()
        self.cache = StageCache(self.metrics)

        self._stage = WorkflowStage.UPLOAD
        self._loading = False
        self._error: Optional[ErrorInfo] = None
        # Bumped by back/reset so late results from older transitions are dropped
        self._epoch = 0

        self.history: List[WorkflowSnapshot] = []
        self._snapshot = self._publish()

    # Read side

    @property
    def snapshot(self) -> WorkflowSnapshot:
        return self._snapshot

    @property
    def stage(self) -> WorkflowStage:
        return self._stage

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def processing_result(self) -> ProcessingResult:
        result = self.cache.processing_result
        if result is None:
            raise ArtifactUnavailable("No image has been processed yet")
        return result

    @property
    def enhanced_colors(self) -> EnhancedColorsResponse:
        return self._artifact(Artifact.ENHANCED_COLORS, "Enhanced colors have not been generated")

    @property
    def enhancement_selection(self) -> EnhancementSelection:
        return self._artifact(Artifact.ENHANCEMENT_SELECTION, "No enhancement method has been selected")

    @property
    def clustering_result(self) -> ClusteringResult:
        return self._artifact(Artifact.CLUSTERING_RESULT, "Clustering has not been processed")

    def _artifact(self, artifact: Artifact, missing: str):
        value = self.cache.peek(artifact)
        if value is None:
            raise ArtifactUnavailable(missing)
        return value

    def _publish(self) -> WorkflowSnapshot:
        snapshot = WorkflowSnapshot(
            sequence=len(self.history),
            stage=self._stage,
            loading=self._loading,
            error=self._error,
            processing_result=self.cache.processing_result,
            enhanced_colors=self.cache.peek(Artifact.ENHANCED_COLORS),
            enhancement_selection=self.cache.peek(Artifact.ENHANCEMENT_SELECTION),
            clustering_result=self.cache.peek(Artifact.CLUSTERING_RESULT),
        )
        self.history.append(snapshot)
        self._snapshot = snapshot
        return snapshot

    # Transition plumbing

    def _accepts(self, name: str, stage: WorkflowStage) -> bool:
        if self._loading:
            logger.warning(f"Rejected {name}: another transition is in flight")
            self.metrics.transitions_total.labels(transition=name, status="rejected").inc()
            return False

        if self._stage != stage:
            error = StageError(
                f"Cannot {name.replace('_', ' ')} from the {self._stage.value} stage"
            )
            self._fail(name, error)
            self.metrics.transitions_total.labels(transition=name, status="failure").inc()
            self._publish()
            return False

        return True

    def _fail(self, name: str, error: WorkflowError) -> None:
        self._error = ErrorInfo.from_error(error, FALLBACK_MESSAGES.get(name, "Request failed"), name)
        logger.warning(f"{name} failed in {self._stage.value} stage: {error}")

    @asynccontextmanager
    async def _transition(self, name: str):
        epoch = self._epoch
        self._error = None
        self._loading = True
        self._publish()

        self.metrics.transitions_in_flight.inc()
        started = time.perf_counter()
        status = "success"
        try:
            with tracer.start_as_current_span(f"transition.{name}") as span:
                span.set_attribute("stage", self._stage.value)
                if self.cache.processing_result is not None:
                    span.set_attribute("session_id", self.cache.processing_result.session_id)
                try:
                    yield _Step(self, epoch)
                except _StaleResult:
                    status = "stale"
                    span.set_attribute("stale", True)
                    logger.info(f"Discarded {name} result: workflow moved on while it was pending")
        except WorkflowError as e:
            if self._epoch != epoch:
                status = "stale"
                logger.info(f"Discarded {name} failure: workflow moved on while it was pending")
            else:
                status = "failure"
                self._fail(name, e)
        except Exception as e:
            if self._epoch != epoch:
                status = "stale"
            else:
                status = "failure"
                logger.error(f"Unexpected error during {name}: {e}", exc_info=True)
                fallback = FALLBACK_MESSAGES.get(name, "Request failed")
                self._error = ErrorInfo(kind="unexpected", message=f"{fallback}: unexpected error", transition=name)
        finally:
            self.metrics.transitions_in_flight.dec()
            self.metrics.transition_duration_seconds.labels(transition=name).observe(
                time.perf_counter() - started
            )
            self.metrics.transitions_total.labels(transition=name, status=status).inc()
            if self._epoch == epoch:
                self._loading = False
                self._publish()

    def _interrupt(self, reason: str) -> None:
        self._epoch += 1
        if self._loading:
            logger.info(f"Pending transition abandoned by {reason}")
            self._loading = False

    async def _enhanced_colors(self, step: _Step, processing: ProcessingResult) -> EnhancedColorsResponse:
        colors = self.cache.get(Artifact.ENHANCED_COLORS)
        if colors is None:
            colors = await step.call(self.client.create_enhanced_colors(list(processing.bed_data)))
            self.cache.put(Artifact.ENHANCED_COLORS, colors)
            logger.info(f"Cached enhanced colors for session {processing.session_id}: {colors.methods()}")
        return colors

    # Forward transitions

    async def submit_image(self, upload: ImageUpload) -> WorkflowSnapshot:
        """Upload -> Enhancement"""
        if not self._accepts('submit_image', WorkflowStage.UPLOAD):
            return self._snapshot

        async with self._transition('submit_image') as step:
            result = await step.call(self.client.upload_image(upload))
            self.cache.replace_processing_result(result)
            self._stage = WorkflowStage.ENHANCEMENT
            logger.info(f"Session {result.session_id}: {len(result.bed_data)} beds, awaiting enhancement selection")

        return self._snapshot

    async def preview_enhancements(self) -> WorkflowSnapshot:
        """Fetch the enhancement projections without choosing one"""
        if not self._accepts('preview_enhancements', WorkflowStage.ENHANCEMENT):
            return self._snapshot

        async with self._transition('preview_enhancements') as step:
            await self._enhanced_colors(step, self.processing_result)

        return self._snapshot

    async def select_method(self, method: str) -> WorkflowSnapshot:
        """Enhancement -> Clustering"""
        if not self._accepts('select_method', WorkflowStage.ENHANCEMENT):
            return self._snapshot

        async with self._transition('select_method') as step:
            processing = self.processing_result
            colors = await self._enhanced_colors(step, processing)
            if method not in colors.enhanced_colors:
                raise InvalidSelection(method, colors.methods())

            selection = EnhancementSelection.build(method, colors, processing)
            self.cache.put(Artifact.ENHANCEMENT_SELECTION, selection)
            self._stage = WorkflowStage.CLUSTERING
            logger.info(f"Session {processing.session_id}: selected {method}, awaiting clustering")

        return self._snapshot

    async def submit_assignment(self, assignment: Dict[str, Iterable[int]]) -> WorkflowSnapshot:
        """Clustering -> Results"""
        if not self._accepts('submit_assignment', WorkflowStage.CLUSTERING):
            return self._snapshot

        async with self._transition('submit_assignment') as step:
            processing = self.processing_result
            selection = self.enhancement_selection
            if not processing.bed_data:
                raise StageError("No beds were detected in the uploaded image")
            clusters_data = _check_assignment(assignment, processing)

            result = await step.call(self.client.process_clustering(
                list(processing.bed_data), selection.enhanced_colors, clusters_data
            ))
            self.cache.put(Artifact.CLUSTERING_RESULT, result)
            self._stage = WorkflowStage.RESULTS
            logger.info(
                f"Session {processing.session_id}: {len(result.processed_clusters)} clusters, "
                f"{result.statistics.coverage_percent}% coverage"
            )

        return self._snapshot

    async def export(self, export_type: str = 'detailed') -> Optional[ExportArtifact]:
        """Results -> Results; returns the DXF file, or None when the export failed"""
        if not self._accepts('export', WorkflowStage.RESULTS):
            return None

        artifact = None
        async with self._transition('export') as step:
            if export_type not in EXPORT_TYPES:
                raise InvalidSelection(export_type, list(EXPORT_TYPES), "Export type")

            processing = self.processing_result
            cluster_dict = self.clustering_result.cluster_name_by_id()
            beds = list(processing.bed_data)

            validation = await step.call(self.client.validate_export(beds, cluster_dict))
            if not validation.can_export:
                raise ExportBlocked(validation.messages)

            artifact = await step.call(self.client.export_dxf(beds, cluster_dict, export_type))
            logger.info(f"Session {processing.session_id}: exported {artifact.filename} ({len(artifact.content)} bytes)")

        return artifact

    # Backward transitions

    def go_back(self) -> WorkflowSnapshot:
        target = BACK_TARGETS.get(self._stage)
        if target is None:
            logger.debug(f"Back ignored in {self._stage.value} stage")
            return self._snapshot

        self._interrupt("back navigation")
        self.cache.discard_downstream(target)
        logger.info(f"Back from {self._stage.value} to {target.value}")
        self._stage = target
        self._error = None
        self.metrics.transitions_total.labels(transition='go_back', status="success").inc()
        return self._publish()

    async def reset(self, delete_session: bool = False) -> WorkflowSnapshot:
        """Return to Upload with every artifact cleared"""
        previous = self.cache.processing_result

        self._interrupt("reset")
        self.cache.clear()
        self._stage = WorkflowStage.UPLOAD
        self._error = None
        self.metrics.transitions_total.labels(transition='reset', status="success").inc()
        snapshot = self._publish()

        if delete_session and previous is not None:
            await self._release_session(previous.session_id)

        return snapshot

    async def _release_session(self, session_id: str) -> None:
        logger.info(f"Releasing backend session: {session_id}")
        try:
            await self.client.delete_session(session_id)
        except WorkflowError as e:
            logger.error(f"Session cleanup failed: {e}")


def _check_assignment(assignment: Dict[str, Iterable[int]], processing: ProcessingResult) -> Dict[str, List[int]]:
    if not assignment:
        raise InvalidAssignment("Draw at least one cluster before submitting")

    known = {bed.bed_id for bed in processing.bed_data}
    clusters_data: Dict[str, List[int]] = {}
    for name, bed_ids in assignment.items():
        if not str(name).strip():
            raise InvalidAssignment("Cluster names must not be empty")
        if isinstance(bed_ids, (str, bytes)) or not isinstance(bed_ids, Iterable):
            raise InvalidAssignment(f"Cluster '{name}' must list its bed ids")
        ids = list(bed_ids)
        if not all(isinstance(bed_id, int) and not isinstance(bed_id, bool) for bed_id in ids):
            raise InvalidAssignment(f"Cluster '{name}' must list integer bed ids")
        ids = list(dict.fromkeys(ids))
        unknown = [bed_id for bed_id in ids if bed_id not in known]
        if unknown:
            raise InvalidAssignment(f"Cluster '{name}' references unknown beds: {unknown}")
        clusters_data[str(name)] = ids
    return clusters_data
