import pytest

from conftest import make_clustering_payload, make_enhanced_payload, make_processing_payload
from workflow_client.models import ClusteringResult, EnhancedColorsResponse, ProcessingResult
from workflow_client.orchestrator import Artifact, EnhancementSelection, StageCache, WorkflowStage


def _processing(session_id="s1", bed_count=3):
    return ProcessingResult.model_validate(make_processing_payload(session_id, bed_count))


def _filled_cache():
    cache = StageCache()
    processing = _processing()
    cache.replace_processing_result(processing)
    colors = EnhancedColorsResponse.model_validate(make_enhanced_payload(make_processing_payload()))
    cache.put(Artifact.ENHANCED_COLORS, colors)
    cache.put(Artifact.ENHANCEMENT_SELECTION, EnhancementSelection.build("original", colors, processing))
    cache.put(Artifact.CLUSTERING_RESULT, ClusteringResult.model_validate(
        make_clustering_payload({"a": [0, 1, 2]}, 3)
    ))
    return cache


def test_put_requires_processing_result():
    cache = StageCache()
    colors = EnhancedColorsResponse(enhanced_colors={}, enhancement_methods=[])
    with pytest.raises(ValueError):
        cache.put(Artifact.ENHANCED_COLORS, colors)
    assert cache.get(Artifact.ENHANCED_COLORS) is None


def test_new_processing_result_invalidates_artifacts():
    cache = _filled_cache()
    cache.replace_processing_result(_processing("s2"))

    for artifact in Artifact:
        assert cache.get(artifact) is None


def test_same_session_id_with_different_result_misses():
    cache = _filled_cache()
    # Same id, different beds: not the result the artifacts were derived from
    cache._processing_result = _processing("s1", bed_count=4)

    assert cache.peek(Artifact.ENHANCED_COLORS) is None


@pytest.mark.parametrize("target, kept", [
    (WorkflowStage.UPLOAD, set()),
    (WorkflowStage.ENHANCEMENT, {Artifact.ENHANCED_COLORS}),
    (WorkflowStage.CLUSTERING, {Artifact.ENHANCED_COLORS, Artifact.ENHANCEMENT_SELECTION}),
])
def test_discard_downstream(target, kept):
    cache = _filled_cache()
    cache.discard_downstream(target)

    assert {a for a in Artifact if cache.peek(a) is not None} == kept
    assert cache.processing_result is not None


def test_clear_drops_processing_result():
    cache = _filled_cache()
    cache.clear()

    assert cache.processing_result is None
    assert cache.peek(Artifact.CLUSTERING_RESULT) is None
