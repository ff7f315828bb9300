import asyncio
from typing import Dict, List, Optional

import pytest

from workflow_client.models import (
    BedData,
    ClusteringResult,
    EnhancedColorsResponse,
    ExportArtifact,
    ImageUpload,
    ProcessingResult,
    ServicesHealth,
    ValidateExportResponse,
)
from workflow_client.orchestrator import WorkflowOrchestrator


def make_beds(count: int) -> List[Dict]:
    return [
        {
            "bed_id": i,
            "area": 100.0 + 10 * i,
            "rgb_median": [10 * i, 20 + i, 30 + i],
            "rgb_mean": [10 * i + 1, 21 + i, 31 + i],
            "clean_pixel_count": 90 + i,
            "position": {"x": float(i), "y": float(2 * i)},
        }
        for i in range(count)
    ]


def make_processing_payload(session_id: str = "s1", bed_count: int = 3) -> Dict:
    beds = make_beds(bed_count)
    return {
        "session_id": session_id,
        "bed_count": bed_count,
        "bed_data": beds,
        "statistics": {"total_beds_found": bed_count},
        "image_shape": [480, 640, 3],
        "processing_time_ms": 12.5,
    }


def make_enhanced_payload(processing: Dict, methods=("original", "pca_features")) -> Dict:
    colors = {}
    for method in methods:
        if method == "original":
            colors[method] = [list(map(float, bed["rgb_median"])) for bed in processing["bed_data"]]
        else:
            colors[method] = [[0.1 * bed["bed_id"], -0.2 * bed["bed_id"]] for bed in processing["bed_data"]]
    return {"enhanced_colors": colors, "enhancement_methods": list(methods)}


def make_clustering_payload(clusters: Dict[str, List[int]], bed_count: int) -> Dict:
    labels = [-1] * bed_count
    details = []
    for cluster_id, (name, bed_ids) in enumerate(clusters.items()):
        for bed_id in bed_ids:
            labels[bed_id] = cluster_id
        details.append({
            "cluster_id": cluster_id,
            "cluster_name": name,
            "bed_count": len(bed_ids),
            "total_area": 100.0 * len(bed_ids),
            "average_area": 100.0,
        })
    clustered = sum(len(ids) for ids in clusters.values())
    return {
        "final_labels": labels,
        "processed_clusters": clusters,
        "statistics": {
            "total_beds": bed_count,
            "clustered_beds": clustered,
            "unclustered_beds": bed_count - clustered,
            "coverage_percent": 100.0 * clustered / bed_count,
            "num_clusters": len(clusters),
            "cluster_details": details,
        },
    }


class FakeServiceClient:
    """Stands in for ServiceClient; records calls and can hold a call open"""

    def __init__(self, processing: Optional[Dict] = None):
        self.calls: List[tuple] = []
        self.processing = processing or make_processing_payload()
        self.uploads: List[Dict] = []
        self.enhanced: Optional[Dict] = None
        self.clustering: Optional[Dict] = None
        self.validation = {"can_export": True, "gdal_available": True, "bed_data_valid": True,
                           "cluster_count": 2, "messages": []}
        self.failures: Dict[str, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def _enter(self, name: str, *args):
        self.calls.append((name,) + args)
        if self.gate is not None:
            if self.entered is not None:
                self.entered.set()
            await self.gate.wait()
        if name in self.failures:
            raise self.failures[name]

    async def upload_image(self, upload: ImageUpload) -> ProcessingResult:
        await self._enter("upload_image", upload.filename)
        payload = self.uploads.pop(0) if self.uploads else self.processing
        return ProcessingResult.model_validate(payload)

    async def create_enhanced_colors(self, bed_data: List[BedData]) -> EnhancedColorsResponse:
        await self._enter("create_enhanced_colors", len(bed_data))
        payload = self.enhanced
        if payload is None:
            payload = make_enhanced_payload({"bed_data": [b.model_dump() for b in bed_data]})
        return EnhancedColorsResponse.model_validate(payload)

    async def process_clustering(self, bed_data, enhanced_colors, clusters_data) -> ClusteringResult:
        await self._enter("process_clustering", clusters_data)
        payload = self.clustering or make_clustering_payload(clusters_data, len(bed_data))
        return ClusteringResult.model_validate(payload)

    async def validate_export(self, bed_data, cluster_dict) -> ValidateExportResponse:
        await self._enter("validate_export", cluster_dict)
        return ValidateExportResponse.model_validate(self.validation)

    async def export_dxf(self, bed_data, cluster_dict, export_type='detailed') -> ExportArtifact:
        await self._enter("export_dxf", cluster_dict, export_type)
        return ExportArtifact(
            filename=f"plant_beds_{export_type}.dxf",
            content=b"0\nSECTION\n0\nEOF\n",
            export_type=export_type,
        )

    async def delete_session(self, session_id: str) -> None:
        await self._enter("delete_session", session_id)

    async def check_all_services_health(self) -> ServicesHealth:
        return ServicesHealth(services={
            "image-processing": "healthy",
            "clustering": "healthy",
            "dxf-export": "unreachable",
        })


@pytest.fixture
def fake_client():
    return FakeServiceClient()


@pytest.fixture
def orchestrator(fake_client):
    return WorkflowOrchestrator(fake_client)


@pytest.fixture
def upload():
    return ImageUpload(filename="garden.jpg", content=b"\xff\xd8\xff\xe0jpeg", content_type="image/jpeg")
