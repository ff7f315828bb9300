from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer, model_validator
from typing import Annotated, List, Dict, Any, Mapping, Optional, Tuple
from types import MappingProxyType


def _thaw(mapping: Mapping) -> Dict[str, Any]:
    return dict(mapping)


# Validated dicts are stored as read-only views and dump back to plain dicts
FrozenDict = Annotated[Dict[str, Any], AfterValidator(MappingProxyType), PlainSerializer(_thaw)]

Rows = Tuple[Tuple[float, ...], ...]


class ContractModel(BaseModel):
    """Received payloads are immutable once accepted: frozen fields over tuples and read-only mappings"""
    model_config = ConfigDict(frozen=True)


class BedPosition(ContractModel):
    x: float
    y: float


class BedData(ContractModel):
    bed_id: int
    area: float
    rgb_median: Tuple[float, float, float]
    rgb_mean: Tuple[float, float, float]
    clean_pixel_count: int
    position: Optional[BedPosition] = None


class ProcessingResult(ContractModel):
    session_id: str = Field(min_length=1)
    bed_count: int
    bed_data: Tuple[BedData, ...]
    statistics: FrozenDict
    image_shape: Tuple[int, ...]
    processing_time_ms: float

    @model_validator(mode="after")
    def check_bed_count(self) -> "ProcessingResult":
        if self.bed_count != len(self.bed_data):
            raise ValueError(f"bed_count {self.bed_count} does not match {len(self.bed_data)} bed records")
        return self


class SessionInfo(ContractModel):
    session_id: str
    bed_count: int
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    status: str
    created_at: Optional[str] = None
    processing_time_ms: Optional[float] = None


# An EnhancedColorSet: method name -> one row of derived coordinates per bed
EnhancedColors = Annotated[Dict[str, Rows], AfterValidator(MappingProxyType), PlainSerializer(_thaw)]


class EnhancedColorsResponse(ContractModel):
    enhanced_colors: EnhancedColors
    enhancement_methods: Tuple[str, ...] = ()

    def methods(self) -> List[str]:
        """Advertised methods first, then any extra keys the backend returned"""
        ordered = [m for m in self.enhancement_methods if m in self.enhanced_colors]
        ordered.extend(m for m in self.enhanced_colors if m not in ordered)
        return ordered

    def mismatched_methods(self, bed_count: int) -> List[str]:
        return [
            method for method, rows in self.enhanced_colors.items()
            if len(rows) != bed_count
        ]


class ClusterDetail(ContractModel):
    cluster_id: int
    cluster_name: str
    bed_count: int
    total_area: float
    average_area: float


class ClusterStatistics(ContractModel):
    total_beds: int
    clustered_beds: int
    unclustered_beds: int
    coverage_percent: float
    num_clusters: int
    cluster_details: Tuple[ClusterDetail, ...] = ()


class ClusteringResult(ContractModel):
    final_labels: Tuple[int, ...]
    processed_clusters: Annotated[Dict[str, Tuple[int, ...]], AfterValidator(MappingProxyType), PlainSerializer(_thaw)]
    statistics: ClusterStatistics

    def cluster_name_by_id(self) -> Dict[str, str]:
        """Index each cluster name by its position in processed_clusters"""
        return {str(index): name for index, name in enumerate(self.processed_clusters)}


class ValidateExportResponse(ContractModel):
    can_export: bool
    gdal_available: bool = False
    bed_data_valid: bool = False
    cluster_count: int = 0
    messages: Tuple[str, ...] = ()


class ExportCapabilities(ContractModel):
    dxf_available: bool
    export_types: Tuple[str, ...] = ()
    supported_formats: Tuple[str, ...] = ()


class HealthStatus(ContractModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    status: str
    service: str
    version: str


class ServicesHealth(BaseModel):
    """Combined health of the three backends; values are healthy/unhealthy/unreachable"""
    services: Dict[str, str]
    details: Dict[str, HealthStatus] = Field(default_factory=dict)

    @property
    def all_healthy(self) -> bool:
        return all(status == "healthy" for status in self.services.values())


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    dependencies: Dict[str, str] = {}


# Requests

class EnhancedColorsRequest(BaseModel):
    bed_data: List[BedData]


class ClusteringRequest(BaseModel):
    bed_data: List[BedData]
    enhanced_colors: EnhancedColors
    clusters_data: Dict[str, List[int]]


class ValidateExportRequest(BaseModel):
    bed_data: List[BedData]
    cluster_dict: Dict[str, str]


class ExportDxfRequest(ValidateExportRequest):
    export_type: str = 'detailed'


# Transition inputs and transient outputs

class ImageUpload(BaseModel):
    filename: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


class ExportArtifact(ContractModel):
    filename: str
    content: bytes
    media_type: str = "application/dxf"
    export_type: str = 'detailed'


class WorkflowOutcome(ContractModel):
    """Everything a one-shot run produced, upload through DXF"""
    processing: ProcessingResult
    enhancement: EnhancedColorsResponse
    clustering: ClusteringResult
    artifact: ExportArtifact
