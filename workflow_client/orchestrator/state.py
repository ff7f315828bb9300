from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..config import EXPORT_TYPES
from ..errors import WorkflowError
from ..models import (
    BedData,
    ClusteringResult,
    EnhancedColors,
    EnhancedColorsResponse,
    ProcessingResult,
    Rows,
)


class WorkflowStage(str, Enum):
    UPLOAD = "upload"
    ENHANCEMENT = "enhancement"
    CLUSTERING = "clustering"
    RESULTS = "results"

    @property
    def order(self) -> int:
        return list(WorkflowStage).index(self)


ENHANCEMENT_TITLES: Dict[str, str] = {
    'original': 'Original Colors',
    'enhanced_saturation': 'Enhanced Saturation',
    'contrast_stretched': 'Contrast Stretched',
    'color_ratios': 'Color Ratios',
    'pca_features': 'PCA Features',
}

AXIS_LABELS: Dict[str, Tuple[str, str]] = {
    'original': ('Red', 'Green'),
    'enhanced_saturation': ('Saturated Red', 'Saturated Green'),
    'contrast_stretched': ('Stretched Red', 'Stretched Green'),
    'color_ratios': ('Red Ratio', 'Green Ratio'),
    'pca_features': ('Principal Component 1', 'Principal Component 2'),
}

DEFAULT_AXIS_LABELS = ('Component 1', 'Component 2')


class EnhancementSelection(BaseModel):
    """The chosen projection plus everything clustering needs from Enhancement"""
    model_config = ConfigDict(frozen=True)

    method: str
    plot_data: Rows
    xlabel: str
    ylabel: str
    original_colors: Rows
    enhanced_colors: EnhancedColors
    session_id: str

    @classmethod
    def build(
        cls,
        method: str,
        colors: EnhancedColorsResponse,
        processing_result: ProcessingResult,
    ) -> "EnhancementSelection":
        enhanced = colors.enhanced_colors
        xlabel, ylabel = AXIS_LABELS.get(method, DEFAULT_AXIS_LABELS)

        # TODO: confirm with product whether the median fallback is intended
        # behavior or only a guard against backends that omit 'original'.
        if 'original' in enhanced:
            original_colors = enhanced['original']
        else:
            original_colors = tuple(bed.rgb_median for bed in processing_result.bed_data)

        return cls(
            method=method,
            plot_data=enhanced[method],
            xlabel=xlabel,
            ylabel=ylabel,
            original_colors=original_colors,
            enhanced_colors=enhanced,
            session_id=processing_result.session_id,
        )


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str
    details: Tuple[str, ...] = ()
    transition: Optional[str] = None

    @classmethod
    def from_error(cls, error: WorkflowError, fallback: str, transition: str) -> "ErrorInfo":
        return cls(
            kind=error.kind,
            message=error.user_message(fallback),
            details=error.details,
            transition=transition,
        )


class EnhancementOption(BaseModel):
    key: str
    title: str


class StageView(BaseModel):
    """What the presentation layer should render for the active stage"""
    stage: WorkflowStage
    loading: bool
    error: Optional[ErrorInfo] = None
    content: Dict[str, Any] = Field(default_factory=dict)


class WorkflowSnapshot(BaseModel):
    """One immutable picture of the workflow; replaced wholesale on every change"""
    model_config = ConfigDict(frozen=True)

    sequence: int
    stage: WorkflowStage
    loading: bool = False
    error: Optional[ErrorInfo] = None
    processing_result: Optional[ProcessingResult] = None
    enhanced_colors: Optional[EnhancedColorsResponse] = None
    enhancement_selection: Optional[EnhancementSelection] = None
    clustering_result: Optional[ClusteringResult] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.processing_result.session_id if self.processing_result else None

    @property
    def beds(self) -> List[BedData]:
        return list(self.processing_result.bed_data) if self.processing_result else []

    def view(self) -> StageView:
        content: Dict[str, Any] = {}

        if self.stage == WorkflowStage.ENHANCEMENT and self.processing_result:
            content['processing_result'] = self.processing_result
            if self.enhanced_colors:
                content['enhancement_options'] = [
                    EnhancementOption(key=method, title=ENHANCEMENT_TITLES.get(method, method))
                    for method in self.enhanced_colors.methods()
                ]
        elif self.stage == WorkflowStage.CLUSTERING and self.enhancement_selection:
            content['enhancement_selection'] = self.enhancement_selection
            content['beds'] = self.beds
        elif self.stage == WorkflowStage.RESULTS and self.clustering_result:
            content['processing_result'] = self.processing_result
            content['clustering_result'] = self.clustering_result
            content['export_types'] = list(EXPORT_TYPES)

        return StageView(stage=self.stage, loading=self.loading, error=self.error, content=content)
