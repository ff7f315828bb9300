from .config import ServiceConfig
from .errors import (
    ArtifactUnavailable,
    ExportBlocked,
    InvalidAssignment,
    InvalidSelection,
    InvalidUpload,
    MalformedResponse,
    NetworkError,
    ServiceError,
    StageError,
    WorkflowError,
)
from .orchestrator import WorkflowOrchestrator, WorkflowSnapshot, WorkflowStage
from .service import ServiceClient

__version__ = "2.1.0"

__all__ = [
    'ServiceConfig',
    'ServiceClient',
    'WorkflowOrchestrator',
    'WorkflowSnapshot',
    'WorkflowStage',
    'WorkflowError',
    'NetworkError',
    'ServiceError',
    'MalformedResponse',
    'InvalidSelection',
    'ExportBlocked',
    'InvalidUpload',
    'InvalidAssignment',
    'StageError',
    'ArtifactUnavailable',
]
