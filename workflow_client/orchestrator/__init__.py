from .cache import Artifact, StageCache
from .orchestrator import WorkflowOrchestrator
from .state import EnhancementSelection, ErrorInfo, StageView, WorkflowSnapshot, WorkflowStage

__all__ = [
    'Artifact',
    'StageCache',
    'WorkflowOrchestrator',
    'EnhancementSelection',
    'ErrorInfo',
    'StageView',
    'WorkflowSnapshot',
    'WorkflowStage',
]
