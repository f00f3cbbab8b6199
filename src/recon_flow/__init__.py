"""ReconFlow - client-side workflow orchestration for scene reconstruction."""

__version__ = "0.1.0"

from .app import ReconFlowApp
from .client import SceneClient
from .errors import (
    ReconFlowError,
    RemoteError,
    TransientError,
    ValidationError,
    WorkflowBusyError,
    WorkflowError,
)
from .models import Scene, SceneStatus, WorkflowPhase, WorkflowRun
from .store import ReconstructionStore
from .workflow import WorkflowEngine

__all__ = [
    "ReconFlowApp",
    "SceneClient",
    "ReconstructionStore",
    "WorkflowEngine",
    "Scene",
    "SceneStatus",
    "WorkflowPhase",
    "WorkflowRun",
    "ReconFlowError",
    "RemoteError",
    "TransientError",
    "ValidationError",
    "WorkflowBusyError",
    "WorkflowError",
]
