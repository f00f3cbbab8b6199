"""Data models for ReconFlow."""

import asyncio
import itertools
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class SceneStatus(Enum):
    """Server-reported scene status."""

    IDLE = "idle"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COLMAP_PROCESSING = "colmap_processing"
    COLMAP_COMPLETED = "colmap_completed"
    COLMAP_FAILED = "colmap_failed"
    RECONSTRUCTION_PROCESSING = "reconstruction_processing"
    RECONSTRUCTION_COMPLETED = "reconstruction_completed"
    RECONSTRUCTION_FAILED = "reconstruction_failed"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_failure(self) -> bool:
        return self in (
            SceneStatus.FAILED,
            SceneStatus.COLMAP_FAILED,
            SceneStatus.RECONSTRUCTION_FAILED,
        )


class WorkflowPhase(Enum):
    """Phase tag of a workflow run."""

    IDLE = "idle"
    CREATING_SCENE = "creating_scene"
    UPLOADING_IMAGES = "uploading_images"
    RECONSTRUCTING = "reconstructing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowPhase.DONE, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def step_from_progress(progress: float) -> str:
    """Map a reconstruction percentage onto a coarse step label."""
    if progress <= 5:
        return "Starting"
    if progress <= 30:
        return "COLMAP Processing"
    if progress <= 50:
        return "COLMAP Complete"
    if progress <= 75:
        return "3D Reconstruction"
    if progress < 100:
        return "Finalizing"
    return "Complete"


@dataclass
class Scene:
    """A server-tracked unit of reconstruction work."""

    id: str
    name: str
    status: SceneStatus = SceneStatus.IDLE
    description: Optional[str] = None
    owner_id: Optional[str] = None
    image_filenames: List[str] = field(default_factory=list)
    image_count: int = 0
    colmap_output_path: Optional[str] = None
    ply_file_path: Optional[str] = None
    model_file: Optional[str] = None
    progress: int = 0
    progress_message: str = ""
    current_step: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Scene":
        """Create from an API payload (camelCase keys)."""
        filenames = d.get("imageFilenames") or []
        return cls(
            id=str(d["id"]),
            name=d.get("name", ""),
            status=SceneStatus(d.get("status", "idle")),
            description=d.get("description"),
            owner_id=d.get("ownerId"),
            image_filenames=list(filenames),
            image_count=int(d.get("imageCount", len(filenames)) or 0),
            colmap_output_path=d.get("colmapOutputPath"),
            ply_file_path=d.get("plyFilePath"),
            model_file=d.get("modelFile") or d.get("modelFilePath"),
            progress=int(d.get("progress") or 0),
            progress_message=d.get("progressMessage") or "",
            current_step=d.get("currentStep"),
            created_at=_parse_timestamp(d.get("createdAt")),
            updated_at=_parse_timestamp(d.get("updatedAt")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        d["status"] = self.status.value
        for key in ("created_at", "updated_at"):
            if d[key]:
                d[key] = d[key].isoformat()
        return d


@dataclass
class ReadinessInfo:
    """Pre-flight answer from the readiness check endpoint."""

    scene_id: str
    has_images: bool = False
    image_count: int = 0
    has_colmap: bool = False
    colmap_path: Optional[str] = None
    has_model: bool = False
    model_id: Optional[str] = None
    can_run_colmap: bool = False
    can_run_reconstruction: bool = False
    status: Optional[str] = None
    next_step: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReadinessInfo":
        return cls(
            scene_id=str(d.get("sceneId", "")),
            has_images=bool(d.get("hasImages")),
            image_count=int(d.get("imageCount") or 0),
            has_colmap=bool(d.get("hasColmap")),
            colmap_path=d.get("colmapPath"),
            has_model=bool(d.get("hasModel")),
            model_id=d.get("modelId"),
            can_run_colmap=bool(d.get("canRunColmap")),
            can_run_reconstruction=bool(d.get("canRunReconstruction")),
            status=d.get("status"),
            next_step=d.get("nextStep"),
        )


@dataclass
class ReconstructionProgress:
    """Progress snapshot of a running reconstruction."""

    progress: float
    message: str
    current_step: str

    @classmethod
    def at(cls, progress: float, message: str) -> "ReconstructionProgress":
        return cls(progress=progress, message=message, current_step=step_from_progress(progress))


@dataclass
class PendingFile:
    """A local image waiting to be uploaded.

    The preview thumbnail is computed on first access and must be released
    once the file leaves the store.
    """

    file_id: str
    path: Path
    preview_size: int = 256
    _preview: Any = field(default=None, repr=False, compare=False)

    @property
    def preview(self):
        if self._preview is None:
            from .utils.image_processor import ImageProcessor

            self._preview = ImageProcessor.create_preview(self.path, self.preview_size)
        return self._preview

    @property
    def has_preview(self) -> bool:
        return self._preview is not None

    def release(self):
        """Close the preview image if one was created."""
        if self._preview is not None:
            self._preview.close()
            self._preview = None


@dataclass
class WorkflowRun:
    """Orchestration context of one create -> upload -> reconstruct sequence."""

    name: str
    kind: str = "full_workflow"
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    phase: WorkflowPhase = WorkflowPhase.IDLE
    scene_id: Optional[str] = None
    started_at: datetime = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    failed_phase: Optional[WorkflowPhase] = None
    request_ids: List[str] = field(default_factory=list)
    transient_errors: List[str] = field(default_factory=list)
    _counter: Any = field(default_factory=lambda: itertools.count(1), repr=False, compare=False)
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = datetime.utcnow()

    @property
    def is_active(self) -> bool:
        return not self.phase.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def request_cancel(self):
        self._cancel_event.set()

    async def wait_cancelled(self):
        await self._cancel_event.wait()

    def next_request_id(self, operation: str) -> str:
        """Issue a monotonically increasing correlation id for one phase request."""
        request_id = f"{self.run_id}-{operation}-{next(self._counter)}"
        self.request_ids.append(request_id)
        return request_id

    def finish(self, phase: WorkflowPhase, error: Optional[str] = None):
        self.phase = phase
        self.error = error
        self.finished_at = datetime.utcnow()


@dataclass
class FailureEvent:
    """A failure signal broadcast to observers."""

    source: str
    message: str
    phase: Optional[WorkflowPhase] = None
    request_id: Optional[str] = None
    status: Optional[int] = None
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()
