"""Observable state of known scenes, pending files and the active workflow."""

import itertools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .models import (
    PendingFile,
    ReconstructionProgress,
    Scene,
    WorkflowPhase,
)

logger = logging.getLogger(__name__)

StoreListener = Callable[["ReconstructionStore", str], None]

_PHASE_FLAGS = {
    WorkflowPhase.CREATING_SCENE: "is_creating_scene",
    WorkflowPhase.UPLOADING_IMAGES: "is_uploading_images",
    WorkflowPhase.RECONSTRUCTING: "is_running_reconstruction",
}


class ReconstructionStore:
    """Single source of truth for presentation.

    Only the workflow engine and local file selection write here. Every
    mutation notifies subscribed listeners with a short change description.
    """

    def __init__(self, preview_size: int = 256):
        self.preview_size = preview_size
        self._file_ids = itertools.count(1)
        self._listeners: List[StoreListener] = []
        self._init_state()

    def _init_state(self):
        self.files: List[PendingFile] = []
        self.scenes: List[Scene] = []
        self.current_scene: Optional[Scene] = None

        self.is_creating_scene = False
        self.is_uploading_images = False
        self.is_running_reconstruction = False
        self.is_fetching_scenes = False

        self.upload_progress = 0
        self.reconstruction_progress: Optional[ReconstructionProgress] = None

        self.current_workflow_step: Optional[str] = None
        self.workflow_phase = WorkflowPhase.IDLE
        self.error: Optional[str] = None

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a change listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: str):
        for listener in list(self._listeners):
            try:
                listener(self, change)
            except Exception as e:
                logger.error(f"Store listener error on '{change}': {e}")

    # Scenes

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        for scene in self.scenes:
            if scene.id == scene_id:
                return scene
        return None

    def upsert_job(self, scene: Scene, make_current: bool = True):
        """Insert or fully replace a scene by id; the server copy is authoritative."""
        for i, existing in enumerate(self.scenes):
            if existing.id == scene.id:
                self.scenes[i] = scene
                break
        else:
            self.scenes.append(scene)

        if make_current or (self.current_scene and self.current_scene.id == scene.id):
            self.current_scene = scene
        self._notify(f"scene {scene.id} -> {scene.status.value}")

    def replace_scenes(self, scenes: Iterable[Scene]):
        """Replace the whole scene list after a list refresh."""
        self.scenes = list(scenes)
        if self.current_scene:
            refreshed = self.get_scene(self.current_scene.id)
            if refreshed:
                self.current_scene = refreshed
        self._notify(f"{len(self.scenes)} scenes loaded")

    def set_current_scene(self, scene: Optional[Scene]):
        self.current_scene = scene
        self._notify(f"current scene {scene.id if scene else None}")

    # Workflow projection

    def set_phase_flag(self, phase: WorkflowPhase, value: bool):
        flag = _PHASE_FLAGS.get(phase)
        if flag is None:
            raise ValueError(f"No in-progress flag for phase {phase.value}")
        setattr(self, flag, value)
        self._notify(f"{flag}={value}")

    def set_fetching_scenes(self, value: bool):
        self.is_fetching_scenes = value
        self._notify(f"is_fetching_scenes={value}")

    def set_workflow_phase(self, phase: WorkflowPhase):
        self.workflow_phase = phase
        self.current_workflow_step = None if phase.is_terminal else phase.value
        self._notify(f"workflow {phase.value}")

    def set_upload_progress(self, progress: int):
        self.upload_progress = progress
        self._notify(f"upload {progress}%")

    def set_progress(self, progress: float, message: str):
        self.reconstruction_progress = ReconstructionProgress.at(progress, message)
        self._notify(f"reconstruction {progress}% {message}")

    def clear_progress(self):
        self.upload_progress = 0
        self.reconstruction_progress = None
        self._notify("progress cleared")

    def clear_in_progress_flags(self):
        for flag in _PHASE_FLAGS.values():
            setattr(self, flag, False)
        self.is_fetching_scenes = False
        self._notify("flags cleared")

    def set_error(self, message: Optional[str]):
        self.error = message
        self._notify(f"error: {message}" if message else "error cleared")

    def clear_error(self):
        self.set_error(None)

    # Local files

    def add_pending_files(self, paths: Iterable[Union[str, Path]]) -> List[PendingFile]:
        """Queue local files for upload; previews are computed lazily."""
        added = [
            PendingFile(
                file_id=f"file-{next(self._file_ids)}",
                path=Path(p),
                preview_size=self.preview_size,
            )
            for p in paths
        ]
        self.files.extend(added)
        self._notify(f"{len(added)} files added")
        return added

    def remove_pending_file(self, file_id: str) -> bool:
        for pending in self.files:
            if pending.file_id == file_id:
                pending.release()
                self.files.remove(pending)
                self._notify(f"file {file_id} removed")
                return True
        return False

    def clear_pending_files(self):
        for pending in self.files:
            pending.release()
        self.files = []
        self._notify("files cleared")

    def pending_paths(self) -> List[Path]:
        return [pending.path for pending in self.files]

    def reset(self):
        """Return to the initial state, releasing any previews."""
        for pending in self.files:
            pending.release()
        self._init_state()
        self._notify("reset")

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict view of the state for rendering or serialization."""
        progress = self.reconstruction_progress
        return {
            "files": [{"id": f.file_id, "path": str(f.path)} for f in self.files],
            "scenes": [s.to_dict() for s in self.scenes],
            "current_scene": self.current_scene.to_dict() if self.current_scene else None,
            "is_creating_scene": self.is_creating_scene,
            "is_uploading_images": self.is_uploading_images,
            "is_running_reconstruction": self.is_running_reconstruction,
            "is_fetching_scenes": self.is_fetching_scenes,
            "upload_progress": self.upload_progress,
            "reconstruction_progress": (
                {
                    "progress": progress.progress,
                    "message": progress.message,
                    "current_step": progress.current_step,
                }
                if progress
                else None
            ),
            "current_workflow_step": self.current_workflow_step,
            "workflow_phase": self.workflow_phase.value,
            "error": self.error,
        }
