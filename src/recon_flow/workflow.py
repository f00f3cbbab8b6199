"""Workflow engine driving create -> upload -> reconstruct against the remote API.

Each phase is a plain coroutine; a run composes them with sequential awaits.
Cancellation is cooperative: every await inside a run is followed by a check
of the run's cancel flag, so an in-flight request may still resolve but its
result is dropped and no further transition happens.
"""

import asyncio
import itertools
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from .client import SceneClient
from .errors import (
    RemoteError,
    TransientError,
    ValidationError,
    WorkflowBusyError,
    WorkflowCancelled,
    WorkflowError,
)
from .events import EventBus
from .models import FailureEvent, Scene, SceneStatus, WorkflowPhase, WorkflowRun
from .store import ReconstructionStore
from .utils.image_processor import ImageProcessor

logger = logging.getLogger(__name__)

FileList = Optional[Sequence[Union[str, Path]]]

# progress already reported once the pipeline trigger was accepted
TRIGGERED_PROGRESS = 10


def _message(error: BaseException, default: str) -> str:
    return getattr(error, "message", None) or str(error) or default


def _is_transient(error: BaseException) -> bool:
    """Whether a failed status check may be retried on the next tick."""
    if isinstance(error, TransientError):
        return True
    if isinstance(error, RemoteError):
        return not (error.status is not None and 400 <= error.status < 500)
    return True


class WorkflowEngine:
    """Cancellable state machine over the remote scene API.

    At most one run (a full workflow or a single mutating phase) is active at
    a time; a second start is rejected with WorkflowBusyError. Read-only
    refreshes (fetch_scenes, fetch_scene_by_id) may run at any time.
    """

    def __init__(
        self,
        client: SceneClient,
        store: ReconstructionStore,
        events: Optional[EventBus] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.client = client
        self.store = store
        self.events = events

        self.poll_interval = float(config.get("poll_interval", 20))
        self.max_poll_errors = int(config.get("max_poll_errors", 5) or 0)
        self.check_readiness = config.get("check_readiness", True)

        self.active_run: Optional[WorkflowRun] = None
        self.last_run: Optional[WorkflowRun] = None
        self._request_ids = itertools.count(1)

    @property
    def is_busy(self) -> bool:
        return self.active_run is not None

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def start_full_workflow(
        self, name: str, description: Optional[str] = None, files: FileList = None
    ) -> WorkflowRun:
        """Create a scene, upload images into it, then reconstruct it.

        When files is None the store's pending files are uploaded. Remote
        failures never escape: they end the run in the failed phase. Local
        input problems raise ValidationError before any request is made.
        """
        self._ensure_idle()
        name = self._validate_name(name)
        paths = self._resolve_files(files)

        run = self._begin_run(name, "full_workflow")
        logger.info(f"Starting workflow '{name}' with {len(paths)} images (run {run.run_id})")
        await self._execute(run, self._full_sequence(run, name, description, paths))
        return run

    def cancel(self) -> bool:
        """Cancel the active run; a no-op when nothing is running."""
        run = self.active_run
        if run is None or not run.is_active:
            logger.debug("No active workflow to cancel")
            return False

        run.request_cancel()
        run.finish(WorkflowPhase.CANCELLED)
        self._end_run(run)

        self.store.clear_in_progress_flags()
        self.store.clear_progress()
        self.store.set_workflow_phase(WorkflowPhase.CANCELLED)
        logger.info(f"Workflow '{run.name}' cancelled by user")
        return True

    async def create_scene(self, name: str, description: Optional[str] = None) -> Optional[Scene]:
        self._ensure_idle()
        name = self._validate_name(name)
        run = self._begin_run(name, "create_scene")
        self._enter_phase(run, WorkflowPhase.CREATING_SCENE)
        return await self._execute(run, self._create_phase(run, name, description))

    async def upload_images(self, scene_id: str, files: FileList = None) -> Optional[Scene]:
        self._ensure_idle()
        scene_id = self._validate_scene_id(scene_id)
        paths = self._resolve_files(files)
        run = self._begin_run(scene_id, "upload_images")
        run.scene_id = scene_id
        self._enter_phase(run, WorkflowPhase.UPLOADING_IMAGES)
        return await self._execute(run, self._upload_phase(run, scene_id, paths))

    async def run_reconstruction(self, scene_id: str) -> Optional[Scene]:
        """Trigger reconstruction and poll until the scene reaches a terminal status."""
        self._ensure_idle()
        scene_id = self._validate_scene_id(scene_id)
        run = self._begin_run(scene_id, "run_reconstruction")
        run.scene_id = scene_id
        self._enter_phase(run, WorkflowPhase.RECONSTRUCTING)
        return await self._execute(run, self._reconstruct_phase(run, scene_id))

    async def fetch_scenes(self) -> Optional[List[Scene]]:
        request_id = f"fetch-scenes-{next(self._request_ids)}"
        self.store.set_fetching_scenes(True)
        self.store.clear_error()
        try:
            scenes = await self.client.list_jobs()
        except Exception as e:
            message = _message(e, "Failed to fetch scenes")
            self.store.set_fetching_scenes(False)
            self.store.set_error(message)
            logger.error(f"Fetch scenes failed: {message}")
            self._publish("fetch_scenes", message, e, request_id=request_id)
            return None

        self.store.set_fetching_scenes(False)
        self.store.replace_scenes(scenes)
        logger.info(f"Fetched {len(scenes)} scenes")
        return scenes

    async def fetch_scene_by_id(self, scene_id: str) -> Optional[Scene]:
        """Refresh one scene; safe to call while a reconstruction is polling it."""
        scene_id = self._validate_scene_id(scene_id)
        request_id = f"fetch-scene-{next(self._request_ids)}"
        self.store.clear_error()
        try:
            scene = await self.client.get_job_status(scene_id)
        except Exception as e:
            message = _message(e, "Failed to fetch scene")
            self.store.set_error(message)
            logger.error(f"Fetch scene {scene_id} failed: {message}")
            self._publish("fetch_scene_by_id", message, e, request_id=request_id)
            return None

        self.store.upsert_job(scene)
        logger.info(f"Fetched scene: {scene.name} ({scene.status.value}, {scene.progress}%)")
        return scene

    # ------------------------------------------------------------------
    # Run bookkeeping
    # ------------------------------------------------------------------

    def _ensure_idle(self):
        if self.active_run is not None:
            logger.warning(
                f"Rejected new request: '{self.active_run.name}' is still "
                f"{self.active_run.phase.value}"
            )
            raise WorkflowBusyError(
                f"A workflow is already running ({self.active_run.phase.value})"
            )

    @staticmethod
    def _validate_name(name: str) -> str:
        if not name or not name.strip():
            raise ValidationError("Scene name is required")
        return name.strip()

    @staticmethod
    def _validate_scene_id(scene_id: str) -> str:
        if not scene_id:
            raise ValidationError("Scene id is required")
        return scene_id

    def _resolve_files(self, files: FileList) -> List[Path]:
        if files is None:
            files = self.store.pending_paths()
        return ImageProcessor.validate_batch(files)

    def _begin_run(self, name: str, kind: str) -> WorkflowRun:
        run = WorkflowRun(name=name, kind=kind)
        self.active_run = run
        return run

    def _end_run(self, run: WorkflowRun):
        # a stale run resolving after a newer one must not replace it
        if self.active_run is run:
            self.active_run = None
            self.last_run = run

    def _enter_phase(self, run: WorkflowRun, phase: WorkflowPhase):
        self._check_cancelled(run)
        run.phase = phase
        self.store.set_workflow_phase(phase)
        logger.debug(f"Run {run.run_id} entered {phase.value}")

    async def _execute(self, run: WorkflowRun, body: Awaitable[Any]) -> Any:
        """Drive one run to a terminal phase and apply the outcome to the store."""
        try:
            result = await body
        except WorkflowCancelled:
            logger.info(f"Run {run.run_id} stopped after cancellation")
            return None
        except WorkflowError as e:
            self._fail_run(run, e)
            return None
        except asyncio.CancelledError:
            # the task running us was cancelled from outside
            self.cancel()
            raise
        finally:
            self._end_run(run)

        if not run.is_active:
            return None
        run.finish(WorkflowPhase.DONE)
        self.store.set_workflow_phase(WorkflowPhase.DONE)
        return result

    def _fail_run(self, run: WorkflowRun, error: WorkflowError):
        if not run.is_active:
            return

        run.failed_phase = error.phase
        run.finish(WorkflowPhase.FAILED, error.message)

        self.store.clear_in_progress_flags()
        self.store.clear_progress()
        self.store.set_error(error.message)
        self.store.set_workflow_phase(WorkflowPhase.FAILED)

        logger.error(
            f"{run.kind} '{run.name}' failed during {error.phase.value}: {error.message}"
        )
        self._publish(
            run.kind,
            error.message,
            error.cause,
            phase=error.phase,
            request_id=run.request_ids[-1] if run.request_ids else None,
        )

    def _publish(
        self,
        source: str,
        message: str,
        cause: Optional[BaseException] = None,
        phase: Optional[WorkflowPhase] = None,
        request_id: Optional[str] = None,
    ):
        if self.events is None:
            return
        self.events.publish(
            FailureEvent(
                source=source,
                message=message,
                phase=phase,
                request_id=request_id,
                status=getattr(cause, "status", None),
            )
        )

    def _check_cancelled(self, run: WorkflowRun):
        if run.cancel_requested:
            raise WorkflowCancelled(run.run_id)

    def _apply(self, run: WorkflowRun, update: Callable[..., Any], *args) -> Any:
        """Apply one store write for a run; refused once the run is cancelled."""
        self._check_cancelled(run)
        return update(*args)

    async def _call(self, run: WorkflowRun, phase: WorkflowPhase, awaitable: Awaitable[Any]) -> Any:
        """Await one remote call as a suspension point of the run."""
        try:
            result = await awaitable
        except Exception as e:
            self._check_cancelled(run)
            raise WorkflowError(phase, _message(e, f"{phase.value} failed"), cause=e) from e
        self._check_cancelled(run)
        return result

    async def _sleep(self, run: WorkflowRun, delay: float):
        """Wait between polls; returns early when the run is cancelled."""
        try:
            await asyncio.wait_for(run.wait_cancelled(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._check_cancelled(run)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _full_sequence(
        self, run: WorkflowRun, name: str, description: Optional[str], paths: List[Path]
    ) -> Scene:
        self._enter_phase(run, WorkflowPhase.CREATING_SCENE)
        scene = await self._create_phase(run, name, description)

        self._enter_phase(run, WorkflowPhase.UPLOADING_IMAGES)
        await self._upload_phase(run, scene.id, paths)

        self._enter_phase(run, WorkflowPhase.RECONSTRUCTING)
        scene = await self._reconstruct_phase(run, scene.id)

        self._apply(run, self.store.clear_pending_files)
        logger.info(f"Full workflow completed for scene {scene.id}")
        return scene

    async def _create_phase(
        self, run: WorkflowRun, name: str, description: Optional[str]
    ) -> Scene:
        phase = WorkflowPhase.CREATING_SCENE
        self._check_cancelled(run)
        request_id = run.next_request_id("create_scene")
        self._apply(run, self.store.set_phase_flag, phase, True)
        self._apply(run, self.store.clear_error)

        scene = await self._call(run, phase, self.client.create_job(name, description))

        run.scene_id = scene.id
        self._apply(run, self.store.set_phase_flag, phase, False)
        self._apply(run, self.store.upsert_job, scene)
        logger.info(f"Scene created: {scene.name} (ID: {scene.id}) [{request_id}]")
        return scene

    async def _upload_phase(self, run: WorkflowRun, scene_id: str, paths: List[Path]) -> Scene:
        phase = WorkflowPhase.UPLOADING_IMAGES
        self._check_cancelled(run)
        request_id = run.next_request_id("upload_images")
        self._apply(run, self.store.set_phase_flag, phase, True)
        self._apply(run, self.store.set_upload_progress, 10)
        self._apply(run, self.store.clear_error)
        self._apply(run, self.store.set_upload_progress, 30)

        scene = await self._call(run, phase, self.client.upload_images(scene_id, paths))

        self._apply(run, self.store.set_upload_progress, 90)
        self._apply(run, self.store.set_phase_flag, phase, False)
        self._apply(run, self.store.set_upload_progress, 100)
        self._apply(run, self.store.upsert_job, scene)
        self._apply(run, self.store.clear_pending_files)
        logger.info(f"Uploaded {len(paths)} images to scene {scene_id} [{request_id}]")
        return scene

    async def _reconstruct_phase(self, run: WorkflowRun, scene_id: str) -> Scene:
        phase = WorkflowPhase.RECONSTRUCTING
        self._check_cancelled(run)
        request_id = run.next_request_id("run_reconstruction")
        self._apply(run, self.store.set_phase_flag, phase, True)
        self._apply(run, self.store.set_progress, 0, "Starting reconstruction...")
        self._apply(run, self.store.clear_error)
        started = time.monotonic()

        if self.check_readiness:
            self._apply(run, self.store.set_progress, 5, "Checking scene...")
            readiness = await self._call(run, phase, self.client.check_readiness(scene_id))
            logger.info(
                f"Scene {scene_id} readiness: {readiness.image_count} images, "
                f"colmap={readiness.has_colmap}, next step={readiness.next_step}"
            )
            if not readiness.has_images:
                raise WorkflowError(phase, "Scene has no images. Upload images first.")

        self._apply(run, self.store.set_progress, TRIGGERED_PROGRESS, "Starting pipeline...")
        await self._call(run, phase, self.client.start_reconstruction(scene_id))
        logger.info(
            f"Pipeline started for {scene_id}; polling every {self.poll_interval:g}s [{request_id}]"
        )

        scene = await self._poll_until_terminal(run, scene_id)

        self._apply(run, self.store.set_phase_flag, phase, False)
        self._apply(run, self.store.set_progress, 100, "Reconstruction completed!")
        self._apply(run, self.store.upsert_job, scene)
        logger.info(
            f"Reconstruction completed for {scene_id} in {time.monotonic() - started:.2f}s"
        )
        return scene

    async def _poll_until_terminal(self, run: WorkflowRun, scene_id: str) -> Scene:
        """Poll scene status until it completes or fails.

        Progress is only pushed when it increases and stays below 100 until the
        server reports completion. Failed status checks count as transient up
        to max_poll_errors consecutive failures (0 disables the limit); client
        errors (4xx) fail the phase at once.
        """
        phase = WorkflowPhase.RECONSTRUCTING
        last_progress = TRIGGERED_PROGRESS
        consecutive_errors = 0

        while True:
            await self._sleep(run, self.poll_interval)
            run.next_request_id("poll_status")

            try:
                scene = await self.client.get_job_status(scene_id)
            except Exception as e:
                self._check_cancelled(run)
                message = _message(e, "Status check failed")
                if not _is_transient(e):
                    raise WorkflowError(phase, message, cause=e) from e

                consecutive_errors += 1
                run.transient_errors.append(message)
                limit = self.max_poll_errors or "unbounded"
                logger.warning(
                    f"Status check for {scene_id} failed ({consecutive_errors}/{limit}), "
                    f"retrying: {message}"
                )
                if self.max_poll_errors and consecutive_errors >= self.max_poll_errors:
                    raise WorkflowError(
                        phase,
                        f"Status polling failed {consecutive_errors} times in a row: {message}",
                        cause=e,
                    ) from e
                continue

            self._check_cancelled(run)
            consecutive_errors = 0
            logger.debug(
                f"Polled {scene_id}: {scene.status.value} | {scene.progress}% | "
                f"{scene.progress_message}"
            )

            if scene.status is SceneStatus.COMPLETED:
                return scene

            if scene.status.is_failure:
                self._apply(run, self.store.upsert_job, scene)
                raise WorkflowError(phase, f"Pipeline failed: {scene.progress_message}")

            progress = min(scene.progress, 99)
            if progress > last_progress:
                self._apply(run, self.store.set_progress, progress, scene.progress_message)
                last_progress = progress
