"""Tests for the workflow engine."""

import asyncio
import logging

import pytest
from unittest.mock import Mock, AsyncMock
from PIL import Image

from recon_flow.errors import (
    RemoteError,
    TransientError,
    ValidationError,
    WorkflowBusyError,
)
from recon_flow.events import EventBus
from recon_flow.models import ReadinessInfo, Scene, SceneStatus, WorkflowPhase
from recon_flow.store import ReconstructionStore
from recon_flow.workflow import WorkflowEngine


def make_scene(status="idle", progress=0, message="", image_count=0, scene_id="scene-1"):
    return Scene(
        id=scene_id,
        name="Courtyard",
        status=SceneStatus(status),
        progress=progress,
        progress_message=message,
        image_count=image_count,
    )


async def wait_until(condition, attempts=1000):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def image_files(tmp_path):
    """Two small valid JPEG files."""
    paths = []
    for i in range(2):
        path = tmp_path / f"view_{i}.jpg"
        Image.new("RGB", (16, 16), color=(i * 80, 0, 0)).save(path)
        paths.append(path)
    return paths


@pytest.fixture
def client():
    """Scene client double with a happy-path default for every call."""
    client = Mock()
    client.create_job = AsyncMock(return_value=make_scene())
    client.upload_images = AsyncMock(return_value=make_scene("uploaded", image_count=2))
    client.check_readiness = AsyncMock(
        return_value=ReadinessInfo(scene_id="scene-1", has_images=True, image_count=2)
    )
    client.start_reconstruction = AsyncMock(return_value={"message": "started"})
    client.get_job_status = AsyncMock(return_value=make_scene("completed", 100, "Done"))
    client.list_jobs = AsyncMock(return_value=[])
    return client


@pytest.fixture
def store():
    return ReconstructionStore()


@pytest.fixture
def engine(client, store):
    return WorkflowEngine(client, store, config={"poll_interval": 0})


class TestFullWorkflow:
    """Test start_full_workflow end to end."""

    @pytest.mark.asyncio
    async def test_successful_run(self, engine, client, store, image_files):
        """A full run creates, uploads, reconstructs and ends completed."""
        client.get_job_status.side_effect = [
            make_scene("colmap_processing", 20, "Running COLMAP"),
            make_scene("reconstruction_processing", 60, "Training"),
            make_scene("completed", 100, "Done"),
        ]
        store.add_pending_files(image_files)

        run = await engine.start_full_workflow("Courtyard", "Inner yard")

        assert run.phase is WorkflowPhase.DONE
        assert run.scene_id == "scene-1"
        client.create_job.assert_awaited_once_with("Courtyard", "Inner yard")
        client.upload_images.assert_awaited_once_with("scene-1", image_files)
        client.start_reconstruction.assert_awaited_once_with("scene-1")
        assert client.get_job_status.await_count == 3

        assert store.current_scene.status is SceneStatus.COMPLETED
        assert store.reconstruction_progress.progress == 100
        assert store.reconstruction_progress.message == "Reconstruction completed!"
        assert store.reconstruction_progress.current_step == "Complete"
        assert store.upload_progress == 100
        assert store.files == []
        assert store.error is None
        assert store.workflow_phase is WorkflowPhase.DONE
        assert store.current_workflow_step is None
        assert not store.is_creating_scene
        assert not store.is_uploading_images
        assert not store.is_running_reconstruction
        assert engine.active_run is None
        assert engine.last_run is run

    @pytest.mark.asyncio
    async def test_explicit_files_override_pending(self, engine, client, store, image_files):
        """Files passed in are uploaded instead of the pending selection."""
        store.add_pending_files(image_files)

        await engine.start_full_workflow("Courtyard", files=image_files[:1])

        client.upload_images.assert_awaited_once_with("scene-1", image_files[:1])

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, engine, client, store, image_files):
        """Server progress that goes backwards is not pushed to the store."""
        client.get_job_status.side_effect = [
            make_scene("processing", 40, "COLMAP"),
            make_scene("processing", 30, "COLMAP retry"),
            make_scene("processing", 100, "almost"),
            make_scene("completed", 100, "Done"),
        ]
        seen = []
        store.subscribe(
            lambda s, change: seen.append(s.reconstruction_progress.progress)
            if s.reconstruction_progress
            else None
        )

        await engine.start_full_workflow("Courtyard", files=image_files)

        assert seen == sorted(seen)
        # 100 is only reached once the server reports completion
        assert seen.count(99) >= 1
        assert seen[-1] == 100

    @pytest.mark.asyncio
    async def test_request_ids_are_per_run_and_ordered(self, engine, image_files):
        """Each phase request gets a correlation id derived from the run id."""
        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.request_ids[0] == f"{run.run_id}-create_scene-1"
        assert run.request_ids[1] == f"{run.run_id}-upload_images-2"
        assert run.request_ids[2] == f"{run.run_id}-run_reconstruction-3"
        assert run.request_ids[3] == f"{run.run_id}-poll_status-4"

    @pytest.mark.asyncio
    async def test_upload_failure_stops_run(self, engine, client, store, image_files):
        """A failed upload keeps the created scene and never starts reconstruction."""
        client.upload_images.side_effect = RemoteError("Upload failed", status=500)

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.FAILED
        assert run.failed_phase is WorkflowPhase.UPLOADING_IMAGES
        assert run.error == "Upload failed"
        client.check_readiness.assert_not_awaited()
        client.start_reconstruction.assert_not_awaited()

        assert store.get_scene("scene-1") is not None
        assert store.error == "Upload failed"
        assert store.workflow_phase is WorkflowPhase.FAILED
        assert store.upload_progress == 0
        assert store.reconstruction_progress is None
        assert not store.is_uploading_images
        assert engine.active_run is None

    @pytest.mark.asyncio
    async def test_create_failure_skips_later_phases(self, engine, client, store, image_files):
        """Nothing after scene creation runs when creation fails."""
        client.create_job.side_effect = TransientError("Network error: Cannot connect")

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.failed_phase is WorkflowPhase.CREATING_SCENE
        client.upload_images.assert_not_awaited()
        assert store.scenes == []
        assert store.error == "Network error: Cannot connect"

    @pytest.mark.asyncio
    async def test_pipeline_failure_status(self, engine, client, store, image_files):
        """A failed server status ends the run with the server's message."""
        client.get_job_status.side_effect = [
            make_scene("colmap_processing", 20, "Running COLMAP"),
            make_scene("colmap_failed", 20, "COLMAP crashed"),
        ]

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.FAILED
        assert run.error == "Pipeline failed: COLMAP crashed"
        assert store.current_scene.status is SceneStatus.COLMAP_FAILED
        assert not store.is_running_reconstruction

    @pytest.mark.asyncio
    async def test_readiness_without_images_fails(self, engine, client, store, image_files):
        """The pipeline is never triggered for a scene without images."""
        client.check_readiness.return_value = ReadinessInfo(scene_id="scene-1", has_images=False)

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.failed_phase is WorkflowPhase.RECONSTRUCTING
        assert store.error == "Scene has no images. Upload images first."
        client.start_reconstruction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_readiness_check_can_be_disabled(self, client, store, image_files):
        """With check_readiness off the pipeline is triggered directly."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 0, "check_readiness": False})

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.DONE
        client.check_readiness.assert_not_awaited()


class TestValidation:
    """Local input problems are rejected before any request."""

    @pytest.mark.asyncio
    async def test_blank_name(self, engine, client, image_files):
        with pytest.raises(ValidationError, match="Scene name is required"):
            await engine.start_full_workflow("   ", files=image_files)
        client.create_job.assert_not_awaited()
        assert engine.active_run is None

    @pytest.mark.asyncio
    async def test_no_files(self, engine, client):
        with pytest.raises(ValidationError, match="No images selected"):
            await engine.start_full_workflow("Courtyard")
        client.create_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsupported_file(self, engine, client, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("not an image")

        with pytest.raises(ValidationError, match="Unsupported image format"):
            await engine.start_full_workflow("Courtyard", files=[notes])
        client.create_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_scene_id(self, engine, client):
        with pytest.raises(ValidationError):
            await engine.run_reconstruction("")
        client.start_reconstruction.assert_not_awaited()


class TestPolling:
    """Test status polling retries."""

    @pytest.mark.asyncio
    async def test_transient_error_logs_one_warning(
        self, engine, client, store, image_files, caplog
    ):
        """One transient failure produces exactly one warning and polling continues."""
        caplog.set_level(logging.WARNING, logger="recon_flow.workflow")
        client.get_job_status.side_effect = [
            TransientError("Network error: timeout"),
            make_scene("processing", 50, "Working"),
            make_scene("completed", 100, "Done"),
        ]

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "Network error: timeout" in warnings[0].getMessage()
        assert run.transient_errors == ["Network error: timeout"]
        assert run.phase is WorkflowPhase.DONE
        assert store.current_scene.status is SceneStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, engine, client, image_files):
        """5xx answers while polling count as transient."""
        client.get_job_status.side_effect = [
            RemoteError("Bad gateway", status=502),
            make_scene("completed", 100, "Done"),
        ]

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.DONE
        assert run.transient_errors == ["Bad gateway"]

    @pytest.mark.asyncio
    async def test_consecutive_error_limit(self, client, store, image_files):
        """Polling gives up after max_poll_errors failures in a row."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 0, "max_poll_errors": 2})
        client.get_job_status.side_effect = TransientError("Network error: timeout")

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.FAILED
        assert run.error == "Status polling failed 2 times in a row: Network error: timeout"
        assert client.get_job_status.await_count == 2

    @pytest.mark.asyncio
    async def test_error_counter_resets_after_success(self, client, store, image_files):
        """Only consecutive failures count toward the limit."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 0, "max_poll_errors": 2})
        client.get_job_status.side_effect = [
            TransientError("Network error: timeout"),
            make_scene("processing", 30, "Working"),
            TransientError("Network error: timeout"),
            make_scene("completed", 100, "Done"),
        ]

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.DONE
        assert len(run.transient_errors) == 2

    @pytest.mark.asyncio
    async def test_client_error_fails_immediately(self, engine, client, image_files):
        """A 4xx answer while polling is not retried."""
        client.get_job_status.side_effect = RemoteError("Scene not found", status=404)

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.FAILED
        assert run.error == "Scene not found"
        assert client.get_job_status.await_count == 1


class TestCancellation:
    """Test cancel() semantics."""

    @pytest.mark.asyncio
    async def test_cancel_without_run_is_noop(self, engine, store):
        assert engine.cancel() is False
        assert store.workflow_phase is WorkflowPhase.IDLE

    @pytest.mark.asyncio
    async def test_cancel_after_done_is_noop(self, engine, store, image_files):
        """Cancelling a finished run changes nothing."""
        run = await engine.start_full_workflow("Courtyard", files=image_files)
        before = store.snapshot()

        assert engine.cancel() is False

        assert store.snapshot() == before
        assert engine.last_run is run
        assert run.phase is WorkflowPhase.DONE

    @pytest.mark.asyncio
    async def test_cancel_after_failure_is_noop(self, engine, client, store, image_files):
        client.upload_images.side_effect = RemoteError("Upload failed", status=500)
        run = await engine.start_full_workflow("Courtyard", files=image_files)
        before = store.snapshot()

        assert engine.cancel() is False

        assert store.snapshot() == before
        assert engine.last_run.phase is WorkflowPhase.FAILED
        assert run.error == "Upload failed"

    @pytest.mark.asyncio
    async def test_cancel_between_phases_stops_next_phase(
        self, engine, client, store, image_files
    ):
        """A cancel issued by a store listener right after creation skips the upload."""

        def cancel_on_created(s, change):
            if change.startswith("scene scene-1"):
                engine.cancel()

        store.subscribe(cancel_on_created)

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.CANCELLED
        client.upload_images.assert_not_awaited()
        assert store.workflow_phase is WorkflowPhase.CANCELLED
        assert not store.is_uploading_images
        assert store.upload_progress == 0
        assert store.get_scene("scene-1") is not None
        assert engine.active_run is None

    @pytest.mark.asyncio
    async def test_cancel_at_last_write_does_not_finish_done(
        self, engine, client, store, image_files
    ):
        """A cancel after polling completed still ends the run cancelled."""

        def cancel_on_flag_cleared(s, change):
            if change == "is_running_reconstruction=False":
                engine.cancel()

        store.subscribe(cancel_on_flag_cleared)

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.CANCELLED
        assert engine.last_run is run
        assert store.workflow_phase is WorkflowPhase.CANCELLED
        assert store.reconstruction_progress is None
        assert store.current_scene.status is SceneStatus.UPLOADED

    @pytest.mark.asyncio
    async def test_cancel_on_phase_entry(self, engine, client, store):
        """A cancel during the phase announcement of a single operation skips the call."""

        def cancel_on_phase(s, change):
            if change == "workflow creating_scene":
                engine.cancel()

        store.subscribe(cancel_on_phase)

        assert await engine.create_scene("Courtyard") is None
        client.create_job.assert_not_awaited()
        assert store.workflow_phase is WorkflowPhase.CANCELLED
        assert not store.is_creating_scene

    @pytest.mark.asyncio
    async def test_stale_run_does_not_replace_last_run(self, client, store, image_files):
        """A cancelled run resolving late leaves the newer run as last_run."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 0})
        gate = asyncio.Event()
        calls = []

        async def create_job(name, description=None):
            calls.append(name)
            if len(calls) == 1:
                await gate.wait()
            return make_scene()

        client.create_job.side_effect = create_job
        stale = asyncio.create_task(engine.start_full_workflow("First", files=image_files))
        await wait_until(lambda: len(calls) == 1)
        engine.cancel()

        second = await engine.start_full_workflow("Second", files=image_files)
        gate.set()
        first = await asyncio.wait_for(stale, timeout=5)

        assert first.phase is WorkflowPhase.CANCELLED
        assert second.phase is WorkflowPhase.DONE
        assert engine.last_run is second
        assert store.workflow_phase is WorkflowPhase.DONE

    @pytest.mark.asyncio
    async def test_late_response_is_dropped(self, engine, client, store, image_files):
        """A status answer arriving after cancel does not complete the run."""

        async def status_after_cancel(scene_id):
            engine.cancel()
            return make_scene("completed", 100, "Done")

        client.get_job_status.side_effect = status_after_cancel

        run = await engine.start_full_workflow("Courtyard", files=image_files)

        assert run.phase is WorkflowPhase.CANCELLED
        assert store.workflow_phase is WorkflowPhase.CANCELLED
        assert store.current_scene.status is SceneStatus.UPLOADED
        assert store.reconstruction_progress is None
        assert store.error is None
        assert not store.is_running_reconstruction
        assert engine.active_run is None

    @pytest.mark.asyncio
    async def test_cancel_interrupts_poll_wait(self, client, store, image_files):
        """Cancel during the wait between polls ends the run without another poll."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 60})
        task = asyncio.create_task(engine.start_full_workflow("Courtyard", files=image_files))
        await wait_until(lambda: client.start_reconstruction.await_count == 1)

        assert engine.cancel() is True
        run = await asyncio.wait_for(task, timeout=5)

        assert run.phase is WorkflowPhase.CANCELLED
        client.get_job_status.assert_not_awaited()
        assert store.workflow_phase is WorkflowPhase.CANCELLED

    @pytest.mark.asyncio
    async def test_new_run_allowed_after_cancel(self, client, store, image_files):
        """Cancel frees the engine for the next start immediately."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 60})
        task = asyncio.create_task(engine.start_full_workflow("Courtyard", files=image_files))
        await wait_until(lambda: client.start_reconstruction.await_count == 1)
        engine.cancel()
        await asyncio.wait_for(task, timeout=5)

        engine.poll_interval = 0
        run = await engine.start_full_workflow("Second", files=image_files)

        assert run.phase is WorkflowPhase.DONE

    @pytest.mark.asyncio
    async def test_task_cancellation_cancels_run(self, client, store, image_files):
        """Cancelling the asyncio task running the workflow cancels the run."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 60})
        task = asyncio.create_task(engine.start_full_workflow("Courtyard", files=image_files))
        await wait_until(lambda: client.start_reconstruction.await_count == 1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert engine.active_run is None
        assert engine.last_run.phase is WorkflowPhase.CANCELLED
        assert store.workflow_phase is WorkflowPhase.CANCELLED


class TestConcurrency:
    """Test the single-active-run rule."""

    @pytest.mark.asyncio
    async def test_second_start_is_rejected(self, client, store, image_files):
        """Starting while a run is active raises WorkflowBusyError."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 60})
        task = asyncio.create_task(engine.start_full_workflow("Courtyard", files=image_files))
        await wait_until(lambda: client.start_reconstruction.await_count == 1)

        with pytest.raises(WorkflowBusyError):
            await engine.start_full_workflow("Other", files=image_files)
        with pytest.raises(WorkflowBusyError):
            await engine.upload_images("scene-1", image_files)

        assert client.create_job.await_count == 1
        engine.cancel()
        await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_fetch_allowed_while_running(self, client, store, image_files):
        """Read-only refreshes are accepted during an active run."""
        engine = WorkflowEngine(client, store, config={"poll_interval": 60})
        task = asyncio.create_task(engine.start_full_workflow("Courtyard", files=image_files))
        await wait_until(lambda: client.start_reconstruction.await_count == 1)

        client.get_job_status.return_value = make_scene("processing", 40, "COLMAP")
        scene = await engine.fetch_scene_by_id("scene-1")

        assert scene.progress == 40
        assert engine.is_busy
        engine.cancel()
        await asyncio.wait_for(task, timeout=5)


class TestSingleOperations:
    """Test the standalone phase intents."""

    @pytest.mark.asyncio
    async def test_create_scene(self, engine, client, store):
        scene = await engine.create_scene("Courtyard")

        assert scene.id == "scene-1"
        assert store.current_scene is scene
        assert store.workflow_phase is WorkflowPhase.DONE
        assert not store.is_creating_scene

    @pytest.mark.asyncio
    async def test_create_scene_failure(self, client, store):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)
        engine = WorkflowEngine(client, store, bus, {"poll_interval": 0})
        client.create_job.side_effect = RemoteError("Internal server error", status=500)

        scene = await engine.create_scene("Courtyard")
        await bus.join()

        assert scene is None
        assert store.error == "Internal server error"
        assert len(received) == 1
        assert received[0].source == "create_scene"
        assert received[0].phase is WorkflowPhase.CREATING_SCENE
        assert received[0].status == 500
        await bus.close()

    @pytest.mark.asyncio
    async def test_upload_images_uses_pending_files(self, engine, client, store, image_files):
        store.add_pending_files(image_files)

        scene = await engine.upload_images("scene-1")

        client.upload_images.assert_awaited_once_with("scene-1", image_files)
        assert scene.status is SceneStatus.UPLOADED
        assert store.files == []
        assert store.upload_progress == 100

    @pytest.mark.asyncio
    async def test_upload_progress_steps(self, engine, store, image_files):
        steps = []
        store.subscribe(
            lambda s, change: steps.append(s.upload_progress) if change.startswith("upload ") else None
        )

        await engine.upload_images("scene-1", image_files)

        assert steps == [10, 30, 90, 100]

    @pytest.mark.asyncio
    async def test_run_reconstruction(self, engine, client, store):
        scene = await engine.run_reconstruction("scene-1")

        assert scene.status is SceneStatus.COMPLETED
        assert store.reconstruction_progress.progress == 100
        client.create_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_scenes(self, engine, client, store):
        client.list_jobs.return_value = [make_scene(), make_scene(scene_id="scene-2")]

        scenes = await engine.fetch_scenes()

        assert [s.id for s in scenes] == ["scene-1", "scene-2"]
        assert store.scenes == scenes
        assert not store.is_fetching_scenes

    @pytest.mark.asyncio
    async def test_fetch_scenes_failure(self, engine, client, store):
        client.list_jobs.side_effect = TransientError("Network error: Cannot connect")

        scenes = await engine.fetch_scenes()

        assert scenes is None
        assert store.error == "Network error: Cannot connect"
        assert not store.is_fetching_scenes
