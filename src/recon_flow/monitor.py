"""Live terminal view of the reconstruction store."""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .store import ReconstructionStore

logger = logging.getLogger(__name__)


class WorkflowMonitor:
    """Renders store state while a workflow task runs."""

    def __init__(self, store: ReconstructionStore, console: Optional[Console] = None):
        self.store = store
        self.console = console or Console()
        self.recent_activity: List[str] = []
        self._unsubscribe = None

    def _on_change(self, store: ReconstructionStore, change: str):
        self.recent_activity.append(f"{datetime.now().strftime('%H:%M:%S')} {change}")
        # Keep only recent activity
        self.recent_activity = self.recent_activity[-20:]

    async def watch(self, task: asyncio.Task, refresh_interval: float = 0.5):
        """Refresh the display until the task finishes."""
        self._unsubscribe = self.store.subscribe(self._on_change)
        layout = self._create_layout()

        try:
            with Live(layout, console=self.console, refresh_per_second=4) as live:
                while not task.done():
                    self._update_layout(layout)
                    await asyncio.sleep(refresh_interval)
                self._update_layout(layout)
                live.refresh()
        finally:
            self._unsubscribe()
            self._unsubscribe = None

    def _create_layout(self) -> Layout:
        """Create the display layout."""
        layout = Layout()

        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="body"),
            Layout(name="footer", size=3),
        )

        layout["body"].split_row(
            Layout(name="scene", ratio=1),
            Layout(name="progress", ratio=1),
            Layout(name="activity", ratio=1),
        )

        return layout

    def _scene_table(self) -> Table:
        table = Table(show_header=False, expand=True)
        table.add_column("Field")
        table.add_column("Value", style="cyan")

        scene = self.store.current_scene
        if scene is None:
            table.add_row("Scene", "-")
            return table

        table.add_row("ID", scene.id)
        table.add_row("Name", scene.name)
        table.add_row("Status", scene.status.value)
        table.add_row("Images", str(scene.image_count))
        if scene.ply_file_path:
            table.add_row("Point cloud", scene.ply_file_path)
        return table

    def _progress_table(self) -> Table:
        store = self.store
        table = Table(show_header=False, expand=True)
        table.add_column("Metric")
        table.add_column("Value", style="cyan")

        table.add_row("Phase", store.workflow_phase.value)
        table.add_row("Pending files", str(len(store.files)))
        table.add_row("Upload", f"{store.upload_progress}%")

        progress = store.reconstruction_progress
        if progress:
            table.add_row("Reconstruction", f"{progress.progress:g}%")
            table.add_row("Step", progress.current_step)
            table.add_row("Message", progress.message)

        if store.error:
            table.add_row("Error", Text(store.error, style="red"))
        return table

    def _update_layout(self, layout: Layout):
        """Update layout with current data."""
        layout["header"].update(
            Panel(
                Text("ReconFlow", style="bold magenta", justify="center"),
                border_style="bright_blue",
            )
        )

        layout["scene"].update(Panel(self._scene_table(), title="Scene", border_style="green"))
        layout["progress"].update(
            Panel(self._progress_table(), title="Workflow", border_style="yellow")
        )

        activity_text = Text()
        for activity in self.recent_activity[-10:]:
            activity_text.append(f"{activity}\n", style="dim")

        layout["activity"].update(
            Panel(activity_text, title="Recent Activity", border_style="blue")
        )

        layout["footer"].update(
            Panel(
                Text(
                    f"Updated: {datetime.now().strftime('%H:%M:%S')} | Press Ctrl+C to cancel",
                    justify="center",
                    style="dim",
                ),
                border_style="bright_black",
            )
        )
