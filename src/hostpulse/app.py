"""hostpulse - Terminal dashboard consuming the telemetry engine."""

import logging
import os
from dataclasses import dataclass
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from hostpulse.config import MonitorConfig
from hostpulse.models import PhysicalDiskSnapshot, RamSnapshot
from hostpulse.monitor import SystemMonitorService
from hostpulse.util import format_bytes, format_percent, to_gb


@dataclass(slots=True, frozen=True)
class TelemetryFrame:
    """One listener callback, queued for the UI thread."""

    cpu_percent: float
    ram: RamSnapshot
    disks: list[PhysicalDiskSnapshot]
    gpu_percent: int


def meter_bar(percent: float, color: str, width: int = 20) -> str:
    """Render a percentage as a fixed-width bar; blank when unavailable."""
    if percent < 0:
        return "[dim]░[/dim]" * width
    filled = min(width, int(percent / (100 / width)))
    return f"[{color}]█[/{color}]" * filled + "[dim]░[/dim]" * (width - filled)


class MeterPanel(Static):
    """Panel showing the CPU, RAM and GPU meters."""

    DEFAULT_CSS = """
    MeterPanel {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, gpu_name: str = "GPU", **kwargs) -> None:
        """Initialize MeterPanel."""
        super().__init__(*args, **kwargs)
        self._gpu_name = gpu_name
        self._cpu_percent: float | None = None
        self._ram: RamSnapshot | None = None
        self._gpu_percent: int = -1

    def on_mount(self) -> None:
        self.update(self.render_meters())

    def update_frame(self, frame: TelemetryFrame) -> None:
        """Update the meters from a telemetry frame."""
        self._cpu_percent = frame.cpu_percent
        self._ram = frame.ram
        self._gpu_percent = frame.gpu_percent
        self.update(self.render_meters())

    def render_meters(self) -> str:
        """Build the meter markup."""
        if self._cpu_percent is None or self._ram is None:
            return "Loading telemetry..."

        ram = self._ram
        cpu_line = (
            f"CPU \\[{meter_bar(self._cpu_percent, 'green')}] {format_percent(self._cpu_percent)}"
        )
        ram_line = (
            f"RAM \\[{meter_bar(ram.percent, 'cyan')}] {format_percent(ram.percent)}"
            f"  {to_gb(ram.used_bytes):.1f}/{to_gb(ram.total_bytes):.1f} GB"
        )
        gpu_line = (
            f"GPU \\[{meter_bar(self._gpu_percent, 'yellow')}] {format_percent(self._gpu_percent)}"
            f"  {self._gpu_name}"
        )
        return "\n".join([cpu_line, ram_line, gpu_line])


class DiskTable(Container):
    """Container for the physical disk table."""

    DEFAULT_CSS = """
    DiskTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize DiskTable."""
        super().__init__(*args, **kwargs)
        self._current_indexes: set[int] = set()

    def compose(self) -> ComposeResult:
        """Compose the disk table."""
        yield DataTable(id="disk-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#disk-table", DataTable)
        table.cursor_type = "row"

        table.add_column("#", key="index", width=3)
        table.add_column("TYPE", key="type", width=5)
        table.add_column("SIZE", key="size", width=8)
        table.add_column("USED", key="used", width=8)
        table.add_column("USED%", key="used_pct", width=7)
        table.add_column("ACTIVE%", key="active", width=8)
        table.add_column("Model", key="model")

    def update_disks(self, disks: list[PhysicalDiskSnapshot]) -> None:
        """
        Update the disk table with new snapshots.

        Rows are keyed by disk index, which never changes while the engine
        runs, so existing rows are updated in place.
        """
        table = self.query_one("#disk-table", DataTable)
        new_indexes = {disk.index for disk in disks}

        for index in self._current_indexes - new_indexes:
            try:
                table.remove_row(str(index))
            except Exception:
                pass  # Row may not exist

        for disk in disks:
            cells = self._cells(disk)
            row_key = str(disk.index)
            if disk.index in self._current_indexes:
                for column, value in cells.items():
                    table.update_cell(row_key, column, value)
            else:
                table.add_row(*cells.values(), key=row_key)

        self._current_indexes = new_indexes

    @staticmethod
    def _cells(disk: PhysicalDiskSnapshot) -> dict[str, str]:
        return {
            "index": str(disk.index),
            "type": disk.type_label,
            "size": format_bytes(disk.size_bytes),
            "used": format_bytes(disk.used_bytes) if disk.has_usage else "  -",
            "used_pct": format_percent(disk.used_percent, unavailable=not disk.has_usage),
            "active": format_percent(disk.active_percent),
            "model": disk.model[:40],
        }


class HostPulseApp(App):
    """Main hostpulse application."""

    TITLE = "hostpulse"
    SUB_TITLE = "Host Telemetry"

    CSS = """
    Screen {
        layout: vertical;
    }

    #meters {
        dock: top;
        height: auto;
        min-height: 5;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
    ]

    def __init__(self, monitor: SystemMonitorService | None = None) -> None:
        """Initialize the HostPulseApp."""
        super().__init__()
        self._update_queue: Queue[TelemetryFrame] = Queue()
        self._monitor = monitor or SystemMonitorService(config=MonitorConfig.from_env())
        self._monitor.set_listener(self._on_update)

    def _on_update(
        self,
        cpu_percent: float,
        ram: RamSnapshot,
        disks: list[PhysicalDiskSnapshot],
        gpu_percent: int,
    ) -> None:
        """Engine listener; runs on the engine thread, so only enqueue."""
        self._update_queue.put(TelemetryFrame(cpu_percent, ram, disks, gpu_percent))

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield MeterPanel(id="meters", gpu_name=self._monitor.get_gpu_name())
        yield DiskTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the engine when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.25, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the queue and render only the most recent frame."""
        frame = None
        while True:
            try:
                frame = self._update_queue.get_nowait()
            except Empty:
                break

        if frame is not None:
            self._update_ui(frame)

    def _update_ui(self, frame: TelemetryFrame) -> None:
        """Update the UI with a telemetry frame."""
        self.query_one("#meters", MeterPanel).update_frame(frame)
        self.query_one(DiskTable).update_disks(frame.disks)

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.close()
        self.exit()

    def on_unmount(self) -> None:
        self._monitor.close()


def configure_logging() -> None:
    """Send engine logs to a file so they do not draw over the UI."""
    level = os.environ.get("HOSTPULSE_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        filename=os.environ.get("HOSTPULSE_LOG_FILE", "hostpulse.log"),
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Entry point for hostpulse application."""
    configure_logging()
    app = HostPulseApp()
    app.run()


if __name__ == "__main__":
    main()
