"""pywir - Interactive Textual application for terminating an inspected process."""

from enum import Enum

import psutil
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from pywir.models import ProcessInfo


class KillOutcome(Enum):
    """Result of sending SIGTERM to a process."""

    TERMINATED = "terminated"
    STILL_RUNNING = "still_running"
    NO_SUCH_PROCESS = "no_such_process"
    ACCESS_DENIED = "access_denied"


def format_kb(size_kb: int) -> str:
    """Format a kilobyte count as human-readable string."""
    size = float(size_kb)
    for unit in ["K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def terminate_process(pid: int, grace: float = 0.1) -> KillOutcome:
    """
    Send SIGTERM to a process and wait briefly for it to exit.

    Args:
        pid: Process to signal.
        grace: Seconds to wait for the process to go away.
    """
    try:
        proc = psutil.Process(pid)
        proc.terminate()
    except psutil.NoSuchProcess:
        return KillOutcome.NO_SUCH_PROCESS
    except psutil.AccessDenied:
        return KillOutcome.ACCESS_DENIED

    _, alive = psutil.wait_procs([proc], timeout=grace)
    return KillOutcome.STILL_RUNNING if alive else KillOutcome.TERMINATED


OUTCOME_MESSAGES = {
    KillOutcome.TERMINATED: ("Process {pid} ({name}) has been terminated", "information"),
    KillOutcome.STILL_RUNNING: (
        "Sent SIGTERM to {pid} ({name}) but it is still running; "
        "SIGKILL (kill -9) may be needed",
        "warning",
    ),
    KillOutcome.NO_SUCH_PROCESS: ("Process {pid} no longer exists", "error"),
    KillOutcome.ACCESS_DENIED: (
        "Permission denied. You may need to run with sudo to kill process {pid}",
        "error",
    ),
}


class TargetTable(Container):
    """Container for the table of processes that may be killed."""

    DEFAULT_CSS = """
    TargetTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, processes: list[ProcessInfo], *args, **kwargs) -> None:
        """Initialize TargetTable."""
        super().__init__(*args, **kwargs)
        self._processes = {proc.pid: proc for proc in processes}

    @property
    def pids(self) -> list[int]:
        """PIDs currently listed."""
        return list(self._processes)

    def compose(self) -> ComposeResult:
        """Compose the target table."""
        yield DataTable(id="target-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#target-table", DataTable)
        table.cursor_type = "row"

        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("S", key="state", width=3)
        table.add_column("RES", key="rss", width=8)
        table.add_column("Command", key="command")

        for proc in self._processes.values():
            table.add_row(
                str(proc.pid),
                proc.username[:10],
                proc.state.value,
                format_kb(proc.rss_kb),
                (proc.cmdline or proc.name)[:50],
                key=str(proc.pid),
            )

    def selected(self) -> ProcessInfo | None:
        """The process under the cursor, if any."""
        table = self.query_one("#target-table", DataTable)
        if table.row_count == 0:
            return None
        row_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        return self._processes.get(int(row_key.value))

    def remove(self, pid: int) -> None:
        """Drop a process from the table."""
        if self._processes.pop(pid, None) is not None:
            self.query_one("#target-table", DataTable).remove_row(str(pid))


class KillApp(App):
    """Lists inspected processes and sends SIGTERM on request."""

    TITLE = "pywir"
    SUB_TITLE = "Interactive mode"

    CSS = """
    Screen {
        layout: vertical;
    }

    #prompt {
        dock: top;
        height: auto;
        padding: 1;
        background: $surface;
    }
    """

    BINDINGS = [
        ("k", "kill", "Kill"),
        ("q", "quit", "Quit"),
    ]

    def __init__(self, processes: list[ProcessInfo], grace: float = 0.1) -> None:
        """
        Initialize the KillApp.

        Args:
            processes: Processes offered for termination.
            grace: Seconds to wait after SIGTERM before reporting.
        """
        super().__init__()
        self._targets = processes
        self._grace = grace
        self.last_outcome: KillOutcome | None = None

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield Static(
            "Press [b]k[/b] to kill the highlighted process, [b]q[/b] to quit.",
            id="prompt",
        )
        yield TargetTable(self._targets)
        yield Footer()

    def action_kill(self) -> None:
        """Send SIGTERM to the highlighted process."""
        targets = self.query_one(TargetTable)
        proc = targets.selected()
        if proc is None:
            self.notify("No process selected", severity="warning")
            return

        outcome = terminate_process(proc.pid, grace=self._grace)
        self.last_outcome = outcome
        template, severity = OUTCOME_MESSAGES[outcome]
        self.notify(template.format(pid=proc.pid, name=proc.name), severity=severity)

        if outcome in (KillOutcome.TERMINATED, KillOutcome.NO_SUCH_PROCESS):
            targets.remove(proc.pid)

    def action_quit(self) -> None:
        """Handle quit action."""
        self.exit()
