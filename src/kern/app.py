"""kern - Textual dashboard for a running watchdog."""

from enum import Enum
from queue import Empty, Queue

from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal
from textual.widgets import DataTable, Footer, Static

from kern.daemon import Watchdog
from kern.enforcer import CycleReport
from kern.errors import KernError
from kern.killer import is_critical
from kern.models import ProcessSample, Snapshot
from kern.service import WatchdogService

MAX_ROWS = 50


class SortKey(Enum):
    """Sort keys for the process table."""

    MEM = "mem"
    CPU = "cpu"
    PID = "pid"
    NAME = "name"


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def _bar(percent: float, color: str) -> str:
    length = min(max(int(percent / 5), 0), 20)
    return f"[{color}]█[/{color}]" * length + "[dim]░[/dim]" * (20 - length)


class HeaderStats(Static):
    """Header widget showing load, temperature and engine state."""

    DEFAULT_CSS = """
    HeaderStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._cpu_usage: float = 0.0
        self._memory_usage: float = 0.0
        self._memory_used: int = 0
        self._memory_total: int = 0
        self._temperature: float = 0.0
        self._profile: str = ""
        self._emergency: bool = False
        self._has_data: bool = False

    def compose(self) -> ComposeResult:
        yield Horizontal(
            Static(self._get_load_info(), id="load-info"),
            Static(self._get_engine_info(), id="engine-info"),
        )

    def update_stats(self, snapshot: Snapshot, profile: str, emergency: bool) -> None:
        """Update the statistics from a snapshot and the engine state."""
        self._cpu_usage = snapshot.cpu_usage
        self._memory_usage = snapshot.memory_usage
        self._memory_used = snapshot.used_memory_bytes
        self._memory_total = snapshot.total_memory_bytes
        self._temperature = snapshot.temperature
        self._profile = profile
        self._emergency = emergency
        self._has_data = True
        self._refresh_display()

    def _refresh_display(self) -> None:
        try:
            self.query_one("#load-info", Static).update(self._get_load_info())
            self.query_one("#engine-info", Static).update(self._get_engine_info())
        except Exception:
            pass  # Widget not mounted yet

    def _get_load_info(self) -> str:
        if not self._has_data:
            return "Waiting for first cycle..."
        used_gb = self._memory_used / (1024**3)
        total_gb = self._memory_total / (1024**3)
        temp_color = "red" if self._emergency else "yellow"
        # Escaped brackets around the bars
        return (
            f"CPU \\[{_bar(self._cpu_usage, 'green')}] {self._cpu_usage:5.1f}%\n"
            f"Mem \\[{_bar(self._memory_usage, 'cyan')}] {used_gb:.1f}G/{total_gb:.1f}G\n"
            f"Tmp \\[{_bar(self._temperature, temp_color)}] {self._temperature:5.1f}°C"
        )

    def _get_engine_info(self) -> str:
        if not self._has_data:
            return ""
        mode = "[bold red]EMERGENCY[/bold red]" if self._emergency else "[green]normal[/green]"
        return f"Profile: [bold]{self._profile}[/bold]\nMode: {mode}"


class ProcessTable(Container):
    """Container for the process data table."""

    DEFAULT_CSS = """
    ProcessTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._current_pids: set[int] = set()
        self._sort_key: SortKey = SortKey.MEM
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.CPU, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("GUARD", key="guard", width=9)
        table.add_column("Name", key="name")

    def update_processes(self, processes: tuple[ProcessSample, ...], protected: frozenset[str]) -> None:
        """
        Update the table with the heaviest processes.

        Uses update_cell for existing rows to avoid re-rendering the whole table.
        """
        table = self.query_one("#process-table", DataTable)
        shown = self._sort_processes(list(processes[:MAX_ROWS]))
        new_pids = {proc.pid for proc in shown}

        for pid in self._current_pids - new_pids:
            try:
                table.remove_row(str(pid))
            except Exception:
                pass  # Row may not exist

        for proc in shown:
            row_key = str(proc.pid)
            cells = self._cells(proc, protected)
            try:
                if proc.pid in self._current_pids:
                    for column, value in zip(("pid", "rss", "cpu", "guard", "name"), cells):
                        table.update_cell(row_key, column, value)
                else:
                    table.add_row(*cells, key=row_key)
            except Exception:
                pass  # Row changed underneath us

        self._current_pids = new_pids

    def _sort_processes(self, processes: list[ProcessSample]) -> list[ProcessSample]:
        key_func = {
            SortKey.MEM: lambda p: p.memory_bytes,
            SortKey.CPU: lambda p: p.cpu_percent,
            SortKey.PID: lambda p: p.pid,
            SortKey.NAME: lambda p: p.name.lower(),
        }
        return sorted(processes, key=key_func[self._sort_key], reverse=self._sort_reverse)

    @staticmethod
    def _cells(proc: ProcessSample, protected: frozenset[str]) -> tuple[str, ...]:
        if is_critical(proc.name):
            guard = "critical"
        elif proc.name in protected:
            guard = "protected"
        else:
            guard = ""
        return (
            str(proc.pid),
            format_bytes(proc.memory_bytes),
            f"{proc.cpu_percent:5.1f}",
            guard,
            proc.name[:40],
        )


class KillLogPanel(Static):
    """Most recent kill-log records."""

    DEFAULT_CSS = """
    KillLogPanel {
        height: 8;
        border: solid $secondary;
        padding: 0 1;
    }
    """

    def update_kills(self, lines: list[str]) -> None:
        self.records = list(lines)
        self.update("\n".join(self.records) if self.records else "[dim]No kills recorded[/dim]")


class KernApp(App):
    """Dashboard driving a Watchdog and rendering its state."""

    TITLE = "kern"
    SUB_TITLE = "Resource Watchdog"

    CSS = """
    Screen {
        layout: vertical;
    }

    #header-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }

    Horizontal {
        height: auto;
    }

    #load-info {
        width: 2fr;
        padding-right: 2;
    }

    #engine-info {
        width: 1fr;
        padding-left: 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("p", "next_profile", "Next profile"),
        ("f6", "sort", "Sort"),
    ]

    def __init__(self, service: WatchdogService, interval: float | None = None) -> None:
        super().__init__()
        self._service = service
        self._update_queue: Queue[CycleReport] = Queue()
        self._watchdog = Watchdog(
            service,
            interval=interval if interval is not None else service.config.monitor_interval,
            reports=self._update_queue,
        )

    def compose(self) -> ComposeResult:
        yield HeaderStats(id="header-stats")
        yield ProcessTable()
        yield KillLogPanel(id="kill-log")
        yield Footer()

    def on_mount(self) -> None:
        """Start the watchdog when the app is mounted."""
        self._watchdog.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the report queue and render the most recent cycle."""
        report = None
        while True:
            try:
                report = self._update_queue.get_nowait()
            except Empty:
                break

        if report is not None:
            self._update_ui(report)

    def _update_ui(self, report: CycleReport) -> None:
        # Render from the report only; the service lock may be held by a cycle
        profile_name = report.status.profile_name if report.status else ""
        emergency = report.status.emergency if report.status else False
        protected = report.profile.protected if report.profile else frozenset()

        try:
            self.query_one("#header-stats", HeaderStats).update_stats(
                report.snapshot, profile_name, emergency
            )
            self.query_one(ProcessTable).update_processes(
                report.snapshot.processes,
                protected | frozenset(self._service.config.protected_processes),
            )
            self.query_one("#kill-log", KillLogPanel).update_kills(
                self._service.get_recent_kills(6)
            )
        except Exception:
            pass  # Widgets may be gone during shutdown

    def action_sort(self) -> None:
        new_sort_key = self.query_one(ProcessTable).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    def action_next_profile(self) -> None:
        """Switch to the next profile in sorted order."""
        # Lookups wait on the service lock and activation may terminate processes
        self.run_worker(self._switch_to_next_profile, thread=True, exclusive=True)

    def _switch_to_next_profile(self) -> None:
        names = self._service.list_profiles()
        current = self._service.get_current_profile()
        self._switch_profile(names[(names.index(current) + 1) % len(names)])

    def _switch_profile(self, name: str) -> None:
        try:
            self._service.switch_profile(name)
        except KernError as e:
            self.call_from_thread(self.notify, str(e), severity="error")
            return
        self.call_from_thread(self.notify, f"Profile: {name}")

    def action_quit(self) -> None:
        self._watchdog.stop()
        self.exit()
