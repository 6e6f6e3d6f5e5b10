"""sessiontop - session board and entry point."""

import argparse
import asyncio
import logging
import os
import sys
from enum import Enum
from pathlib import Path

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.logging import TextualHandler
from textual.widgets import DataTable, Footer, Static
from textual.widgets.data_table import CellDoesNotExist, RowDoesNotExist

from sessiontop.config import MonitorConfig
from sessiontop.coordinator import ReconciliationCoordinator
from sessiontop.hooks import install_hooks
from sessiontop.models import SessionRecord, SessionStatus, StoreChange, StoreStats
from sessiontop.server import create_server

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s [%(name)s] %(message)s"


class SortKey(Enum):
    """Sort keys for the session table."""

    STATUS = "status"
    CPU = "cpu"
    MEM = "mem"
    PID = "pid"


def format_directory(path: str | None, width: int = 40) -> str:
    """Shorten a directory for display, keeping its tail."""
    if not path:
        return "-"
    home = str(Path.home())
    if path == home or path.startswith(home + os.sep):
        path = "~" + path[len(home):]
    if len(path) > width:
        return "…" + path[-(width - 1):]
    return path


class SessionSummary(Static):
    """Header line with aggregate session counts."""

    DEFAULT_CSS = """
    SessionSummary {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._stats = StoreStats(total=0, running=0, idle=0, placeholders=0)

    def update_stats(self, stats: StoreStats) -> None:
        """Update the displayed counts."""
        self._stats = stats
        self.update(self.render_stats())

    def render_stats(self) -> str:
        """Render the summary line markup."""
        s = self._stats
        if s.total == 0:
            return "No sessions"
        text = f"Sessions: {s.total}  [green]Running: {s.running}[/green]  [dim]Idle: {s.idle}[/dim]"
        if s.placeholders:
            text += f"  [yellow]Unbound: {s.placeholders}[/yellow]"
        return text


class SessionTable(Container):
    """Container for the session data table."""

    DEFAULT_CSS = """
    SessionTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    _COLUMN_KEYS = ("pid", "name", "status", "cpu", "mem", "uptime", "dir")

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._current_pids: set[int] = set()
        self._sort_key: SortKey = SortKey.STATUS
        self._sort_reverse: bool = False

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key in (SortKey.CPU, SortKey.MEM)
        return self._sort_key

    def compose(self) -> ComposeResult:
        """Compose the session table."""
        yield DataTable(id="session-table")

    def on_mount(self) -> None:
        table = self.query_one("#session-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PID", key="pid", width=8)
        table.add_column("SESSION", key="name", width=18)
        table.add_column("STATUS", key="status", width=9)
        table.add_column("CPU%", key="cpu", width=7)
        table.add_column("MEM%", key="mem", width=7)
        table.add_column("UPTIME", key="uptime", width=12)
        table.add_column("DIRECTORY", key="dir")

    def update_sessions(self, sessions: list[SessionRecord], rebuild: bool = False) -> None:
        """
        Update the session table from a full snapshot.

        Uses update_cell for rows already shown so the cursor stays put.
        New sessions are appended; ``rebuild`` redraws every row in sorted order.
        """
        table = self.query_one("#session-table", DataTable)
        sorted_sessions = self._sort_sessions(sessions)
        new_pids = {record.pid for record in sorted_sessions}

        if rebuild:
            table.clear()
            self._current_pids = set()

        # Remove rows for sessions that are gone
        for pid in self._current_pids - new_pids:
            try:
                table.remove_row(str(pid))
            except RowDoesNotExist:
                pass

        for record in sorted_sessions:
            row_key = str(record.pid)
            if record.pid in self._current_pids:
                self._update_row(table, row_key, record)
            else:
                table.add_row(*self._cells(record), key=row_key)

        self._current_pids = new_pids

    def _update_row(self, table: DataTable, row_key: str, record: SessionRecord) -> None:
        """Update an existing row cell by cell."""
        try:
            for column_key, value in zip(self._COLUMN_KEYS, self._cells(record)):
                table.update_cell(row_key, column_key, value)
        except CellDoesNotExist:
            logger.debug(f"Row {row_key} vanished during update")

    def _sort_sessions(self, sessions: list[SessionRecord]) -> list[SessionRecord]:
        """Sort sessions based on the current sort key."""
        key_func = {
            # Running first, then oldest first
            SortKey.STATUS: lambda r: (r.status != SessionStatus.RUNNING, r.start_time),
            SortKey.CPU: lambda r: r.cpu_usage,
            SortKey.MEM: lambda r: r.memory_usage,
            SortKey.PID: lambda r: r.pid,
        }
        return sorted(sessions, key=key_func[self._sort_key], reverse=self._sort_reverse)

    @staticmethod
    def _cells(record: SessionRecord) -> tuple[str, ...]:
        if record.status == SessionStatus.RUNNING:
            status = "[green]running[/green]"
        else:
            status = "[dim]idle[/dim]"
        pid = "?" if record.is_placeholder else str(record.pid)
        return (
            pid,
            record.display_name[:18],
            status,
            f"{record.cpu_usage:5.1f}",
            f"{record.memory_usage:5.1f}",
            record.running_time,
            format_directory(record.working_dir),
        )


class SessiontopApp(App):
    """Main sessiontop application."""

    TITLE = "sessiontop"
    SUB_TITLE = "AI Session Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #summary {
        dock: top;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("f6", "sort", "Sort"),
    ]

    def __init__(
        self,
        config: MonitorConfig | None = None,
        coordinator: ReconciliationCoordinator | None = None,
        serve_hooks: bool = True,
    ) -> None:
        super().__init__()
        self._config = config or MonitorConfig.from_env()
        self._coordinator = coordinator or ReconciliationCoordinator(self._config)
        self._serve_hooks = serve_hooks
        self._server = None
        self._server_task: asyncio.Task | None = None
        self._unsubscribe = None
        self._stopped = False

    @property
    def coordinator(self) -> ReconciliationCoordinator:
        """Get the coordinator driving this board."""
        return self._coordinator

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield SessionSummary(id="summary")
        yield SessionTable()
        yield Footer()

    async def on_mount(self) -> None:
        """Subscribe to store changes and start the coordinator and hook server."""
        self._unsubscribe = self._coordinator.subscribe(self._on_store_change)
        await self._coordinator.start()
        if self._serve_hooks:
            self._server = create_server(self._coordinator, self._config)
            self._server_task = asyncio.create_task(self._serve(), name="hook-server")
        self._update_ui(self._coordinator.snapshot())

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except (OSError, SystemExit) as e:
            # uvicorn exits instead of raising when it cannot bind
            logger.error(f"Hook server on {self._config.host}:{self._config.port} stopped: {e!r}")

    def _on_store_change(self, change: StoreChange) -> None:
        self._update_ui(list(change.sessions))

    def _update_ui(self, sessions: list[SessionRecord]) -> None:
        try:
            self.query_one("#summary", SessionSummary).update_stats(self._coordinator.stats())
            self.query_one(SessionTable).update_sessions(sessions)
        except Exception:
            # Widgets not mounted yet, or already torn down
            logger.debug("Skipped UI refresh", exc_info=True)

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        table = self.query_one(SessionTable)
        new_sort_key = table.cycle_sort()
        table.update_sessions(self._coordinator.snapshot(), rebuild=True)
        self.notify(f"Sort: {new_sort_key.value.upper()}")

    async def _stop_services(self) -> None:
        """Stop the hook server and the coordinator, once."""
        if self._stopped:
            return
        self._stopped = True
        if self._unsubscribe is not None:
            self._unsubscribe()
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            await asyncio.gather(self._server_task, return_exceptions=True)
        await self._coordinator.stop()

    async def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        await self._stop_services()
        self.exit()

    async def on_unmount(self) -> None:
        await self._stop_services()


def setup_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Send logs to a file, or to the textual devtools console so they never corrupt the TUI."""
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if log_file:
        handler: logging.Handler = logging.FileHandler(Path(log_file).expanduser(), encoding="utf-8")
    else:
        handler = TextualHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)

    logger.info(f"Logging configured: level={level}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sessiontop", description="Monitor live AI-assistant sessions")
    parser.add_argument("--port", type=int, help="Port for the hook endpoint (default 8998)")
    parser.add_argument("--process-name", help="Executable name to scan for (default: claude)")
    parser.add_argument("--no-server", action="store_true", help="Do not listen for hooks")
    parser.add_argument(
        "--install-hooks",
        action="store_true",
        help="Configure the application's settings.json to post hooks here, then exit",
    )
    parser.add_argument("--settings", default="~/.claude/settings.json", help="settings.json used by --install-hooks")
    parser.add_argument("--log-level", help="Logging level (default: $LOG_LEVEL or INFO)")
    parser.add_argument("--log-file", help="Write logs to this file")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the sessiontop application."""
    args = build_parser().parse_args(argv)
    config = MonitorConfig.from_env(port=args.port, process_name=args.process_name)

    if args.install_hooks:
        logging.basicConfig(level=(args.log_level or "INFO").upper(), format=LOG_FORMAT)
        changed = install_hooks(args.settings, config.hooks_base_url)
        print("Hooks installed" if changed else "Hooks already installed")
        return 0

    setup_logging(args.log_level, args.log_file)
    app = SessiontopApp(config, serve_hooks=not args.no_server)
    app.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
