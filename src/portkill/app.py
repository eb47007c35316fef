"""portkill - Textual application and command-line entry point."""

import argparse
import logging
import sys

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from portkill import filters
from portkill.config import MonitorConfig, resolve_log_level, setup_logging
from portkill.killer import KillController
from portkill.models import BulkKillResult, KillOutcome, Snapshot, StatusInfo
from portkill.monitor import MonitorLoop
from portkill.platforms import select_backend
from portkill.scanner import PortScanner

logger = logging.getLogger(__name__)


def format_bytes(size: int | None) -> str:
    """Format bytes as human-readable string."""
    if size is None:
        return "-"
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def describe_kill(result: BulkKillResult) -> str:
    """One-line summary of a kill result."""
    if result.count == 0:
        return "No processes found to kill"
    graceful = len(result.by_outcome(KillOutcome.GRACEFUL))
    forced = len(result.by_outcome(KillOutcome.FORCED))
    unknown = len(result.by_outcome(KillOutcome.UNKNOWN))
    return (
        f"Killed {result.count} process(es): "
        f"{graceful} graceful, {forced} forced, {unknown} unknown"
    )


class StatusHeader(Static):
    """Header widget showing the current port status."""

    DEFAULT_CSS = """
    StatusHeader {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, description: str = "", *args, **kwargs) -> None:
        """Initialize StatusHeader."""
        super().__init__("Scanning...", *args, **kwargs)
        self._description = description
        self.last_status: StatusInfo | None = None

    def update_status(self, status: StatusInfo) -> None:
        """Show the status derived from the latest scan."""
        self.last_status = status
        self.update(f"[b]{status.text}[/b]  {status.tooltip}\n[dim]{self._description}[/dim]")


class PortView(Container):
    """
    Container holding the port table.

    The table is never edited in place: a rebuild removes it completely and
    mounts a fresh one, driven by MonitorLoop.rebuild_view().
    """

    DEFAULT_CSS = """
    PortView {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize PortView."""
        super().__init__(*args, **kwargs)
        self._table: DataTable | None = None
        self._generation = 0
        # Last highlighted (table, row); a new table starts on its first row
        self._highlighted: tuple[DataTable | None, int] = (None, 0)

    @property
    def table(self) -> DataTable | None:
        """The currently attached table, if any."""
        return self._table

    @property
    def selected_item(self) -> str | None:
        """Item id of the highlighted row, if any."""
        table = self._table
        if table is None or table.row_count == 0:
            return None
        try:
            row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        except Exception:
            return None
        return row_key.value

    def cursor_moved(self, table: DataTable, row: int) -> bool:
        """Whether a highlight means the cursor moved, not a table appearing."""
        last_table, last_row = self._highlighted
        if table is last_table and row == last_row:
            return False
        self._highlighted = (table, row)
        return True

    async def detach(self) -> None:
        """Remove the current table entirely."""
        if self._table is not None:
            table, self._table = self._table, None
            await table.remove()

    async def attach(self, snapshot: Snapshot) -> dict[str, int]:
        """Mount a new table for the snapshot and return its item-id to port map."""
        self._generation += 1
        table = DataTable(id=f"port-table-{self._generation}", cursor_type="row")
        self._highlighted = (table, 0)
        await self.mount(table)
        self._table = table

        table.add_column("PORT", key="port", width=7)
        table.add_column("PID", key="pid", width=8)
        table.add_column("GROUP", key="group", width=11)
        table.add_column("PROJECT", key="project", width=16)
        table.add_column("CPU%", key="cpu", width=7)
        table.add_column("RES", key="rss", width=8)
        table.add_column("Command", key="command")

        items: dict[str, int] = {}
        for port in sorted(snapshot):
            record = snapshot[port]
            item_id = f"g{self._generation}-{port}"
            cpu = f"{record.cpu_percent:5.1f}" if record.cpu_percent is not None else "-"
            table.add_row(
                str(port),
                str(record.pid),
                record.group or "-",
                (record.project or "-")[:16],
                cpu,
                format_bytes(record.memory_rss),
                record.command[:60],
                key=item_id,
            )
            items[item_id] = port
        return items


class PortKillApp(App):
    """Main portkill application."""

    TITLE = "portkill"
    SUB_TITLE = "Development Port Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #status-header {
        dock: top;
        height: auto;
        min-height: 3;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("k", "kill_selected", "Kill"),
        ("a", "kill_all", "Kill all"),
    ]

    def __init__(
        self,
        config: MonitorConfig | None = None,
        monitor: MonitorLoop | None = None,
    ) -> None:
        """Initialize the PortKillApp."""
        super().__init__()
        self._config = config or MonitorConfig()
        if monitor is None:
            backend = select_backend(timeout=self._config.enumerate_timeout)
            monitor = MonitorLoop.for_backend(backend, self._config)
        self._monitor = monitor
        self._pending: Snapshot | None = None
        self._rebuilding = False

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        description = (
            f"Monitoring {self._config.port_description()}, "
            f"{self._monitor.ruleset.stats().description}"
        )
        yield StatusHeader(description, id="status-header")
        yield PortView(id="port-view")
        yield Footer()

    def on_mount(self) -> None:
        """Start the monitor loop when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    async def _check_for_updates(self) -> None:
        """Pick up monitor updates and kill results, rebuilding when told to."""
        for result in self._monitor.drain_kill_results():
            self.notify(describe_kill(result))

        update = self._monitor.poll()
        if update is not None:
            try:
                self.query_one(StatusHeader).update_status(update.status)
            except Exception:
                logger.debug("Status header not mounted yet")
            if update.should_rebuild:
                self._pending = update.snapshot

        if self._pending is None or self._rebuilding:
            return

        snapshot, self._pending = self._pending, None
        self._rebuilding = True
        try:
            result = await self._monitor.rebuild_view(self.query_one(PortView), snapshot)
        finally:
            self._rebuilding = False
        if not result.ok:
            self.notify(f"View rebuild failed: {result.error}", severity="error")

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        """Count cursor moves as user interaction, but not a rebuild's own."""
        if self._rebuilding:
            return
        if not self.query_one(PortView).cursor_moved(event.data_table, event.cursor_row):
            return
        self._monitor.record_interaction()

    def action_kill_selected(self) -> None:
        """Kill the process behind the highlighted row."""
        item_id = self.query_one(PortView).selected_item
        if item_id is None:
            self.notify("No process selected")
            return
        if self._monitor.request_kill_item(item_id):
            self.notify("Killing selected process...")
        else:
            self.notify("A kill is already running, try again shortly", severity="warning")

    def action_kill_all(self) -> None:
        """Kill every visible process on the monitored ports."""
        if self._monitor.request_kill_all():
            self.notify("Killing all processes...")
        else:
            self.notify("A kill is already running, try again shortly", severity="warning")

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._monitor.stop()
        self.exit()


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="portkill",
        description="Find and free ports blocking your dev work.",
    )
    parser.add_argument("--ports", help="ports and ranges to monitor, e.g. 3000,8000-8010")
    parser.add_argument("--ignore-ports", help="ports and ranges to ignore")
    parser.add_argument("--ignore-processes", help="comma-separated process names to ignore")
    parser.add_argument("--ignore-patterns", help="comma-separated name patterns (* and ?) to ignore")
    parser.add_argument("--ignore-groups", help="comma-separated process groups to ignore")
    parser.add_argument("--only-groups", help="comma-separated process groups to show exclusively")
    parser.add_argument("--verbose", action="store_true", help="debug logging and detailed process info")
    parser.add_argument("--log-level", help="log level (default: info, or $PORTKILL_LOG_LEVEL)")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--list", action="store_true", help="print the processes on the ports and exit")
    mode.add_argument("--kill-all", action="store_true", help="kill every visible process on the ports and exit")
    return parser


def print_snapshot(snapshot: Snapshot) -> None:
    """Print the snapshot grouped by process group."""
    if not snapshot:
        print("No processes detected")
        return
    print("Detected processes:")
    for group, records in sorted(snapshot.by_group().items(), key=lambda item: item[0] or "~"):
        print(f"  {group or 'Other'} ({len(records)} processes):")
        for record in records:
            print(f"    Port {record.port}: {record.display_name} (PID {record.pid})")


def main(argv: list[str] | None = None) -> None:
    """Entry point for the portkill command."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = MonitorConfig.from_args(args)
        ruleset = config.ruleset()
        level = resolve_log_level(args.verbose, args.log_level)
    except ValueError as e:
        parser.error(str(e))

    if args.list or args.kill_all:
        setup_logging(level)
        backend = select_backend(timeout=config.enumerate_timeout)
        scanner = PortScanner(
            backend,
            chunk_size=config.chunk_size,
            large_range_threshold=config.large_range_threshold,
            enrich=config.enrich,
        )
        if args.list:
            print_snapshot(filters.apply(ruleset, scanner.scan(config.ports)))
            return
        controller = KillController(backend, scanner, grace_period=config.grace_period)
        result = controller.kill_bulk(config.ports, ruleset)
        print(describe_kill(result))
        for outcome in result.outcomes:
            print(f"  PID {outcome.pid}: {outcome.outcome.value}")
        sys.exit(0 if not result.by_outcome(KillOutcome.UNKNOWN) else 1)

    setup_logging(level, tui=True)
    logger.info("Monitoring %s", config.port_description())
    app = PortKillApp(config)
    app.run()


if __name__ == "__main__":
    main()
