"""Resolve ports to the processes listening on them."""

import logging
import threading
from collections.abc import Iterable

import psutil

from portkill.errors import ScanFailure
from portkill.models import ProcessRecord, Snapshot
from portkill.platforms import Listing, PlatformBackend

logger = logging.getLogger(__name__)

CHUNK_SIZE = 100
LARGE_RANGE_THRESHOLD = 200


class PortScanner:
    """
    Port scanner that maps requested ports to listening processes.

    Small port sets are queried in fixed-size chunks; large sets use a single
    "list everything" query that is filtered afterwards, which keeps both the
    number of tool invocations and the command-line length bounded.
    """

    def __init__(
        self,
        backend: PlatformBackend,
        chunk_size: int = CHUNK_SIZE,
        large_range_threshold: int = LARGE_RANGE_THRESHOLD,
        enrich: bool = False,
    ) -> None:
        """
        Initialize the PortScanner.

        Args:
            backend: Platform backend used to enumerate listening ports.
            chunk_size: Ports per enumeration call for small port sets.
            large_range_threshold: Above this many ports, list everything once.
            enrich: Fill command line, working directory and usage via psutil.
        """
        self._backend = backend
        self._chunk_size = max(1, chunk_size)
        self._large_range_threshold = large_range_threshold
        self._enrich = enrich
        # Process objects kept across scans so cpu_percent() has a baseline
        self._processes: dict[int, psutil.Process] = {}
        self._processes_lock = threading.Lock()

    @property
    def backend(self) -> PlatformBackend:
        """The platform backend used for enumeration."""
        return self._backend

    def scan(self, target_ports: Iterable[int]) -> Snapshot:
        """
        Return a snapshot of the processes listening on the target ports.

        An empty target set returns an empty snapshot without running the
        platform tool. A tool that cannot be run contributes nothing; the
        failure is logged and the next scan tries again.
        """
        targets = set(target_ports)
        if not targets:
            return Snapshot.empty()
        if self._enrich:
            self._forget_exited()

        listings: list[Listing] = []
        for query in self._plan_queries(targets):
            try:
                text = self._backend.enumerate(query)
            except ScanFailure as e:
                logger.warning("Port scan failed: %s", e)
                continue
            listings.extend(self._backend.parse(text))

        records = (
            self._to_record(listing)
            for listing in listings
            if listing.port in targets
        )
        snapshot = Snapshot.from_records(records)
        logger.debug("Scanned %d ports, %d in use", len(targets), snapshot.count)
        return snapshot

    def _plan_queries(self, targets: set[int]) -> list[list[int] | None]:
        """Split the targets into enumeration queries; None means all ports."""
        if len(targets) > self._large_range_threshold or not self._backend.supports_port_filter:
            return [None]
        ordered = sorted(targets)
        return [
            ordered[i : i + self._chunk_size]
            for i in range(0, len(ordered), self._chunk_size)
        ]

    def _to_record(self, listing: Listing) -> ProcessRecord:
        name = listing.name or self._backend.process_name(listing.pid)
        if self._enrich:
            return self._describe(listing.pid, listing.port, name)
        return ProcessRecord(pid=listing.pid, port=listing.port, name=name)

    def _describe(self, pid: int, port: int, name: str) -> ProcessRecord:
        """
        Build a record with command line, working directory and usage.

        Uses psutil's oneshot() context manager for efficiency. Processes that
        vanish or deny access keep the plain record.
        """
        try:
            proc = self._process_for(pid)
            with proc.oneshot():
                cmdline = proc.cmdline()
                try:
                    cwd = proc.cwd() or None
                except psutil.AccessDenied:
                    cwd = None
                mem_info = proc.memory_info()
                return ProcessRecord(
                    pid=pid,
                    port=port,
                    name=name,
                    command_line=" ".join(cmdline) if cmdline else None,
                    working_directory=cwd,
                    cpu_percent=proc.cpu_percent(interval=None),
                    memory_rss=mem_info.rss,
                    memory_percent=proc.memory_percent(),
                )
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            with self._processes_lock:
                self._processes.pop(pid, None)
            return ProcessRecord(pid=pid, port=port, name=name)
        except psutil.AccessDenied:
            return ProcessRecord(pid=pid, port=port, name=name)

    def _process_for(self, pid: int) -> psutil.Process:
        """
        Return the cached Process for a pid, creating it on first sight.

        The first cpu_percent() call on a new Process object is always 0.0,
        so the same object is reused on every scan. A pid that now belongs
        to a different process gets a fresh object.
        """
        with self._processes_lock:
            proc = self._processes.get(pid)
            if proc is None or not proc.is_running():
                proc = psutil.Process(pid)
                self._processes[pid] = proc
            return proc

    def _forget_exited(self) -> None:
        """Drop cached process handles whose process has exited."""
        with self._processes_lock:
            for pid, proc in list(self._processes.items()):
                if not proc.is_running():
                    del self._processes[pid]
