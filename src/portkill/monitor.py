"""Monitor loop for portkill."""

import asyncio
import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from queue import Empty, Queue
from types import MappingProxyType
from typing import Protocol

from portkill import filters
from portkill.config import MonitorConfig
from portkill.filters import FilterRuleSet
from portkill.killer import KillController
from portkill.models import BulkKillResult, ProcessRecord, Snapshot, StatusInfo
from portkill.platforms import PlatformBackend
from portkill.scanner import PortScanner

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class MonitorUpdate:
    """What the display layer gets from one scheduler tick."""

    snapshot: Snapshot  # Last published, liveness-validated view
    should_rebuild: bool
    status: StatusInfo  # Describes the latest scan, published or not


@dataclass(slots=True, frozen=True)
class RebuildResult:
    """Tagged result of one supervised view rebuild."""

    ok: bool
    count: int = 0
    error: str | None = None


class ViewHost(Protocol):
    """The display layer's side of a view rebuild."""

    async def detach(self) -> None:
        """Remove the current view entirely."""

    async def attach(self, snapshot: Snapshot) -> Mapping[str, int]:
        """Show a new view and return its item-id to port mapping."""


class KillGuard:
    """Flag marking a kill in flight; at most one holder at a time."""

    def __init__(self) -> None:
        """Initialize KillGuard with the flag clear."""
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Set the flag if it is clear; never blocks."""
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        """Clear the flag."""
        self._lock.release()

    @property
    def is_set(self) -> bool:
        """Whether a kill is in flight."""
        return self._lock.locked()


class ViewState:
    """
    The published snapshot and the view's item-id to port map.

    Both are replaced together under one lock, so a reader always gets a
    pair that belongs to the same view.
    """

    def __init__(self) -> None:
        """Initialize an empty view state."""
        self._lock = threading.Lock()
        self._snapshot = Snapshot.empty()
        self._items: Mapping[str, int] = MappingProxyType({})

    def get(self) -> tuple[Snapshot, Mapping[str, int]]:
        """Return the snapshot and item map as one consistent pair."""
        with self._lock:
            return self._snapshot, self._items

    def replace(self, snapshot: Snapshot, items: Mapping[str, int]) -> None:
        """Swap in a new snapshot and item map together."""
        frozen = MappingProxyType(dict(items))
        with self._lock:
            self._snapshot = snapshot
            self._items = frozen

    def clear(self) -> None:
        """Forget the current view."""
        self.replace(Snapshot.empty(), {})

    def port_for(self, item_id: str) -> int | None:
        """Port behind a view item, or None."""
        with self._lock:
            return self._items.get(item_id)

    def record_for(self, item_id: str) -> ProcessRecord | None:
        """Record behind a view item, or None."""
        with self._lock:
            port = self._items.get(item_id)
            if port is None:
                return None
            return self._snapshot.get(port)


class MonitorLoop:
    """
    Scheduler that scans, filters and decides when the view is rebuilt.

    Runs in a separate daemon thread and pushes a MonitorUpdate to a
    thread-safe Queue on every tick. Kill requests run on their own worker
    thread so a tick never waits on a grace period, and only one kill runs
    at a time; requests made while one is running are dropped.
    """

    def __init__(
        self,
        scanner: PortScanner,
        controller: KillController,
        config: MonitorConfig | None = None,
        update_queue: "Queue[MonitorUpdate] | None" = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the MonitorLoop.

        Args:
            scanner: Resolves monitored ports to processes.
            controller: Carries out kill requests.
            config: Ports, filter rules and timing; defaults if omitted.
            update_queue: Queue to push updates to.
            clock: Monotonic time source for the debounce windows.
            sleep: Used by kill workers for the release delay.
        """
        self._scanner = scanner
        self._controller = controller
        self._config = config or MonitorConfig()
        self._ruleset = self._config.ruleset()
        self._queue: Queue[MonitorUpdate] = update_queue if update_queue is not None else Queue()
        self.kill_results: Queue[BulkKillResult] = Queue()
        self._clock = clock
        self._sleep = sleep

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._worker: threading.Thread | None = None
        self._guard = KillGuard()
        self._view = ViewState()

        self._interaction_lock = threading.Lock()
        self._last_interaction: float | None = None

        # Owned by the scheduler thread
        self._published = Snapshot.empty()
        self._last_count = 0
        self._last_publish_at: float | None = None

    @classmethod
    def for_backend(cls, backend: PlatformBackend, config: MonitorConfig) -> "MonitorLoop":
        """Wire a scanner, kill controller and loop around one backend."""
        scanner = PortScanner(
            backend,
            chunk_size=config.chunk_size,
            large_range_threshold=config.large_range_threshold,
            enrich=config.enrich,
        )
        controller = KillController(backend, scanner, grace_period=config.grace_period)
        return cls(scanner, controller, config)

    @property
    def config(self) -> MonitorConfig:
        """The loop's configuration."""
        return self._config

    @property
    def ruleset(self) -> FilterRuleSet:
        """Filter rules built from the configuration."""
        return self._ruleset

    @property
    def view(self) -> ViewState:
        """The published snapshot and view item map."""
        return self._view

    @property
    def is_running(self) -> bool:
        """Check if the scheduler thread is running."""
        return self._thread is not None and self._thread.is_alive()

    @property
    def kill_in_flight(self) -> bool:
        """Whether a kill worker is running."""
        return self._guard.is_set

    def start(self) -> None:
        """Start the scheduler thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="MonitorLoop",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the scheduler thread.

        A kill already running is left to finish on its own.

        Args:
            timeout: How long to wait for the thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def wait_for_kill(self, timeout: float | None = None) -> bool:
        """Wait for the current kill worker; True once none is running."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout=timeout)
            return not worker.is_alive()
        return True

    def _poll_loop(self) -> None:
        """Main scheduling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Monitor tick failed")

            self._stop_event.wait(timeout=self._config.scan_interval)

    def tick(self) -> MonitorUpdate:
        """Scan, filter, and publish a new view if the debounce rules allow."""
        raw = self._scanner.scan(self._config.ports)
        visible = filters.apply(self._ruleset, raw)
        count = visible.count
        should_rebuild = False

        if count != self._last_count:
            now = self._clock()
            enough_time_passed = (
                self._last_publish_at is None
                or now - self._last_publish_at >= self._config.min_publish_interval
            )
            not_killing = not self._guard.is_set
            no_recent_interaction = self._interaction_quiet(now)

            if enough_time_passed and not_killing and no_recent_interaction:
                logger.info("Process count changed from %d to %d, publishing", self._last_count, count)
                validated = self.validate(visible)
                self._published = validated
                self._last_count = validated.count
                self._last_publish_at = now
                should_rebuild = True
            else:
                logger.info(
                    "Process count changed from %d to %d but skipping publish "
                    "(killing: %s, time passed: %s, no recent interaction: %s)",
                    self._last_count,
                    count,
                    not not_killing,
                    enough_time_passed,
                    no_recent_interaction,
                )
        elif visible.pid_identity() != self._published.pid_identity():
            logger.debug("Process identities changed at unchanged count %d", count)

        update = MonitorUpdate(
            snapshot=self._published,
            should_rebuild=should_rebuild,
            status=StatusInfo.from_snapshot(visible),
        )
        self._queue.put(update)
        return update

    def validate(self, snapshot: Snapshot) -> Snapshot:
        """Drop records whose process is no longer alive."""
        backend = self._scanner.backend
        alive = [port for port, record in snapshot.items() if backend.is_alive(record.pid)]
        if len(alive) != snapshot.count:
            logger.debug(
                "Process count validation: %d processes reported, %d still running",
                snapshot.count,
                len(alive),
            )
            return snapshot.restrict(alive)
        return snapshot

    def poll(self) -> MonitorUpdate | None:
        """
        Return the newest update since the last poll, or None.

        If any drained update asked for a rebuild, the returned one does too.
        """
        latest: MonitorUpdate | None = None
        rebuild = False
        while True:
            try:
                update = self._queue.get_nowait()
            except Empty:
                break
            latest = update
            rebuild = rebuild or update.should_rebuild

        if latest is not None and rebuild and not latest.should_rebuild:
            latest = dataclasses.replace(latest, should_rebuild=True)
        return latest

    def drain_kill_results(self) -> list[BulkKillResult]:
        """Return every finished kill result since the last call."""
        results = []
        while True:
            try:
                results.append(self.kill_results.get_nowait())
            except Empty:
                return results

    def record_interaction(self) -> None:
        """Note that the user just interacted with the view."""
        with self._interaction_lock:
            self._last_interaction = self._clock()

    def _interaction_quiet(self, now: float) -> bool:
        with self._interaction_lock:
            last = self._last_interaction
        return last is None or now - last >= self._config.interaction_cooldown

    def request_kill_pid(self, pid: int) -> bool:
        """Kill one pid on a worker; False if dropped."""
        return self._dispatch(
            f"PID {pid}",
            lambda: self._controller.kill_pids([pid]),
        )

    def request_kill_item(self, item_id: str) -> bool:
        """
        Kill whatever currently listens on the port behind a view item.

        The owner is looked up again at kill time, so a pid that changed
        since the view was built is not targeted by mistake.
        """
        port = self._view.port_for(item_id)
        if port is None:
            self.record_interaction()
            logger.warning("View item %s has no port mapping, ignoring kill request", item_id)
            return False
        return self._dispatch(
            f"port {port}",
            lambda: self._controller.kill_bulk([port], self._ruleset),
        )

    def request_kill_ports(self, ports: Iterable[int]) -> bool:
        """Kill every visible process on the given ports; False if dropped."""
        port_list = sorted(set(ports))
        return self._dispatch(
            f"{len(port_list)} ports",
            lambda: self._controller.kill_bulk(port_list, self._ruleset),
        )

    def request_kill_all(self) -> bool:
        """Kill every visible process on the monitored ports."""
        return self.request_kill_ports(self._config.ports)

    def _dispatch(self, description: str, job: Callable[[], BulkKillResult]) -> bool:
        """Run a kill job on a worker thread unless one is already running."""
        self.record_interaction()
        if not self._guard.try_acquire():
            logger.info("Kill request for %s dropped: a kill is already in flight", description)
            return False

        logger.info("Starting kill for %s", description)
        worker = threading.Thread(
            target=self._run_kill,
            args=(description, job),
            daemon=True,
            name="KillWorker",
        )
        try:
            worker.start()
        except RuntimeError:
            self._guard.release()
            logger.exception("Could not start kill worker for %s", description)
            return False
        self._worker = worker
        return True

    def _run_kill(self, description: str, job: Callable[[], BulkKillResult]) -> None:
        try:
            result = job()
            self.kill_results.put(result)
            logger.info("Kill for %s completed: %d processes", description, result.count)
            # Keep the guard a little longer so the view settles before a rebuild
            self._sleep(self._config.kill_release_delay)
        except Exception:
            logger.exception("Kill for %s failed", description)
        finally:
            self._guard.release()

    async def rebuild_view(self, host: ViewHost, snapshot: Snapshot) -> RebuildResult:
        """
        Replace the displayed view with one built from the snapshot.

        The old view is fully detached, a settle delay passes, and only then
        is the new view attached; the view is never swapped in place. Any
        failure is captured in the returned result.
        """
        detached = False
        try:
            await host.detach()
            detached = True
            await asyncio.sleep(self._config.settle_delay)
            items = await host.attach(snapshot)
        except Exception as e:
            logger.error("View rebuild failed: %s", e, exc_info=True)
            if detached:
                self._view.clear()
            return RebuildResult(ok=False, error=str(e) or type(e).__name__)

        self._view.replace(snapshot, items)
        logger.info("View rebuilt for %d processes", snapshot.count)
        return RebuildResult(ok=True, count=snapshot.count)
