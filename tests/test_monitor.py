"""Tests for the MonitorLoop class."""

import threading
import time
from queue import Queue

import pytest

from portkill.config import MonitorConfig
from portkill.killer import KillController
from portkill.models import BulkKillResult, ProcessRecord, Snapshot
from portkill.monitor import KillGuard, MonitorLoop, MonitorUpdate, ViewState
from portkill.scanner import PortScanner


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides) -> MonitorConfig:
    values = dict(
        ports=[3000, 8000, 5432],
        scan_interval=0.05,
        grace_period=0.0,
        settle_delay=0.0,
        kill_release_delay=0.0,
    )
    values.update(overrides)
    return MonitorConfig(**values)


def make_loop(backend, clock=None, config=None, queue=None) -> MonitorLoop:
    config = config or make_config()
    scanner = PortScanner(backend)
    controller = KillController(backend, scanner, grace_period=0.0, sleep=lambda s: None)
    return MonitorLoop(
        scanner,
        controller,
        config,
        update_queue=queue,
        clock=clock or FakeClock(),
        sleep=lambda s: None,
    )


class FakeHost:
    """View host recording the order of rebuild steps."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.events: list[str] = []
        self.fail_on = fail_on

    async def detach(self) -> None:
        self.events.append("detach")
        if self.fail_on == "detach":
            raise RuntimeError("detach blew up")

    async def attach(self, snapshot: Snapshot) -> dict[str, int]:
        self.events.append("attach")
        if self.fail_on == "attach":
            raise RuntimeError("attach blew up")
        return {f"item-{port}": port for port in snapshot}


class TestMonitorLoopThread:
    """Tests for starting and stopping the scheduler thread."""

    def test_monitor_creation(self, backend):
        """Test MonitorLoop can be instantiated."""
        loop = make_loop(backend)

        assert not loop.is_running
        assert not loop.kill_in_flight
        assert loop.config.scan_interval == 0.05

    def test_monitor_start_stop(self, backend):
        """Test MonitorLoop can be started and stopped."""
        loop = make_loop(backend)

        loop.start()
        assert loop.is_running

        loop.stop()
        assert not loop.is_running

    def test_monitor_start_idempotent(self, backend):
        """Test starting an already running loop is safe."""
        loop = make_loop(backend)

        loop.start()
        thread1 = loop._thread

        loop.start()  # Should not create a new thread
        thread2 = loop._thread

        assert thread1 is thread2
        loop.stop()

    def test_daemon_thread(self, backend):
        """Test the scheduler thread is a daemon thread."""
        loop = make_loop(backend)

        loop.start()

        try:
            assert loop._thread is not None
            assert loop._thread.daemon is True
            assert loop._thread.name == "MonitorLoop"
        finally:
            loop.stop()

    def test_monitor_publishes_updates(self, backend):
        """Test the loop pushes updates to the queue."""
        queue: Queue[MonitorUpdate] = Queue()
        loop = make_loop(backend, queue=queue)

        loop.start()

        try:
            update = queue.get(timeout=2.0)
            assert isinstance(update, MonitorUpdate)
            assert update.should_rebuild is True
            assert set(update.snapshot) == {3000, 8000, 5432}
            second = queue.get(timeout=2.0)
            assert second.should_rebuild is False
        finally:
            loop.stop()

    def test_loop_survives_tick_errors(self, backend):
        """Test the loop keeps running when a tick raises."""
        queue: Queue[MonitorUpdate] = Queue()
        loop = make_loop(backend, queue=queue)
        calls = {"n": 0}
        original = loop._scanner.scan

        def flaky(ports):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("unexpected")
            return original(ports)

        loop._scanner.scan = flaky
        loop.start()

        try:
            assert queue.get(timeout=2.0) is not None
            assert loop.is_running
        finally:
            loop.stop()


class TestDebounce:
    """Tests for the publish decision."""

    def test_first_change_publishes(self, backend):
        """Test the first change is published at once."""
        loop = make_loop(backend)

        update = loop.tick()

        assert update.should_rebuild is True
        assert update.snapshot.count == 3
        assert update.status.text.startswith("3")

    def test_unchanged_count_does_not_publish(self, backend):
        """Test an unchanged count is not republished."""
        clock = FakeClock()
        loop = make_loop(backend, clock)
        loop.tick()
        clock.advance(60)

        assert loop.tick().should_rebuild is False

    def test_empty_start_does_not_publish(self, make_backend):
        """Test nothing is published while nothing listens."""
        loop = make_loop(make_backend())

        update = loop.tick()

        assert update.should_rebuild is False
        assert update.snapshot.count == 0

    def test_minimum_interval(self, backend):
        """Test changes are held until the minimum interval passes."""
        clock = FakeClock()
        loop = make_loop(backend, clock)
        loop.tick()

        backend.listings.append((444, 3001, "ruby"))
        backend.alive.add(444)
        loop._config.ports.append(3001)
        clock.advance(5)
        held = loop.tick()

        assert held.should_rebuild is False
        assert held.snapshot.count == 3
        # The status still reflects the latest scan
        assert held.status.text.startswith("4")

        clock.advance(5)
        released = loop.tick()

        assert released.should_rebuild is True
        assert released.snapshot.count == 4

    def test_recent_interaction_holds_publish(self, backend):
        """Test a recent interaction holds the publish."""
        clock = FakeClock()
        loop = make_loop(backend, clock)
        loop.record_interaction()

        assert loop.tick().should_rebuild is False

        clock.advance(2)
        assert loop.tick().should_rebuild is True

    def test_kill_in_flight_holds_publish(self, backend):
        """Test a kill in flight holds the publish."""
        loop = make_loop(backend)
        assert loop._guard.try_acquire()

        try:
            assert loop.tick().should_rebuild is False
        finally:
            loop._guard.release()

        assert loop.tick().should_rebuild is True

    def test_drop_to_zero_publishes_empty(self, backend):
        """Test losing every process publishes an empty view."""
        clock = FakeClock()
        loop = make_loop(backend, clock)
        loop.tick()

        backend.listings.clear()
        clock.advance(10)
        update = loop.tick()

        assert update.should_rebuild is True
        assert update.snapshot.count == 0

    def test_filter_rules_apply(self, backend):
        """Test the configured filter rules are applied."""
        loop = make_loop(backend, config=make_config(ignore_groups={"Database"}))

        update = loop.tick()

        assert set(update.snapshot) == {3000, 8000}


class TestValidation:
    """Tests for liveness validation before publishing."""

    def test_dead_processes_are_dropped(self, backend):
        """Test dead processes are dropped before publishing."""
        backend.alive.discard(222)
        loop = make_loop(backend)

        update = loop.tick()

        assert update.should_rebuild is True
        assert set(update.snapshot) == {3000, 5432}

    def test_published_never_exceeds_raw(self, backend):
        """Test validation never adds records."""
        loop = make_loop(backend)
        raw = loop._scanner.scan(loop.config.ports)
        backend.alive.clear()

        assert loop.validate(raw).count <= raw.count
        assert loop.validate(raw).count == 0

    def test_validate_unchanged_returns_same_snapshot(self, backend):
        """Test validation returns the same snapshot when all are alive."""
        loop = make_loop(backend)
        raw = loop._scanner.scan(loop.config.ports)

        assert loop.validate(raw) is raw


class TestPoll:
    """Tests for MonitorLoop.poll."""

    def test_poll_empty(self, backend):
        """Test poll returns None with no updates."""
        assert make_loop(backend).poll() is None

    def test_poll_keeps_rebuild_flag(self, backend):
        """Test poll keeps a rebuild request from an older update."""
        clock = FakeClock()
        loop = make_loop(backend, clock)
        loop.tick()
        clock.advance(1)
        loop.tick()

        update = loop.poll()

        assert update is not None
        assert update.should_rebuild is True
        assert loop.poll() is None


class TestKillDispatch:
    """Tests for the in-flight guard and kill workers."""

    def blocking_loop(self, backend):
        loop = make_loop(backend)
        started = threading.Event()
        release = threading.Event()
        active = {"now": 0, "max": 0}
        lock = threading.Lock()

        def slow_kill(pids):
            with lock:
                active["now"] += 1
                active["max"] = max(active["max"], active["now"])
            started.set()
            release.wait(timeout=5.0)
            with lock:
                active["now"] -= 1
            return BulkKillResult(count=len(list(pids)))

        loop._controller.kill_pids = slow_kill
        return loop, started, release, active

    def test_second_request_is_dropped(self, backend):
        """Test a request during a kill is dropped."""
        loop, started, release, _ = self.blocking_loop(backend)

        assert loop.request_kill_pid(111) is True
        assert started.wait(timeout=2.0)
        assert loop.kill_in_flight

        assert loop.request_kill_pid(222) is False
        assert loop.request_kill_all() is False

        release.set()
        assert loop.wait_for_kill(timeout=2.0)
        assert not loop.kill_in_flight
        assert [r.count for r in loop.drain_kill_results()] == [1]

        # Retried after the flag clears
        assert loop.request_kill_pid(222) is True
        assert loop.wait_for_kill(timeout=2.0)

    def test_scheduler_keeps_ticking_during_kill(self, backend):
        """Test updates keep arriving while a kill worker is blocked."""
        queue: Queue[MonitorUpdate] = Queue()
        loop = make_loop(backend, queue=queue)
        started = threading.Event()
        release = threading.Event()

        def slow_kill(pids):
            started.set()
            release.wait(timeout=5.0)
            return BulkKillResult(count=len(list(pids)))

        loop._controller.kill_pids = slow_kill
        loop.start()

        try:
            assert loop.request_kill_pid(111) is True
            assert started.wait(timeout=2.0)
            while not queue.empty():
                queue.get_nowait()

            during_kill = [queue.get(timeout=2.0) for _ in range(3)]

            assert loop.kill_in_flight
            assert len(during_kill) == 3
            assert all(isinstance(update, MonitorUpdate) for update in during_kill)
        finally:
            release.set()
            loop.wait_for_kill(timeout=2.0)
            loop.stop()

        assert not loop.kill_in_flight

    def test_at_most_one_active(self, backend):
        """Test concurrent requests start at most one kill."""
        loop, started, release, active = self.blocking_loop(backend)

        accepted = []
        threads = [
            threading.Thread(target=lambda: accepted.append(loop.request_kill_pid(111)))
            for _ in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert accepted.count(True) == 1
        started.wait(timeout=2.0)
        release.set()
        loop.wait_for_kill(timeout=2.0)
        assert active["max"] == 1

    def test_request_records_interaction(self, backend):
        """Test a kill request counts as an interaction."""
        clock = FakeClock()
        loop = make_loop(backend, clock)
        loop.request_kill_item("missing")

        assert loop.tick().should_rebuild is False

    def test_kill_item_resolves_port(self, backend):
        """Test a view item kill targets the process on its port."""
        loop = make_loop(backend)
        loop.view.replace(
            Snapshot.from_records([ProcessRecord(pid=111, port=3000, name="node")]),
            {"row-1": 3000},
        )

        assert loop.request_kill_item("row-1") is True
        assert loop.wait_for_kill(timeout=2.0)

        results = loop.drain_kill_results()
        assert len(results) == 1
        assert results[0].count == 1
        assert results[0].outcomes[0].pid == 111
        assert 111 not in backend.alive

    def test_unknown_item_is_ignored(self, backend):
        """Test an unknown view item kills nothing."""
        loop = make_loop(backend)

        assert loop.request_kill_item("nope") is False
        assert backend.signals == []

    def test_kill_all_spares_ignored(self, backend):
        """Test kill-all spares ignored processes."""
        loop = make_loop(backend, config=make_config(ignore_processes={"postgres"}))

        assert loop.request_kill_all() is True
        assert loop.wait_for_kill(timeout=2.0)

        assert backend.alive == {333}

    def test_worker_failure_clears_guard(self, backend):
        """Test a failing kill worker still clears the guard."""
        loop = make_loop(backend)

        def broken(pids):
            raise RuntimeError("kaboom")

        loop._controller.kill_pids = broken

        assert loop.request_kill_pid(1) is True
        assert loop.wait_for_kill(timeout=2.0)
        assert not loop.kill_in_flight


class TestSharedState:
    """Tests for KillGuard and ViewState."""

    def test_guard_is_test_and_set(self):
        """Test KillGuard has one holder at a time."""
        guard = KillGuard()

        assert guard.try_acquire() is True
        assert guard.is_set
        assert guard.try_acquire() is False
        guard.release()
        assert not guard.is_set

    def test_view_state_swaps_pair(self):
        """Test ViewState stores a read-only copy of the pair."""
        state = ViewState()
        snapshot = Snapshot.from_records([ProcessRecord(pid=5, port=4000, name="go")])
        items = {"a": 4000}

        state.replace(snapshot, items)
        items["b"] = 1
        got_snapshot, got_items = state.get()

        assert got_snapshot is snapshot
        assert dict(got_items) == {"a": 4000}
        assert state.record_for("a").pid == 5
        assert state.record_for("b") is None

        with pytest.raises(TypeError):
            got_items["c"] = 2  # type: ignore[index]

    def test_view_state_consistent_under_contention(self):
        """Test readers never see a snapshot and map from different views."""
        state = ViewState()
        stop = threading.Event()
        mismatches = []

        def writer():
            n = 0
            while not stop.is_set():
                n += 1
                port = 1000 + n % 100
                state.replace(
                    Snapshot.from_records([ProcessRecord(pid=n, port=port, name="x")]),
                    {"item": port},
                )

        def reader():
            while not stop.is_set():
                snapshot, items = state.get()
                if items and items["item"] not in snapshot:
                    mismatches.append(items["item"])

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for thread in threads:
            thread.start()
        time.sleep(0.3)
        stop.set()
        for thread in threads:
            thread.join()

        assert mismatches == []


class TestRebuild:
    """Tests for the supervised teardown-then-rebuild."""

    @pytest.mark.asyncio
    async def test_detach_before_attach(self, backend):
        """Test the old view is detached before the new one is attached."""
        loop = make_loop(backend)
        host = FakeHost()
        snapshot = Snapshot.from_records([ProcessRecord(pid=111, port=3000, name="node")])

        result = await loop.rebuild_view(host, snapshot)

        assert result.ok is True
        assert result.count == 1
        assert host.events == ["detach", "attach"]
        published, items = loop.view.get()
        assert published is snapshot
        assert dict(items) == {"item-3000": 3000}

    @pytest.mark.asyncio
    async def test_settle_delay_between_steps(self, backend):
        """Test the settle delay passes between detach and attach."""
        loop = make_loop(backend, config=make_config(settle_delay=0.05))
        host = FakeHost()
        stamps = []
        original_attach = host.attach

        async def timed_attach(snapshot):
            stamps.append(time.monotonic())
            return await original_attach(snapshot)

        host.attach = timed_attach
        start = time.monotonic()
        await loop.rebuild_view(host, Snapshot.empty())

        assert stamps[0] - start >= 0.04

    @pytest.mark.asyncio
    async def test_attach_failure_is_captured(self, backend):
        """Test an attach failure is returned, not raised."""
        loop = make_loop(backend)
        loop.view.replace(
            Snapshot.from_records([ProcessRecord(pid=1, port=1, name="a")]), {"old": 1}
        )

        result = await loop.rebuild_view(FakeHost(fail_on="attach"), Snapshot.empty())

        assert result.ok is False
        assert "attach blew up" in result.error
        # The old view is gone, so its items must not resolve any more
        assert loop.view.port_for("old") is None

    @pytest.mark.asyncio
    async def test_detach_failure_keeps_state(self, backend):
        """Test a detach failure leaves the view state alone."""
        loop = make_loop(backend)
        loop.view.replace(
            Snapshot.from_records([ProcessRecord(pid=1, port=1, name="a")]), {"old": 1}
        )
        host = FakeHost(fail_on="detach")

        result = await loop.rebuild_view(host, Snapshot.empty())

        assert result.ok is False
        assert host.events == ["detach"]
        assert loop.view.port_for("old") == 1
