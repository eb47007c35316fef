"""Shared fixtures for portkill tests."""

from collections.abc import Iterable, Sequence

import pytest

from portkill.errors import KillFailure, ScanFailure
from portkill.models import Strength
from portkill.platforms import LsofBackend

LSOF_HEADER = "COMMAND     PID   USER   FD   TYPE DEVICE SIZE/OFF NODE NAME"


class FakeBackend(LsofBackend):
    """
    Backend serving canned listings as lsof text, with scripted signals.

    Processes listed in `stubborn` ignore the graceful signal; all others
    exit on it. Pids in `fail_signals` refuse every signal.
    """

    name = "fake"

    def __init__(
        self,
        listings: Iterable[tuple[int, int, str]] = (),
        stubborn: Iterable[int] = (),
        fail_signals: Iterable[int] = (),
        fail_scan: bool = False,
        supports_port_filter: bool = True,
    ) -> None:
        super().__init__(timeout=1.0)
        self.listings = list(listings)
        self.alive = {pid for pid, _, _ in self.listings}
        self.stubborn = set(stubborn)
        self.fail_signals = set(fail_signals)
        self.fail_scan = fail_scan
        self.supports_port_filter = supports_port_filter
        self.queries: list[list[int] | None] = []
        self.signals: list[tuple[int, Strength]] = []
        self.alive_checks: list[int] = []

    def enumerate(self, ports: Sequence[int] | None = None) -> str:
        self.queries.append(None if ports is None else list(ports))
        if self.fail_scan:
            raise ScanFailure("fake tool missing")
        wanted = None if ports is None else set(ports)
        lines = [LSOF_HEADER]
        for pid, port, name in self.listings:
            if wanted is None or port in wanted:
                lines.append(f"{name} {pid} dev 23u IPv4 0x1 0t0 TCP *:{port} (LISTEN)")
        return "\n".join(lines)

    def signal(self, pid: int, strength: Strength) -> None:
        self.signals.append((pid, strength))
        if pid in self.fail_signals:
            raise KillFailure(pid, strength.value, "operation not permitted")
        if strength is Strength.FORCED or pid not in self.stubborn:
            self.alive.discard(pid)

    def is_alive(self, pid: int) -> bool:
        self.alive_checks.append(pid)
        return pid in self.alive

    def process_name(self, pid: int) -> str:
        return f"proc{pid}"


@pytest.fixture
def make_backend():
    """Factory for FakeBackend instances."""
    return FakeBackend


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend(
        listings=[
            (111, 3000, "node"),
            (222, 8000, "python3"),
            (333, 5432, "postgres"),
        ]
    )
