"""Data models for portkill."""

import time
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PureWindowsPath
from types import MappingProxyType

PROJECT_HINTS = (
    "project",
    "app",
    "service",
    "api",
    "frontend",
    "backend",
    "client",
    "server",
)


def classify_group(name: str, command: str) -> str | None:
    """Classify a process by runtime or toolchain."""
    name_lower = name.lower()
    command_lower = command.lower()

    if "node" in name_lower or "node" in command_lower:
        return "Node.js"
    if "python" in name_lower or "python" in command_lower:
        return "Python"
    if "java" in name_lower or "java" in command_lower:
        return "Java"
    if (
        name_lower in ("go", "golang")
        or command_lower.startswith("go ")
        or " go " in command_lower
    ):
        return "Go"
    if "rust" in name_lower or "cargo" in command_lower:
        return "Rust"
    if "php" in name_lower or "php" in command_lower:
        return "PHP"
    if "ruby" in name_lower or "ruby" in command_lower:
        return "Ruby"
    if "docker" in name_lower or "docker" in command_lower:
        return "Docker"
    if "nginx" in name_lower or "apache" in command_lower:
        return "Web Server"
    if any(db in name_lower for db in ("postgres", "mysql", "redis")):
        return "Database"
    return None


def extract_project(working_directory: str | None) -> str | None:
    """Guess a project name from a working directory path."""
    if not working_directory:
        return None

    # PureWindowsPath splits on both separators
    path = PureWindowsPath(working_directory)
    parts = [p for p in path.parts if p != path.anchor]
    if parts and parts[-1] != "~":
        return parts[-1]

    for part in reversed(parts):
        if part in ("", "~", "home", "Users"):
            continue
        if any(hint in part for hint in PROJECT_HINTS):
            return part
    return None


@dataclass(slots=True, frozen=True)
class ProcessRecord:
    """Immutable record of one OS process listening on one port."""

    pid: int
    port: int
    name: str
    command_line: str | None = None
    working_directory: str | None = None
    container_id: str | None = None
    container_name: str | None = None
    cpu_percent: float | None = None
    memory_rss: int | None = None  # Bytes
    memory_percent: float | None = None
    # Derived from the fields above in __post_init__
    group: str | None = field(init=False, default=None)
    project: str | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        if self.pid <= 0:
            raise ValueError(f"pid must be positive, got {self.pid}")
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")
        object.__setattr__(self, "group", classify_group(self.name, self.command))
        object.__setattr__(self, "project", extract_project(self.working_directory))

    @property
    def command(self) -> str:
        """Full command line when known, otherwise the executable name."""
        return self.command_line or self.name

    @property
    def short_name(self) -> str:
        """Executable basename without common binary extensions."""
        name = self.name.replace("\\", "/").rsplit("/", 1)[-1]
        for ext in (".exe", ".dll", ".so"):
            if name.endswith(ext):
                name = name[: -len(ext)]
        return name

    @property
    def display_name(self) -> str:
        """Name with project, group and port, for lists."""
        parts = [self.name]
        if self.project:
            parts.append(f"[{self.project}]")
        if self.group:
            parts.append(f"({self.group})")
        parts.append(f":{self.port}")
        return " ".join(parts)

    @property
    def detailed_description(self) -> str:
        """Longer description including command and directory."""
        parts = [f"{self.short_name} on port {self.port}"]
        if self.command_line and self.command_line != self.name:
            parts.append(f"({self.command_line})")
        if self.working_directory:
            parts.append(f"in {self.working_directory}")
        if self.container_id and self.container_name:
            parts.append(f"[Docker: {self.container_name}]")
        return " ".join(parts)


class Snapshot(Mapping[int, ProcessRecord]):
    """
    Immutable point-in-time mapping from port to the process listening on it.

    Each port appears at most once. When built from records that repeat a
    port, the first record observed for that port is kept.
    """

    __slots__ = ("_records", "captured_at")

    def __init__(
        self,
        records: Mapping[int, ProcessRecord] | None = None,
        captured_at: float | None = None,
    ) -> None:
        """Initialize Snapshot; captured_at defaults to now."""
        self._records = MappingProxyType(dict(records or {}))
        self.captured_at = time.time() if captured_at is None else captured_at

    @classmethod
    def from_records(
        cls, records: Iterable[ProcessRecord], captured_at: float | None = None
    ) -> "Snapshot":
        """Build a snapshot keeping the first record seen for every port."""
        by_port: dict[int, ProcessRecord] = {}
        for record in records:
            by_port.setdefault(record.port, record)
        return cls(by_port, captured_at)

    @classmethod
    def empty(cls) -> "Snapshot":
        """A snapshot with no records."""
        return cls()

    def __getitem__(self, port: int) -> ProcessRecord:
        return self._records[port]

    def __iter__(self) -> Iterator[int]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __repr__(self) -> str:
        return f"Snapshot({dict(self._records)!r})"

    @property
    def count(self) -> int:
        """Number of ports in the snapshot."""
        return len(self._records)

    def pids(self) -> list[int]:
        """Distinct pids in ascending port order."""
        seen: dict[int, None] = {}
        for port in sorted(self._records):
            seen.setdefault(self._records[port].pid, None)
        return list(seen)

    def pid_identity(self) -> frozenset[tuple[int, int]]:
        """The (port, pid) pairs, for comparing two snapshots."""
        return frozenset((port, rec.pid) for port, rec in self._records.items())

    def by_group(self) -> dict[str | None, list[ProcessRecord]]:
        """Records grouped by process group, in port order."""
        groups: dict[str | None, list[ProcessRecord]] = {}
        for port in sorted(self._records):
            record = self._records[port]
            groups.setdefault(record.group, []).append(record)
        return groups

    def restrict(self, keep: Iterable[int]) -> "Snapshot":
        """Return a snapshot with only the given ports, same capture time."""
        wanted = set(keep)
        return Snapshot(
            {port: rec for port, rec in self._records.items() if port in wanted},
            self.captured_at,
        )


class KillOutcome(Enum):
    """Which escalation stage ended a kill attempt."""

    GRACEFUL = "graceful"
    FORCED = "forced"
    UNKNOWN = "unknown"


class KillState(Enum):
    """States a single kill attempt moves through."""

    RUNNING = "running"
    SIGNAL_SENT = "signal_sent"
    WAITING_GRACE = "waiting_grace"
    STILL_ALIVE = "still_alive"
    GONE = "gone"
    ESCALATED = "escalated"
    TERMINATED = "terminated"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        """Whether a kill attempt ends in this state."""
        return self in (KillState.TERMINATED, KillState.UNKNOWN)


class Strength(Enum):
    """Termination signal strength."""

    GRACEFUL = "graceful"
    FORCED = "forced"


@dataclass(slots=True, frozen=True)
class KillResult:
    """Outcome of one kill attempt against one pid."""

    pid: int
    outcome: KillOutcome
    state: KillState
    escalated: bool
    trace: tuple[KillState, ...] = ()

    @property
    def terminated(self) -> bool:
        """Whether the process was confirmed terminated."""
        return self.state is KillState.TERMINATED


@dataclass(slots=True, frozen=True)
class BulkKillResult:
    """Aggregated outcome of a bulk kill."""

    count: int
    outcomes: tuple[KillResult, ...] = ()

    def by_outcome(self, outcome: KillOutcome) -> list[KillResult]:
        """Results with the given outcome."""
        return [result for result in self.outcomes if result.outcome is outcome]


@dataclass(slots=True, frozen=True)
class StatusInfo:
    """Short status text and tooltip describing a snapshot."""

    text: str
    tooltip: str

    @classmethod
    def from_count(cls, count: int) -> "StatusInfo":
        """Plain status for a process count."""
        if count == 0:
            return cls(text="0", tooltip="No development processes running")
        return cls(text=str(count), tooltip=f"{count} development process(es) running")

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "StatusInfo":
        """Status with resource and container indicators."""
        if not snapshot:
            return cls.from_count(0)

        high_cpu = sum(1 for rec in snapshot.values() if (rec.cpu_percent or 0.0) > 50.0)
        high_mem = sum(1 for rec in snapshot.values() if (rec.memory_percent or 0.0) > 10.0)
        containers = sum(1 for rec in snapshot.values() if rec.container_id)
        groups = sorted({rec.group for rec in snapshot.values() if rec.group})

        text_parts = [str(snapshot.count)]
        tooltip_parts = [f"{snapshot.count} development process(es) running"]
        if groups:
            tooltip_parts.append("Groups: " + ", ".join(groups))
        if high_cpu:
            text_parts.append(f"cpu:{high_cpu}")
            tooltip_parts.append(f"{high_cpu} high CPU processes")
        if high_mem:
            text_parts.append(f"mem:{high_mem}")
            tooltip_parts.append(f"{high_mem} high memory processes")
        if containers:
            text_parts.append(f"docker:{containers}")
            tooltip_parts.append(f"{containers} Docker containers")

        return cls(text=" ".join(text_parts), tooltip=" | ".join(tooltip_parts))
