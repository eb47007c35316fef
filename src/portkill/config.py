"""Runtime configuration and logging setup for portkill."""

import argparse
import logging
import os
from dataclasses import dataclass, field

from textual.logging import TextualHandler

from portkill.filters import FilterRuleSet

DEFAULT_START_PORT = 2000
DEFAULT_END_PORT = 6000
LOG_LEVEL_ENV = "PORTKILL_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_port_spec(spec: str) -> list[int]:
    """
    Expand a port specification such as "3000,8000-8010" into ports.

    Raises:
        ValueError: On malformed entries, reversed ranges or ports outside
            1-65535.
    """
    ports: dict[int, None] = {}
    for raw in spec.split(","):
        item = raw.strip()
        if not item:
            continue
        if "-" in item:
            start_str, _, end_str = item.partition("-")
            start, end = int(start_str), int(end_str)
            if start > end:
                raise ValueError(f"invalid port range {item!r}: start is after end")
        else:
            start = end = int(item)
        if start < 1 or end > 0xFFFF:
            raise ValueError(f"port out of range in {item!r}")
        for port in range(start, end + 1):
            ports.setdefault(port, None)
    return list(ports)


def _split_names(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(slots=True)
class MonitorConfig:
    """All tunables of the scanner, kill controller and monitor loop."""

    ports: list[int] = field(
        default_factory=lambda: list(range(DEFAULT_START_PORT, DEFAULT_END_PORT + 1))
    )
    ignore_ports: set[int] = field(default_factory=set)
    ignore_processes: set[str] = field(default_factory=set)
    ignore_patterns: list[str] = field(default_factory=list)
    ignore_groups: set[str] = field(default_factory=set)
    only_groups: set[str] | None = None
    scan_interval: float = 5.0
    min_publish_interval: float = 10.0
    interaction_cooldown: float = 2.0
    grace_period: float = 0.5
    # Floors for the host toolkit, not proven synchronization
    settle_delay: float = 0.05
    kill_release_delay: float = 1.0
    chunk_size: int = 100
    large_range_threshold: int = 200
    enumerate_timeout: float = 10.0
    enrich: bool = False

    def ruleset(self) -> FilterRuleSet:
        """Build the FilterRuleSet for the configured rules."""
        return FilterRuleSet.build(
            ignore_ports=self.ignore_ports,
            ignore_processes=self.ignore_processes,
            ignore_patterns=self.ignore_patterns,
            ignore_groups=self.ignore_groups,
            only_groups=self.only_groups,
        )

    def port_description(self) -> str:
        """Short description of the monitored ports."""
        if not self.ports:
            return "no ports"
        ordered = sorted(self.ports)
        if ordered == list(range(ordered[0], ordered[-1] + 1)) and len(ordered) > 2:
            return f"ports {ordered[0]}-{ordered[-1]}"
        return "ports " + ", ".join(str(p) for p in ordered)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "MonitorConfig":
        """Build a config from parsed command-line arguments."""
        config = cls()
        if args.ports:
            config.ports = parse_port_spec(args.ports)
        if args.ignore_ports:
            config.ignore_ports = set(parse_port_spec(args.ignore_ports))
        config.ignore_processes = set(_split_names(args.ignore_processes))
        config.ignore_patterns = _split_names(args.ignore_patterns)
        config.ignore_groups = set(_split_names(args.ignore_groups))
        if args.only_groups:
            config.only_groups = set(_split_names(args.only_groups))
        config.enrich = bool(args.verbose)
        return config


def resolve_log_level(verbose: bool = False, level: str | None = None) -> int:
    """Verbose wins, then the explicit level, then the environment."""
    if verbose:
        return logging.DEBUG
    name = (level or os.environ.get(LOG_LEVEL_ENV) or "info").upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {name}")
    return resolved


def setup_logging(level: int = logging.INFO, tui: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        level: Root log level.
        tui: Route records through Textual's handler so they do not draw
            over the running application.
    """
    handler: logging.Handler = TextualHandler() if tui else logging.StreamHandler()
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=[handler], force=True)
