"""Ignore and allow rules deciding which processes are visible."""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from portkill.errors import FilterRuleError
from portkill.models import ProcessRecord, Snapshot

logger = logging.getLogger(__name__)


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """
    Compile a glob-style pattern matching a whole string.

    '*' matches any run of characters and '?' a single character; every
    other character is literal.
    """
    try:
        regex = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
        return re.compile(f"^{regex}$", re.DOTALL)
    except (re.error, TypeError) as e:
        raise FilterRuleError(f"invalid ignore pattern {pattern!r}: {e}") from e


@dataclass(slots=True, frozen=True)
class FilterStats:
    """How many rules of each kind a rule set holds."""

    ignore_ports: int = 0
    ignore_processes: int = 0
    ignore_patterns: int = 0
    ignore_groups: int = 0
    only_groups: int = 0

    @property
    def is_active(self) -> bool:
        """Whether any rule is configured."""
        return any(
            (
                self.ignore_ports,
                self.ignore_processes,
                self.ignore_patterns,
                self.ignore_groups,
                self.only_groups,
            )
        )

    @property
    def description(self) -> str:
        """One-line summary for the status header."""
        labels = [
            (self.ignore_ports, "ports"),
            (self.ignore_processes, "processes"),
            (self.ignore_patterns, "patterns"),
            (self.ignore_groups, "groups"),
            (self.only_groups, "only-groups"),
        ]
        parts = [f"{count} {label}" for count, label in labels if count]
        if not parts:
            return "no filters"
        return "filtering: " + ", ".join(parts)


@dataclass(slots=True, frozen=True)
class FilterRuleSet:
    """
    Immutable set of ignore rules plus an optional only-groups allow list.

    Rules are checked in a fixed order and the first match wins: ignored
    ports, ignored process names, ignore patterns (against the name and the
    command), ignored groups, then the only-groups allow list.
    """

    ignore_ports: frozenset[int] = frozenset()
    ignore_processes: frozenset[str] = frozenset()
    ignore_patterns: tuple[str, ...] = ()
    ignore_groups: frozenset[str] = frozenset()
    only_groups: frozenset[str] | None = None
    _compiled: tuple[re.Pattern[str], ...] = field(init=False, default=(), repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ignore_ports", frozenset(self.ignore_ports))
        object.__setattr__(self, "ignore_processes", frozenset(self.ignore_processes))
        object.__setattr__(self, "ignore_patterns", tuple(self.ignore_patterns))
        object.__setattr__(self, "ignore_groups", frozenset(self.ignore_groups))
        if self.only_groups is not None:
            object.__setattr__(self, "only_groups", frozenset(self.only_groups))
        object.__setattr__(
            self, "_compiled", tuple(compile_pattern(p) for p in self.ignore_patterns)
        )

    @classmethod
    def build(
        cls,
        ignore_ports: Iterable[int] = (),
        ignore_processes: Iterable[str] = (),
        ignore_patterns: Iterable[str] = (),
        ignore_groups: Iterable[str] = (),
        only_groups: Iterable[str] | None = None,
    ) -> "FilterRuleSet":
        """Build a rule set from any iterables; None leaves only-groups unset."""
        return cls(
            ignore_ports=frozenset(ignore_ports),
            ignore_processes=frozenset(ignore_processes),
            ignore_patterns=tuple(ignore_patterns),
            ignore_groups=frozenset(ignore_groups),
            only_groups=None if only_groups is None else frozenset(only_groups),
        )

    def should_ignore(self, record: ProcessRecord) -> bool:
        """Whether the record is hidden by these rules."""
        if record.port in self.ignore_ports:
            return True
        if record.name in self.ignore_processes:
            return True
        command = record.command
        for pattern in self._compiled:
            if pattern.match(record.name) or pattern.match(command):
                return True
        if record.group is not None and record.group in self.ignore_groups:
            return True
        if self.only_groups is not None:
            if record.group is None or record.group not in self.only_groups:
                return True
        return False

    def stats(self) -> FilterStats:
        """Count the rules of each kind."""
        return FilterStats(
            ignore_ports=len(self.ignore_ports),
            ignore_processes=len(self.ignore_processes),
            ignore_patterns=len(self._compiled),
            ignore_groups=len(self.ignore_groups),
            only_groups=len(self.only_groups) if self.only_groups is not None else 0,
        )


def apply(ruleset: FilterRuleSet, snapshot: Snapshot) -> Snapshot:
    """Return the snapshot without the records the rule set ignores."""
    visible = [port for port, record in snapshot.items() if not ruleset.should_ignore(record)]
    if len(visible) != snapshot.count:
        logger.debug("Filtered out %d of %d processes", snapshot.count - len(visible), snapshot.count)
    return snapshot.restrict(visible)
