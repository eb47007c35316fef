"""Exceptions raised inside portkill."""


class PortKillError(Exception):
    """Base class for portkill errors."""


class ScanFailure(PortKillError):
    """The port enumeration tool could not be invoked."""


class KillFailure(PortKillError):
    """A termination signal could not be delivered."""

    def __init__(self, pid: int, strength: str, reason: str) -> None:
        """Initialize KillFailure."""
        super().__init__(f"could not send {strength} signal to PID {pid}: {reason}")
        self.pid = pid
        self.strength = strength
        self.reason = reason


class FilterRuleError(PortKillError, ValueError):
    """A filter rule could not be compiled."""
