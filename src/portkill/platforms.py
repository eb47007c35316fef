"""
Platform backends.

Each backend knows how to list listening ports with the platform's own tool,
parse that tool's output, signal a process and check whether a pid is alive.
Exactly one backend is chosen at startup by select_backend(); nothing else in
portkill branches on the platform.
"""

import logging
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import NamedTuple

import psutil

from portkill.errors import KillFailure, ScanFailure
from portkill.models import Strength

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"


class Listing(NamedTuple):
    """One parsed line of enumeration output."""

    pid: int
    port: int
    name: str | None


def port_from_address(address: str) -> int:
    """Port number after the last ':' of an address such as '[::1]:3000'."""
    port = int(address.rsplit(":", 1)[-1])
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    return port


class PlatformBackend(ABC):
    """Enumerate, Signal and IsAlive for one operating system."""

    name = "base"
    # Whether enumerate() can restrict its query to given ports
    supports_port_filter = True

    def __init__(self, timeout: float = 10.0) -> None:
        """Initialize the backend with the enumeration timeout."""
        self.timeout = timeout

    @abstractmethod
    def command(self, ports: Sequence[int] | None) -> list[str]:
        """Build the enumeration command line; None lists every port."""

    @abstractmethod
    def parse(self, text: str) -> list[Listing]:
        """Parse enumeration output, skipping lines that do not fit."""

    def enumerate(self, ports: Sequence[int] | None = None) -> str:
        """
        Run the enumeration tool and return its standard output.

        Raises:
            ScanFailure: If the tool could not be run at all.
        """
        argv = self.command(ports)
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ScanFailure(f"failed to run {argv[0]}: {e}") from e

        # lsof exits 1 when nothing matches; that is an empty answer
        if result.returncode != 0 and result.stderr.strip():
            logger.debug(
                "%s exited with status %d: %s",
                argv[0],
                result.returncode,
                result.stderr.strip(),
            )
        return result.stdout

    def process_name(self, pid: int) -> str:
        """Best-effort executable name for a pid."""
        try:
            return psutil.Process(pid).name() or UNKNOWN_NAME
        except psutil.Error:
            return UNKNOWN_NAME

    def signal(self, pid: int, strength: Strength) -> None:
        """
        Ask a process to terminate.

        Raises:
            KillFailure: If the signal could not be delivered.
        """
        try:
            proc = psutil.Process(pid)
            if strength is Strength.FORCED:
                proc.kill()
            else:
                proc.terminate()
        except (psutil.Error, ValueError) as e:
            raise KillFailure(pid, strength.value, str(e) or type(e).__name__) from e

    def is_alive(self, pid: int) -> bool:
        """Whether a process with this pid exists and is not a zombie."""
        try:
            if not psutil.pid_exists(pid):
                return False
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, ValueError):
            return False
        except psutil.AccessDenied:
            # It exists, we just may not look at it
            return True


class LsofBackend(PlatformBackend):
    """macOS, Linux and other Unix systems, using lsof."""

    name = "lsof"
    MIN_FIELDS = 9

    def command(self, ports: Sequence[int] | None) -> list[str]:
        """One -i flag per port, or every TCP listener."""
        argv = ["lsof", "-sTCP:LISTEN", "-P", "-n"]
        if ports is None:
            argv.append("-iTCP")
        else:
            for port in ports:
                argv.extend(["-i", f":{port}"])
        return argv

    def parse(self, text: str) -> list[Listing]:
        """Parse lsof columns: COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME."""
        # COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME
        listings = []
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < self.MIN_FIELDS:
                continue
            try:
                pid = int(parts[1])
                port = port_from_address(parts[8])
            except ValueError:
                continue
            if pid <= 0:
                continue
            listings.append(Listing(pid=pid, port=port, name=parts[0]))
        return listings


class NetstatBackend(PlatformBackend):
    """Windows, using netstat and taskkill."""

    name = "netstat"
    supports_port_filter = False
    MIN_FIELDS = 5

    def command(self, ports: Sequence[int] | None) -> list[str]:
        """netstat cannot filter by port, so always list everything."""
        return ["netstat", "-ano", "-p", "TCP"]

    def parse(self, text: str) -> list[Listing]:
        """Parse LISTENING lines: Proto, Local Address, Foreign Address, State, PID."""
        # Proto  Local Address  Foreign Address  State  PID
        listings = []
        for line in text.splitlines():
            if "LISTENING" not in line:
                continue
            parts = line.split()
            if len(parts) < self.MIN_FIELDS:
                continue
            try:
                port = port_from_address(parts[1])
                pid = int(parts[4])
            except ValueError:
                continue
            if pid <= 0:
                continue
            listings.append(Listing(pid=pid, port=port, name=None))
        return listings

    def signal(self, pid: int, strength: Strength) -> None:
        """Graceful stop through taskkill; forced through psutil."""
        if strength is Strength.FORCED:
            super().signal(pid, strength)
            return

        try:
            result = subprocess.run(
                ["taskkill", "/PID", str(pid)],
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise KillFailure(pid, strength.value, str(e)) from e
        if result.returncode != 0:
            raise KillFailure(pid, strength.value, result.stderr.strip() or "taskkill failed")


def select_backend(platform: str | None = None, timeout: float = 10.0) -> PlatformBackend:
    """Pick the backend for the running (or given) platform."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        backend: PlatformBackend = NetstatBackend(timeout=timeout)
    else:
        backend = LsofBackend(timeout=timeout)
    logger.debug("Using %s backend for platform %s", backend.name, platform)
    return backend
