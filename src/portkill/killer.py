"""Terminate processes with a graceful-then-forced escalation."""

import logging
import time
from collections.abc import Callable, Iterable

from portkill import filters
from portkill.errors import KillFailure
from portkill.filters import FilterRuleSet
from portkill.models import BulkKillResult, KillOutcome, KillResult, KillState, Strength
from portkill.platforms import PlatformBackend
from portkill.scanner import PortScanner

logger = logging.getLogger(__name__)

GRACE_PERIOD = 0.5


class KillController:
    """
    Kills single processes and whole port sets.

    A kill sends a graceful signal, waits a fixed grace period, and sends a
    forced signal only if the process is still alive. It never raises: every
    attempt ends in a classified KillResult.
    """

    def __init__(
        self,
        backend: PlatformBackend,
        scanner: PortScanner | None = None,
        grace_period: float = GRACE_PERIOD,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the KillController.

        Args:
            backend: Platform backend that delivers signals.
            scanner: Resolves ports to pids for bulk kills.
            grace_period: Seconds to wait before escalating.
            sleep: Used for the grace period wait.
        """
        self._backend = backend
        self._scanner = scanner or PortScanner(backend)
        self._grace_period = grace_period
        self._sleep = sleep

    @property
    def grace_period(self) -> float:
        """Seconds waited between the graceful and forced signal."""
        return self._grace_period

    def kill_single(self, pid: int) -> KillResult:
        """Terminate one pid, escalating to a forced kill when needed."""
        trace = [KillState.RUNNING]
        if pid <= 0:
            logger.warning("Refusing to signal invalid PID %d", pid)
            trace.append(KillState.UNKNOWN)
            return KillResult(
                pid=pid,
                outcome=KillOutcome.UNKNOWN,
                state=KillState.UNKNOWN,
                escalated=False,
                trace=tuple(trace),
            )

        logger.info("Killing process PID %d (graceful)", pid)

        try:
            self._backend.signal(pid, Strength.GRACEFUL)
        except KillFailure as e:
            # The process may already be gone; still check below
            logger.warning("%s (process may already be terminated)", e)
        trace.append(KillState.SIGNAL_SENT)

        trace.append(KillState.WAITING_GRACE)
        self._sleep(self._grace_period)

        if not self._backend.is_alive(pid):
            trace.extend((KillState.GONE, KillState.TERMINATED))
            logger.info("Process %d terminated gracefully", pid)
            return KillResult(
                pid=pid,
                outcome=KillOutcome.GRACEFUL,
                state=KillState.TERMINATED,
                escalated=False,
                trace=tuple(trace),
            )

        trace.append(KillState.STILL_ALIVE)
        logger.info("Process %d still running, sending forced kill", pid)
        try:
            self._backend.signal(pid, Strength.FORCED)
        except KillFailure as e:
            logger.warning("%s (process may be protected)", e)
            trace.append(KillState.UNKNOWN)
            return KillResult(
                pid=pid,
                outcome=KillOutcome.UNKNOWN,
                state=KillState.UNKNOWN,
                escalated=False,
                trace=tuple(trace),
            )

        trace.extend((KillState.ESCALATED, KillState.TERMINATED))
        logger.info("Forced kill sent to PID %d", pid)
        return KillResult(
            pid=pid,
            outcome=KillOutcome.FORCED,
            state=KillState.TERMINATED,
            escalated=True,
            trace=tuple(trace),
        )

    def kill_pids(self, pids: Iterable[int]) -> BulkKillResult:
        """Kill each pid in turn; one failure never stops the rest."""
        ordered = list(dict.fromkeys(pids))
        outcomes = []
        for pid in ordered:
            try:
                outcomes.append(self.kill_single(pid))
            except Exception:
                logger.exception("Unexpected error killing PID %d", pid)
                outcomes.append(
                    KillResult(
                        pid=pid,
                        outcome=KillOutcome.UNKNOWN,
                        state=KillState.UNKNOWN,
                        escalated=False,
                        trace=(KillState.RUNNING, KillState.UNKNOWN),
                    )
                )
        return BulkKillResult(count=len(ordered), outcomes=tuple(outcomes))

    def kill_bulk(self, ports: Iterable[int], ruleset: FilterRuleSet) -> BulkKillResult:
        """Kill every visible process currently listening on the given ports."""
        port_list = sorted(set(ports))
        if not port_list:
            logger.info("No ports specified")
            return BulkKillResult(count=0)

        snapshot = filters.apply(ruleset, self._scanner.scan(port_list))
        pids = snapshot.pids()
        if not pids:
            logger.info("No processes found to kill (all were ignored or none found)")
            return BulkKillResult(count=0)

        logger.info("Found %d processes to kill after filtering", len(pids))
        result = self.kill_pids(pids)
        logger.info(
            "Finished killing processes: %d graceful, %d forced, %d unknown",
            len(result.by_outcome(KillOutcome.GRACEFUL)),
            len(result.by_outcome(KillOutcome.FORCED)),
            len(result.by_outcome(KillOutcome.UNKNOWN)),
        )
        return result
