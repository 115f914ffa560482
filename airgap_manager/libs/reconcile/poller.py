"""
Readiness Poller

Evaluates a readiness predicate on a fixed interval until it reports ready,
reports an error, or the timeout elapses. An optional remediation callable
runs before every evaluation.
"""

import logging
import threading
import time
from typing import Callable, Optional

from ..core.exceptions import OperationCancelled, TransientError
from .models import CheckResult, ReadinessCheck, ReadinessStatus, RemediationOutcome, WaitOutcome, WaitResult

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked at poll cycle boundaries"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, context: str = "") -> None:
        if self._event.is_set():
            message = f"{context}: cancelled" if context else "Operation cancelled"
            raise OperationCancelled(message)


class ReadinessPoller:
    """Polls readiness checks with an injectable clock and sleep"""

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 cancel_token: Optional[CancellationToken] = None):
        """
        Initialize poller

        Args:
            clock: Monotonic time source in seconds
            sleep: Sleep function
            cancel_token: Token checked before remediation and before every sleep
        """
        self.clock = clock
        self.sleep = sleep
        self.cancel_token = cancel_token or CancellationToken()

    def wait_until(self, check: ReadinessCheck,
                   remediation: Optional[Callable[[], RemediationOutcome]] = None) -> WaitResult:
        """
        Poll until the check is ready, errors or times out

        Each cycle: cancellation check, remediation, predicate. A cycle starts
        only while elapsed < timeout, so an always-pending check returns
        between timeout and timeout + poll_interval. A TransientError from the
        predicate counts as a pending cycle.

        Args:
            check: Readiness check to evaluate
            remediation: Called once per cycle before the predicate

        Returns:
            WaitResult: READY, ERROR (with reason) or TIMED_OUT (with the last state)

        Raises:
            OperationCancelled: If the cancellation token is set
        """
        start = self.clock()
        elapsed = 0.0
        cycles = 0
        last: Optional[CheckResult] = None
        remediations = []

        logger.info(f"Waiting for {check.description} (timeout {check.timeout:g}s)")

        while elapsed < check.timeout:
            self.cancel_token.raise_if_cancelled(check.description)

            if remediation is not None:
                outcome = remediation()
                remediations.append(outcome)

            try:
                last = check.predicate()
            except TransientError as e:
                # Transient failures count as pending; the timeout bounds them
                logger.warning(f"{check.description}: transient failure, retrying: {e}")
                last = CheckResult.pending(reason=str(e))
            cycles += 1

            if last.status == ReadinessStatus.READY:
                elapsed = self.clock() - start
                logger.info(f"{check.description} ready after {elapsed:g}s")
                return WaitResult(WaitOutcome.READY, elapsed, cycles, last.state, last.reason, remediations)

            if last.status == ReadinessStatus.ERROR:
                elapsed = self.clock() - start
                logger.error(f"{check.description} failed: {last.reason}")
                return WaitResult(WaitOutcome.ERROR, elapsed, cycles, last.state, last.reason, remediations)

            logger.debug(f"{check.description} pending: {last.reason}")
            self.cancel_token.raise_if_cancelled(check.description)
            self.sleep(check.poll_interval)
            elapsed = self.clock() - start

        logger.warning(f"Timed out waiting for {check.description} after {elapsed:g}s")
        return WaitResult(WaitOutcome.TIMED_OUT, elapsed, cycles,
                          last.state if last else None, last.reason if last else "", remediations)
