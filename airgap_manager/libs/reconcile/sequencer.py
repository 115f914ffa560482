"""
Installation Sequencer

Runs installation stages in order. Each stage upserts its preconditions,
installs, applies post-install patches (retrying targets that do not exist
yet), restarts workloads and waits for readiness.
"""

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from ..core.constants import TimeoutConstants
from ..core.exceptions import AirgapManagerError, OperationCancelled, SequenceAbortedError, TransientError
from .models import (
    ReconcileTarget, SequenceReport, Stage, StageReport, StageStatus, UpsertOutcome, WaitOutcome
)

logger = logging.getLogger(__name__)


@dataclass
class SequencerSettings:
    """Retry bounds for post-install patches and timeout handling"""

    patch_attempts: int = TimeoutConstants.PATCH_ATTEMPTS
    retry_delay: float = TimeoutConstants.PATCH_RETRY_DELAY
    backoff_factor: float = TimeoutConstants.PATCH_RETRY_BACKOFF
    max_delay: float = TimeoutConstants.PATCH_RETRY_MAX_DELAY
    continue_on_timeout: bool = False


class InstallationSequencer:
    """Drives stages through upsert, install, patch, restart and wait"""

    def __init__(self, upserter, poller, remediation_hook, settings: SequencerSettings = None):
        """
        Initialize sequencer

        Args:
            upserter: ResourceUpserter
            poller: ReadinessPoller (its sleep is also used for patch backoff)
            remediation_hook: RemediationHook for stages with a remediation rule
            settings: Retry and timeout behaviour
        """
        self.upserter = upserter
        self.poller = poller
        self.remediation_hook = remediation_hook
        self.settings = settings or SequencerSettings()

    def run(self, stages: List[Stage]) -> SequenceReport:
        """
        Run every stage in order

        Returns:
            SequenceReport: Per-stage results

        Raises:
            SequenceAbortedError: A stage errored, raised, or timed out without
                continue_on_timeout; the error carries the report and diagnostics
        """
        report = SequenceReport()

        for stage in stages:
            self._check_cancelled(stage.name)
            logger.info(f"=== Stage: {stage.name} ===")
            stage_report = StageReport(name=stage.name)
            report.stages.append(stage_report)

            try:
                self._run_stage(stage, stage_report)
            except OperationCancelled:
                raise
            except AirgapManagerError as e:
                stage_report.status = StageStatus.FAILED
                stage_report.error = stage_report.error or str(e)
                self._abort(stage, report, stage_report.error)

            if stage_report.status == StageStatus.FAILED:
                self._abort(stage, report, stage_report.error)

            if stage_report.status == StageStatus.TIMED_OUT:
                if not self.settings.continue_on_timeout:
                    self._abort(stage, report, stage_report.error)
                logger.warning(f"Stage {stage.name} timed out, continuing as configured")
            else:
                logger.info(f"Stage {stage.name} completed")

        return report

    def _run_stage(self, stage: Stage, stage_report: StageReport) -> None:
        for target in stage.preconditions:
            self._check_cancelled(stage.name)
            outcome = self._retry_transient(functools.partial(self.upserter.upsert, target), str(target))
            stage_report.upserts.append((str(target), outcome))

        if stage.install is not None:
            self._check_cancelled(stage.name)
            stage.install()

        self._apply_post_patches(stage.post_patch, stage_report)
        if stage.discover_post_patch is not None:
            self._check_cancelled(stage.name)
            discovered = self._retry_transient(stage.discover_post_patch, f"{stage.name} patch discovery")
            self._apply_post_patches(discovered, stage_report)

        if stage.restart is not None:
            self._check_cancelled(stage.name)
            stage.restart()

        if stage.wait is None:
            stage_report.status = StageStatus.COMPLETED
            return

        remediation = None
        if stage.remediation is not None:
            remediation = functools.partial(self.remediation_hook.run, stage.remediation)

        result = self.poller.wait_until(stage.wait, remediation)
        stage_report.wait = result

        if result.outcome == WaitOutcome.READY:
            if stage.after_ready is not None:
                self._check_cancelled(stage.name)
                stage.after_ready()
            stage_report.status = StageStatus.COMPLETED
        elif result.outcome == WaitOutcome.TIMED_OUT:
            stage_report.status = StageStatus.TIMED_OUT
            stage_report.error = f"Timed out waiting for {stage.wait.description}: {result.reason}"
        else:
            stage_report.status = StageStatus.FAILED
            stage_report.error = f"{stage.wait.description} failed: {result.reason}"

    def _apply_post_patches(self, targets: List[ReconcileTarget], stage_report: StageReport) -> None:
        """
        Upsert patch targets, retrying skipped ones with exponential backoff

        Targets still skipped after the last attempt are reported, not fatal.
        A TransientError is retried like a skip; one that persists through the
        last attempt is raised.
        """
        pending = list(targets)
        delay = self.settings.retry_delay
        errors: Dict[str, TransientError] = {}

        for attempt in range(1, self.settings.patch_attempts + 1):
            retry = []
            for target in pending:
                self._check_cancelled("post-install patches")
                try:
                    outcome = self.upserter.upsert(target)
                except TransientError as e:
                    logger.warning(f"{target}: {e}")
                    errors[str(target)] = e
                    retry.append(target)
                    continue

                errors.pop(str(target), None)
                if outcome == UpsertOutcome.SKIPPED:
                    retry.append(target)
                else:
                    stage_report.upserts.append((str(target), outcome))

            pending = retry
            if not pending or attempt == self.settings.patch_attempts:
                break

            logger.info(f"{len(pending)} patch targets not applied yet, "
                        f"retrying in {delay:g}s (attempt {attempt}/{self.settings.patch_attempts})")
            self._sleep(delay, "post-install patches")
            delay = self._next_delay(delay)

        for target in pending:
            error = errors.get(str(target))
            if error is not None:
                raise TransientError(f"{target}: still failing after {self.settings.patch_attempts} attempts: {error}")

        for target in pending:
            logger.warning(f"{target}: still missing after {self.settings.patch_attempts} attempts")
            stage_report.upserts.append((str(target), UpsertOutcome.SKIPPED))
            stage_report.unresolved.append(str(target))

    def _retry_transient(self, operation: Callable[[], Any], description: str) -> Any:
        """Call operation, retrying TransientError with backoff up to patch_attempts"""
        delay = self.settings.retry_delay
        for attempt in range(1, self.settings.patch_attempts + 1):
            try:
                return operation()
            except TransientError as e:
                if attempt == self.settings.patch_attempts:
                    raise
                logger.warning(f"{description}: {e}; retrying in {delay:g}s "
                               f"(attempt {attempt}/{self.settings.patch_attempts})")
            self._sleep(delay, description)
            delay = self._next_delay(delay)

    def _next_delay(self, delay: float) -> float:
        return min(delay * self.settings.backoff_factor, self.settings.max_delay)

    def _sleep(self, delay: float, context: str) -> None:
        self._check_cancelled(context)
        self.poller.sleep(delay)

    def _check_cancelled(self, context: str) -> None:
        self.poller.cancel_token.raise_if_cancelled(context)

    def _abort(self, stage: Stage, report: SequenceReport, reason: str) -> None:
        report.aborted_stage = stage.name
        report.diagnostics = self._collect_diagnostics(stage)
        logger.error(f"Stage {stage.name} aborted: {reason}")
        raise SequenceAbortedError(f"Stage {stage.name} aborted: {reason}", report)

    @staticmethod
    def _collect_diagnostics(stage: Stage) -> Dict[str, Any]:
        if stage.diagnostics is None:
            return {}
        try:
            return stage.diagnostics()
        except AirgapManagerError as e:
            logger.warning(f"Could not collect diagnostics for stage {stage.name}: {e}")
            return {"error": str(e)}
