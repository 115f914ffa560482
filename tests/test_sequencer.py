"""
Tests for the Installation Sequencer
"""

from unittest.mock import Mock

import pytest

from airgap_manager.libs.core.exceptions import (
    ClusterError, OperationCancelled, SequenceAbortedError, TransientError
)
from airgap_manager.libs.reconcile.models import (
    CheckResult, ReadinessCheck, RemediationOutcome, Stage, StageStatus, UpsertOutcome
)
from airgap_manager.libs.reconcile.poller import CancellationToken, ReadinessPoller
from airgap_manager.libs.reconcile.remediation import RemediationHook
from airgap_manager.libs.reconcile.sequencer import InstallationSequencer, SequencerSettings
from airgap_manager.libs.reconcile.upserter import (
    ResourceUpserter, namespace_target, pull_secret_target, service_account_patch_target
)


def _service_account(name, namespace):
    return {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": {"name": name, "namespace": namespace}}


def _build(cluster, clock, settings=None, sleep=None, cancel_token=None):
    poller = ReadinessPoller(clock=clock, sleep=sleep or clock.sleep, cancel_token=cancel_token)
    return InstallationSequencer(ResourceUpserter(cluster), poller, RemediationHook(cluster), settings)


class TestStages:
    """Test stage ordering and completion"""

    def test_stages_run_in_order_and_complete(self, cluster, clock):
        """Test preconditions, install and wait for two stages"""
        calls = []
        stages = [
            Stage("operator",
                  preconditions=[namespace_target("knative-operator"),
                                 pull_secret_target("knative-operator", "e30=")],
                  install=lambda: calls.append("operator"),
                  wait=ReadinessCheck("operator", CheckResult.ready, timeout=60, poll_interval=10)),
            Stage("serving", install=lambda: calls.append("serving")),
        ]

        report = _build(cluster, clock).run(stages)

        assert report.succeeded
        assert calls == ["operator", "serving"]
        assert [stage.status for stage in report.stages] == [StageStatus.COMPLETED, StageStatus.COMPLETED]
        assert report.stage("operator").upserts == [
            ("Namespace knative-operator", UpsertOutcome.APPLIED),
            ("Secret knative-operator/knative-registry-creds", UpsertOutcome.APPLIED),
        ]

    def test_after_ready_runs_only_on_ready(self, cluster, clock):
        """Test the after_ready hook is skipped when the wait times out"""
        ready_hook, timeout_hook = Mock(), Mock()
        stages = [
            Stage("operator", wait=ReadinessCheck("operator", CheckResult.ready, timeout=60, poll_interval=10),
                  after_ready=ready_hook),
            Stage("serving", wait=ReadinessCheck("serving", CheckResult.pending, timeout=30, poll_interval=10),
                  after_ready=timeout_hook),
        ]

        _build(cluster, clock, SequencerSettings(continue_on_timeout=True)).run(stages)

        ready_hook.assert_called_once_with()
        timeout_hook.assert_not_called()

    def test_rerun_is_idempotent(self, cluster, clock):
        """Test that a second run reports ALREADY_EXISTS and creates nothing"""
        stage = Stage("operator", preconditions=[namespace_target("knative-operator")])
        sequencer = _build(cluster, clock)

        sequencer.run([stage])
        report = sequencer.run([stage])

        assert report.stage("operator").upserts == [("Namespace knative-operator", UpsertOutcome.ALREADY_EXISTS)]
        assert cluster.create_count == 1


class TestPostPatchRetry:
    """Test retrying patch targets whose objects appear late"""

    def test_service_account_patched_after_it_appears(self, cluster, clock):
        """Test SKIPPED twice, then APPLIED once the service account exists"""
        def sleep(seconds):
            clock.sleep(seconds)
            if len(clock.sleeps) == 2:
                cluster.add(_service_account("controller", "knative-serving"))

        stage = Stage("serving", post_patch=[service_account_patch_target("knative-serving", "controller")])

        report = _build(cluster, clock, sleep=sleep).run([stage])

        serving = report.stage("serving")
        assert serving.upserts == [("ServiceAccountPatch knative-serving/controller", UpsertOutcome.APPLIED)]
        assert serving.unresolved == []
        assert clock.sleeps == [5.0, 7.5]
        account = cluster.get_resource("v1", "ServiceAccount", "controller", "knative-serving")
        assert account["imagePullSecrets"] == [{"name": "knative-registry-creds"}]

    def test_missing_target_is_reported_not_fatal(self, cluster, clock):
        """Test that a target still missing after the last attempt is listed as unresolved"""
        settings = SequencerSettings(patch_attempts=3, retry_delay=1.0, backoff_factor=2.0, max_delay=3.0)
        stage = Stage("serving", post_patch=[service_account_patch_target("knative-serving", "controller")])

        report = _build(cluster, clock, settings).run([stage])

        assert report.succeeded
        assert report.stage("serving").unresolved == ["ServiceAccountPatch knative-serving/controller"]
        assert clock.sleeps == [1.0, 2.0]

    def test_discovered_targets_are_patched(self, cluster, clock):
        """Test the discovery hook result is upserted"""
        cluster.add(_service_account("operator-webhook", "knative-operator"))
        stage = Stage("operator", discover_post_patch=lambda: [
            service_account_patch_target("knative-operator", "operator-webhook")
        ])

        report = _build(cluster, clock).run([stage])

        assert report.stage("operator").upserts == [
            ("ServiceAccountPatch knative-operator/operator-webhook", UpsertOutcome.APPLIED)
        ]


class TestAbort:
    """Test abort, timeout and cancellation handling"""

    def test_error_aborts_with_diagnostics_and_skips_later_stages(self, cluster, clock):
        """Test SequenceAbortedError carries the report and stage diagnostics"""
        later = Mock()
        stages = [
            Stage("operator",
                  wait=ReadinessCheck("operator", lambda: CheckResult.error("CrashLoopBackOff"),
                                      timeout=60, poll_interval=10),
                  diagnostics=lambda: {"pods": [{"name": "operator", "phase": "Running"}]}),
            Stage("serving", install=later),
        ]

        with pytest.raises(SequenceAbortedError) as exc_info:
            _build(cluster, clock).run(stages)

        report = exc_info.value.report
        assert report.aborted_stage == "operator"
        assert report.diagnostics == {"pods": [{"name": "operator", "phase": "Running"}]}
        assert "CrashLoopBackOff" in report.stage("operator").error
        later.assert_not_called()

    def test_unrecoverable_upsert_error_aborts(self, cluster, clock):
        """Test that a raised cluster error aborts the stage"""
        cluster.fail('create', 'Namespace', ClusterError("Forbidden (403)"))

        with pytest.raises(SequenceAbortedError) as exc_info:
            _build(cluster, clock).run([Stage("operator", preconditions=[namespace_target("knative-operator")])])

        assert exc_info.value.report.stage("operator").status == StageStatus.FAILED

    def test_timeout_aborts_by_default(self, cluster, clock):
        """Test TIMED_OUT stage aborts the sequence"""
        stage = Stage("serving", wait=ReadinessCheck("serving", CheckResult.pending, timeout=30, poll_interval=10))

        with pytest.raises(SequenceAbortedError) as exc_info:
            _build(cluster, clock).run([stage])

        assert exc_info.value.report.stage("serving").status == StageStatus.TIMED_OUT

    def test_timeout_continues_when_configured(self, cluster, clock):
        """Test continue_on_timeout lets the next stage run"""
        after = Mock()
        stages = [
            Stage("operator", wait=ReadinessCheck("operator", CheckResult.pending, timeout=30, poll_interval=10)),
            Stage("serving", install=after),
        ]

        report = _build(cluster, clock, SequencerSettings(continue_on_timeout=True)).run(stages)

        assert report.stage("operator").status == StageStatus.TIMED_OUT
        assert report.stage("serving").status == StageStatus.COMPLETED
        after.assert_called_once()

    def test_cancellation_propagates(self, cluster, clock):
        """Test OperationCancelled is not turned into an abort"""
        token = CancellationToken()
        token.cancel()
        stage = Stage("serving", wait=ReadinessCheck("serving", CheckResult.pending, timeout=30, poll_interval=10))

        with pytest.raises(OperationCancelled):
            _build(cluster, clock, cancel_token=token).run([stage])

    def test_remediation_rule_runs_during_wait(self, cluster, clock):
        """Test the stage remediation rule is applied on every poll cycle"""
        rule = Mock()
        rule.description = "rule"
        rule.fetch.return_value = None
        checks = iter([CheckResult.pending(), CheckResult.ready()])
        stage = Stage("serving", wait=ReadinessCheck("serving", lambda: next(checks), timeout=60, poll_interval=10),
                      remediation=rule)

        report = _build(cluster, clock).run([stage])

        assert report.stage("serving").wait.remediations == [RemediationOutcome.NO_ACTION_NEEDED] * 2
        assert rule.fetch.call_count == 2


class TestTransientRetry:
    """Test that TransientError is retried instead of aborting the stage"""

    def test_transient_predicate_error_does_not_abort(self, cluster, clock):
        """Test a 503 while waiting is followed by another check and the stage completes"""
        # Arrange
        responses = iter([TransientError("get KnativeServing: API temporarily unavailable (503)"),
                          CheckResult.ready()])

        def predicate():
            response = next(responses)
            if isinstance(response, Exception):
                raise response
            return response

        stage = Stage("serving", wait=ReadinessCheck("serving", predicate, timeout=300, poll_interval=10))

        # Act
        report = _build(cluster, clock).run([stage])

        # Assert
        assert report.stage("serving").status == StageStatus.COMPLETED
        assert report.stage("serving").wait.cycles == 2

    def test_transient_patch_error_is_retried_with_backoff(self, cluster, clock):
        """Test an unavailable API during a service account patch is retried"""
        cluster.add(_service_account("controller", "knative-serving"))
        cluster.fail('get', 'ServiceAccount', TransientError("API temporarily unavailable (503)"))
        stage = Stage("serving", post_patch=[service_account_patch_target("knative-serving", "controller")])

        report = _build(cluster, clock).run([stage])

        assert report.stage("serving").upserts == [
            ("ServiceAccountPatch knative-serving/controller", UpsertOutcome.APPLIED)
        ]
        assert clock.sleeps == [5.0]

    def test_persistent_transient_patch_error_fails_stage(self, clock):
        """Test the retry budget bounds a patch that keeps failing"""
        upserter = Mock()
        upserter.upsert.side_effect = TransientError("connection refused")
        poller = ReadinessPoller(clock=clock, sleep=clock.sleep)
        settings = SequencerSettings(patch_attempts=3, retry_delay=1.0, backoff_factor=2.0, max_delay=10.0)
        sequencer = InstallationSequencer(upserter, poller, Mock(), settings)
        stage = Stage("serving", post_patch=[service_account_patch_target("knative-serving", "controller")])

        with pytest.raises(SequenceAbortedError) as exc_info:
            sequencer.run([stage])

        assert exc_info.value.report.stage("serving").status == StageStatus.FAILED
        assert "still failing after 3 attempts" in exc_info.value.report.stage("serving").error
        assert upserter.upsert.call_count == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_transient_precondition_error_is_retried(self, cluster, clock):
        cluster.fail('create', 'Namespace', TransientError("API temporarily unavailable (503)"))

        report = _build(cluster, clock).run([Stage("operator", preconditions=[namespace_target("knative-operator")])])

        assert report.stage("operator").upserts == [("Namespace knative-operator", UpsertOutcome.APPLIED)]
        assert clock.sleeps == [5.0]


class TestCancellationBoundaries:
    """Test that cancellation stops the sequence at the next external call"""

    def test_cancel_during_install_skips_patches_and_later_stages(self, cluster, clock):
        """Test nothing runs after the install step that observed the cancellation"""
        # Arrange
        token = CancellationToken()
        restart = Mock()
        later = Mock()
        stages = [
            Stage("operator", install=token.cancel, restart=restart,
                  post_patch=[service_account_patch_target("knative-operator", "knative-operator")]),
            Stage("serving", install=later),
        ]

        # Act
        with pytest.raises(OperationCancelled):
            _build(cluster, clock, cancel_token=token).run(stages)

        # Assert
        restart.assert_not_called()
        later.assert_not_called()
        assert cluster.calls == []

    def test_cancel_between_preconditions(self, cluster, clock):
        """Test the remaining preconditions are not upserted after cancellation"""
        token = CancellationToken()
        create_resource = cluster.create_resource

        def create_then_cancel(body):
            token.cancel()
            return create_resource(body)

        cluster.create_resource = create_then_cancel
        stage = Stage("operator", preconditions=[namespace_target("knative-operator"),
                                                 pull_secret_target("knative-operator", "e30=")])

        with pytest.raises(OperationCancelled):
            _build(cluster, clock, cancel_token=token).run([stage])

        assert cluster.get_resource("v1", "Namespace", "knative-operator") is not None
        assert cluster.get_resource("v1", "Secret", "knative-registry-creds", "knative-operator") is None
