"""
Tests for the Image Synchronizer
"""

import pytest

from airgap_manager.libs.core.exceptions import ConfigurationError, OperationCancelled
from airgap_manager.libs.reconcile.models import build_image_mappings
from airgap_manager.libs.reconcile.poller import CancellationToken
from airgap_manager.libs.reconcile.synchronizer import ImageSynchronizer

REGISTRY = "registry.example.com"


@pytest.fixture
def mappings():
    return build_image_mappings([
        ("gcr.io/knative-releases/knative.dev/operator/cmd/operator:v1.18.0", "knative/operator:v1.18.0"),
        ("gcr.io/knative-releases/knative.dev/operator/cmd/webhook:v1.18.0", "knative/operator-webhook:v1.18.0"),
        ("docker.io/envoyproxy/envoy:v1.31.2", "envoyproxy/envoy:v1.31.2"),
    ], REGISTRY)


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "knative-images.tar"
    path.write_bytes(b"images")
    return path


class TestPlan:
    """Test planning against the registry"""

    def test_plan_lists_only_missing_destinations(self, engine, mappings, archive):
        """Test that present destinations are not planned"""
        engine.registry_images.add(str(mappings[0].destination))

        plan = ImageSynchronizer(engine, archive).plan(mappings)

        assert plan.missing == mappings[1:]
        assert not plan.is_satisfied


class TestExecute:
    """Test pushing images"""

    def test_fresh_registry_pushes_everything(self, engine, mappings, archive):
        """Test a first run: archive loaded once, every image tagged and pushed"""
        synchronizer = ImageSynchronizer(engine, archive)

        report = synchronizer.execute(synchronizer.plan(mappings))

        assert report.succeeded
        assert report.loaded
        assert len(engine.operations('load')) == 1
        assert report.pushed == mappings
        assert [call[1] for call in engine.operations('push')] == [str(m.destination) for m in mappings]
        assert engine.operations('tag')[0] == ('tag', str(mappings[0].source), str(mappings[0].destination))

    def test_satisfied_plan_is_a_no_op(self, engine, mappings, archive):
        """Test that a complete registry causes no load, tag or push"""
        engine.registry_images.update(str(m.destination) for m in mappings)
        synchronizer = ImageSynchronizer(engine, archive)

        report = synchronizer.execute(synchronizer.plan(mappings))

        assert report.succeeded
        assert not report.loaded
        assert report.skipped == mappings
        assert engine.operations('load') == []
        assert engine.operations('push') == []

    def test_force_pushes_present_images(self, engine, mappings, archive):
        """Test that force re-pushes everything"""
        engine.registry_images.update(str(m.destination) for m in mappings)
        synchronizer = ImageSynchronizer(engine, archive)

        report = synchronizer.execute(synchronizer.plan(mappings), force=True)

        assert report.pushed == mappings
        assert len(engine.operations('push')) == 3

    def test_missing_archive_fails_before_side_effects(self, engine, mappings, tmp_path):
        """Test ConfigurationError with no load or push"""
        synchronizer = ImageSynchronizer(engine, tmp_path / "missing.tar")
        plan = synchronizer.plan(mappings)

        with pytest.raises(ConfigurationError):
            synchronizer.execute(plan)

        assert engine.operations('load') == []
        assert engine.operations('push') == []

    def test_partial_failure_is_reported_and_rest_continue(self, engine, mappings, archive):
        """Test that a failing push does not stop the remaining mappings"""
        engine.fail_push.add(str(mappings[1].destination))
        synchronizer = ImageSynchronizer(engine, archive)

        report = synchronizer.execute(synchronizer.plan(mappings))

        assert not report.succeeded
        assert report.pushed == [mappings[0], mappings[2]]
        assert len(report.failures) == 1
        assert report.failures[0].mapping == mappings[1]
        assert report.failures[0].step == "push"

    def test_tag_failure_skips_push(self, engine, mappings, archive):
        """Test failure step is recorded as tag"""
        engine.fail_tag.add(str(mappings[0].destination))
        synchronizer = ImageSynchronizer(engine, archive)

        report = synchronizer.execute(synchronizer.plan(mappings))

        assert report.failures[0].step == "tag"
        assert ('push', str(mappings[0].destination)) not in engine.calls

    def test_parallel_workers_keep_configuration_order(self, engine, mappings, archive):
        """Test that the report order matches the mapping order with several workers"""
        synchronizer = ImageSynchronizer(engine, archive, workers=3)

        report = synchronizer.execute(synchronizer.plan(mappings))

        assert report.pushed == mappings
        assert len(engine.operations('load')) == 1

    def test_workers_must_be_positive(self, engine, archive):
        """Test worker validation"""
        with pytest.raises(ConfigurationError):
            ImageSynchronizer(engine, archive, workers=0)


class TestCancellation:
    """Test that a cancelled sync stops pushing"""

    def test_cancelled_before_execute_pushes_nothing(self, engine, mappings, archive):
        token = CancellationToken()
        synchronizer = ImageSynchronizer(engine, archive, cancel_token=token)
        plan = synchronizer.plan(mappings)
        token.cancel()

        with pytest.raises(OperationCancelled):
            synchronizer.execute(plan)

        assert engine.operations('load') == []
        assert engine.operations('push') == []

    def test_cancel_mid_sync_stops_remaining_images(self, engine, mappings, archive):
        """Test that images after the one being pushed are not started"""
        # Arrange
        token = CancellationToken()
        push = engine.push

        def push_then_cancel(ref):
            push(ref)
            token.cancel()

        engine.push = push_then_cancel
        synchronizer = ImageSynchronizer(engine, archive, cancel_token=token)

        # Act
        with pytest.raises(OperationCancelled):
            synchronizer.execute(synchronizer.plan(mappings))

        # Assert
        assert engine.operations('push') == [('push', str(mappings[0].destination))]
        assert len(engine.operations('tag')) == 1
