"""
Tests for the Remediation Hook and the storage version migration rule
"""

from airgap_manager.libs.core.exceptions import ClusterError, TransientError
from airgap_manager.libs.reconcile.models import RemediationOutcome
from airgap_manager.libs.reconcile.remediation import RemediationHook, StorageVersionMigrationRule


def _migration_job(env=None):
    container = {"name": "migrate", "image": "registry.example.com/knative/migrate:v1.18.0"}
    if env is not None:
        container["env"] = env
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": "storage-version-migration-serving-serving-1.18.0",
            "namespace": "knative-serving",
            "uid": "1234",
            "resourceVersion": "99",
            "creationTimestamp": "2026-01-01T00:00:00Z",
            "labels": {
                "app": "storage-version-migration-serving",
                "controller-uid": "1234",
                "job-name": "storage-version-migration-serving-serving-1.18.0",
            },
        },
        "spec": {
            "selector": {"matchLabels": {"controller-uid": "1234"}},
            "template": {
                "metadata": {"labels": {"app": "storage-version-migration-serving", "controller-uid": "1234"}},
                "spec": {"containers": [container], "restartPolicy": "OnFailure"},
            },
        },
        "status": {"failed": 3},
    }


class TestStorageVersionMigrationRule:
    """Test detection and the patched Job body"""

    def test_apply_adds_system_namespace_from_field_ref(self):
        """Test the env var is sourced from the pod namespace"""
        patched = StorageVersionMigrationRule().apply(_migration_job(env=[{"name": "OTHER", "value": "1"}]))

        env = patched["spec"]["template"]["spec"]["containers"][0]["env"]
        assert env[0] == {"name": "OTHER", "value": "1"}
        assert env[1] == {"name": "SYSTEM_NAMESPACE",
                          "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}}}

    def test_apply_strips_server_and_controller_fields(self):
        """Test that the body can be created again"""
        patched = StorageVersionMigrationRule().apply(_migration_job())

        assert "uid" not in patched["metadata"]
        assert "resourceVersion" not in patched["metadata"]
        assert "status" not in patched
        assert "selector" not in patched["spec"]
        assert patched["metadata"]["labels"] == {"app": "storage-version-migration-serving"}
        assert patched["spec"]["template"]["metadata"]["labels"] == {"app": "storage-version-migration-serving"}

    def test_apply_is_idempotent(self):
        """Test applying twice yields the same body"""
        rule = StorageVersionMigrationRule()
        once = rule.apply(_migration_job())

        assert rule.apply(once) == once

    def test_is_already_applied(self):
        """Test detection of an existing SYSTEM_NAMESPACE"""
        rule = StorageVersionMigrationRule()

        assert not rule.is_already_applied(_migration_job())
        assert rule.is_already_applied(_migration_job(env=[{"name": "SYSTEM_NAMESPACE", "value": "x"}]))


class TestRemediationHook:
    """Test delete-and-recreate behaviour against the cluster"""

    def test_patches_once_then_no_action(self, cluster):
        """Test PATCHED on the first run and NO_ACTION_NEEDED afterwards"""
        cluster.add(_migration_job())
        hook = RemediationHook(cluster)
        rule = StorageVersionMigrationRule()

        assert hook.run(rule) == RemediationOutcome.PATCHED
        assert hook.run(rule) == RemediationOutcome.NO_ACTION_NEEDED

        job = cluster.list_resources("batch/v1", "Job", namespace="knative-serving")[0]
        names = [var["name"] for var in job["spec"]["template"]["spec"]["containers"][0]["env"]]
        assert names == ["SYSTEM_NAMESPACE"]
        assert cluster.create_count == 1

    def test_absent_job_needs_no_action(self, cluster):
        """Test that a missing Job is not an error"""
        assert RemediationHook(cluster).run(StorageVersionMigrationRule()) == RemediationOutcome.NO_ACTION_NEEDED

    def test_recreate_failure_is_reported_as_error(self, cluster):
        """Test ERROR when the delete fails, so the next cycle retries"""
        cluster.add(_migration_job())
        cluster.fail('delete', 'Job', ClusterError("Forbidden (403)"))

        outcome = RemediationHook(cluster).run(StorageVersionMigrationRule())

        assert outcome == RemediationOutcome.ERROR
        assert cluster.create_count == 0

    def test_fetch_failure_is_reported_as_error(self, cluster):
        """Test ERROR when the Job cannot be listed"""
        cluster.fail('list', 'Job', ClusterError("API unavailable"))

        assert RemediationHook(cluster).run(StorageVersionMigrationRule()) == RemediationOutcome.ERROR

    def test_transient_fetch_failure_is_retried_next_cycle(self, cluster):
        """Test an API blip while listing Jobs is an ERROR cycle, not an abort"""
        cluster.add(_migration_job())
        cluster.fail('list', 'Job', TransientError("list Job: API temporarily unavailable (503)"))
        hook = RemediationHook(cluster)

        assert hook.run(StorageVersionMigrationRule()) == RemediationOutcome.ERROR
        assert hook.run(StorageVersionMigrationRule()) == RemediationOutcome.PATCHED

    def test_conflict_on_recreate_is_not_reported_as_patched(self, cluster):
        """Test ERROR while the deleted Job is still terminating, PATCHED once it is gone"""
        # Arrange
        cluster.add(_migration_job())
        hook = RemediationHook(cluster)
        rule = StorageVersionMigrationRule()
        delete_resource = cluster.delete_resource
        cluster.delete_resource = lambda *args, **kwargs: True

        # Act
        first = hook.run(rule)
        live = cluster.list_resources("batch/v1", "Job", namespace="knative-serving")[0]

        # Assert
        assert first == RemediationOutcome.ERROR
        assert not rule.is_already_applied(live)

        # The old Job finishes terminating
        cluster.delete_resource = delete_resource
        cluster.delete_resource("batch/v1", "Job", live["metadata"]["name"], "knative-serving")

        assert hook.run(rule) == RemediationOutcome.PATCHED
        job = cluster.list_resources("batch/v1", "Job", namespace="knative-serving")[0]
        assert rule.is_already_applied(job)
        assert hook.run(rule) == RemediationOutcome.NO_ACTION_NEEDED

    def test_failed_create_after_delete_is_retried(self, cluster):
        """Test the patched Job is created on the next cycle after a create failure"""
        cluster.add(_migration_job())
        cluster.fail('create', 'Job', ClusterError("Internal error (500)"))
        hook = RemediationHook(cluster)
        rule = StorageVersionMigrationRule()

        assert hook.run(rule) == RemediationOutcome.ERROR
        assert cluster.list_resources("batch/v1", "Job", namespace="knative-serving") == []

        assert hook.run(rule) == RemediationOutcome.PATCHED
        jobs = cluster.list_resources("batch/v1", "Job", namespace="knative-serving")
        assert len(jobs) == 1
        assert rule.is_already_applied(jobs[0])

    def test_terminating_job_is_not_deleted_again(self, cluster):
        """Test a Job left with a deletionTimestamp only gets create attempts"""
        cluster.add(_migration_job())
        hook = RemediationHook(cluster)
        rule = StorageVersionMigrationRule()
        deleted = []

        def mark_terminating(api_version, kind, name, namespace=None, **kwargs):
            body = cluster.get_resource(api_version, kind, name, namespace)
            body["metadata"]["deletionTimestamp"] = "2026-01-01T00:05:00Z"
            cluster.add(body)
            deleted.append(name)
            return True

        cluster.delete_resource = mark_terminating

        assert hook.run(rule) == RemediationOutcome.ERROR
        assert hook.run(rule) == RemediationOutcome.ERROR
        assert deleted == ["storage-version-migration-serving-serving-1.18.0"]
