"""
Remediation Hook

Applies known-failure-mode patches during readiness polling. The live
object is replaced (delete, then recreate from the patched body) because
the fields being repaired are immutable once the object exists.
"""

import copy
import logging
from typing import Any, Dict, Optional

from ..core.constants import KubernetesConstants
from ..core.exceptions import AirgapManagerError
from ..core.protocols import ClusterAPI
from .models import RemediationOutcome, RemediationRule

logger = logging.getLogger(__name__)


class RemediationHook:
    """Runs remediation rules against the cluster"""

    def __init__(self, cluster: ClusterAPI):
        """
        Args:
            cluster: ClusterAPI implementation
        """
        self.cluster = cluster
        # Patched bodies deleted from the cluster but not created again yet
        self._pending: Dict[RemediationRule, Dict[str, Any]] = {}

    def remediate(self, rule: RemediationRule, current_state: Optional[Dict[str, Any]]) -> RemediationOutcome:
        """
        Patch the object when the failure mode is present

        When an earlier cycle deleted the object but could not create the
        patched body, that body is created again once the old object is gone.

        Returns:
            RemediationOutcome: PATCHED only once the patched object exists,
            NO_ACTION_NEEDED, or ERROR when the delete/recreate failed (the
            caller retries on its next cycle)
        """
        pending = self._pending.get(rule)
        if pending is not None and _absent_or_terminating(current_state):
            return self._recreate(rule, pending)

        if current_state is None or rule.is_already_applied(current_state):
            self._pending.pop(rule, None)
            return RemediationOutcome.NO_ACTION_NEEDED

        if not rule.detect(current_state):
            return RemediationOutcome.NO_ACTION_NEEDED

        metadata = current_state.get('metadata', {})
        try:
            patched = rule.apply(current_state)
            logger.info(f"{rule.description}: replacing {current_state.get('kind')} "
                        f"{metadata.get('namespace')}/{metadata.get('name')}")
            self.cluster.delete_resource(current_state.get('apiVersion'), current_state.get('kind'),
                                         metadata.get('name'), metadata.get('namespace'))
        except AirgapManagerError as e:
            logger.warning(f"{rule.description}: remediation failed, will retry: {e}")
            return RemediationOutcome.ERROR

        self._pending[rule] = patched
        return self._recreate(rule, patched)

    def _recreate(self, rule: RemediationRule, body: Dict[str, Any]) -> RemediationOutcome:
        metadata = body.get('metadata', {})
        target = f"{body.get('kind')} {metadata.get('namespace')}/{metadata.get('name')}"
        try:
            created = self.cluster.create_resource(body)
        except AirgapManagerError as e:
            logger.warning(f"{rule.description}: could not recreate {target}, will retry: {e}")
            return RemediationOutcome.ERROR

        if created is None:
            logger.warning(f"{rule.description}: {target} still exists (terminating), will retry")
            return RemediationOutcome.ERROR

        self._pending.pop(rule, None)
        return RemediationOutcome.PATCHED

    def run(self, rule: RemediationRule) -> RemediationOutcome:
        """Fetch the current state through the rule and remediate it"""
        try:
            state = rule.fetch(self.cluster)
        except AirgapManagerError as e:
            logger.warning(f"{rule.description}: could not read current state: {e}")
            return RemediationOutcome.ERROR
        return self.remediate(rule, state)


class StorageVersionMigrationRule(RemediationRule):
    """
    Knative's storage-version-migration-serving Job is created without the
    SYSTEM_NAMESPACE env var and crash-loops. Recreate it with the variable
    taken from the pod's namespace.
    """

    description = "storage version migration SYSTEM_NAMESPACE"

    # Populated by the API server, rejected on create
    SERVER_FIELDS = ['resourceVersion', 'uid', 'creationTimestamp', 'managedFields',
                     'selfLink', 'generation', 'ownerReferences']
    # Generated by the Job controller
    GENERATED_LABELS = ['controller-uid', 'batch.kubernetes.io/controller-uid',
                        'job-name', 'batch.kubernetes.io/job-name']

    def __init__(self, namespace: str = KubernetesConstants.SERVING_NAMESPACE,
                 label_selector: str = KubernetesConstants.STORAGE_MIGRATION_LABEL):
        self.namespace = namespace
        self.label_selector = label_selector

    def fetch(self, cluster) -> Optional[Dict[str, Any]]:
        jobs = cluster.list_resources(str(KubernetesConstants.ApiVersion.BATCH), "Job",
                                      namespace=self.namespace, label_selector=self.label_selector)
        return jobs[0] if jobs else None

    def detect(self, state: Optional[Dict[str, Any]]) -> bool:
        return bool(state) and bool(_containers(state))

    def is_already_applied(self, state: Optional[Dict[str, Any]]) -> bool:
        if not state:
            return False
        containers = _containers(state)
        if not containers:
            return False
        env = containers[0].get('env') or []
        return any(var.get('name') == KubernetesConstants.SYSTEM_NAMESPACE_ENV for var in env)

    def apply(self, state: Dict[str, Any]) -> Dict[str, Any]:
        patched = copy.deepcopy(state)

        metadata = patched.setdefault('metadata', {})
        for key in self.SERVER_FIELDS:
            metadata.pop(key, None)
        patched.pop('status', None)

        spec = patched.setdefault('spec', {})
        spec.pop('selector', None)
        spec.pop('manualSelector', None)
        for labels in (metadata.get('labels'), (spec.get('template', {}).get('metadata') or {}).get('labels')):
            if labels:
                for label in self.GENERATED_LABELS:
                    labels.pop(label, None)

        if not self.is_already_applied(patched):
            container = _containers(patched)[0]
            container.setdefault('env', []).append({
                "name": KubernetesConstants.SYSTEM_NAMESPACE_ENV,
                "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}},
            })
        return patched


def _containers(job: Dict[str, Any]):
    return (((job.get('spec') or {}).get('template') or {}).get('spec') or {}).get('containers') or []


def _absent_or_terminating(state: Optional[Dict[str, Any]]) -> bool:
    return state is None or bool((state.get('metadata') or {}).get('deletionTimestamp'))
