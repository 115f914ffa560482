"""
Knative Uninstaller

Removes the Knative custom resources, operator release, namespaces and
cluster-scoped leftovers. Every deletion tolerates absence; failures are
collected into the report instead of stopping the run.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from ..core.constants import KubernetesConstants, UninstallConstants
from ..core.exceptions import AirgapManagerError
from ..core.protocols import ChartInstaller, ClusterAPI

logger = logging.getLogger(__name__)

K8s = KubernetesConstants

MANAGED_NAMESPACES = [
    K8s.OPERATOR_NAMESPACE,
    K8s.SERVING_NAMESPACE,
    K8s.EVENTING_NAMESPACE,
    K8s.KOURIER_NAMESPACE,
]

# Time given to the operator to tear down what the custom resources own
CR_SETTLE_SECONDS = 10


@dataclass
class UninstallReport:
    deleted: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    remaining: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def clean(self) -> bool:
        return not any(self.remaining.values())


class KnativeUninstaller:
    """Tears down a Knative installation"""

    def __init__(self, cluster: ClusterAPI, helm: ChartInstaller, sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            cluster: ClusterAPI implementation
            helm: ChartInstaller
            sleep: Sleep function used while custom resources are torn down
        """
        self.cluster = cluster
        self.helm = helm
        self.sleep = sleep

    def run(self) -> UninstallReport:
        report = UninstallReport()

        if self._delete_custom_resources(report):
            self.sleep(CR_SETTLE_SECONDS)
        self._uninstall_release(report)
        for namespace in MANAGED_NAMESPACES:
            self._delete_namespace(namespace, report)
        self._delete_cluster_scoped(report)
        report.remaining = self.remaining()

        logger.info(f"Uninstall finished: {len(report.deleted)} deleted, {len(report.failures)} failures")
        return report

    def _delete(self, api_version: str, kind: str, name: str, namespace: str, report: UninstallReport) -> bool:
        label = f"{kind} {namespace}/{name}" if namespace else f"{kind} {name}"
        try:
            if self.cluster.delete_resource(api_version, kind, name, namespace):
                report.deleted.append(label)
                logger.info(f"Deleted {label}")
                return True
        except AirgapManagerError as e:
            report.failures.append(f"delete {label}: {e}")
        return False

    def _list(self, api_version: str, kind: str, report: UninstallReport, namespace: str = None) -> List[dict]:
        try:
            return self.cluster.list_resources(api_version, kind, namespace=namespace)
        except AirgapManagerError as e:
            report.failures.append(f"list {kind}: {e}")
            return []

    def _delete_custom_resources(self, report: UninstallReport) -> bool:
        """Delete KnativeServing/KnativeEventing in every namespace; True if any were deleted"""
        deleted_any = False
        for kind in (K8s.KNATIVE_SERVING_KIND, K8s.KNATIVE_EVENTING_KIND):
            for resource in self._list(K8s.KNATIVE_OPERATOR_API_VERSION, kind, report):
                metadata = resource.get('metadata', {})
                if self._delete(K8s.KNATIVE_OPERATOR_API_VERSION, kind, metadata.get('name'),
                                metadata.get('namespace'), report):
                    deleted_any = True
        return deleted_any

    def _uninstall_release(self, report: UninstallReport) -> None:
        try:
            if self.helm.release_exists(K8s.OPERATOR_RELEASE_NAME, K8s.OPERATOR_NAMESPACE):
                self.helm.uninstall(K8s.OPERATOR_RELEASE_NAME, K8s.OPERATOR_NAMESPACE)
                report.deleted.append(f"helm release {K8s.OPERATOR_RELEASE_NAME}")
            else:
                logger.info("Helm release not found, skipping")
        except AirgapManagerError as e:
            report.failures.append(f"helm uninstall {K8s.OPERATOR_RELEASE_NAME}: {e}")

    def _delete_namespace(self, namespace: str, report: UninstallReport) -> None:
        try:
            if self.cluster.get_resource("v1", "Namespace", namespace) is None:
                return
        except AirgapManagerError as e:
            report.failures.append(f"get Namespace {namespace}: {e}")
            return

        # Stuck finalizers keep the namespace in Terminating forever
        for api_version, kind in UninstallConstants.FINALIZER_KINDS:
            for resource in self._list(api_version, kind, report, namespace=namespace):
                metadata = resource.get('metadata', {})
                if not metadata.get('finalizers'):
                    continue
                try:
                    self.cluster.patch_resource(api_version, kind, metadata.get('name'),
                                                {"metadata": {"finalizers": None}}, namespace=namespace)
                except AirgapManagerError as e:
                    report.failures.append(f"clear finalizers on {kind} {namespace}/{metadata.get('name')}: {e}")

        self._delete("v1", "Namespace", namespace, None, report)

    def _delete_cluster_scoped(self, report: UninstallReport) -> None:
        for api_version, kind, patterns in UninstallConstants.CLUSTER_SCOPED_PATTERNS:
            for resource in self._list(api_version, kind, report):
                name = resource.get('metadata', {}).get('name', '')
                if any(pattern in name.lower() for pattern in patterns):
                    self._delete(api_version, kind, name, None, report)

    def remaining(self) -> Dict[str, List[str]]:
        """Names of Knative objects still present"""
        leftovers = {}
        try:
            leftovers["namespaces"] = [
                namespace for namespace in MANAGED_NAMESPACES
                if self.cluster.get_resource("v1", "Namespace", namespace) is not None
            ]
            for api_version, kind, patterns in UninstallConstants.CLUSTER_SCOPED_PATTERNS:
                names = [resource.get('metadata', {}).get('name', '')
                         for resource in self.cluster.list_resources(api_version, kind)]
                leftovers[kind] = [name for name in names if any(p in name.lower() for p in patterns)]
        except AirgapManagerError as e:
            logger.warning(f"Could not verify remaining resources: {e}")
        return leftovers
