"""
Readiness Predicates

Factories for the predicates polled by the ReadinessPoller. Each returns a
zero-argument callable producing a CheckResult.
"""

import logging
from typing import Any, Callable, Dict, List

from ..core.constants import KubernetesConstants, ServerlessConstants
from ..reconcile.models import CheckResult

logger = logging.getLogger(__name__)

# Waiting reasons that never resolve on their own
FATAL_WAITING_REASONS = ["InvalidImageName", "CreateContainerConfigError"]


def _deployment_summary(deployment: Dict[str, Any]) -> Dict[str, Any]:
    spec = deployment.get('spec') or {}
    status = deployment.get('status') or {}
    desired = spec.get('replicas', 1)
    return {
        "name": deployment.get('metadata', {}).get('name'),
        "desired": desired,
        "updated": status.get('updatedReplicas', 0),
        "available": status.get('availableReplicas', 0),
    }


def _is_rolled_out(summary: Dict[str, Any]) -> bool:
    return summary["available"] >= summary["desired"] and summary["updated"] >= summary["desired"]


def _fatal_pod_reasons(pods: List[Dict[str, Any]]) -> List[str]:
    problems = []
    for pod in pods:
        statuses = (pod.get('status') or {}).get('containerStatuses') or []
        for container_status in statuses:
            waiting = (container_status.get('state') or {}).get('waiting') or {}
            if waiting.get('reason') in FATAL_WAITING_REASONS:
                problems.append(f"{pod.get('metadata', {}).get('name')}/{container_status.get('name')}: "
                                f"{waiting.get('reason')} {waiting.get('message', '')}".strip())
    return problems


def deployments_available(cluster, namespace: str) -> Callable[[], CheckResult]:
    """
    Ready when every deployment in the namespace is fully rolled out

    Pending while no deployments exist yet or any is still rolling out;
    Error when a pod is stuck on a misconfiguration that will not recover.
    """
    def check() -> CheckResult:
        deployments = [_deployment_summary(d) for d in
                       cluster.list_resources(str(KubernetesConstants.ApiVersion.APPS), "Deployment",
                                              namespace=namespace)]

        problems = _fatal_pod_reasons(cluster.list_resources("v1", "Pod", namespace=namespace))
        if problems:
            return CheckResult.error("; ".join(problems), state=deployments)

        if not deployments:
            return CheckResult.pending(state=deployments, reason=f"no deployments in {namespace} yet")

        not_ready = [d["name"] for d in deployments if not _is_rolled_out(d)]
        if not_ready:
            return CheckResult.pending(state=deployments, reason=f"waiting for {', '.join(not_ready)}")

        return CheckResult.ready(state=deployments)

    return check


def custom_resource_ready(cluster, api_version: str, kind: str, name: str,
                          namespace: str) -> Callable[[], CheckResult]:
    """Ready when the resource reports condition Ready=True"""
    def check() -> CheckResult:
        resource = cluster.get_resource(api_version, kind, name, namespace)
        if resource is None:
            return CheckResult.pending(reason=f"{kind} {namespace}/{name} not found")

        conditions = (resource.get('status') or {}).get('conditions') or []
        for condition in conditions:
            if condition.get('type') == 'Ready':
                if condition.get('status') == 'True':
                    return CheckResult.ready(state=conditions)
                reason = condition.get('message') or condition.get('reason') or "not ready"
                return CheckResult.pending(state=conditions, reason=reason)

        return CheckResult.pending(state=conditions, reason=f"{kind} {name} has no Ready condition yet")

    return check


def catalog_source_ready(cluster, name: str, namespace: str) -> Callable[[], CheckResult]:
    """Ready when the CatalogSource registry connection reports READY"""
    def check() -> CheckResult:
        catalog = cluster.get_resource(ServerlessConstants.CATALOG_SOURCE_API_VERSION,
                                       ServerlessConstants.CATALOG_SOURCE_KIND, name, namespace)
        if catalog is None:
            return CheckResult.pending(reason=f"CatalogSource {namespace}/{name} not found")

        connection = (catalog.get('status') or {}).get('connectionState') or {}
        state = connection.get('lastObservedState')
        if state == ServerlessConstants.CATALOG_READY_STATE:
            return CheckResult.ready(state=connection)
        return CheckResult.pending(state=connection, reason=f"connection state {state or 'unknown'}")

    return check
