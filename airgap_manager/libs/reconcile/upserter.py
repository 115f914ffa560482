"""
Resource Upserter

Brings a single cluster resource to its desired state: create when absent,
leave alone when present, patch only the fields the installer owns. Every
call re-queries the cluster.
"""

import logging
from typing import Any, Dict, List, Optional

from ..core.constants import KubernetesConstants
from ..core.exceptions import ConfigurationError
from ..core.protocols import ClusterAPI
from .models import ReconcileTarget, ResourceKind, UpsertOutcome

logger = logging.getLogger(__name__)

ApiVersion = KubernetesConstants.ApiVersion


class ResourceUpserter:
    """Idempotent create-or-patch of namespaces, secrets, bindings and pull-secret patches"""

    def __init__(self, cluster: ClusterAPI):
        """
        Initialize upserter

        Args:
            cluster: ClusterAPI implementation
        """
        self.cluster = cluster
        self._handlers = {
            ResourceKind.NAMESPACE: self._upsert_namespace,
            ResourceKind.SECRET: self._upsert_secret,
            ResourceKind.CLUSTER_ROLE_BINDING: self._upsert_cluster_role_binding,
            ResourceKind.SERVICE_ACCOUNT_PATCH: self._patch_service_account,
            ResourceKind.DEPLOYMENT_PATCH: self._patch_deployment,
        }

    def upsert(self, target: ReconcileTarget) -> UpsertOutcome:
        """
        Reconcile one target

        Returns:
            UpsertOutcome: APPLIED, ALREADY_EXISTS, or SKIPPED when the object to
            patch does not exist yet

        Raises:
            UnrecoverableError: Permission denied or malformed payload
            TransientError: API temporarily unavailable
        """
        handler = self._handlers.get(target.kind)
        if handler is None:
            raise ConfigurationError(f"Unsupported resource kind: {target.kind}")

        outcome = handler(target)
        if outcome == UpsertOutcome.SKIPPED:
            logger.info(f"{target}: not present yet, skipped")
        else:
            logger.info(f"{target}: {outcome.value}")
        return outcome

    def _create_if_absent(self, api_version: str, target: ReconcileTarget, body: Dict[str, Any]) -> UpsertOutcome:
        if self.cluster.get_resource(api_version, target.kind.value, target.name, target.namespace) is not None:
            return UpsertOutcome.ALREADY_EXISTS

        created = self.cluster.create_resource(body)
        # Another writer created it between lookup and create
        if created is None:
            return UpsertOutcome.ALREADY_EXISTS
        return UpsertOutcome.APPLIED

    def _upsert_namespace(self, target: ReconcileTarget) -> UpsertOutcome:
        body = target.desired_spec or {
            "apiVersion": str(ApiVersion.CORE),
            "kind": "Namespace",
            "metadata": {"name": target.name},
        }
        return self._create_if_absent(str(ApiVersion.CORE), target, body)

    def _upsert_secret(self, target: ReconcileTarget) -> UpsertOutcome:
        if not target.desired_spec:
            raise ConfigurationError(f"{target}: secret body is required")
        return self._create_if_absent(str(ApiVersion.CORE), target, target.desired_spec)

    def _upsert_cluster_role_binding(self, target: ReconcileTarget) -> UpsertOutcome:
        desired = target.desired_spec
        if not desired or 'roleRef' not in desired:
            raise ConfigurationError(f"{target}: binding body with roleRef is required")

        existing = self.cluster.get_resource(str(ApiVersion.RBAC), target.kind.value, target.name)
        if existing is None:
            created = self.cluster.create_resource(desired)
            return UpsertOutcome.APPLIED if created is not None else UpsertOutcome.ALREADY_EXISTS

        if _normalize_role_ref(existing.get('roleRef')) == _normalize_role_ref(desired['roleRef']):
            return UpsertOutcome.ALREADY_EXISTS

        # roleRef is immutable, so a changed binding has to be replaced
        logger.info(f"{target}: roleRef changed, recreating binding")
        self.cluster.delete_resource(str(ApiVersion.RBAC), target.kind.value, target.name)
        self.cluster.create_resource(desired)
        return UpsertOutcome.APPLIED

    def _patch_service_account(self, target: ReconcileTarget) -> UpsertOutcome:
        desired_secrets = (target.desired_spec or {}).get('imagePullSecrets') or []
        if not desired_secrets:
            raise ConfigurationError(f"{target}: imagePullSecrets to add are required")

        account = self.cluster.get_resource(str(ApiVersion.CORE), "ServiceAccount", target.name, target.namespace)
        if account is None:
            return UpsertOutcome.SKIPPED

        current = account.get('imagePullSecrets') or []
        present = {entry.get('name') for entry in current}
        missing = [entry for entry in desired_secrets if entry.get('name') not in present]
        if not missing:
            return UpsertOutcome.ALREADY_EXISTS

        # Merge patch replaces lists, so send the full desired list
        patch = {"imagePullSecrets": list(current) + missing}
        self.cluster.patch_resource(str(ApiVersion.CORE), "ServiceAccount", target.name, patch,
                                    namespace=target.namespace, patch_type="merge")
        return UpsertOutcome.APPLIED

    def _patch_deployment(self, target: ReconcileTarget) -> UpsertOutcome:
        spec = target.desired_spec or {}
        policy = spec.get('imagePullPolicy', 'Always')
        wanted: Optional[List[str]] = spec.get('containers')

        deployment = self.cluster.get_resource(str(ApiVersion.APPS), "Deployment", target.name, target.namespace)
        if deployment is None:
            return UpsertOutcome.SKIPPED

        containers = (((deployment.get('spec') or {}).get('template') or {}).get('spec') or {}).get('containers') or []
        pending = [
            container['name'] for container in containers
            if (wanted is None or container.get('name') in wanted)
            and container.get('imagePullPolicy') != policy
        ]
        if not pending:
            return UpsertOutcome.ALREADY_EXISTS

        patch = {"spec": {"template": {"spec": {"containers": [
            {"name": name, "imagePullPolicy": policy} for name in pending
        ]}}}}
        self.cluster.patch_resource(str(ApiVersion.APPS), "Deployment", target.name, patch,
                                    namespace=target.namespace, patch_type="strategic")
        return UpsertOutcome.APPLIED


def _normalize_role_ref(role_ref: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    role_ref = role_ref or {}
    return {
        "apiGroup": role_ref.get("apiGroup", "rbac.authorization.k8s.io"),
        "kind": role_ref.get("kind"),
        "name": role_ref.get("name"),
    }


def namespace_target(name: str) -> ReconcileTarget:
    return ReconcileTarget(ResourceKind.NAMESPACE, name)


def pull_secret_target(namespace: str, docker_config_json: str,
                       name: str = KubernetesConstants.PULL_SECRET_NAME) -> ReconcileTarget:
    """
    Image pull secret target

    Args:
        namespace: Namespace to create the secret in
        docker_config_json: base64 encoded .dockerconfigjson payload
        name: Secret name
    """
    body = {
        "apiVersion": str(ApiVersion.CORE),
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "type": KubernetesConstants.DOCKER_CONFIG_SECRET_TYPE,
        "data": {KubernetesConstants.DOCKER_CONFIG_KEY: docker_config_json},
    }
    return ReconcileTarget(ResourceKind.SECRET, name, namespace, body)


def service_account_patch_target(namespace: str, service_account: str,
                                 secret_name: str = KubernetesConstants.PULL_SECRET_NAME) -> ReconcileTarget:
    return ReconcileTarget(ResourceKind.SERVICE_ACCOUNT_PATCH, service_account, namespace,
                           {"imagePullSecrets": [{"name": secret_name}]})


def deployment_patch_target(namespace: str, deployment: str, containers: Optional[List[str]] = None,
                            pull_policy: str = "Always") -> ReconcileTarget:
    spec: Dict[str, Any] = {"imagePullPolicy": pull_policy}
    if containers is not None:
        spec["containers"] = list(containers)
    return ReconcileTarget(ResourceKind.DEPLOYMENT_PATCH, deployment, namespace, spec)


def cluster_role_binding_target(name: str, cluster_role: str,
                                subjects: List[Dict[str, str]]) -> ReconcileTarget:
    body = {
        "apiVersion": str(ApiVersion.RBAC),
        "kind": "ClusterRoleBinding",
        "metadata": {"name": name},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": cluster_role},
        "subjects": subjects,
    }
    return ReconcileTarget(ResourceKind.CLUSTER_ROLE_BINDING, name, desired_spec=body)
