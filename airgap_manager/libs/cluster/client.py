"""
Cluster Client

Thin wrapper over the OpenShift dynamic client. Resources go in and come out
as plain dicts; API failures are translated into the tool's error types.
"""

import logging
from typing import Any, Dict, List, Optional

import yaml
from kubernetes import client
from kubernetes.dynamic.exceptions import (
    ConflictError, DynamicApiError, NotFoundError, ResourceNotFoundError
)
from openshift.dynamic import DynamicClient

from ..core.exceptions import ClusterError
from ..core.utils import handle_api_error

logger = logging.getLogger(__name__)

PATCH_CONTENT_TYPES = {
    "merge": "application/merge-patch+json",
    "strategic": "application/strategic-merge-patch+json",
    "json": "application/json-patch+json",
}


class ClusterClient:
    """Kubernetes/OpenShift API access through the dynamic client"""

    def __init__(self, dynamic_client: DynamicClient):
        """
        Initialize cluster client

        Args:
            dynamic_client: Configured OpenShift DynamicClient
        """
        self.dynamic = dynamic_client

    def _resource(self, api_version: str, kind: str):
        """
        Look up the API resource for apiVersion/kind

        Raises:
            ResourceNotFoundError: If the API is not served by the cluster
        """
        return self.dynamic.resources.get(api_version=str(api_version), kind=kind)

    def has_api(self, api_version: str, kind: str) -> bool:
        """Check whether the cluster serves apiVersion/kind"""
        try:
            self._resource(api_version, kind)
            return True
        except ResourceNotFoundError:
            return False

    def get_resource(self, api_version: str, kind: str, name: str,
                     namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Fetch a resource

        Returns:
            Dict of the resource, or None if it (or its API) does not exist
        """
        try:
            resource = self._resource(api_version, kind)
            return resource.get(name=name, namespace=namespace).to_dict()
        except (NotFoundError, ResourceNotFoundError):
            return None
        except DynamicApiError as e:
            handle_api_error(e, f"get {kind} {name}")

    def list_resources(self, api_version: str, kind: str, namespace: Optional[str] = None,
                       label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List resources, across all namespaces when namespace is None

        Returns:
            List of resource dicts (empty when the API is not served)
        """
        try:
            resource = self._resource(api_version, kind)
            result = resource.get(namespace=namespace, label_selector=label_selector)
            return result.to_dict().get('items') or []
        except (NotFoundError, ResourceNotFoundError):
            return []
        except DynamicApiError as e:
            handle_api_error(e, f"list {kind}")

    def create_resource(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Create a resource

        Returns:
            Created resource dict, or None if it already exists
        """
        kind = body.get('kind')
        metadata = body.get('metadata') or {}
        name = metadata.get('name')
        namespace = metadata.get('namespace')

        try:
            resource = self._resource(body.get('apiVersion'), kind)
            created = resource.create(body=body, namespace=namespace)
            logger.debug(f"Created {kind} {name}")
            return created.to_dict()
        except ConflictError:
            logger.debug(f"{kind} {name} already exists")
            return None
        except ResourceNotFoundError as e:
            raise ClusterError(f"create {kind} {name}: API not available: {e}")
        except DynamicApiError as e:
            handle_api_error(e, f"create {kind} {name}")

    def patch_resource(self, api_version: str, kind: str, name: str, patch: Any,
                       namespace: Optional[str] = None, patch_type: str = "merge") -> Dict[str, Any]:
        """
        Patch a resource

        Args:
            patch_type: "merge", "strategic" or "json"
        """
        content_type = PATCH_CONTENT_TYPES.get(patch_type)
        if content_type is None:
            raise ClusterError(f"Unsupported patch type: {patch_type}")

        try:
            resource = self._resource(api_version, kind)
            patched = resource.patch(body=patch, name=name, namespace=namespace, content_type=content_type)
            logger.debug(f"Patched {kind} {name}")
            return patched.to_dict()
        except ResourceNotFoundError as e:
            raise ClusterError(f"patch {kind} {name}: API not available: {e}")
        except DynamicApiError as e:
            handle_api_error(e, f"patch {kind} {name}")

    def delete_resource(self, api_version: str, kind: str, name: str, namespace: Optional[str] = None,
                        grace_period_seconds: Optional[int] = None,
                        propagation_policy: str = "Background") -> bool:
        """
        Delete a resource

        Returns:
            bool: False if the resource was already gone
        """
        try:
            resource = self._resource(api_version, kind)
            body = client.V1DeleteOptions(propagation_policy=propagation_policy,
                                          grace_period_seconds=grace_period_seconds)
            resource.delete(name=name, namespace=namespace, body=body)
            logger.debug(f"Deleted {kind} {name}")
            return True
        except (NotFoundError, ResourceNotFoundError):
            return False
        except DynamicApiError as e:
            handle_api_error(e, f"delete {kind} {name}")

    def apply_manifest(self, manifest: str) -> List[Dict[str, Any]]:
        """
        Create or merge-patch every document of a YAML manifest

        Raises:
            ClusterError: If the manifest cannot be parsed or a document is invalid
        """
        try:
            documents = [doc for doc in yaml.safe_load_all(manifest) if doc]
        except yaml.YAMLError as e:
            raise ClusterError(f"Invalid manifest: {e}")

        applied = []
        for document in documents:
            if not isinstance(document, dict) or not document.get('kind') or not document.get('apiVersion'):
                raise ClusterError("Invalid manifest: every document needs apiVersion and kind")

            metadata = document.get('metadata') or {}
            name = metadata.get('name')
            namespace = metadata.get('namespace')
            if not name:
                raise ClusterError(f"Invalid manifest: {document['kind']} has no metadata.name")

            existing = self.get_resource(document['apiVersion'], document['kind'], name, namespace)
            if existing is None:
                result = self.create_resource(document)
                if result is None:
                    result = self.patch_resource(document['apiVersion'], document['kind'], name,
                                                 document, namespace)
                logger.info(f"{document['kind']} {name} created")
            else:
                result = self.patch_resource(document['apiVersion'], document['kind'], name, document, namespace)
                logger.info(f"{document['kind']} {name} configured")
            applied.append(result)

        return applied

    def restart_workloads(self, namespace: str, label_selector: Optional[str] = None) -> int:
        """
        Delete pods so their controllers recreate them with current settings

        Returns:
            int: Number of pods deleted
        """
        pods = self.list_resources("v1", "Pod", namespace=namespace, label_selector=label_selector)
        deleted = 0
        for pod in pods:
            name = pod.get('metadata', {}).get('name')
            if self.delete_resource("v1", "Pod", name, namespace, grace_period_seconds=0):
                deleted += 1
        logger.info(f"Restarted {deleted} pods in {namespace}")
        return deleted

    def snapshot_pods(self, namespace: str) -> List[Dict[str, Any]]:
        """
        Summarize pod status for diagnostics

        Returns:
            List of dicts with name, phase, ready, restarts and waiting reasons
        """
        snapshot = []
        for pod in self.list_resources("v1", "Pod", namespace=namespace):
            status = pod.get('status') or {}
            container_statuses = status.get('containerStatuses') or []
            ready = sum(1 for cs in container_statuses if cs.get('ready'))
            restarts = sum(cs.get('restartCount', 0) for cs in container_statuses)
            reasons = [
                (cs.get('state') or {}).get('waiting', {}).get('reason')
                for cs in container_statuses
                if (cs.get('state') or {}).get('waiting')
            ]
            snapshot.append({
                "name": pod.get('metadata', {}).get('name'),
                "phase": status.get('phase', 'Unknown'),
                "ready": f"{ready}/{len(container_statuses)}",
                "restarts": restarts,
                "reasons": [reason for reason in reasons if reason],
            })
        return snapshot


def create_cluster_client(api_client: client.ApiClient) -> ClusterClient:
    """
    Build a ClusterClient from an authenticated ApiClient

    Raises:
        ClusterError: If API discovery fails
    """
    try:
        return ClusterClient(DynamicClient(api_client))
    except DynamicApiError as e:
        handle_api_error(e, "API discovery")
    except Exception as e:
        handle_api_error(e, "connect to cluster")
