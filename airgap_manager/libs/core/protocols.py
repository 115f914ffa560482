"""
Protocols Module

Structural interfaces for the external collaborators the orchestrator drives.
Concrete implementations live in libs.cluster and libs.registry; tests
substitute in-memory fakes.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence


class ClusterAPI(Protocol):
    """Kubernetes/OpenShift API access (resources are plain dicts)"""

    def has_api(self, api_version: str, kind: str) -> bool:
        ...

    def get_resource(self, api_version: str, kind: str, name: str,
                     namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return the resource, or None when it does not exist"""
        ...

    def list_resources(self, api_version: str, kind: str, namespace: Optional[str] = None,
                       label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        ...

    def create_resource(self, body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Create the resource; return None when it already exists (409 Conflict)"""
        ...

    def patch_resource(self, api_version: str, kind: str, name: str, patch: Dict[str, Any],
                       namespace: Optional[str] = None, patch_type: str = "merge") -> Dict[str, Any]:
        ...

    def delete_resource(self, api_version: str, kind: str, name: str,
                        namespace: Optional[str] = None) -> bool:
        """Delete the resource; return False when it was already absent"""
        ...

    def apply_manifest(self, manifest: str) -> List[Dict[str, Any]]:
        ...

    def restart_workloads(self, namespace: str, label_selector: Optional[str] = None) -> int:
        ...

    def snapshot_pods(self, namespace: str) -> List[Dict[str, Any]]:
        ...


class ContainerEngineProvider(Protocol):
    """Container engine CLI (podman or docker)"""

    name: str

    def pull(self, ref: str) -> None:
        ...

    def save(self, refs: Sequence[str], archive_path: Path) -> None:
        ...

    def load(self, archive_path: Path) -> None:
        ...

    def tag(self, source: str, destination: str) -> None:
        ...

    def push(self, ref: str) -> None:
        ...

    def image_exists(self, ref: str) -> bool:
        ...

    def login(self, registry: str, username: str, password: str) -> None:
        ...

    def is_logged_in(self, registry: str) -> bool:
        ...

    def list_images(self) -> List[str]:
        ...

    def remove_image(self, ref: str) -> None:
        ...

    def prune(self) -> None:
        ...


class ChartInstaller(Protocol):
    """Helm client"""

    def install_or_upgrade(self, release_name: str, chart_archive: Path, namespace: str,
                           values: Dict[str, str]) -> None:
        ...

    def uninstall(self, release_name: str, namespace: str) -> None:
        ...

    def release_exists(self, release_name: str, namespace: str) -> bool:
        ...


class RegistryAPI(Protocol):
    """Registry HTTP API (Docker Registry v2 / OCI distribution)"""

    def list_tags(self, repository: str) -> List[str]:
        ...

    def get_digest(self, repository: str, tag: str) -> Optional[str]:
        ...

    def delete_manifest(self, repository: str, digest: str) -> None:
        ...
