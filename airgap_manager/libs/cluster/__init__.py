"""
Cluster Libraries

Kubernetes/OpenShift API access and readiness predicates.
"""

from .client import ClusterClient, create_cluster_client
from .checks import deployments_available, custom_resource_ready, catalog_source_ready

__all__ = [
    'ClusterClient',
    'create_cluster_client',
    'deployments_available',
    'custom_resource_ready',
    'catalog_source_ready'
]
