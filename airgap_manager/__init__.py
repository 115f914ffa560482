"""
Air-Gap Manager

Installs the Knative Operator and Knative Serving into air-gapped
Kubernetes/OpenShift clusters: bundle preparation on a connected host,
image push to a private registry, and an idempotent staged installation.
"""

__version__ = "1.0.0"

from .libs import AirgapManager, main

__all__ = [
    'AirgapManager',
    'main'
]
