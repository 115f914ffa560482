"""
Registry Libraries

Container engine, Helm, oc-mirror and registry API clients, plus bundle
preparation and registry cleanup.
"""

from .engine import ContainerEngine, detect_container_runtime
from .helm import HelmClient
from .mirror import OcMirrorClient
from .api import RegistryAPIClient
from .bundle import BundleBuilder
from .cleaner import RegistryCleaner, CleanupReport

__all__ = [
    'ContainerEngine',
    'detect_container_runtime',
    'HelmClient',
    'OcMirrorClient',
    'RegistryAPIClient',
    'BundleBuilder',
    'RegistryCleaner',
    'CleanupReport'
]
