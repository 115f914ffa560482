"""
Exceptions Module

Exception hierarchy for the Air-Gap Manager tool.

Errors fall into four groups:
- ConfigurationError: missing archive/chart/value, never retried
- TransientError: retried within bounded attempts by the caller
- UnrecoverableError: aborts the current stage and the whole sequence
- AuthenticationError: credentials rejected by the cluster or registry

"Already satisfied" is not an error and never raised.
"""

from typing import Any, Optional


class AirgapManagerError(Exception):
    """Base exception for all Air-Gap Manager errors"""


class ConfigurationError(AirgapManagerError):
    """Missing or invalid configuration (fatal, reported immediately)"""


class AuthenticationError(AirgapManagerError):
    """Cluster or registry authentication failed"""


class TransientError(AirgapManagerError):
    """Temporary failure that may succeed if retried"""


class UnrecoverableError(AirgapManagerError):
    """Permanent failure such as permission denied or a malformed manifest"""


class ClusterError(UnrecoverableError):
    """Kubernetes/OpenShift API request failed"""


class ContainerEngineError(UnrecoverableError):
    """Container engine (podman/docker) command failed"""


class ChartInstallError(UnrecoverableError):
    """Helm command failed"""


class RegistryError(UnrecoverableError):
    """Registry HTTP API request failed"""


class MirrorError(UnrecoverableError):
    """oc-mirror command failed"""


class OperationCancelled(AirgapManagerError):
    """Operation was cancelled through a cancellation token"""


class SequenceAbortedError(AirgapManagerError):
    """Installation sequence aborted; carries the report with diagnostics"""

    def __init__(self, message: str, report: Optional[Any] = None):
        super().__init__(message)
        self.report = report
