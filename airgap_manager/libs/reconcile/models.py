"""
Data Models Module

Typed data structures shared by the reconciliation components: image
references and mappings, reconcile targets, readiness checks, remediation
rules and the reports produced by each step.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..core.exceptions import ConfigurationError

_DIGEST_PATTERN = re.compile(r'^[A-Za-z0-9_+.-]+:[A-Fa-f0-9]{32,}$')
_TAG_PATTERN = re.compile(r'^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$')
_PATH_COMPONENT = r'[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*'
_REPOSITORY_PATTERN = re.compile(rf'^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$')


@dataclass(frozen=True)
class ImageReference:
    """Container image reference: [registry/]repository[:tag|@digest]"""

    registry: Optional[str]
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> 'ImageReference':
        """
        Parse an image reference string

        The first path component is treated as a registry host when it
        contains '.' or ':' or is 'localhost'.

        Raises:
            ConfigurationError: If the reference is malformed or carries both tag and digest
        """
        if not text or not isinstance(text, str) or not text.strip():
            raise ConfigurationError("Image reference cannot be empty")

        remainder = text.strip()
        digest = None
        if '@' in remainder:
            remainder, digest = remainder.split('@', 1)
            if not _DIGEST_PATTERN.match(digest):
                raise ConfigurationError(f"Invalid digest in image reference: {text}")

        tag = None
        last_slash = remainder.rfind('/')
        last_colon = remainder.rfind(':')
        if last_colon > last_slash:
            remainder, tag = remainder[:last_colon], remainder[last_colon + 1:]
            if not _TAG_PATTERN.match(tag):
                raise ConfigurationError(f"Invalid tag in image reference: {text}")

        if tag and digest:
            raise ConfigurationError(f"Image reference cannot carry both a tag and a digest: {text}")

        registry = None
        components = remainder.split('/')
        if len(components) > 1 and ('.' in components[0] or ':' in components[0]
                                     or components[0] == 'localhost'):
            registry = components[0]
            components = components[1:]

        repository = '/'.join(components)
        if not _REPOSITORY_PATTERN.match(repository):
            raise ConfigurationError(f"Invalid repository in image reference: {text}")

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    def with_registry(self, host: str) -> 'ImageReference':
        """
        Copy of this reference re-homed to another registry

        The host may carry a path prefix (registry.example.com/mirror), which
        becomes part of the repository.
        """
        host = host.rstrip('/')
        if '/' not in host:
            return replace(self, registry=host)
        return ImageReference.parse(f"{host}/{self.repository}{self._suffix()}")

    @property
    def name(self) -> str:
        """Reference without tag or digest"""
        return f"{self.registry}/{self.repository}" if self.registry else self.repository

    def _suffix(self) -> str:
        if self.digest:
            return f"@{self.digest}"
        if self.tag:
            return f":{self.tag}"
        return ""

    def __str__(self) -> str:
        return f"{self.name}{self._suffix()}"


@dataclass(frozen=True)
class ImageMapping:
    """Public source image and its private-registry destination"""

    source: ImageReference
    destination: ImageReference

    def __str__(self) -> str:
        return f"{self.source} -> {self.destination}"


def build_image_mappings(entries: Iterable[Tuple[str, str]], private_registry: str) -> List[ImageMapping]:
    """
    Build mappings from (source, destination path) pairs

    Destinations are placed under the private registry; a source that
    already lives in the private registry is rejected.

    Args:
        entries: (source reference, destination path) pairs in configuration order
        private_registry: Private registry host, optionally with a path prefix

    Returns:
        List[ImageMapping]: Mappings in configuration order

    Raises:
        ConfigurationError: If an entry is malformed or violates the registry invariant
    """
    private_registry = private_registry.rstrip('/')
    registry_prefix = f"{private_registry}/"
    mappings = []

    for source_text, destination_path in entries:
        source = ImageReference.parse(source_text)
        if str(source).startswith(registry_prefix):
            raise ConfigurationError(f"Source image already points at the private registry: {source}")

        destination_path = destination_path.strip()
        if destination_path.startswith(registry_prefix):
            destination_path = destination_path[len(registry_prefix):]
        destination = ImageReference.parse(f"{registry_prefix}{destination_path.lstrip('/')}")

        mappings.append(ImageMapping(source=source, destination=destination))

    return mappings


@dataclass
class SyncPlan:
    """Result of checking which destinations are missing from the private registry"""

    mappings: List[ImageMapping]
    missing: List[ImageMapping] = field(default_factory=list)

    @property
    def is_satisfied(self) -> bool:
        return not self.missing


@dataclass
class SyncFailure:
    """A mapping that could not be tagged or pushed"""

    mapping: ImageMapping
    step: str
    error: str


@dataclass
class SyncReport:
    loaded: bool = False
    pushed: List[ImageMapping] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)
    skipped: List[ImageMapping] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures


class ResourceKind(str, Enum):
    """Kinds of resources the upserter reconciles"""
    NAMESPACE = "Namespace"
    SECRET = "Secret"
    SERVICE_ACCOUNT_PATCH = "ServiceAccountPatch"
    CLUSTER_ROLE_BINDING = "ClusterRoleBinding"
    DEPLOYMENT_PATCH = "DeploymentPatch"


@dataclass
class ReconcileTarget:
    """
    A resource to bring to its desired state

    desired_spec holds the full object body for Namespace, Secret and
    ClusterRoleBinding targets, {"imagePullSecrets": [...]} for service
    account patches and {"imagePullPolicy": ...} for deployment patches.
    """

    kind: ResourceKind
    name: str
    namespace: Optional[str] = None
    desired_spec: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        location = f"{self.namespace}/{self.name}" if self.namespace else self.name
        return f"{self.kind.value} {location}"


class UpsertOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_EXISTS = "already_exists"
    SKIPPED = "skipped"


class ReadinessStatus(str, Enum):
    READY = "ready"
    PENDING = "pending"
    ERROR = "error"


@dataclass
class CheckResult:
    """Outcome of one evaluation of a readiness predicate"""

    status: ReadinessStatus
    state: Any = None
    reason: str = ""

    @classmethod
    def ready(cls, state: Any = None, reason: str = "") -> 'CheckResult':
        return cls(ReadinessStatus.READY, state, reason)

    @classmethod
    def pending(cls, state: Any = None, reason: str = "") -> 'CheckResult':
        return cls(ReadinessStatus.PENDING, state, reason)

    @classmethod
    def error(cls, reason: str, state: Any = None) -> 'CheckResult':
        return cls(ReadinessStatus.ERROR, state, reason)


@dataclass
class ReadinessCheck:
    """Predicate polled until ready, errored or timed out"""

    description: str
    predicate: Callable[[], CheckResult]
    timeout: float
    poll_interval: float

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ConfigurationError(f"{self.description}: poll interval must be positive")
        if self.timeout < 0:
            raise ConfigurationError(f"{self.description}: timeout must not be negative")


class RemediationOutcome(str, Enum):
    PATCHED = "patched"
    NO_ACTION_NEEDED = "no_action_needed"
    ERROR = "error"


class WaitOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass
class WaitResult:
    outcome: WaitOutcome
    elapsed: float
    cycles: int
    last_state: Any = None
    reason: str = ""
    remediations: List[RemediationOutcome] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.outcome == WaitOutcome.READY


class RemediationRule(ABC):
    """
    A known failure mode and the patch that repairs it

    apply() must be idempotent: applying it to an already-patched state
    yields the same state.
    """

    description: str = "remediation"

    @abstractmethod
    def fetch(self, cluster) -> Optional[Dict[str, Any]]:
        """Return the live object this rule inspects, or None if absent"""

    @abstractmethod
    def detect(self, state: Optional[Dict[str, Any]]) -> bool:
        """True when the failure mode is present"""

    @abstractmethod
    def is_already_applied(self, state: Optional[Dict[str, Any]]) -> bool:
        """True when the patch is already in place"""

    @abstractmethod
    def apply(self, state: Dict[str, Any]) -> Dict[str, Any]:
        """Return the patched object body, ready to be recreated"""


class StageStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class Stage:
    """One installation stage and its hooks"""

    name: str
    preconditions: List[ReconcileTarget] = field(default_factory=list)
    install: Optional[Callable[[], None]] = None
    post_patch: List[ReconcileTarget] = field(default_factory=list)
    wait: Optional[ReadinessCheck] = None
    remediation: Optional[RemediationRule] = None
    discover_post_patch: Optional[Callable[[], List[ReconcileTarget]]] = None
    restart: Optional[Callable[[], None]] = None
    # Runs once the wait reports READY
    after_ready: Optional[Callable[[], None]] = None
    diagnostics: Optional[Callable[[], Dict[str, Any]]] = None


@dataclass
class StageReport:
    name: str
    status: StageStatus = StageStatus.FAILED
    upserts: List[Tuple[str, UpsertOutcome]] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    wait: Optional[WaitResult] = None
    error: str = ""


@dataclass
class SequenceReport:
    stages: List[StageReport] = field(default_factory=list)
    aborted_stage: Optional[str] = None
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.aborted_stage is None

    def stage(self, name: str) -> Optional[StageReport]:
        for report in self.stages:
            if report.name == name:
                return report
        return None
