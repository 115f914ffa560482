"""
OpenShift Serverless

Mirrors the OpenShift Serverless operator catalog with oc-mirror: to disk on
a connected host, then from disk into the private registry of an air-gapped
OpenShift cluster, where the generated mirror policy and CatalogSource are
applied.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from ..cluster.checks import catalog_source_ready
from ..core.config import AirgapConfig
from ..core.constants import ContainerConstants, ErrorMessages, ServerlessConstants
from ..core.exceptions import ConfigurationError
from ..core.protocols import ClusterAPI, ContainerEngineProvider
from ..reconcile.models import ReadinessCheck, WaitOutcome
from ..reconcile.poller import CancellationToken, ReadinessPoller
from ..registry.mirror import OcMirrorClient, find_mirror_manifests, find_results_dir, render_imageset_config
from .knative import ensure_registry_login

logger = logging.getLogger(__name__)


class ServerlessPreparer:
    """Mirrors the serverless operator catalog to disk (connected host)"""

    def __init__(self, config: AirgapConfig, mirror: OcMirrorClient,
                 docker_config_path: str = ContainerConstants.DOCKER_CONFIG_PATH):
        self.config = config
        self.mirror = mirror
        self.docker_config_path = Path(docker_config_path).expanduser()

    def check_prerequisites(self) -> None:
        """
        Raises:
            ConfigurationError: No registry.redhat.io pull secret or no usable oc-mirror
        """
        if not self.docker_config_path.is_file():
            raise ConfigurationError(ErrorMessages.DOCKER_CONFIG_NOT_FOUND.format(path=self.docker_config_path))
        self.mirror.version()

    def write_imageset_config(self, output_dir: Path) -> Path:
        config_path = Path(output_dir) / ServerlessConstants.IMAGESET_CONFIG_FILE
        config_path.write_text(render_imageset_config(self.config.ocp_version, self.config.serverless_channel))
        logger.info(f"ImageSetConfiguration written: {config_path}")
        return config_path

    def run(self, output_dir: Path) -> Path:
        """
        Produce the directory to carry into the air-gapped environment

        Returns:
            Path: Output directory holding the ImageSetConfiguration and mirror-output
        """
        output_dir = Path(output_dir)
        self.check_prerequisites()
        output_dir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Preparing OpenShift Serverless ({self.config.serverless_channel}) "
                    f"for OpenShift {self.config.ocp_version}")
        config_path = self.write_imageset_config(output_dir)
        self.mirror.mirror_to_disk(config_path.name, ServerlessConstants.MIRROR_OUTPUT_DIR, workdir=output_dir)
        return output_dir


@dataclass
class ServerlessInstallReport:
    destination: str = ""
    mirror_manifest: Optional[str] = None
    # CatalogSource name -> wait outcome (None until waited for)
    catalog_sources: Dict[str, Optional[WaitOutcome]] = field(default_factory=dict)
    catalog_namespaces: Dict[str, str] = field(default_factory=dict)

    @property
    def catalogs_ready(self) -> bool:
        return all(outcome == WaitOutcome.READY for outcome in self.catalog_sources.values())


class ServerlessInstaller:
    """Pushes a mirror-to-disk output into the private registry and points the cluster at it"""

    def __init__(self, config: AirgapConfig, bundle_dir: Path, cluster: ClusterAPI,
                 engine: ContainerEngineProvider, mirror: OcMirrorClient,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 cancel_token: Optional[CancellationToken] = None):
        self.config = config
        self.bundle_dir = Path(bundle_dir)
        self.cluster = cluster
        self.engine = engine
        self.mirror = mirror
        self.poller = ReadinessPoller(clock=clock, sleep=sleep, cancel_token=cancel_token)

    @property
    def mirror_output(self) -> Path:
        return self.bundle_dir / ServerlessConstants.MIRROR_OUTPUT_DIR

    def verify_bundle(self) -> None:
        if not self.mirror_output.is_dir():
            raise ConfigurationError(ErrorMessages.MIRROR_OUTPUT_NOT_FOUND.format(path=self.mirror_output))

    def destination(self) -> str:
        return f"{self.config.require_registry()}/{self.config.mirror_path.strip('/')}"

    def apply_mirror_manifests(self) -> ServerlessInstallReport:
        """
        Apply the mirror policy and CatalogSources from the newest results directory

        Raises:
            ConfigurationError: If oc-mirror produced no CatalogSource
        """
        report = ServerlessInstallReport(destination=self.destination())
        results_dir = find_results_dir(self.bundle_dir / ServerlessConstants.WORKSPACE_DIR)
        mirror_manifest, catalog_sources = find_mirror_manifests(results_dir)

        if mirror_manifest is None:
            logger.warning(f"No ImageContentSourcePolicy or ImageDigestMirrorSet in {results_dir}; "
                           f"image pulls will not be redirected to {report.destination}")
        else:
            self.cluster.apply_manifest(mirror_manifest.read_text())
            report.mirror_manifest = mirror_manifest.name
            logger.info(f"Applied {mirror_manifest.name}")

        if not catalog_sources:
            raise ConfigurationError(f"No CatalogSource manifest in {results_dir}")

        for path in catalog_sources:
            for document in self.cluster.apply_manifest(path.read_text()):
                metadata = document.get('metadata') or {}
                name = metadata['name']
                report.catalog_sources[name] = None
                report.catalog_namespaces[name] = (metadata.get('namespace')
                                                   or ServerlessConstants.CATALOG_SOURCE_NAMESPACE)
                logger.info(f"Applied CatalogSource {name}")

        return report

    def wait_for_catalog_sources(self, report: ServerlessInstallReport) -> None:
        """Wait for every CatalogSource; one that never connects is a warning, not a failure"""
        for name in list(report.catalog_sources):
            namespace = report.catalog_namespaces[name]
            result = self.poller.wait_until(ReadinessCheck(
                description=f"CatalogSource {name}",
                predicate=catalog_source_ready(self.cluster, name, namespace),
                timeout=self.config.catalog_timeout,
                poll_interval=self.config.poll_interval,
            ))
            report.catalog_sources[name] = result.outcome
            if result.ready:
                logger.info(f"CatalogSource {name} is ready")
            else:
                logger.warning(f"CatalogSource {name} not ready after {result.elapsed:g}s: {result.reason}. "
                               f"Check: oc get catalogsource -n {namespace}")

    def run(self) -> ServerlessInstallReport:
        """
        Raises:
            ConfigurationError: mirror-output missing or registry not configured
            OperationCancelled: Cancelled between steps or while waiting
        """
        self.verify_bundle()
        ensure_registry_login(self.engine, self.config)

        cancel_token = self.poller.cancel_token
        cancel_token.raise_if_cancelled("serverless mirror")
        self.mirror.mirror_to_registry(ServerlessConstants.MIRROR_OUTPUT_DIR, self.destination(),
                                       workdir=self.bundle_dir)

        cancel_token.raise_if_cancelled("serverless manifests")
        report = self.apply_mirror_manifests()
        self.wait_for_catalog_sources(report)
        return report

