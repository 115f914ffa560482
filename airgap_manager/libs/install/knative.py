"""
Knative Installer

Turns a resolved configuration and an extracted bundle into the
installation run: verify the bundle, push images, then install the operator
and KnativeServing through the installation sequencer.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..cluster.checks import custom_resource_ready, deployments_available
from ..core.config import AirgapConfig
from ..core.constants import BundleConstants, ErrorMessages, KubernetesConstants
from ..core.exceptions import ConfigurationError, RegistryError
from ..core.protocols import ChartInstaller, ClusterAPI, ContainerEngineProvider
from ..core.utils import build_docker_config_json, render_template
from ..reconcile.models import (
    ReadinessCheck, ReconcileTarget, SequenceReport, Stage, SyncReport, build_image_mappings
)
from ..reconcile.poller import CancellationToken, ReadinessPoller
from ..reconcile.remediation import RemediationHook, StorageVersionMigrationRule
from ..reconcile.sequencer import InstallationSequencer, SequencerSettings
from ..reconcile.synchronizer import ImageSynchronizer
from ..reconcile.upserter import (
    ResourceUpserter, deployment_patch_target, namespace_target, pull_secret_target,
    service_account_patch_target
)

logger = logging.getLogger(__name__)

K8s = KubernetesConstants


def ensure_registry_login(engine: ContainerEngineProvider, config: AirgapConfig) -> None:
    """
    Log the engine in to the private registry unless it already is

    Raises:
        ConfigurationError: If not logged in and no push credentials are configured
    """
    registry = config.require_registry()
    if engine.is_logged_in(registry):
        logger.info(f"Registry login validated: {registry}")
        return

    if not (config.push_username and config.push_password):
        raise ConfigurationError(ErrorMessages.NOT_LOGGED_IN.format(registry=registry, engine=engine.name))

    engine.login(registry, config.push_username, config.push_password)


@dataclass
class InstallReport:
    sync: Optional[SyncReport] = None
    sequence: Optional[SequenceReport] = None
    verification: Dict[str, Any] = field(default_factory=dict)


class KnativeInstaller:
    """Installs the Knative Operator and KnativeServing from a bundle"""

    def __init__(self, config: AirgapConfig, bundle_dir: Path, cluster: ClusterAPI,
                 engine: ContainerEngineProvider, helm: ChartInstaller,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 cancel_token: Optional[CancellationToken] = None):
        """
        Initialize installer

        Args:
            config: Resolved configuration
            bundle_dir: Extracted bundle directory
            cluster: ClusterAPI implementation
            engine: ContainerEngineProvider
            helm: ChartInstaller
            clock: Time source for readiness polling
            sleep: Sleep function for polling and patch retries
            cancel_token: Cooperative cancellation
        """
        self.config = config
        self.bundle_dir = Path(bundle_dir)
        self.cluster = cluster
        self.engine = engine
        self.helm = helm
        self.poller = ReadinessPoller(clock=clock, sleep=sleep, cancel_token=cancel_token)

    @property
    def images_archive(self) -> Path:
        return self.bundle_dir / BundleConstants.IMAGES_ARCHIVE

    def find_chart(self) -> Path:
        """
        Locate the operator chart archive in the bundle

        Raises:
            ConfigurationError: If no candidate file exists
        """
        candidates = [template.format(version=self.config.knative_version)
                      for template in BundleConstants.CHART_FILE_TEMPLATES]
        for candidate in candidates:
            path = self.bundle_dir / candidate
            if path.is_file():
                return path
        raise ConfigurationError(ErrorMessages.CHART_NOT_FOUND.format(
            bundle_dir=self.bundle_dir, candidates=", ".join(candidates)))

    def verify_bundle(self) -> Path:
        """
        Check the bundle before anything touches the registry or cluster

        Returns:
            Path: Chart archive
        """
        if not self.images_archive.is_file():
            raise ConfigurationError(ErrorMessages.IMAGES_ARCHIVE_NOT_FOUND.format(archive=self.images_archive))
        chart = self.find_chart()
        logger.info(f"Bundle verified: {self.images_archive.name}, {chart.name}")
        return chart

    def ensure_registry_login(self) -> None:
        """
        Make sure the engine can push to the private registry

        Raises:
            ConfigurationError: If not logged in and no push credentials are configured
        """
        ensure_registry_login(self.engine, self.config)

    def sync_images(self, force: bool = False) -> SyncReport:
        """
        Push missing images to the private registry

        Raises:
            RegistryError: If any image failed to push
        """
        mappings = build_image_mappings(self.config.rendered_images(), self.config.require_registry())
        synchronizer = ImageSynchronizer(self.engine, self.images_archive, workers=self.config.push_workers,
                                         cancel_token=self.poller.cancel_token)
        report = synchronizer.execute(synchronizer.plan(mappings), force=force)

        if not report.succeeded:
            failed = ", ".join(f"{failure.mapping.destination} ({failure.step})" for failure in report.failures)
            raise RegistryError(f"Failed to push {len(report.failures)} images: {failed}")
        return report

    def render_serving_manifest(self) -> str:
        template_path = self.bundle_dir / BundleConstants.SERVING_TEMPLATE
        if not template_path.is_file():
            raise ConfigurationError(f"Serving template not found: {template_path}")
        return render_template(template_path.read_text(), self.config.template_values())

    def _pull_secret(self, namespace: str) -> ReconcileTarget:
        username, password = self.config.pull_credentials()
        docker_config = build_docker_config_json(self.config.require_registry(), username, password)
        return pull_secret_target(namespace, docker_config)

    def _discover_namespace_patches(self, namespace: str) -> Callable[[], List[ReconcileTarget]]:
        """Patch targets for every service account and deployment now in the namespace"""
        def discover() -> List[ReconcileTarget]:
            targets = []
            for account in self.cluster.list_resources("v1", "ServiceAccount", namespace=namespace):
                targets.append(service_account_patch_target(namespace, account['metadata']['name']))
            for deployment in self.cluster.list_resources(str(K8s.ApiVersion.APPS), "Deployment",
                                                          namespace=namespace):
                targets.append(deployment_patch_target(namespace, deployment['metadata']['name']))
            return targets
        return discover

    def _pod_diagnostics(self, *namespaces: str) -> Callable[[], Dict[str, Any]]:
        def diagnostics() -> Dict[str, Any]:
            return {f"pods/{namespace}": self.cluster.snapshot_pods(namespace) for namespace in namespaces}
        return diagnostics

    def restart_unready_webhook(self) -> int:
        """
        Delete operator-webhook pods whose container is not ready

        The Deployment recreates them. Returns the number of pods deleted.
        """
        namespace = K8s.OPERATOR_NAMESPACE
        self.poller.sleep(K8s.WEBHOOK_SETTLE_SECONDS)

        deleted = 0
        for pod in self.cluster.list_resources("v1", "Pod", namespace=namespace,
                                               label_selector=K8s.OPERATOR_WEBHOOK_LABEL):
            statuses = (pod.get('status') or {}).get('containerStatuses') or []
            if statuses and statuses[0].get('ready') is True:
                continue
            name = pod['metadata']['name']
            logger.warning(f"Webhook pod {name} is not ready, restarting it")
            self.cluster.delete_resource("v1", "Pod", name, namespace, grace_period_seconds=0)
            deleted += 1

        if deleted:
            self.poller.sleep(K8s.WEBHOOK_RESTART_SECONDS)
        return deleted

    def operator_stage(self, chart: Path) -> Stage:
        namespace = K8s.OPERATOR_NAMESPACE
        registry = self.config.require_registry()
        version = self.config.knative_version
        values = {
            "knative_operator.knative_operator.image": f"{registry}/knative/operator",
            "knative_operator.knative_operator.tag": f"v{version}",
            "knative_operator.operator_webhook.image": f"{registry}/knative/operator-webhook",
            "knative_operator.operator_webhook.tag": f"v{version}",
        }

        post_patch = []
        for name in K8s.OPERATOR_DEPLOYMENTS:
            post_patch.append(deployment_patch_target(namespace, name, containers=[name]))
            post_patch.append(service_account_patch_target(namespace, name))

        return Stage(
            name="operator",
            preconditions=[namespace_target(namespace), self._pull_secret(namespace)],
            install=lambda: self.helm.install_or_upgrade(K8s.OPERATOR_RELEASE_NAME, chart, namespace, values),
            post_patch=post_patch,
            discover_post_patch=self._discover_namespace_patches(namespace),
            restart=lambda: self.cluster.restart_workloads(namespace),
            wait=ReadinessCheck(
                description="Knative Operator deployments",
                predicate=deployments_available(self.cluster, namespace),
                timeout=self.config.operator_timeout,
                poll_interval=self.config.poll_interval,
            ),
            after_ready=self.restart_unready_webhook,
            diagnostics=self._pod_diagnostics(namespace),
        )

    def serving_stage(self) -> Stage:
        namespace = K8s.SERVING_NAMESPACE
        manifest = self.render_serving_manifest()

        def diagnostics() -> Dict[str, Any]:
            snapshot = self._pod_diagnostics(namespace)()
            serving = self.cluster.get_resource(K8s.KNATIVE_OPERATOR_API_VERSION, K8s.KNATIVE_SERVING_KIND,
                                                K8s.KNATIVE_SERVING_NAME, namespace)
            snapshot["knativeserving"] = (serving or {}).get('status', {}).get('conditions', [])
            return snapshot

        return Stage(
            name="serving",
            preconditions=[namespace_target(namespace), self._pull_secret(namespace)],
            install=lambda: self.cluster.apply_manifest(manifest),
            post_patch=[service_account_patch_target(namespace, K8s.SERVING_CONTROLLER_SERVICE_ACCOUNT)],
            discover_post_patch=self._discover_namespace_patches(namespace),
            restart=lambda: self.cluster.restart_workloads(namespace),
            wait=ReadinessCheck(
                description="KnativeServing Ready",
                predicate=custom_resource_ready(self.cluster, K8s.KNATIVE_OPERATOR_API_VERSION,
                                                K8s.KNATIVE_SERVING_KIND, K8s.KNATIVE_SERVING_NAME, namespace),
                timeout=self.config.serving_timeout,
                poll_interval=self.config.poll_interval,
            ),
            remediation=StorageVersionMigrationRule(namespace),
            diagnostics=diagnostics,
        )

    def build_sequencer(self) -> InstallationSequencer:
        settings = SequencerSettings(patch_attempts=self.config.patch_attempts,
                                     continue_on_timeout=self.config.continue_on_timeout)
        return InstallationSequencer(ResourceUpserter(self.cluster), self.poller,
                                     RemediationHook(self.cluster), settings)

    def verify(self) -> Dict[str, Any]:
        """Collect the post-install state shown to the user"""
        serving = self.cluster.get_resource(K8s.KNATIVE_OPERATOR_API_VERSION, K8s.KNATIVE_SERVING_KIND,
                                            K8s.KNATIVE_SERVING_NAME, K8s.SERVING_NAMESPACE)
        kourier = self.cluster.get_resource("v1", "Service", K8s.KOURIER_SERVICE, K8s.SERVING_NAMESPACE)
        return {
            f"pods/{K8s.OPERATOR_NAMESPACE}": self.cluster.snapshot_pods(K8s.OPERATOR_NAMESPACE),
            f"pods/{K8s.SERVING_NAMESPACE}": self.cluster.snapshot_pods(K8s.SERVING_NAMESPACE),
            "kourier": (kourier or {}).get('status', {}).get('loadBalancer', {}) if kourier else None,
            "knativeserving": (serving or {}).get('status', {}).get('conditions', []) if serving else None,
        }

    def run(self, force: bool = False) -> InstallReport:
        """
        Run the whole installation

        Raises:
            ConfigurationError: Bundle incomplete or configuration missing
            RegistryError: Image push failed (nothing on the cluster is touched)
            SequenceAbortedError: A stage failed; carries the report and diagnostics
        """
        report = InstallReport()
        chart = self.verify_bundle()
        self.config.require_registry()
        self.config.pull_credentials()

        self.ensure_registry_login()
        report.sync = self.sync_images(force=force or self.config.force_push)

        stages = [self.operator_stage(chart), self.serving_stage()]
        report.sequence = self.build_sequencer().run(stages)
        report.verification = self.verify()
        return report
