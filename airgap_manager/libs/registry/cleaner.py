"""
Registry Cleaner

Removes Knative images from the local container engine, the private
registry and (on OpenShift) image streams, so the next install pushes fresh
images.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..core.constants import ContainerConstants, KubernetesConstants
from ..core.exceptions import AirgapManagerError
from ..core.protocols import ClusterAPI, ContainerEngineProvider, RegistryAPI

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    removed_local: List[str] = field(default_factory=list)
    deleted_remote: List[str] = field(default_factory=list)
    deleted_image_streams: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures


class RegistryCleaner:
    """Best-effort cleanup; individual failures are collected, not raised"""

    def __init__(self, engine: Optional[ContainerEngineProvider], registry_api: Optional[RegistryAPI],
                 registry_host: str, repositories: List[str], patterns: Optional[List[str]] = None,
                 cluster: Optional[ClusterAPI] = None):
        """
        Initialize registry cleaner

        Args:
            engine: ContainerEngineProvider for local images (None to skip)
            registry_api: RegistryAPI for remote manifests (None to skip)
            registry_host: Private registry host; cached local copies are removed too
            repositories: Repositories (paths below the registry) to empty
            patterns: Substrings selecting local images to remove
            cluster: ClusterAPI for OpenShift image streams (None to skip)
        """
        self.engine = engine
        self.registry_api = registry_api
        self.registry_host = registry_host
        self.repositories = repositories
        self.patterns = patterns if patterns is not None else list(ContainerConstants.CLEANUP_PATTERNS)
        self.cluster = cluster

    def run(self, skip_local: bool = False, skip_remote: bool = False) -> CleanupReport:
        report = CleanupReport()

        if self.engine is not None and not skip_local:
            self.clean_local(report)
        if self.registry_api is not None and not skip_remote:
            self.clean_remote(report)
        if self.cluster is not None:
            self.clean_image_streams(report)

        logger.info(f"Cleanup finished: {len(report.removed_local)} local images, "
                    f"{len(report.deleted_remote)} remote manifests, "
                    f"{len(report.deleted_image_streams)} image streams, {len(report.failures)} failures")
        return report

    def _matches(self, image: str) -> bool:
        lowered = image.lower()
        if self.registry_host and self.registry_host.lower() in lowered:
            return True
        return any(pattern.lower() in lowered for pattern in self.patterns)

    def clean_local(self, report: CleanupReport) -> None:
        logger.info("Cleaning local container images")
        try:
            images = self.engine.list_images()
        except AirgapManagerError as e:
            report.failures.append(f"list local images: {e}")
            return

        for image in images:
            if not self._matches(image):
                continue
            try:
                self.engine.remove_image(image)
                report.removed_local.append(image)
                logger.info(f"Removed local image {image}")
            except AirgapManagerError as e:
                report.failures.append(f"remove {image}: {e}")

        try:
            self.engine.prune()
        except AirgapManagerError as e:
            report.failures.append(f"prune dangling images: {e}")

    def clean_remote(self, report: CleanupReport) -> None:
        logger.info(f"Cleaning repositories in {self.registry_host}")
        for repository in self.repositories:
            try:
                tags = self.registry_api.list_tags(repository)
            except AirgapManagerError as e:
                report.failures.append(f"list tags of {repository}: {e}")
                continue

            if not tags:
                logger.info(f"No tags found in {repository}")

            for tag in tags:
                reference = f"{repository}:{tag}"
                try:
                    digest = self.registry_api.get_digest(repository, tag)
                    if digest is None:
                        continue
                    self.registry_api.delete_manifest(repository, digest)
                    report.deleted_remote.append(reference)
                    logger.info(f"Deleted {reference}")
                except AirgapManagerError as e:
                    report.failures.append(f"delete {reference}: {e}")

    def clean_image_streams(self, report: CleanupReport) -> None:
        api_version = KubernetesConstants.IMAGE_API_VERSION
        kind = KubernetesConstants.IMAGE_STREAM_KIND
        if not self.cluster.has_api(api_version, kind):
            logger.debug("Image stream API not available, skipping OpenShift cleanup")
            return

        for namespace in KubernetesConstants.IMAGE_STREAM_NAMESPACES:
            try:
                streams = self.cluster.list_resources(api_version, kind, namespace=namespace)
            except AirgapManagerError as e:
                report.failures.append(f"list image streams in {namespace}: {e}")
                continue

            for stream in streams:
                name = stream.get('metadata', {}).get('name')
                try:
                    if self.cluster.delete_resource(api_version, kind, name, namespace):
                        report.deleted_image_streams.append(f"{namespace}/{name}")
                except AirgapManagerError as e:
                    report.failures.append(f"delete image stream {namespace}/{name}: {e}")
