"""
Image Synchronizer

Moves images from the bundle archive into the private registry, pushing only
what the registry lacks.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional

from ..core.constants import ErrorMessages
from ..core.exceptions import AirgapManagerError, ConfigurationError
from ..core.protocols import ContainerEngineProvider
from .models import ImageMapping, SyncFailure, SyncPlan, SyncReport
from .poller import CancellationToken

logger = logging.getLogger(__name__)


class ImageSynchronizer:
    """Plans and executes image pushes from an archive to the private registry"""

    def __init__(self, engine: ContainerEngineProvider, archive_path: Path, workers: int = 1,
                 cancel_token: Optional[CancellationToken] = None):
        """
        Initialize synchronizer

        Args:
            engine: ContainerEngineProvider implementation
            archive_path: Image archive produced by the prepare step
            workers: Number of concurrent pushes
            cancel_token: Checked before the load and before every image transfer
        """
        if workers < 1:
            raise ConfigurationError("workers must be at least 1")
        self.engine = engine
        self.archive_path = Path(archive_path)
        self.workers = workers
        self.cancel_token = cancel_token or CancellationToken()

    def plan(self, mappings: List[ImageMapping]) -> SyncPlan:
        """
        Determine which destinations are missing from the registry

        Existence is judged by reference only: a tag that is already present
        is assumed to hold the same image.
        """
        missing = []
        for mapping in mappings:
            if self.engine.image_exists(str(mapping.destination)):
                logger.info(f"Already in registry: {mapping.destination}")
            else:
                logger.info(f"Missing from registry: {mapping.destination}")
                missing.append(mapping)

        logger.info(f"{len(missing)} of {len(mappings)} images need to be pushed")
        return SyncPlan(mappings=list(mappings), missing=missing)

    def execute(self, plan: SyncPlan, force: bool = False) -> SyncReport:
        """
        Push missing images (or every image when force is set)

        The archive is loaded at most once. Tag or push failures are recorded
        and the remaining mappings still run.

        Raises:
            ConfigurationError: If the archive is missing (checked before any side effect)
            OperationCancelled: If the token is set; images not yet started are not pushed
        """
        report = SyncReport()

        if plan.is_satisfied and not force:
            logger.info("All images already present in the private registry")
            report.skipped = list(plan.mappings)
            return report

        if not self.archive_path.is_file():
            raise ConfigurationError(ErrorMessages.IMAGES_ARCHIVE_NOT_FOUND.format(archive=self.archive_path))

        to_push = list(plan.mappings) if force else list(plan.missing)
        pending = set(to_push)
        report.skipped = [mapping for mapping in plan.mappings if mapping not in pending]

        self.cancel_token.raise_if_cancelled("image sync")
        logger.info(f"Loading images from {self.archive_path}")
        self.engine.load(self.archive_path)
        report.loaded = True

        if self.workers > 1 and len(to_push) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                # map() yields results in submission order
                results = list(executor.map(self._transfer, to_push))
        else:
            results = [self._transfer(mapping) for mapping in to_push]

        for mapping, failure in zip(to_push, results):
            if failure is None:
                report.pushed.append(mapping)
            else:
                report.failures.append(failure)

        logger.info(f"Pushed {len(report.pushed)} images, {len(report.failures)} failed")
        return report

    def _transfer(self, mapping: ImageMapping) -> Optional[SyncFailure]:
        """Tag and push one mapping, returning the failure instead of raising"""
        self.cancel_token.raise_if_cancelled(f"image sync of {mapping.destination}")
        step = "tag"
        try:
            self.engine.tag(str(mapping.source), str(mapping.destination))
            step = "push"
            self.engine.push(str(mapping.destination))
        except AirgapManagerError as e:
            logger.error(f"Failed to {step} {mapping}: {e}")
            return SyncFailure(mapping=mapping, step=step, error=str(e))

        logger.info(f"Pushed {mapping.destination}")
        return None
