"""
Bundle Builder

Prepares the air-gapped bundle on a connected host: Helm chart, image
archive, serving template, version markers and a non-secret config file,
packed into knative-airgapped-<version>.tar.gz.
"""

import logging
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Optional

from ..core.config import AirgapConfig, ConfigManager
from ..core.constants import BundleConstants
from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_PATH = Path(__file__).resolve().parents[2] / "templates" / BundleConstants.SERVING_TEMPLATE


class BundleBuilder:
    """Builds the transferable installation bundle"""

    def __init__(self, engine, helm, config: AirgapConfig, template_path: Optional[Path] = None):
        """
        Initialize bundle builder

        Args:
            engine: ContainerEngineProvider used to pull and save images
            helm: HelmClient used to download the chart
            config: Resolved configuration (versions and image catalog)
            template_path: KnativeServing template to ship
        """
        self.engine = engine
        self.helm = helm
        self.config = config
        self.template_path = Path(template_path) if template_path else DEFAULT_TEMPLATE_PATH

    @property
    def bundle_name(self) -> str:
        return BundleConstants.BUNDLE_NAME_TEMPLATE.format(version=self.config.knative_version)

    def build(self, output_dir: Path) -> Path:
        """
        Build the bundle archive

        Returns:
            Path: The created .tar.gz archive

        Raises:
            ConfigurationError: If no images are configured or the template is missing
        """
        images = self.config.rendered_images()
        if not images:
            raise ConfigurationError("No images configured. Add an 'images' section to the config file.")
        if not self.template_path.is_file():
            raise ConfigurationError(f"Serving template not found: {self.template_path}")

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        archive_path = output_dir / f"{self.bundle_name}.tar.gz"

        with tempfile.TemporaryDirectory(prefix="airgap-bundle-") as build_dir:
            bundle_dir = Path(build_dir) / self.bundle_name
            bundle_dir.mkdir()

            logger.info("Downloading Knative Operator Helm chart")
            self.helm.add_repo(BundleConstants.CHART_REPO_NAME, BundleConstants.CHART_REPO_URL)
            self.helm.pull_chart(f"{BundleConstants.CHART_REPO_NAME}/{BundleConstants.CHART_NAME}",
                                 self.config.knative_version, bundle_dir)

            sources = [source for source, _ in images]
            logger.info(f"Pulling {len(sources)} container images")
            for source in sources:
                self.engine.pull(source)
            self.engine.save(sources, bundle_dir / BundleConstants.IMAGES_ARCHIVE)

            shutil.copyfile(self.template_path, bundle_dir / BundleConstants.SERVING_TEMPLATE)
            (bundle_dir / BundleConstants.VERSION_FILE).write_text(f"{self.config.knative_version}\n")
            (bundle_dir / BundleConstants.ENVOY_VERSION_FILE).write_text(f"{self.config.envoy_version}\n")
            (bundle_dir / BundleConstants.BUNDLE_CONFIG_FILE).write_text(
                ConfigManager.get_bundle_config_content(self.config))

            logger.info(f"Creating archive {archive_path}")
            with tarfile.open(archive_path, "w:gz") as archive:
                archive.add(bundle_dir, arcname=self.bundle_name)

        return archive_path
