"""
oc-mirror Client

Drives the oc-mirror CLI that mirrors the OpenShift Serverless operator
catalog to disk on a connected host and from disk into a private registry.
Also renders the ImageSetConfiguration and locates the manifests oc-mirror
writes for the cluster.
"""

import logging
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..core.constants import ErrorMessages, ServerlessConstants, TimeoutConstants
from ..core.exceptions import AuthenticationError, ConfigurationError, MirrorError, TransientError
from ..core.utils import truncate_string
from .engine import AUTH_FAILURE_MARKERS, TRANSIENT_FAILURE_MARKERS

logger = logging.getLogger(__name__)


def download_url(system: Optional[str] = None, machine: Optional[str] = None) -> str:
    """
    Where to fetch oc-mirror for this host

    macOS and unknown architectures get the x86_64 build.
    """
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()

    arch = "x86_64"
    if system == "linux" and machine in ("aarch64", "arm64"):
        arch = "arm64"

    base = ServerlessConstants.DOWNLOAD_BASE.format(arch=arch)
    return f"{base}/{ServerlessConstants.DOWNLOAD_FILES[arch]}"


def build_imageset_config(ocp_version: str, channel: str) -> Dict[str, Any]:
    """ImageSetConfiguration selecting the serverless operator from the Red Hat index"""
    return {
        "apiVersion": ServerlessConstants.IMAGESET_API_VERSION,
        "kind": "ImageSetConfiguration",
        "storageConfig": {
            "local": {"path": ServerlessConstants.METADATA_DIR},
        },
        "mirror": {
            "operators": [
                {
                    "catalog": ServerlessConstants.CATALOG_TEMPLATE.format(ocp_version=ocp_version),
                    "packages": [
                        {
                            "name": ServerlessConstants.PACKAGE_NAME,
                            "channels": [{"name": channel}],
                        }
                    ],
                }
            ]
        },
    }


def render_imageset_config(ocp_version: str, channel: str) -> str:
    return yaml.safe_dump(build_imageset_config(ocp_version, channel), sort_keys=False, default_flow_style=False)


def find_results_dir(workspace: Path) -> Path:
    """
    Newest results-* directory written by a disk-to-registry run

    Raises:
        ConfigurationError: If oc-mirror left no results directory
    """
    results = sorted(Path(workspace).glob(ServerlessConstants.RESULTS_PATTERN), key=lambda p: p.stat().st_mtime)
    if not results:
        raise ConfigurationError(f"No {ServerlessConstants.RESULTS_PATTERN} directory in {workspace}")
    return results[-1]


def find_mirror_manifests(results_dir: Path) -> Tuple[Optional[Path], List[Path]]:
    """
    Locate the mirror manifest and the catalog sources in a results directory

    Returns:
        (ImageContentSourcePolicy or ImageDigestMirrorSet path or None, CatalogSource paths)
    """
    results_dir = Path(results_dir)
    mirror_manifest = None
    for candidate in ServerlessConstants.MIRROR_MANIFESTS:
        if (results_dir / candidate).is_file():
            mirror_manifest = results_dir / candidate
            break

    catalog_sources = sorted(results_dir.glob(ServerlessConstants.CATALOG_SOURCE_PATTERN))
    return mirror_manifest, catalog_sources


class OcMirrorClient:
    """Low-level client for oc-mirror binary operations"""

    def __init__(self, binary: Optional[str] = None, tls_verify: bool = True,
                 timeout: int = TimeoutConstants.MIRROR_TIMEOUT):
        """
        Initialize oc-mirror client

        Args:
            binary: Path to oc-mirror; looked up in PATH when omitted
            tls_verify: Verify the destination registry certificate
            timeout: Per-command timeout in seconds
        """
        self._binary = binary
        self.tls_verify = tls_verify
        self.timeout = timeout

    def _find_binary(self) -> str:
        """
        Raises:
            ConfigurationError: If oc-mirror is not installed
        """
        if self._binary:
            return self._binary

        found = shutil.which('oc-mirror')
        if not found:
            raise ConfigurationError(ErrorMessages.OC_MIRROR_NOT_FOUND.format(url=download_url()))

        self._binary = found
        logger.debug(f"Found oc-mirror binary at: {self._binary}")
        return self._binary

    def _run(self, args: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
        """
        Raises:
            MirrorError: Command failed
            AuthenticationError: A registry rejected the credentials
            TransientError: Registry unreachable or command timed out
        """
        cmd = [self._find_binary()] + args
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout,
                                    cwd=str(cwd) if cwd else None)
        except FileNotFoundError:
            raise ConfigurationError(ErrorMessages.OC_MIRROR_NOT_FOUND.format(url=download_url()))
        except subprocess.TimeoutExpired:
            raise TransientError(f"oc-mirror timed out after {self.timeout}s")

        if result.returncode != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            lowered = stderr.lower()
            message = f"oc-mirror {' '.join(args[:2])} failed: {truncate_string(stderr, 500)}"
            if any(marker in lowered for marker in AUTH_FAILURE_MARKERS):
                raise AuthenticationError(message)
            if any(marker in lowered for marker in TRANSIENT_FAILURE_MARKERS):
                raise TransientError(message)
            raise MirrorError(message)

        return result

    def version(self) -> str:
        """Run oc-mirror version; fails when the binary is unusable"""
        output = self._run(['version']).stdout.strip()
        logger.info(f"oc-mirror: {output.splitlines()[0] if output else 'unknown version'}")
        return output

    def mirror_to_disk(self, config_path: Union[str, Path], output_dir: Union[str, Path], workdir: Path) -> None:
        """Mirror the image set described by config_path into output_dir (both relative to workdir)"""
        logger.info(f"Mirroring image set to disk ({output_dir}); this can take a long time")
        self._run(['--config', str(config_path), f"file://{output_dir}"], cwd=workdir)

    def mirror_to_registry(self, source_dir: Union[str, Path], destination: str, workdir: Path) -> None:
        """Push a mirror-to-disk output into destination (registry host plus path)"""
        args = ['--from', f"file://{source_dir}", f"docker://{destination}"]
        if not self.tls_verify:
            args.append('--dest-skip-tls')
        logger.info(f"Mirroring {source_dir} to {destination}")
        self._run(args, cwd=workdir)
