"""
Helm Client

Drives the helm CLI for chart download, install/upgrade and uninstall.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from ..core.constants import ErrorMessages, TimeoutConstants
from ..core.exceptions import ChartInstallError, TransientError
from ..core.utils import truncate_string

logger = logging.getLogger(__name__)


class HelmClient:
    """Low-level client for helm binary operations"""

    def __init__(self, binary: Optional[str] = None, timeout: int = TimeoutConstants.COMMAND_TIMEOUT):
        """
        Initialize helm client

        Args:
            binary: Path to helm; looked up in PATH when omitted
            timeout: Per-command timeout in seconds
        """
        self._helm_binary = binary
        self.timeout = timeout

    def _find_helm_binary(self) -> str:
        """
        Raises:
            ChartInstallError: If helm is not installed
        """
        if self._helm_binary:
            return self._helm_binary

        found = shutil.which('helm')
        if not found:
            raise ChartInstallError(ErrorMessages.HELM_NOT_FOUND)

        self._helm_binary = found
        logger.debug(f"Found helm binary at: {self._helm_binary}")
        return self._helm_binary

    def _run(self, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self._find_helm_binary()] + args
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise ChartInstallError(ErrorMessages.HELM_NOT_FOUND)
        except subprocess.TimeoutExpired:
            raise TransientError(f"helm {args[0]} timed out after {self.timeout}s")

        if check and result.returncode != 0:
            stderr = (result.stderr or result.stdout or "").strip()
            raise ChartInstallError(f"helm {' '.join(args[:2])} failed: {truncate_string(stderr, 500)}")

        return result

    def add_repo(self, name: str, url: str) -> None:
        self._run(['repo', 'add', name, url, '--force-update'])
        self._run(['repo', 'update'])

    def pull_chart(self, chart: str, version: str, destination: Path) -> None:
        """Download a chart archive into destination"""
        logger.info(f"Downloading chart {chart} {version}")
        self._run(['pull', chart, '--version', version, '--destination', str(destination)])

    def install_or_upgrade(self, release_name: str, chart_archive: Path, namespace: str,
                           values: Dict[str, str]) -> None:
        """Run helm upgrade --install with --set overrides"""
        args = ['upgrade', '--install', release_name, str(chart_archive), '--namespace', namespace]
        for key, value in values.items():
            args.extend(['--set', f"{key}={value}"])

        logger.info(f"Installing chart {Path(chart_archive).name} as {release_name} in {namespace}")
        self._run(args)

    def release_exists(self, release_name: str, namespace: str) -> bool:
        result = self._run(['status', release_name, '--namespace', namespace], check=False)
        return result.returncode == 0

    def uninstall(self, release_name: str, namespace: str) -> None:
        logger.info(f"Uninstalling release {release_name} from {namespace}")
        self._run(['uninstall', release_name, '--namespace', namespace,
                   '--timeout', f"{TimeoutConstants.DELETE_TIMEOUT}s"])
