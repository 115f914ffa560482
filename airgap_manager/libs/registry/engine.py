"""
Container Engine

Drives the podman or docker CLI for pulling, saving, loading, tagging and
pushing images.
"""

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

from ..core.constants import ContainerConstants, ErrorMessages, TimeoutConstants
from ..core.exceptions import (
    AuthenticationError, ConfigurationError, ContainerEngineError, TransientError
)
from ..core.utils import mask_sensitive_info, truncate_string

logger = logging.getLogger(__name__)

Engine = ContainerConstants.Engine

AUTH_FAILURE_MARKERS = ["unauthorized", "authentication required", "denied: requested access"]
TRANSIENT_FAILURE_MARKERS = ["connection refused", "no such host", "i/o timeout", "tls handshake timeout",
                             "connection reset", "503 service unavailable", "too many requests"]


class ContainerEngine:
    """Low-level client for the container engine CLI"""

    def __init__(self, binary: str, name: str, tls_verify: bool = True,
                 timeout: int = TimeoutConstants.COMMAND_TIMEOUT):
        """
        Initialize container engine

        Args:
            binary: Path to the podman/docker executable
            name: Engine name ("podman" or "docker")
            tls_verify: Verify registry certificates (podman only; docker uses daemon settings)
            timeout: Per-command timeout in seconds
        """
        self.binary = binary
        self.name = name
        self.tls_verify = tls_verify
        self.timeout = timeout

    @property
    def is_podman(self) -> bool:
        return self.name == Engine.PODMAN.value

    def _tls_args(self) -> List[str]:
        if self.is_podman and not self.tls_verify:
            return ['--tls-verify=false']
        return []

    def _run(self, args: List[str], input_text: Optional[str] = None, check: bool = True,
             secrets: Sequence[str] = (), timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        """
        Run an engine command

        Raises:
            ContainerEngineError: Command failed or engine not installed
            AuthenticationError: Registry rejected the credentials
            TransientError: Registry unreachable or command timed out
        """
        cmd = [self.binary] + list(args)
        printable = mask_sensitive_info(' '.join(cmd), secrets)
        logger.debug(f"Running: {printable}")

        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout
            )
        except FileNotFoundError:
            raise ContainerEngineError(ErrorMessages.ENGINE_NOT_INSTALLED.format(engine=self.name))
        except subprocess.TimeoutExpired:
            raise TransientError(f"Command timed out: {printable}")

        if check and result.returncode != 0:
            stderr = mask_sensitive_info((result.stderr or result.stdout or "").strip(), secrets)
            lowered = stderr.lower()
            message = f"{printable} failed: {truncate_string(stderr, 500)}"
            if any(marker in lowered for marker in AUTH_FAILURE_MARKERS):
                raise AuthenticationError(message)
            if any(marker in lowered for marker in TRANSIENT_FAILURE_MARKERS):
                raise TransientError(message)
            raise ContainerEngineError(message)

        return result

    def pull(self, ref: str) -> None:
        logger.info(f"Pulling {ref}")
        self._run(['pull'] + self._tls_args() + [ref])

    def save(self, refs: Sequence[str], archive_path: Path) -> None:
        """Save images into a single archive"""
        args = ['save', '-o', str(archive_path)]
        if self.is_podman:
            args.insert(1, '--multi-image-archive')
        logger.info(f"Saving {len(refs)} images to {archive_path}")
        self._run(args + list(refs))

    def load(self, archive_path: Path) -> None:
        self._run(['load', '-i', str(archive_path)])

    def tag(self, source: str, destination: str) -> None:
        self._run(['tag', source, destination])

    def push(self, ref: str) -> None:
        logger.info(f"Pushing {ref}")
        self._run(['push'] + self._tls_args() + [ref])

    def image_exists(self, ref: str) -> bool:
        """Check the registry for a manifest (metadata only, nothing is pulled)"""
        result = self._run(['manifest', 'inspect'] + self._tls_args() + [ref], check=False)
        return result.returncode == 0

    def login(self, registry: str, username: str, password: str) -> None:
        """Log in with the password passed on stdin"""
        logger.info(f"Logging in to {registry} as {username}")
        self._run(['login'] + self._tls_args() + [registry, '-u', username, '--password-stdin'],
                  input_text=password, secrets=[password])

    def is_logged_in(self, registry: str) -> bool:
        if self.is_podman:
            return self._run(['login', '--get-login', registry], check=False).returncode == 0

        config_path = Path(ContainerConstants.DOCKER_CONFIG_PATH).expanduser()
        try:
            docker_config = json.loads(config_path.read_text())
        except (OSError, ValueError):
            return False
        registries = set(docker_config.get('auths') or {}) | set(docker_config.get('credHelpers') or {})
        return any(registry in entry for entry in registries)

    def list_images(self) -> List[str]:
        result = self._run(['images', '--format', '{{.Repository}}:{{.Tag}}'])
        return [
            line.strip() for line in result.stdout.splitlines()
            if line.strip() and '<none>' not in line
        ]

    def remove_image(self, ref: str) -> None:
        self._run(['rmi', '-f', ref])

    def prune(self) -> None:
        self._run(['image', 'prune', '-f'])


def detect_container_runtime(preferred: Optional[str] = None, tls_verify: bool = True) -> ContainerEngine:
    """
    Resolve the container engine to use

    Args:
        preferred: Engine name from configuration; when unset docker is
            preferred over podman

    Raises:
        ConfigurationError: If the engine is unknown or not installed
    """
    if preferred:
        valid = [engine.value for engine in Engine]
        if preferred not in valid:
            raise ConfigurationError(f"Unsupported container engine '{preferred}'. Use one of: {', '.join(valid)}")
        binary = shutil.which(preferred)
        if not binary:
            raise ConfigurationError(ErrorMessages.ENGINE_NOT_INSTALLED.format(engine=preferred))
        return ContainerEngine(binary, preferred, tls_verify=tls_verify)

    candidates = [ContainerConstants.DEFAULT_ENGINE] + [
        engine.value for engine in Engine if engine.value != ContainerConstants.DEFAULT_ENGINE
    ]
    for name in candidates:
        binary = shutil.which(name)
        if binary:
            logger.info(f"Using container engine: {name}")
            return ContainerEngine(binary, name, tls_verify=tls_verify)

    raise ConfigurationError(ErrorMessages.NO_CONTAINER_ENGINE)
