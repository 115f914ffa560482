"""
Configuration Management

Handles loading configuration files and resolving the explicit configuration
struct (AirgapConfig) handed to every component.

Precedence, highest first: CLI overrides, environment variables, config file,
bundle marker files (VERSION, ENVOY_VERSION), built-in defaults.
"""

import logging
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from decouple import config as env_config

from .constants import BundleConstants, ErrorMessages, FileConstants, ServerlessConstants, TimeoutConstants
from .exceptions import ConfigurationError
from .utils import parse_bool, parse_duration, read_marker_file, render_template, validate_registry_host

logger = logging.getLogger(__name__)


# Environment variable -> (AirgapConfig field, converter)
ENVIRONMENT_MAPPING: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    'CONTAINER_CMD': ('container_cmd', str),
    'PRIVATE_REGISTRY_URL': ('registry_url', str),
    'PRIVATE_REGISTRY_USERNAME': ('push_username', str),
    'PRIVATE_REGISTRY_PASSWORD': ('push_password', str),
    'PRIVATE_REGISTRY_PULL_USERNAME': ('pull_username', str),
    'PRIVATE_REGISTRY_PULL_PASSWORD': ('pull_password', str),
    'FORCE_PUSH': ('force_push', parse_bool),
    'OPERATOR_TIMEOUT': ('operator_timeout', parse_duration),
    'SERVING_TIMEOUT': ('serving_timeout', parse_duration),
    'KNATIVE_VERSION': ('knative_version', str),
    'ENVOY_VERSION': ('envoy_version', str),
    'OCP_VERSION': ('ocp_version', str),
    'SERVERLESS_CHANNEL': ('serverless_channel', str),
    'MIRROR_PATH': ('mirror_path', str),
}


@dataclass
class AirgapConfig:
    """Resolved configuration passed explicitly into the orchestrator"""

    registry_url: Optional[str] = None
    push_username: Optional[str] = None
    push_password: Optional[str] = None
    pull_username: Optional[str] = None
    pull_password: Optional[str] = None
    registry_insecure: bool = False
    container_cmd: Optional[str] = None
    knative_version: str = BundleConstants.DEFAULT_KNATIVE_VERSION
    envoy_version: str = BundleConstants.DEFAULT_ENVOY_VERSION
    images: List[Dict[str, str]] = field(default_factory=list)
    operator_timeout: float = TimeoutConstants.OPERATOR_TIMEOUT
    serving_timeout: float = TimeoutConstants.SERVING_TIMEOUT
    poll_interval: float = TimeoutConstants.POLL_INTERVAL
    force_push: bool = False
    continue_on_timeout: bool = False
    patch_attempts: int = TimeoutConstants.PATCH_ATTEMPTS
    push_workers: int = 1
    ocp_version: str = ServerlessConstants.DEFAULT_OCP_VERSION
    serverless_channel: str = ServerlessConstants.DEFAULT_CHANNEL
    mirror_path: str = ServerlessConstants.DEFAULT_MIRROR_PATH
    catalog_timeout: float = TimeoutConstants.CATALOG_TIMEOUT
    skip_tls: bool = False
    debug: bool = False

    def require_registry(self) -> str:
        """
        Return the validated private registry host

        Raises:
            ConfigurationError: If no registry is configured
        """
        if not self.registry_url:
            raise ConfigurationError(ErrorMessages.REGISTRY_REQUIRED)
        validate_registry_host(self.registry_url)
        return self.registry_url

    def pull_credentials(self) -> Tuple[str, str]:
        """
        Credentials for cluster image pull secrets, defaulting to the push credentials

        Raises:
            ConfigurationError: If neither pull nor push credentials are set
        """
        if self.pull_username and self.pull_password:
            return self.pull_username, self.pull_password
        if self.push_username and self.push_password:
            return self.push_username, self.push_password
        raise ConfigurationError(ErrorMessages.PULL_CREDENTIALS_REQUIRED)

    def template_values(self) -> Dict[str, str]:
        """Values substituted into manifest templates and image entries"""
        return {
            'PRIVATE_REGISTRY_URL': self.registry_url or "",
            'KNATIVE_VERSION': self.knative_version,
            'ENVOY_VERSION': self.envoy_version,
        }

    def rendered_images(self) -> List[Tuple[str, str]]:
        """
        Image catalog with version placeholders substituted

        Returns:
            List of (source, destination path) tuples in configuration order
        """
        values = self.template_values()
        return [
            (render_template(entry['source'], values), render_template(entry['destination'], values))
            for entry in self.images
        ]


class ConfigManager:
    """Manages configuration loading and validation"""

    # Configuration schema - defines expected structure and types
    CONFIG_SCHEMA = {
        'registry': {
            'type': dict,
            'required': False,
            'fields': {
                'url': {'type': str, 'required': False},
                'username': {'type': str, 'required': False},
                'password': {'type': str, 'required': False},
                'pull_username': {'type': str, 'required': False},
                'pull_password': {'type': str, 'required': False},
                'insecure': {'type': bool, 'required': False},
            }
        },
        'knative': {
            'type': dict,
            'required': False,
            'fields': {
                'version': {'type': str, 'required': False},
                'envoy_version': {'type': str, 'required': False},
            }
        },
        'container': {
            'type': dict,
            'required': False,
            'fields': {
                'cmd': {'type': str, 'required': False, 'choices': ['docker', 'podman']},
            }
        },
        'images': {'type': list, 'required': False},
        'timeouts': {
            'type': dict,
            'required': False,
            'fields': {
                'operator': {'type': (str, int, float), 'required': False},
                'serving': {'type': (str, int, float), 'required': False},
                'poll_interval': {'type': (int, float), 'required': False},
            }
        },
        'install': {
            'type': dict,
            'required': False,
            'fields': {
                'force': {'type': bool, 'required': False},
                'continue_on_timeout': {'type': bool, 'required': False},
                'patch_attempts': {'type': int, 'required': False},
                'push_workers': {'type': int, 'required': False},
            }
        },
        'serverless': {
            'type': dict,
            'required': False,
            'fields': {
                'ocp_version': {'type': str, 'required': False},
                'channel': {'type': str, 'required': False},
                'mirror_path': {'type': str, 'required': False},
                'catalog_timeout': {'type': (str, int, float), 'required': False},
            }
        },
        'global': {
            'type': dict,
            'required': False,
            'fields': {
                'skip_tls': {'type': bool, 'required': False},
                'debug': {'type': bool, 'required': False},
            }
        },
    }

    def __init__(self):
        """Initialize configuration manager"""
        self.config_data = {}
        self.config_file_path = None

    def load_config(self, config_path: str) -> Dict[str, Any]:
        """
        Load configuration from YAML file

        Args:
            config_path: Path to configuration file

        Returns:
            Dict containing configuration data

        Raises:
            ConfigurationError: If configuration file cannot be loaded or is invalid
        """
        config_file = Path(config_path)

        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        if not config_file.is_file():
            raise ConfigurationError(f"Configuration path is not a file: {config_path}")

        try:
            with open(config_file, 'r') as f:
                self.config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file {config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration from {config_path}: {e}")

        self.config_file_path = config_path
        logger.info(f"Successfully loaded configuration from {config_path}")

        self._validate_config()

        return self.config_data

    def _validate_config(self) -> None:
        """
        Validate configuration structure and values

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if not isinstance(self.config_data, dict):
            raise ConfigurationError("Configuration must be a dictionary")

        self._validate_against_schema(self.config_data, self.CONFIG_SCHEMA, "config")
        self._validate_images(self.config_data.get('images') or [])

    def _validate_against_schema(self, data: Dict[str, Any], schema: Dict[str, Any], path: str = "") -> None:
        """
        Validate data against schema definition

        Raises:
            ConfigurationError: If data doesn't match schema
        """
        for key, field_schema in schema.items():
            current_path = f"{path}.{key}" if path else key

            if key in data:
                value = data[key]

                if value is None and not field_schema.get('required', False):
                    continue

                expected_type = field_schema['type']
                # bool is an int subclass; only accept it where bool is expected
                is_bool_mismatch = isinstance(value, bool) and bool not in (
                    expected_type if isinstance(expected_type, tuple) else (expected_type,)
                )
                if not isinstance(value, expected_type) or is_bool_mismatch:
                    if isinstance(expected_type, tuple):
                        type_name = " or ".join(t.__name__ for t in expected_type)
                    else:
                        type_name = expected_type.__name__
                    raise ConfigurationError(f"{current_path} must be a {type_name}")

                if 'choices' in field_schema:
                    if value not in field_schema['choices']:
                        choices_str = ', '.join(f"'{c}'" for c in field_schema['choices'])
                        raise ConfigurationError(f"{current_path} must be one of: {choices_str}")

                if expected_type == dict and 'fields' in field_schema:
                    self._validate_against_schema(value, field_schema['fields'], current_path)

            elif field_schema.get('required', False):
                raise ConfigurationError(f"Required field {current_path} is missing")

    def _validate_images(self, images: List[Any]) -> None:
        """Every image entry needs a source and a destination path"""
        for index, entry in enumerate(images):
            if not isinstance(entry, dict):
                raise ConfigurationError(f"config.images[{index}] must be a dict")
            for key in ('source', 'destination'):
                if not isinstance(entry.get(key), str) or not entry[key]:
                    raise ConfigurationError(f"config.images[{index}].{key} must be a non-empty str")

    def get_value(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key

        Args:
            key: Configuration key (supports dot notation like 'registry.url')
            default: Default value if key not found
        """
        keys = key.split('.')
        value = self.config_data

        try:
            for k in keys:
                value = value[k]
            return default if value is None else value
        except (KeyError, TypeError):
            return default

    def build_airgap_config(self, overrides: Optional[Dict[str, Any]] = None,
                            bundle_dir: Optional[Path] = None,
                            use_environment: bool = True) -> AirgapConfig:
        """
        Resolve the effective AirgapConfig

        Args:
            overrides: Values from the command line (None entries are ignored)
            bundle_dir: Extracted bundle directory holding VERSION/ENVOY_VERSION
            use_environment: Read environment variables through decouple

        Returns:
            AirgapConfig: Resolved configuration
        """
        resolved = AirgapConfig()

        if bundle_dir:
            bundle_dir = Path(bundle_dir)
            resolved.knative_version = read_marker_file(
                bundle_dir / BundleConstants.VERSION_FILE, resolved.knative_version)
            resolved.envoy_version = read_marker_file(
                bundle_dir / BundleConstants.ENVOY_VERSION_FILE, resolved.envoy_version)

        file_values = {
            'registry_url': self.get_value('registry.url'),
            'push_username': self.get_value('registry.username'),
            'push_password': self.get_value('registry.password'),
            'pull_username': self.get_value('registry.pull_username'),
            'pull_password': self.get_value('registry.pull_password'),
            'registry_insecure': self.get_value('registry.insecure'),
            'container_cmd': self.get_value('container.cmd'),
            'knative_version': self.get_value('knative.version'),
            'envoy_version': self.get_value('knative.envoy_version'),
            'images': self.get_value('images'),
            'operator_timeout': self._duration_or_none(self.get_value('timeouts.operator')),
            'serving_timeout': self._duration_or_none(self.get_value('timeouts.serving')),
            'poll_interval': self.get_value('timeouts.poll_interval'),
            'force_push': self.get_value('install.force'),
            'continue_on_timeout': self.get_value('install.continue_on_timeout'),
            'patch_attempts': self.get_value('install.patch_attempts'),
            'push_workers': self.get_value('install.push_workers'),
            'ocp_version': self.get_value('serverless.ocp_version'),
            'serverless_channel': self.get_value('serverless.channel'),
            'mirror_path': self.get_value('serverless.mirror_path'),
            'catalog_timeout': self._duration_or_none(self.get_value('serverless.catalog_timeout')),
            'skip_tls': self.get_value('global.skip_tls'),
            'debug': self.get_value('global.debug'),
        }
        self._apply(resolved, file_values)

        if use_environment:
            self._apply(resolved, self._read_environment())

        self._apply(resolved, overrides or {})

        if resolved.poll_interval <= 0:
            raise ConfigurationError("timeouts.poll_interval must be positive")
        if resolved.patch_attempts < 1:
            raise ConfigurationError("install.patch_attempts must be at least 1")
        if resolved.push_workers < 1:
            raise ConfigurationError("install.push_workers must be at least 1")

        return resolved

    @staticmethod
    def _duration_or_none(value: Any) -> Optional[float]:
        return None if value is None else parse_duration(value)

    @staticmethod
    def _apply(target: AirgapConfig, values: Dict[str, Any]) -> None:
        """Copy non-empty values onto the config"""
        for name, value in values.items():
            if value is None or value == "":
                continue
            if not hasattr(target, name):
                raise ConfigurationError(f"Unknown configuration option: {name}")
            setattr(target, name, value)

    @staticmethod
    def _read_environment() -> Dict[str, Any]:
        """Read supported environment variables through decouple"""
        values = {}
        for variable, (attribute, converter) in ENVIRONMENT_MAPPING.items():
            raw = env_config(variable, default=None)
            if raw is None or raw == "":
                continue
            try:
                values[attribute] = converter(raw)
            except ConfigurationError as e:
                raise ConfigurationError(f"{variable}: {e}")
        return values

    def get_config_template_content(self) -> str:
        """
        Generate configuration template content as string without file I/O

        Returns:
            str: YAML configuration template content
        """
        template = {
            "registry": {
                "url": "registry.example.com",
                "username": "",
                "password": "",
                "pull_username": "",
                "pull_password": "",
                "insecure": False,
            },
            "knative": {
                "version": BundleConstants.DEFAULT_KNATIVE_VERSION,
                "envoy_version": BundleConstants.DEFAULT_ENVOY_VERSION,
            },
            "container": {
                "cmd": "podman",
            },
            "images": [
                {
                    "source": "gcr.io/knative-releases/knative.dev/operator/cmd/operator:v${KNATIVE_VERSION}",
                    "destination": "knative/operator:v${KNATIVE_VERSION}",
                },
                {
                    "source": "docker.io/envoyproxy/envoy:${ENVOY_VERSION}",
                    "destination": "envoyproxy/envoy:${ENVOY_VERSION}",
                },
            ],
            "timeouts": {
                "operator": "300s",
                "serving": "300s",
                "poll_interval": TimeoutConstants.POLL_INTERVAL,
            },
            "install": {
                "force": False,
                "continue_on_timeout": False,
                "patch_attempts": TimeoutConstants.PATCH_ATTEMPTS,
                "push_workers": 1,
            },
            "serverless": {
                "ocp_version": ServerlessConstants.DEFAULT_OCP_VERSION,
                "channel": ServerlessConstants.DEFAULT_CHANNEL,
                "mirror_path": ServerlessConstants.DEFAULT_MIRROR_PATH,
                "catalog_timeout": "300s",
            },
            "global": {
                "skip_tls": False,
                "debug": False,
            },
        }

        header = (
            "# Air-Gap Manager Configuration File\n"
            "# Credentials may be left empty and supplied through PRIVATE_REGISTRY_* variables.\n"
            "# Image entries may use ${KNATIVE_VERSION} and ${ENVOY_VERSION}; destinations are\n"
            "# paths below the private registry.\n"
            "# The serverless section drives prepare-serverless and install-serverless (OpenShift only).\n\n"
        )
        return header + yaml.safe_dump(template, sort_keys=False, default_flow_style=False)

    def generate_config_template(self, output_dir: str = None) -> str:
        """
        Generate configuration template file

        Returns:
            str: Path to generated template file

        Raises:
            ConfigurationError: If template generation fails
        """
        output_path = Path(output_dir) if output_dir else Path(".")
        try:
            output_path.mkdir(parents=True, exist_ok=True)
            config_file = output_path / FileConstants.DEFAULT_CONFIG_FILE
            config_file.write_text(self.get_config_template_content())
        except OSError as e:
            raise ConfigurationError(f"Failed to generate configuration template: {e}")

        logger.info(f"Configuration template generated: {config_file}")
        return str(config_file)

    @staticmethod
    def get_bundle_config_content(resolved: AirgapConfig) -> str:
        """
        Configuration shipped inside a bundle: versions and image catalog, never credentials
        """
        bundle_config = {
            "knative": {
                "version": resolved.knative_version,
                "envoy_version": resolved.envoy_version,
            },
            "images": [dict(entry) for entry in resolved.images],
        }
        header = "# Generated by airgap-manager prepare\n"
        return header + yaml.safe_dump(bundle_config, sort_keys=False, default_flow_style=False)
