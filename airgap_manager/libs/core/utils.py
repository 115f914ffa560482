"""
Core Utilities

Common utility functions used across the Air-Gap Manager tool.
"""

import base64
import json
import logging
import re
import urllib3
from pathlib import Path
from typing import Dict, Iterable, Optional, Type

from .constants import ErrorMessages
from .exceptions import (
    AirgapManagerError, AuthenticationError, ClusterError, ConfigurationError, TransientError
)


def setup_logging(debug: bool = False) -> None:
    """
    Set up logging configuration for the application.

    Args:
        debug: Enable debug logging level
    """
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)

    if debug:
        logger = logging.getLogger(__name__)
        logger.debug("Debug mode enabled")


def disable_ssl_warnings() -> None:
    """Disable SSL warnings when --skip-tls is used"""
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def mask_sensitive_info(text: str, secrets: Iterable[Optional[str]] = ()) -> str:
    """
    Mask sensitive information in text for logging and debug output.

    Args:
        text: Text to mask
        secrets: Literal values (passwords, tokens) to mask wherever they appear

    Returns:
        Text with sensitive information masked
    """
    if not text:
        return text

    masked_text = text

    for secret in secrets:
        if secret and secret in masked_text:
            masked_text = masked_text.replace(secret, "***MASKED***")

    masked_text = re.sub(r'Bearer [A-Za-z0-9+/=_.-]+', 'Bearer ***MASKED***', masked_text)
    masked_text = re.sub(r'Basic [A-Za-z0-9+/=]+', 'Basic ***MASKED***', masked_text)
    masked_text = re.sub(r'sha256~[A-Za-z0-9_-]+', 'sha256~***MASKED***', masked_text)

    return masked_text


def validate_namespace(namespace: str) -> bool:
    """
    Validate if the provided string is a valid Kubernetes namespace.

    Args:
        namespace: Kubernetes namespace to validate

    Returns:
        bool: True if valid namespace

    Raises:
        ConfigurationError: If namespace is invalid
    """
    if not namespace or not isinstance(namespace, str):
        raise ConfigurationError("Namespace cannot be empty")

    # Must be lowercase alphanumeric with hyphens, max 63 chars
    if not re.match(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$', namespace):
        raise ConfigurationError(f"Invalid Kubernetes namespace format: {namespace}")

    if len(namespace) > 63:
        raise ConfigurationError(f"Namespace too long (max 63 chars): {namespace}")

    return True


def validate_registry_host(registry: str) -> bool:
    """
    Validate a registry host (without protocol), optionally with port and path prefix.

    Args:
        registry: Registry host such as registry.example.com:5000

    Returns:
        bool: True if valid

    Raises:
        ConfigurationError: If the registry value is invalid
    """
    if not registry or not isinstance(registry, str):
        raise ConfigurationError(ErrorMessages.REGISTRY_REQUIRED)

    if registry.startswith(("http://", "https://")):
        raise ConfigurationError(f"Registry must not include a protocol: {registry}")

    if not re.match(r'^[a-zA-Z0-9.-]+(?::[0-9]+)?(?:/[a-z0-9._/-]+)?$', registry):
        raise ConfigurationError(f"Invalid registry format: {registry}")

    return True


def validate_openshift_url(url: str) -> bool:
    """
    Validate if the provided string is a valid cluster API URL.

    Raises:
        ConfigurationError: If URL is invalid
    """
    if not url or not isinstance(url, str):
        raise ConfigurationError("Cluster URL cannot be empty")

    if not re.match(r'^https?:\/\/[a-zA-Z0-9.-]+(?:\:[0-9]+)?(?:\/.*)?$', url):
        raise ConfigurationError(f"Invalid cluster URL format: {url}")

    return True


def parse_duration(value) -> float:
    """
    Parse a timeout value such as 300, "300", "300s", "5m" or "1h" into seconds.

    Raises:
        ConfigurationError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = re.match(r'^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$', str(value))
        if not match:
            raise ConfigurationError(f"Invalid duration: {value}")
        multiplier = {'': 1, 's': 1, 'm': 60, 'h': 3600}[match.group(2)]
        seconds = float(match.group(1)) * multiplier

    if seconds < 0:
        raise ConfigurationError(f"Duration must not be negative: {value}")
    return seconds


def parse_bool(value) -> bool:
    """Interpret "true"/"1"/"yes" style values"""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'y', 'on')


def read_marker_file(path: Path, default: str) -> str:
    """
    Read a single-line marker file (VERSION, ENVOY_VERSION).

    Returns:
        str: First non-empty line, or default when the file is missing or empty
    """
    try:
        content = Path(path).read_text().strip()
    except FileNotFoundError:
        return default
    return content.splitlines()[0].strip() if content else default


def render_template(template: str, values: Dict[str, str]) -> str:
    """
    Substitute ${TOKEN} placeholders in a single pass.

    Only the tokens named in values are replaced; other ${...} expressions
    are left untouched and replacement text is never re-scanned.

    Args:
        template: Template text
        values: Mapping of token name (without ${}) to replacement

    Returns:
        str: Rendered text
    """
    if not values:
        return template

    pattern = re.compile(r'\$\{(' + '|'.join(re.escape(token) for token in values) + r')\}')
    return pattern.sub(lambda match: values[match.group(1)], template)


def build_docker_config_json(registry: str, username: str, password: str) -> str:
    """
    Build the base64-encoded .dockerconfigjson payload for an image pull secret.

    Returns:
        str: base64 encoded docker config JSON
    """
    auth = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    docker_config = {
        "auths": {
            registry: {
                "username": username,
                "password": password,
                "auth": auth,
            }
        }
    }
    return base64.b64encode(json.dumps(docker_config).encode('utf-8')).decode('ascii')


def truncate_string(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Truncate a string to a maximum length with optional suffix.
    """
    if len(text) <= max_length:
        return text

    return text[:max_length - len(suffix)] + suffix


def handle_ssl_error(error: Exception, exception_class: Type[AirgapManagerError] = AuthenticationError) -> None:
    """
    Centralized SSL error handling with user-friendly messages

    Raises:
        AirgapManagerError: Appropriate error type with user-friendly message
    """
    error_str = str(error)

    if "certificate verify failed" in error_str or "CERTIFICATE_VERIFY_FAILED" in error_str:
        raise exception_class(ErrorMessages.SSL_CERT_VERIFICATION_FAILED)
    elif "SSLError" in error_str or "SSL:" in error_str:
        raise exception_class(ErrorMessages.SSL_CONNECTION_ERROR.format(error=error))
    else:
        raise exception_class(f"Connection error: {error}")


def handle_api_error(error: Exception, context: str = "",
                     exception_class: Type[AirgapManagerError] = ClusterError) -> None:
    """
    Centralized API error handling for Kubernetes API exceptions

    Maps the HTTP status onto the error taxonomy: 401 is an authentication
    failure, 403/400/422 are unrecoverable, 429 and 5xx are transient.

    Args:
        error: The caught exception (ApiException, DynamicApiError or other)
        context: What was being attempted, prefixed to the message
        exception_class: Error type for unrecoverable failures

    Raises:
        AirgapManagerError: Appropriate error type with user-friendly message
    """
    status = getattr(error, 'status', None)
    prefix = f"{context}: " if context else ""
    detail = truncate_string(str(error).strip().replace("\n", " "), 300)

    if status == 401:
        raise AuthenticationError(f"{prefix}{ErrorMessages.UNAUTHORIZED}")

    if status == 403:
        raise exception_class(f"{prefix}{ErrorMessages.FORBIDDEN}")

    if status in (400, 422):
        raise exception_class(f"{prefix}invalid request ({status}): {detail}")

    if status == 429 or (isinstance(status, int) and status >= 500):
        raise TransientError(f"{prefix}API temporarily unavailable ({status}): {detail}")

    error_str = str(error).lower()

    if any(ssl_indicator in error_str for ssl_indicator in ["ssl", "certificate"]):
        handle_ssl_error(error, exception_class)

    if any(conn_indicator in error_str for conn_indicator in ["connection", "timed out", "refused"]):
        raise TransientError(f"{prefix}API connection failed: {detail}")

    raise exception_class(f"{prefix}API error: {detail}")
