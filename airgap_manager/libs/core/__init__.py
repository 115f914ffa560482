"""
Core Libraries

Shared functionality and utilities for the Air-Gap Manager tool.
"""

from .auth import ClusterAuth
from .config import AirgapConfig, ConfigManager
from .exceptions import (
    AirgapManagerError, AuthenticationError, ConfigurationError, TransientError,
    UnrecoverableError, OperationCancelled, SequenceAbortedError
)
from .utils import setup_logging, render_template, disable_ssl_warnings

__all__ = [
    'ClusterAuth',
    'AirgapConfig',
    'ConfigManager',
    'AirgapManagerError',
    'AuthenticationError',
    'ConfigurationError',
    'TransientError',
    'UnrecoverableError',
    'OperationCancelled',
    'SequenceAbortedError',
    'setup_logging',
    'render_template',
    'disable_ssl_warnings'
]
