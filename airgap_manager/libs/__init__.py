"""
Air-Gap Manager Library

Moves Knative Operator images and charts into air-gapped clusters and
reconciles the installation to a ready state.
"""

__version__ = "1.0.0"

# Core libraries
from .core import ClusterAuth, ConfigManager, AirgapConfig
from .core.exceptions import AirgapManagerError, AuthenticationError, ConfigurationError

# Reconciliation libraries
from .reconcile import (
    ResourceUpserter, ImageSynchronizer, ReadinessPoller, RemediationHook, InstallationSequencer
)

# Install libraries
from .install import KnativeInstaller, KnativeUninstaller

# Main application
from .main_app import AirgapManager, main

__all__ = [
    # Core
    'ClusterAuth',
    'ConfigManager',
    'AirgapConfig',
    'AirgapManagerError',
    'AuthenticationError',
    'ConfigurationError',
    # Reconcile
    'ResourceUpserter',
    'ImageSynchronizer',
    'ReadinessPoller',
    'RemediationHook',
    'InstallationSequencer',
    # Install
    'KnativeInstaller',
    'KnativeUninstaller',
    # Main
    'AirgapManager',
    'main'
]
