"""
Installation Libraries

Knative install and uninstall workflows, plus OpenShift Serverless mirroring.
"""

from .knative import KnativeInstaller, InstallReport
from .uninstall import KnativeUninstaller, UninstallReport
from .serverless import ServerlessInstaller, ServerlessInstallReport, ServerlessPreparer

__all__ = [
    'KnativeInstaller',
    'InstallReport',
    'KnativeUninstaller',
    'UninstallReport',
    'ServerlessPreparer',
    'ServerlessInstaller',
    'ServerlessInstallReport'
]
