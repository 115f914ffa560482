"""
Reconciliation Libraries

Idempotent upserts, image synchronization, readiness polling, remediation
and the installation sequencer that drives them.
"""

from .models import (
    ImageReference, ImageMapping, build_image_mappings, SyncPlan, SyncReport, SyncFailure,
    ResourceKind, ReconcileTarget, UpsertOutcome, ReadinessStatus, CheckResult, ReadinessCheck,
    WaitOutcome, WaitResult, RemediationRule, RemediationOutcome, Stage, StageStatus,
    StageReport, SequenceReport
)
from .upserter import ResourceUpserter
from .synchronizer import ImageSynchronizer
from .poller import CancellationToken, ReadinessPoller
from .remediation import RemediationHook, StorageVersionMigrationRule
from .sequencer import InstallationSequencer, SequencerSettings

__all__ = [
    # Models
    'ImageReference',
    'ImageMapping',
    'build_image_mappings',
    'SyncPlan',
    'SyncReport',
    'SyncFailure',
    'ResourceKind',
    'ReconcileTarget',
    'UpsertOutcome',
    'ReadinessStatus',
    'CheckResult',
    'ReadinessCheck',
    'WaitOutcome',
    'WaitResult',
    'RemediationRule',
    'RemediationOutcome',
    'Stage',
    'StageStatus',
    'StageReport',
    'SequenceReport',
    # Components
    'ResourceUpserter',
    'ImageSynchronizer',
    'CancellationToken',
    'ReadinessPoller',
    'RemediationHook',
    'StorageVersionMigrationRule',
    'InstallationSequencer',
    'SequencerSettings'
]
