"""
Intake package export pipeline.
"""

from clinicflow.export.errors import (
    BundleError,
    EncryptionError,
    ExportError,
    ExportStep,
    KeyUnavailable,
    PresignError,
    StepTimeout,
    StorageUnavailable,
    UploadError,
)
from clinicflow.export.orchestrator import (
    PACKAGE_VERSION,
    BatchExportFailure,
    BatchExportReport,
    ExportArtifacts,
    ExportOptions,
    ExportOrchestrator,
    ExportResult,
)
from clinicflow.export.retention import RetentionSweeper, SweepReport

__all__ = [
    "PACKAGE_VERSION",
    "BatchExportFailure",
    "BatchExportReport",
    "BundleError",
    "EncryptionError",
    "ExportArtifacts",
    "ExportError",
    "ExportOptions",
    "ExportOrchestrator",
    "ExportResult",
    "ExportStep",
    "KeyUnavailable",
    "PresignError",
    "RetentionSweeper",
    "StepTimeout",
    "StorageUnavailable",
    "SweepReport",
    "UploadError",
]
