"""
Export pipeline errors.

Every error names the step that failed and carries the artifacts produced
before the failure, so a retry can resume without re-encrypting or
re-uploading. Errors that have a lower-level counterpart also subclass it.
"""

from enum import Enum
from typing import TYPE_CHECKING, Optional

from clinicflow.security import encryption
from clinicflow.storage import client as storage

if TYPE_CHECKING:
    from clinicflow.export.orchestrator import ExportArtifacts


class ExportStep(str, Enum):
    """Ordered steps of the export pipeline."""

    BUNDLE = "bundle"
    KEY_LOAD = "key_load"
    ENCRYPT = "encrypt"
    CHECKSUM = "checksum"
    UPLOAD = "upload"
    PRESIGN = "presign"


class ExportError(Exception):
    """Base class for export failures."""

    def __init__(
        self,
        message: str,
        *,
        step: ExportStep,
        artifacts: Optional["ExportArtifacts"] = None,
    ):
        super().__init__(message)
        self.step = step
        self.artifacts = artifacts

    @property
    def referral_id(self):
        return self.artifacts.referral_id if self.artifacts else None

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "step": self.step.value,
            "message": str(self),
            "package_id": self.artifacts.package_id if self.artifacts else None,
        }


class BundleError(ExportError):
    """Referral data could not be serialized or archived."""


class KeyUnavailable(ExportError, encryption.KeyUnavailable):
    """Master key missing or malformed."""


class EncryptionError(ExportError, encryption.EncryptionError):
    """Cipher failure."""


class UploadError(ExportError):
    """Object storage rejected the upload."""


class StorageUnavailable(UploadError, storage.StorageUnavailable):
    """Transient storage fault during upload; the upload was not retried."""


class PresignError(ExportError):
    """Signed download URL could not be issued."""


class StepTimeout(ExportError):
    """A step exceeded its deadline."""
