"""
Intake package metadata.

Holds everything needed to locate, verify and decrypt an uploaded
package except the key material itself.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from clinicflow.models.base import isoformat, utcnow

ENCRYPTION_ALGORITHM = "AES-256-GCM"
DEFAULT_RETENTION = timedelta(days=7)


class PackageStatus(str, Enum):
    """Storage lifecycle of an intake package."""

    PENDING = "pending"
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    EXPIRED = "expired"
    FAILED = "failed"


class PackageType(str, Enum):
    REFERRAL_EXPORT = "referral_export"
    INTAKE_FORM = "intake_form"
    ASSESSMENT_DATA = "assessment_data"
    DOCUMENT_BUNDLE = "document_bundle"


PACKAGE_TRANSITIONS: dict[PackageStatus, frozenset[PackageStatus]] = {
    PackageStatus.PENDING: frozenset({PackageStatus.UPLOADED, PackageStatus.FAILED}),
    PackageStatus.UPLOADED: frozenset(
        {PackageStatus.DOWNLOADED, PackageStatus.EXPIRED, PackageStatus.FAILED}
    ),
    PackageStatus.DOWNLOADED: frozenset({PackageStatus.EXPIRED}),
    PackageStatus.EXPIRED: frozenset(),
    PackageStatus.FAILED: frozenset(),
}


class PackageStateError(Exception):
    """Raised on an illegal package status change."""


@dataclass
class IntakePackage:
    """Metadata record for one encrypted intake package."""

    id: str
    referral_id: UUID
    package_name: str
    package_type: PackageType = PackageType.REFERRAL_EXPORT
    status: PackageStatus = PackageStatus.PENDING

    # Encryption metadata (never key material)
    encryption_algorithm: str = ENCRYPTION_ALGORITHM
    encryption_key_id: Optional[str] = None
    iv: Optional[str] = None
    auth_tag: Optional[str] = None
    checksum_sha256: Optional[str] = None

    # Storage
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    download_url: Optional[str] = None
    download_url_expires_at: Optional[datetime] = None

    # Sizes in bytes
    size_original: int = 0
    size_compressed: int = 0
    size_encrypted: int = 0

    # Lifecycle
    created_at: datetime = field(default_factory=utcnow)
    uploaded_at: Optional[datetime] = None
    downloaded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None
    notification_sent: bool = False
    notification_recipient: Optional[str] = None
    error_step: Optional[str] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if self.expires_at is None:
            self.expires_at = self.created_at + DEFAULT_RETENTION

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether retention has lapsed or the package was already expired."""
        if self.status == PackageStatus.EXPIRED:
            return True
        now = now or utcnow()
        return self.expires_at is not None and now >= self.expires_at

    def _move(self, target: PackageStatus) -> None:
        if target not in PACKAGE_TRANSITIONS[self.status]:
            raise PackageStateError(
                f"Package {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def mark_uploaded(self, now: Optional[datetime] = None) -> None:
        self._move(PackageStatus.UPLOADED)
        self.uploaded_at = now or utcnow()

    def mark_downloaded(self, now: Optional[datetime] = None) -> None:
        # Repeat downloads keep the first timestamp
        if self.status == PackageStatus.DOWNLOADED:
            return
        self._move(PackageStatus.DOWNLOADED)
        self.downloaded_at = now or utcnow()

    def mark_expired(self) -> None:
        self._move(PackageStatus.EXPIRED)
        self.download_url = None
        self.download_url_expires_at = None

    def mark_failed(self, step: str, message: str) -> None:
        self._move(PackageStatus.FAILED)
        self.error_step = step
        self.error_message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "referral_id": str(self.referral_id),
            "package_name": self.package_name,
            "package_type": self.package_type.value,
            "status": self.status.value,
            "encryption_algorithm": self.encryption_algorithm,
            "encryption_key_id": self.encryption_key_id,
            "iv": self.iv,
            "auth_tag": self.auth_tag,
            "checksum_sha256": self.checksum_sha256,
            "storage_key": self.storage_key,
            "storage_url": self.storage_url,
            "download_url_expires_at": isoformat(self.download_url_expires_at),
            "size_original": self.size_original,
            "size_compressed": self.size_compressed,
            "size_encrypted": self.size_encrypted,
            "created_at": isoformat(self.created_at),
            "uploaded_at": isoformat(self.uploaded_at),
            "downloaded_at": isoformat(self.downloaded_at),
            "expires_at": isoformat(self.expires_at),
            "created_by": self.created_by,
            "error_step": self.error_step,
            "error_message": self.error_message,
        }
