"""
Intake package export pipeline.

Turns a referral into an encrypted package in object storage plus a
time-limited download link for the clinical system:

    bundle -> key_load -> encrypt -> checksum -> upload -> presign

Each step runs under an optional deadline. A failure raises a typed
ExportError carrying the artifacts produced so far; passing those back as
``resume`` continues from the first unfinished step. Artifacts never hold
plaintext, so a failure before encryption re-bundles on resume.
"""

import asyncio
import dataclasses
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar
from uuid import UUID

from clinicflow.config import Settings
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
from clinicflow.models.base import utcnow
from clinicflow.models.intake_package import (
    ENCRYPTION_ALGORITHM,
    IntakePackage,
    PackageStatus,
    PackageType,
)
from clinicflow.models.referral import Referral
from clinicflow.packaging.archive import ArchiveBundle, ArchiveError, build_intake_archive
from clinicflow.security import encryption
from clinicflow.security.encryption import EncryptedBlob, KeyRing, MasterKey, checksum_sha256
from clinicflow.storage import client as storage
from clinicflow.storage.client import ObjectStorageClient, build_package_key

logger = logging.getLogger(__name__)

PACKAGE_VERSION = "1.0"

T = TypeVar("T")


@dataclass
class ExportOptions:
    """Per-export parameters."""

    exported_by: Optional[str] = None
    package_name: Optional[str] = None
    attachments: Mapping[str, bytes] = field(default_factory=dict)
    download_ttl_seconds: Optional[int] = None
    notification_recipient: Optional[str] = None


@dataclass
class ExportArtifacts:
    """
    Intermediate results of an export run.

    Only ciphertext and metadata are kept; the compressed plaintext is
    dropped as soon as it has been encrypted.
    """

    referral_id: UUID
    package_id: str
    package_name: str
    created_at: datetime
    exported_by: str
    completed_steps: list[ExportStep] = field(default_factory=list)

    size_original: int = 0
    size_compressed: int = 0
    blob: Optional[EncryptedBlob] = None
    checksum: Optional[str] = None
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    etag: Optional[str] = None
    download_url: Optional[str] = None
    download_url_expires_at: Optional[datetime] = None

    def has_completed(self, step: ExportStep) -> bool:
        return step in self.completed_steps

    def complete(self, step: ExportStep) -> None:
        if step not in self.completed_steps:
            self.completed_steps.append(step)

    @property
    def next_step(self) -> Optional[ExportStep]:
        for step in ExportStep:
            if not self.has_completed(step):
                return step
        return None


@dataclass(frozen=True)
class ExportResult:
    """A successfully exported and uploaded intake package."""

    package_id: str
    package_name: str
    referral_id: UUID
    storage_key: str
    storage_url: str
    download_url: str
    download_url_expires_at: datetime
    expires_at: datetime
    checksum_sha256: str
    iv: str
    auth_tag: str
    encryption_key_id: str
    size_original: int
    size_compressed: int
    size_encrypted: int
    created_at: datetime
    created_by: str

    def to_package(self, notification_recipient: Optional[str] = None) -> IntakePackage:
        """Metadata record for persistence."""
        package = IntakePackage(
            id=self.package_id,
            referral_id=self.referral_id,
            package_name=self.package_name,
            package_type=PackageType.REFERRAL_EXPORT,
            encryption_algorithm=ENCRYPTION_ALGORITHM,
            encryption_key_id=self.encryption_key_id,
            iv=self.iv,
            auth_tag=self.auth_tag,
            checksum_sha256=self.checksum_sha256,
            storage_key=self.storage_key,
            storage_url=self.storage_url,
            download_url=self.download_url,
            download_url_expires_at=self.download_url_expires_at,
            size_original=self.size_original,
            size_compressed=self.size_compressed,
            size_encrypted=self.size_encrypted,
            created_at=self.created_at,
            expires_at=self.expires_at,
            created_by=self.created_by,
            notification_recipient=notification_recipient,
        )
        package.mark_uploaded(self.created_at)
        return package

    def to_dict(self) -> dict[str, Any]:
        return {
            "package_id": self.package_id,
            "package_name": self.package_name,
            "referral_id": str(self.referral_id),
            "storage_key": self.storage_key,
            "download_url_expires_at": self.download_url_expires_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "checksum_sha256": self.checksum_sha256,
            "encryption_key_id": self.encryption_key_id,
            "size_original": self.size_original,
            "size_compressed": self.size_compressed,
            "size_encrypted": self.size_encrypted,
        }


@dataclass(frozen=True)
class BatchExportFailure:
    """One referral that did not export; ``step`` is None outside the pipeline."""

    referral_id: UUID
    step: Optional[ExportStep]
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "referral_id": str(self.referral_id),
            "step": self.step.value if self.step else None,
            "error": self.error,
        }


@dataclass
class BatchExportReport:
    """Outcome of a sequential, non-atomic batch export."""

    total: int = 0
    results: list[ExportResult] = field(default_factory=list)
    errors: list[BatchExportFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def failure_count(self) -> int:
        return len(self.errors)

    @property
    def success(self) -> bool:
        return self.failure_count == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_referrals": self.total,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "packages": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
        }


def generate_package_id() -> str:
    """128-bit random hex id."""
    return secrets.token_hex(16)


def default_package_name(referral: Referral, now: datetime) -> str:
    return f"Referral-{referral.id.hex[:8]}-{now:%Y%m%d%H%M%S}"


class ExportOrchestrator:
    """
    Runs the export pipeline for one referral or a batch.

    Args:
        key_ring: Source of the current master key
        storage: Object storage client
        settings: TTLs, retention and step deadline
    """

    def __init__(self, key_ring: KeyRing, storage_client: ObjectStorageClient, settings: Settings):
        self.key_ring = key_ring
        self.storage = storage_client
        self.settings = settings
        self.step_timeout = settings.export_step_timeout_seconds

    async def _run_step(
        self,
        step: ExportStep,
        artifacts: ExportArtifacts,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            if self.step_timeout:
                return await asyncio.wait_for(action(), timeout=self.step_timeout)
            return await action()
        except asyncio.TimeoutError as e:
            logger.error(
                f"Export {artifacts.package_id} step {step.value} exceeded {self.step_timeout}s"
            )
            raise StepTimeout(
                f"Step {step.value} exceeded {self.step_timeout}s",
                step=step,
                artifacts=artifacts,
            ) from e

    def _new_artifacts(self, referral: Referral, options: ExportOptions) -> ExportArtifacts:
        now = utcnow()
        return ExportArtifacts(
            referral_id=referral.id,
            package_id=generate_package_id(),
            package_name=options.package_name or default_package_name(referral, now),
            created_at=now,
            exported_by=options.exported_by or self.settings.exported_by_default,
        )

    def _bundle(self, referral: Referral, options: ExportOptions, artifacts: ExportArtifacts) -> ArchiveBundle:
        export_metadata = {
            "exportedAt": artifacts.created_at.isoformat(),
            "exportedBy": artifacts.exported_by,
            "packageId": artifacts.package_id,
            "packageName": artifacts.package_name,
            "packageVersion": PACKAGE_VERSION,
        }
        return build_intake_archive(referral.to_export_dict(), export_metadata, options.attachments)

    async def _bundle_step(
        self, referral: Referral, options: ExportOptions, artifacts: ExportArtifacts
    ) -> ArchiveBundle:
        async def action():
            return await asyncio.to_thread(self._bundle, referral, options, artifacts)

        try:
            bundle = await self._run_step(ExportStep.BUNDLE, artifacts, action)
        except (ArchiveError, TypeError, ValueError) as e:
            raise BundleError(f"Bundling failed: {e}", step=ExportStep.BUNDLE, artifacts=artifacts) from e
        artifacts.size_original = bundle.size_original
        artifacts.size_compressed = bundle.size_compressed
        artifacts.complete(ExportStep.BUNDLE)
        return bundle

    async def _key_step(self, artifacts: ExportArtifacts) -> MasterKey:
        async def action():
            return self.key_ring.current()

        try:
            key = await self._run_step(ExportStep.KEY_LOAD, artifacts, action)
        except encryption.KeyUnavailable as e:
            raise KeyUnavailable(str(e), step=ExportStep.KEY_LOAD, artifacts=artifacts) from e
        artifacts.complete(ExportStep.KEY_LOAD)
        return key

    async def _encrypt_step(self, bundle: ArchiveBundle, key: MasterKey, artifacts: ExportArtifacts) -> None:
        async def action():
            return await asyncio.to_thread(encryption.encrypt, bundle.data, key)

        try:
            artifacts.blob = await self._run_step(ExportStep.ENCRYPT, artifacts, action)
        except encryption.EncryptionError as e:
            raise EncryptionError(str(e), step=ExportStep.ENCRYPT, artifacts=artifacts) from e
        artifacts.complete(ExportStep.ENCRYPT)

    async def _checksum_step(self, artifacts: ExportArtifacts) -> None:
        async def action():
            return checksum_sha256(artifacts.blob.ciphertext)

        artifacts.checksum = await self._run_step(ExportStep.CHECKSUM, artifacts, action)
        artifacts.complete(ExportStep.CHECKSUM)

    def _object_metadata(self, artifacts: ExportArtifacts) -> dict[str, str]:
        return {
            "referral_id": str(artifacts.referral_id),
            "package_id": artifacts.package_id,
            "package_name": artifacts.package_name,
            "package_version": PACKAGE_VERSION,
            "checksum_sha256": artifacts.checksum,
            "iv": artifacts.blob.iv_hex,
            "auth_tag": artifacts.blob.auth_tag_hex,
            "encryption_algorithm": ENCRYPTION_ALGORITHM,
            "encryption_key_id": artifacts.blob.key_id,
            "created_by": artifacts.exported_by,
            "created_at": artifacts.created_at.isoformat(),
        }

    async def _upload_step(self, artifacts: ExportArtifacts) -> None:
        key = artifacts.storage_key or build_package_key(
            artifacts.referral_id, artifacts.package_id, artifacts.created_at
        )
        artifacts.storage_key = key

        async def action():
            return await self.storage.put_object(
                key, artifacts.blob.ciphertext, self._object_metadata(artifacts)
            )

        try:
            artifacts.etag = await self._run_step(ExportStep.UPLOAD, artifacts, action)
        except storage.StorageUnavailable as e:
            raise StorageUnavailable(str(e), step=ExportStep.UPLOAD, artifacts=artifacts) from e
        except storage.StorageError as e:
            raise UploadError(str(e), step=ExportStep.UPLOAD, artifacts=artifacts) from e
        artifacts.storage_url = self.storage.object_url(key)
        artifacts.complete(ExportStep.UPLOAD)

    async def _presign_step(self, artifacts: ExportArtifacts, ttl: int) -> None:
        async def action():
            return await self.storage.presign_download(artifacts.storage_key, ttl)

        try:
            artifacts.download_url = await self._run_step(ExportStep.PRESIGN, artifacts, action)
        except storage.StorageError as e:
            raise PresignError(str(e), step=ExportStep.PRESIGN, artifacts=artifacts) from e
        artifacts.download_url_expires_at = utcnow() + timedelta(seconds=ttl)
        artifacts.complete(ExportStep.PRESIGN)

    async def recover_artifacts(self, package: IntakePackage) -> Optional[ExportArtifacts]:
        """
        Rebuild resume artifacts from a persisted failed package.

        Only packages that failed after their upload completed can be
        recovered: the ciphertext is read back from object storage and
        checked against the recorded checksum. Anything else returns None
        and the next export starts over.
        """
        if package.status != PackageStatus.FAILED or package.error_step != ExportStep.PRESIGN.value:
            return None
        if not (package.storage_key and package.iv and package.auth_tag
                and package.checksum_sha256 and package.encryption_key_id):
            return None

        try:
            stored = await self.storage.get_object(package.storage_key)
        except storage.StorageError as e:
            logger.warning(f"Cannot recover export {package.id}: {e}")
            return None
        if not encryption.verify_checksum(stored.body, package.checksum_sha256):
            logger.warning(f"Cannot recover export {package.id}: stored object checksum mismatch")
            return None
        try:
            blob = EncryptedBlob.from_hex(
                stored.body, package.iv, package.auth_tag, package.encryption_key_id
            )
        except encryption.IntegrityError as e:
            logger.warning(f"Cannot recover export {package.id}: {e}")
            return None

        logger.info(f"Recovered export {package.id} from storage key {package.storage_key}")
        return ExportArtifacts(
            referral_id=package.referral_id,
            package_id=package.id,
            package_name=package.package_name,
            created_at=package.created_at,
            exported_by=package.created_by or self.settings.exported_by_default,
            completed_steps=[
                ExportStep.BUNDLE,
                ExportStep.KEY_LOAD,
                ExportStep.ENCRYPT,
                ExportStep.CHECKSUM,
                ExportStep.UPLOAD,
            ],
            size_original=package.size_original,
            size_compressed=package.size_compressed,
            blob=blob,
            checksum=package.checksum_sha256,
            storage_key=package.storage_key,
            storage_url=package.storage_url or self.storage.object_url(package.storage_key),
        )

    async def export_referral_package(
        self,
        referral: Referral,
        options: Optional[ExportOptions] = None,
        resume: Optional[ExportArtifacts] = None,
    ) -> ExportResult:
        """
        Export a referral as an encrypted intake package.

        Args:
            referral: Referral to export
            options: Exporter id, package name, attachments, URL lifetime
            resume: Artifacts from a failed run of the same referral

        Returns:
            ExportResult describing the uploaded package

        Raises:
            ExportError: subclass naming the failed step, with artifacts
        """
        options = options or ExportOptions()
        if resume is not None and resume.referral_id != referral.id:
            raise ValueError("Resume artifacts belong to a different referral")
        artifacts = resume or self._new_artifacts(referral, options)
        ttl = options.download_ttl_seconds or self.settings.download_url_ttl_seconds

        if resume is not None:
            logger.info(
                f"Resuming export {artifacts.package_id} for referral {referral.id} "
                f"at step {artifacts.next_step.value if artifacts.next_step else 'done'}"
            )
        else:
            logger.info(f"Starting export {artifacts.package_id} for referral {referral.id}")

        if artifacts.blob is None:
            # Nothing encrypted yet: plaintext was not kept, so start over
            artifacts.completed_steps.clear()
            bundle = await self._bundle_step(referral, options, artifacts)
            key = await self._key_step(artifacts)
            await self._encrypt_step(bundle, key, artifacts)
            del bundle
        if not artifacts.has_completed(ExportStep.CHECKSUM):
            await self._checksum_step(artifacts)
        if not artifacts.has_completed(ExportStep.UPLOAD):
            await self._upload_step(artifacts)
        if not artifacts.has_completed(ExportStep.PRESIGN):
            await self._presign_step(artifacts, ttl)

        logger.info(
            f"Export {artifacts.package_id} complete: {artifacts.size_original} bytes -> "
            f"{artifacts.size_compressed} compressed -> {len(artifacts.blob.ciphertext)} encrypted"
        )
        return ExportResult(
            package_id=artifacts.package_id,
            package_name=artifacts.package_name,
            referral_id=artifacts.referral_id,
            storage_key=artifacts.storage_key,
            storage_url=artifacts.storage_url,
            download_url=artifacts.download_url,
            download_url_expires_at=artifacts.download_url_expires_at,
            expires_at=artifacts.created_at + timedelta(days=self.settings.package_retention_days),
            checksum_sha256=artifacts.checksum,
            iv=artifacts.blob.iv_hex,
            auth_tag=artifacts.blob.auth_tag_hex,
            encryption_key_id=artifacts.blob.key_id,
            size_original=artifacts.size_original,
            size_compressed=artifacts.size_compressed,
            size_encrypted=len(artifacts.blob.ciphertext),
            created_at=artifacts.created_at,
            created_by=artifacts.exported_by,
        )

    async def batch_export_referrals(
        self,
        referrals: Iterable[Referral],
        options: Optional[ExportOptions] = None,
    ) -> BatchExportReport:
        """
        Export referrals one at a time.

        Not atomic: packages uploaded before a failure stay uploaded.
        """
        report = BatchExportReport()
        for referral in referrals:
            report.total += 1
            try:
                result = await self.export_referral_package(
                    referral, dataclasses.replace(options) if options else None
                )
            except ExportError as e:
                logger.warning(f"Batch export failed for referral {referral.id} at {e.step.value}")
                report.errors.append(
                    BatchExportFailure(referral_id=referral.id, step=e.step, error=str(e))
                )
                continue
            report.results.append(result)

        logger.info(
            f"Batch export complete: {report.success_count}/{report.total} succeeded"
        )
        return report

    def validate_export_prerequisites(self) -> dict[str, Any]:
        """Configuration checks run before accepting exports."""
        issues = []
        try:
            self.key_ring.current()
        except encryption.KeyUnavailable as e:
            issues.append(str(e))
        if not self.settings.storage_bucket:
            issues.append("Storage bucket is not configured")
        if self.settings.is_production and not (
            self.settings.storage_access_key and self.settings.storage_secret_key
        ):
            issues.append("Storage credentials are not configured")
        return {"ready": not issues, "issues": issues}
