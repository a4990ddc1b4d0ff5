"""
Retention sweep for intake packages.

Packages past their retention expiry are deleted from object storage and
marked expired. A package whose object is already gone is still marked
expired. Failed packages keep their status, but any object a partial
export left behind is deleted and the storage key cleared.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from clinicflow.db.store import ReferralStore
from clinicflow.models.base import utcnow
from clinicflow.models.intake_package import IntakePackage, PackageStatus
from clinicflow.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationType,
)
from clinicflow.storage.client import ObjectNotFound, ObjectStorageClient, StorageError

logger = logging.getLogger(__name__)

SWEEPABLE_STATUSES = (PackageStatus.UPLOADED, PackageStatus.DOWNLOADED)


@dataclass
class SweepReport:
    checked: int = 0
    expired: list[str] = field(default_factory=list)
    purged: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "expired": self.expired,
            "purged": self.purged,
            "errors": self.errors,
        }


class RetentionSweeper:
    """Deletes intake packages whose retention window has closed."""

    def __init__(
        self,
        store: ReferralStore,
        storage_client: ObjectStorageClient,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.storage = storage_client
        self.dispatcher = dispatcher

    async def _delete_object(self, package: IntakePackage, report: SweepReport) -> bool:
        if not package.storage_key:
            return True
        try:
            await self.storage.delete_object(package.storage_key)
        except ObjectNotFound:
            logger.info(f"Package {package.id} object already removed")
        except StorageError as e:
            # Left in place; the next sweep retries it
            logger.error(f"Retention delete failed for package {package.id}: {e}")
            report.errors.append({"package_id": package.id, "error": str(e)})
            return False
        return True

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        for status in SWEEPABLE_STATUSES:
            for package in await self.store.list_packages(status=status):
                report.checked += 1
                if not package.is_expired(now):
                    continue
                if not await self._delete_object(package, report):
                    continue

                package.mark_expired()
                await self.store.save_package_metadata(package)
                report.expired.append(package.id)
                if self.dispatcher is not None:
                    self.dispatcher.notify(
                        NotificationEvent(
                            type=NotificationType.PACKAGE_EXPIRED,
                            referral_id=package.referral_id,
                            payload={"package_id": package.id},
                        )
                    )

        for package in await self.store.list_packages(status=PackageStatus.FAILED):
            if not package.storage_key:
                continue
            report.checked += 1
            if not package.is_expired(now):
                continue
            if not await self._delete_object(package, report):
                continue

            package.storage_key = None
            package.storage_url = None
            await self.store.save_package_metadata(package)
            report.purged.append(package.id)

        logger.info(
            f"Retention sweep: {len(report.expired)} expired, {len(report.purged)} failed purged, "
            f"{len(report.errors)} errors, {report.checked} checked"
        )
        return report
