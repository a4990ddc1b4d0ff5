"""
Intake package API routes.

Packages are only ever handed out through short-lived signed URLs issued
on demand; stored URLs are not returned.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from clinicflow.api.deps import WorkflowService
from clinicflow.models.intake_package import PackageStatus

router = APIRouter()


@router.get("")
async def list_packages(
    service: WorkflowService,
    referral_id: Optional[UUID] = Query(default=None),
    package_status: Optional[str] = Query(default=None, alias="status"),
):
    """List package metadata, newest first."""
    parsed_status = None
    if package_status is not None:
        try:
            parsed_status = PackageStatus(package_status)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {package_status}. "
                f"Valid options: {', '.join(s.value for s in PackageStatus)}",
            )
    packages = await service.list_packages(referral_id=referral_id, status=parsed_status)
    return {"count": len(packages), "packages": [p.to_dict() for p in packages]}


@router.get("/{package_id}")
async def get_package(package_id: str, service: WorkflowService):
    package = await service.get_package(package_id)
    return package.to_dict()


@router.get("/{package_id}/download")
async def download_package(package_id: str, service: WorkflowService):
    """
    Issue a fresh signed download URL.

    Returns 410 once the package has passed its retention expiry.
    """
    package, url = await service.download_package(package_id)
    return {
        "package_id": package.id,
        "download_url": url,
        "expires_in_seconds": service.orchestrator.settings.download_url_ttl_seconds,
        "checksum_sha256": package.checksum_sha256,
        "iv": package.iv,
        "auth_tag": package.auth_tag,
        "encryption_key_id": package.encryption_key_id,
        "encryption_algorithm": package.encryption_algorithm,
    }


@router.delete("/{package_id}")
async def delete_package(package_id: str, service: WorkflowService):
    """Remove the stored object and mark the package expired."""
    package = await service.delete_package(package_id)
    return {"package_id": package.id, "status": package.status.value}
