"""
S3-compatible object storage for intake packages.
"""

from clinicflow.storage.client import (
    PACKAGE_PREFIX,
    ObjectNotFound,
    ObjectStorageClient,
    StorageError,
    StorageUnavailable,
    StoredObject,
    build_package_key,
    is_expired,
    package_age_days,
    parse_package_key,
)

__all__ = [
    "PACKAGE_PREFIX",
    "ObjectNotFound",
    "ObjectStorageClient",
    "StorageError",
    "StorageUnavailable",
    "StoredObject",
    "build_package_key",
    "is_expired",
    "package_age_days",
    "parse_package_key",
]
