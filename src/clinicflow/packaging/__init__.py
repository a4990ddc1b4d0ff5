"""
Intake package archive building.
"""

from clinicflow.packaging.archive import (
    ARCHIVE_SCHEMA_VERSION,
    MANIFEST_NAME,
    ArchiveBundle,
    ArchiveError,
    build_archive,
    build_intake_archive,
    read_archive,
)

__all__ = [
    "ARCHIVE_SCHEMA_VERSION",
    "MANIFEST_NAME",
    "ArchiveBundle",
    "ArchiveError",
    "build_archive",
    "build_intake_archive",
    "read_archive",
]
