"""
Deterministic ZIP bundling for intake packages.

The same entries always produce byte-identical archives: entry order is
fixed, every entry carries the same timestamp and permissions, and the
manifest is serialized with sorted keys.
"""

import io
import json
import logging
import zipfile
from dataclasses import dataclass
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
REFERRAL_ENTRY = "referral.json"
METADATA_ENTRY = "metadata.json"
ATTACHMENT_PREFIX = "attachments/"
ARCHIVE_SCHEMA_VERSION = "1.0"

# 1980-01-01 is the earliest timestamp the ZIP format can represent
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
COMPRESSION_LEVEL = 9


class ArchiveError(Exception):
    """Archive could not be built or failed validation on read."""


@dataclass(frozen=True)
class ArchiveBundle:
    """A built archive and its size accounting."""

    data: bytes
    entry_names: tuple[str, ...]
    size_original: int

    @property
    def size_compressed(self) -> int:
        return len(self.data)


def _validate_name(name: str) -> None:
    if not name or name.startswith("/") or "\\" in name:
        raise ArchiveError(f"Invalid archive entry name: {name!r}")
    if any(part in ("", "..") for part in name.split("/")):
        raise ArchiveError(f"Invalid archive entry name: {name!r}")
    if name == MANIFEST_NAME:
        raise ArchiveError(f"{MANIFEST_NAME} is reserved")


def _write_entry(archive: zipfile.ZipFile, name: str, data: bytes) -> None:
    info = zipfile.ZipInfo(filename=name, date_time=FIXED_DATE_TIME)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o600 << 16
    archive.writestr(info, data, compresslevel=COMPRESSION_LEVEL)


def build_archive(
    entries: Mapping[str, bytes],
    manifest_extra: Optional[Mapping[str, Any]] = None,
) -> ArchiveBundle:
    """
    Bundle ``entries`` into a deterministic ZIP with a leading manifest.

    Args:
        entries: Archive path -> content
        manifest_extra: Additional fields merged into the manifest

    Returns:
        ArchiveBundle with compressed bytes and the original payload size
    """
    names = list(entries)
    for name in names:
        _validate_name(name)

    manifest = {
        **(manifest_extra or {}),
        "schemaVersion": ARCHIVE_SCHEMA_VERSION,
        "fileCount": len(names),
        "files": [
            {"name": name, "size": len(entries[name])}
            for name in names
        ],
    }
    manifest_bytes = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")

    buffer = io.BytesIO()
    try:
        with zipfile.ZipFile(buffer, mode="w") as archive:
            _write_entry(archive, MANIFEST_NAME, manifest_bytes)
            for name in names:
                _write_entry(archive, name, entries[name])
    except (ValueError, zipfile.LargeZipFile) as e:
        raise ArchiveError(f"Failed to build archive: {e}") from e

    size_original = len(manifest_bytes) + sum(len(v) for v in entries.values())
    data = buffer.getvalue()
    logger.debug(f"Built archive with {len(names)} entries: {size_original} -> {len(data)} bytes")
    return ArchiveBundle(
        data=data,
        entry_names=(MANIFEST_NAME, *names),
        size_original=size_original,
    )


def build_intake_archive(
    referral_payload: Mapping[str, Any],
    export_metadata: Mapping[str, Any],
    attachments: Optional[Mapping[str, bytes]] = None,
) -> ArchiveBundle:
    """
    Build the standard intake layout.

    ``referral.json`` holds the referral and export metadata,
    ``metadata.json`` the export metadata alone, and attachments are
    stored under ``attachments/``.
    """
    document = {"referral": referral_payload, "exportMetadata": export_metadata}
    entries: dict[str, bytes] = {
        REFERRAL_ENTRY: json.dumps(document, sort_keys=True, indent=2, default=str).encode("utf-8"),
        METADATA_ENTRY: json.dumps(export_metadata, sort_keys=True, indent=2, default=str).encode("utf-8"),
    }
    for name, content in sorted((attachments or {}).items()):
        path = f"{ATTACHMENT_PREFIX}{name}"
        if path in entries:
            raise ArchiveError(f"Duplicate attachment name: {name}")
        entries[path] = content

    return build_archive(
        entries,
        manifest_extra={"packageVersion": export_metadata.get("packageVersion", ARCHIVE_SCHEMA_VERSION)},
    )


def read_archive(data: bytes) -> dict[str, bytes]:
    """
    Unpack an archive and check it against its manifest.

    Raises:
        ArchiveError: corrupt archive, missing manifest, or entries that
            do not match the manifest
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            contents = {info.filename: archive.read(info) for info in archive.infolist()}
    except (zipfile.BadZipFile, zipfile.LargeZipFile, KeyError) as e:
        raise ArchiveError(f"Corrupt archive: {e}") from e

    if MANIFEST_NAME not in contents:
        raise ArchiveError("Archive has no manifest")
    try:
        manifest = json.loads(contents.pop(MANIFEST_NAME))
        listed = {entry["name"]: entry["size"] for entry in manifest["files"]}
    except (ValueError, KeyError, TypeError) as e:
        raise ArchiveError(f"Malformed manifest: {e}") from e

    missing = set(listed) - set(contents)
    unlisted = set(contents) - set(listed)
    if missing or unlisted:
        raise ArchiveError(
            f"Archive does not match manifest (missing={sorted(missing)}, unlisted={sorted(unlisted)})"
        )
    for name, size in listed.items():
        if len(contents[name]) != size:
            raise ArchiveError(f"Entry {name} has size {len(contents[name])}, manifest says {size}")
    return contents
