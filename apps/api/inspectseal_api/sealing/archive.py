"""Zip packaging for sealed bundles.

Layout:
    <declared file paths>   source files, in manifest order
    manifest.json           canonical manifest bytes, verbatim
    manifest.sig            base64 HMAC signature
"""

import io
import zipfile
import zlib
from dataclasses import dataclass
from typing import Iterable

from inspectseal_api.sealing.errors import ArchiveFormatError, SealingInputError

MANIFEST_NAME = "manifest.json"
SIGNATURE_NAME = "manifest.sig"
RESERVED_NAMES = frozenset({MANIFEST_NAME, SIGNATURE_NAME})

# ZipInfo.date_time minimum is 1980-01-01
_FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class BundleFile:
    """An in-memory file handed over for sealing."""

    path: str
    data: bytes
    content_type: str


def validate_bundle_paths(paths: Iterable[str]) -> None:
    """Reject paths that are unsafe, reserved or duplicated."""
    seen = set()
    for path in paths:
        if not isinstance(path, str) or not path.strip():
            raise SealingInputError("Bundle file path must be a non-empty string")
        if path.startswith("/") or "\\" in path or ":" in path.split("/")[0]:
            raise SealingInputError(f"Bundle file path must be relative: {path!r}")
        segments = path.split("/")
        if any(segment in ("", ".", "..") for segment in segments):
            raise SealingInputError(f"Bundle file path has an invalid segment: {path!r}")
        if path in RESERVED_NAMES:
            raise SealingInputError(f"Bundle file path is reserved: {path!r}")
        if path in seen:
            raise SealingInputError(f"Duplicate bundle file path: {path!r}")
        seen.add(path)


def _entry(name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(filename=name, date_time=_FIXED_DATE_TIME)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.create_system = 3  # Unix
    info.external_attr = 0o644 << 16
    return info


def build_archive(files: Iterable[BundleFile], manifest_bytes: bytes, signature: str) -> bytes:
    """Pack files, manifest and signature into zip bytes."""
    entries = tuple((f.path, f.data) for f in files) + (
        (MANIFEST_NAME, manifest_bytes),
        (SIGNATURE_NAME, signature.encode("utf-8")),
    )

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w") as zf:
        for name, content in entries:
            zf.writestr(_entry(name), content)
    return buf.getvalue()


def read_archive_entries(archive_bytes: bytes) -> tuple[dict[str, bytes], frozenset[str]]:
    """
    Read every entry of a sealed bundle, one at a time.

    Returns the readable entries and the names of entries whose data fails
    its CRC or cannot be decompressed. Damage to the manifest or signature,
    or to the zip structure itself, raises ArchiveFormatError.
    """
    contents = {}
    unreadable = set()
    try:
        with zipfile.ZipFile(io.BytesIO(archive_bytes)) as zf:
            names = [info.filename for info in zf.infolist() if not info.is_dir()]
            if len(names) != len(set(names)):
                raise ArchiveFormatError("Archive contains duplicate entry names")
            for name in names:
                try:
                    contents[name] = zf.read(name)
                except (zipfile.BadZipFile, zlib.error, EOFError):
                    unreadable.add(name)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError, OSError) as e:
        raise ArchiveFormatError(f"Not a readable zip archive: {e}") from e

    for required in (MANIFEST_NAME, SIGNATURE_NAME):
        if required in unreadable:
            raise ArchiveFormatError(f"Archive entry {required} is corrupt")
        if required not in contents:
            raise ArchiveFormatError(f"Archive is missing {required}")
    return contents, frozenset(unreadable)


def read_archive(archive_bytes: bytes) -> dict[str, bytes]:
    """Read every entry of a sealed bundle; any corrupt entry is an error."""
    contents, unreadable = read_archive_entries(archive_bytes)
    if unreadable:
        raise ArchiveFormatError(f"Archive entries are corrupt: {sorted(unreadable)}")
    return contents
