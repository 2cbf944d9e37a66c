"""Tests for bundle zip packaging."""

import io
import struct
import zipfile

import pytest

from inspectseal_api.sealing.archive import (
    BundleFile,
    build_archive,
    read_archive,
    read_archive_entries,
    validate_bundle_paths,
)
from inspectseal_api.sealing.errors import ArchiveFormatError, SealingInputError

FILES = (
    BundleFile(path="report.pdf", data=b"%PDF-1.7\n%EO", content_type="application/pdf"),
    BundleFile(path="photos/slide-1.jpg", data=b"\xff\xd8\xff\xe0", content_type="image/jpeg"),
)


def test_archive_layout():
    archive = build_archive(FILES, b'{"version":1}', "c2lnbmF0dXJl")
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        assert zf.namelist() == ["report.pdf", "photos/slide-1.jpg", "manifest.json", "manifest.sig"]
        assert zf.read("manifest.json") == b'{"version":1}'
        assert zf.read("manifest.sig") == b"c2lnbmF0dXJl"


def test_archive_is_byte_identical_for_same_input():
    assert build_archive(FILES, b"{}", "sig") == build_archive(FILES, b"{}", "sig")


def test_read_archive_returns_all_entries():
    contents = read_archive(build_archive(FILES, b"{}", "sig"))
    assert contents["photos/slide-1.jpg"] == b"\xff\xd8\xff\xe0"
    assert contents["manifest.sig"] == b"sig"


def test_read_archive_rejects_garbage():
    with pytest.raises(ArchiveFormatError):
        read_archive(b"definitely not a zip")


def test_read_archive_requires_manifest_and_signature():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("manifest.json", b"{}")
    with pytest.raises(ArchiveFormatError):
        read_archive(buf.getvalue())


def _damage_entry(archive: bytes, name: str) -> bytes:
    with zipfile.ZipFile(io.BytesIO(archive)) as zf:
        offset = zf.getinfo(name).header_offset
    name_len, extra_len = struct.unpack("<HH", archive[offset + 26 : offset + 30])
    damaged = bytearray(archive)
    damaged[offset + 30 + name_len + extra_len + 2] ^= 0xFF
    return bytes(damaged)


def test_read_archive_entries_isolates_corrupt_entry():
    archive = _damage_entry(build_archive(FILES, b'{"version":1}', "sig"), "report.pdf")

    contents, unreadable = read_archive_entries(archive)
    assert unreadable == frozenset({"report.pdf"})
    assert "report.pdf" not in contents
    assert contents["photos/slide-1.jpg"] == b"\xff\xd8\xff\xe0"

    with pytest.raises(ArchiveFormatError):
        read_archive(archive)


def test_read_archive_entries_rejects_corrupt_manifest():
    manifest_bytes = b'{"version":1,"note":"' + b"x" * 64 + b'"}'
    archive = _damage_entry(build_archive(FILES, manifest_bytes, "sig"), "manifest.json")
    with pytest.raises(ArchiveFormatError):
        read_archive_entries(archive)


@pytest.mark.parametrize(
    "path",
    ["", "/etc/passwd", "../escape.pdf", "a/../b.pdf", "a//b.pdf", "C:/x.pdf", "dir\\x.pdf", "manifest.json", "manifest.sig"],
)
def test_unsafe_paths_rejected(path):
    with pytest.raises(SealingInputError):
        validate_bundle_paths([path])


def test_duplicate_paths_rejected():
    with pytest.raises(SealingInputError):
        validate_bundle_paths(["report.pdf", "report.pdf"])


def test_nested_paths_allowed():
    validate_bundle_paths(["report.pdf", "photos/site-3/slide.jpg"])
