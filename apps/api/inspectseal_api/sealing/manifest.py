"""Export manifest model and builder.

The manifest is the signed, self-contained description of a bundle: its
files, attribution, signing key and link to the tenant's previous bundle.
Building a manifest is pure; nothing here touches storage.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from inspectseal_api.sealing.errors import ManifestFormatError, SealingInputError
from inspectseal_api.sealing.signer import SIGNATURE_ALGORITHM

MANIFEST_VERSION = 1


class ExportType(str, Enum):
    """Registered export types."""

    PDF_REPORT = "pdf_report"
    DEFECT_EXPORT = "defect_export"
    CLAIMS_PACK = "claims_pack"

    @classmethod
    def parse(cls, value: Any) -> "ExportType":
        """Parse an export type, rejecting unregistered values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = sorted(t.value for t in cls)
            raise SealingInputError(f"Unknown export type: {value!r}. Allowed: {allowed}")


@dataclass(frozen=True)
class ManifestFileEntry:
    """One packaged file."""

    path: str
    sha256: str
    bytes: int
    content_type: str

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "sha256": self.sha256,
            "bytes": self.bytes,
            "content_type": self.content_type,
        }


@dataclass(frozen=True)
class GeneratedBy:
    """Attribution for a bundle (not authorization)."""

    user_id: str
    display_name: str

    def to_dict(self) -> dict:
        return {"user_id": self.user_id, "display_name": self.display_name}


@dataclass(frozen=True)
class ExportManifest:
    """Signed description of a sealed bundle."""

    version: int
    bundle_id: str
    generated_at: str
    generated_by: GeneratedBy
    tenant_id: str
    export_type: str
    source_id: Optional[str]
    signature_algorithm: str
    signing_key_id: str
    verify_url: str
    prev_bundle_hash: Optional[str]
    files: tuple[ManifestFileEntry, ...]

    def to_dict(self) -> dict:
        """Plain dict with every field present, nulls included."""
        return {
            "version": self.version,
            "bundle_id": self.bundle_id,
            "generated_at": self.generated_at,
            "generated_by": self.generated_by.to_dict(),
            "tenant_id": self.tenant_id,
            "export_type": self.export_type,
            "source_id": self.source_id,
            "signature_algorithm": self.signature_algorithm,
            "signing_key_id": self.signing_key_id,
            "verify_url": self.verify_url,
            "prev_bundle_hash": self.prev_bundle_hash,
            "files": [entry.to_dict() for entry in self.files],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExportManifest":
        """Parse a decoded manifest.json."""
        if not isinstance(data, Mapping):
            raise ManifestFormatError("Manifest must be a JSON object")

        def field(name: str, types: tuple, nullable: bool = False) -> Any:
            if name not in data:
                raise ManifestFormatError(f"Manifest is missing field: {name}")
            value = data[name]
            if value is None and nullable:
                return None
            if isinstance(value, bool) or not isinstance(value, types):
                raise ManifestFormatError(f"Manifest field {name} has invalid type")
            return value

        generated_by = field("generated_by", (dict,))
        raw_files = field("files", (list,))
        try:
            files = tuple(
                ManifestFileEntry(
                    path=str(entry["path"]),
                    sha256=str(entry["sha256"]),
                    bytes=int(entry["bytes"]),
                    content_type=str(entry["content_type"]),
                )
                for entry in raw_files
            )
            attribution = GeneratedBy(
                user_id=str(generated_by["user_id"]),
                display_name=str(generated_by["display_name"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestFormatError(f"Manifest entry is malformed: {e}") from e

        if not files:
            raise ManifestFormatError("Manifest lists no files")

        return cls(
            version=field("version", (int,)),
            bundle_id=field("bundle_id", (str,)),
            generated_at=field("generated_at", (str,)),
            generated_by=attribution,
            tenant_id=field("tenant_id", (str,)),
            export_type=field("export_type", (str,)),
            source_id=field("source_id", (str,), nullable=True),
            signature_algorithm=field("signature_algorithm", (str,)),
            signing_key_id=field("signing_key_id", (str,)),
            verify_url=field("verify_url", (str,)),
            prev_bundle_hash=field("prev_bundle_hash", (str,), nullable=True),
            files=files,
        )


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_verify_url(base_url: str, bundle_id: str) -> str:
    return f"{base_url.rstrip('/')}/v1/verify/{bundle_id}"


def build_manifest(
    *,
    bundle_id: str,
    tenant_id: str,
    export_type: ExportType,
    source_id: Optional[str],
    generated_by: GeneratedBy,
    signing_key_id: str,
    prev_bundle_hash: Optional[str],
    files: Iterable[ManifestFileEntry],
    verify_base_url: str,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> ExportManifest:
    """Assemble the manifest and stamp generated_at."""
    return ExportManifest(
        version=MANIFEST_VERSION,
        bundle_id=bundle_id,
        generated_at=utc_timestamp(clock()),
        generated_by=generated_by,
        tenant_id=tenant_id,
        export_type=ExportType.parse(export_type).value,
        source_id=source_id,
        signature_algorithm=SIGNATURE_ALGORITHM,
        signing_key_id=signing_key_id,
        verify_url=build_verify_url(verify_base_url, bundle_id),
        prev_bundle_hash=prev_bundle_hash,
        files=tuple(files),
    )
