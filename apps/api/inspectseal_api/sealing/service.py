"""Sealing pipeline.

hash files -> build manifest -> canonical JSON -> HMAC sign -> zip
-> upload -> ledger row.

Everything up to the upload is pure and can be discarded without side
effects. The ledger row is written only after the archive is stored, so a
row never points at missing storage.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from inspectseal_api.ledger.service import SealedExportLedger
from inspectseal_api.models import SealedExport
from inspectseal_api.sealing.archive import BundleFile, build_archive, validate_bundle_paths
from inspectseal_api.sealing.canonical import canonicalize
from inspectseal_api.sealing.errors import (
    ChainConflictError,
    LedgerPersistenceError,
    SealingError,
    SealingInputError,
    SigningKeyError,
    StorageUploadError,
)
from inspectseal_api.sealing.hashing import sha256_hex
from inspectseal_api.sealing.manifest import (
    ExportManifest,
    ExportType,
    GeneratedBy,
    ManifestFileEntry,
    build_manifest,
)
from inspectseal_api.sealing.signer import KeyRing, SigningKey, get_key_ring, hmac_sign
from inspectseal_api.settings import Settings, get_settings
from inspectseal_api.storage.service import (
    StorageError,
    StorageService,
    get_storage_service,
    is_valid_tenant_id,
)
from inspectseal_api.utils.metrics import chain_conflicts, seal_duration, sealed_bundles, storage_upload_retries

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/zip"

# Column sizes of the sealed_exports ledger
MAX_SOURCE_ID_LENGTH = 64
MAX_USER_ID_LENGTH = 64
MAX_DISPLAY_NAME_LENGTH = 255


@dataclass(frozen=True)
class SealedBundle:
    """Output of sealing, held in memory until uploaded and recorded."""

    bundle_id: str
    archive_bytes: bytes
    manifest: ExportManifest
    manifest_json: str
    manifest_sha256: str
    manifest_sig: str
    total_bytes: int


def hash_files(files: Iterable[BundleFile]) -> tuple[ManifestFileEntry, ...]:
    """Hash every file into manifest entries, preserving order."""
    return tuple(
        ManifestFileEntry(
            path=f.path,
            sha256=sha256_hex(f.data),
            bytes=len(f.data),
            content_type=f.content_type,
        )
        for f in files
    )


def create_sealed_bundle(
    *,
    bundle_id: str,
    tenant_id: str,
    export_type: ExportType,
    source_id: Optional[str],
    generated_by: GeneratedBy,
    signing_key: SigningKey,
    prev_bundle_hash: Optional[str],
    files: Iterable[BundleFile],
    verify_base_url: str,
    clock: Optional[Callable[[], datetime]] = None,
) -> SealedBundle:
    """Build a sealed bundle in memory. Pure apart from the clock."""
    files = tuple(files)
    entries = hash_files(files)

    manifest_kwargs = {}
    if clock is not None:
        manifest_kwargs["clock"] = clock
    manifest = build_manifest(
        bundle_id=bundle_id,
        tenant_id=tenant_id,
        export_type=export_type,
        source_id=source_id,
        generated_by=generated_by,
        signing_key_id=signing_key.key_id,
        prev_bundle_hash=prev_bundle_hash,
        files=entries,
        verify_base_url=verify_base_url,
        **manifest_kwargs,
    )

    manifest_bytes = canonicalize(manifest)
    manifest_sig = hmac_sign(manifest_bytes, signing_key.secret)
    manifest_sha256 = sha256_hex(manifest_bytes)
    archive_bytes = build_archive(files, manifest_bytes, manifest_sig)

    return SealedBundle(
        bundle_id=bundle_id,
        archive_bytes=archive_bytes,
        manifest=manifest,
        manifest_json=manifest_bytes.decode("utf-8"),
        manifest_sha256=manifest_sha256,
        manifest_sig=manifest_sig,
        total_bytes=len(archive_bytes),
    )


class _PredecessorClaimed(Exception):
    """Another seal won the race for this tenant's chain position."""

    def __init__(self, storage_key: Optional[str]):
        super().__init__(storage_key)
        self.storage_key = storage_key


class SealingService:
    """Seal export file sets into signed, chained, stored bundles."""

    def __init__(
        self,
        db: Session,
        storage: Optional[StorageService] = None,
        key_ring: Optional[KeyRing] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """Initialize sealing service."""
        self.db = db
        self.ledger = SealedExportLedger(db)
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.clock = clock
        self._storage = storage
        self._key_ring = key_ring

    @property
    def storage(self) -> StorageService:
        if self._storage is None:
            self._storage = get_storage_service()
        return self._storage

    @property
    def key_ring(self) -> KeyRing:
        if self._key_ring is None:
            self._key_ring = get_key_ring()
        return self._key_ring

    def seal(
        self,
        tenant_id: str,
        export_type,
        source_id: Optional[str],
        generated_by: GeneratedBy,
        files: Iterable[BundleFile],
    ) -> SealedExport:
        """Seal files into a bundle, store it and append it to the tenant's ledger."""
        started = time.monotonic()
        type_label = str(getattr(export_type, "value", export_type))
        try:
            export_type = ExportType.parse(export_type)
            files = tuple(files)
            source_id = str(source_id) if source_id is not None else None
            self._validate(tenant_id, source_id, generated_by, files)
            signing_key = self.key_ring.active
        except SealingInputError:
            sealed_bundles.labels(export_type=type_label, outcome="input_error").inc()
            raise
        except SigningKeyError:
            sealed_bundles.labels(export_type=type_label, outcome="key_error").inc()
            logger.error(f"Cannot seal export for tenant {tenant_id}: signing key unavailable")
            raise

        max_attempts = max(1, self.settings.seal_max_attempts)
        orphaned_keys: list[str] = []

        for attempt in range(1, max_attempts + 1):
            try:
                row = self._seal_once(tenant_id, export_type, source_id, generated_by, files, signing_key)
            except _PredecessorClaimed as conflict:
                chain_conflicts.inc()
                if conflict.storage_key:
                    orphaned_keys.append(conflict.storage_key)
                logger.warning(
                    f"Chain position for tenant {tenant_id} was claimed concurrently "
                    f"(attempt {attempt}/{max_attempts}); retrying with a new bundle id",
                    extra={"tenant_id": tenant_id, "orphaned_storage_key": conflict.storage_key},
                )
                continue
            except SealingError as e:
                outcome = "storage_error" if isinstance(e, StorageUploadError) else "ledger_error"
                sealed_bundles.labels(export_type=export_type.value, outcome=outcome).inc()
                raise

            sealed_bundles.labels(export_type=export_type.value, outcome="sealed").inc()
            seal_duration.labels(export_type=export_type.value).observe(time.monotonic() - started)
            return row

        sealed_bundles.labels(export_type=export_type.value, outcome="chain_conflict").inc()
        logger.error(
            f"Giving up sealing for tenant {tenant_id} after {max_attempts} chain conflicts",
            extra={"tenant_id": tenant_id, "orphaned_storage_keys": orphaned_keys},
        )
        raise ChainConflictError(
            f"Could not claim a chain position for tenant {tenant_id} after {max_attempts} attempts",
            orphaned_storage_keys=orphaned_keys,
        )

    def _validate(self, tenant_id: str, source_id: Optional[str], generated_by: GeneratedBy, files: tuple) -> None:
        """Reject bad input before any hashing."""
        if not is_valid_tenant_id(tenant_id):
            raise SealingInputError(f"Invalid tenant id: {tenant_id!r}")
        if source_id is not None and len(source_id) > MAX_SOURCE_ID_LENGTH:
            raise SealingInputError(f"source_id is longer than {MAX_SOURCE_ID_LENGTH} characters")
        if not files:
            raise SealingInputError("Cannot seal an empty file set")
        for f in files:
            if not isinstance(f, BundleFile):
                raise SealingInputError(f"Expected BundleFile, got {type(f).__name__}")
            if not isinstance(f.data, (bytes, bytearray)):
                raise SealingInputError(f"File {f.path!r} data must be bytes")
            if not f.content_type:
                raise SealingInputError(f"File {f.path!r} has no content type")
        validate_bundle_paths(f.path for f in files)
        if not isinstance(generated_by, GeneratedBy) or not generated_by.user_id:
            raise SealingInputError("generated_by must name the user producing the export")
        if len(str(generated_by.user_id)) > MAX_USER_ID_LENGTH:
            raise SealingInputError(f"generated_by.user_id is longer than {MAX_USER_ID_LENGTH} characters")
        if generated_by.display_name is not None and len(str(generated_by.display_name)) > MAX_DISPLAY_NAME_LENGTH:
            raise SealingInputError(f"generated_by.display_name is longer than {MAX_DISPLAY_NAME_LENGTH} characters")

    def _seal_once(
        self,
        tenant_id: str,
        export_type: ExportType,
        source_id: Optional[str],
        generated_by: GeneratedBy,
        files: tuple,
        signing_key: SigningKey,
    ) -> SealedExport:
        try:
            head = self.ledger.lock_chain_head(tenant_id)
        except IntegrityError as e:
            # Another seal created the head row first
            self.db.rollback()
            raise _PredecessorClaimed(None) from e

        previous = self.ledger.latest_for_tenant(tenant_id)
        prev_bundle_hash = previous.manifest_sha256 if previous else None
        sequence = previous.tenant_sequence + 1 if previous else 1

        now = self.clock()
        bundle = create_sealed_bundle(
            bundle_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            export_type=export_type,
            source_id=source_id,
            generated_by=generated_by,
            signing_key=signing_key,
            prev_bundle_hash=prev_bundle_hash,
            files=files,
            verify_base_url=self.settings.verify_base_url,
            clock=lambda: now,
        )

        storage_key = StorageService.build_object_key(tenant_id, bundle.bundle_id)
        try:
            self._upload_with_retry(storage_key, bundle, tenant_id, export_type)
        except StorageUploadError:
            self.db.rollback()
            raise

        row = SealedExport(
            bundle_id=bundle.bundle_id,
            tenant_id=tenant_id,
            tenant_sequence=sequence,
            export_type=export_type.value,
            source_id=source_id,
            file_count=len(files),
            total_bytes=bundle.total_bytes,
            storage_key=storage_key,
            manifest_sha256=bundle.manifest_sha256,
            manifest_sig=bundle.manifest_sig,
            signing_key_id=signing_key.key_id,
            prev_bundle_hash=prev_bundle_hash,
            generated_by=generated_by.user_id,
            generated_by_name=generated_by.display_name,
            generated_at=now.astimezone(timezone.utc).replace(tzinfo=None),
        )

        log_extra = {
            "bundle_id": bundle.bundle_id,
            "tenant_id": tenant_id,
            "storage_key": storage_key,
        }
        try:
            self.ledger.append(row, head)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise _PredecessorClaimed(storage_key) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Ledger insert failed for bundle {bundle.bundle_id}; archive orphaned at {storage_key}",
                exc_info=True,
                extra=log_extra,
            )
            raise LedgerPersistenceError(
                f"Failed to record sealed bundle {bundle.bundle_id}: {e}",
                bundle_id=bundle.bundle_id,
                storage_key=storage_key,
            ) from e

        logger.info(
            f"Sealed bundle {bundle.bundle_id} for tenant {tenant_id} "
            f"({len(files)} files, {bundle.total_bytes} bytes)",
            extra={**log_extra, "manifest_sha256": bundle.manifest_sha256},
        )
        return row

    def _upload_with_retry(
        self, storage_key: str, bundle: SealedBundle, tenant_id: str, export_type: ExportType
    ) -> None:
        """Upload the archive, retrying transient failures with exponential backoff."""
        max_attempts = max(1, self.settings.storage_upload_max_attempts)
        metadata = {
            "bundle_id": bundle.bundle_id,
            "export_type": export_type.value,
            "tenant_id": tenant_id,
        }
        for attempt in range(1, max_attempts + 1):
            try:
                self.storage.put_object(
                    storage_key,
                    bundle.archive_bytes,
                    content_type=ARCHIVE_CONTENT_TYPE,
                    metadata=metadata,
                )
                return
            except StorageError as e:
                if attempt == max_attempts:
                    logger.error(
                        f"Upload of bundle {bundle.bundle_id} failed after {attempt} attempts: {e}",
                        extra={"bundle_id": bundle.bundle_id, "tenant_id": tenant_id, "storage_key": storage_key},
                    )
                    raise StorageUploadError(
                        f"Failed to store sealed bundle {bundle.bundle_id}: {e}",
                        storage_key=storage_key,
                        attempts=attempt,
                    ) from e
                delay = self.settings.storage_upload_backoff_seconds * (2 ** (attempt - 1))
                storage_upload_retries.inc()
                logger.warning(
                    f"Upload of bundle {bundle.bundle_id} failed (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                self.sleep(delay)
