"""Sealed bundle verification.

Re-validates an archive from its own contents: file hashes against the
manifest, the manifest against its signature, and (when a ledger is
available) the manifest's predecessor link against the tenant's chain.
Every failure carries its own reason code; "cannot verify" (unknown key)
is kept apart from "verification failed" (bad signature).
"""

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from inspectseal_api.ledger.service import SealedExportLedger
from inspectseal_api.sealing.archive import MANIFEST_NAME, SIGNATURE_NAME, read_archive_entries
from inspectseal_api.sealing.errors import ArchiveFormatError, ManifestFormatError
from inspectseal_api.sealing.hashing import sha256_hex
from inspectseal_api.sealing.manifest import ExportManifest
from inspectseal_api.sealing.signer import SIGNATURE_ALGORITHM, KeyRing, hmac_verify
from inspectseal_api.utils.metrics import verifications

logger = logging.getLogger(__name__)


class VerificationReason(str, Enum):
    """Outcome of a verification, one code per failure mode."""

    OK = "ok"
    MALFORMED_BUNDLE = "malformed_bundle"
    FILE_MISSING = "file_missing"
    FILE_HASH_MISMATCH = "file_hash_mismatch"
    UNDECLARED_FILE = "undeclared_file"
    UNKNOWN_KEY = "unknown_key"
    SIGNATURE_INVALID = "signature_invalid"
    CHAIN_MISMATCH = "chain_mismatch"
    ARCHIVE_MISSING = "archive_missing"


@dataclass(frozen=True)
class VerificationResult:
    """Verification verdict with the reason and enough context for an audit trail."""

    valid: bool
    reason: VerificationReason
    detail: str
    bundle_id: Optional[str] = None
    tenant_id: Optional[str] = None
    signing_key_id: Optional[str] = None
    manifest_sha256: Optional[str] = None
    chain_checked: bool = False

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "reason": self.reason.value,
            "detail": self.detail,
            "bundle_id": self.bundle_id,
            "tenant_id": self.tenant_id,
            "signing_key_id": self.signing_key_id,
            "manifest_sha256": self.manifest_sha256,
            "chain_checked": self.chain_checked,
        }


class BundleVerifier:
    """Verify sealed bundles against a key ring and, optionally, the ledger."""

    def __init__(self, key_ring: KeyRing, ledger: Optional[SealedExportLedger] = None):
        """Initialize verifier."""
        self.key_ring = key_ring
        self.ledger = ledger

    def verify(self, archive_bytes: bytes, expected_bundle_id: Optional[str] = None) -> VerificationResult:
        """
        Verify an archive and record the outcome.

        When expected_bundle_id is given, an archive describing any other
        bundle fails with CHAIN_MISMATCH.
        """
        result = self._verify(archive_bytes)
        if expected_bundle_id is not None and result.bundle_id is not None and result.bundle_id != expected_bundle_id:
            result = replace(
                result,
                valid=False,
                reason=VerificationReason.CHAIN_MISMATCH,
                detail=f"Stored archive describes bundle {result.bundle_id}, not {expected_bundle_id}",
            )
        verifications.labels(reason=result.reason.value).inc()
        log = logger.info if result.valid else logger.warning
        log(
            f"Bundle verification {result.reason.value}: {result.detail}",
            extra={"bundle_id": result.bundle_id, "tenant_id": result.tenant_id},
        )
        return result

    def _verify(self, archive_bytes: bytes) -> VerificationResult:
        try:
            contents, unreadable = read_archive_entries(archive_bytes)
            manifest_bytes = contents[MANIFEST_NAME]
            signature = contents[SIGNATURE_NAME].decode("utf-8").strip()
            manifest = ExportManifest.from_dict(json.loads(manifest_bytes.decode("utf-8")))
        except (ArchiveFormatError, ManifestFormatError, UnicodeDecodeError, json.JSONDecodeError) as e:
            return VerificationResult(False, VerificationReason.MALFORMED_BUNDLE, str(e))

        manifest_sha256 = sha256_hex(manifest_bytes)

        def fail(reason: VerificationReason, detail: str, chain_checked: bool = False) -> VerificationResult:
            return VerificationResult(
                valid=False,
                reason=reason,
                detail=detail,
                bundle_id=manifest.bundle_id,
                tenant_id=manifest.tenant_id,
                signing_key_id=manifest.signing_key_id,
                manifest_sha256=manifest_sha256,
                chain_checked=chain_checked,
            )

        if manifest.signature_algorithm != SIGNATURE_ALGORITHM:
            return fail(
                VerificationReason.MALFORMED_BUNDLE,
                f"Unsupported signature algorithm: {manifest.signature_algorithm}",
            )

        # 1. File contents
        declared = set()
        for entry in manifest.files:
            declared.add(entry.path)
            if entry.path in unreadable:
                return fail(VerificationReason.FILE_HASH_MISMATCH, f"File {entry.path} is corrupt in the archive")
            data = contents.get(entry.path)
            if data is None:
                return fail(VerificationReason.FILE_MISSING, f"File {entry.path} is missing from the archive")
            if sha256_hex(data) != entry.sha256 or len(data) != entry.bytes:
                return fail(VerificationReason.FILE_HASH_MISMATCH, f"File {entry.path} does not match its manifest hash")

        undeclared = sorted((set(contents) | unreadable) - declared - {MANIFEST_NAME, SIGNATURE_NAME})
        if undeclared:
            return fail(VerificationReason.UNDECLARED_FILE, f"Archive contains undeclared files: {undeclared}")

        # 2. Manifest signature
        key = self.key_ring.resolve(manifest.signing_key_id)
        if key is None:
            return fail(
                VerificationReason.UNKNOWN_KEY,
                f"Signing key {manifest.signing_key_id} is not known; the bundle cannot be verified",
            )
        if not hmac_verify(manifest_bytes, signature, key.secret):
            return fail(VerificationReason.SIGNATURE_INVALID, "Manifest signature does not match")

        # 3. Chain position
        chain_checked = False
        if self.ledger is not None:
            chain_error = self._check_chain(manifest, manifest_sha256)
            if chain_error:
                return fail(VerificationReason.CHAIN_MISMATCH, chain_error, chain_checked=True)
            chain_checked = True

        return VerificationResult(
            valid=True,
            reason=VerificationReason.OK,
            detail="Bundle contents, signature and chain position verified"
            if chain_checked
            else "Bundle contents and signature verified",
            bundle_id=manifest.bundle_id,
            tenant_id=manifest.tenant_id,
            signing_key_id=manifest.signing_key_id,
            manifest_sha256=manifest_sha256,
            chain_checked=chain_checked,
        )

    def _check_chain(self, manifest: ExportManifest, manifest_sha256: str) -> Optional[str]:
        """Return a description of the chain break, or None if the link holds."""
        row = self.ledger.get(manifest.bundle_id)

        if row is None:
            # Orphaned archive: stored but never recorded. Its predecessor
            # must still be a bundle the tenant's ledger knows about.
            if manifest.prev_bundle_hash is None:
                return None
            if self.ledger.find_by_manifest_hash(manifest.tenant_id, manifest.prev_bundle_hash) is None:
                return (
                    f"Predecessor {manifest.prev_bundle_hash} is not recorded "
                    f"in the ledger for tenant {manifest.tenant_id}"
                )
            return None

        if row.tenant_id != manifest.tenant_id:
            return f"Ledger records bundle {manifest.bundle_id} under a different tenant"
        if row.manifest_sha256 != manifest_sha256:
            return f"Ledger records manifest hash {row.manifest_sha256} for bundle {manifest.bundle_id}"

        predecessor = self.ledger.predecessor_of(row)
        expected = predecessor.manifest_sha256 if predecessor else None
        if row.tenant_sequence > 1 and predecessor is None:
            return f"Ledger predecessor of bundle {manifest.bundle_id} is missing"
        if manifest.prev_bundle_hash != expected:
            return f"Manifest predecessor {manifest.prev_bundle_hash} does not match ledger predecessor {expected}"
        return None
