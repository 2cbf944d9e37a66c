"""Public bundle verification endpoint.

Anyone holding a bundle's verify URL can check it; no tenant header is
required. Responses are never cached.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from inspectseal_api.db.session import get_db
from inspectseal_api.ledger.service import SealedExportLedger
from inspectseal_api.routes.sealed_exports import get_storage
from inspectseal_api.sealing.errors import SigningKeyError
from inspectseal_api.sealing.signer import get_key_ring
from inspectseal_api.sealing.verifier import BundleVerifier, VerificationReason, VerificationResult
from inspectseal_api.storage.service import StorageError, StorageService
from inspectseal_api.utils.metrics import verifications

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["verify"])


@router.get("/verify/{bundle_id}")
def verify_bundle(
    bundle_id: str,
    response: Response,
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage),
):
    """Verify a stored bundle against its signature and the tenant chain."""
    response.headers["Cache-Control"] = "no-store"

    try:
        bundle_id = str(uuid.UUID(bundle_id))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Bundle id must be a UUID",
            headers={"Cache-Control": "no-store"},
        )

    ledger = SealedExportLedger(db)
    row = ledger.get(bundle_id)
    if not row:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Bundle {bundle_id} not found",
            headers={"Cache-Control": "no-store"},
        )

    try:
        key_ring = get_key_ring()
    except SigningKeyError:
        logger.error("Verification requested but the key ring is not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Verification keys are not configured",
            headers={"Cache-Control": "no-store"},
        )

    try:
        archive_bytes = storage.get_object(row.storage_key)
    except FileNotFoundError:
        logger.error(
            f"Archive for bundle {bundle_id} is missing from storage",
            extra={"bundle_id": bundle_id, "tenant_id": row.tenant_id, "storage_key": row.storage_key},
        )
        verifications.labels(reason=VerificationReason.ARCHIVE_MISSING.value).inc()
        result = VerificationResult(
            valid=False,
            reason=VerificationReason.ARCHIVE_MISSING,
            detail="The archive for this bundle is no longer in storage",
            bundle_id=bundle_id,
            tenant_id=row.tenant_id,
            signing_key_id=row.signing_key_id,
            manifest_sha256=row.manifest_sha256,
        )
        return _response(row, result)
    except StorageError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Object storage unavailable",
            headers={"Cache-Control": "no-store"},
        )

    result = BundleVerifier(key_ring, ledger).verify(archive_bytes, expected_bundle_id=bundle_id)
    return _response(row, result)


def _response(row, result: VerificationResult) -> dict:
    return {
        **result.to_dict(),
        "bundle": {
            "bundle_id": row.bundle_id,
            "export_type": row.export_type,
            "source_id": row.source_id,
            "file_count": row.file_count,
            "generated_by_name": row.generated_by_name,
            "generated_at": row.generated_at.isoformat() if row.generated_at else None,
            "signing_key_id": row.signing_key_id,
            "manifest_sha256": row.manifest_sha256,
        },
    }
