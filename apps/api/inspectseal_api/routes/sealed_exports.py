"""Sealed export routes."""

import base64
import binascii
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from inspectseal_api.db.session import get_db
from inspectseal_api.ledger.service import MAX_PAGE_SIZE, SealedExportLedger
from inspectseal_api.sealing.archive import BundleFile
from inspectseal_api.sealing.errors import (
    ChainConflictError,
    LedgerPersistenceError,
    SealingInputError,
    SigningKeyError,
    StorageUploadError,
)
from inspectseal_api.sealing.manifest import GeneratedBy, build_verify_url
from inspectseal_api.sealing.service import SealingService
from inspectseal_api.settings import get_settings
from inspectseal_api.storage.service import (
    StorageError,
    StorageService,
    get_storage_service,
    is_valid_tenant_id,
)

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/v1", tags=["sealed-exports"])


class SealedExportFile(BaseModel):
    """A file to include in the bundle."""

    path: str
    content_base64: str
    content_type: str = "application/octet-stream"


class GeneratedByRequest(BaseModel):
    """User the export is attributed to."""

    user_id: str
    display_name: str = ""


class SealedExportRequest(BaseModel):
    """Sealed export request."""

    export_type: str
    source_id: Optional[str] = None
    generated_by: GeneratedByRequest
    files: list[SealedExportFile]


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    """Tenant scope for the request, from the X-Tenant-Id header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header is required",
        )
    if not is_valid_tenant_id(x_tenant_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header is invalid",
        )
    return x_tenant_id


def get_storage() -> StorageService:
    return get_storage_service()


def _serialize(row) -> dict:
    data = row.to_dict()
    data["verify_url"] = build_verify_url(settings.verify_base_url, row.bundle_id)
    return data


@router.post("/sealed-exports", status_code=status.HTTP_201_CREATED)
def create_sealed_export(
    request_data: SealedExportRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage),
):
    """Seal a set of export files into a signed, chained bundle."""
    files = []
    for item in request_data.files:
        try:
            data = base64.b64decode(item.content_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File {item.path} content is not valid base64",
            )
        files.append(BundleFile(path=item.path, data=data, content_type=item.content_type))

    service = SealingService(db, storage=storage)
    try:
        row = service.seal(
            tenant_id=tenant_id,
            export_type=request_data.export_type,
            source_id=request_data.source_id,
            generated_by=GeneratedBy(
                user_id=request_data.generated_by.user_id,
                display_name=request_data.generated_by.display_name,
            ),
            files=files,
        )
    except SealingInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageUploadError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Object storage unavailable after {e.attempts} attempts",
        )
    except ChainConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent exports for this tenant; please retry",
        )
    except SigningKeyError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Signing key is not configured",
        )
    except LedgerPersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to record sealed bundle {e.bundle_id}",
        )

    return _serialize(row)


@router.get("/sealed-exports")
def list_sealed_exports(
    export_type: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """List sealed exports for the tenant, newest first."""
    rows = SealedExportLedger(db).list_for_tenant(
        tenant_id, export_type=export_type, limit=limit, offset=offset
    )
    return {
        "items": [_serialize(row) for row in rows],
        "limit": limit,
        "offset": offset,
    }


@router.get("/sealed-exports/chain/verify")
def verify_tenant_chain(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Verify the tenant's chain of custody."""
    is_valid, error = SealedExportLedger(db).verify_chain(tenant_id)
    if not is_valid:
        logger.warning(f"Chain verification failed for tenant {tenant_id}: {error}")
    return {"tenant_id": tenant_id, "valid": is_valid, "error": error}


@router.get("/sealed-exports/{bundle_id}/download")
def download_sealed_export(
    bundle_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage),
):
    """Download a sealed bundle archive."""
    row = SealedExportLedger(db).get(bundle_id)
    if not row or row.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sealed export {bundle_id} not found",
        )

    try:
        archive_bytes = storage.get_object(row.storage_key)
    except FileNotFoundError:
        logger.error(
            f"Archive for sealed export {bundle_id} is missing from storage",
            extra={"bundle_id": bundle_id, "tenant_id": tenant_id, "storage_key": row.storage_key},
        )
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Archive for sealed export {bundle_id} not found",
        )
    except StorageError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Object storage unavailable",
        )

    return Response(
        content=archive_bytes,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{row.export_type}-{bundle_id}.zip"',
            "X-Bundle-Id": bundle_id,
            "X-Manifest-SHA256": row.manifest_sha256,
        },
    )
