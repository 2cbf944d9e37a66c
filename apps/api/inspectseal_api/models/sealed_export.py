"""Sealed export ledger models."""

from datetime import datetime

from sqlalchemy import BigInteger, Column, DateTime, Integer, String, UniqueConstraint, event

from inspectseal_api.db.base import Base
from inspectseal_api.sealing.errors import AppendOnlyViolation


class SealedExport(Base):
    """Append-only chain-of-custody entry, one per sealed bundle."""

    __tablename__ = "sealed_exports"
    __table_args__ = (
        UniqueConstraint("tenant_id", "tenant_sequence", name="uq_sealed_exports_tenant_sequence"),
        UniqueConstraint("tenant_id", "prev_bundle_hash", name="uq_sealed_exports_tenant_prev_hash"),
    )

    bundle_id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    tenant_sequence = Column(BigInteger, nullable=False)  # 1-based position in the tenant chain
    export_type = Column(String(50), nullable=False, index=True)  # pdf_report, defect_export, claims_pack
    source_id = Column(String(64), nullable=True)
    file_count = Column(Integer, nullable=False)
    total_bytes = Column(BigInteger, nullable=False)
    storage_key = Column(String(512), nullable=False)
    manifest_sha256 = Column(String(64), nullable=False, unique=True, index=True)
    manifest_sig = Column(String(128), nullable=False)
    signing_key_id = Column(String(128), nullable=False)
    prev_bundle_hash = Column(String(64), nullable=True)  # NULL for the tenant's first bundle
    generated_by = Column(String(64), nullable=False)
    generated_by_name = Column(String(255), nullable=True)
    generated_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        """Serialize for API responses."""
        return {
            "bundle_id": self.bundle_id,
            "tenant_id": self.tenant_id,
            "tenant_sequence": self.tenant_sequence,
            "export_type": self.export_type,
            "source_id": self.source_id,
            "file_count": self.file_count,
            "total_bytes": self.total_bytes,
            "storage_key": self.storage_key,
            "manifest_sha256": self.manifest_sha256,
            "manifest_sig": self.manifest_sig,
            "signing_key_id": self.signing_key_id,
            "prev_bundle_hash": self.prev_bundle_hash,
            "generated_by": self.generated_by,
            "generated_by_name": self.generated_by_name,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class TenantChainHead(Base):
    """Per-tenant serialization point for sealing."""

    __tablename__ = "tenant_chain_heads"

    tenant_id = Column(String(64), primary_key=True)
    last_sequence = Column(BigInteger, nullable=False, default=0)
    last_bundle_id = Column(String(36), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


@event.listens_for(SealedExport, "before_update")
def _refuse_update(mapper, connection, target):
    raise AppendOnlyViolation(f"sealed export {target.bundle_id} is append-only and cannot be updated")


@event.listens_for(SealedExport, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"sealed export {target.bundle_id} is append-only and cannot be deleted")
