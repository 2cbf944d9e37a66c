"""Sealed export ledger with per-tenant hash chaining."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from inspectseal_api.models import SealedExport, TenantChainHead

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class SealedExportLedger:
    """Append-only chain of custody for sealed bundles.

    Rows are only ever inserted. There is no update or delete path here;
    removing a sealed bundle is an out-of-band administrative action.
    """

    def __init__(self, db: Session):
        """Initialize ledger."""
        self.db = db

    def lock_chain_head(self, tenant_id: str) -> TenantChainHead:
        """Lock (creating if needed) the tenant's chain head row.

        The lock is held until the caller commits or rolls back, which
        serializes sealing per tenant on databases with row locks.
        """
        head = (
            self.db.query(TenantChainHead)
            .filter(TenantChainHead.tenant_id == tenant_id)
            .with_for_update()
            .first()
        )
        if head is None:
            head = TenantChainHead(tenant_id=tenant_id, last_sequence=0)
            self.db.add(head)
            self.db.flush()
        return head

    def latest_for_tenant(self, tenant_id: str) -> Optional[SealedExport]:
        """Most recent ledger row for a tenant, or None before the first seal."""
        return (
            self.db.query(SealedExport)
            .filter(SealedExport.tenant_id == tenant_id)
            .order_by(SealedExport.tenant_sequence.desc(), SealedExport.created_at.desc())
            .first()
        )

    def append(self, row: SealedExport, head: TenantChainHead) -> SealedExport:
        """Insert a ledger row and advance the chain head."""
        self.db.add(row)
        head.last_sequence = row.tenant_sequence
        head.last_bundle_id = row.bundle_id
        head.updated_at = datetime.utcnow()
        self.db.flush()
        return row

    def get(self, bundle_id: str) -> Optional[SealedExport]:
        return self.db.query(SealedExport).filter(SealedExport.bundle_id == bundle_id).first()

    def predecessor_of(self, row: SealedExport) -> Optional[SealedExport]:
        """Ledger row immediately before ``row`` in its tenant chain."""
        if row.tenant_sequence <= 1:
            return None
        return (
            self.db.query(SealedExport)
            .filter(
                SealedExport.tenant_id == row.tenant_id,
                SealedExport.tenant_sequence == row.tenant_sequence - 1,
            )
            .first()
        )

    def find_by_manifest_hash(self, tenant_id: str, manifest_sha256: str) -> Optional[SealedExport]:
        return (
            self.db.query(SealedExport)
            .filter(
                SealedExport.tenant_id == tenant_id,
                SealedExport.manifest_sha256 == manifest_sha256,
            )
            .first()
        )

    def list_for_tenant(
        self,
        tenant_id: str,
        export_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SealedExport]:
        """List a tenant's sealed exports, newest first."""
        query = self.db.query(SealedExport).filter(SealedExport.tenant_id == tenant_id)
        if export_type:
            query = query.filter(SealedExport.export_type == export_type)
        return (
            query.order_by(SealedExport.tenant_sequence.desc(), SealedExport.created_at.desc())
            .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            .offset(max(0, offset))
            .all()
        )

    def verify_chain(self, tenant_id: str) -> tuple[bool, Optional[str]]:
        """Verify hash chain integrity for tenant.

        Returns (is_valid, error). The error names the first bundle where
        the chain breaks, forks or skips a position.
        """
        rows = (
            self.db.query(SealedExport)
            .filter(SealedExport.tenant_id == tenant_id)
            .order_by(SealedExport.tenant_sequence.asc(), SealedExport.created_at.asc())
            .all()
        )

        previous_hash = None
        expected_sequence = 1
        for row in rows:
            if row.tenant_sequence != expected_sequence:
                return False, (
                    f"Bundle {row.bundle_id} has sequence {row.tenant_sequence}, "
                    f"expected {expected_sequence}"
                )
            if row.prev_bundle_hash != previous_hash:
                return False, (
                    f"Bundle {row.bundle_id} references predecessor {row.prev_bundle_hash}, "
                    f"expected {previous_hash}"
                )
            previous_hash = row.manifest_sha256
            expected_sequence += 1

        return True, None
