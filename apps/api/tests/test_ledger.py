"""Tests for the sealed export ledger."""

import uuid
from datetime import datetime

import pytest
from sqlalchemy.orm import Session

from inspectseal_api.ledger.service import SealedExportLedger
from inspectseal_api.models import SealedExport, TenantChainHead
from inspectseal_api.sealing.errors import AppendOnlyViolation


def _row(tenant_id: str, sequence: int, manifest_sha256: str, prev: str = None) -> SealedExport:
    bundle_id = str(uuid.uuid4())
    return SealedExport(
        bundle_id=bundle_id,
        tenant_id=tenant_id,
        tenant_sequence=sequence,
        export_type="pdf_report",
        source_id=None,
        file_count=1,
        total_bytes=100,
        storage_key=f"sealed-exports/{tenant_id}/{bundle_id}.zip",
        manifest_sha256=manifest_sha256,
        manifest_sig="c2ln",
        signing_key_id="k1",
        prev_bundle_hash=prev,
        generated_by="u1",
        generated_by_name="Sam",
        generated_at=datetime(2026, 3, 1, 9, 0, 0),
    )


def _append_chain(db: Session, tenant_id: str, hashes: list) -> list:
    ledger = SealedExportLedger(db)
    rows = []
    prev = None
    for sequence, digest in enumerate(hashes, start=1):
        head = ledger.lock_chain_head(tenant_id)
        rows.append(ledger.append(_row(tenant_id, sequence, digest, prev), head))
        db.commit()
        prev = digest
    return rows


def test_chain_head_created_on_first_lock(db: Session):
    ledger = SealedExportLedger(db)
    head = ledger.lock_chain_head("tenant-a")
    assert head.last_sequence == 0
    db.commit()
    assert db.query(TenantChainHead).count() == 1
    assert ledger.lock_chain_head("tenant-a") is head


def test_append_advances_head(db: Session):
    rows = _append_chain(db, "tenant-a", ["a" * 64, "b" * 64])
    head = db.query(TenantChainHead).filter_by(tenant_id="tenant-a").one()
    assert head.last_sequence == 2
    assert head.last_bundle_id == rows[-1].bundle_id


def test_latest_for_tenant(db: Session):
    ledger = SealedExportLedger(db)
    assert ledger.latest_for_tenant("tenant-a") is None
    rows = _append_chain(db, "tenant-a", ["a" * 64, "b" * 64, "c" * 64])
    _append_chain(db, "tenant-b", ["d" * 64])
    assert ledger.latest_for_tenant("tenant-a").bundle_id == rows[-1].bundle_id


def test_predecessor_and_hash_lookup(db: Session):
    ledger = SealedExportLedger(db)
    first, second = _append_chain(db, "tenant-a", ["a" * 64, "b" * 64])
    assert ledger.predecessor_of(first) is None
    assert ledger.predecessor_of(second).bundle_id == first.bundle_id
    assert ledger.find_by_manifest_hash("tenant-a", "a" * 64).bundle_id == first.bundle_id
    assert ledger.find_by_manifest_hash("tenant-b", "a" * 64) is None


def test_list_for_tenant_is_scoped_and_paginated(db: Session):
    ledger = SealedExportLedger(db)
    _append_chain(db, "tenant-a", [c * 64 for c in "abcde"])
    _append_chain(db, "tenant-b", ["f" * 64])

    page = ledger.list_for_tenant("tenant-a", limit=2)
    assert [r.tenant_sequence for r in page] == [5, 4]
    page = ledger.list_for_tenant("tenant-a", limit=2, offset=4)
    assert [r.tenant_sequence for r in page] == [1]
    assert all(r.tenant_id == "tenant-a" for r in ledger.list_for_tenant("tenant-a"))
    assert ledger.list_for_tenant("tenant-a", export_type="claims_pack") == []


def test_verify_chain_valid(db: Session):
    _append_chain(db, "tenant-a", ["a" * 64, "b" * 64, "c" * 64])
    is_valid, error = SealedExportLedger(db).verify_chain("tenant-a")
    assert is_valid, f"Chain should be valid: {error}"


def test_verify_chain_empty_tenant(db: Session):
    assert SealedExportLedger(db).verify_chain("nobody") == (True, None)


def test_verify_chain_detects_broken_link(db: Session):
    ledger = SealedExportLedger(db)
    _append_chain(db, "tenant-a", ["a" * 64])
    head = ledger.lock_chain_head("tenant-a")
    ledger.append(_row("tenant-a", 2, "b" * 64, prev="f" * 64), head)
    db.commit()

    is_valid, error = ledger.verify_chain("tenant-a")
    assert not is_valid
    assert "predecessor" in error


def test_verify_chain_detects_gap(db: Session):
    ledger = SealedExportLedger(db)
    _append_chain(db, "tenant-a", ["a" * 64])
    head = ledger.lock_chain_head("tenant-a")
    ledger.append(_row("tenant-a", 3, "b" * 64, prev="a" * 64), head)
    db.commit()

    is_valid, error = ledger.verify_chain("tenant-a")
    assert not is_valid
    assert "expected 2" in error


def test_rows_are_append_only(db: Session):
    (row,) = _append_chain(db, "tenant-a", ["a" * 64])

    row.manifest_sha256 = "b" * 64
    with pytest.raises(AppendOnlyViolation):
        db.commit()
    db.rollback()

    db.delete(row)
    with pytest.raises(AppendOnlyViolation):
        db.commit()
    db.rollback()

    assert db.query(SealedExport).count() == 1
