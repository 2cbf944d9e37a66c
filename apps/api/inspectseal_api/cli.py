"""CLI commands for InspectSeal."""

import click

from inspectseal_api.db.session import SessionLocal
from inspectseal_api.ledger.service import SealedExportLedger
from inspectseal_api.sealing.errors import SigningKeyError
from inspectseal_api.sealing.signer import get_key_ring
from inspectseal_api.sealing.verifier import BundleVerifier


@click.group()
def cli():
    """InspectSeal CLI."""
    pass


@cli.command("verify-bundle")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def verify_bundle(path):
    """Verify a sealed bundle zip offline (contents and signature)."""
    try:
        key_ring = get_key_ring()
    except SigningKeyError as e:
        click.echo(f"✗ Signing keys not configured: {e}", err=True)
        raise SystemExit(2)

    with open(path, "rb") as f:
        archive_bytes = f.read()

    result = BundleVerifier(key_ring).verify(archive_bytes)
    if result.valid:
        click.echo(f"✓ Bundle {result.bundle_id} is valid (key {result.signing_key_id}).")
        return
    click.echo(f"✗ Bundle is not valid [{result.reason.value}]: {result.detail}", err=True)
    raise SystemExit(1)


@cli.command("verify-chain")
@click.argument("tenant_id")
def verify_chain(tenant_id):
    """Verify a tenant's chain of custody in the ledger."""
    db = SessionLocal()
    try:
        is_valid, error = SealedExportLedger(db).verify_chain(tenant_id)
    finally:
        db.close()

    if is_valid:
        click.echo(f"✓ Chain for tenant {tenant_id} is intact.")
        return
    click.echo(f"✗ Chain for tenant {tenant_id} is broken: {error}", err=True)
    raise SystemExit(1)


if __name__ == "__main__":
    cli()
