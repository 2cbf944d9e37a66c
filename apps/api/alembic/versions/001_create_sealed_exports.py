"""Create sealed_exports ledger and tenant_chain_heads.

Revision ID: 001
Revises:
Create Date: 2026-02-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'sealed_exports',
        sa.Column('bundle_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('tenant_sequence', sa.BigInteger(), nullable=False),
        sa.Column('export_type', sa.String(length=50), nullable=False),
        sa.Column('source_id', sa.String(length=64), nullable=True),
        sa.Column('file_count', sa.Integer(), nullable=False),
        sa.Column('total_bytes', sa.BigInteger(), nullable=False),
        sa.Column('storage_key', sa.String(length=512), nullable=False),
        sa.Column('manifest_sha256', sa.String(length=64), nullable=False),
        sa.Column('manifest_sig', sa.String(length=128), nullable=False),
        sa.Column('signing_key_id', sa.String(length=128), nullable=False),
        sa.Column('prev_bundle_hash', sa.String(length=64), nullable=True),
        sa.Column('generated_by', sa.String(length=64), nullable=False),
        sa.Column('generated_by_name', sa.String(length=255), nullable=True),
        sa.Column('generated_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('bundle_id'),
        sa.UniqueConstraint('tenant_id', 'tenant_sequence', name='uq_sealed_exports_tenant_sequence'),
        sa.UniqueConstraint('tenant_id', 'prev_bundle_hash', name='uq_sealed_exports_tenant_prev_hash'),
    )
    op.create_index('ix_sealed_exports_tenant_id', 'sealed_exports', ['tenant_id'])
    op.create_index('ix_sealed_exports_export_type', 'sealed_exports', ['export_type'])
    op.create_index('ix_sealed_exports_manifest_sha256', 'sealed_exports', ['manifest_sha256'], unique=True)
    op.create_index('ix_sealed_exports_created_at', 'sealed_exports', ['created_at'])

    # Ledger rows are append-only
    op.execute("""
        CREATE OR REPLACE FUNCTION sealed_exports_append_only() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'sealed_exports is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER sealed_exports_no_update_delete
        BEFORE UPDATE OR DELETE ON sealed_exports
        FOR EACH ROW EXECUTE FUNCTION sealed_exports_append_only();
    """)

    op.create_table(
        'tenant_chain_heads',
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('last_sequence', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_bundle_id', sa.String(length=36), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('tenant_id'),
    )


def downgrade() -> None:
    op.drop_table('tenant_chain_heads')
    op.execute("DROP TRIGGER IF EXISTS sealed_exports_no_update_delete ON sealed_exports")
    op.execute("DROP FUNCTION IF EXISTS sealed_exports_append_only()")
    op.drop_index('ix_sealed_exports_created_at', table_name='sealed_exports')
    op.drop_index('ix_sealed_exports_manifest_sha256', table_name='sealed_exports')
    op.drop_index('ix_sealed_exports_export_type', table_name='sealed_exports')
    op.drop_index('ix_sealed_exports_tenant_id', table_name='sealed_exports')
    op.drop_table('sealed_exports')
