"""Database models - import all models here for Alembic discovery."""

from inspectseal_api.models.sealed_export import SealedExport, TenantChainHead

__all__ = [
    "SealedExport",
    "TenantChainHead",
]
