"""Error taxonomy for sealing and verification."""

from typing import Optional


class SealingError(Exception):
    """Base class for all sealing failures."""


class SealingInputError(SealingError, ValueError):
    """Rejected input: empty file set, unknown export type, bad paths."""


class SigningKeyError(SealingError):
    """The signing key could not be resolved; sealing cannot proceed."""


class StorageUploadError(SealingError):
    """Archive upload failed after all retries. Nothing was persisted."""

    def __init__(self, message: str, storage_key: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.storage_key = storage_key
        self.attempts = attempts


class LedgerPersistenceError(SealingError):
    """Ledger insert failed after the archive was stored.

    The archive at ``storage_key`` is orphaned but self-verifying.
    """

    def __init__(self, message: str, bundle_id: str, storage_key: str):
        super().__init__(message)
        self.bundle_id = bundle_id
        self.storage_key = storage_key


class ChainConflictError(SealingError):
    """Concurrent seals kept claiming the same predecessor."""

    def __init__(self, message: str, orphaned_storage_keys: Optional[list[str]] = None):
        super().__init__(message)
        self.orphaned_storage_keys = list(orphaned_storage_keys or [])


class ManifestFormatError(SealingError, ValueError):
    """A manifest could not be parsed into an ExportManifest."""


class ArchiveFormatError(SealingError, ValueError):
    """An archive is not a readable sealed bundle."""


class AppendOnlyViolation(SealingError):
    """Attempt to update or delete a ledger row."""
