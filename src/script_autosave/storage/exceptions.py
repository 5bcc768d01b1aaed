"""Storage-specific exceptions."""


class StorageError(Exception):
    """Base exception for storage operations."""


class DatabaseError(StorageError):
    """Database connection or query failure."""


class MigrationError(StorageError):
    """Schema migration failure."""


class RevisionNotFoundError(StorageError):
    """Requested revision ID does not exist."""

    def __init__(self, revision_id: str) -> None:
        self.revision_id = revision_id
        super().__init__(f"Revision {revision_id} not found")
