class VectorSyncError(Exception):
    """Base error for all user-facing vectorsync exceptions."""


class ConfigurationError(VectorSyncError):
    """Raised when pool or provider configuration is invalid or incomplete."""


class ProjectNotInitializedError(VectorSyncError):
    """Raised when .vectorsync metadata is missing."""


class ValidationError(VectorSyncError):
    """Raised when caller input or model invariants fail."""


class ChunkDataError(ValidationError):
    """Raised when a converter returns malformed chunk entries."""


class RunNotFoundError(VectorSyncError):
    """Raised when a bulk embedding run cannot be found."""


class BatchNotFoundError(VectorSyncError):
    """Raised when a bulk embedding batch cannot be found."""


class RunConflictError(VectorSyncError):
    """Raised when an operation collides with an in-flight run."""


class PersistenceError(VectorSyncError):
    """Raised when embeddings cannot be written to or removed from vector storage."""
