"""Exception types raised by the simulation core."""


class PersonsError(Exception):
    """Base class for simulation core errors."""


class TickConflictError(PersonsError):
    """A concurrent writer invalidated the current cell tick.

    Raised when a version check fails, the cell lock was taken over by another
    worker, or two workers raced to insert the same lock. The whole tick is
    discarded and may be retried from the locking phase.
    """


class RetryableOperationError(PersonsError):
    """The single failure kind callers see: the operation should be retried."""

    def __init__(self, message: str = "operation could not complete, retry"):
        super().__init__(message)


class TerrainGenerationError(PersonsError):
    """Terrain tile data could not be generated; the tile stays unmarked."""
