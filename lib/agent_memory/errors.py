"""Exception taxonomy for the agent memory engine.

Curation rejections are not exceptions; see ``models.RejectionReason``.
"""

from typing import Optional


class MemoryEngineError(Exception):
    """Base exception for memory engine operations."""
    pass


class ConflictError(MemoryEngineError):
    """A pinned transaction time collides with an existing edge id.

    Fatal to the specific append. Retry with a fresh timestamp.
    """

    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge {edge_id} already exists for this transaction time")


class AlreadyInvalidatedError(MemoryEngineError):
    """The edge was already superseded. Re-read the current head and reconcile."""

    def __init__(self, edge_id: str, superseded_by: Optional[str] = None):
        self.edge_id = edge_id
        self.superseded_by = superseded_by
        super().__init__(
            f"Edge {edge_id} is already invalidated"
            + (f" (superseded by {superseded_by})" if superseded_by else "")
        )


class EdgeNotFoundError(MemoryEngineError, KeyError):
    """No edge exists with the requested id."""

    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge not found: {edge_id}")

    def __str__(self) -> str:
        return self.args[0]


class EntityNotFoundError(MemoryEngineError, KeyError):
    """No entity exists with the requested id."""

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"Entity not found: {entity_id}")

    def __str__(self) -> str:
        return self.args[0]


class StorageError(MemoryEngineError):
    """The storage backend failed or returned corrupt data."""
    pass


class StaleReadError(MemoryEngineError):
    """An entity gained edges between a caller's read and its guarded append.

    Nothing was written. Re-read the entity and decide again.
    """

    def __init__(self, entity_id: str, expected: int, actual: int):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Entity {entity_id} has {actual} edge(s), expected {expected}"
        )
