"""Invalidation Engine - supersede an edge without erasing it."""

from typing import List

from .errors import AlreadyInvalidatedError
from .models import Edge, to_micros
from .security import get_logger
from .store import FactStore

logger = get_logger(__name__)


class InvalidationEngine:
    """Flips an active edge to invalidated and links it to its replacement.

    Concurrent invalidations of the same edge are serialized by the backend:
    the first writer wins and every later caller gets
    AlreadyInvalidatedError naming the winning edge. Callers re-read the
    current head and reconcile; nothing is silently overwritten.
    """

    def __init__(self, store: FactStore):
        self.store = store

    def invalidate(self, old_edge_id: str, new_edge: Edge) -> str:
        """Supersede ``old_edge_id`` with ``new_edge`` and return the new edge id.

        Raises:
            EdgeNotFoundError: ``old_edge_id`` does not exist
            AlreadyInvalidatedError: ``old_edge_id`` is no longer active
        """
        with self.store.tracer.trace('invalidation.invalidate', old_edge_id=old_edge_id):
            self.store.prepare_edge(new_edge)
            try:
                self.store.backend.swap_edge(old_edge_id, new_edge, to_micros(self.store.now()))
            except AlreadyInvalidatedError as e:
                self.store.metrics.record_invalidation(success=False)
                logger.warning(
                    "Invalidation race on %s: already superseded by %s",
                    old_edge_id, e.superseded_by,
                )
                raise
            self.store.metrics.record_invalidation(success=True)
            self.store.metrics.record_append(new_edge.kind)
            logger.info("Edge %s superseded by %s", old_edge_id, new_edge.edge_id)
            return new_edge.edge_id

    def current_head(self, edge_id: str) -> Edge:
        """Follow ``superseded_by`` links to the edge currently standing in for ``edge_id``."""
        edge = self.store.get(edge_id)
        seen = {edge.edge_id}
        while edge.superseded_by and edge.superseded_by not in seen:
            edge = self.store.get(edge.superseded_by)
            seen.add(edge.edge_id)
        return edge

    def supersession_chain(self, edge_id: str) -> List[Edge]:
        """Oldest ancestor first, current head last."""
        edge = self.store.get(edge_id)
        ancestors: List[Edge] = []
        seen = {edge.edge_id}
        cursor = edge
        while cursor.supersedes and cursor.supersedes not in seen:
            cursor = self.store.get(cursor.supersedes)
            seen.add(cursor.edge_id)
            ancestors.append(cursor)
        chain = list(reversed(ancestors)) + [edge]

        cursor = edge
        while cursor.superseded_by and cursor.superseded_by not in seen:
            cursor = self.store.get(cursor.superseded_by)
            seen.add(cursor.edge_id)
            chain.append(cursor)
        return chain
