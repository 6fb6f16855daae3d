"""Fact Store - append-only, bi-temporal storage of entities and edges.

There is no update and no delete. The only state change an edge ever sees is
the status flip performed by the Invalidation Engine, which is what keeps
``query_as_of`` truthful along both time axes:

    valid time        when the asserted thing was true in the world
    transaction time  when this store recorded it (set once, monotonic)
"""

import json
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Iterator, List, Optional, Set

from .backends import StorageBackend
from .errors import ConflictError, EdgeNotFoundError, EntityNotFoundError, StaleReadError
from .models import (
    Edge,
    EdgeKind,
    EdgeStatus,
    Entity,
    ensure_utc,
    to_micros,
    utcnow,
)
from .security import get_logger
from .telemetry import MemoryMetrics, get_metrics
from .tracing import Tracer, get_tracer

logger = get_logger(__name__)


class FactStore:
    """Append-only edge log plus the entity table."""

    def __init__(
        self,
        backend: StorageBackend,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MemoryMetrics] = None,
        tracer: Optional[Tracer] = None
    ):
        self.backend = backend
        self.clock = clock
        self.metrics = metrics or get_metrics()
        self.tracer = tracer or get_tracer()

    def now(self) -> datetime:
        return ensure_utc(self.clock())

    # -- entities -----------------------------------------------------------

    def ensure_entity(self, entity_id: str, entity_type: str = "unknown", summary: str = "") -> Entity:
        """Create the entity on first reference; return the stored record."""
        created = self.backend.put_entity(Entity(
            entity_id=entity_id,
            entity_type=entity_type,
            summary=summary,
            created_at=self.now(),
        ))
        if created:
            logger.debug("Created entity %s (%s)", entity_id, entity_type)
        return self.backend.load_entity(entity_id)

    def entity(self, entity_id: str) -> Entity:
        entity = self.backend.load_entity(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity

    def has_entity(self, entity_id: str) -> bool:
        return self.backend.load_entity(entity_id) is not None

    def entities(self) -> List[Entity]:
        return [self.entity(entity_id) for entity_id in sorted(self.backend.entity_ids())]

    def amend_summary(self, entity_id: str, summary: str, source_edge: Optional[str] = None) -> Entity:
        """Replace the current summary; the previous one stays in ``entity_summaries``."""
        entity = self.entity(entity_id)
        entity.summary = summary
        record = json.dumps({
            "summary": summary,
            "recorded_at": self.now().isoformat(),
            "source_edge": source_edge,
        }, sort_keys=True)
        self.backend.push_summary(entity, record)
        return entity

    def entity_summaries(self, entity_id: str) -> List[dict]:
        """Every summary the entity has carried, oldest first."""
        self.entity(entity_id)
        return [json.loads(record) for record in self.backend.load_summaries(entity_id)]

    # -- edges --------------------------------------------------------------

    def append(self, edge: Edge, transaction_time: Optional[datetime] = None,
               entity_type: Optional[str] = None, expect_subject_edges: Optional[int] = None) -> str:
        """Record a new edge and return its id.

        The store assigns the transaction time. Pinning one (replays,
        imports) raises ConflictError when an edge already holds it; content
        never conflicts.

        With ``expect_subject_edges`` set, the append only happens if the
        subject still has that many edges (see ``subject_edge_count``), and
        raises StaleReadError otherwise.
        """
        with self.tracer.trace('store.append', kind=edge.kind):
            self.prepare_edge(edge, entity_type)
            pinned = to_micros(transaction_time) if transaction_time is not None else None
            guard = (edge.subject, expect_subject_edges) if expect_subject_edges is not None else None
            try:
                self.backend.insert_edge(edge, to_micros(self.now()), pinned, guard=guard)
            except (ConflictError, StaleReadError):
                self.metrics.record_append_conflict()
                raise
            self.metrics.record_append(edge.kind)
            logger.debug("Appended %s %s: %s", edge.kind, edge.edge_id, edge.one_line())
            return edge.edge_id

    def prepare_edge(self, edge: Edge, entity_type: Optional[str] = None) -> None:
        """Default valid time and create referenced entities."""
        if edge.valid_time is None:
            edge.valid_time = self.now()
        else:
            edge.valid_time = ensure_utc(edge.valid_time)
        self.ensure_entity(edge.subject, entity_type or "unknown")
        if edge.target:
            self.ensure_entity(edge.target)

    def get(self, edge_id: str) -> Edge:
        edge = self.backend.load_edge(edge_id)
        if edge is None:
            raise EdgeNotFoundError(edge_id)
        return edge

    def exists(self, edge_id: str) -> bool:
        return self.backend.load_edge(edge_id) is not None

    def all_edges(self, max_transaction_time: Optional[datetime] = None) -> List[Edge]:
        """Every recorded edge in transaction-time order, invalidated ones included."""
        max_micros = to_micros(max_transaction_time) if max_transaction_time else None
        return self.backend.load_edges(self.backend.edge_ids(max_micros))

    def active_edges(self, kinds: Optional[Iterable[str]] = None) -> List[Edge]:
        """Edges currently believed. Retirement tombstones are never included."""
        wanted: Optional[Set[str]] = set(kinds) if kinds else None
        edges = []
        for edge in self.all_edges():
            if not edge.is_active or edge.kind == EdgeKind.RETIRED.value:
                continue
            if wanted is not None and edge.kind not in wanted:
                continue
            edges.append(edge)
        return edges

    def subject_edge_count(self, subject: str) -> int:
        """Number of edges ever recorded about ``subject``; grows with every write."""
        return self.backend.entity_edge_count(subject)

    def active_for_subject(self, subject: str, kinds: Optional[Iterable[str]] = None) -> List[Edge]:
        wanted = set(kinds) if kinds else None
        return [
            edge for edge in self.backend.load_edges(self.backend.entity_edge_ids(subject))
            if edge.subject == subject
            and edge.is_active
            and edge.kind != EdgeKind.RETIRED.value
            and (wanted is None or edge.kind in wanted)
        ]

    def query_as_of(
        self,
        valid_time: Optional[datetime] = None,
        transaction_time: Optional[datetime] = None
    ) -> Set[Edge]:
        """Belief state at (valid_time, transaction_time).

        An edge belongs to the state when it was recorded by
        ``transaction_time``, became valid by ``valid_time``, and no edge
        recorded by ``transaction_time`` and valid by ``valid_time``
        superseded it. Omitting ``valid_time`` accepts any valid time;
        omitting ``transaction_time`` means "as currently recorded".
        """
        tx_bound = ensure_utc(transaction_time) if transaction_time is not None else None
        valid_bound = ensure_utc(valid_time) if valid_time is not None else None

        known = {edge.edge_id: edge for edge in self.all_edges(tx_bound)}
        beliefs: Set[Edge] = set()
        for edge in known.values():
            if edge.kind == EdgeKind.RETIRED.value:
                continue
            if valid_bound is not None and edge.valid_time > valid_bound:
                continue
            if edge.superseded_by:
                successor = known.get(edge.superseded_by)
                if successor is not None and (valid_bound is None or successor.valid_time <= valid_bound):
                    continue
                # superseded after the transaction bound, or by an edge not yet valid
                edge = replace(edge, status=EdgeStatus.ACTIVE.value, superseded_by=None)
            beliefs.add(edge)
        return beliefs

    def history(self, entity_id: str, start: int = 0) -> Iterator[Edge]:
        """Every edge touching the entity, oldest first, invalidated ones included.

        Restart from any position by passing the number of edges already seen
        as ``start``.
        """
        for edge_id in self.backend.entity_edge_ids(entity_id, start):
            edge = self.backend.load_edge(edge_id)
            if edge is not None:
                yield edge
