"""Hybrid Retriever - vector, lexical and graph signals fused by reciprocal rank.

Pure vector search loses relational structure; pure graph traversal misses
paraphrases. Each signal ranks candidates independently and the rankings are
merged with reciprocal rank fusion:

    score(edge) = sum over signals of 1 / (k + rank_in_signal)

Ties go to the most recently recorded edge. Only active edges are eligible;
superseded beliefs are reachable through ``FactStore.history`` alone.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Set

import numpy as np

from .constants import Defaults
from .models import Edge, to_micros
from .security import get_logger
from .store import FactStore
from .text import estimate_tokens, term_set, terms

logger = get_logger(__name__)

VECTOR = "vector"
LEXICAL = "lexical"
GRAPH = "graph"
SIGNALS = (VECTOR, LEXICAL, GRAPH)


class Embedder(Protocol):
    """External embedding service."""

    def embed(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:
        ...


@dataclass
class RankedEdge:
    """A fused retrieval hit."""
    edge: Edge
    score: float
    ranks: Dict[str, int] = field(default_factory=dict)

    @property
    def edge_id(self) -> str:
        return self.edge.edge_id


def _recency(edge: Edge) -> int:
    return to_micros(edge.transaction_time)


def fuse(rankings: Dict[str, List[str]], k: int = Defaults.RRF_K) -> Dict[str, Dict[str, float]]:
    """Reciprocal-rank scores per edge id, keeping each signal's 1-based rank.

    Returns {edge_id: {"score": float, <signal>: rank, ...}}.
    """
    fused: Dict[str, Dict[str, float]] = defaultdict(lambda: {"score": 0.0})
    for signal, edge_ids in rankings.items():
        for rank, edge_id in enumerate(edge_ids, start=1):
            fused[edge_id]["score"] += 1.0 / (k + rank)
            fused[edge_id][signal] = rank
    return dict(fused)


class HybridRetriever:
    """Ranks active edges for a free-text query."""

    def __init__(
        self,
        store: FactStore,
        embedder: Optional[Embedder] = None,
        rrf_k: int = Defaults.RRF_K,
        graph_depth: int = Defaults.GRAPH_DEPTH,
        candidates_per_signal: int = Defaults.CANDIDATES_PER_SIGNAL,
        default_limit: int = Defaults.RETRIEVE_LIMIT
    ):
        self.store = store
        self.embedder = embedder
        self.rrf_k = rrf_k
        self.graph_depth = graph_depth
        self.candidates_per_signal = candidates_per_signal
        self.default_limit = default_limit
        # Keyed by edge id; edge content never changes, so entries never go stale.
        # Holds only the edges of the latest candidate set.
        self._vectors: Dict[str, np.ndarray] = {}
        self._vectors_lock = threading.Lock()

    # -- signals ------------------------------------------------------------

    def _vectors_for(self, edges: List[Edge]) -> np.ndarray:
        cached = self._vectors
        known = {e.edge_id: cached[e.edge_id] for e in edges if e.edge_id in cached}
        missing = [e for e in edges if e.edge_id not in known]
        if missing:
            embedded = self.embedder.embed([e.content() for e in missing])
            for edge, vector in zip(missing, embedded):
                known[edge.edge_id] = np.asarray(vector, dtype=np.float32).ravel()
        if missing or len(known) != len(cached):
            # drops invalidated edges
            with self._vectors_lock:
                self._vectors = known
        return np.vstack([known[e.edge_id] for e in edges])

    @property
    def cached_vectors(self) -> int:
        return len(self._vectors)

    def vector_candidates(self, query: str, edges: List[Edge]) -> List[str]:
        """Edge ids by cosine similarity to the query embedding (positive only)."""
        if self.embedder is None or not edges or not query.strip():
            return []
        matrix = self._vectors_for(edges)
        q = np.asarray(self.embedder.embed([query])[0], dtype=np.float32).ravel()

        norms = np.clip(np.linalg.norm(matrix, axis=1), 1e-8, None)
        q_norm = max(float(np.linalg.norm(q)), 1e-8)
        similarities = (matrix @ q) / (norms * q_norm)

        scored = [
            (float(sim), _recency(edge), edge.edge_id)
            for edge, sim in zip(edges, similarities)
            if sim > 0
        ]
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [edge_id for _, _, edge_id in scored[:self.candidates_per_signal]]

    def lexical_candidates(self, query: str, edges: List[Edge]) -> List[str]:
        """Edge ids by number of query terms their content contains."""
        wanted = term_set(query)
        if not wanted:
            return []
        scored = []
        for edge in edges:
            overlap = len(wanted & term_set(edge.content()))
            if overlap:
                scored.append((overlap, _recency(edge), edge.edge_id))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [edge_id for _, _, edge_id in scored[:self.candidates_per_signal]]

    def anchor_entities(self, query: str) -> Set[str]:
        """Entities the query names, by full id or by the id's final segment."""
        lowered = query.lower()
        query_terms = set(terms(query))
        anchors = set()
        for entity_id in self.store.backend.entity_ids():
            name = entity_id.lower()
            local = set(terms(name.rsplit(":", 1)[-1]))
            if name in lowered or (local and local <= query_terms):
                anchors.add(entity_id)
        return anchors

    def graph_candidates(self, query: str, edges: List[Edge], depth: Optional[int] = None) -> List[str]:
        """Edge ids by hop distance from the query's anchor entities."""
        depth = self.graph_depth if depth is None else depth
        anchors = self.anchor_entities(query)
        if not anchors or depth < 1:
            return []

        touching: Dict[str, List[Edge]] = defaultdict(list)
        for edge in edges:
            for entity_id in edge.entities:
                touching[entity_id].append(edge)

        hops: Dict[str, int] = {}
        by_id = {e.edge_id: e for e in edges}
        seen_entities = set(anchors)
        frontier = deque((entity_id, 0) for entity_id in anchors)
        while frontier:
            entity_id, distance = frontier.popleft()
            if distance >= depth:
                continue
            for edge in touching.get(entity_id, ()):
                if edge.edge_id not in hops:
                    hops[edge.edge_id] = distance + 1
                for neighbour in edge.entities:
                    if neighbour not in seen_entities:
                        seen_entities.add(neighbour)
                        frontier.append((neighbour, distance + 1))

        ordered = sorted(hops, key=lambda edge_id: (hops[edge_id], -_recency(by_id[edge_id])))
        return ordered[:self.candidates_per_signal]

    # -- fusion -------------------------------------------------------------

    def retrieve_scored(
        self,
        query: str,
        limit: Optional[int] = None,
        depth: Optional[int] = None,
        cancel: Optional[threading.Event] = None
    ) -> List[RankedEdge]:
        """Fused ranking with per-signal ranks. Empty when nothing matches."""
        limit = self.default_limit if limit is None else limit
        start = time.monotonic()

        with self.store.tracer.trace('retrieval.retrieve'):
            edges = self.store.active_edges()
            by_id = {e.edge_id: e for e in edges}

            generators = (
                (VECTOR, lambda: self.vector_candidates(query, edges)),
                (LEXICAL, lambda: self.lexical_candidates(query, edges)),
                (GRAPH, lambda: self.graph_candidates(query, edges, depth)),
            )
            rankings: Dict[str, List[str]] = {}
            for signal, generate in generators:
                if cancel is not None and cancel.is_set():
                    logger.debug("Retrieval cancelled before %s signal", signal)
                    return []
                rankings[signal] = generate()

            fused = fuse(rankings, self.rrf_k)
            ranked = [
                RankedEdge(
                    edge=by_id[edge_id],
                    score=entry["score"],
                    ranks={s: int(entry[s]) for s in SIGNALS if s in entry},
                )
                for edge_id, entry in fused.items()
            ]
            ranked.sort(key=lambda hit: (hit.score, _recency(hit.edge)), reverse=True)
            ranked = ranked[:limit]

        self.store.metrics.record_retrieval(len(ranked), (time.monotonic() - start) * 1000)
        return ranked

    def retrieve(
        self,
        query: str,
        token_budget: Optional[int] = None,
        limit: Optional[int] = None,
        depth: Optional[int] = None,
        cancel: Optional[threading.Event] = None
    ) -> List[Edge]:
        """Ranked active edges for ``query``.

        With a ``token_budget`` the ranking is cut at the first edge whose
        content would push the running total over budget.
        """
        hits = self.retrieve_scored(query, limit=limit, depth=depth, cancel=cancel)
        if token_budget is None:
            return [hit.edge for hit in hits]

        results, spent = [], 0
        for hit in hits:
            cost = estimate_tokens(hit.edge.content())
            if spent + cost > token_budget:
                break
            results.append(hit.edge)
            spent += cost
        return results
