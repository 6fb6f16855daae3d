"""Memory Engine - one object wiring every component over a shared backend."""

import threading
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Set

from .backends import InMemoryBackend, RedisBackend, StorageBackend
from .config import MemoryConfig
from .curation import CurationGate
from .disclosure import CompactResult, ContextWindow, FullEdge, ProgressiveDisclosure
from .invalidation import InvalidationEngine
from .inverter import AntiPatternInverter
from .models import Admission, Edge, FeedbackEvent, ProposedFact, utcnow
from .redis_factory import create_redis_client
from .retrieval import Embedder, HybridRetriever
from .rules import RuleLedger
from .scoring import ConfidenceScorer
from .security import get_logger
from .store import FactStore
from .telemetry import MemoryMetrics
from .tracing import Tracer

logger = get_logger(__name__)


class MemoryEngine:
    """Facade over the store, gate, ledger, scorer, inverter and read APIs.

    Every component shares one FactStore, so everything an engine does goes
    through the same backend and the same transaction clock.
    """

    def __init__(
        self,
        backend: Optional[StorageBackend] = None,
        config: Optional[MemoryConfig] = None,
        embedder: Optional[Embedder] = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[MemoryMetrics] = None,
        tracer: Optional[Tracer] = None
    ):
        self.config = config or MemoryConfig()
        self.backend = backend or InMemoryBackend()
        self.store = FactStore(self.backend, clock=clock, metrics=metrics, tracer=tracer)
        self.invalidation = InvalidationEngine(self.store)
        self.ledger = RuleLedger(self.store, self.invalidation)
        self.scorer = ConfidenceScorer(
            self.ledger,
            half_life_days=self.config.half_life_days,
            loss_aversion=self.config.loss_aversion,
        )
        self.inverter = AntiPatternInverter(
            self.ledger, self.scorer, self.invalidation,
            default_threshold=self.config.sweep_threshold,
        )
        self.gate = CurationGate(
            self.store,
            self.invalidation,
            min_corroboration=self.config.min_corroboration,
            min_shared_terms=self.config.min_shared_terms,
            contradictions=self.config.contradictions,
            max_conflict_retries=self.config.max_conflict_retries,
            reject_secrets=self.config.reject_secrets,
        )
        self.retriever = HybridRetriever(
            self.store,
            embedder=embedder,
            rrf_k=self.config.rrf_k,
            graph_depth=self.config.graph_depth,
            candidates_per_signal=self.config.candidates_per_signal,
            default_limit=self.config.retrieve_limit,
        )
        self.disclosure = ProgressiveDisclosure(
            self.store,
            self.retriever,
            self.invalidation,
            self.ledger,
            self.scorer,
            compact_token_budget=self.config.compact_token_budget,
            detail_token_budget=self.config.detail_token_budget,
            expand_window=self.config.expand_window,
        )

    @classmethod
    def from_config(cls, config: MemoryConfig, embedder: Optional[Embedder] = None,
                    redis_client=None, **kwargs) -> 'MemoryEngine':
        """Build an engine, connecting to Redis when the config names a URL."""
        if redis_client is not None:
            backend = RedisBackend(redis_client)
        elif config.redis_url:
            backend = RedisBackend(create_redis_client(config.redis_url))
        else:
            backend = InMemoryBackend()
        logger.info("Memory engine using %s", type(backend).__name__)
        return cls(backend=backend, config=config, embedder=embedder, **kwargs)

    # -- writes -------------------------------------------------------------

    def append(self, edge: Edge, transaction_time: Optional[datetime] = None) -> str:
        return self.store.append(edge, transaction_time)

    def admit(self, proposed: ProposedFact) -> Admission:
        return self.gate.admit(proposed)

    def invalidate(self, old_edge_id: str, new_edge: Edge) -> str:
        return self.invalidation.invalidate(old_edge_id, new_edge)

    def record_feedback(self, rule_id: str, polarity: str, timestamp: Optional[datetime] = None,
                        source: Optional[str] = None) -> FeedbackEvent:
        return self.ledger.record_feedback(rule_id, polarity, timestamp, source)

    def sweep(self, threshold: Optional[float] = None, as_of_time: Optional[datetime] = None,
              cancel: Optional[threading.Event] = None) -> List[str]:
        return self.inverter.sweep(threshold, as_of_time, cancel)

    def end_session(self, session_id: str) -> List[str]:
        return self.ledger.end_session(session_id)

    def rotate_agent(self, agent_name: str, new_identity: str) -> List[str]:
        return self.ledger.rotate_agent(agent_name, new_identity)

    # -- reads --------------------------------------------------------------

    def score(self, rule_id: str, as_of_time: Optional[datetime] = None) -> float:
        return self.scorer.score(rule_id, as_of_time)

    def retrieve(self, query: str, token_budget: Optional[int] = None, **kwargs) -> List[Edge]:
        return self.retriever.retrieve(query, token_budget=token_budget, **kwargs)

    def search(self, query: str) -> List[CompactResult]:
        return self.disclosure.search(query)

    def expand(self, result_id: str, window: Optional[int] = None) -> ContextWindow:
        return self.disclosure.expand(result_id, window)

    def detail(self, result_id: str) -> FullEdge:
        return self.disclosure.detail(result_id)

    def query_as_of(self, valid_time: Optional[datetime] = None,
                    transaction_time: Optional[datetime] = None) -> Set[Edge]:
        return self.store.query_as_of(valid_time, transaction_time)

    def history(self, entity_id: str, start: int = 0) -> Iterator[Edge]:
        return self.store.history(entity_id, start)
