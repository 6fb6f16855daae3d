"""Agent Memory Engine

Persistent, bi-temporal memory for AI agents.

    proposals ──> CurationGate ──> FactStore <── InvalidationEngine
                                      │  ▲
                     HybridRetriever <┘  └── AntiPatternInverter
                           │                    ▲
               ProgressiveDisclosure     ConfidenceScorer <── RuleLedger (feedback)

Every component shares a FactStore over one StorageBackend (Redis or
in-process). ``MemoryEngine`` wires them together from a ``MemoryConfig``.
"""

from .backends import StorageBackend, InMemoryBackend, RedisBackend
from .config import MemoryConfig
from .constants import RedisKeys, EdgeStatusConst, Defaults
from .curation import CurationGate
from .disclosure import ProgressiveDisclosure, CompactResult, ContextWindow, FullEdge
from .engine import MemoryEngine
from .errors import (
    MemoryEngineError,
    ConflictError,
    AlreadyInvalidatedError,
    EdgeNotFoundError,
    EntityNotFoundError,
    StorageError,
    StaleReadError,
)
from .invalidation import InvalidationEngine
from .inverter import AntiPatternInverter, invert_text
from .models import (
    Edge,
    EdgeKind,
    EdgeStatus,
    Entity,
    FeedbackEvent,
    Polarity,
    ProposedFact,
    Admission,
    RejectionReason,
    RuleScope,
)
from .redis_factory import create_redis_client, RedisStartupError
from .retrieval import HybridRetriever, Embedder, RankedEdge
from .rules import RuleLedger
from .scoring import ConfidenceScorer, ScoreBreakdown, decay_weight
from .security import sanitize, sanitize_dict, is_sensitive, SecureLogger, REDACTED
from .store import FactStore
from .sweeper import SweepService
from .telemetry import MemoryMetrics, SimpleMetrics, MetricSnapshot, get_metrics, init_metrics
from .tracing import Tracer, Span, TraceContext, get_tracer, init_tracer

__all__ = [
    'StorageBackend',
    'InMemoryBackend',
    'RedisBackend',
    'MemoryConfig',
    'RedisKeys',
    'EdgeStatusConst',
    'Defaults',
    'CurationGate',
    'ProgressiveDisclosure',
    'CompactResult',
    'ContextWindow',
    'FullEdge',
    'MemoryEngine',
    'MemoryEngineError',
    'ConflictError',
    'AlreadyInvalidatedError',
    'EdgeNotFoundError',
    'EntityNotFoundError',
    'StorageError',
    'StaleReadError',
    'InvalidationEngine',
    'AntiPatternInverter',
    'invert_text',
    'Edge',
    'EdgeKind',
    'EdgeStatus',
    'Entity',
    'FeedbackEvent',
    'Polarity',
    'ProposedFact',
    'Admission',
    'RejectionReason',
    'RuleScope',
    'create_redis_client',
    'RedisStartupError',
    'HybridRetriever',
    'Embedder',
    'RankedEdge',
    'RuleLedger',
    'ConfidenceScorer',
    'ScoreBreakdown',
    'decay_weight',
    'sanitize',
    'sanitize_dict',
    'is_sensitive',
    'SecureLogger',
    'REDACTED',
    'FactStore',
    'SweepService',
    'MemoryMetrics',
    'SimpleMetrics',
    'MetricSnapshot',
    'get_metrics',
    'init_metrics',
    'Tracer',
    'Span',
    'TraceContext',
    'get_tracer',
    'init_tracer',
]

__version__ = '0.1.0'
