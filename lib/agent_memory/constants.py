"""Constants and Redis key patterns for the agent memory engine."""


class RedisKeys:
    """Redis key patterns and prefixes."""

    EDGES_DATA = "amem:edges:data"
    EDGES_LOG = "amem:edges:log"
    EDGES_BY_ENTITY = "amem:edges:by_entity"

    ENTITIES = "amem:entities"
    ENTITY_SUMMARIES = "amem:entities:summaries"

    FEEDBACK = "amem:feedback"

    TXN_CLOCK = "amem:txn:last"

    @classmethod
    def edge(cls, edge_id: str) -> str:
        return f"{cls.EDGES_DATA}:{edge_id}"

    @classmethod
    def entity_edges(cls, entity_id: str) -> str:
        return f"{cls.EDGES_BY_ENTITY}:{entity_id}"

    @classmethod
    def summaries(cls, entity_id: str) -> str:
        return f"{cls.ENTITY_SUMMARIES}:{entity_id}"

    @classmethod
    def feedback(cls, rule_id: str) -> str:
        return f"{cls.FEEDBACK}:{rule_id}"


class EdgeStatusConst:
    """Edge status constants (string values)."""
    ACTIVE = "active"
    INVALIDATED = "invalidated"


class Defaults:
    """Default configuration values."""
    HALF_LIFE_DAYS = 90.0
    LOSS_AVERSION = 4.0
    SWEEP_THRESHOLD = 0.0
    SWEEP_INTERVAL = 3600

    MIN_CORROBORATION = 1
    CORROBORATION_MIN_SHARED_TERMS = 2
    MAX_CONFLICT_RETRIES = 8

    GRAPH_DEPTH = 2
    RRF_K = 60
    CANDIDATES_PER_SIGNAL = 50
    RETRIEVE_LIMIT = 20

    COMPACT_TOKEN_BUDGET = 100
    DETAIL_TOKEN_BUDGET = 1000
    EXPAND_WINDOW = 3
    CHARS_PER_TOKEN = 4

    REDIS_URL = "redis://localhost:6379"
    MAX_RETRIES = 5


# Opposing relation labels. A proposal asserting one of these for an entity
# pair contradicts an active edge asserting its partner.
DEFAULT_CONTRADICTIONS = {
    "prefers": "avoids",
    "likes": "dislikes",
    "uses": "stopped_using",
    "trusts": "distrusts",
    "supports": "opposes",
    "enabled": "disabled",
}
