"""Rules - feedback logging and scope lifecycle.

Scopes:
    user     persists indefinitely
    session  retired when the session ends
    agent    retired when the named agent's identity changes

Retiring a rule supersedes it with a ``retired`` tombstone edge; the rule
itself stays in history like every other invalidated edge.
"""

from datetime import datetime
from typing import List, Optional

from .errors import AlreadyInvalidatedError
from .invalidation import InvalidationEngine
from .models import (
    SCORED_KINDS,
    Edge,
    EdgeKind,
    FeedbackEvent,
    Polarity,
    RuleScope,
    ensure_utc,
)
from .security import get_logger
from .store import FactStore

logger = get_logger(__name__)

AGENT_IDENTITY_KEY = "agent_identity"


def agent_entity_id(agent_name: str) -> str:
    return f"agent:{agent_name}"


class RuleLedger:
    """Append-only feedback log and lifecycle operations for rules."""

    def __init__(self, store: FactStore, invalidation: InvalidationEngine):
        self.store = store
        self.invalidation = invalidation

    def record_feedback(
        self,
        rule_id: str,
        polarity: str,
        timestamp: Optional[datetime] = None,
        source: Optional[str] = None
    ) -> FeedbackEvent:
        """Append a helpful/harmful judgement to a rule's log.

        Raises:
            EdgeNotFoundError: unknown rule id
            ValueError: unknown polarity, or the edge is not a rule or warning
        """
        if isinstance(polarity, Polarity):
            polarity = polarity.value
        if polarity not in (p.value for p in Polarity):
            raise ValueError(f"Unknown polarity: {polarity!r}")

        edge = self.store.get(rule_id)
        if edge.kind not in SCORED_KINDS:
            raise ValueError(f"Edge {rule_id} is a {edge.kind}, not a rule")
        if not edge.is_active:
            logger.warning("Feedback recorded on invalidated rule %s", rule_id)

        event = FeedbackEvent(
            rule_id=rule_id,
            polarity=polarity,
            timestamp=ensure_utc(timestamp) if timestamp else self.store.now(),
            source=source,
        )
        self.store.backend.push_feedback(rule_id, event.to_json())
        self.store.metrics.record_feedback(polarity)
        return event

    def feedback(self, rule_id: str) -> List[FeedbackEvent]:
        """The rule's feedback log in the order it was recorded."""
        return [FeedbackEvent.from_json(raw) for raw in self.store.backend.load_feedback(rule_id)]

    def has_feedback(self, rule_id: str) -> bool:
        return bool(self.store.backend.load_feedback(rule_id))

    def active_rules(self, scope: Optional[str] = None, scope_ref: Optional[str] = None) -> List[Edge]:
        rules = self.store.active_edges(kinds=[EdgeKind.RULE.value])
        if scope is not None:
            rules = [r for r in rules if r.scope == scope]
        if scope_ref is not None:
            rules = [r for r in rules if r.scope_ref == scope_ref]
        return rules

    def _retire(self, rule: Edge, reason: str) -> Optional[str]:
        tombstone = Edge(
            subject=rule.subject,
            relation="retired",
            text=f"retired: {reason}",
            kind=EdgeKind.RETIRED.value,
            scope=rule.scope,
            scope_ref=rule.scope_ref,
            metadata={"reason": reason},
        )
        try:
            return self.invalidation.invalidate(rule.edge_id, tombstone)
        except AlreadyInvalidatedError:
            # superseded concurrently; the newer head owns the lifecycle now
            return None

    def end_session(self, session_id: str) -> List[str]:
        """Retire every active session-scoped rule bound to ``session_id``."""
        retired = []
        for rule in self.active_rules(RuleScope.SESSION.value, session_id):
            if self._retire(rule, f"session {session_id} ended"):
                retired.append(rule.edge_id)
        self.store.metrics.record_retired(RuleScope.SESSION.value, len(retired))
        logger.info("Session %s ended: retired %d rules", session_id, len(retired))
        return retired

    def rotate_agent(self, agent_name: str, new_identity: str) -> List[str]:
        """Record a new identity for ``agent_name`` and retire rules bound to any other."""
        entity_id = agent_entity_id(agent_name)
        self.store.ensure_entity(entity_id, "agent")
        if self.store.entity(entity_id).summary != new_identity:
            self.store.amend_summary(entity_id, new_identity)

        retired = []
        for rule in self.active_rules(RuleScope.AGENT.value, agent_name):
            if rule.metadata.get(AGENT_IDENTITY_KEY) == new_identity:
                continue
            if self._retire(rule, f"agent {agent_name} identity changed to {new_identity}"):
                retired.append(rule.edge_id)
        self.store.metrics.record_retired(RuleScope.AGENT.value, len(retired))
        logger.info("Agent %s rotated to %s: retired %d rules", agent_name, new_identity, len(retired))
        return retired

    def current_agent_identity(self, agent_name: str) -> Optional[str]:
        entity = self.store.backend.load_entity(agent_entity_id(agent_name))
        return entity.summary if entity and entity.summary else None
