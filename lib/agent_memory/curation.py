"""Curation Gate - deterministic admission control for proposed facts.

The gate is the only path from generator output into the store. It runs no
model inference of its own, so a proposer can never curate its own future
inputs. Checks, in order:

    1. schema         the proposal has a recognised, well-formed shape
    2. corroboration  rules need independent supporting observations
    3. conflict       contradictions supersede (or lose to) the standing edge

Rejections are returned to the proposer and logged; they never become edges.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from .constants import DEFAULT_CONTRADICTIONS, Defaults
from .errors import AlreadyInvalidatedError, MemoryEngineError, StaleReadError
from .invalidation import InvalidationEngine
from .inverter import invert_text
from .models import (
    PROPOSABLE_KINDS,
    Admission,
    Edge,
    EdgeKind,
    ProposedFact,
    RejectionReason,
    RuleScope,
    ensure_utc,
)
from .rules import AGENT_IDENTITY_KEY, agent_entity_id
from .security import get_logger, is_sensitive, sanitize_dict
from .store import FactStore
from .text import term_set

logger = get_logger(__name__)

EVIDENCE_KINDS = (EdgeKind.OBSERVATION.value, EdgeKind.FACT.value)
DUPLICATE = "duplicate"
CONTRADICTION = "contradiction"


def _normalize(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def _symmetric(pairs: Dict[str, str]) -> Dict[str, str]:
    table = dict(pairs)
    table.update({v: k for k, v in pairs.items()})
    return table


class CurationGate:
    """Admits proposed facts into the Fact Store or rejects them with a reason."""

    def __init__(
        self,
        store: FactStore,
        invalidation: InvalidationEngine,
        min_corroboration: int = Defaults.MIN_CORROBORATION,
        min_shared_terms: int = Defaults.CORROBORATION_MIN_SHARED_TERMS,
        corroborate_kinds: Iterable[str] = (EdgeKind.RULE.value,),
        contradictions: Optional[Dict[str, str]] = None,
        max_conflict_retries: int = Defaults.MAX_CONFLICT_RETRIES,
        reject_secrets: bool = True
    ):
        self.store = store
        self.invalidation = invalidation
        self.min_corroboration = min_corroboration
        self.min_shared_terms = min_shared_terms
        self.corroborate_kinds = set(corroborate_kinds)
        self.contradictions = _symmetric(contradictions if contradictions is not None else DEFAULT_CONTRADICTIONS)
        self.max_conflict_retries = max_conflict_retries
        self.reject_secrets = reject_secrets

    def admit(self, proposed: ProposedFact) -> Admission:
        """Validate ``proposed`` and, if it passes, record it as an edge."""
        with self.store.tracer.trace('curation.admit', kind=proposed.kind):
            problem = self.check_schema(proposed)
            if problem:
                return self._reject(proposed, RejectionReason.SCHEMA_INVALID, problem)

            if proposed.kind in self.corroborate_kinds:
                support = self.corroborating_evidence(proposed)
                if len(support) < self.min_corroboration:
                    return self._reject(
                        proposed,
                        RejectionReason.UNCORROBORATED,
                        f"{len(support)} supporting observation(s), {self.min_corroboration} required",
                    )

            return self._commit(proposed)

    # -- step 1 -------------------------------------------------------------

    def check_schema(self, proposed: ProposedFact) -> Optional[str]:
        """Return a description of the first schema problem, or None."""
        if proposed.kind not in PROPOSABLE_KINDS:
            return f"unrecognised kind {proposed.kind!r}"
        if not (proposed.subject or "").strip():
            return "subject is required"
        if not (proposed.relation or "").strip():
            return "relation is required"
        if proposed.target is not None and proposed.value is not None:
            return "an edge has either a target entity or a literal value, not both"
        if proposed.target is not None and not proposed.target.strip():
            return "target must be a non-empty entity id"
        if proposed.kind in (EdgeKind.RULE.value, EdgeKind.OBSERVATION.value) and not (proposed.text or "").strip():
            return f"{proposed.kind} text is required"
        if proposed.kind == EdgeKind.FACT.value and not (
            (proposed.text or "").strip() or proposed.target or proposed.value is not None
        ):
            return "fact needs a target, a value or text"

        if proposed.kind == EdgeKind.RULE.value:
            scopes = [s.value for s in RuleScope]
            scope = proposed.scope or RuleScope.USER.value
            if scope not in scopes:
                return f"rule scope must be one of {scopes}"
            if scope != RuleScope.USER.value and not proposed.scope_ref:
                return f"{scope}-scoped rule needs a scope_ref"
        elif proposed.scope is not None:
            return "only rules carry a scope"

        if self.reject_secrets and (is_sensitive(proposed.text) or is_sensitive(str(proposed.value or ""))):
            return "content looks like a credential"
        return None

    # -- step 2 -------------------------------------------------------------

    def corroborating_evidence(self, proposed: ProposedFact) -> List[str]:
        """Ids of active observations that independently support ``proposed``.

        Explicitly cited evidence counts when it resolves to an active
        observation or fact; uncited observations about the same subject count
        when they share enough content terms with the proposal.
        """
        support: List[str] = []
        for edge_id in proposed.evidence:
            if not self.store.exists(edge_id):
                continue
            edge = self.store.get(edge_id)
            if edge.is_active and edge.kind in EVIDENCE_KINDS and edge_id not in support:
                support.append(edge_id)

        wanted = term_set(proposed.text)
        if wanted:
            for edge in self.store.active_for_subject(proposed.subject, kinds=[EdgeKind.OBSERVATION.value]):
                if edge.edge_id in support:
                    continue
                if len(wanted & term_set(edge.content())) >= self.min_shared_terms:
                    support.append(edge.edge_id)
        return support

    # -- step 3 -------------------------------------------------------------

    def find_conflict(self, proposed: ProposedFact) -> Tuple[Optional[Edge], Optional[str]]:
        """The standing edge the proposal duplicates or contradicts, if any."""
        standing = self.store.active_for_subject(proposed.subject)
        text = _normalize(proposed.text)

        if proposed.kind == EdgeKind.RULE.value:
            # compare as warnings so "Always X" and "X" are the same rule
            as_warning = _normalize(invert_text(proposed.text))
            scope = proposed.scope or RuleScope.USER.value
            scoped = [
                edge for edge in standing
                if (edge.scope or RuleScope.USER.value) == scope and edge.scope_ref == proposed.scope_ref
            ]
            for edge in scoped:
                if edge.kind == EdgeKind.RULE.value and _normalize(invert_text(edge.text)) == as_warning:
                    return edge, DUPLICATE
            for edge in scoped:
                if edge.kind == EdgeKind.WARNING.value and _normalize(edge.text) == as_warning:
                    return edge, CONTRADICTION
            return None, None

        value = None if proposed.value is None else str(proposed.value)
        opposing = self.contradictions.get(proposed.relation)
        for edge in standing:
            if edge.kind not in EVIDENCE_KINDS:
                continue
            same_object = edge.target == proposed.target and edge.value == value
            if (edge.kind == proposed.kind and edge.relation == proposed.relation
                    and same_object and _normalize(edge.text) == text):
                return edge, DUPLICATE
            if proposed.kind == EdgeKind.OBSERVATION.value or edge.kind == EdgeKind.OBSERVATION.value:
                continue
            if opposing and edge.relation == opposing and same_object:
                return edge, CONTRADICTION
            if (edge.relation == proposed.relation and edge.target is None and proposed.target is None
                    and edge.value is not None and value is not None and edge.value != value):
                return edge, CONTRADICTION
        return None, None

    def _commit(self, proposed: ProposedFact) -> Admission:
        lost: Optional[MemoryEngineError] = None
        for _ in range(self.max_conflict_retries + 1):
            # read the count before the conflict check; the append is guarded on it
            seen = self.store.subject_edge_count(proposed.subject)
            standing, relation = self.find_conflict(proposed)

            if relation == DUPLICATE:
                logger.debug("Proposal duplicates %s", standing.edge_id)
                return Admission.ok(standing.edge_id, detail="already recorded")

            if relation == CONTRADICTION:
                if standing.kind == EdgeKind.WARNING.value:
                    return self._reject(
                        proposed, RejectionReason.CONTRADICTED,
                        f"rule was inverted into warning {standing.edge_id}",
                    )
                if proposed.valid_time is not None and ensure_utc(proposed.valid_time) < standing.valid_time:
                    return self._reject(
                        proposed, RejectionReason.CONTRADICTED,
                        f"older than standing edge {standing.edge_id}",
                    )
                try:
                    edge_id = self.invalidation.invalidate(standing.edge_id, self._edge_for(proposed))
                except AlreadyInvalidatedError as e:
                    # another writer committed first; re-read and decide again
                    lost = e
                    continue
                self.store.metrics.record_admission(proposed.kind)
                logger.info("Admitted %s %s superseding %s", proposed.kind, edge_id, standing.edge_id)
                return Admission.ok(edge_id, superseded=standing.edge_id)

            try:
                edge_id = self.store.append(
                    self._edge_for(proposed),
                    entity_type=proposed.entity_type,
                    expect_subject_edges=seen,
                )
            except StaleReadError as e:
                lost = e
                continue
            self.store.metrics.record_admission(proposed.kind)
            logger.info("Admitted %s %s", proposed.kind, edge_id)
            return Admission.ok(edge_id)

        logger.warning("Gave up admitting %s about %s after %d attempts: %s",
                       proposed.kind, proposed.subject, self.max_conflict_retries + 1, lost)
        raise lost

    def _edge_for(self, proposed: ProposedFact) -> Edge:
        edge = proposed.to_edge()
        if edge.value is not None:
            edge.value = str(edge.value)
        if edge.scope == RuleScope.AGENT.value and AGENT_IDENTITY_KEY not in edge.metadata:
            identity = self.store.backend.load_entity(agent_entity_id(edge.scope_ref))
            if identity is not None and identity.summary:
                edge.metadata[AGENT_IDENTITY_KEY] = identity.summary
        return edge

    def _reject(self, proposed: ProposedFact, reason: RejectionReason, detail: str) -> Admission:
        self.store.metrics.record_rejection(reason.value)
        logger.warning(
            "Rejected %s proposal from %s about %s: %s (%s) metadata=%s",
            proposed.kind, proposed.proposer or "unknown", proposed.subject, reason.value, detail,
            sanitize_dict(proposed.metadata),
        )
        return Admission.reject(reason, detail)
