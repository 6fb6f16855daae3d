"""Progressive Disclosure - search, expand, detail.

Agents pay for context in tokens, so memory is read in three stages of
increasing cost:

    search(query)      ids + one-line summaries, ~100 tokens in total
    expand(result_id)  chronological neighbours in the subject's history
    detail(result_id)  the full edge with summaries, chain and scores

No stage writes anything.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .constants import Defaults
from .models import SCORED_KINDS, Edge, Polarity
from .retrieval import HybridRetriever
from .invalidation import InvalidationEngine
from .rules import RuleLedger
from .scoring import ConfidenceScorer
from .store import FactStore
from .text import estimate_tokens, truncate_to_tokens

# Shortest summary worth returning once the budget is nearly spent.
MIN_SUMMARY_TOKENS = 3


@dataclass
class CompactResult:
    edge_id: str
    summary: str
    kind: str
    score: float = 0.0

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.edge_id) + estimate_tokens(self.summary)


@dataclass
class ContextWindow:
    """An edge with the edges recorded just before and after it on the same subject."""
    focus: Edge
    before: List[Edge] = field(default_factory=list)
    after: List[Edge] = field(default_factory=list)

    @property
    def edges(self) -> List[Edge]:
        return self.before + [self.focus] + self.after


@dataclass
class FullEdge:
    edge: Edge
    entity_summaries: Dict[str, List[Dict[str, Any]]]
    chain: List[Edge]
    score: Optional[float] = None
    helpful_count: int = 0
    harmful_count: int = 0
    rendered: str = ""

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.rendered)


class ProgressiveDisclosure:
    """Three-stage read API over the retriever and the store."""

    def __init__(
        self,
        store: FactStore,
        retriever: HybridRetriever,
        invalidation: InvalidationEngine,
        ledger: RuleLedger,
        scorer: ConfidenceScorer,
        compact_token_budget: int = Defaults.COMPACT_TOKEN_BUDGET,
        detail_token_budget: int = Defaults.DETAIL_TOKEN_BUDGET,
        expand_window: int = Defaults.EXPAND_WINDOW
    ):
        self.store = store
        self.retriever = retriever
        self.invalidation = invalidation
        self.ledger = ledger
        self.scorer = scorer
        self.compact_token_budget = compact_token_budget
        self.detail_token_budget = detail_token_budget
        self.expand_window = expand_window

    def search(self, query: str, token_budget: Optional[int] = None) -> List[CompactResult]:
        """Compact hits whose ids and summaries fit the token budget together."""
        budget = self.compact_token_budget if token_budget is None else token_budget
        results: List[CompactResult] = []
        remaining = budget
        for hit in self.retriever.retrieve_scored(query):
            result = CompactResult(hit.edge_id, hit.edge.one_line(), hit.edge.kind, hit.score)
            if result.tokens > remaining:
                room = remaining - estimate_tokens(result.edge_id)
                if room < MIN_SUMMARY_TOKENS:
                    break
                result.summary = truncate_to_tokens(result.summary, room)
            results.append(result)
            remaining -= result.tokens
        return results

    def expand(self, result_id: str, window: Optional[int] = None) -> ContextWindow:
        """Up to ``window`` edges either side of the result in its subject's history."""
        window = self.expand_window if window is None else window
        focus = self.store.get(result_id)
        timeline = [
            edge for edge in self.store.history(focus.subject)
            if edge.subject == focus.subject or edge.edge_id == focus.edge_id
        ]
        position = next(i for i, edge in enumerate(timeline) if edge.edge_id == focus.edge_id)
        return ContextWindow(
            focus=focus,
            before=timeline[max(0, position - window):position],
            after=timeline[position + 1:position + 1 + window],
        )

    def detail(self, result_id: str, token_budget: Optional[int] = None) -> FullEdge:
        """Everything known about one edge, rendered within the detail budget."""
        budget = self.detail_token_budget if token_budget is None else token_budget
        edge = self.store.get(result_id)
        summaries = {
            entity_id: self.store.entity_summaries(entity_id)
            for entity_id in edge.entities
            if self.store.has_entity(entity_id)
        }
        full = FullEdge(
            edge=edge,
            entity_summaries=summaries,
            chain=self.invalidation.supersession_chain(result_id),
        )
        if edge.kind in SCORED_KINDS:
            events = self.ledger.feedback(result_id)
            full.score = self.scorer.score(result_id)
            full.helpful_count = sum(1 for e in events if e.polarity == Polarity.HELPFUL.value)
            full.harmful_count = len(events) - full.helpful_count
        full.rendered = truncate_to_tokens(self._render(full), budget)
        return full

    @staticmethod
    def _render(full: FullEdge) -> str:
        edge = full.edge
        lines = [
            f"{edge.edge_id} [{edge.kind}, {edge.status}]",
            f"{edge.subject} {edge.relation} {edge.obj or ''}".rstrip(),
        ]
        if edge.text:
            lines.append(edge.text)
        lines.append(f"valid: {edge.valid_time.isoformat()}  recorded: {edge.transaction_time.isoformat()}")
        if edge.scope:
            lines.append(f"scope: {edge.scope} {edge.scope_ref or ''}".rstrip())
        if full.score is not None:
            lines.append(
                f"score: {full.score:.3f} ({full.helpful_count} helpful, {full.harmful_count} harmful)"
            )
        if len(full.chain) > 1:
            lines.append("chain: " + " -> ".join(e.edge_id for e in full.chain))
        for entity_id, history in full.entity_summaries.items():
            if history:
                lines.append(f"{entity_id}: {history[-1].get('summary', '')}")
        return "\n".join(lines)
