"""Anti-Pattern Inverter - turn net-harmful rules into explicit warnings.

Deleting a failed rule would throw away a useful negative signal. Instead the
rule is superseded by a warning that says what not to do:

    "Always cache auth tokens"   ->  "PITFALL: avoid cache auth tokens"

A warning that later collects net-harmful feedback of its own is inverted
back into a plain rule.
"""

import re
import threading
import time
from datetime import datetime
from typing import List, Optional

from .constants import Defaults
from .errors import AlreadyInvalidatedError
from .invalidation import InvalidationEngine
from .models import Edge, EdgeKind, RuleScope
from .rules import RuleLedger
from .scoring import ConfidenceScorer
from .security import get_logger

logger = get_logger(__name__)

PITFALL_PREFIX = "PITFALL: avoid "
_PITFALL_RE = re.compile(r"^\s*PITFALL:\s*(avoid\s+)?", re.IGNORECASE)
_AFFIRMATIVE_RE = re.compile(r"^\s*(always|must|should|do)\s+", re.IGNORECASE)


def invert_text(text: str) -> str:
    """Negate a rule into a warning, or a warning back into a rule."""
    stripped = " ".join(text.split())
    if _PITFALL_RE.match(stripped):
        restored = _PITFALL_RE.sub("", stripped, count=1)
        return restored[:1].upper() + restored[1:]
    body = _AFFIRMATIVE_RE.sub("", stripped, count=1)
    return PITFALL_PREFIX + body


class AntiPatternInverter:
    """Periodic sweep over active rules.

    The sweep only reads history and appends: it needs no exclusive lock and
    can run alongside any other caller. Rules already inverted are
    invalidated and drop out of later sweeps on their own.
    """

    def __init__(
        self,
        ledger: RuleLedger,
        scorer: ConfidenceScorer,
        invalidation: InvalidationEngine,
        default_threshold: float = Defaults.SWEEP_THRESHOLD
    ):
        self.ledger = ledger
        self.scorer = scorer
        self.invalidation = invalidation
        self.store = ledger.store
        self.default_threshold = default_threshold

    def _candidates(self) -> List[Edge]:
        """Active rules, minus inversion products that have no feedback yet.

        A warning or restored rule starts with no feedback and would score
        0.0, so re-scoring it right away would flip it straight back.
        """
        return [
            edge for edge in self.store.active_edges(kinds=[EdgeKind.RULE.value, EdgeKind.WARNING.value])
            if not self._is_inversion(edge) or self.ledger.has_feedback(edge.edge_id)
        ]

    @staticmethod
    def _is_inversion(edge: Edge) -> bool:
        return edge.kind == EdgeKind.WARNING.value or "inverted_from" in edge.metadata

    def _inversion_of(self, edge: Edge, score: float, as_of: datetime) -> Edge:
        if edge.kind == EdgeKind.RULE.value:
            kind, relation = EdgeKind.WARNING.value, "pitfall"
        else:
            kind, relation = EdgeKind.RULE.value, edge.metadata.get("inverted_relation", "rule")
        return Edge(
            subject=edge.subject,
            relation=relation,
            text=invert_text(edge.text),
            target=edge.target,
            kind=kind,
            valid_time=as_of,
            scope=edge.scope or RuleScope.USER.value,
            scope_ref=edge.scope_ref,
            metadata={
                "inverted_from": edge.edge_id,
                "inverted_relation": edge.relation,
                "score_at_inversion": round(score, 6),
            },
        )

    def sweep(
        self,
        threshold: Optional[float] = None,
        as_of_time: Optional[datetime] = None,
        cancel: Optional[threading.Event] = None
    ) -> List[str]:
        """Invert every active rule scoring below ``threshold``.

        Returns the ids of the warning (or restored rule) edges written.
        Setting ``cancel`` stops the scan between rules; everything written
        up to that point is complete.
        """
        threshold = self.default_threshold if threshold is None else threshold
        as_of = as_of_time or self.store.now()
        written: List[str] = []
        scanned = 0
        start = time.monotonic()

        with self.store.tracer.trace('inverter.sweep', threshold=threshold):
            for edge in self._candidates():
                if cancel is not None and cancel.is_set():
                    logger.info("Sweep cancelled after %d rules", scanned)
                    break
                scanned += 1
                score = self.scorer.score(edge.edge_id, as_of)
                if score >= threshold:
                    continue
                try:
                    new_id = self.invalidation.invalidate(edge.edge_id, self._inversion_of(edge, score, as_of))
                except AlreadyInvalidatedError as e:
                    logger.info("Skipped %s: already superseded by %s", edge.edge_id, e.superseded_by)
                    continue
                logger.info("Inverted %s %s (score %.4f) into %s", edge.kind, edge.edge_id, score, new_id)
                written.append(new_id)

        self.store.metrics.record_sweep(scanned, len(written), (time.monotonic() - start) * 1000)
        return written
