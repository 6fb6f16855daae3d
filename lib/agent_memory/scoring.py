"""Confidence Scorer - time-decayed, loss-averse usefulness of a rule.

    weight          = 2 ** (-(as_of - t) / half_life)
    decayed_helpful = sum of weights of helpful events
    decayed_harmful = loss_aversion * sum of weights of harmful events
    effective       = decayed_helpful - decayed_harmful

The score is recomputed from the immutable feedback log on every call; no
score is ever stored, so there is nothing to keep in sync with invalidation.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .constants import Defaults
from .models import FeedbackEvent, Polarity, ensure_utc
from .rules import RuleLedger


@dataclass
class ScoreBreakdown:
    rule_id: str
    as_of: datetime
    helpful_events: int
    harmful_events: int
    decayed_helpful: float
    decayed_harmful: float

    @property
    def effective(self) -> float:
        return self.decayed_helpful - self.decayed_harmful


def decay_weight(age: timedelta, half_life_days: float = Defaults.HALF_LIFE_DAYS) -> float:
    days = age.total_seconds() / 86400.0
    return 2.0 ** (-days / half_life_days)


def decayed_score(
    events: Iterable[FeedbackEvent],
    as_of: datetime,
    half_life_days: float = Defaults.HALF_LIFE_DAYS,
    loss_aversion: float = Defaults.LOSS_AVERSION
) -> float:
    """Effective score of a feedback log at ``as_of``. No events scores 0.0."""
    return _accumulate("", events, as_of, half_life_days, loss_aversion).effective


def _accumulate(rule_id, events, as_of, half_life_days, loss_aversion) -> ScoreBreakdown:
    as_of = ensure_utc(as_of)
    helpful = harmful = 0.0
    helpful_count = harmful_count = 0
    for event in events:
        age = as_of - ensure_utc(event.timestamp)
        if age < timedelta(0):
            # not yet known at as_of
            continue
        weight = decay_weight(age, half_life_days)
        if event.polarity == Polarity.HELPFUL.value:
            helpful += weight
            helpful_count += 1
        elif event.polarity == Polarity.HARMFUL.value:
            harmful += weight
            harmful_count += 1
    return ScoreBreakdown(
        rule_id=rule_id,
        as_of=as_of,
        helpful_events=helpful_count,
        harmful_events=harmful_count,
        decayed_helpful=helpful,
        decayed_harmful=harmful * loss_aversion,
    )


class ConfidenceScorer:
    """Scores rules from their feedback log."""

    def __init__(
        self,
        ledger: RuleLedger,
        half_life_days: float = Defaults.HALF_LIFE_DAYS,
        loss_aversion: float = Defaults.LOSS_AVERSION
    ):
        if half_life_days <= 0:
            raise ValueError("half_life_days must be positive")
        self.ledger = ledger
        self.half_life_days = half_life_days
        self.loss_aversion = loss_aversion

    def breakdown(self, rule_id: str, as_of_time: Optional[datetime] = None) -> ScoreBreakdown:
        as_of = as_of_time or self.ledger.store.now()
        return _accumulate(
            rule_id,
            self.ledger.feedback(rule_id),
            as_of,
            self.half_life_days,
            self.loss_aversion,
        )

    def score(self, rule_id: str, as_of_time: Optional[datetime] = None) -> float:
        return self.breakdown(rule_id, as_of_time).effective
