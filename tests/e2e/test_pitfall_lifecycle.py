"""End-to-end: a rule that keeps hurting becomes a pitfall warning.

    observe -> admit rule -> harmful feedback -> sweep 91 days later
        -> rule invalidated, "PITFALL: avoid ..." warning active
"""

from datetime import timedelta

import pytest

from agent_memory.models import EdgeKind, EdgeStatus, ProposedFact, RejectionReason

from conftest import START


pytestmark = pytest.mark.e2e


@pytest.fixture
def cached_tokens_rule(engine):
    observation = engine.admit(ProposedFact(
        subject="project:api", relation="observed", kind=EdgeKind.OBSERVATION.value,
        text="Login got faster once we cached auth tokens", proposer="reflector",
    ))
    assert observation.accepted

    admission = engine.admit(ProposedFact(
        subject="project:api", relation="rule", kind=EdgeKind.RULE.value,
        text="cache auth tokens", proposer="reflector",
    ))
    assert admission.accepted
    return admission.edge_id


class TestPitfallLifecycle:

    def test_harmful_rule_becomes_pitfall(self, engine, clock, cached_tokens_rule):
        engine.record_feedback(cached_tokens_rule, "harmful")

        clock.advance(days=91)
        written = engine.sweep(threshold=0.0)

        rule = engine.store.get(cached_tokens_rule)
        assert rule.status == EdgeStatus.INVALIDATED.value
        assert len(written) == 1
        warning = engine.store.get(written[0])
        assert warning.is_active
        assert "PITFALL" in warning.content()
        assert "auth tokens" in warning.content()
        assert rule.superseded_by == warning.edge_id

    def test_pitfall_is_what_retrieval_returns(self, engine, clock, cached_tokens_rule):
        engine.record_feedback(cached_tokens_rule, "harmful")
        clock.advance(days=91)
        warning_id = engine.sweep()[0]

        hits = engine.search("should we cache auth tokens?")
        ids = [r.edge_id for r in hits]
        assert warning_id in ids
        assert cached_tokens_rule not in ids

        full = engine.detail(warning_id)
        assert [e.edge_id for e in full.chain] == [cached_tokens_rule, warning_id]

    def test_reproposing_the_rule_is_refused(self, engine, clock, cached_tokens_rule):
        engine.record_feedback(cached_tokens_rule, "harmful")
        clock.advance(days=91)
        engine.sweep()

        again = engine.admit(ProposedFact(
            subject="project:api", relation="rule", kind=EdgeKind.RULE.value,
            text="Always cache auth tokens",
        ))
        assert not again.accepted
        assert again.reason == RejectionReason.CONTRADICTED

    def test_history_still_knows_the_old_rule(self, engine, clock, cached_tokens_rule):
        engine.record_feedback(cached_tokens_rule, "harmful")
        clock.advance(days=91)
        engine.sweep()

        before_sweep = engine.query_as_of(transaction_time=START + timedelta(days=1))
        assert cached_tokens_rule in {e.edge_id for e in before_sweep}
        assert cached_tokens_rule in {e.edge_id for e in engine.history("project:api")}

    def test_helpful_feedback_keeps_the_rule(self, engine, clock, cached_tokens_rule):
        engine.record_feedback(cached_tokens_rule, "helpful")
        clock.advance(days=91)
        assert engine.sweep(threshold=0.0) == []
        assert engine.store.get(cached_tokens_rule).is_active
