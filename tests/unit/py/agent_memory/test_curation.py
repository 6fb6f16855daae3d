"""Tests for the Curation Gate."""

import logging
from datetime import timedelta

import pytest

from agent_memory.curation import CurationGate
from agent_memory.errors import StaleReadError
from agent_memory.invalidation import InvalidationEngine
from agent_memory.models import Edge, EdgeKind, ProposedFact, RejectionReason
from agent_memory.rules import AGENT_IDENTITY_KEY, RuleLedger
from agent_memory.telemetry import MemoryMetrics

from conftest import START


@pytest.fixture
def invalidation(store):
    return InvalidationEngine(store)


@pytest.fixture
def gate(store, invalidation):
    return CurationGate(store, invalidation)


def observe(gate, text, subject="project:api"):
    admission = gate.admit(ProposedFact(subject=subject, relation="observed", text=text,
                                        kind=EdgeKind.OBSERVATION.value))
    assert admission.accepted
    return admission.edge_id


def cache_rule(**kwargs):
    return ProposedFact(subject="project:api", relation="rule", text="Always cache auth tokens",
                        kind=EdgeKind.RULE.value, **kwargs)


class TestSchema:
    """Malformed proposals never reach the store."""

    @pytest.mark.parametrize("proposed", [
        ProposedFact(subject="user:alice", relation="prefers", value="tea", kind="opinion"),
        ProposedFact(subject="", relation="prefers", value="tea"),
        ProposedFact(subject="user:alice", relation=" ", value="tea"),
        ProposedFact(subject="user:alice", relation="prefers", value="tea", target="drink:tea"),
        ProposedFact(subject="user:alice", relation="prefers"),
        ProposedFact(subject="project:api", relation="rule", kind="rule"),
        ProposedFact(subject="project:api", relation="rule", text="Use staging", kind="rule", scope="session"),
        ProposedFact(subject="project:api", relation="rule", text="Use staging", kind="rule", scope="galaxy"),
        ProposedFact(subject="user:alice", relation="prefers", value="tea", scope="user"),
        ProposedFact(subject="user:alice", relation="mentioned", text="my api_key=abcd1234efgh",
                     kind="observation"),
    ])
    def test_rejects(self, gate, store, proposed):
        admission = gate.admit(proposed)
        assert not admission.accepted
        assert admission.reason == RejectionReason.SCHEMA_INVALID
        assert admission.detail
        assert store.all_edges() == []

    def test_counts_rejections(self, gate, metrics):
        gate.admit(ProposedFact(subject="", relation="prefers", value="tea"))
        assert metrics.local.get_counter(MemoryMetrics.REJECTIONS, {'reason': 'schema_invalid'}) == 1

    def test_rejection_log_redacts_proposer_metadata(self, gate, caplog):
        with caplog.at_level(logging.WARNING, logger='agent_memory'):
            gate.admit(ProposedFact(subject="", relation="prefers", value="tea",
                                    metadata={'api_key': 'hunter2', 'source': 'chat'}))
        assert 'hunter2' not in caplog.text
        assert 'chat' in caplog.text

    def test_secrets_allowed_when_disabled(self, store, invalidation):
        gate = CurationGate(store, invalidation, reject_secrets=False)
        admission = gate.admit(ProposedFact(subject="user:alice", relation="mentioned",
                                            text="password=hunter2", kind="observation"))
        assert admission.accepted


class TestCorroboration:
    """Rules need independent supporting observations."""

    def test_uncorroborated_rule(self, gate, store):
        admission = gate.admit(cache_rule())
        assert admission.reason == RejectionReason.UNCORROBORATED
        assert store.active_edges(kinds=["rule"]) == []

    def test_observation_sharing_terms_corroborates(self, gate):
        observe(gate, "Login got faster after we started caching auth tokens")
        assert gate.admit(cache_rule()).accepted

    def test_unrelated_observation_does_not_count(self, gate):
        observe(gate, "Deploys happen on Tuesdays")
        assert gate.admit(cache_rule()).reason == RejectionReason.UNCORROBORATED

    def test_observation_about_other_subject_does_not_count(self, gate):
        observe(gate, "Caching auth tokens made login faster", subject="project:web")
        assert gate.admit(cache_rule()).reason == RejectionReason.UNCORROBORATED

    def test_cited_evidence_counts(self, gate):
        evidence = observe(gate, "Token reuse saved a roundtrip", subject="project:web")
        assert gate.admit(cache_rule(evidence=[evidence])).accepted

    def test_unknown_evidence_is_ignored(self, gate):
        admission = gate.admit(cache_rule(evidence=["edge-0000000000000009"]))
        assert admission.reason == RejectionReason.UNCORROBORATED

    def test_higher_threshold(self, store, invalidation):
        gate = CurationGate(store, invalidation, min_corroboration=2)
        observe(gate, "Caching auth tokens made login faster")
        assert gate.admit(cache_rule()).reason == RejectionReason.UNCORROBORATED
        observe(gate, "Auth tokens cached in memory cut latency")
        assert gate.admit(cache_rule()).accepted

    def test_facts_need_no_corroboration(self, gate):
        assert gate.admit(ProposedFact(subject="user:alice", relation="prefers", value="tea")).accepted


class TestConflicts:
    """Duplicates and contradictions of standing edges."""

    def test_duplicate_returns_existing_id(self, gate, store):
        first = gate.admit(ProposedFact(subject="user:alice", relation="prefers", value="tea"))
        second = gate.admit(ProposedFact(subject="user:alice", relation="prefers", value="tea"))

        assert second.accepted
        assert second.edge_id == first.edge_id
        assert len(store.all_edges()) == 1

    def test_duplicate_rule_ignores_affirmative_prefix(self, gate, store):
        observe(gate, "Caching auth tokens made login faster")
        first = gate.admit(cache_rule())
        second = gate.admit(ProposedFact(subject="project:api", relation="rule",
                                         text="cache auth tokens", kind="rule"))
        assert second.edge_id == first.edge_id

    def test_opposing_relation_supersedes(self, gate, store):
        tea = gate.admit(ProposedFact(subject="user:alice", relation="prefers", value="tea")).edge_id
        avoid = gate.admit(ProposedFact(subject="user:alice", relation="avoids", value="tea"))

        assert avoid.accepted
        assert avoid.superseded == tea
        assert store.get(tea).superseded_by == avoid.edge_id

    def test_changed_value_supersedes(self, gate, store):
        paris = gate.admit(ProposedFact(subject="user:alice", relation="lives_in", value="Paris")).edge_id
        berlin = gate.admit(ProposedFact(subject="user:alice", relation="lives_in", value="Berlin"))
        assert berlin.superseded == paris
        assert [e.value for e in store.active_for_subject("user:alice")] == ["Berlin"]

    def test_older_contradiction_is_rejected(self, gate, store):
        gate.admit(ProposedFact(subject="user:alice", relation="lives_in", value="Paris"))
        stale = gate.admit(ProposedFact(subject="user:alice", relation="lives_in", value="Rome",
                                        valid_time=START - timedelta(days=365)))
        assert stale.reason == RejectionReason.CONTRADICTED
        assert [e.value for e in store.active_for_subject("user:alice")] == ["Paris"]

    def test_observations_never_contradict(self, gate, store):
        observe(gate, "Alice ordered tea", subject="user:alice")
        observe(gate, "Alice ordered coffee", subject="user:alice")
        assert len(store.active_for_subject("user:alice")) == 2

    def test_rule_matching_a_warning_is_contradicted(self, gate, store):
        store.append(Edge(subject="project:api", relation="pitfall", kind=EdgeKind.WARNING.value,
                          text="PITFALL: avoid cache auth tokens", scope="user"))
        observe(gate, "Caching auth tokens made login faster")

        admission = gate.admit(cache_rule())
        assert admission.reason == RejectionReason.CONTRADICTED

    def test_race_retries_against_new_head(self, gate, store, invalidation, monkeypatch):
        paris = gate.admit(ProposedFact(subject="user:alice", relation="lives_in", value="Paris")).edge_id
        real_invalidate = invalidation.invalidate
        raced = []

        def racing(old_edge_id, new_edge):
            if not raced:
                raced.append(real_invalidate(old_edge_id, Edge(subject="user:alice", relation="lives_in",
                                                               value="Berlin")))
            return real_invalidate(old_edge_id, new_edge)

        monkeypatch.setattr(invalidation, "invalidate", racing)
        rome = gate.admit(ProposedFact(subject="user:alice", relation="lives_in", value="Rome"))

        assert rome.accepted
        assert rome.superseded == raced[0]
        chain = [e.value for e in invalidation.supersession_chain(paris)]
        assert chain == ["Paris", "Berlin", "Rome"]

    def test_append_on_new_subject_retries_after_competing_write(self, gate, store, monkeypatch):
        real_find = gate.find_conflict
        competitor = []

        def racing(proposed):
            found = real_find(proposed)
            if not competitor:
                competitor.append(store.append(Edge(subject="user:bob", relation="lives_in", value="Oslo")))
            return found

        monkeypatch.setattr(gate, "find_conflict", racing)
        lima = gate.admit(ProposedFact(subject="user:bob", relation="lives_in", value="Lima"))

        assert lima.accepted
        assert lima.superseded == competitor[0]
        assert [e.value for e in store.active_for_subject("user:bob")] == ["Lima"]

    def test_gives_up_after_retry_limit(self, store, invalidation, monkeypatch):
        gate = CurationGate(store, invalidation, max_conflict_retries=1)
        real_find = gate.find_conflict

        def always_raced(proposed):
            found = real_find(proposed)
            store.append(Edge(subject="user:bob", relation="note", text="busy"))
            return found

        monkeypatch.setattr(gate, "find_conflict", always_raced)
        with pytest.raises(StaleReadError):
            gate.admit(ProposedFact(subject="user:bob", relation="lives_in", value="Lima"))
        assert not any(e.relation == "lives_in" for e in store.all_edges())


class TestScopes:
    """Rule scope handling at admission."""

    def test_rules_default_to_user_scope(self, gate, store):
        observe(gate, "Caching auth tokens made login faster")
        edge = store.get(gate.admit(cache_rule()).edge_id)
        assert edge.scope == "user"

    def test_agent_rule_is_stamped_with_identity(self, gate, store, invalidation):
        RuleLedger(store, invalidation).rotate_agent("helper", "v3")
        observe(gate, "Caching auth tokens made login faster")

        admission = gate.admit(cache_rule(scope="agent", scope_ref="helper"))
        assert store.get(admission.edge_id).metadata[AGENT_IDENTITY_KEY] == "v3"

    def test_same_rule_in_another_session_is_its_own_edge(self, gate, store, invalidation):
        observe(gate, "Caching auth tokens made login faster")
        s1 = gate.admit(cache_rule(scope="session", scope_ref="s1"))
        s2 = gate.admit(cache_rule(scope="session", scope_ref="s2"))

        assert s2.accepted
        assert s2.edge_id != s1.edge_id

        RuleLedger(store, invalidation).end_session("s1")
        remaining = store.active_for_subject("project:api", kinds=[EdgeKind.RULE.value])
        assert [(e.scope_ref, e.edge_id) for e in remaining] == [("s2", s2.edge_id)]

    def test_same_rule_across_user_and_session_scope(self, gate):
        observe(gate, "Caching auth tokens made login faster")
        user = gate.admit(cache_rule())
        session = gate.admit(cache_rule(scope="session", scope_ref="s1"))
        assert session.edge_id != user.edge_id
        assert gate.admit(cache_rule(scope="session", scope_ref="s1")).edge_id == session.edge_id

    def test_proposer_and_evidence_are_kept(self, gate, store):
        evidence = observe(gate, "Caching auth tokens made login faster")
        edge_id = gate.admit(cache_rule(evidence=[evidence], proposer="reflector")).edge_id
        metadata = store.get(edge_id).metadata
        assert metadata["proposer"] == "reflector"
        assert metadata["evidence"] == [evidence]
