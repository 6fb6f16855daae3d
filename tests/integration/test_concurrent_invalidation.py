"""Integration tests for concurrent writers.

Every test runs against both backends; the Redis variant shares one
fakeredis server between threads so WATCH/MULTI contention is real.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed

import pytest

from agent_memory.errors import AlreadyInvalidatedError
from agent_memory.invalidation import InvalidationEngine
from agent_memory.models import Edge, EdgeKind, ProposedFact


pytestmark = pytest.mark.integration


def lives_in(city):
    return Edge(subject="user:alice", relation="lives_in", value=city)


class TestConcurrentInvalidation:
    """Exactly one writer wins a contested invalidation."""

    def test_only_one_invalidation_wins(self, store):
        invalidation = InvalidationEngine(store)
        original = store.append(lives_in("Paris"))
        barrier = threading.Barrier(10)

        def attempt(i):
            barrier.wait()
            try:
                return invalidation.invalidate(original, lives_in(f"City {i}")), None
            except AlreadyInvalidatedError as e:
                return None, e

        with ThreadPoolExecutor(max_workers=10) as pool:
            outcomes = [f.result() for f in as_completed(pool.submit(attempt, i) for i in range(10))]

        winners = [edge_id for edge_id, _ in outcomes if edge_id]
        losers = [error for _, error in outcomes if error]
        assert len(winners) == 1
        assert len(losers) == 9
        assert all(error.superseded_by == winners[0] for error in losers)
        assert store.get(original).superseded_by == winners[0]
        # losers wrote nothing
        assert len(store.all_edges()) == 2

    def test_concurrent_appends_get_distinct_increasing_times(self, store):
        def append(i):
            return store.append(Edge(subject=f"user:{i % 3}", relation="note", text=f"note {i}"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(append, range(40)))

        assert len(set(ids)) == 40
        recorded = store.all_edges()
        assert sorted(ids) == [e.edge_id for e in recorded]
        times = [e.transaction_time for e in recorded]
        assert all(a < b for a, b in zip(times, times[1:]))


class TestConcurrentCuration:
    """Contradicting proposals resolve into one linear chain."""

    def test_contradictions_linearize(self, engine):
        first = engine.admit(ProposedFact(subject="user:alice", relation="lives_in", value="Paris")).edge_id
        cities = ["Berlin", "Rome", "Oslo", "Lima", "Kyiv", "Quito"]

        def propose(city):
            try:
                return engine.admit(ProposedFact(subject="user:alice", relation="lives_in", value=city))
            except AlreadyInvalidatedError:
                return None

        with ThreadPoolExecutor(max_workers=len(cities)) as pool:
            admissions = [a for a in pool.map(propose, cities) if a is not None]

        active = engine.store.active_for_subject("user:alice")
        assert len(active) == 1

        chain = [e.edge_id for e in engine.invalidation.supersession_chain(first)]
        assert chain[0] == first
        assert chain[-1] == active[0].edge_id
        for admission in admissions:
            assert admission.accepted
            assert admission.edge_id in chain

    def test_first_proposals_for_new_subject_linearize(self, engine):
        cities = ["A", "B", "C", "D", "E", "F"]
        barrier = threading.Barrier(len(cities))

        def propose(city):
            barrier.wait()
            return engine.admit(ProposedFact(subject="user:bob", relation="lives_in", value=city))

        with ThreadPoolExecutor(max_workers=len(cities)) as pool:
            admissions = list(pool.map(propose, cities))

        active = engine.store.active_for_subject("user:bob")
        assert len(active) == 1

        history = list(engine.store.history("user:bob"))
        assert len(history) == len(cities)
        # one root, every other edge supersedes its predecessor
        roots = [e for e in history if e.supersedes is None]
        assert len(roots) == 1
        chain = [e.edge_id for e in engine.invalidation.supersession_chain(roots[0].edge_id)]
        assert chain == [e.edge_id for e in history]
        assert all(a.accepted and a.edge_id in chain for a in admissions)

    def test_identical_first_proposals_store_one_edge(self, engine):
        barrier = threading.Barrier(6)

        def propose(_):
            barrier.wait()
            return engine.admit(ProposedFact(subject="user:carol", relation="speaks", value="Dutch"))

        with ThreadPoolExecutor(max_workers=6) as pool:
            admissions = list(pool.map(propose, range(6)))

        edges = list(engine.store.history("user:carol"))
        assert len(edges) == 1
        assert {a.edge_id for a in admissions} == {edges[0].edge_id}


class TestSweepAlongsideTraffic:
    """Sweeps take no exclusive lock and coexist with readers and writers."""

    def test_sweep_with_concurrent_feedback_and_reads(self, engine):
        rule_ids = [
            engine.append(Edge(subject="project:api", relation="rule", text=f"Always do step {i}",
                               kind=EdgeKind.RULE.value, scope="user"))
            for i in range(12)
        ]
        for rule_id in rule_ids[::2]:
            engine.record_feedback(rule_id, "harmful")

        def feedback():
            for rule_id in rule_ids[1::2]:
                engine.record_feedback(rule_id, "helpful")

        def read():
            return [len(engine.retrieve("step")) for _ in range(5)]

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(engine.sweep), pool.submit(engine.sweep),
                       pool.submit(feedback), pool.submit(read)]
            results = [f.result() for f in futures]

        written = results[0] + results[1]
        assert len(written) == 6
        assert len(set(written)) == 6
        assert len(engine.store.active_edges(kinds=["warning"])) == 6
        assert len(engine.store.active_edges(kinds=["rule"])) == 6
