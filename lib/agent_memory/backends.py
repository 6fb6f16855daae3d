"""Storage backends - the durable-storage capability the Fact Store consumes.

Logical layout, shared by both backends:

    edge log        edge ids ordered by transaction time (microseconds)
    edge records    immutable JSON body + mutable (status, superseded_by)
    entity index    per-entity edge ids ordered by transaction time
    entity table    entity id -> current entity record, plus summary history
    feedback log    rule id -> append-only list of feedback events

Both backends assign transaction times themselves so that they are strictly
monotonic across every caller sharing the backend.
"""

import bisect
import json
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

import redis
from redis.exceptions import RedisError, WatchError

from .constants import EdgeStatusConst, RedisKeys
from .errors import AlreadyInvalidatedError, ConflictError, EdgeNotFoundError, StaleReadError, StorageError
from .models import Edge, Entity, edge_id_for, from_micros


class StorageBackend(ABC):
    """Append-only storage primitives. No primitive deletes anything."""

    @abstractmethod
    def insert_edge(self, edge: Edge, now_micros: int, pinned_micros: Optional[int] = None,
                    guard: Optional[Tuple[str, int]] = None) -> Edge:
        """Assign a transaction time and id to ``edge`` and store it atomically.

        ``guard`` is ``(entity_id, count)``: the insert only happens while the
        entity's edge index still holds exactly ``count`` edges.

        Raises:
            ConflictError: ``pinned_micros`` collides with an existing edge
            StaleReadError: the guarded entity gained edges
        """

    @abstractmethod
    def swap_edge(self, old_edge_id: str, new_edge: Edge, now_micros: int) -> Edge:
        """Atomically invalidate ``old_edge_id`` and insert ``new_edge``.

        Raises:
            EdgeNotFoundError: no such edge
            AlreadyInvalidatedError: the edge lost an earlier invalidation
        """

    @abstractmethod
    def next_transaction_micros(self, now_micros: int) -> int:
        """The transaction time an unpinned insert at ``now_micros`` would get."""

    @abstractmethod
    def load_edge(self, edge_id: str) -> Optional[Edge]:
        pass

    def load_edges(self, edge_ids: Iterable[str]) -> List[Edge]:
        edges = []
        for edge_id in edge_ids:
            edge = self.load_edge(edge_id)
            if edge is not None:
                edges.append(edge)
        return edges

    @abstractmethod
    def edge_ids(self, max_micros: Optional[int] = None) -> List[str]:
        """Edge ids in transaction-time order, optionally up to ``max_micros``."""

    @abstractmethod
    def entity_edge_ids(self, entity_id: str, start: int = 0) -> List[str]:
        pass

    @abstractmethod
    def entity_edge_count(self, entity_id: str) -> int:
        pass

    @abstractmethod
    def put_entity(self, entity: Entity) -> bool:
        """Create the entity if absent. Returns True when created."""

    @abstractmethod
    def load_entity(self, entity_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    def entity_ids(self) -> List[str]:
        pass

    @abstractmethod
    def push_summary(self, entity: Entity, record: str) -> None:
        """Replace the current entity record and append ``record`` to its summary history."""

    @abstractmethod
    def load_summaries(self, entity_id: str) -> List[str]:
        pass

    @abstractmethod
    def push_feedback(self, rule_id: str, record: str) -> None:
        pass

    @abstractmethod
    def load_feedback(self, rule_id: str) -> List[str]:
        pass


class InMemoryBackend(StorageBackend):
    """Process-local backend.

    Writers serialize on one lock. Readers never take it: every structure a
    reader touches is either immutable once written or replaced wholesale,
    so a reader always sees a consistent snapshot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._bodies: Dict[str, str] = {}
        self._state: Dict[str, Tuple[str, Optional[str]]] = {}
        self._log: Tuple[Tuple[int, str], ...] = ()
        self._by_entity: Dict[str, Tuple[Tuple[int, str], ...]] = {}
        self._last_micros = 0
        self._entities: Dict[str, str] = {}
        self._summaries: Dict[str, Tuple[str, ...]] = {}
        self._feedback: Dict[str, Tuple[str, ...]] = {}

    def _assign(self, edge: Edge, now_micros: int, pinned_micros: Optional[int]) -> int:
        if pinned_micros is not None:
            micros = pinned_micros
            if edge_id_for(micros) in self._bodies:
                raise ConflictError(edge_id_for(micros))
        else:
            micros = self.next_transaction_micros(now_micros)
        edge.edge_id = edge_id_for(micros)
        edge.transaction_time = from_micros(micros)
        return micros

    def next_transaction_micros(self, now_micros: int) -> int:
        return max(now_micros, self._last_micros + 1)

    def _write(self, edge: Edge, micros: int) -> None:
        self._state[edge.edge_id] = (edge.status, None)
        self._bodies[edge.edge_id] = edge.body()

        log = list(self._log)
        bisect.insort(log, (micros, edge.edge_id))
        self._log = tuple(log)

        for entity_id in edge.entities:
            entries = list(self._by_entity.get(entity_id, ()))
            bisect.insort(entries, (micros, edge.edge_id))
            self._by_entity[entity_id] = tuple(entries)

        self._last_micros = max(self._last_micros, micros)

    def insert_edge(self, edge: Edge, now_micros: int, pinned_micros: Optional[int] = None,
                    guard: Optional[Tuple[str, int]] = None) -> Edge:
        with self._lock:
            if guard is not None:
                entity_id, expected = guard
                actual = len(self._by_entity.get(entity_id, ()))
                if actual != expected:
                    raise StaleReadError(entity_id, expected, actual)
            micros = self._assign(edge, now_micros, pinned_micros)
            edge.status = EdgeStatusConst.ACTIVE
            edge.superseded_by = None
            self._write(edge, micros)
        return edge

    def swap_edge(self, old_edge_id: str, new_edge: Edge, now_micros: int) -> Edge:
        with self._lock:
            state = self._state.get(old_edge_id)
            if state is None:
                raise EdgeNotFoundError(old_edge_id)
            status, superseded_by = state
            if status != EdgeStatusConst.ACTIVE:
                raise AlreadyInvalidatedError(old_edge_id, superseded_by)

            micros = self._assign(new_edge, now_micros, None)
            new_edge.supersedes = old_edge_id
            new_edge.status = EdgeStatusConst.ACTIVE
            new_edge.superseded_by = None
            self._write(new_edge, micros)
            self._state[old_edge_id] = (EdgeStatusConst.INVALIDATED, new_edge.edge_id)
        return new_edge

    def load_edge(self, edge_id: str) -> Optional[Edge]:
        body = self._bodies.get(edge_id)
        if body is None:
            return None
        status, superseded_by = self._state[edge_id]
        return Edge.from_record(body, status, superseded_by)

    def edge_ids(self, max_micros: Optional[int] = None) -> List[str]:
        log = self._log
        if max_micros is None:
            return [edge_id for _, edge_id in log]
        return [edge_id for micros, edge_id in log if micros <= max_micros]

    def entity_edge_ids(self, entity_id: str, start: int = 0) -> List[str]:
        return [edge_id for _, edge_id in self._by_entity.get(entity_id, ())[start:]]

    def entity_edge_count(self, entity_id: str) -> int:
        return len(self._by_entity.get(entity_id, ()))

    def put_entity(self, entity: Entity) -> bool:
        with self._lock:
            if entity.entity_id in self._entities:
                return False
            record = json.dumps(entity.to_dict(), sort_keys=True)
            self._entities[entity.entity_id] = record
            if entity.summary:
                self._summaries[entity.entity_id] = (record,)
            return True

    def load_entity(self, entity_id: str) -> Optional[Entity]:
        record = self._entities.get(entity_id)
        return Entity.from_dict(json.loads(record)) if record else None

    def entity_ids(self) -> List[str]:
        return list(self._entities.keys())

    def push_summary(self, entity: Entity, record: str) -> None:
        with self._lock:
            self._entities[entity.entity_id] = json.dumps(entity.to_dict(), sort_keys=True)
            self._summaries[entity.entity_id] = self._summaries.get(entity.entity_id, ()) + (record,)

    def load_summaries(self, entity_id: str) -> List[str]:
        return list(self._summaries.get(entity_id, ()))

    def push_feedback(self, rule_id: str, record: str) -> None:
        with self._lock:
            self._feedback[rule_id] = self._feedback.get(rule_id, ()) + (record,)

    def load_feedback(self, rule_id: str) -> List[str]:
        return list(self._feedback.get(rule_id, ()))


def _s(value) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode()
    return value


class RedisBackend(StorageBackend):
    """Redis-backed storage shared by every process pointing at the same server.

    Writes run as WATCH/MULTI transactions on the transaction clock key, so
    concurrent appends get distinct, increasing transaction times and a
    contested invalidation has exactly one winner.
    """

    def __init__(self, redis_client: redis.Redis, max_watch_retries: int = 50):
        self.redis = redis_client
        self.max_watch_retries = max_watch_retries

    def _stage_edge(self, pipe, edge: Edge, micros: int, last_micros: int) -> None:
        edge_key = RedisKeys.edge(edge.edge_id)
        pipe.hset(edge_key, mapping={
            'body': edge.body(),
            'status': EdgeStatusConst.ACTIVE,
            'superseded_by': '',
        })
        pipe.zadd(RedisKeys.EDGES_LOG, {edge.edge_id: micros})
        for entity_id in edge.entities:
            pipe.zadd(RedisKeys.entity_edges(entity_id), {edge.edge_id: micros})
        pipe.set(RedisKeys.TXN_CLOCK, max(last_micros, micros))

    def _transact(self, operation: str, attempt_fn):
        """Run ``attempt_fn(pipe)`` until it commits without a WATCH conflict."""
        try:
            with self.redis.pipeline() as pipe:
                for _ in range(self.max_watch_retries):
                    try:
                        return attempt_fn(pipe)
                    except WatchError:
                        continue
        except RedisError as e:
            raise StorageError(f"{operation} failed: {e}") from e
        raise StorageError(f"{operation} gave up after {self.max_watch_retries} contended attempts")

    def next_transaction_micros(self, now_micros: int) -> int:
        try:
            last_micros = int(_s(self.redis.get(RedisKeys.TXN_CLOCK)) or 0)
        except RedisError as e:
            raise StorageError(f"next_transaction_micros failed: {e}") from e
        return max(now_micros, last_micros + 1)

    def _claim_micros(self, pipe, edge: Edge, now_micros: int, pinned_micros: Optional[int]) -> Tuple[int, int]:
        last_micros = int(_s(pipe.get(RedisKeys.TXN_CLOCK)) or 0)
        micros = pinned_micros if pinned_micros is not None else max(now_micros, last_micros + 1)
        edge_id = edge_id_for(micros)
        pipe.watch(RedisKeys.edge(edge_id))
        if pipe.exists(RedisKeys.edge(edge_id)):
            raise ConflictError(edge_id)
        edge.edge_id = edge_id
        edge.transaction_time = from_micros(micros)
        edge.status = EdgeStatusConst.ACTIVE
        edge.superseded_by = None
        return micros, last_micros

    def insert_edge(self, edge: Edge, now_micros: int, pinned_micros: Optional[int] = None,
                    guard: Optional[Tuple[str, int]] = None) -> Edge:
        def attempt(pipe):
            pipe.watch(RedisKeys.TXN_CLOCK)
            if guard is not None:
                entity_id, expected = guard
                pipe.watch(RedisKeys.entity_edges(entity_id))
                actual = pipe.zcard(RedisKeys.entity_edges(entity_id))
                if actual != expected:
                    raise StaleReadError(entity_id, expected, actual)
            micros, last_micros = self._claim_micros(pipe, edge, now_micros, pinned_micros)
            pipe.multi()
            self._stage_edge(pipe, edge, micros, last_micros)
            pipe.execute()
            return edge

        return self._transact('insert_edge', attempt)

    def swap_edge(self, old_edge_id: str, new_edge: Edge, now_micros: int) -> Edge:
        old_key = RedisKeys.edge(old_edge_id)

        def attempt(pipe):
            pipe.watch(RedisKeys.TXN_CLOCK, old_key)
            status, superseded_by = (_s(v) for v in pipe.hmget(old_key, 'status', 'superseded_by'))
            if status is None:
                raise EdgeNotFoundError(old_edge_id)
            if status != EdgeStatusConst.ACTIVE:
                raise AlreadyInvalidatedError(old_edge_id, superseded_by or None)

            new_edge.supersedes = old_edge_id
            micros, last_micros = self._claim_micros(pipe, new_edge, now_micros, None)
            pipe.multi()
            self._stage_edge(pipe, new_edge, micros, last_micros)
            pipe.hset(old_key, mapping={
                'status': EdgeStatusConst.INVALIDATED,
                'superseded_by': new_edge.edge_id,
            })
            pipe.execute()
            return new_edge

        return self._transact('swap_edge', attempt)

    def _decode_edge(self, edge_id: str, fields) -> Optional[Edge]:
        body, status, superseded_by = (_s(v) for v in fields)
        if body is None:
            return None
        try:
            return Edge.from_record(body, status, superseded_by)
        except (ValueError, KeyError) as e:
            raise StorageError(f"Corrupt edge record {edge_id}: {e}") from e

    def load_edge(self, edge_id: str) -> Optional[Edge]:
        fields = self.redis.hmget(RedisKeys.edge(edge_id), 'body', 'status', 'superseded_by')
        return self._decode_edge(edge_id, fields)

    def load_edges(self, edge_ids: Iterable[str]) -> List[Edge]:
        edge_ids = list(edge_ids)
        if not edge_ids:
            return []
        pipe = self.redis.pipeline(transaction=False)
        for edge_id in edge_ids:
            pipe.hmget(RedisKeys.edge(edge_id), 'body', 'status', 'superseded_by')
        edges = []
        for edge_id, fields in zip(edge_ids, pipe.execute()):
            edge = self._decode_edge(edge_id, fields)
            if edge is not None:
                edges.append(edge)
        return edges

    def edge_ids(self, max_micros: Optional[int] = None) -> List[str]:
        upper = '+inf' if max_micros is None else max_micros
        return [_s(v) for v in self.redis.zrangebyscore(RedisKeys.EDGES_LOG, '-inf', upper)]

    def entity_edge_ids(self, entity_id: str, start: int = 0) -> List[str]:
        return [_s(v) for v in self.redis.zrange(RedisKeys.entity_edges(entity_id), start, -1)]

    def entity_edge_count(self, entity_id: str) -> int:
        return int(self.redis.zcard(RedisKeys.entity_edges(entity_id)))

    def put_entity(self, entity: Entity) -> bool:
        record = json.dumps(entity.to_dict(), sort_keys=True)
        created = bool(self.redis.hsetnx(RedisKeys.ENTITIES, entity.entity_id, record))
        if created and entity.summary:
            self.redis.rpush(RedisKeys.summaries(entity.entity_id), record)
        return created

    def load_entity(self, entity_id: str) -> Optional[Entity]:
        record = _s(self.redis.hget(RedisKeys.ENTITIES, entity_id))
        return Entity.from_dict(json.loads(record)) if record else None

    def entity_ids(self) -> List[str]:
        return [_s(v) for v in self.redis.hkeys(RedisKeys.ENTITIES)]

    def push_summary(self, entity: Entity, record: str) -> None:
        pipe = self.redis.pipeline()
        pipe.hset(RedisKeys.ENTITIES, entity.entity_id, json.dumps(entity.to_dict(), sort_keys=True))
        pipe.rpush(RedisKeys.summaries(entity.entity_id), record)
        pipe.execute()

    def load_summaries(self, entity_id: str) -> List[str]:
        return [_s(v) for v in self.redis.lrange(RedisKeys.summaries(entity_id), 0, -1)]

    def push_feedback(self, rule_id: str, record: str) -> None:
        self.redis.rpush(RedisKeys.feedback(rule_id), record)

    def load_feedback(self, rule_id: str) -> List[str]:
        return [_s(v) for v in self.redis.lrange(RedisKeys.feedback(rule_id), 0, -1)]
