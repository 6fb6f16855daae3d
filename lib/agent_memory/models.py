"""Memory data model - entities, edges, rules, feedback and proposals.

An Edge is split into an immutable body (everything a caller asserted plus
the transaction time) and a mutable state (``status``, ``superseded_by``).
Only the Invalidation Engine ever changes the state; the body is serialized
once and read back byte-for-byte.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .constants import EdgeStatusConst

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_micros(value: datetime) -> int:
    return (ensure_utc(value) - EPOCH) // timedelta(microseconds=1)


def from_micros(micros: int) -> datetime:
    return EPOCH + timedelta(microseconds=int(micros))


def edge_id_for(transaction_micros: int) -> str:
    return f"edge-{transaction_micros:016d}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


class EdgeKind(Enum):
    FACT = "fact"
    OBSERVATION = "observation"
    RULE = "rule"
    WARNING = "warning"
    RETIRED = "retired"


class EdgeStatus(Enum):
    ACTIVE = EdgeStatusConst.ACTIVE
    INVALIDATED = EdgeStatusConst.INVALIDATED


class RuleScope(Enum):
    """Lifecycle of a rule.

    USER rules persist indefinitely, SESSION rules retire when their session
    ends, AGENT rules retire when the named agent's identity changes.
    """
    USER = "user"
    SESSION = "session"
    AGENT = "agent"


class Polarity(Enum):
    HELPFUL = "helpful"
    HARMFUL = "harmful"


class RejectionReason(Enum):
    """Expected, non-exceptional curation outcomes."""
    UNCORROBORATED = "uncorroborated"
    SCHEMA_INVALID = "schema_invalid"
    CONTRADICTED = "contradicted"


# Kinds a proposer may submit; warnings and retirements are engine-made.
PROPOSABLE_KINDS = (EdgeKind.FACT.value, EdgeKind.OBSERVATION.value, EdgeKind.RULE.value)
SCORED_KINDS = (EdgeKind.RULE.value, EdgeKind.WARNING.value)


@dataclass
class Entity:
    """A named thing the memory is about."""
    entity_id: str
    entity_type: str = "unknown"
    summary: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "summary": self.summary,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Entity':
        return cls(
            entity_id=data["entity_id"],
            entity_type=data.get("entity_type", "unknown"),
            summary=data.get("summary", ""),
            created_at=_parse(data.get("created_at")),
        )


@dataclass
class Edge:
    """A directed, bi-temporal relationship from a subject entity.

    The object is either another entity (``target``) or a literal
    (``value``). Rules additionally carry ``scope`` and ``scope_ref``.
    """
    subject: str
    relation: str
    text: str = ""
    target: Optional[str] = None
    value: Optional[str] = None
    kind: str = EdgeKind.FACT.value
    valid_time: Optional[datetime] = None
    scope: Optional[str] = None
    scope_ref: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    edge_id: Optional[str] = None
    transaction_time: Optional[datetime] = None
    supersedes: Optional[str] = None
    status: str = EdgeStatus.ACTIVE.value
    superseded_by: Optional[str] = None

    def __hash__(self) -> int:
        return hash(self.edge_id)

    @property
    def is_active(self) -> bool:
        return self.status == EdgeStatus.ACTIVE.value

    @property
    def is_rule(self) -> bool:
        return self.kind == EdgeKind.RULE.value

    @property
    def entities(self) -> Tuple[str, ...]:
        if self.target:
            return (self.subject, self.target)
        return (self.subject,)

    @property
    def obj(self) -> Optional[str]:
        """The object of the relationship, entity or literal."""
        return self.target if self.target is not None else self.value

    def content(self) -> str:
        """Searchable text of the edge."""
        parts = [self.subject, self.relation.replace("_", " ")]
        if self.obj:
            parts.append(str(self.obj))
        if self.text:
            parts.append(self.text)
        return " ".join(parts)

    def one_line(self) -> str:
        if self.text:
            return " ".join(self.text.split())
        return " ".join(self.content().split())

    def body(self) -> str:
        """Serialize the immutable part. Stable across reads."""
        return json.dumps({
            "edge_id": self.edge_id,
            "subject": self.subject,
            "relation": self.relation,
            "text": self.text,
            "target": self.target,
            "value": self.value,
            "kind": self.kind,
            "valid_time": _iso(self.valid_time),
            "transaction_time": _iso(self.transaction_time),
            "scope": self.scope,
            "scope_ref": self.scope_ref,
            "supersedes": self.supersedes,
            "metadata": self.metadata,
        }, sort_keys=True)

    @classmethod
    def from_record(cls, body: str, status: str, superseded_by: Optional[str]) -> 'Edge':
        data = json.loads(body)
        return cls(
            edge_id=data["edge_id"],
            subject=data["subject"],
            relation=data["relation"],
            text=data.get("text", ""),
            target=data.get("target"),
            value=data.get("value"),
            kind=data.get("kind", EdgeKind.FACT.value),
            valid_time=_parse(data.get("valid_time")),
            transaction_time=_parse(data.get("transaction_time")),
            scope=data.get("scope"),
            scope_ref=data.get("scope_ref"),
            supersedes=data.get("supersedes"),
            metadata=data.get("metadata") or {},
            status=status,
            superseded_by=superseded_by or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = json.loads(self.body())
        data["status"] = self.status
        data["superseded_by"] = self.superseded_by
        return data


@dataclass
class FeedbackEvent:
    """One helpful/harmful judgement of a rule. Never edited once logged."""
    rule_id: str
    polarity: str
    timestamp: datetime
    source: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({
            "rule_id": self.rule_id,
            "polarity": self.polarity,
            "timestamp": _iso(self.timestamp),
            "source": self.source,
        }, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> 'FeedbackEvent':
        data = json.loads(raw)
        return cls(
            rule_id=data["rule_id"],
            polarity=data["polarity"],
            timestamp=_parse(data["timestamp"]),
            source=data.get("source"),
        )


@dataclass
class ProposedFact:
    """A not-yet-admitted candidate from an external generator."""
    subject: str
    relation: str
    text: str = ""
    kind: str = EdgeKind.FACT.value
    target: Optional[str] = None
    value: Optional[str] = None
    valid_time: Optional[datetime] = None
    scope: Optional[str] = None
    scope_ref: Optional[str] = None
    evidence: List[str] = field(default_factory=list)
    entity_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    proposer: Optional[str] = None

    def to_edge(self) -> Edge:
        metadata = dict(self.metadata)
        if self.proposer:
            metadata.setdefault("proposer", self.proposer)
        if self.evidence:
            metadata.setdefault("evidence", list(self.evidence))
        scope = self.scope
        if self.kind == EdgeKind.RULE.value and scope is None:
            scope = RuleScope.USER.value
        return Edge(
            subject=self.subject,
            relation=self.relation,
            text=self.text,
            target=self.target,
            value=self.value,
            kind=self.kind,
            valid_time=self.valid_time,
            scope=scope,
            scope_ref=self.scope_ref,
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["valid_time"] = _iso(self.valid_time)
        return data


@dataclass
class Admission:
    """Outcome of a curation decision."""
    accepted: bool
    edge_id: Optional[str] = None
    reason: Optional[RejectionReason] = None
    detail: str = ""
    superseded: Optional[str] = None

    @classmethod
    def ok(cls, edge_id: str, superseded: Optional[str] = None, detail: str = "") -> 'Admission':
        return cls(accepted=True, edge_id=edge_id, superseded=superseded, detail=detail)

    @classmethod
    def reject(cls, reason: RejectionReason, detail: str) -> 'Admission':
        return cls(accepted=False, reason=reason, detail=detail)
