"""Memory Engine Configuration - schema and loading"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .constants import DEFAULT_CONTRADICTIONS, Defaults

ENV_PREFIX = "AGENT_MEMORY_"


@dataclass
class MemoryConfig:
    """Complete engine configuration.

    ``redis_url`` of None selects the in-process backend.
    """
    redis_url: Optional[str] = None
    half_life_days: float = Defaults.HALF_LIFE_DAYS
    loss_aversion: float = Defaults.LOSS_AVERSION
    sweep_threshold: float = Defaults.SWEEP_THRESHOLD
    sweep_interval: int = Defaults.SWEEP_INTERVAL
    min_corroboration: int = Defaults.MIN_CORROBORATION
    min_shared_terms: int = Defaults.CORROBORATION_MIN_SHARED_TERMS
    max_conflict_retries: int = Defaults.MAX_CONFLICT_RETRIES
    graph_depth: int = Defaults.GRAPH_DEPTH
    rrf_k: int = Defaults.RRF_K
    candidates_per_signal: int = Defaults.CANDIDATES_PER_SIGNAL
    retrieve_limit: int = Defaults.RETRIEVE_LIMIT
    compact_token_budget: int = Defaults.COMPACT_TOKEN_BUDGET
    detail_token_budget: int = Defaults.DETAIL_TOKEN_BUDGET
    expand_window: int = Defaults.EXPAND_WINDOW
    reject_secrets: bool = True
    contradictions: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CONTRADICTIONS))

    def __post_init__(self):
        if self.half_life_days <= 0:
            raise ValueError(f"half_life_days must be positive, got {self.half_life_days}")
        if self.loss_aversion < 0:
            raise ValueError(f"loss_aversion must not be negative, got {self.loss_aversion}")
        if self.rrf_k <= 0:
            raise ValueError(f"rrf_k must be positive, got {self.rrf_k}")
        if self.graph_depth < 0:
            raise ValueError(f"graph_depth must not be negative, got {self.graph_depth}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MemoryConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def load(cls, path: str) -> 'MemoryConfig':
        """Load config from a JSON or YAML file (by extension)."""
        path = Path(path)
        with open(path, 'r') as f:
            if path.suffix in ('.yaml', '.yml'):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'MemoryConfig':
        """Build a config from ``AGENT_MEMORY_*`` variables over the defaults."""
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or f.name == 'contradictions':
                continue
            if f.type in (int, 'int'):
                data[f.name] = int(raw)
            elif f.type in (float, 'float'):
                data[f.name] = float(raw)
            elif f.type in (bool, 'bool'):
                data[f.name] = raw.strip().lower() in ('1', 'true', 'yes', 'on')
            else:
                data[f.name] = raw
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
