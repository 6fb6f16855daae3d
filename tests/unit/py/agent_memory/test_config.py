"""Tests for MemoryConfig loading."""

import json

import pytest

from agent_memory.config import MemoryConfig
from agent_memory.constants import DEFAULT_CONTRADICTIONS, Defaults


class TestMemoryConfig:
    """Tests for defaults, files and environment."""

    def test_defaults(self):
        config = MemoryConfig()
        assert config.redis_url is None
        assert config.half_life_days == Defaults.HALF_LIFE_DAYS == 90.0
        assert config.loss_aversion == 4.0
        assert config.rrf_k == 60
        assert config.graph_depth == 2
        assert config.contradictions == DEFAULT_CONTRADICTIONS

    def test_load_json(self, tmp_path):
        path = tmp_path / "memory.json"
        path.write_text(json.dumps({"half_life_days": 30, "rrf_k": 10}))

        config = MemoryConfig.load(str(path))
        assert config.half_life_days == 30
        assert config.rrf_k == 10
        assert config.loss_aversion == 4.0

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "memory.yaml"
        path.write_text(
            "redis_url: redis://cache:6379/2\n"
            "min_corroboration: 2\n"
            "contradictions:\n"
            "  enables: disables\n"
        )

        config = MemoryConfig.load(str(path))
        assert config.redis_url == "redis://cache:6379/2"
        assert config.min_corroboration == 2
        assert config.contradictions == {"enables": "disables"}

    def test_empty_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "memory.yml"
        path.write_text("")
        assert MemoryConfig.load(str(path)) == MemoryConfig()

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="half_life"):
            MemoryConfig.from_dict({"half_life": 30})

    @pytest.mark.parametrize("field,value", [
        ("half_life_days", 0),
        ("loss_aversion", -1),
        ("rrf_k", 0),
        ("graph_depth", -1),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValueError):
            MemoryConfig(**{field: value})

    def test_from_env(self):
        config = MemoryConfig.from_env({
            "AGENT_MEMORY_REDIS_URL": "redis://localhost:6380",
            "AGENT_MEMORY_HALF_LIFE_DAYS": "45.5",
            "AGENT_MEMORY_LOSS_AVERSION": "2",
            "AGENT_MEMORY_MIN_CORROBORATION": "3",
            "AGENT_MEMORY_GRAPH_DEPTH": "1",
            "AGENT_MEMORY_RRF_K": "30",
            "AGENT_MEMORY_SWEEP_INTERVAL": "120",
            "AGENT_MEMORY_SWEEP_THRESHOLD": "-0.5",
            "AGENT_MEMORY_REJECT_SECRETS": "false",
            "UNRELATED": "ignored",
        })
        assert config.redis_url == "redis://localhost:6380"
        assert config.half_life_days == 45.5
        assert config.loss_aversion == 2.0
        assert config.min_corroboration == 3
        assert config.graph_depth == 1
        assert config.rrf_k == 30
        assert config.sweep_interval == 120
        assert config.sweep_threshold == -0.5
        assert config.reject_secrets is False

    def test_from_env_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("AGENT_MEMORY_RRF_K", "7")
        assert MemoryConfig.from_env().rrf_k == 7

    def test_default_config_round_trips(self):
        assert MemoryConfig.from_dict(MemoryConfig().to_dict()) == MemoryConfig()
