"""
Tests for the configuration module.
"""

import os
import tempfile

import pytest
import yaml

from music_rec_engine.config import Config, get_config, set_config


class TestConfig:
    """Tests for Config class."""

    @pytest.fixture
    def temp_dir(self):
        """Create temporary directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    def test_defaults(self):
        """Test built-in defaults."""
        config = Config()

        assert config.play_threshold == 0.5
        assert config.max_limit == 50
        assert config.get("persistence.ttl_hours") == 24
        assert config.get("blender.hybrid_min_share") == 0.15
        assert config.trending_periods["all_time"] is None
        assert config.trending_periods["last_7_days"] == 7

    def test_strategy_weights(self):
        """Test weight presets."""
        config = Config()

        assert config.strategy_weights("personalized") == {
            "collaborative": 0.4,
            "content_based": 0.4,
            "popularity": 0.2,
        }
        assert config.strategy_weights("trending") == {"popularity": 1.0}
        assert config.strategy_weights("unknown") == {}

    def test_get_missing(self):
        """Test default values for missing keys."""
        config = Config()

        assert config.get("nope.nothing", "fallback") == "fallback"
        assert config.get("engine.max_workers.deeper", 3) == 3

    def test_set(self):
        """Test setting nested values."""
        config = Config()
        config.set("engine.request_budget_ms", 0)
        config.set("new_section.value", "x")

        assert config.get("engine.request_budget_ms") == 0
        assert config.get("new_section.value") == "x"

    def test_file_merges_over_defaults(self, temp_dir):
        """Test that a partial YAML file keeps the other defaults."""
        path = os.path.join(temp_dir, "config.yaml")
        with open(path, "w") as f:
            yaml.dump({"discovery": {"min_rating": 4.0}, "database": {"url": "sqlite:///x.db"}}, f)

        config = Config(path)

        assert config.get("discovery.min_rating") == 4.0
        assert config.get("discovery.play_count_percentile") == 25
        assert config.database_url == "sqlite:///x.db"

    def test_save_and_reload(self, temp_dir):
        """Test saving configuration."""
        path = os.path.join(temp_dir, "nested", "config.yaml")
        config = Config()
        config.set("content.top_n_seeds", 5)
        config.save(path)

        assert Config(path).get("content.top_n_seeds") == 5

    def test_global_config(self):
        """Test the process-wide instance."""
        config = Config()
        config.set("api.port", 9000)
        set_config(config)

        assert get_config() is config
        assert get_config().get("api.port") == 9000
