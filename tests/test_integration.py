"""
Integration tests for the batch pipeline and CLI.
"""

import json
import os
import tempfile

import pytest
from click.testing import CliRunner

from music_rec_engine.cli import cli
from music_rec_engine.database import Database
from music_rec_engine.pipeline import Pipeline
from music_rec_engine.recommender import RecommendationEngine


class TestPipeline:
    """Tests for batch generation."""

    @pytest.fixture
    def pipeline(self, config, database, engine):
        """Pipeline sharing the seeded database."""
        return Pipeline(config, database, engine)

    def test_run_generation_all_active_users(self, pipeline):
        """Test generating for every active user."""
        summary = pipeline.run_generation(limit=5, show_progress=False)

        assert summary["users_processed"] == 4
        assert summary["users_failed"] == 0
        assert summary["recommendations_generated"] == 20

        stats = pipeline.get_statistics()
        assert stats["total_recommendations"] == 20
        assert stats["active_users"] == 4
        assert "cache_entries" in stats

    def test_failures_isolated_per_user(self, pipeline, monkeypatch):
        """Test that one failing user does not stop the batch."""
        original = pipeline.store.generate

        def flaky(user_id, **kwargs):
            if user_id == "u2":
                raise RuntimeError("boom")
            return original(user_id, **kwargs)

        monkeypatch.setattr(pipeline.store, "generate", flaky)

        summary = pipeline.run_generation(["u1", "u2", "u3"], limit=3, show_progress=False)

        assert summary["users_processed"] == 2
        assert summary["users_failed"] == 1
        assert "u2" in summary["failures"]
        assert summary["recommendations_generated"] == 6


class TestCLI:
    """Tests for the click commands over a file database."""

    @pytest.fixture
    def db_url(self, config, seed):
        """Seeded SQLite file database."""
        with tempfile.TemporaryDirectory() as tmpdir:
            url = f"sqlite:///{os.path.join(tmpdir, 'rec.db')}"
            database = Database(config, url=url)
            database.create_all()
            seed(database)
            yield url
            database.engine.dispose()

    def _invoke(self, db_url, *args):
        runner = CliRunner()
        return runner.invoke(cli, ["--database-url", db_url, "--log-level", "WARNING", *args], obj={})

    def test_init_db(self, db_url):
        """Test table creation."""
        result = self._invoke(db_url, "init-db")

        assert result.exit_code == 0
        assert "Database ready" in result.output

    def test_trending_json(self, db_url):
        """Test trending output."""
        result = self._invoke(db_url, "trending", "--period", "all_time", "--limit", "3", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [item["track_id"] for item in data][0] == "t07"

    def test_discover(self, db_url):
        """Test discovery output."""
        result = self._invoke(db_url, "discover")

        assert result.exit_code == 0
        assert "Blue Note" in result.output

    def test_invalid_limit(self, db_url):
        """Test that invalid parameters exit non-zero."""
        result = self._invoke(db_url, "recommend", "u1", "--limit", "500")

        assert result.exit_code == 1
        assert "limit" in result.output

    def test_generate_consume_stats(self, db_url):
        """Test the batch, consume and stats commands together."""
        generated = self._invoke(db_url, "generate", "--limit", "2", "--no-progress")
        assert generated.exit_code == 0
        assert "Recommendations generated: 8" in generated.output

        consumed = self._invoke(db_url, "consume", "u1", "t99")
        assert consumed.exit_code == 0
        assert "Marked 0 recommendation(s) consumed" in consumed.output

        stats = self._invoke(db_url, "stats")
        assert stats.exit_code == 0
        assert "Total recommendations: 8" in stats.output

    def test_playlist(self, db_url):
        """Test playlist output."""
        result = self._invoke(db_url, "playlist", "Evening", "--minutes", "20", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total_duration_seconds"] <= 20 * 60 * 1.10


def test_engine_shared_cache_reused(config, database, now):
    """Test that repeated requests hit the shared similarity cache."""
    engine = RecommendationEngine(config, database=database)
    try:
        engine.get_recommendations("u1", now=now)
        misses = engine.cache.misses
        engine.get_recommendations("u1", now=now)
    finally:
        engine.close()

    assert engine.cache.hits > 0
    assert engine.cache.misses == misses
