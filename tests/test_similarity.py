"""
Tests for track and user similarity.
"""

import threading
from datetime import datetime, timedelta

import pandas as pd
import pytest

from music_rec_engine.similarity import (
    SimilarityCache,
    TrackSimilarity,
    UserSimilarity,
    build_session_index,
    genre_cosine,
    validate_genre_weights,
)
from music_rec_engine.storage import SignalStore


class TestGenreCosine:
    """Tests for genre cosine similarity."""

    def test_identical(self):
        """Test identical genre vectors."""
        assert genre_cosine({"rock": 1.0}, {"rock": 0.5}) == pytest.approx(1.0)

    def test_disjoint(self):
        """Test vectors without shared genres."""
        assert genre_cosine({"rock": 1.0}, {"jazz": 1.0}) == 0.0

    def test_empty(self):
        """Test untagged tracks."""
        assert genre_cosine({}, {"jazz": 1.0}) == 0.0

    def test_partial_overlap(self):
        """Test partially overlapping vectors."""
        value = genre_cosine({"synthwave": 1.0, "electronic": 0.5}, {"synthwave": 1.0})

        assert 0.0 < value < 1.0

    def test_malformed_weight_rejected(self):
        """Test that weights outside [0, 1] raise."""
        with pytest.raises(ValueError):
            validate_genre_weights("t1", {"rock": 1.5})
        with pytest.raises(ValueError):
            validate_genre_weights("t1", {"rock": float("nan")})


class TestSessionIndex:
    """Tests for listening session detection."""

    def test_gap_splits_sessions(self):
        """Test that a long gap starts a new session."""
        start = datetime(2024, 1, 1, 12, 0)
        events = pd.DataFrame({
            "user_id": ["u", "u", "u"],
            "track_id": ["a", "b", "c"],
            "played_at": [start, start + timedelta(minutes=5), start + timedelta(hours=2)],
            "completion_percentage": [0.9, 0.9, 0.9],
        })

        index = build_session_index(events, 0.5, 30)

        assert index["a"] == index["b"]
        assert index["a"] != index["c"]

    def test_users_never_share_sessions(self):
        """Test that plays by different users fall into different sessions."""
        start = datetime(2024, 1, 1, 12, 0)
        events = pd.DataFrame({
            "user_id": ["u", "v"],
            "track_id": ["a", "b"],
            "played_at": [start, start],
            "completion_percentage": [0.9, 0.9],
        })

        index = build_session_index(events, 0.5, 30)

        assert not index["a"] & index["b"]

    def test_partial_plays_ignored(self):
        """Test that plays at or below the threshold are not session members."""
        start = datetime(2024, 1, 1, 12, 0)
        events = pd.DataFrame({
            "user_id": ["u", "u"],
            "track_id": ["a", "b"],
            "played_at": [start, start + timedelta(minutes=1)],
            "completion_percentage": [0.9, 0.5],
        })

        index = build_session_index(events, 0.5, 30)

        assert "b" not in index


class TestSimilarityCache:
    """Tests for the copy-on-write cache."""

    def test_get_and_update(self):
        """Test publishing and reading entries."""
        cache = SimilarityCache()
        assert cache.get(("v", "a", "b")) is None

        cache.update({("v", "a", "b"): 0.5})

        assert cache.get(("v", "a", "b")) == 0.5
        assert cache.hits == 1
        assert cache.misses == 1

    def test_size_bound(self):
        """Test that the cache starts over instead of growing past its limit."""
        cache = SimilarityCache(max_entries=3)
        cache.update({("v", "a", str(i)): 0.1 for i in range(3)})
        cache.update({("v", "b", "x"): 0.2})

        assert len(cache) == 1

    def test_concurrent_writers(self):
        """Test that concurrent updates are all published."""
        cache = SimilarityCache()

        def write(prefix):
            for i in range(50):
                cache.update({("v", prefix, str(i)): 0.5})

        threads = [threading.Thread(target=write, args=(p,)) for p in "abcd"]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 200


class TestTrackSimilarity:
    """Tests for TrackSimilarity class."""

    @pytest.fixture
    def snapshot(self, config, database, now):
        """Snapshot without a user."""
        return SignalStore(database, config).snapshot(now=now)

    def test_symmetric_and_bounded(self, config, snapshot):
        """Test symmetry and range."""
        similarity = TrackSimilarity(snapshot, config)

        for a, b in [("t01", "t02"), ("t06", "t08"), ("t05", "t10")]:
            value = similarity.similarity(a, b)
            assert 0.0 <= value <= 1.0
            assert value == similarity.similarity(b, a)

    def test_self_similarity(self, config, snapshot):
        """Test that a track is fully similar to itself."""
        assert TrackSimilarity(snapshot, config).similarity("t01", "t01") == 1.0

    def test_same_genre_more_similar(self, config, snapshot):
        """Test that sharing a genre ranks above not sharing one."""
        similarity = TrackSimilarity(snapshot, config)

        assert similarity.similarity("t01", "t04") > similarity.similarity("t01", "t09")

    def test_colistening(self, config, snapshot):
        """Test co-listening within sessions."""
        similarity = TrackSimilarity(snapshot, config)

        assert similarity.colisten_similarity("t06", "t08") > 0.0
        assert similarity.colisten_similarity("t01", "t02") == 0.0

    def test_missing_audio_features(self, config, snapshot):
        """Test that missing audio features drop the audio component."""
        similarity = TrackSimilarity(snapshot, config)

        assert similarity.audio_similarity("t09", "t10") is None
        assert similarity.audio_similarity("t01", "t01") == pytest.approx(1.0)

    def test_flush_publishes_to_cache(self, config, snapshot):
        """Test that computed values reach the shared cache on flush."""
        cache = SimilarityCache()
        similarity = TrackSimilarity(snapshot, config, cache)

        value = similarity.similarity("t02", "t01")
        assert len(cache) == 0

        similarity.flush()

        assert cache.get((snapshot.version, "t01", "t02")) == value


class TestUserSimilarity:
    """Tests for UserSimilarity class."""

    @pytest.fixture
    def users(self, config, database, now):
        """User similarity over the full history."""
        return UserSimilarity(SignalStore(database, config).snapshot(now=now), config)

    def test_user_matrix(self, users):
        """Test counted plays and love weights."""
        matrix = users.user_matrix()

        assert matrix.at["u1", "t06"] == 3.0
        assert matrix.at["u1", "t05"] == 2.0
        assert matrix.at["u1", "t13"] == 0.0
        assert "t12" not in matrix.columns

    def test_nearest_neighbors(self, users):
        """Test neighbours share tracks and are ordered by similarity."""
        neighbors = users.nearest_neighbors("u1", k=20)
        ids = [user_id for user_id, _ in neighbors]

        assert set(ids) == {"u2", "u3"}
        sims = [sim for _, sim in neighbors]
        assert sims == sorted(sims, reverse=True)
        assert all(0.0 < sim <= 1.0 for sim in sims)

    def test_no_neighbors_without_overlap(self, users):
        """Test that a user sharing no tracks has no neighbours."""
        assert users.nearest_neighbors("u4", k=20) == []

    def test_unknown_user(self, users):
        """Test a user absent from the matrix."""
        assert users.nearest_neighbors("nobody", k=20) == []
