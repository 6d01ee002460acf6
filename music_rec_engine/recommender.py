"""
Recommendation engine: request orchestration over the signal store,
scoring strategies, blender and playlist generator.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from music_rec_engine.blender import Blender, parse_weights
from music_rec_engine.config import Config
from music_rec_engine.database import Database
from music_rec_engine.errors import EmptyCandidatePool, InvalidParameter, SignalUnavailable
from music_rec_engine.models import Playlist, RankedTrack, Strategy, StrategyResult
from music_rec_engine.playlist import PlaylistGenerator, mood_mask
from music_rec_engine.similarity import SimilarityCache
from music_rec_engine.storage import SignalSnapshot, SignalStore, UserSignals
from music_rec_engine.strategies import build_scorers


logger = logging.getLogger(__name__)


class RecommendationEngine:
    """Hybrid music recommender.

    Each request reads one immutable signal snapshot, runs the four
    strategies concurrently over it and blends whatever finished within
    the request budget.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        database: Optional[Database] = None,
        store: Optional[SignalStore] = None,
        cache: Optional[SimilarityCache] = None,
    ):
        """Initialize engine.

        Args:
            config: Configuration object.
            database: Database to read signals from.
            store: Signal store. Built from ``database`` if None.
            cache: Similarity cache shared across requests.
        """
        self.config = config or Config()
        self.database = database or Database(self.config)
        self.store = store or SignalStore(self.database, self.config)
        self.blender = Blender(self.config)
        self.playlists = PlaylistGenerator(self.config)
        self.cache = cache or SimilarityCache(self.config.get("similarity.cache_size", 200000))

        self.request_budget_ms = self.config.get("engine.request_budget_ms", 500)
        self.exclude_played = self.config.get("engine.exclude_played", True)
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.get("engine.max_workers", 4),
            thread_name_prefix="scorer",
        )

    def close(self) -> None:
        """Release the worker threads."""
        self._executor.shutdown(wait=False)

    # -- parameter handling -------------------------------------------------

    def resolve_weights(
        self,
        weights: Optional[Mapping[str, float]],
        preset: str,
    ) -> Dict[Strategy, float]:
        """Caller weights, or the named preset from config."""
        if weights is None:
            weights = self.config.strategy_weights(preset)
            if not weights:
                weights = self.config.strategy_weights("personalized")
        parsed = parse_weights(weights)
        if not any(w > 0 for w in parsed.values()):
            raise InvalidParameter("weights", "At least one strategy weight must be > 0")
        return parsed

    def resolve_genre(self, genre: Optional[str]) -> Optional[str]:
        """Normalize a genre filter, rejecting genres absent from the catalog."""
        if genre is None or not str(genre).strip():
            return None
        key = str(genre).strip().lower()
        if key not in self.store.known_genres():
            raise InvalidParameter("genre", f"Unknown genre '{genre}'")
        return key

    def resolve_mood(self, mood: Optional[str]) -> Optional[Dict[str, Sequence[float]]]:
        """Audio feature ranges of a named mood."""
        if mood is None or not str(mood).strip():
            return None
        moods = {name.lower(): ranges for name, ranges in self.config.moods.items()}
        key = str(mood).strip().lower()
        if key not in moods:
            raise InvalidParameter(
                "mood", f"Unknown mood '{mood}'; expected one of {sorted(moods)}"
            )
        return moods[key]

    def resolve_period(self, period: Optional[str]) -> Tuple[str, Optional[int]]:
        """Trending period name and its window in days (None = all time)."""
        periods = self.config.trending_periods
        name = period or self.config.get("trending.default_period", "last_7_days")
        if name not in periods:
            raise InvalidParameter(
                "period", f"Unknown period '{name}'; expected one of {sorted(periods)}"
            )
        return name, periods[name]

    # -- snapshot and candidates --------------------------------------------

    def load_snapshot(
        self,
        user_id: Optional[str] = None,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SignalSnapshot:
        """Read the signal snapshot for one request.

        Users without listening history get cold-start signals (ratings
        only) so bans still apply and popularity carries the ranking.
        """
        user = None
        if user_id is not None:
            try:
                user = self.store.load_user_signals(user_id, now=now)
            except SignalUnavailable as e:
                logger.info(f"{e}; degrading to popularity and content signals")
                user = UserSignals.cold_start(user_id, self.store.load_ratings(user_id))
        return self.store.snapshot(user=user, window_days=window_days, now=now)

    def filter_candidates(
        self,
        snapshot: SignalSnapshot,
        genre: Optional[str] = None,
        mood: Optional[Dict[str, Sequence[float]]] = None,
        exclude_listened: bool = False,
    ) -> pd.DataFrame:
        """Candidate tracks after bans and request filters.

        Raises:
            EmptyCandidatePool: If the filters leave nothing to rank.
        """
        candidates = snapshot.candidates
        if exclude_listened and snapshot.user is not None:
            listened = snapshot.user.listened
            if listened:
                candidates = candidates[~candidates.index.isin(listened)]

        if genre is not None:
            tagged = [
                any(g.lower() == genre and w > 0 for g, w in snapshot.track_genres(t).items())
                for t in candidates.index
            ]
            candidates = candidates[pd.Series(tagged, index=candidates.index, dtype=bool)]

        if mood is not None and not candidates.empty:
            candidates = candidates[mood_mask(candidates, mood)]

        if candidates.empty:
            raise EmptyCandidatePool("No candidate tracks left after filtering")
        return candidates

    # -- scoring ------------------------------------------------------------

    def run_strategies(
        self,
        snapshot: SignalSnapshot,
        candidates: pd.DataFrame,
        windowed_popularity: bool = False,
        budget_ms: Optional[int] = None,
    ) -> Dict[Strategy, StrategyResult]:
        """Run all strategies concurrently over the same snapshot.

        Strategies that raise or miss the wall-clock budget are logged and
        left out; the rest are returned.

        Args:
            snapshot: Signal snapshot.
            candidates: Candidate tracks.
            windowed_popularity: Count popularity from windowed events.
            budget_ms: Wall-clock budget; defaults to config, 0 disables.

        Returns:
            Results of the strategies that completed.
        """
        scorers = build_scorers(self.config, self.cache, windowed_popularity)
        futures = {
            self._executor.submit(scorer.score, snapshot, candidates): strategy
            for strategy, scorer in scorers.items()
        }

        budget = self.request_budget_ms if budget_ms is None else budget_ms
        timeout = budget / 1000.0 if budget and budget > 0 else None
        done, pending = wait(futures, timeout=timeout)

        for future in pending:
            future.cancel()
            logger.warning(
                f"Strategy {futures[future].value} exceeded the {budget} ms budget; "
                f"returning partial blend"
            )

        results: Dict[Strategy, StrategyResult] = {}
        for future in done:
            strategy = futures[future]
            try:
                results[strategy] = future.result()
            except Exception as e:
                logger.error(f"Strategy {strategy.value} failed and is excluded: {e}")
        return results

    def rank(
        self,
        snapshot: SignalSnapshot,
        candidates: pd.DataFrame,
        weights: Mapping[Strategy, float],
        windowed_popularity: bool = False,
        budget_ms: Optional[int] = None,
    ) -> List[RankedTrack]:
        """Score and blend candidates into a full ranked list."""
        results = self.run_strategies(snapshot, candidates, windowed_popularity, budget_ms)
        return self.blender.blend(results, weights, snapshot.tracks)

    # -- public operations --------------------------------------------------

    def get_recommendations(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        genre: Optional[str] = None,
        mood: Optional[str] = None,
        weights: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
        budget_ms: Optional[int] = None,
    ) -> List[RankedTrack]:
        """Personalized recommendations for a user.

        Args:
            user_id: Requesting user.
            limit: Page size (1..50, default 20).
            offset: Items to skip (>= 0).
            genre: Optional genre filter.
            mood: Optional mood filter.
            weights: Strategy weights; defaults to the personalized preset.
            now: Reference time.
            budget_ms: Wall-clock budget override.

        Returns:
            One page of ranked tracks.

        Raises:
            InvalidParameter: On bad pagination, genre, mood or weights.
        """
        limit, offset = self.blender.validate_pagination(limit, offset)
        strategy_weights = self.resolve_weights(weights, "personalized")
        genre_key = self.resolve_genre(genre)
        mood_ranges = self.resolve_mood(mood)

        snapshot = self.load_snapshot(user_id, now=now)
        try:
            candidates = self.filter_candidates(
                snapshot, genre_key, mood_ranges, exclude_listened=self.exclude_played
            )
        except EmptyCandidatePool as e:
            logger.info(f"User {user_id}: {e}")
            return []

        ranked = self.rank(snapshot, candidates, strategy_weights, budget_ms=budget_ms)
        logger.info(f"User {user_id}: ranked {len(ranked)} candidates")
        return self.blender.paginate(ranked, limit, offset)

    def get_trending(
        self,
        period: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedTrack]:
        """Popularity-only ranking over a listening window.

        Args:
            period: One of the configured trending periods.
            limit: Page size.
            offset: Items to skip.
            now: Reference time.

        Returns:
            One page of ranked tracks.
        """
        limit, offset = self.blender.validate_pagination(limit, offset)
        name, window_days = self.resolve_period(period)
        weights = self.resolve_weights(None, "trending")

        snapshot = self.load_snapshot(None, window_days=window_days, now=now)
        try:
            candidates = self.filter_candidates(snapshot)
        except EmptyCandidatePool:
            return []

        ranked = self.rank(
            snapshot, candidates, weights, windowed_popularity=window_days is not None
        )
        logger.info(f"Trending ({name}): ranked {len(ranked)} tracks")
        return self.blender.paginate(ranked, limit, offset)

    def get_discovery(
        self,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedTrack]:
        """Hidden gems, excluding the user's banned tracks when a user is given."""
        limit, offset = self.blender.validate_pagination(limit, offset)
        weights = self.resolve_weights(None, "discover")

        snapshot = self.load_snapshot(user_id, now=now)
        try:
            candidates = self.filter_candidates(snapshot)
        except EmptyCandidatePool:
            return []

        ranked = self.rank(snapshot, candidates, weights)
        return self.blender.paginate(ranked, limit, offset)

    def generate_playlist(
        self,
        name: str,
        description: Optional[str] = None,
        duration_minutes: Optional[float] = None,
        user_id: Optional[str] = None,
        genre: Optional[str] = None,
        mood: Optional[str] = None,
        weights: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
    ) -> Playlist:
        """Generate a smart playlist close to a target duration.

        Args:
            name: Playlist name.
            description: Optional description.
            duration_minutes: Target duration; defaults to config.
            user_id: Personalize for this user; popularity-only if None.
            genre: Optional genre filter.
            mood: Optional mood filter.
            weights: Strategy weights override.
            now: Reference time.

        Returns:
            Playlist whose realized duration is at most 110% of the target.
        """
        if not name or not str(name).strip():
            raise InvalidParameter("name", "Playlist name is required")
        if duration_minutes is None:
            duration_minutes = self.config.get("playlist.default_duration_minutes", 60)
        target = self.playlists.target_seconds(duration_minutes)
        preset = "playlist" if user_id is not None else "trending"
        strategy_weights = self.resolve_weights(weights, preset)
        genre_key = self.resolve_genre(genre)
        mood_ranges = self.resolve_mood(mood)

        snapshot = self.load_snapshot(user_id, now=now)
        try:
            candidates = self.filter_candidates(snapshot, genre_key, mood_ranges)
        except EmptyCandidatePool as e:
            logger.info(f"Playlist '{name}': {e}")
            return Playlist(name=name, description=description,
                            target_duration_seconds=target, user_id=user_id)

        ranked = self.rank(snapshot, candidates, strategy_weights)
        pool = ranked[: self.playlists.pool_size(target, snapshot.tracks)]
        return self.playlists.build(name, description, target, pool, user_id=user_id)

    def stats(self) -> Dict[str, Any]:
        """Similarity cache statistics."""
        return {
            "cache_entries": len(self.cache),
            "cache_hits": self.cache.hits,
            "cache_misses": self.cache.misses,
        }
