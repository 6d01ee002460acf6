"""
Scoring strategies.

Each scorer maps (snapshot, candidate tracks) to per-track scores in [0, 1]
with a human-readable reason. A strategy without applicable signal returns
an empty result instead of raising.
"""

import logging
import math
from typing import Dict, Optional, Set

import numpy as np
import pandas as pd

from music_rec_engine.config import Config
from music_rec_engine.models import ScoredTrack, Strategy, StrategyResult
from music_rec_engine.similarity import (
    SimilarityCache,
    TrackSimilarity,
    UserSimilarity,
    genre_profile,
)
from music_rec_engine.storage import SignalSnapshot, counted_play_counts


logger = logging.getLogger(__name__)


HIDDEN_GEM_REASON = "Hidden gem - high quality, underplayed track."
NEIGHBOR_REASON = "Listeners like you enjoyed this."


def _genre_reason(genre: str) -> str:
    return f"Matches your preference for {genre}"


def _dominant_genre(genres: Dict[str, float]) -> Optional[str]:
    if not genres:
        return None
    return min(genres.items(), key=lambda item: (-item[1], item[0]))[0]


def _top_genres(profile: Dict[str, float], n: int) -> Set[str]:
    ranked = sorted(profile.items(), key=lambda item: (-item[1], item[0]))
    return {genre for genre, weight in ranked[:n] if weight > 0}


class Scorer:
    """Common interface of all strategies."""

    strategy: Strategy

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()

    def score(self, snapshot: SignalSnapshot, candidates: pd.DataFrame) -> StrategyResult:
        raise NotImplementedError


class CollaborativeScorer(Scorer):
    """User-based k-nearest-neighbour collaborative filtering."""

    strategy = Strategy.COLLABORATIVE

    def __init__(self, config: Optional[Config] = None):
        super().__init__(config)
        self.k = self.config.get("collaborative.k_neighbors", 20)
        self.top_genres = self.config.get("collaborative.top_genres", 3)

    def score(self, snapshot: SignalSnapshot, candidates: pd.DataFrame) -> StrategyResult:
        """Score candidates by the similarity-weighted count of neighbours
        who played or loved them, normalized by the best candidate.

        Args:
            snapshot: Signal snapshot.
            candidates: Candidate tracks, indexed by track_id.

        Returns:
            Strategy result; empty on cold start.
        """
        result = StrategyResult(self.strategy)
        user = snapshot.user
        if user is None or candidates.empty:
            return result

        users = UserSimilarity(snapshot, self.config)
        neighbors = users.nearest_neighbors(user.user_id, self.k)
        if not neighbors:
            logger.debug(f"No neighbours for user {user.user_id}, collaborative skipped")
            return result

        matrix = users.user_matrix()
        candidate_ids = set(candidates.index)
        raw: Dict[str, float] = {}
        supporters: Dict[str, int] = {}
        for neighbor_id, similarity in neighbors:
            row = matrix.loc[neighbor_id]
            for track_id in row.index[row.to_numpy() > 0]:
                if track_id not in candidate_ids:
                    continue
                raw[track_id] = raw.get(track_id, 0.0) + similarity
                supporters[track_id] = supporters.get(track_id, 0) + 1

        max_raw = max(raw.values(), default=0.0)
        if max_raw <= 0:
            return result

        weights = {t: float(c) for t, c in user.play_counts.items()}
        for track_id in user.loved:
            weights[track_id] = weights.get(track_id, 0.0) + 1.0
        preferred = _top_genres(genre_profile(snapshot.genres, weights), self.top_genres)

        for track_id, value in raw.items():
            genre = _dominant_genre(snapshot.track_genres(track_id))
            reason = _genre_reason(genre) if genre in preferred else NEIGHBOR_REASON
            result.scores[track_id] = ScoredTrack(
                track_id=track_id,
                score=min(1.0, value / max_raw),
                reason=reason,
                metadata={"neighbors": supporters[track_id]},
            )
        return result


class ContentBasedScorer(Scorer):
    """Similarity to the user's favourite tracks, boosted by artist relationships."""

    strategy = Strategy.CONTENT_BASED

    def __init__(self, config: Optional[Config] = None, cache: Optional[SimilarityCache] = None):
        super().__init__(config)
        self.cache = cache
        self.top_n = self.config.get("content.top_n_seeds", 10)
        self.loved_weight = self.config.get("content.loved_weight", 3.0)
        self.artist_boost = self.config.get("content.artist_boost", 0.2)

    def seed_weights(self, snapshot: SignalSnapshot) -> Dict[str, float]:
        """Top-N most played or loved tracks of the user, with their weights."""
        user = snapshot.user
        if user is None:
            return {}
        weights = {t: float(c) for t, c in user.play_counts.items()}
        for track_id in user.loved:
            weights[track_id] = weights.get(track_id, 0.0) + self.loved_weight

        known = set(snapshot.tracks.index)
        ranked = sorted(
            ((t, w) for t, w in weights.items() if t in known and w > 0),
            key=lambda item: (-item[1], item[0]),
        )
        return dict(ranked[: self.top_n])

    def score(self, snapshot: SignalSnapshot, candidates: pd.DataFrame) -> StrategyResult:
        result = StrategyResult(self.strategy)
        seeds = self.seed_weights(snapshot)
        if not seeds or candidates.empty:
            return result

        total_weight = sum(seeds.values())
        profile = genre_profile(snapshot.genres, seeds)
        artist_names = dict(zip(snapshot.tracks["artist_id"], snapshot.tracks["artist_name"]))

        favored: Dict[str, float] = {}
        for track_id, weight in seeds.items():
            artist_id = snapshot.tracks.at[track_id, "artist_id"]
            favored[artist_id] = favored.get(artist_id, 0.0) + weight

        # Strongest directional relationship from a favoured artist to each related artist
        related: Dict[str, tuple] = {}
        rels = snapshot.relationships
        if not rels.empty:
            rels = rels[rels["artist_id"].isin(set(favored))]
            for source, target, kind, strength in rels.itertuples(index=False, name=None):
                if target not in related or strength > related[target][1]:
                    related[target] = (source, strength, kind)

        similarity = TrackSimilarity(snapshot, self.config, self.cache)
        try:
            for track_id, artist_id in zip(candidates.index, candidates["artist_id"]):
                base = sum(
                    weight * similarity.similarity(track_id, seed)
                    for seed, weight in seeds.items()
                ) / total_weight

                boost = 0.0
                relation = related.get(artist_id)
                if relation is not None:
                    boost = self.artist_boost * relation[1]

                value = min(1.0, base + boost)
                if value <= 0:
                    continue

                result.scores[track_id] = ScoredTrack(
                    track_id=track_id,
                    score=value,
                    reason=self._reason(snapshot, track_id, profile, relation, artist_names),
                    metadata={
                        "similarity": round(base, 6),
                        "artist_boost": round(boost, 6),
                    },
                )
        finally:
            similarity.flush()
        return result

    def _reason(self, snapshot, track_id, profile, relation, artist_names) -> str:
        candidate_genres = snapshot.track_genres(track_id)
        shared = {
            genre: weight * profile[genre]
            for genre, weight in candidate_genres.items()
            if profile.get(genre, 0.0) > 0 and weight > 0
        }
        genre = _dominant_genre(shared)
        if genre is not None:
            return _genre_reason(genre)
        if relation is not None:
            source, _, kind = relation
            name = artist_names.get(source) or source
            return f"Related to {name} ({kind}), an artist you listen to"
        return "Similar to tracks you have played"


class PopularityScorer(Scorer):
    """Log-scaled play count blended with average rating."""

    strategy = Strategy.POPULARITY

    def __init__(self, config: Optional[Config] = None, windowed: bool = False):
        """Initialize popularity scorer.

        Args:
            config: Configuration object.
            windowed: Count plays from the snapshot's listening events
                instead of the global play counter.
        """
        super().__init__(config)
        self.windowed = windowed
        self.play_weight = self.config.get("popularity.play_weight", 0.7)
        self.rating_weight = self.config.get("popularity.rating_weight", 0.3)
        self.default_rating = self.config.get("popularity.default_rating", 2.5)

    def score(self, snapshot: SignalSnapshot, candidates: pd.DataFrame) -> StrategyResult:
        result = StrategyResult(self.strategy)
        if candidates.empty:
            return result

        if self.windowed:
            counts = counted_play_counts(snapshot.events, self.config.play_threshold)
            plays = pd.Series(
                [counts.get(t, 0) for t in candidates.index],
                index=candidates.index,
                dtype=float,
            )
        else:
            plays = candidates["play_count"].astype(float)

        max_log = math.log1p(plays.max())
        play_norm = np.log1p(plays) / max_log if max_log > 0 else plays * 0.0
        ratings = candidates["average_rating"].fillna(self.default_rating).astype(float)
        rating_norm = (ratings / 5.0).clip(0.0, 1.0)

        total = self.play_weight + self.rating_weight
        scores = (self.play_weight * play_norm + self.rating_weight * rating_norm) / total

        for track_id, value, play_value, rating in zip(
            candidates.index, scores, plays, candidates["average_rating"]
        ):
            value = float(min(1.0, max(0.0, value)))
            if value <= 0:
                continue
            result.scores[track_id] = ScoredTrack(
                track_id=track_id,
                score=value,
                reason=self._reason(int(play_value), rating, snapshot.window_days),
                metadata={"plays": int(play_value)},
            )
        return result

    def _reason(self, plays: int, rating: float, window_days: Optional[int]) -> str:
        if self.windowed:
            if window_days is None:
                return f"Trending with {plays} plays"
            return f"Trending with {plays} plays in the last {window_days} days"
        if rating is not None and not math.isnan(rating) and rating >= 4.0:
            return "Popular track with high ratings"
        return "Popular track"


class DiscoveryScorer(Scorer):
    """Hidden gems: highly rated tracks from the bottom of the play-count distribution."""

    strategy = Strategy.DISCOVERY

    def __init__(self, config: Optional[Config] = None):
        super().__init__(config)
        self.min_rating = self.config.get("discovery.min_rating", 4.5)
        self.percentile = self.config.get("discovery.play_count_percentile", 25)

    def play_count_threshold(self, snapshot: SignalSnapshot) -> float:
        """Play count at the configured percentile of the whole catalog."""
        if snapshot.tracks.empty:
            return 0.0
        return float(np.percentile(snapshot.tracks["play_count"].to_numpy(), self.percentile))

    def score(self, snapshot: SignalSnapshot, candidates: pd.DataFrame) -> StrategyResult:
        result = StrategyResult(self.strategy)
        if candidates.empty:
            return result

        threshold = self.play_count_threshold(snapshot)
        ratings = candidates["average_rating"]
        qualifies = (ratings >= self.min_rating) & (candidates["play_count"] <= threshold)
        gems = candidates[qualifies.fillna(False).astype(bool)]

        for track_id, rating, plays in zip(gems.index, gems["average_rating"], gems["play_count"]):
            result.scores[track_id] = ScoredTrack(
                track_id=track_id,
                score=float(min(1.0, max(0.0, rating / 5.0))),
                reason=HIDDEN_GEM_REASON,
                metadata={
                    "average_rating": round(float(rating), 3),
                    "play_count": int(plays),
                    "play_count_threshold": threshold,
                },
            )
        return result


def build_scorers(
    config: Config,
    cache: Optional[SimilarityCache] = None,
    windowed_popularity: bool = False,
) -> Dict[Strategy, Scorer]:
    """Instantiate the fixed set of scorers for one request.

    Args:
        config: Configuration object.
        cache: Shared similarity cache.
        windowed_popularity: Count popularity from windowed events.

    Returns:
        Mapping of strategy to scorer.
    """
    return {
        Strategy.COLLABORATIVE: CollaborativeScorer(config),
        Strategy.CONTENT_BASED: ContentBasedScorer(config, cache),
        Strategy.POPULARITY: PopularityScorer(config, windowed=windowed_popularity),
        Strategy.DISCOVERY: DiscoveryScorer(config),
    }
