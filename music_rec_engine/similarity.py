"""
Track-track and user-user similarity.

Track similarity combines genre cosine, co-listening frequency and audio
feature closeness. User similarity is cosine over user x track play vectors.
"""

import logging
import math
import threading
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.metrics.pairwise import cosine_similarity

from music_rec_engine.config import Config
from music_rec_engine.storage import AUDIO_FEATURES, SignalSnapshot


logger = logging.getLogger(__name__)


class SimilarityCache:
    """Track-pair similarity cache shared across concurrent requests.

    Readers take a reference to the current dict and never lock. Writers
    copy, update and swap the reference; only writers serialize.
    """

    def __init__(self, max_entries: int = 200000):
        self.max_entries = max_entries
        self._entries: Mapping[Tuple[str, str, str], float] = {}
        self._write_lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Tuple[str, str, str]) -> Optional[float]:
        value = self._entries.get(key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def update(self, entries: Dict[Tuple[str, str, str], float]) -> None:
        """Publish a batch of computed similarities."""
        if not entries:
            return
        with self._write_lock:
            if len(self._entries) + len(entries) > self.max_entries:
                # Start over rather than grow without bound
                updated = dict(entries)
            else:
                updated = dict(self._entries)
                updated.update(entries)
            self._entries = updated

    def clear(self) -> None:
        with self._write_lock:
            self._entries = {}

    def __len__(self) -> int:
        return len(self._entries)


def validate_genre_weights(track_id: str, weights: Dict[str, float]) -> None:
    """Reject genre weights that are not finite values in [0, 1].

    Raises:
        ValueError: On a malformed weight.
    """
    for genre, weight in weights.items():
        if weight is None or not math.isfinite(weight) or weight < 0.0 or weight > 1.0:
            raise ValueError(
                f"Malformed genre weight {weight!r} for genre '{genre}' on track {track_id}"
            )


def genre_cosine(a: Dict[str, float], b: Dict[str, float]) -> float:
    """Cosine similarity of two sparse genre-weight vectors, in [0, 1]."""
    if not a or not b:
        return 0.0
    keys = sorted(set(a) | set(b))
    va = np.array([a.get(k, 0.0) for k in keys], dtype=np.float64)
    vb = np.array([b.get(k, 0.0) for k in keys], dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(va @ vb / norm, 0.0, 1.0))


def genre_profile(
    genres: Dict[str, Dict[str, float]],
    track_weights: Dict[str, float],
) -> Dict[str, float]:
    """Aggregate weighted genre tags over a set of tracks.

    Args:
        genres: Genre weights per track.
        track_weights: Weight of each track in the profile.

    Returns:
        Mapping of genre to accumulated weight.
    """
    profile: Dict[str, float] = {}
    for track_id, weight in track_weights.items():
        for genre, genre_weight in genres.get(track_id, {}).items():
            profile[genre] = profile.get(genre, 0.0) + weight * genre_weight
    return profile


def build_session_index(
    events: pd.DataFrame,
    play_threshold: float,
    gap_minutes: float,
) -> Dict[str, FrozenSet[int]]:
    """Split each user's counted plays into listening sessions.

    A new session starts when the user changes or when the gap since the
    previous play exceeds ``gap_minutes``.

    Args:
        events: Listening events.
        play_threshold: Completion ratio a play must exceed.
        gap_minutes: Maximum gap inside one session.

    Returns:
        Mapping of track_id to the ids of sessions it appears in.
    """
    if events.empty:
        return {}
    played = events[events["completion_percentage"] > play_threshold]
    if played.empty:
        return {}

    played = played.sort_values(["user_id", "played_at"], kind="mergesort")
    new_user = played["user_id"] != played["user_id"].shift()
    gap = played["played_at"].diff() > pd.Timedelta(minutes=gap_minutes)
    session_ids = (new_user | gap).cumsum()

    index: Dict[str, set] = {}
    for track_id, session_id in zip(played["track_id"], session_ids):
        index.setdefault(track_id, set()).add(int(session_id))
    return {track_id: frozenset(ids) for track_id, ids in index.items()}


class TrackSimilarity:
    """Lazy, cached track-pair similarity over one snapshot."""

    def __init__(
        self,
        snapshot: SignalSnapshot,
        config: Optional[Config] = None,
        cache: Optional[SimilarityCache] = None,
    ):
        """Initialize track similarity.

        Args:
            snapshot: Signal snapshot of the current request.
            config: Configuration object.
            cache: Shared cache. A private one is used if None.
        """
        self.config = config or Config()
        self.snapshot = snapshot
        self.cache = cache if cache is not None else SimilarityCache()

        self.genre_weight = self.config.get("similarity.genre_weight", 0.5)
        self.colisten_weight = self.config.get("similarity.colisten_weight", 0.3)
        self.audio_weight = self.config.get("similarity.audio_weight", 0.2)
        self.session_gap_minutes = self.config.get("similarity.session_gap_minutes", 30)

        self._version = snapshot.version
        self._sessions = build_session_index(
            snapshot.events, self.config.play_threshold, self.session_gap_minutes
        )
        self._audio = snapshot.tracks[list(AUDIO_FEATURES)].to_dict("index")
        self._pending: Dict[Tuple[str, str, str], float] = {}

    def similarity(self, a: str, b: str) -> float:
        """Symmetric similarity of two tracks, in [0, 1].

        Raises:
            ValueError: If either track carries malformed genre weights.
        """
        if a == b:
            return 1.0
        first, second = (a, b) if a < b else (b, a)
        key = (self._version, first, second)

        cached = self._pending.get(key)
        if cached is None:
            cached = self.cache.get(key)
        if cached is not None:
            return cached

        components = [
            (self.genre_weight, self.genre_similarity(first, second)),
            (self.colisten_weight, self.colisten_similarity(first, second)),
        ]
        audio = self.audio_similarity(first, second)
        if audio is not None:
            components.append((self.audio_weight, audio))

        total_weight = sum(w for w, _ in components)
        if total_weight <= 0:
            value = 0.0
        else:
            value = sum(w * s for w, s in components) / total_weight
        value = float(min(1.0, max(0.0, value)))

        self._pending[key] = value
        return value

    def genre_similarity(self, a: str, b: str) -> float:
        genres_a = self.snapshot.track_genres(a)
        genres_b = self.snapshot.track_genres(b)
        validate_genre_weights(a, genres_a)
        validate_genre_weights(b, genres_b)
        return genre_cosine(genres_a, genres_b)

    def colisten_similarity(self, a: str, b: str) -> float:
        sessions_a = self._sessions.get(a)
        sessions_b = self._sessions.get(b)
        if not sessions_a or not sessions_b:
            return 0.0
        shared = len(sessions_a & sessions_b)
        return shared / min(len(sessions_a), len(sessions_b))

    def audio_similarity(self, a: str, b: str) -> Optional[float]:
        """1 - mean absolute difference over audio features both tracks have."""
        features_a = self._audio.get(a, {})
        features_b = self._audio.get(b, {})
        diffs = []
        for name in AUDIO_FEATURES:
            value_a = features_a.get(name)
            value_b = features_b.get(name)
            if value_a is None or value_b is None:
                continue
            if math.isnan(value_a) or math.isnan(value_b):
                continue
            diffs.append(abs(value_a - value_b))
        if not diffs:
            return None
        return 1.0 - min(1.0, sum(diffs) / len(diffs))

    def flush(self) -> None:
        """Publish similarities computed by this request to the shared cache."""
        pending, self._pending = self._pending, {}
        self.cache.update(pending)


class UserSimilarity:
    """Cosine similarity between users' play/love vectors."""

    def __init__(self, snapshot: SignalSnapshot, config: Optional[Config] = None):
        self.config = config or Config()
        self.snapshot = snapshot
        self.loved_weight = self.config.get("collaborative.loved_weight", 2.0)
        self._matrix: Optional[pd.DataFrame] = None

    def user_matrix(self) -> pd.DataFrame:
        """Users x tracks matrix of counted plays plus love weight."""
        if self._matrix is not None:
            return self._matrix

        frames = []
        events = self.snapshot.events
        if not events.empty:
            played = events[events["completion_percentage"] > self.config.play_threshold]
            if not played.empty:
                frames.append(
                    played.groupby(["user_id", "track_id"]).size().astype(float)
                )
        loves = self.snapshot.loves
        if not loves.empty:
            index = pd.MultiIndex.from_frame(loves[["user_id", "track_id"]])
            frames.append(pd.Series(float(self.loved_weight), index=index))

        if not frames:
            self._matrix = pd.DataFrame(dtype=float)
        else:
            weights = pd.concat(frames).groupby(level=[0, 1]).sum()
            self._matrix = weights.unstack(fill_value=0.0).sort_index()
        return self._matrix

    def nearest_neighbors(self, user_id: str, k: int) -> List[Tuple[str, float]]:
        """Find the k most similar users sharing at least one track.

        Args:
            user_id: Target user.
            k: Maximum number of neighbours.

        Returns:
            List of (user_id, similarity) sorted by similarity desc, user_id asc.
        """
        matrix = self.user_matrix()
        if matrix.empty or user_id not in matrix.index or len(matrix) < 2:
            return []

        values = matrix.to_numpy(dtype=np.float64)
        target = matrix.loc[[user_id]].to_numpy(dtype=np.float64)
        sims = cosine_similarity(target, values)[0]
        shared = ((values > 0) & (target > 0)).sum(axis=1)

        neighbors = [
            (str(other), float(sim))
            for other, sim, common in zip(matrix.index, sims, shared)
            if other != user_id and common >= 1 and sim > 0
        ]
        neighbors.sort(key=lambda item: (-item[1], item[0]))
        return neighbors[:k]
