"""
Signal store: read-only access to the listening-history database.

Rows are normalized into pandas DataFrames and frozen into a
``SignalSnapshot`` that every strategy of a request reads from.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import cached_property
from typing import Dict, List, Optional, Set

import pandas as pd
from sqlalchemy import func, select

from music_rec_engine.config import Config
from music_rec_engine.database import (
    Artist,
    ArtistRelationship,
    Database,
    ListeningEvent,
    Track,
    TrackGenre,
    User,
    UserTrackRating,
    utc_now,
)
from music_rec_engine.errors import SignalUnavailable


logger = logging.getLogger(__name__)


TRACK_COLUMNS = [
    "track_id", "title", "artist_id", "artist_name", "album_id", "duration",
    "play_count", "love_count", "last_played_at", "energy", "valence",
    "danceability", "tempo", "average_rating", "rating_count",
]
EVENT_COLUMNS = [
    "user_id", "track_id", "played_at", "play_duration",
    "completion_percentage", "source",
]
RATING_COLUMNS = ["user_id", "track_id", "rating", "is_loved", "is_banned"]
LOVE_COLUMNS = ["user_id", "track_id"]
RELATIONSHIP_COLUMNS = ["artist_id", "related_artist_id", "relationship_type", "strength"]
AUDIO_FEATURES = ("energy", "valence", "danceability")


def _frame(rows, columns) -> pd.DataFrame:
    return pd.DataFrame.from_records([tuple(r) for r in rows], columns=columns)


def counted_play_counts(events: pd.DataFrame, threshold: float) -> Dict[str, int]:
    """Count plays per track, keeping only events above the completion threshold.

    Args:
        events: Listening events.
        threshold: Completion ratio a play must exceed.

    Returns:
        Mapping of track_id to number of counted plays.
    """
    if events.empty:
        return {}
    played = events[events["completion_percentage"] > threshold]
    return {str(k): int(v) for k, v in played.groupby("track_id").size().items()}


@dataclass
class UserSignals:
    """One user's history, ratings and derived sets."""

    user_id: str
    events: pd.DataFrame
    ratings: pd.DataFrame
    play_counts: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def cold_start(cls, user_id: str, ratings: pd.DataFrame) -> "UserSignals":
        """Signals for a user without listening history."""
        return cls(
            user_id=user_id,
            events=pd.DataFrame(columns=EVENT_COLUMNS),
            ratings=ratings,
        )

    @property
    def has_history(self) -> bool:
        return bool(self.play_counts)

    @property
    def banned(self) -> Set[str]:
        if self.ratings.empty:
            return set()
        return set(self.ratings.loc[self.ratings["is_banned"].astype(bool), "track_id"])

    @property
    def loved(self) -> Set[str]:
        if self.ratings.empty:
            return set()
        loved = self.ratings["is_loved"].astype(bool) & ~self.ratings["is_banned"].astype(bool)
        return set(self.ratings.loc[loved, "track_id"])

    @property
    def listened(self) -> Set[str]:
        """Tracks the user has played (counted plays) or loved."""
        return set(self.play_counts) | self.loved


@dataclass
class SignalSnapshot:
    """Immutable per-request view of the signal store."""

    tracks: pd.DataFrame
    genres: Dict[str, Dict[str, float]]
    events: pd.DataFrame
    loves: pd.DataFrame
    relationships: pd.DataFrame
    user: Optional[UserSignals] = None
    window_days: Optional[int] = None
    taken_at: datetime = field(default_factory=utc_now)

    @property
    def candidates(self) -> pd.DataFrame:
        """Catalog tracks minus the ones the user has banned."""
        if self.user is None:
            return self.tracks
        banned = self.user.banned
        if not banned:
            return self.tracks
        return self.tracks[~self.tracks.index.isin(banned)]

    @cached_property
    def version(self) -> str:
        """Fingerprint of the data similarity values depend on.

        Digests genre tags, audio features and listening events, so a
        retagged track or a new play yields a new version.
        """
        digest = hashlib.sha256()
        for track_id in sorted(self.genres):
            tags = sorted(self.genres[track_id].items())
            digest.update(f"{track_id}={tags};".encode("utf-8"))
        if not self.tracks.empty:
            audio = self.tracks[list(AUDIO_FEATURES)].astype(float).sort_index()
            digest.update(pd.util.hash_pandas_object(audio, index=True).to_numpy().tobytes())
        if not self.events.empty:
            played = self.events[["user_id", "track_id", "played_at", "completion_percentage"]]
            digest.update(pd.util.hash_pandas_object(played, index=False).to_numpy().tobytes())
        return f"{self.window_days}:{digest.hexdigest()[:16]}"

    def track_genres(self, track_id: str) -> Dict[str, float]:
        return self.genres.get(track_id, {})


class SignalStore:
    """Read-only accessor over tracks, history, ratings and relationships."""

    def __init__(self, database: Database, config: Optional[Config] = None):
        """Initialize signal store.

        Args:
            database: Database to read from.
            config: Configuration object.
        """
        self.database = database
        self.config = config or database.config
        self.window_days = self.config.get("signals.window_days", 365)
        self.max_event_rows = self.config.get("signals.max_event_rows", 50000)
        self.play_threshold = self.config.play_threshold

    def _since(self, window_days: Optional[int], now: Optional[datetime] = None) -> Optional[datetime]:
        if window_days is None:
            return None
        return (now or utc_now()) - timedelta(days=window_days)

    def load_tracks(self) -> pd.DataFrame:
        """Load the track catalog with artist names and rating aggregates.

        Returns:
            DataFrame indexed by track_id.
        """
        ratings = (
            select(
                UserTrackRating.track_id.label("track_id"),
                func.avg(UserTrackRating.rating).label("average_rating"),
                func.count(UserTrackRating.rating).label("rating_count"),
            )
            .where(UserTrackRating.rating.is_not(None))
            .group_by(UserTrackRating.track_id)
            .subquery()
        )
        stmt = (
            select(
                Track.id, Track.title, Track.artist_id, Artist.name, Track.album_id,
                Track.duration, Track.play_count, Track.love_count, Track.last_played_at,
                Track.energy, Track.valence, Track.danceability, Track.tempo,
                ratings.c.average_rating, ratings.c.rating_count,
            )
            .select_from(Track)
            .outerjoin(Artist, Artist.id == Track.artist_id)
            .outerjoin(ratings, ratings.c.track_id == Track.id)
            .order_by(Track.id)
        )
        with self.database.session() as session:
            rows = session.execute(stmt).all()

        df = _frame(rows, TRACK_COLUMNS)
        df["play_count"] = df["play_count"].fillna(0).astype(int)
        df["love_count"] = df["love_count"].fillna(0).astype(int)
        df["rating_count"] = df["rating_count"].fillna(0).astype(int)
        df["average_rating"] = df["average_rating"].astype(float)
        for col in ("energy", "valence", "danceability", "tempo"):
            df[col] = df[col].astype(float)
        logger.debug(f"Loaded {len(df)} tracks")
        df.index = df["track_id"].to_numpy()
        return df

    def load_genres(self) -> Dict[str, Dict[str, float]]:
        """Load weighted genre tags per track."""
        with self.database.session() as session:
            rows = session.execute(
                select(TrackGenre.track_id, TrackGenre.genre, TrackGenre.weight)
            ).all()

        genres: Dict[str, Dict[str, float]] = {}
        for track_id, genre, weight in rows:
            genres.setdefault(track_id, {})[genre] = float(weight)
        return genres

    def known_genres(self) -> Set[str]:
        """Genre vocabulary of the catalog, lower-cased."""
        with self.database.session() as session:
            rows = session.execute(select(TrackGenre.genre).distinct()).scalars().all()
        return {g.lower() for g in rows}

    def load_events(
        self,
        window_days: Optional[int] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> pd.DataFrame:
        """Load listening events, newest first, bounded by window and row limit.

        Args:
            window_days: Days of history to read. None reads all history.
            user_id: Restrict to one user.
            now: Reference time for the window.

        Returns:
            DataFrame of listening events.
        """
        stmt = select(
            ListeningEvent.user_id, ListeningEvent.track_id, ListeningEvent.played_at,
            ListeningEvent.play_duration, ListeningEvent.completion_percentage,
            ListeningEvent.source,
        )
        since = self._since(window_days, now)
        if since is not None:
            stmt = stmt.where(ListeningEvent.played_at >= since)
        if user_id is not None:
            stmt = stmt.where(ListeningEvent.user_id == user_id)
        stmt = stmt.order_by(ListeningEvent.played_at.desc(), ListeningEvent.id.desc())
        stmt = stmt.limit(self.max_event_rows)

        with self.database.session() as session:
            rows = session.execute(stmt).all()

        df = _frame(rows, EVENT_COLUMNS)
        if len(rows) >= self.max_event_rows:
            logger.warning(f"Listening history truncated to {self.max_event_rows} rows")
        df["played_at"] = pd.to_datetime(df["played_at"])
        df["completion_percentage"] = df["completion_percentage"].astype(float)
        return df

    def load_ratings(self, user_id: str) -> pd.DataFrame:
        """Load one user's ratings, loves and bans."""
        stmt = select(
            UserTrackRating.user_id, UserTrackRating.track_id, UserTrackRating.rating,
            UserTrackRating.is_loved, UserTrackRating.is_banned,
        ).where(UserTrackRating.user_id == user_id)
        with self.database.session() as session:
            rows = session.execute(stmt).all()
        return _frame(rows, RATING_COLUMNS)

    def load_loves(self) -> pd.DataFrame:
        """Load every user's loved (and not banned) tracks."""
        stmt = (
            select(UserTrackRating.user_id, UserTrackRating.track_id)
            .where(UserTrackRating.is_loved.is_(True))
            .where(UserTrackRating.is_banned.is_(False))
            .order_by(UserTrackRating.id)
            .limit(self.max_event_rows)
        )
        with self.database.session() as session:
            rows = session.execute(stmt).all()
        return _frame(rows, LOVE_COLUMNS)

    def load_relationships(self) -> pd.DataFrame:
        """Load directional artist relationships."""
        stmt = select(
            ArtistRelationship.artist_id, ArtistRelationship.related_artist_id,
            ArtistRelationship.relationship_type, ArtistRelationship.strength,
        )
        with self.database.session() as session:
            rows = session.execute(stmt).all()
        df = _frame(rows, RELATIONSHIP_COLUMNS)
        df["strength"] = df["strength"].astype(float).clip(0.0, 1.0)
        return df

    def load_user_signals(
        self,
        user_id: str,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> UserSignals:
        """Load a user's history and ratings.

        Args:
            user_id: User to load.
            window_days: Days of history to consider. Defaults to config.
            now: Reference time for the window.

        Returns:
            The user's signals.

        Raises:
            SignalUnavailable: If the user has no listening events in the window.
        """
        window = self.window_days if window_days is None else window_days
        events = self.load_events(window, user_id=user_id, now=now)
        if events.empty:
            raise SignalUnavailable(user_id)

        return UserSignals(
            user_id=user_id,
            events=events,
            ratings=self.load_ratings(user_id),
            play_counts=counted_play_counts(events, self.play_threshold),
        )

    def snapshot(
        self,
        user: Optional[UserSignals] = None,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SignalSnapshot:
        """Read everything one request needs into an immutable snapshot.

        Args:
            user: The requesting user's signals, if any.
            window_days: Days of history to read. Defaults to config.
            now: Reference time for the window.

        Returns:
            Signal snapshot.
        """
        window = self.window_days if window_days is None else window_days
        snapshot = SignalSnapshot(
            tracks=self.load_tracks(),
            genres=self.load_genres(),
            events=self.load_events(window, now=now),
            loves=self.load_loves(),
            relationships=self.load_relationships(),
            user=user,
            window_days=window,
            taken_at=now or utc_now(),
        )
        logger.debug(
            f"Snapshot: {len(snapshot.tracks)} tracks, {len(snapshot.events)} events"
        )
        return snapshot

    def active_user_ids(self) -> List[str]:
        """Ids of users flagged active."""
        with self.database.session() as session:
            rows = session.execute(
                select(User.id).where(User.is_active.is_(True)).order_by(User.id)
            ).scalars().all()
        return list(rows)
