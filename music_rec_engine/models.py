"""
Domain types shared by the strategies, blender, playlist generator and API.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from music_rec_engine.database import to_iso


class Strategy(str, Enum):
    """The closed set of scoring strategies."""

    COLLABORATIVE = "collaborative"
    CONTENT_BASED = "content_based"
    POPULARITY = "popularity"
    DISCOVERY = "discovery"

    @property
    def short_name(self) -> str:
        """Name used when building hybrid labels."""
        return "content" if self is Strategy.CONTENT_BASED else self.value

    @classmethod
    def parse(cls, name: str) -> "Strategy":
        """Resolve a strategy from its value, short name or enum name."""
        key = name.strip().lower()
        for strategy in cls:
            if key in (strategy.value, strategy.short_name, strategy.name.lower()):
                return strategy
        raise ValueError(f"Unknown strategy: {name}")


PLAYLIST_GENERATION = "playlist_generation"


@dataclass
class ScoredTrack:
    """One strategy's opinion of one candidate."""

    track_id: str
    score: float
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StrategyResult:
    """Per-track scores produced by a single strategy."""

    strategy: Strategy
    scores: Dict[str, ScoredTrack] = field(default_factory=dict)

    @property
    def coverage(self) -> bool:
        """True if the strategy produced at least one non-zero score."""
        return any(s.score > 0 for s in self.scores.values())

    def __len__(self) -> int:
        return len(self.scores)


@dataclass
class RankedTrack:
    """A blended, deduplicated entry of a ranked result list."""

    track_id: str
    score: float
    reason: str
    recommendation_type: str
    title: Optional[str] = None
    artist_name: Optional[str] = None
    duration: Optional[int] = None
    play_count: int = 0
    contributions: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "track_id": self.track_id,
            "title": self.title,
            "artist": self.artist_name,
            "duration": self.duration,
            "play_count": self.play_count,
            "score": round(self.score, 6),
            "reason": self.reason,
            "recommendation_type": self.recommendation_type,
            "contributions": {k: round(v, 6) for k, v in self.contributions.items()},
        }


@dataclass
class PlaylistTrack:
    position: int
    track_id: str
    title: Optional[str]
    artist_name: Optional[str]
    duration: int
    score: float
    reason: str
    recommendation_type: str = PLAYLIST_GENERATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "track_id": self.track_id,
            "title": self.title,
            "artist": self.artist_name,
            "duration": self.duration,
            "score": round(self.score, 6),
            "reason": self.reason,
            "recommendation_type": self.recommendation_type,
        }


@dataclass
class Playlist:
    """A generated playlist and its realized duration."""

    name: str
    description: Optional[str]
    target_duration_seconds: int
    tracks: List[PlaylistTrack] = field(default_factory=list)
    user_id: Optional[str] = None

    @property
    def total_duration_seconds(self) -> int:
        return sum(t.duration for t in self.tracks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "user_id": self.user_id,
            "track_count": len(self.tracks),
            "target_duration_seconds": self.target_duration_seconds,
            "total_duration_seconds": self.total_duration_seconds,
            "tracks": [t.to_dict() for t in self.tracks],
        }


@dataclass
class Recommendation:
    """A persisted recommendation."""

    id: str
    user_id: str
    track_id: str
    recommendation_type: str
    score: float
    reason: Optional[str]
    metadata: Dict[str, Any]
    is_consumed: bool
    created_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.created_at <= now <= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "track_id": self.track_id,
            "recommendation_type": self.recommendation_type,
            "score": round(self.score, 6),
            "reason": self.reason,
            "metadata": self.metadata,
            "is_consumed": self.is_consumed,
            "consumed_at": to_iso(self.consumed_at),
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
        }
