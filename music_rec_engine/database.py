"""
Relational schema consumed by the engine, and engine/session management.

Only the ``recommendations`` table is written by this package; every other
table is owned by the library sync and play-event pipelines.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from music_rec_engine.config import Config


logger = logging.getLogger(__name__)

Base = declarative_base()


def utc_now() -> datetime:
    """Current time as naive UTC, the representation stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Render a stored timestamp as ISO-8601 UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    username = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    listening_time_total = Column(Integer, default=0, nullable=False)
    track_count_total = Column(Integer, default=0, nullable=False)


class Artist(Base):
    __tablename__ = "artists"

    id = Column(String(64), primary_key=True)
    name = Column(String(500), nullable=False)


class Track(Base):
    __tablename__ = "tracks"

    id = Column(String(64), primary_key=True)
    title = Column(String(500), nullable=False)
    artist_id = Column(String(64), ForeignKey("artists.id"), nullable=False, index=True)
    album_id = Column(String(64), nullable=True)
    duration = Column(Integer, nullable=False)  # seconds
    play_count = Column(Integer, default=0, nullable=False)
    love_count = Column(Integer, default=0, nullable=False)
    last_played_at = Column(DateTime, nullable=True)

    # Audio features, 0..1 except tempo (BPM)
    energy = Column(Float, nullable=True)
    valence = Column(Float, nullable=True)
    danceability = Column(Float, nullable=True)
    tempo = Column(Float, nullable=True)


class TrackGenre(Base):
    __tablename__ = "track_genres"

    track_id = Column(String(64), ForeignKey("tracks.id"), primary_key=True)
    genre = Column(String(100), primary_key=True)
    weight = Column(Float, default=1.0, nullable=False)


class ListeningEvent(Base):
    __tablename__ = "listening_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    track_id = Column(String(64), ForeignKey("tracks.id"), nullable=False)
    played_at = Column(DateTime, nullable=False)
    play_duration = Column(Integer, nullable=True)
    completion_percentage = Column(Float, nullable=False, default=0.0)
    source = Column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_listening_history_user_played", "user_id", "played_at"),
        Index("idx_listening_history_played", "played_at"),
    )


class UserTrackRating(Base):
    __tablename__ = "user_track_ratings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    track_id = Column(String(64), ForeignKey("tracks.id"), nullable=False)
    rating = Column(Integer, nullable=True)  # 1-5
    is_loved = Column(Boolean, default=False, nullable=False)
    is_banned = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("idx_user_track_ratings_user_track", "user_id", "track_id", unique=True),
    )


class ArtistRelationship(Base):
    __tablename__ = "artist_relationships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    artist_id = Column(String(64), ForeignKey("artists.id"), nullable=False, index=True)
    related_artist_id = Column(String(64), ForeignKey("artists.id"), nullable=False)
    relationship_type = Column(String(50), nullable=False)
    strength = Column(Float, nullable=False, default=0.0)


class RecommendationRow(Base):
    __tablename__ = "recommendations"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    track_id = Column(String(64), ForeignKey("tracks.id"), nullable=False)
    recommendation_type = Column(String(100), nullable=False)
    score = Column(Float, nullable=False)
    reason = Column(Text, nullable=True)
    metadata_json = Column("metadata", Text, nullable=True)
    is_consumed = Column(Boolean, default=False, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_recommendations_user_track", "user_id", "track_id"),
        Index("idx_recommendations_expires", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RecommendationRow(user={self.user_id}, track={self.track_id}, "
            f"type={self.recommendation_type}, score={self.score:.3f})>"
        )


class Database:
    """Engine and session factory for one database URL."""

    # Engines are shared per URL so connection pools are reused
    _engines: Dict[str, Engine] = {}
    _engines_lock = threading.Lock()

    def __init__(self, config: Optional[Config] = None, url: Optional[str] = None):
        """Initialize database access.

        Args:
            config: Configuration object.
            url: SQLAlchemy URL. Overrides ``database.url`` from config.
        """
        self.config = config or Config()
        self.url = url or self.config.database_url
        self.engine = self._get_engine(self.url, self.config.get("database.echo", False))
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def _get_engine(cls, url: str, echo: bool) -> Engine:
        with cls._engines_lock:
            if url not in cls._engines:
                if url in ("sqlite://", "sqlite:///:memory:"):
                    # One shared connection, otherwise every connection sees its own empty DB
                    engine = create_engine(
                        url,
                        echo=echo,
                        connect_args={"check_same_thread": False},
                        poolclass=StaticPool,
                    )
                    # In-memory databases are never shared between instances
                    return engine
                kwargs = {"echo": echo, "pool_pre_ping": True}
                if url.startswith("sqlite"):
                    kwargs["connect_args"] = {"check_same_thread": False}
                cls._engines[url] = create_engine(url, **kwargs)
                logger.info(f"Database engine created for {url}")
            return cls._engines[url]

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Provide a transactional session scope."""
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
