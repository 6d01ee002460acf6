"""
Shared fixtures: an in-memory SQLite database seeded with a small catalog.

Catalog notes used by the tests:
- Play-count 25th percentile of the catalog is 60, so the hidden gems are
  t05 (10 plays, avg rating 5.0) and t09 (20 plays, avg rating 4.5).
- u1 and u2 share t06/t08; u1 and u3 share t08/t11. u1 bans t07 and loves t05.
- u3 bans t05. u4 has no listening history and loves three synthwave tracks
  nobody else touches.
- In the last 7 days t08 has the most counted plays (4).
"""

from datetime import timedelta

import pytest

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
from music_rec_engine.persistence import RecommendationStore
from music_rec_engine.recommender import RecommendationEngine


NOW = utc_now().replace(microsecond=0)

ARTISTS = [
    ("a1", "Neon Drive"),
    ("a2", "Retro Wave"),
    ("a3", "Jazz Trio"),
    ("a4", "Rock Band"),
    ("a5", "Indie Folk"),
    ("a6", "Pop Star"),
]

# id, title, artist, duration, play_count, energy, valence, danceability, genres
TRACKS = [
    ("t01", "Nightcall", "a1", 240, 500, 0.70, 0.40, 0.60, {"synthwave": 1.0}),
    ("t02", "Turbo Killer", "a1", 300, 400, 0.75, 0.30, 0.55, {"synthwave": 1.0, "electronic": 0.5}),
    ("t03", "Sunset Drive", "a2", 200, 50, 0.65, 0.60, 0.70, {"synthwave": 1.0}),
    ("t04", "Outrun", "a2", 220, 30, 0.60, 0.50, 0.65, {"synthwave": 0.9}),
    ("t05", "Blue Note", "a3", 360, 10, 0.30, 0.50, 0.30, {"jazz": 1.0}),
    ("t06", "Smooth Sax", "a3", 300, 800, 0.35, 0.60, 0.40, {"jazz": 1.0}),
    ("t07", "Thunder", "a4", 180, 1000, 0.90, 0.50, 0.50, {"rock": 1.0}),
    ("t08", "Riff", "a4", 210, 700, 0.80, 0.45, 0.50, {"rock": 1.0}),
    ("t09", "Campfire", "a5", 240, 20, 0.20, 0.70, 0.30, {"folk": 1.0}),
    ("t10", "River Song", "a5", 260, 5, None, None, None, {"folk": 0.8}),
    ("t11", "Pop One", "a6", 200, 100, 0.60, 0.80, 0.80, {"pop": 1.0}),
    ("t12", "Pop Two", "a6", 210, 150, 0.65, 0.75, 0.85, {"pop": 1.0}),
    ("t13", "Pop Three", "a6", 220, 200, 0.70, 0.85, 0.90, {"pop": 1.0, "dance": 0.6}),
    ("t14", "Pop Four", "a6", 230, 250, 0.55, 0.70, 0.75, {"pop": 1.0}),
    ("t15", "Pop Five", "a6", 240, 300, 0.50, 0.65, 0.70, {"pop": 1.0}),
    ("t16", "Pop Six", "a6", 250, 350, 0.45, 0.60, 0.65, {"pop": 1.0}),
    ("t17", "Pop Seven", "a6", 260, 600, 0.50, 0.90, 0.80, {"pop": 1.0}),
    ("t18", "Pop Eight", "a6", 200, 650, 0.40, 0.55, 0.60, {"pop": 1.0}),
    ("t19", "Pop Nine", "a6", 210, 900, 0.62, 0.72, 0.78, {"pop": 1.0}),
    ("t20", "Pop Ten", "a6", 220, 950, 0.58, 0.68, 0.74, {"pop": 1.0}),
    ("t21", "Night Rider", "a1", 230, 60, 0.80, 0.35, 0.60, {"synthwave": 1.0, "electronic": 0.3}),
]

# user, track, days ago, minutes into that day, completion
EVENTS = [
    ("u1", "t06", 2, 0, 0.9),
    ("u1", "t08", 2, 4, 0.95),
    ("u1", "t11", 2, 9, 0.8),
    ("u1", "t06", 3, 0, 1.0),
    ("u1", "t08", 3, 5, 0.9),
    ("u1", "t06", 10, 0, 0.7),
    ("u1", "t12", 1, 0, 0.3),
    ("u2", "t06", 1, 0, 0.9),
    ("u2", "t08", 1, 5, 0.9),
    ("u2", "t07", 1, 10, 1.0),
    ("u2", "t07", 4, 0, 1.0),
    ("u2", "t13", 4, 5, 0.9),
    ("u2", "t13", 5, 0, 0.9),
    ("u2", "t06", 20, 0, 0.9),
    ("u3", "t11", 1, 20, 0.9),
    ("u3", "t14", 1, 25, 0.9),
    ("u3", "t15", 1, 29, 0.9),
    ("u3", "t08", 2, 30, 0.9),
    ("u3", "t16", 40, 0, 0.9),
    ("u3", "t16", 41, 0, 0.9),
    ("u3", "t16", 42, 0, 0.9),
]

# user, track, rating, loved, banned
RATINGS = [
    ("u1", "t05", 5, True, False),
    ("u1", "t07", None, False, True),
    ("u2", "t05", 5, False, False),
    ("u2", "t07", 5, False, False),
    ("u2", "t09", 5, False, False),
    ("u3", "t09", 4, False, False),
    ("u3", "t10", 3, False, False),
    ("u3", "t04", 4, False, False),
    ("u3", "t05", None, False, True),
    ("u4", "t01", None, True, False),
    ("u4", "t02", None, True, False),
    ("u4", "t03", None, True, False),
]

RELATIONSHIPS = [
    ("a1", "a2", "similar", 0.8),
    ("a3", "a4", "influence", 0.4),
    ("a5", "a6", "collaboration", 1.5),
]


def seed_catalog(database: Database, now=NOW) -> None:
    """Insert the test catalog, users and history."""
    with database.session() as session:
        for user_id, active in [("u1", True), ("u2", True), ("u3", True), ("u4", True), ("u5", False)]:
            session.add(User(id=user_id, username=f"user_{user_id}", is_active=active))
        for artist_id, name in ARTISTS:
            session.add(Artist(id=artist_id, name=name))
        session.flush()

        for track_id, title, artist_id, duration, plays, energy, valence, dance, genres in TRACKS:
            session.add(Track(
                id=track_id, title=title, artist_id=artist_id, duration=duration,
                play_count=plays, love_count=0, energy=energy, valence=valence,
                danceability=dance, tempo=120.0,
            ))
            for genre, weight in genres.items():
                session.add(TrackGenre(track_id=track_id, genre=genre, weight=weight))
        session.flush()

        for user_id, track_id, days, minutes, completion in EVENTS:
            session.add(ListeningEvent(
                user_id=user_id,
                track_id=track_id,
                played_at=now - timedelta(days=days) + timedelta(minutes=minutes),
                play_duration=200,
                completion_percentage=completion,
                source="test",
            ))
        for user_id, track_id, rating, loved, banned in RATINGS:
            session.add(UserTrackRating(
                user_id=user_id, track_id=track_id, rating=rating,
                is_loved=loved, is_banned=banned,
            ))
        for artist_id, related_id, kind, strength in RELATIONSHIPS:
            session.add(ArtistRelationship(
                artist_id=artist_id, related_artist_id=related_id,
                relationship_type=kind, strength=strength,
            ))


@pytest.fixture
def now():
    """Reference time the catalog history is seeded relative to."""
    return NOW


@pytest.fixture
def config():
    """Configuration pointing at an in-memory database, no request budget."""
    cfg = Config()
    cfg.set("database.url", "sqlite://")
    cfg.set("engine.request_budget_ms", 0)
    return cfg


@pytest.fixture
def database(config):
    """Seeded in-memory database."""
    db = Database(config)
    db.create_all()
    seed_catalog(db)
    return db


@pytest.fixture
def engine(config, database):
    """Recommendation engine over the seeded database."""
    rec_engine = RecommendationEngine(config, database=database)
    yield rec_engine
    rec_engine.close()


@pytest.fixture
def store(config, database, engine):
    """Recommendation store sharing the engine's database."""
    return RecommendationStore(database, engine, config)


@pytest.fixture
def seed():
    """Function that seeds the test catalog into a database."""
    return seed_catalog
