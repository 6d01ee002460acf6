"""
Music Recommendation Engine - hybrid personalized music recommendations.

This package provides tools for:
- Reading listening history, ratings and catalog signals
- Scoring tracks with collaborative, content, popularity and discovery strategies
- Blending strategy scores into ranked recommendations
- Generating smart playlists and persisting recommendations
"""

__version__ = "0.1.0"
__author__ = "Music Recommendation Engine Team"
__license__ = "MIT"

from music_rec_engine.config import Config
from music_rec_engine.database import Database
from music_rec_engine.errors import (
    EmptyCandidatePool,
    InvalidParameter,
    PersistenceWriteFailure,
    RecommenderError,
    SignalUnavailable,
)
from music_rec_engine.models import Playlist, RankedTrack, Recommendation, Strategy
from music_rec_engine.storage import SignalStore
from music_rec_engine.recommender import RecommendationEngine
from music_rec_engine.persistence import RecommendationStore
from music_rec_engine.pipeline import Pipeline

__all__ = [
    "Config",
    "Database",
    "SignalStore",
    "RecommendationEngine",
    "RecommendationStore",
    "Pipeline",
    "Strategy",
    "RankedTrack",
    "Playlist",
    "Recommendation",
    "RecommenderError",
    "SignalUnavailable",
    "InvalidParameter",
    "EmptyCandidatePool",
    "PersistenceWriteFailure",
]
