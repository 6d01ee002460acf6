"""
FastAPI application for the music recommendation API.
"""

import logging
from typing import Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from music_rec_engine import __version__
from music_rec_engine.config import Config, get_config
from music_rec_engine.database import Database
from music_rec_engine.errors import PersistenceWriteFailure, RecommenderError
from music_rec_engine.persistence import RecommendationStore
from music_rec_engine.recommender import RecommendationEngine


logger = logging.getLogger(__name__)


# Create FastAPI app
app = FastAPI(
    title="Music Recommendation Engine",
    description="Hybrid personalized music recommendation API",
    version=__version__,
)


# Global state
_engine: Optional[RecommendationEngine] = None
_store: Optional[RecommendationStore] = None


def configure(config: Optional[Config] = None, database: Optional[Database] = None) -> None:
    """Rebuild the global engine and store.

    Args:
        config: Configuration object. Defaults to the global config.
        database: Database to use. Built from config if None.
    """
    global _engine, _store
    if _engine is not None:
        _engine.close()
    config = config or get_config()
    database = database or Database(config)
    _engine = RecommendationEngine(config, database=database)
    _store = RecommendationStore(database, _engine, config)


def get_engine() -> RecommendationEngine:
    """Get or create the engine instance."""
    if _engine is None:
        configure()
    return _engine


def get_store() -> RecommendationStore:
    """Get or create the recommendation store instance."""
    if _store is None:
        configure()
    return _store


# Request models
class GenerateRequest(BaseModel):
    """Recommendation generation request."""
    limit: Optional[int] = None
    strategy_mix: Optional[Dict[str, float]] = None


class PlaylistRequest(BaseModel):
    """Smart playlist request."""
    name: str
    description: Optional[str] = None
    duration_minutes: Optional[float] = None
    user_id: Optional[str] = None
    genre: Optional[str] = None
    mood: Optional[str] = None
    persist: bool = False


class ListeningEventRequest(BaseModel):
    """Playback report for a recommended track."""
    user_id: str
    track_id: str
    completion_percentage: Optional[float] = Field(default=None, ge=0.0, le=1.0)


@app.exception_handler(RecommenderError)
async def recommender_error_handler(request: Request, exc: RecommenderError):
    """Map engine errors to JSON responses with their status code."""
    content = exc.to_dict()
    if isinstance(exc, PersistenceWriteFailure):
        content["recommendations"] = [r.to_dict() for r in exc.recommendations]
    if exc.status >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=exc.status, content=content)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Music Recommendation Engine",
        "version": __version__,
        "status": "running",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get("/api/v1/recommendations/trending")
def trending(
    period: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    offset: Optional[int] = Query(default=None),
):
    """Popularity ranking over a listening window."""
    engine = get_engine()
    ranked = engine.get_trending(period=period, limit=limit, offset=offset)
    return {
        "period": period or engine.config.get("trending.default_period"),
        "recommendations": [r.to_dict() for r in ranked],
    }


@app.get("/api/v1/recommendations/discover")
def discover(
    user_id: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    offset: Optional[int] = Query(default=None),
):
    """Hidden gems."""
    ranked = get_engine().get_discovery(user_id=user_id, limit=limit, offset=offset)
    return {"recommendations": [r.to_dict() for r in ranked]}


@app.get("/api/v1/recommendations/{user_id}")
def recommendations(
    user_id: str,
    limit: Optional[int] = Query(default=None),
    offset: Optional[int] = Query(default=None),
    genre: Optional[str] = Query(default=None),
    mood: Optional[str] = Query(default=None),
):
    """Personalized recommendations for a user."""
    ranked = get_engine().get_recommendations(
        user_id, limit=limit, offset=offset, genre=genre, mood=mood
    )
    return {
        "user_id": user_id,
        "limit": limit,
        "offset": offset or 0,
        "recommendations": [r.to_dict() for r in ranked],
    }


@app.post("/api/v1/recommendations/{user_id}/generate")
def generate(user_id: str, request: Optional[GenerateRequest] = None):
    """Generate and persist recommendations for a user."""
    request = request or GenerateRequest()
    persisted = get_store().generate(
        user_id, strategy_mix=request.strategy_mix, limit=request.limit
    )
    return {
        "user_id": user_id,
        "generated": len(persisted),
        "recommendations": [r.to_dict() for r in persisted],
    }


@app.post("/api/v1/playlists/generate")
def generate_playlist(request: PlaylistRequest):
    """Generate a smart playlist close to the requested duration."""
    playlist = get_engine().generate_playlist(
        name=request.name,
        description=request.description,
        duration_minutes=request.duration_minutes,
        user_id=request.user_id,
        genre=request.genre,
        mood=request.mood,
    )
    if request.persist and request.user_id is not None:
        get_store().save_playlist(request.user_id, playlist)
    return playlist.to_dict()


@app.post("/api/v1/listening-events")
def listening_event(request: ListeningEventRequest):
    """Mark a recommended track consumed when the user plays it."""
    store = get_store()
    threshold = store.config.play_threshold
    if request.completion_percentage is not None and request.completion_percentage <= threshold:
        return {"user_id": request.user_id, "track_id": request.track_id, "consumed": 0}

    count = store.mark_consumed(request.user_id, request.track_id)
    return {"user_id": request.user_id, "track_id": request.track_id, "consumed": count}


@app.get("/stats")
def stats():
    """Get recommendation statistics."""
    result = get_store().statistics()
    result.update(get_engine().stats())
    return result


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
