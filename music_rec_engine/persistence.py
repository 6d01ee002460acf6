"""
Recommendation persistence: TTL-bounded rows in the ``recommendations`` table.

At most one row per (user, track, type) is active at any instant.
Regeneration expires the previous active row at the regeneration instant
and inserts a new one; rows are never deleted. Concurrent writes for one
user serialize on a row lock of the user (SQLite serializes all writers).
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from music_rec_engine.config import Config
from music_rec_engine.database import Database, RecommendationRow, User, to_iso, utc_now
from music_rec_engine.errors import PersistenceWriteFailure
from music_rec_engine.models import PLAYLIST_GENERATION, Playlist, RankedTrack, Recommendation
from music_rec_engine.recommender import RecommendationEngine


logger = logging.getLogger(__name__)


def _row_to_recommendation(row: RecommendationRow) -> Recommendation:
    metadata: Dict[str, Any] = {}
    if row.metadata_json:
        try:
            metadata = json.loads(row.metadata_json)
        except ValueError:
            logger.warning(f"Unreadable metadata on recommendation {row.id}")
    return Recommendation(
        id=row.id,
        user_id=row.user_id,
        track_id=row.track_id,
        recommendation_type=row.recommendation_type,
        score=row.score,
        reason=row.reason,
        metadata=metadata,
        is_consumed=row.is_consumed,
        created_at=row.created_at,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
    )


class RecommendationStore:
    """Writes, expires and reads persisted recommendations."""

    def __init__(
        self,
        database: Database,
        engine: Optional[RecommendationEngine] = None,
        config: Optional[Config] = None,
    ):
        """Initialize recommendation store.

        Args:
            database: Database holding the ``recommendations`` table.
            engine: Engine used by ``generate``. Built lazily if None.
            config: Configuration object.
        """
        self.database = database
        self.config = config or database.config
        self._engine = engine
        self.ttl = timedelta(hours=self.config.get("persistence.ttl_hours", 24))

    @property
    def engine(self) -> RecommendationEngine:
        if self._engine is None:
            self._engine = RecommendationEngine(self.config, database=self.database)
        return self._engine

    def generate(
        self,
        user_id: str,
        strategy_mix: Optional[Mapping[str, float]] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
        budget_ms: Optional[int] = None,
    ) -> List[Recommendation]:
        """Rank recommendations for a user and persist them.

        Args:
            user_id: User to generate for.
            strategy_mix: Strategy weights; defaults to the personalized preset.
            limit: Number of recommendations to keep.
            now: Generation instant.
            budget_ms: Wall-clock budget override for the ranking.

        Returns:
            The persisted recommendations.

        Raises:
            PersistenceWriteFailure: If the write fails. The computed
                recommendations are attached to the error.
        """
        ranked = self.engine.get_recommendations(
            user_id, limit=limit, weights=strategy_mix, now=now, budget_ms=budget_ms
        )
        return self.save(user_id, ranked, now=now)

    def save(
        self,
        user_id: str,
        ranked: List[RankedTrack],
        recommendation_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Recommendation]:
        """Persist ranked tracks, superseding any active duplicates.

        Args:
            user_id: Owner of the recommendations.
            ranked: Ranked tracks to persist.
            recommendation_type: Force a type; defaults to each track's label.
            now: Generation instant.

        Returns:
            The persisted recommendations.
        """
        now = now or utc_now()
        expires_at = now + self.ttl
        recommendations = [
            Recommendation(
                id=uuid.uuid4().hex,
                user_id=user_id,
                track_id=track.track_id,
                recommendation_type=recommendation_type or track.recommendation_type,
                score=float(track.score),
                reason=track.reason,
                metadata={"contributions": dict(track.contributions), **track.metadata},
                is_consumed=False,
                created_at=now,
                expires_at=expires_at,
            )
            for track in ranked
        ]
        if not recommendations:
            return recommendations

        superseded_at = now - timedelta(microseconds=1)
        try:
            with self.database.session() as session:
                # Row lock on the owner serializes concurrent regeneration for one user
                session.execute(select(User.id).where(User.id == user_id).with_for_update())
                for rec in recommendations:
                    session.execute(
                        update(RecommendationRow)
                        .where(RecommendationRow.user_id == rec.user_id)
                        .where(RecommendationRow.track_id == rec.track_id)
                        .where(RecommendationRow.recommendation_type == rec.recommendation_type)
                        .where(RecommendationRow.expires_at >= now)
                        .values(expires_at=superseded_at)
                    )
                    session.add(RecommendationRow(
                        id=rec.id,
                        user_id=rec.user_id,
                        track_id=rec.track_id,
                        recommendation_type=rec.recommendation_type,
                        score=rec.score,
                        reason=rec.reason,
                        metadata_json=json.dumps(rec.metadata, default=str),
                        is_consumed=False,
                        created_at=rec.created_at,
                        expires_at=rec.expires_at,
                    ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist {len(recommendations)} recommendations for {user_id}: {e}")
            raise PersistenceWriteFailure(
                f"Could not persist recommendations for user {user_id}",
                recommendations=recommendations,
            ) from e

        logger.info(f"Persisted {len(recommendations)} recommendations for user {user_id}")
        return recommendations

    def save_playlist(
        self,
        user_id: str,
        playlist: Playlist,
        now: Optional[datetime] = None,
    ) -> List[Recommendation]:
        """Persist a generated playlist's tracks as ``playlist_generation`` rows."""
        ranked = [
            RankedTrack(
                track_id=track.track_id,
                score=track.score,
                reason=track.reason,
                recommendation_type=PLAYLIST_GENERATION,
                title=track.title,
                artist_name=track.artist_name,
                duration=track.duration,
                metadata={"playlist": playlist.name, "position": track.position},
            )
            for track in playlist.tracks
        ]
        return self.save(user_id, ranked, recommendation_type=PLAYLIST_GENERATION, now=now)

    def mark_consumed(self, user_id: str, track_id: str, now: Optional[datetime] = None) -> int:
        """Mark the active recommendations of a (user, track) pair as consumed.

        Returns:
            Number of rows updated; 0 if nothing was active or unconsumed.
        """
        now = now or utc_now()
        try:
            with self.database.session() as session:
                result = session.execute(
                    update(RecommendationRow)
                    .where(RecommendationRow.user_id == user_id)
                    .where(RecommendationRow.track_id == track_id)
                    .where(RecommendationRow.is_consumed.is_(False))
                    .where(RecommendationRow.created_at <= now)
                    .where(RecommendationRow.expires_at >= now)
                    .values(is_consumed=True, consumed_at=now)
                )
                count = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark {track_id} consumed for {user_id}: {e}")
            raise PersistenceWriteFailure(
                f"Could not mark track {track_id} consumed for user {user_id}"
            ) from e

        if count:
            logger.debug(f"Marked {count} recommendation(s) consumed: {user_id}/{track_id}")
        return count

    def active(
        self,
        user_id: str,
        recommendation_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Recommendation]:
        """Non-expired recommendations of a user, best first."""
        now = now or utc_now()
        stmt = (
            select(RecommendationRow)
            .where(RecommendationRow.user_id == user_id)
            .where(RecommendationRow.created_at <= now)
            .where(RecommendationRow.expires_at >= now)
            .order_by(RecommendationRow.score.desc(), RecommendationRow.track_id)
        )
        if recommendation_type is not None:
            stmt = stmt.where(RecommendationRow.recommendation_type == recommendation_type)

        with self.database.session() as session:
            rows = session.execute(stmt).scalars().all()
            return [_row_to_recommendation(row) for row in rows]

    def statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Aggregate statistics over all persisted recommendations."""
        now = now or utc_now()
        with self.database.session() as session:
            total, consumed, average, last_generation = session.execute(
                select(
                    func.count(RecommendationRow.id),
                    func.sum(case((RecommendationRow.is_consumed.is_(True), 1), else_=0)),
                    func.avg(RecommendationRow.score),
                    func.max(RecommendationRow.created_at),
                )
            ).one()
            active, active_users = session.execute(
                select(
                    func.count(RecommendationRow.id),
                    func.count(func.distinct(RecommendationRow.user_id)),
                ).where(RecommendationRow.expires_at >= now)
            ).one()

        total = int(total or 0)
        consumed = int(consumed or 0)
        return {
            "total_recommendations": total,
            "recommendations_consumed": consumed,
            "active_recommendations": int(active or 0),
            "active_users": int(active_users or 0),
            "average_score": round(float(average), 6) if average is not None else 0.0,
            "consumption_rate": round(consumed / total, 6) if total else 0.0,
            "last_generation": to_iso(last_generation),
        }
