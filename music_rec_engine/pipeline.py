"""
Batch pipeline that generates and persists recommendations for every active user.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from tqdm import tqdm

from music_rec_engine.config import Config
from music_rec_engine.database import Database
from music_rec_engine.persistence import RecommendationStore
from music_rec_engine.recommender import RecommendationEngine


logger = logging.getLogger(__name__)


class Pipeline:
    """Orchestrates batch recommendation generation."""

    def __init__(
        self,
        config: Optional[Config] = None,
        database: Optional[Database] = None,
        engine: Optional[RecommendationEngine] = None,
    ):
        """Initialize pipeline.

        Args:
            config: Configuration object.
            database: Database to read signals from and write recommendations to.
            engine: Recommendation engine. Built from config if None.
        """
        self.config = config or Config()
        self.database = database or Database(self.config)
        self.engine = engine or RecommendationEngine(self.config, database=self.database)
        self.store = RecommendationStore(self.database, self.engine, self.config)

    def run_generation(
        self,
        user_ids: Optional[List[str]] = None,
        limit: Optional[int] = None,
        strategy_mix: Optional[Mapping[str, float]] = None,
        show_progress: bool = True,
    ) -> Dict[str, Any]:
        """Generate recommendations for many users.

        A failure for one user is logged and counted; the batch continues.
        Batch runs are not bound by the interactive request budget.

        Args:
            user_ids: Users to process. Defaults to every active user.
            limit: Recommendations per user.
            strategy_mix: Strategy weights override.
            show_progress: Display a progress bar.

        Returns:
            Summary with processed, failed and generated counts.
        """
        if user_ids is None:
            user_ids = self.engine.store.active_user_ids()

        logger.info(f"Generating recommendations for {len(user_ids)} users")

        generated = 0
        failed: Dict[str, str] = {}
        for user_id in tqdm(user_ids, disable=not show_progress):
            try:
                recommendations = self.store.generate(
                    user_id, strategy_mix=strategy_mix, limit=limit, budget_ms=0
                )
                generated += len(recommendations)
            except Exception as e:
                logger.error(f"Failed to generate recommendations for user {user_id}: {e}")
                failed[user_id] = str(e)

        logger.info(
            f"Generation complete: {len(user_ids) - len(failed)} users, "
            f"{generated} recommendations, {len(failed)} failures"
        )
        return {
            "users_processed": len(user_ids) - len(failed),
            "users_failed": len(failed),
            "recommendations_generated": generated,
            "failures": failed,
        }

    def get_statistics(self) -> Dict[str, Any]:
        """Get persistence and cache statistics.

        Returns:
            Dictionary of statistics.
        """
        stats = self.store.statistics()
        stats.update(self.engine.stats())
        return stats


def run_generation(
    config: Optional[Config] = None,
    user_ids: Optional[List[str]] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """Run one batch generation with a fresh pipeline.

    Args:
        config: Configuration object.
        user_ids: Users to process. Defaults to every active user.
        limit: Recommendations per user.

    Returns:
        Generation summary.
    """
    pipeline = Pipeline(config or Config())
    try:
        return pipeline.run_generation(user_ids, limit=limit)
    finally:
        pipeline.engine.close()
