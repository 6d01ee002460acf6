"""
Blender/Ranker: merges strategy results into one ranked, deduplicated list.
"""

import logging
import math
from typing import Dict, List, Mapping, Optional, Tuple

import pandas as pd

from music_rec_engine.config import Config
from music_rec_engine.errors import InvalidParameter
from music_rec_engine.models import RankedTrack, Strategy, StrategyResult


logger = logging.getLogger(__name__)


def parse_weights(weights: Mapping[str, float]) -> Dict[Strategy, float]:
    """Convert a name -> weight mapping into strategy weights.

    Raises:
        InvalidParameter: On an unknown strategy or a negative or non-finite weight.
    """
    parsed: Dict[Strategy, float] = {}
    for name, weight in weights.items():
        try:
            strategy = name if isinstance(name, Strategy) else Strategy.parse(name)
        except ValueError:
            raise InvalidParameter("weights", f"Unknown strategy '{name}'")
        try:
            weight = float(weight)
        except (TypeError, ValueError):
            raise InvalidParameter("weights", f"Weight for '{name}' is not a number")
        if not math.isfinite(weight):
            raise InvalidParameter("weights", f"Weight for '{name}' must be finite")
        if weight < 0:
            raise InvalidParameter("weights", f"Weight for '{name}' must be >= 0")
        parsed[strategy] = parsed.get(strategy, 0.0) + weight
    return parsed


class Blender:
    """Weighted blending, hybrid labelling, ranking and pagination."""

    def __init__(self, config: Optional[Config] = None):
        """Initialize blender.

        Args:
            config: Configuration object.
        """
        self.config = config or Config()
        self.default_limit = self.config.get("blender.default_limit", 20)
        self.max_limit = self.config.max_limit
        self.hybrid_min_share = self.config.get("blender.hybrid_min_share", 0.15)

    def validate_pagination(self, limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
        """Apply defaults and bounds to limit/offset.

        Args:
            limit: Page size; defaults to ``blender.default_limit``.
            offset: Number of ranked items to skip; defaults to 0.

        Returns:
            Tuple of (limit, offset).

        Raises:
            InvalidParameter: If limit is outside [1, max_limit] or offset < 0.
        """
        limit = self.default_limit if limit is None else limit
        offset = 0 if offset is None else offset
        if not isinstance(limit, int) or limit < 1 or limit > self.max_limit:
            raise InvalidParameter("limit", f"limit must be between 1 and {self.max_limit}")
        if not isinstance(offset, int) or offset < 0:
            raise InvalidParameter("offset", "offset must be >= 0")
        return limit, offset

    def effective_weights(
        self,
        weights: Mapping[Strategy, float],
        results: Mapping[Strategy, StrategyResult],
    ) -> Dict[Strategy, float]:
        """Renormalize weights over strategies that returned coverage.

        Strategies with zero weight, no result or zero coverage are dropped.
        """
        active = {
            strategy: weight
            for strategy, weight in weights.items()
            if weight > 0 and strategy in results and results[strategy].coverage
        }
        total = sum(active.values())
        if total <= 0:
            return {}
        return {strategy: weight / total for strategy, weight in active.items()}

    def blend(
        self,
        results: Mapping[Strategy, StrategyResult],
        weights: Mapping[Strategy, float],
        tracks: pd.DataFrame,
    ) -> List[RankedTrack]:
        """Merge per-strategy scores into one ranked list.

        Args:
            results: Strategy results of this request.
            weights: Requested strategy weights.
            tracks: Track catalog indexed by track_id (for tie-breaks and display).

        Returns:
            Ranked tracks: score desc, play_count desc, track_id asc. The
            play count is the one popularity scored with (windowed plays for
            trending) and falls back to the catalog counter.
        """
        effective = self.effective_weights(weights, results)
        if not effective:
            logger.info("No strategy produced coverage; nothing to rank")
            return []

        logger.debug(
            "Blend weights: "
            + ", ".join(f"{s.value}={w:.3f}" for s, w in effective.items())
        )

        contributions: Dict[str, Dict[Strategy, float]] = {}
        for strategy, weight in effective.items():
            for track_id, scored in results[strategy].scores.items():
                if scored.score <= 0:
                    continue
                contributions.setdefault(track_id, {})[strategy] = weight * scored.score

        popularity = results.get(Strategy.POPULARITY)
        ranked: List[RankedTrack] = []
        for track_id, parts in contributions.items():
            if track_id not in tracks.index:
                continue
            total = sum(parts.values())
            if total <= 0:
                continue

            # Fixed enum order keeps labels and tie-breaks deterministic
            ordered = [s for s in Strategy if s in parts]
            top = max(ordered, key=lambda s: parts[s])
            scored = results[top].scores[track_id]
            row = tracks.loc[track_id]

            ranked.append(RankedTrack(
                track_id=track_id,
                score=min(1.0, max(0.0, total)),
                reason=scored.reason,
                recommendation_type=self.label(parts, total),
                title=row["title"],
                artist_name=row["artist_name"],
                duration=int(row["duration"]),
                play_count=self._play_count(popularity, track_id, row),
                contributions={s.value: parts[s] for s in ordered},
                metadata=dict(scored.metadata),
            ))

        ranked.sort(key=lambda r: (-r.score, -r.play_count, r.track_id))
        return ranked

    @staticmethod
    def _play_count(popularity: Optional[StrategyResult], track_id: str, row: pd.Series) -> int:
        if popularity is not None and track_id in popularity.scores:
            plays = popularity.scores[track_id].metadata.get("plays")
            if plays is not None:
                return int(plays)
        return int(row["play_count"])

    def label(self, parts: Mapping[Strategy, float], total: float) -> str:
        """Recommendation type for a blended track.

        Two or more strategies each contributing at least ``hybrid_min_share``
        of the final score yield ``hybrid_<a>_<b>``; otherwise the top
        contributor's type.
        """
        contributing = [
            s for s in Strategy
            if s in parts and total > 0 and parts[s] / total >= self.hybrid_min_share
        ]
        if len(contributing) >= 2:
            return "hybrid_" + "_".join(s.short_name for s in contributing)
        top = max((s for s in Strategy if s in parts), key=lambda s: parts[s])
        return top.value

    def paginate(self, ranked: List[RankedTrack], limit: int, offset: int) -> List[RankedTrack]:
        return ranked[offset:offset + limit]
