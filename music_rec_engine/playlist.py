"""
Smart playlist generation under a duration budget.

Selection is a greedy walk over the ranked pool, not an exact subset-sum:
it stays linear in the pool size, and the realized duration may differ
from the target.
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

import pandas as pd

from music_rec_engine.config import Config
from music_rec_engine.errors import InvalidParameter
from music_rec_engine.models import Playlist, PlaylistTrack, RankedTrack


logger = logging.getLogger(__name__)


def mood_mask(tracks: pd.DataFrame, ranges: Dict[str, Sequence[float]]) -> pd.Series:
    """Boolean mask of tracks whose audio features fall inside every range.

    Tracks missing a constrained feature never match.
    """
    mask = pd.Series(True, index=tracks.index)
    for feature, bounds in ranges.items():
        low, high = float(bounds[0]), float(bounds[1])
        values = tracks[feature].astype(float)
        mask &= values.between(low, high).fillna(False).astype(bool)
    return mask


class PlaylistGenerator:
    """Builds playlists from a ranked candidate pool."""

    def __init__(self, config: Optional[Config] = None):
        """Initialize playlist generator.

        Args:
            config: Configuration object.
        """
        self.config = config or Config()
        self.tolerance = self.config.get("playlist.overshoot_tolerance", 0.10)
        self.pool_multiplier = self.config.get("playlist.pool_multiplier", 3)
        self.default_track_seconds = self.config.get("playlist.default_track_seconds", 240)

    def target_seconds(self, duration_minutes) -> int:
        """Validate a duration in minutes and convert it to seconds.

        Raises:
            InvalidParameter: If the duration is not a positive number.
        """
        try:
            minutes = float(duration_minutes)
        except (TypeError, ValueError):
            raise InvalidParameter("duration_minutes", "duration_minutes must be a number")
        if not math.isfinite(minutes) or minutes <= 0:
            raise InvalidParameter("duration_minutes", "duration_minutes must be > 0")
        return int(round(minutes * 60))

    def pool_size(self, target_seconds: int, tracks: pd.DataFrame) -> int:
        """Number of ranked candidates to request for a target duration.

        Args:
            target_seconds: Target playlist duration.
            tracks: Catalog used to estimate the average track length.

        Returns:
            Oversized pool size (``pool_multiplier`` x expected track count).
        """
        average = self.default_track_seconds
        if not tracks.empty:
            mean = float(tracks["duration"].mean())
            if mean > 0:
                average = mean
        expected = max(1, math.ceil(target_seconds / average))
        return expected * self.pool_multiplier

    def select(self, pool: List[RankedTrack], target_seconds: int) -> List[RankedTrack]:
        """Greedily pick tracks in rank order until the target is reached.

        A track is accepted if the running total stays within
        ``target * (1 + tolerance)``; otherwise it is skipped and the next
        ranked track is tried.
        """
        ceiling = target_seconds * (1.0 + self.tolerance)
        selected: List[RankedTrack] = []
        total = 0

        for track in pool:
            if total >= target_seconds:
                break
            duration = track.duration or 0
            if duration <= 0:
                continue
            if total + duration <= ceiling:
                selected.append(track)
                total += duration

        return selected

    def build(
        self,
        name: str,
        description: Optional[str],
        target_seconds: int,
        pool: List[RankedTrack],
        user_id: Optional[str] = None,
    ) -> Playlist:
        """Assemble a playlist from a ranked pool.

        Args:
            name: Playlist name.
            description: Optional description.
            target_seconds: Target duration in seconds.
            pool: Ranked candidates, best first.
            user_id: Owner, if personalized.

        Returns:
            The playlist with its realized duration.
        """
        selected = self.select(pool, target_seconds)
        playlist = Playlist(
            name=name,
            description=description,
            target_duration_seconds=target_seconds,
            user_id=user_id,
            tracks=[
                PlaylistTrack(
                    position=position,
                    track_id=track.track_id,
                    title=track.title,
                    artist_name=track.artist_name,
                    duration=int(track.duration),
                    score=track.score,
                    reason=track.reason,
                )
                for position, track in enumerate(selected, start=1)
            ],
        )

        logger.info(
            f"Playlist '{name}': {len(playlist.tracks)} tracks, "
            f"{playlist.total_duration_seconds}s of {target_seconds}s target "
            f"(pool {len(pool)})"
        )
        return playlist
