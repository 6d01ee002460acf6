"""
Configuration module for the music recommendation engine.
"""

import os
from typing import Any, Dict, Optional

import yaml


class Config:
    """Configuration manager for the recommendation engine."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration.

        Args:
            config_path: Path to YAML configuration file. If None, uses defaults.
        """
        self._config: Dict[str, Any] = self._get_builtin_defaults()
        self._config_path = config_path

        if config_path and os.path.exists(config_path):
            self.load_from_file(config_path)

    def _get_builtin_defaults(self) -> Dict[str, Any]:
        """Return built-in default configuration."""
        return {
            "database": {
                "url": "sqlite:///music_rec_engine.db",
                "echo": False,
            },
            "signals": {
                "window_days": 365,
                "max_event_rows": 50000,
                "play_threshold": 0.5,
            },
            "similarity": {
                "genre_weight": 0.5,
                "colisten_weight": 0.3,
                "audio_weight": 0.2,
                "session_gap_minutes": 30,
                "cache_size": 200000,
            },
            "collaborative": {
                "k_neighbors": 20,
                "loved_weight": 2.0,
                "top_genres": 3,
            },
            "content": {
                "top_n_seeds": 10,
                "loved_weight": 3.0,
                "artist_boost": 0.2,
            },
            "popularity": {
                "play_weight": 0.7,
                "rating_weight": 0.3,
                "default_rating": 2.5,
            },
            "discovery": {
                "min_rating": 4.5,
                "play_count_percentile": 25,
            },
            "blender": {
                "default_limit": 20,
                "max_limit": 50,
                "hybrid_min_share": 0.15,
                "weights": {
                    "personalized": {
                        "collaborative": 0.4,
                        "content_based": 0.4,
                        "popularity": 0.2,
                    },
                    "trending": {"popularity": 1.0},
                    "discover": {"discovery": 1.0},
                },
            },
            "playlist": {
                "overshoot_tolerance": 0.10,
                "pool_multiplier": 3,
                "default_track_seconds": 240,
                "default_duration_minutes": 60,
            },
            "persistence": {
                "ttl_hours": 24,
            },
            "engine": {
                "max_workers": 4,
                "request_budget_ms": 500,
                "exclude_played": True,
            },
            "trending": {
                "default_period": "last_7_days",
                "periods": {
                    "last_24_hours": 1,
                    "last_7_days": 7,
                    "last_30_days": 30,
                    "all_time": None,
                },
            },
            "moods": {
                "energetic": {"energy": [0.7, 1.0]},
                "chill": {"energy": [0.0, 0.4]},
                "happy": {"valence": [0.6, 1.0]},
                "melancholic": {"valence": [0.0, 0.4]},
                "dance": {"danceability": [0.7, 1.0]},
                "focus": {"energy": [0.3, 0.6]},
            },
            "api": {
                "host": "0.0.0.0",
                "port": 8000,
                "reload": False,
            },
            "logging": {
                "level": "INFO",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
        }

    def load_from_file(self, config_path: str) -> None:
        """Load configuration from YAML file.

        Values from the file are merged over the built-in defaults, so a
        file only needs to mention the keys it changes.

        Args:
            config_path: Path to YAML configuration file.
        """
        with open(config_path, 'r') as f:
            loaded = yaml.safe_load(f) or {}

        _deep_merge(self._config, loaded)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated key.

        Args:
            key: Dot-separated configuration key (e.g., "engine.max_workers")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self._config

        for part in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(part)
            if value is None:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value by dot-separated key.

        Args:
            key: Dot-separated configuration key
            value: Value to set
        """
        parts = key.split(".")
        section = self._config

        for part in parts[:-1]:
            section = section.setdefault(part, {})

        section[parts[-1]] = value

    @property
    def database(self) -> Dict[str, Any]:
        """Get database configuration."""
        return self._config.get("database", {})

    @property
    def signals(self) -> Dict[str, Any]:
        """Get signal store configuration."""
        return self._config.get("signals", {})

    @property
    def blender(self) -> Dict[str, Any]:
        """Get blender configuration."""
        return self._config.get("blender", {})

    @property
    def moods(self) -> Dict[str, Dict[str, Any]]:
        """Get mood definitions (feature name to [low, high] range)."""
        return self._config.get("moods", {})

    @property
    def trending_periods(self) -> Dict[str, Optional[int]]:
        """Get trending period names mapped to window days (None = all time)."""
        return self._config.get("trending", {}).get("periods", {})

    @property
    def api(self) -> Dict[str, Any]:
        """Get API configuration."""
        return self._config.get("api", {})

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self._config.get("logging", {})

    @property
    def database_url(self) -> str:
        """Get SQLAlchemy database URL."""
        return self.get("database.url", "sqlite:///music_rec_engine.db")

    @property
    def play_threshold(self) -> float:
        """Completion ratio above which a listening event counts as a play."""
        return self.get("signals.play_threshold", 0.5)

    @property
    def max_limit(self) -> int:
        """Hard maximum page size for ranked results."""
        return self.get("blender.max_limit", 50)

    def strategy_weights(self, preset: str) -> Dict[str, float]:
        """Get a named blend weight preset.

        Args:
            preset: Preset name (personalized, trending, discover, ...).

        Returns:
            Mapping of strategy name to weight.
        """
        return dict(self.get(f"blender.weights.{preset}", {}))

    def save(self, path: str) -> None:
        """Save configuration to YAML file.

        Args:
            path: Path to save configuration.
        """
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


# Global config instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance.

    Args:
        config_path: Optional path to configuration file.

    Returns:
        Configuration instance.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def set_config(config: Config) -> None:
    """Set global configuration instance.

    Args:
        config: Configuration instance.
    """
    global _config_instance
    _config_instance = config
