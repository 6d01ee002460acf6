"""
CLI module for music recommendation engine commands.
"""

import json
import logging
import sys
from typing import List, Optional

import click

from music_rec_engine.config import Config, set_config
from music_rec_engine.database import Database
from music_rec_engine.errors import RecommenderError
from music_rec_engine.models import RankedTrack
from music_rec_engine.persistence import RecommendationStore
from music_rec_engine.pipeline import Pipeline
from music_rec_engine.recommender import RecommendationEngine


def setup_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Setup logging configuration.

    Args:
        level: Logging level.
        fmt: Log record format.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=fmt or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _engine(ctx) -> RecommendationEngine:
    if "engine" not in ctx.obj:
        ctx.obj["engine"] = RecommendationEngine(ctx.obj["config"], database=ctx.obj["database"])
        ctx.call_on_close(ctx.obj["engine"].close)
    return ctx.obj["engine"]


def _echo_ranked(ranked: List[RankedTrack], as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in ranked], indent=2))
        return

    if not ranked:
        click.echo("No recommendations found")
        return

    for i, rec in enumerate(ranked, 1):
        click.echo(f"{i}. {rec.title or 'Unknown'} - {rec.artist_name or 'Unknown Artist'}")
        click.echo(f"   Score: {rec.score:.3f} ({rec.recommendation_type})")
        click.echo(f"   {rec.reason}")
        click.echo(f"   Track ID: {rec.track_id}")
        click.echo()


def _fail(error: RecommenderError) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Path to configuration file"
)
@click.option(
    "--database-url",
    "-d",
    help="SQLAlchemy database URL (overrides config)"
)
@click.option(
    "--log-level",
    "-l",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level"
)
@click.pass_context
def cli(ctx, config: str, database_url: str, log_level: str):
    """Music Recommendation Engine - hybrid personalized music recommendations."""
    # Load configuration
    cfg = Config(config) if config else Config()
    if database_url:
        cfg.set("database.url", database_url)
    set_config(cfg)

    # Setup logging
    setup_logging(log_level or cfg.get("logging.level", "INFO"), cfg.get("logging.format"))

    # Store config in context
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg
    ctx.obj["database"] = Database(cfg)


@cli.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create any missing database tables."""
    database = ctx.obj["database"]
    database.create_all()
    click.echo(f"Database ready: {database.url}")


@cli.command()
@click.argument("user_id")
@click.option("--limit", "-n", type=int, default=None, help="Number of recommendations")
@click.option("--offset", type=int, default=None, help="Ranked items to skip")
@click.option("--genre", "-g", help="Only recommend tracks of this genre")
@click.option("--mood", "-m", help="Only recommend tracks matching this mood")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def recommend(ctx, user_id: str, limit: int, offset: int, genre: str, mood: str, as_json: bool):
    """Get personalized recommendations for a user."""
    try:
        ranked = _engine(ctx).get_recommendations(
            user_id, limit=limit, offset=offset, genre=genre, mood=mood
        )
    except RecommenderError as e:
        _fail(e)
    _echo_ranked(ranked, as_json)


@cli.command()
@click.option(
    "--period",
    "-p",
    type=click.Choice(["last_24_hours", "last_7_days", "last_30_days", "all_time"]),
    default=None,
    help="Listening window"
)
@click.option("--limit", "-n", type=int, default=None, help="Number of tracks")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def trending(ctx, period: str, limit: int, as_json: bool):
    """Show trending tracks."""
    try:
        ranked = _engine(ctx).get_trending(period=period, limit=limit)
    except RecommenderError as e:
        _fail(e)
    _echo_ranked(ranked, as_json)


@cli.command()
@click.option("--user-id", "-u", help="Exclude this user's banned tracks")
@click.option("--limit", "-n", type=int, default=None, help="Number of tracks")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def discover(ctx, user_id: str, limit: int, as_json: bool):
    """Show hidden gems."""
    try:
        ranked = _engine(ctx).get_discovery(user_id=user_id, limit=limit)
    except RecommenderError as e:
        _fail(e)
    _echo_ranked(ranked, as_json)


@cli.command()
@click.argument("name")
@click.option("--description", help="Playlist description")
@click.option("--minutes", "-t", type=float, default=None, help="Target duration in minutes")
@click.option("--user-id", "-u", help="Personalize for this user")
@click.option("--genre", "-g", help="Genre filter")
@click.option("--mood", "-m", help="Mood filter")
@click.option("--save/--no-save", default=False, help="Persist the playlist for the user")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
def playlist(ctx, name: str, description: str, minutes: float, user_id: str,
             genre: str, mood: str, save: bool, as_json: bool):
    """Generate a smart playlist."""
    engine = _engine(ctx)
    try:
        result = engine.generate_playlist(
            name, description=description, duration_minutes=minutes,
            user_id=user_id, genre=genre, mood=mood,
        )
        if save and user_id:
            RecommendationStore(ctx.obj["database"], engine, ctx.obj["config"]).save_playlist(
                user_id, result
            )
    except RecommenderError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    click.echo(f"\n{result.name}: {len(result.tracks)} tracks, "
               f"{result.total_duration_seconds // 60} of "
               f"{result.target_duration_seconds // 60} minutes\n")
    for track in result.tracks:
        minutes_part, seconds_part = divmod(track.duration, 60)
        click.echo(f"{track.position:3d}. {track.title} - {track.artist_name} "
                   f"[{minutes_part}:{seconds_part:02d}]")


@cli.command()
@click.option("--user-id", "-u", "user_ids", multiple=True, help="Users to process (default: all active)")
@click.option("--limit", "-n", type=int, default=None, help="Recommendations per user")
@click.option("--progress/--no-progress", default=True, help="Show a progress bar")
@click.pass_context
def generate(ctx, user_ids, limit: int, progress: bool):
    """Generate and persist recommendations in batch."""
    pipeline = Pipeline(ctx.obj["config"], ctx.obj["database"], _engine(ctx))
    summary = pipeline.run_generation(
        list(user_ids) or None, limit=limit, show_progress=progress
    )

    click.echo(f"Users processed: {summary['users_processed']}")
    click.echo(f"Recommendations generated: {summary['recommendations_generated']}")
    if summary["users_failed"]:
        click.echo(f"Users failed: {summary['users_failed']}", err=True)
        for user_id, error in summary["failures"].items():
            click.echo(f"  {user_id}: {error}", err=True)


@cli.command()
@click.argument("user_id")
@click.argument("track_id")
@click.pass_context
def consume(ctx, user_id: str, track_id: str):
    """Mark a recommended track as consumed."""
    store = RecommendationStore(ctx.obj["database"], config=ctx.obj["config"])
    try:
        count = store.mark_consumed(user_id, track_id)
    except RecommenderError as e:
        _fail(e)
    click.echo(f"Marked {count} recommendation(s) consumed")


@cli.command()
@click.pass_context
def stats(ctx):
    """Show recommendation statistics."""
    store = RecommendationStore(ctx.obj["database"], config=ctx.obj["config"])
    result = store.statistics()

    click.echo(f"\nRecommendation Statistics")
    click.echo(f"=========================\n")
    click.echo(f"Total recommendations: {result['total_recommendations']}")
    click.echo(f"Active recommendations: {result['active_recommendations']}")
    click.echo(f"Consumed: {result['recommendations_consumed']} "
               f"({result['consumption_rate']:.1%})")
    click.echo(f"Average score: {result['average_score']:.3f}")
    click.echo(f"Active users: {result['active_users']}")
    click.echo(f"Last generation: {result['last_generation'] or 'never'}")
    click.echo()


@cli.command()
@click.option(
    "--host",
    default=None,
    help="Host to bind to"
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to bind to"
)
@click.option(
    "--reload/--no-reload",
    default=False,
    help="Enable auto-reload"
)
@click.pass_context
def serve(ctx, host: str, port: int, reload: bool):
    """Start the API server."""
    import uvicorn

    config = ctx.obj["config"]
    host = host or config.get("api.host", "0.0.0.0")
    port = port or config.get("api.port", 8000)

    click.echo(f"Starting API server at http://{host}:{port}")

    # Import and run app
    from music_rec_engine.api import app, configure

    configure(config, ctx.obj["database"])
    uvicorn.run(
        app,
        host=host,
        port=port,
        reload=reload,
    )


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
