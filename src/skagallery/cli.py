"""Command-line interface for SkaGallery."""

import asyncio
from pathlib import Path

import click

from skagallery import __version__
from skagallery.config import Config
from skagallery.logging import get_logger, setup_logging

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """SkaGallery - Discord media gallery archiver.

    Archives gallery channel media, tags it by reaction and keeps upload
    statistics.
    """
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    # CLI overrides config
    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json

    setup_logging(json_output=effective_log_json, level=effective_log_level)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"skagallery {__version__}")


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the Discord gallery bot.

    Requires DISCORD_TOKEN environment variable to be set.
    Use Ctrl+C or send SIGTERM for graceful shutdown.
    """
    from skagallery.bot import run_bot
    from skagallery.database import create_tables, get_engine

    config = ctx.obj["config"]

    if not config.discord_token:
        click.echo("Error: DISCORD_TOKEN environment variable not set", err=True)
        click.echo("Set DISCORD_TOKEN to your bot token to connect to Discord.", err=True)
        raise SystemExit(1)

    if not config.discord.gallery_channel_id:
        click.echo("Error: no gallery channel configured", err=True)
        click.echo("Set discord.gallery_channel_id or GALLERY_CHANNEL_ID.", err=True)
        raise SystemExit(1)

    engine = get_engine(config)
    create_tables(engine)

    log.info("run_command_invoked", gallery_channel_id=config.discord.gallery_channel_id)

    try:
        asyncio.run(run_bot(config, engine))
    except KeyboardInterrupt:
        log.info("shutdown_requested_keyboard")
    except Exception as e:
        log.error("run_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        engine.dispose()


# =============================================================================
# Database Commands
# =============================================================================


@cli.group()
def db() -> None:
    """Database management commands."""
    pass


@db.command(name="init")
@click.pass_context
def db_init(ctx: click.Context) -> None:
    """Create the database and any missing tables."""
    from skagallery.database import create_tables, get_engine

    config = ctx.obj["config"]
    engine = get_engine(config)
    create_tables(engine)
    engine.dispose()

    click.echo(f"Database ready: {config.database_path}")


# =============================================================================
# Configuration Commands
# =============================================================================


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="config.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
        click.echo(f"Configuration valid: {config_file}")
        click.echo(f"  Data directory: {cfg.data_dir}")
        click.echo(f"  Database path: {cfg.database_path}")
        click.echo(f"  Media directory: {cfg.media_path}")
        click.echo(f"  Log level: {cfg.log_level}")
        click.echo(f"  Gallery channel: {cfg.discord.gallery_channel_id or 'not configured'}")
        click.echo(f"  Gif provider: {cfg.gif_provider.name}")
        click.echo(f"  Stats refresh: {cfg.stats.refresh_cron or 'disabled'}")

    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)


# =============================================================================
# Stats Commands
# =============================================================================


def _stats_components(config: Config):
    from skagallery.database import create_tables, get_engine
    from skagallery.stats import StatsAggregator
    from skagallery.stats_migration import StatsMigrationRunner
    from skagallery.store import GalleryStore

    engine = get_engine(config)
    create_tables(engine)
    store = GalleryStore(engine)
    aggregator = StatsAggregator(store, config)
    return engine, aggregator, StatsMigrationRunner(store, aggregator, config)


@cli.group()
def stats() -> None:
    """Upload statistics commands."""
    pass


@stats.command(name="status")
@click.pass_context
def stats_status(ctx: click.Context) -> None:
    """Show migration status and server totals."""
    engine, aggregator, runner = _stats_components(ctx.obj["config"])

    async def run():
        status = await runner.status()
        server = await aggregator.store.get_server_stats()
        return status, server

    try:
        status, server = asyncio.run(run())
    finally:
        engine.dispose()

    click.echo(f"Migration: {'complete' if status.has_run else 'not run'}")
    click.echo(f"  Migrated users: {status.migrated_user_count}")
    if server is None:
        click.echo("Server stats: not computed yet")
    else:
        click.echo(f"Server stats (updated {server.last_updated_at:%Y-%m-%d %H:%M} UTC)")
        click.echo(f"  Users: {server.total_users}")
        click.echo(f"  Images: {server.total_images}")
        click.echo(f"  Average per user: {server.avg_images_per_user}")
        click.echo(f"  Median uploads: {server.median_uploads}")


@stats.command(name="migrate")
@click.option("--force", is_flag=True, help="Rebuild user stats even if already migrated.")
@click.pass_context
def stats_migrate(ctx: click.Context, force: bool) -> None:
    """Seed user statistics from existing media."""
    engine, _, runner = _stats_components(ctx.obj["config"])

    async def run():
        if force:
            return await runner.migrate_existing()
        return await runner.run_safely()

    try:
        result = asyncio.run(run())
    except Exception as e:
        log.error("stats_migrate_failed", error=str(e))
        click.echo(f"Migration failed: {e}", err=True)
        raise SystemExit(1)
    finally:
        engine.dispose()

    if result is None:
        click.echo("Migration already completed; use --force to rebuild.")
        return

    click.echo(f"Migrated {result.users_migrated} users from {result.media_scanned} media")
    click.echo(f"  Skipped (no author): {result.media_skipped}")
    click.echo(f"  Batches written: {result.batches_written}")
    click.echo(f"  Total images: {result.server_stats.total_images}")


@stats.command(name="refresh")
@click.pass_context
def stats_refresh(ctx: click.Context) -> None:
    """Recompute server-wide statistics now."""
    engine, aggregator, _ = _stats_components(ctx.obj["config"])

    try:
        server = asyncio.run(aggregator.refresh_server_stats())
    finally:
        engine.dispose()

    click.echo(f"Server stats refreshed: {server.total_users} users, {server.total_images} images")
