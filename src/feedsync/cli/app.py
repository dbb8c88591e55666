"""Command line interface for Feedsync."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import pathlib
import signal
from collections.abc import AsyncIterator
from typing import List, Optional

import typer
import yaml
from dotenv import load_dotenv

from feedsync import get_version
from feedsync.clients import XApiClient
from feedsync.config import Config, load_config
from feedsync.core import JobOutcome, JobRunner, JobScheduler
from feedsync.logging import configure_logging
from feedsync.storage import Database
from feedsync.ui import format_time, render_status


def _load_environment(env_file: Optional[pathlib.Path]) -> None:
    """Load environment variables from .env files."""

    if env_file is not None:
        load_dotenv(dotenv_path=env_file, override=True)
    else:
        load_dotenv(override=False)


def _prepare_logging(
    config: Config,
    override_path: Optional[pathlib.Path],
    override_level: Optional[str],
    *,
    mirror_to_console: bool = False,
) -> tuple[logging.Logger, pathlib.Path]:
    """Configure logging based on configuration and overrides."""

    configured_path = override_path or config.logging.path
    configured_level = (override_level or config.logging.level).upper()
    logger = configure_logging(
        log_path=configured_path,
        level=configured_level,
        mirror_to_console=mirror_to_console,
    )
    file_handler = next((h for h in logger.handlers if hasattr(h, "baseFilename")), None)
    if file_handler is not None:
        return logger, pathlib.Path(file_handler.baseFilename)
    fallback_path = (
        pathlib.Path(configured_path) if configured_path else pathlib.Path.cwd() / "feedsync.log"
    )
    return logger, fallback_path


def _open_database(config: Config) -> Database:
    database = Database(config.storage.path)
    database.initialize()
    return database


@contextlib.asynccontextmanager
async def _job_runner(ctx: typer.Context, *, with_client: bool) -> AsyncIterator[JobRunner]:
    """Build a runner for one invocation; the upstream client is only opened when needed."""

    config: Config = ctx.obj["config"]
    logger: logging.Logger = ctx.obj["logger"]
    database = _open_database(config)
    client: Optional[XApiClient] = None
    if with_client:
        try:
            client = XApiClient(
                config.upstream, logger, timeout=config.fetch.request_timeout_seconds
            )
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=2) from exc
    try:
        yield JobRunner.from_config(config, database, client, logger)
    finally:
        if client is not None:
            await client.aclose()


def _emit_outcome(outcome: JobOutcome) -> None:
    """Print a job outcome; contention is not an error, a failed run exits non-zero."""

    if outcome.status == "skipped":
        typer.echo(f"Skipped ({outcome.reason}): {outcome.message}")
        return
    typer.echo(outcome.message, err=outcome.status == "failed")
    if outcome.status == "failed":
        if outcome.next_retry_at is not None:
            typer.echo(f"Next retry after {format_time(outcome.next_retry_at)}", err=True)
        raise typer.Exit(code=1)


app = typer.Typer(
    name="feedsync",
    help="Mirror social timelines into a local store with a bounded media cache.",
    no_args_is_help=True,
    add_completion=False,
)

config_app = typer.Typer(help="Configuration utilities.", no_args_is_help=True)
app.add_typer(config_app, name="config")


def _version_callback(value: bool) -> None:
    """Print the package version and exit when requested."""

    if value:
        typer.echo(get_version())
        raise typer.Exit()


@app.callback()
def main(  # pragma: no cover - exercised via CLI invocation
    ctx: typer.Context,
    config: Optional[pathlib.Path] = typer.Option(
        None,
        "--config",
        metavar="PATH",
        help="Path to YAML configuration file (used exclusively).",
    ),
    env_file: Optional[pathlib.Path] = typer.Option(
        None,
        "--env-file",
        metavar="PATH",
        help="Load environment variables from .env-style file before execution.",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        metavar="LEVEL",
        help="Override the configured log level (debug, info, warn, error).",
    ),
    log_path: Optional[pathlib.Path] = typer.Option(
        None,
        "--log-path",
        metavar="PATH",
        help="Override the base directory or file for log output.",
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show Feedsync version and exit.",
    ),
) -> None:
    """CLI root; loads environment, configuration and logging into the shared context."""

    ctx.ensure_object(dict)

    _load_environment(env_file)

    if ctx.invoked_subcommand == "version":
        return

    try:
        config_obj = load_config(config)
    except (FileNotFoundError, ValueError) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2) from exc

    logger, log_file = _prepare_logging(
        config_obj,
        log_path,
        log_level,
        mirror_to_console=ctx.invoked_subcommand == "serve",
    )

    ctx.obj.update(
        {
            "config": config_obj,
            "config_path": config,
            "log_file": log_file,
            "logger": logger,
        }
    )


@app.command()
def version() -> None:
    """Print the Feedsync version."""

    typer.echo(get_version())


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    format: str = typer.Option(
        "yaml",
        "--format",
        help="Output format (yaml or json).",
    ),
    paths: bool = typer.Option(
        False,
        "--paths",
        help="Explain configuration precedence and selected inputs.",
    ),
) -> None:
    """Show the effective configuration for this invocation."""

    config: Config = ctx.obj["config"]
    config_path: Optional[pathlib.Path] = ctx.obj.get("config_path")

    normalized_format = format.strip().lower()
    if normalized_format not in {"yaml", "json"}:
        raise typer.BadParameter("Format must be 'yaml' or 'json'.", param_hint="--format")

    if paths:
        if config.loaded_from:
            typer.echo("Loaded configuration from:", err=True)
            for entry in config.loaded_from:
                typer.echo(f"- {entry}", err=True)
        if config_path is None:
            typer.echo("Config precedence (when --config is not provided):", err=True)
            typer.echo("1) ./config/default.yaml (or packaged default if missing)", err=True)
            typer.echo("2) ./config/local.yaml (optional)", err=True)

    data = config.model.model_dump(mode="json")
    if data.get("upstream", {}).get("bearer_token"):
        data["upstream"]["bearer_token"] = "***"
    if normalized_format == "json":
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(yaml.safe_dump(data, sort_keys=False))


@app.command()
def fetch(ctx: typer.Context) -> None:
    """Fetch new posts for every configured account once."""

    async def _run() -> JobOutcome:
        async with _job_runner(ctx, with_client=True) as runner:
            return await runner.run_fetch()

    _emit_outcome(asyncio.run(_run()))


@app.command()
def backfill(
    ctx: typer.Context,
    user: Optional[List[str]] = typer.Option(
        None,
        "--user",
        metavar="HANDLE",
        help="Restrict the backfill to this account. May be provided multiple times.",
    ),
    limit: int = typer.Option(
        500,
        "--limit",
        min=1,
        max=5000,
        help="Maximum number of posts to scan.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Cache media even for accounts outside the priority list.",
    ),
) -> None:
    """Mirror media for posts that were ingested before caching was enabled."""

    async def _run() -> JobOutcome:
        async with _job_runner(ctx, with_client=False) as runner:
            return await runner.run_media_backfill(user or [], limit, force)

    _emit_outcome(asyncio.run(_run()))


@app.command()
def cleanup(ctx: typer.Context) -> None:
    """Evict expired and over-capacity media from the cache."""

    async def _run() -> JobOutcome:
        async with _job_runner(ctx, with_client=False) as runner:
            return await runner.run_media_cleanup()

    _emit_outcome(asyncio.run(_run()))


@app.command()
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit machine-readable JSON."),
) -> None:
    """Show the state of each job and the media cache usage."""

    config: Config = ctx.obj["config"]
    database = _open_database(config)
    runner = JobRunner.from_config(config, database, None, ctx.obj["logger"])
    views = runner.status()
    usage = database.media_usage()

    if as_json:
        payload = {
            "tasks": [
                {
                    "task_key": view.task_key,
                    "status": view.status,
                    "attempt": view.attempt,
                    "stale": view.stale,
                    "next_retry_at": view.next_retry_at,
                    "heartbeat_at": view.heartbeat_at,
                    "started_at": view.started_at,
                    "finished_at": view.finished_at,
                    "last_error": view.last_error,
                    "progress": view.progress,
                    "result": view.result,
                }
                for view in views
            ],
            "media_cache": {
                "assets": usage.asset_count,
                "bytes": usage.total_bytes,
                "errored": usage.errored,
                "linked_posts": usage.linked_posts,
                "max_bytes": config.media_cache.max_disk_bytes,
            },
        }
        typer.echo(json.dumps(payload, indent=2))
        return

    render_status(
        views,
        usage,
        max_bytes=config.media_cache.max_disk_bytes,
        log_path=str(ctx.obj["log_file"]),
    )


@app.command()
def serve(
    ctx: typer.Context,
    skip_initial: bool = typer.Option(
        False,
        "--skip-initial",
        help="Wait for the first cron tick instead of running every job on startup.",
    ),
) -> None:
    """Run the cron scheduler until interrupted."""

    logger: logging.Logger = ctx.obj["logger"]

    async def _run() -> None:
        async with _job_runner(ctx, with_client=True) as runner:
            scheduler = JobScheduler(runner, logger)
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signal.SIGTERM, stop_event.set)
            scheduler.start(run_immediately=not skip_initial)
            typer.echo(f"Scheduler running; log={ctx.obj['log_file']}")
            try:
                await stop_event.wait()
            finally:
                scheduler.shutdown()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Received interrupt; stopping scheduler.", err=True)
