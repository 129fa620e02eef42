"""
Command-line interface for bpmkey.

Commands:
    bpmkey analyze [DIR...]             Scan directories and analyze untagged files
    bpmkey check                        Check that the aubio CLI is installed
    bpmkey fingerprint <file>           Print a file's cache fingerprint
    bpmkey cache stats                  Show analysis cache counters
    bpmkey cache lookup <file>          Show the cached result for a file

Global options:
    --config <path>                     Explicit config.yaml
    --verbose / -v                      Debug output on the console
    --log-dir <dir>                     Also write log files to <dir>

Usage:
    # Analyze the directories from config.yaml
    bpmkey analyze

    # Analyze a specific directory with two workers
    bpmkey analyze ~/Music/Incoming --concurrency 2

    # See what the cache knows about a file
    bpmkey cache lookup ~/Music/Artist/Song.mp3

Configuration:
    See bpmkey.core.config for the config.yaml layout and the BPMKEY_*
    environment overrides. Without a config file, defaults are used and
    directories must be given on the command line.
"""

import asyncio
import dataclasses
import functools
import json
import sys
from pathlib import Path

import click
from tqdm import tqdm

from bpmkey import __version__
from bpmkey.analysis.cache import ResultCache
from bpmkey.analysis.fingerprint import fingerprint, strong_fingerprint
from bpmkey.analysis.queue import AnalysisQueue, QueueStats
from bpmkey.analysis.runner import run_tool
from bpmkey.core.config import Config, load_config
from bpmkey.core.exceptions import BpmKeyError
from bpmkey.core.logger import get_logger, setup_logging, shutdown_logging
from bpmkey.library.scanner import LibraryScanner, ScanStats

logger = get_logger(__name__)


# Seconds between progress bar refreshes while the queue drains
PROGRESS_POLL_INTERVAL = 0.25


def handle_error(func):
    """
    Decorator to handle CLI errors consistently.

    bpmkey errors are shown with their message, anything else is logged as
    an unexpected failure. Both exit with status 1; Ctrl-C exits with 130.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except click.ClickException:
            raise
        except KeyboardInterrupt:
            click.echo(click.style("\n\nOperation cancelled by user", fg="yellow"))
            sys.exit(130)
        except BpmKeyError as e:
            logger.debug(f"Details: {e.details}")
            click.echo(click.style(f"Error: {e.message}", fg="red"), err=True)
            sys.exit(1)
        except Exception as e:
            logger.error(f"Command failed: {e}")
            click.echo(click.style(f"Error: {e}", fg="red"), err=True)
            sys.exit(1)
    return wrapper


@click.group()
@click.version_option(__version__, prog_name="bpmkey")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug output")
@click.option("--log-dir", type=click.Path(file_okay=False, path_type=Path), help="Directory for log files")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool, log_dir: Path | None) -> None:
    """
    bpmkey: offline BPM and key analysis for your music library.

    Runs aubio on audio files that lack BPM/key tags, caches the results by
    file fingerprint and writes them back into the files.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose
    ctx.obj["log_dir"] = log_dir
    ctx.call_on_close(shutdown_logging)


def _load_configuration(ctx: click.Context) -> Config:
    """Load config.yaml and set up logging for the invoked command."""
    config = load_config(ctx.obj.get("config_path"))

    level = "DEBUG" if ctx.obj.get("verbose") else config.logging.level
    log_dir = ctx.obj.get("log_dir") or config.logging.directory
    setup_logging(log_dir, level=level, colored=config.logging.colored)
    return config


# =============================================================================
# analyze
# =============================================================================

@cli.command()
@click.argument("directories", nargs=-1, type=click.Path(file_okay=False, path_type=Path))
@click.option("--concurrency", "-c", type=click.IntRange(min=1), help="Files analyzed at the same time")
@click.option("--cache-file", type=click.Path(dir_okay=False, path_type=Path), help="Analysis cache JSON file")
@click.option("--no-progress", is_flag=True, help="Hide the progress bar")
@click.pass_context
@handle_error
def analyze(
    ctx: click.Context,
    directories: tuple[Path, ...],
    concurrency: int | None,
    cache_file: Path | None,
    no_progress: bool
) -> None:
    """
    Scan music directories and analyze files missing BPM or key.

    DIRECTORIES default to library.directories from the configuration.
    """
    config = _load_configuration(ctx)

    overrides = {}
    if concurrency is not None:
        overrides["concurrency"] = concurrency
    if cache_file is not None:
        overrides["cache_file"] = cache_file.expanduser()
    if overrides:
        config = dataclasses.replace(config, analysis=dataclasses.replace(config.analysis, **overrides))

    targets = [d.expanduser() for d in directories] or list(config.library.directories)
    if not targets:
        raise click.UsageError("No music directories given and none configured in library.directories")

    scan_stats, queue_stats = asyncio.run(_run_analyze(config, targets, show_progress=not no_progress))
    _print_analyze_stats(scan_stats, queue_stats)


async def _run_analyze(config: Config, directories: list[Path], show_progress: bool) -> tuple[ScanStats, QueueStats]:
    queue = AnalysisQueue.from_config(config.analysis)
    await queue.cache.load()

    if not await queue.is_available():
        logger.warning("Files will be recorded as not analyzed; install aubio and run again")

    scanner = LibraryScanner(queue, directories, formats=config.library.formats)
    try:
        scan_stats = await scanner.scan()
        await _wait_with_progress(queue, show_progress)
    finally:
        await queue.cache.close()

    return scan_stats, queue.stats


async def _wait_with_progress(queue: AnalysisQueue, show_progress: bool) -> None:
    """Wait for the queue to drain, updating a progress bar meanwhile."""
    idle = asyncio.ensure_future(queue.idle())
    with tqdm(total=queue.stats.queued, desc="Analyzing", unit="file", disable=not show_progress) as bar:
        while not idle.done():
            await asyncio.wait({idle}, timeout=PROGRESS_POLL_INTERVAL)
            bar.n = queue.stats.completed
            bar.refresh()
    await idle


def _print_analyze_stats(scan_stats: ScanStats, queue_stats: QueueStats) -> None:
    logger.info("=" * 60)
    logger.info("ANALYSIS STATISTICS")
    logger.info("=" * 60)
    logger.info(f"Audio files:       {scan_stats.total}")
    logger.info(f"Already tagged:    {scan_stats.already_tagged}")
    logger.info(f"Queued:            {queue_stats.queued}")
    logger.info(f"From cache:        {queue_stats.cache_hits}")
    logger.info(f"Analyzed:          {queue_stats.analyzed}")
    logger.info(f"Accepted:          {queue_stats.accepted}")
    logger.info(f"No usable result:  {queue_stats.failed}")
    if scan_stats.errors:
        logger.info(f"Scan errors:       {scan_stats.errors}")
    logger.info("=" * 60)


# =============================================================================
# check / fingerprint
# =============================================================================

@cli.command()
@click.pass_context
@handle_error
def check(ctx: click.Context) -> None:
    """Check that the aubio CLI is installed and runnable."""
    config = _load_configuration(ctx)
    analysis = config.analysis

    result = asyncio.run(run_tool(analysis.tool, ["--version"], timeout=analysis.probe_timeout))
    if result.succeeded or result.stdout.strip():
        version = (result.stdout.strip() or result.stderr.strip()).splitlines()
        click.echo(click.style(f"{analysis.tool} found: {version[0] if version else 'unknown version'}", fg="green"))
        return

    click.echo(click.style(f"{analysis.tool} not available: {result.stderr.strip() or 'no output'}", fg="red"), err=True)
    click.echo("Install aubio (e.g. 'apt install aubio-tools' or 'brew install aubio') and try again.", err=True)
    sys.exit(1)


@cli.command(name="fingerprint")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--strong", is_flag=True, help="Also hash the first and last 64 KiB of the file")
@handle_error
def fingerprint_command(file: Path, strong: bool) -> None:
    """Print the cache fingerprint of FILE."""
    click.echo(strong_fingerprint(file) if strong else fingerprint(file))


# =============================================================================
# cache
# =============================================================================

@cli.group()
def cache() -> None:
    """Inspect the analysis cache."""
    pass


def _open_cache(config: Config) -> ResultCache:
    result_cache = ResultCache(config.analysis.cache_file, flush_delay=config.analysis.flush_delay)
    asyncio.run(result_cache.load())
    return result_cache


@cache.command(name="stats")
@click.pass_context
@handle_error
def cache_stats(ctx: click.Context) -> None:
    """Show how many results the cache holds."""
    config = _load_configuration(ctx)
    counts = _open_cache(config).stats()

    click.echo(f"Cache file:  {config.analysis.cache_file}")
    click.echo(f"Entries:     {counts['total']}")
    click.echo(f"Accepted:    {counts['ok']}")
    click.echo(f"Failed:      {counts['failed']}")


@cache.command(name="lookup")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@handle_error
def cache_lookup(ctx: click.Context, file: Path) -> None:
    """Show the cached analysis result for FILE."""
    config = _load_configuration(ctx)
    key = fingerprint(file)
    entry = _open_cache(config).get(key)

    if entry is None:
        click.echo(f"No cached result for {file} ({key})", err=True)
        sys.exit(1)

    click.echo(json.dumps({"fingerprint": key, **entry.to_cache_dict()}, indent=2))


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `bpmkey` from the command line.
    """
    cli()


if __name__ == "__main__":
    main()
