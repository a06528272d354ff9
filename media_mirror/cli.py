# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from .config import CONFIG_FILE_NAME, LOG_FILE_NAME, ConfigException, SyncConfig
from .conversion import SUFFIX_STAR
from .files import remove_if_empty
from .scanner import ScanException
from .sync import RunState, RunSummary, SyncException, Synchronizer
from .tracking import ProcessingResult, ProgressStatus, Tracker

LOG_FORMAT = "%(asctime)s %(threadName)-10s %(levelname)-7s %(message)s"
EXIT_ERROR = 1
EXIT_STOPPED = 130
MB = 1024 * 1024

TABLE_HEADER = (
    f"{'#TODO':>7} {'Elapsed':>9} {'Remain':>9} {'#Conv/min':>9} "
    f"{'Avg Durat':>9} {'Avg Compr':>9} {'Est. Target Size (MB)':>21} "
    f"{'Est. Free Space (MB)':>20} {'#Errors':>7}"
)


def setup_logging(tgt_dir: Path, debug: bool) -> None:
    """Log into a fresh log file in the target directory"""
    logging.basicConfig(
        filename=str(tgt_dir / LOG_FILE_NAME),
        filemode="w",
        format=LOG_FORMAT,
        level=logging.DEBUG if debug else logging.ERROR,
        force=True,
    )


def close_logging(tgt_dir: Path) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    remove_if_empty(tgt_dir / LOG_FILE_NAME)


def show_help_and_exit() -> None:
    ctx = click.get_current_context()
    click.echo(ctx.get_help())
    sys.exit(EXIT_ERROR)


def fmt_duration(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def fmt_status(status: ProgressStatus) -> str:
    return (
        f"{status.todo:>7} {fmt_duration(status.elapsed):>9} "
        f"{fmt_duration(status.remaining):>9} {status.throughput:>9.1f} "
        f"{status.avg_duration:>8.2f}s {status.compression:>9.2f} "
        f"{status.est_size / MB:>21.1f} {status.est_free / MB:>20.1f} "
        f"{status.errors:>7}"
    )


def fmt_result(result: ProcessingResult, src_dir: Path) -> str:
    path = result.source.path
    try:
        path = path.relative_to(src_dir)
    except ValueError:
        pass
    lines = [str(path), f"    Duration: {result.duration:.2f}s"]
    if result.error is not None:
        lines.append(f"    Error: {result.error}")
    return "\n".join(lines)


def show_config(config: SyncConfig, initialize: bool) -> None:
    click.echo(f"Source:     {config.src_dir}")
    for path in sorted(config.excludes):
        click.echo(f"  Exclude:  {path}")
    click.echo(f"Target:     {config.tgt_dir}")
    if initialize or config.last_sync is None:
        click.echo("Last sync:  none (initial sync)")
    else:
        click.echo(f"Last sync:  {config.last_sync.isoformat()}")
    if config.wip:
        click.echo("            previous run did not finish")
    click.echo(f"Walkers:    {config.num_walkers}")
    click.echo(f"Converters: {config.num_converters}")
    click.echo("Rules:")
    for rule in sorted(config.rules.values(), key=lambda r: r.source == SUFFIX_STAR):
        click.echo(f"  {rule.source} -> {rule.target}: {rule.conversion}")


def show_progress(tracker: Tracker, src_dir: Path, verbose: bool) -> None:
    if not verbose:
        click.echo(TABLE_HEADER)
    for status, result in tracker.watch(1.0):
        if verbose:
            if result is not None:
                click.echo(fmt_result(result, src_dir))
        else:
            click.echo("\r" + fmt_status(status), nl=False)
    if not verbose:
        click.echo()


def show_summary(summary: RunSummary, config: SyncConfig) -> None:
    if summary.state is RunState.STOPPED:
        click.echo(f"Stopped. {summary.remaining} items were not processed.")
    else:
        click.echo(
            f"Done. {summary.dirs} directories and {summary.files} files"
            f" synchronized in {fmt_duration(summary.elapsed)}."
        )
    click.echo(f"Errors: {summary.errors}")
    if summary.errors:
        click.echo(f"See {config.tgt_dir / LOG_FILE_NAME} and {config.err_dir}")


@click.command()
@click.option(
    "-c",
    "--config",
    type=click.Path(exists=False, dir_okay=False),
    help=f"Specify a config file (default: <TARGET>/{CONFIG_FILE_NAME}).",
)
@click.option(
    "-i",
    "--initialize",
    is_flag=True,
    help="Delete the target tree and synchronize everything.",
)
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation.")
@click.option(
    "-v", "--verbose", is_flag=True, help="Show every file instead of a table."
)
@click.option("-l", "--log", "log_", is_flag=True, help="Write a detailed log.")
@click.argument(
    "target",
    default=".",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, writable=True),
)
@click.version_option(package_name="media-mirror")
def main(
    config: Optional[str],
    initialize: bool,
    yes: bool,
    verbose: bool,
    log_: bool,
    target: str,
) -> None:
    """Synchronize the music tree of TARGET with its source tree"""
    tgt_dir = Path(target).resolve()
    setup_logging(tgt_dir, log_)
    try:
        code = run(tgt_dir, config, initialize, yes, verbose)
    finally:
        close_logging(tgt_dir)
    sys.exit(code)


def run(
    tgt_dir: Path,
    config_path: Optional[str],
    initialize: bool,
    yes: bool,
    verbose: bool,
) -> int:
    try:
        config = SyncConfig.from_toml(
            tgt_dir, Path(config_path) if config_path else None
        )
    except FileNotFoundError:
        click.echo(f"Could not find configuration file {CONFIG_FILE_NAME}.\n")
        show_help_and_exit()
    except PermissionError:
        click.echo(f"Could not read configuration file {CONFIG_FILE_NAME}.\n")
        show_help_and_exit()
    except ConfigException as e:
        click.echo(f"Configuration error: {e}", err=True)
        return EXIT_ERROR

    show_config(config, initialize)
    if not yes:
        if initialize:
            click.echo(f"All entries of {tgt_dir} will be deleted!")
        click.confirm("Start?", default=True, abort=True)

    synchronizer = Synchronizer(config=config, init=initialize)
    click.echo("Finding differences ...")
    try:
        worklist = synchronizer.scan()
    except ScanException as e:
        click.echo(f"Scan failed: {e}", err=True)
        return EXIT_ERROR
    click.echo(
        f"{len(worklist.dirs)} directories and {len(worklist.files)} files"
        " to synchronize"
    )
    if not len(worklist):
        click.echo("Nothing to do.")
        return 0
    if not yes:
        click.confirm("Start processing?", default=True, abort=True)

    def interrupt(signum, frame) -> None:
        click.echo("\nStopping after the running conversions ...")
        synchronizer.stop()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous = signal.signal(signal.SIGINT, interrupt)
    try:
        tracker = synchronizer.process()
        if tracker is not None:
            show_progress(tracker, config.src_dir, verbose)
        summary = synchronizer.wait()
    except SyncException as e:
        click.echo(f"Synchronization failed: {e}", err=True)
        return EXIT_ERROR
    finally:
        signal.signal(signal.SIGINT, previous)

    show_summary(summary, config)
    if summary.state is RunState.STOPPED:
        return EXIT_STOPPED
    return EXIT_ERROR if summary.errors else 0
