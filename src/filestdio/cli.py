"""filestdio CLI: stdio over a pair of plain files.

Commands:
    filestdio init                       create filestdio.toml
    filestdio paths                      print the server's input/output files
    filestdio serve -- CMD [ARGS...]     run CMD with its stdio on the link files
    filestdio connect                    attach this terminal/pipe to a served link
    filestdio clean                      delete the link files

Link options (all commands but init):
    --stdio-in PATH        server input file
    --stdio-out PATH       server output file
    --stdio-files [PREFIX] use <PREFIX>.in / <PREFIX>.out (default prefix is per-process)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from filestdio.config import ConfigError, FileStdioConfig, init_config, load_config
from filestdio.relay import connect as relay_connect
from filestdio.relay import serve as relay_serve

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from filestdio.duplex import StdioPaths

logger = logging.getLogger("filestdio.cli")

_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(cfg: FileStdioConfig) -> None:
    """stderr always (INFO when verbose), plus an appending log file if configured.

    stdout is left alone: `connect` uses it for data.
    """
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.INFO if cfg.log.verbose else logging.WARNING)
    handlers: list[logging.Handler] = [stderr_handler]
    log_path = cfg.log_path
    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path, mode="a", encoding="utf-8"))
        except OSError as exc:
            click.echo(f"[filestdio] failed to open log file {log_path}: {exc}", err=True)
    logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT, handlers=handlers, force=True)
    if log_path is not None:
        logger.info("logging to file %s", log_path)


def _load_cfg(**overrides: Any) -> FileStdioConfig:
    try:
        cfg = load_config().override(**overrides)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    _setup_logging(cfg)
    return cfg


def _require_paths(cfg: FileStdioConfig) -> StdioPaths:
    paths = cfg.paths()
    if paths is None:
        msg = "no link files configured: pass --stdio-files PREFIX or --stdio-in/--stdio-out"
        raise click.UsageError(msg)
    return paths


def _run(main: Coroutine[Any, Any, Any]) -> Any:
    """asyncio.run with setup errors and interrupts mapped to click exits."""
    try:
        return asyncio.run(main)
    except OSError as exc:
        raise click.ClickException(f"cannot start: {exc}") from exc
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("interrupted")
        sys.exit(130)


def link_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Shared --stdio-* / --poll-ms / --start / logging options."""
    options = [
        click.option("--stdio-in", "stdio_in", type=click.Path(dir_okay=False), help="Server input file"),
        click.option("--stdio-out", "stdio_out", type=click.Path(dir_okay=False), help="Server output file"),
        click.option(
            "--stdio-files", "stdio_files", is_flag=False, flag_value="", default=None, metavar="[PREFIX]",
            help="Use <PREFIX>.in/<PREFIX>.out; without PREFIX a per-process default is used",
        ),
        click.option("--poll-ms", "poll_ms", type=int, help="Poll interval in milliseconds"),
        click.option("--start", "start", type=click.Choice(["beginning", "end"]), help="Where a reader starts"),
        click.option("--log-file", "log_file", type=click.Path(dir_okay=False), help="Append logs to this file"),
        click.option("-v", "--verbose", is_flag=True, default=None, help="Log to stderr"),
    ]
    for option in reversed(options):
        func = option(func)

    @functools.wraps(func)
    def wrapper(*args: Any, stdio_files: str | None, log_file: str | None, **kwargs: Any) -> Any:
        cfg = _load_cfg(
            stdio_in=kwargs.pop("stdio_in"),
            stdio_out=kwargs.pop("stdio_out"),
            prefix=stdio_files or None,
            files=True if stdio_files is not None else None,
            poll_ms=kwargs.pop("poll_ms"),
            start=kwargs.pop("start"),
            file=log_file,
            verbose=kwargs.pop("verbose") or None,
        )
        return func(*args, cfg=cfg, **kwargs)

    return wrapper


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="filestdio")
def cli() -> None:
    """filestdio: stdio over plain files."""


@cli.command()
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
@click.option("--prefix", default=None, help="Link prefix to write into the config")
def init(root: str, prefix: str | None) -> None:
    """Create filestdio.toml in the current project."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, prefix=prefix)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("filestdio.toml already exists, skipping init")


@cli.command()
@link_options
def paths(cfg: FileStdioConfig) -> None:
    """Print the link files (server view: input first, then output)."""
    if not cfg.wants_files():
        cfg = cfg.override(files=True)
    resolved = _require_paths(cfg)
    click.echo(f"in  : {resolved.input}")
    click.echo(f"out : {resolved.output}")


@cli.command(context_settings={"ignore_unknown_options": True})
@link_options
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def serve(cfg: FileStdioConfig, command: tuple[str, ...]) -> None:
    """Run COMMAND with its stdin/stdout on the link files.

    Without any --stdio-* option COMMAND just inherits this process's stdio.
    """
    resolved = cfg.paths()
    if resolved is not None:
        logger.info("serving %s: in=%s out=%s", command[0], resolved.input, resolved.output)
    returncode = _run(relay_serve(command, resolved, **cfg.endpoint_options()))
    sys.exit(returncode)


@cli.command(name="connect")
@link_options
@click.option("--linger", type=float, default=1.0, show_default=True,
              help="Seconds to keep copying output after stdin closes; 0 drops late replies")
def connect_cmd(cfg: FileStdioConfig, linger: float) -> None:
    """Attach stdin/stdout to a link served elsewhere."""
    if not (cfg.stdio.prefix or (cfg.stdio.stdio_in and cfg.stdio.stdio_out)):
        # A pid-derived default can never name another process's files.
        msg = "connect needs --stdio-files PREFIX or both --stdio-in and --stdio-out"
        raise click.UsageError(msg)
    resolved = _require_paths(cfg)
    logger.info("connecting: in=%s out=%s", resolved.input, resolved.output)
    _run(relay_connect(resolved, linger=linger, **cfg.endpoint_options()))


@cli.command()
@link_options
def clean(cfg: FileStdioConfig) -> None:
    """Delete the two link files."""
    resolved = _require_paths(cfg)
    for path in (resolved.input, resolved.output):
        if path.exists():
            path.unlink()
            click.echo(f"Removed {path}")
        else:
            click.echo(f"Not found {path}")
