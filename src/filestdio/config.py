"""FileStdioConfig: project-local settings for file-backed stdio links.

Resolution order (highest first):

    CLI flags             applied by the caller via FileStdioConfig.override()
    environment           FILESTDIO_* variables
    .env                  optional KEY=VALUE file next to filestdio.toml
    filestdio.toml        searched upward from the working directory
    defaults

filestdio.toml example:

    [stdio]
    # in = "run/server.in"       # explicit server input file
    # out = "run/server.out"     # explicit server output file
    prefix = "run/server"        # both files derived as <prefix>.in / <prefix>.out
    files = true                 # use files even when no path is given
    poll_ms = 50
    chunk_size = 65536
    start = "beginning"          # beginning | end
    tmp_dir = ".filestdio"       # where default per-process prefixes live

    [log]
    file = ".filestdio/filestdio.log"
    verbose = false

Set FILESTDIO_NO_CONFIG=1 to ignore filestdio.toml and .env entirely.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from filestdio.duplex import DEFAULT_TMP_DIR, StdioPaths, resolve_paths
from filestdio.streams import DEFAULT_CHUNK_SIZE, FileStdioError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger("filestdio.config")

_CONFIG_FILENAME = "filestdio.toml"
_DEFAULT_POLL_MS = 50
_START_POLICIES = ("beginning", "end")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(FileStdioError, ValueError):
    """Invalid configuration value."""


@dataclass
class StdioConfig:
    stdio_in: str = ""
    stdio_out: str = ""
    prefix: str = ""
    files: bool = False          # file mode requested without explicit paths
    poll_ms: int = _DEFAULT_POLL_MS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    start: str = "beginning"     # beginning | end
    tmp_dir: str = DEFAULT_TMP_DIR


@dataclass
class LogConfig:
    file: str = ""
    verbose: bool = False


@dataclass
class FileStdioConfig:
    """Resolved configuration."""

    root: Path                   # directory holding filestdio.toml (or cwd)
    stdio: StdioConfig = field(default_factory=StdioConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @property
    def poll_interval(self) -> float:
        return self.stdio.poll_ms / 1000.0

    @property
    def from_end(self) -> bool:
        return self.stdio.start == "end"

    @property
    def log_path(self) -> Path | None:
        return self.root / self.log.file if self.log.file else None

    def wants_files(self) -> bool:
        s = self.stdio
        return bool(s.stdio_in or s.stdio_out or s.prefix or s.files)

    def paths(self) -> StdioPaths | None:
        """Link files relative to root, or None for real stdio."""
        s = self.stdio
        return resolve_paths(
            s.stdio_in or None,
            s.stdio_out or None,
            s.prefix or None,
            use_files=s.files,
            cwd=self.root,
            tmp_dir=s.tmp_dir,
        )

    def endpoint_options(self) -> dict[str, Any]:
        """Keyword arguments for open_server_endpoint / open_client_endpoint."""
        return {
            "poll_interval": self.poll_interval,
            "chunk_size": self.stdio.chunk_size,
            "from_end": self.from_end,
        }

    def override(self, **values: Any) -> FileStdioConfig:
        """Return a copy with non-None stdio/log values replaced (CLI flags)."""
        stdio_fields = {k: v for k, v in values.items() if v is not None and hasattr(self.stdio, k)}
        log_fields = {k: v for k, v in values.items() if v is not None and hasattr(self.log, k)}
        cfg = replace(self, stdio=replace(self.stdio, **stdio_fields), log=replace(self.log, **log_fields))
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.stdio.poll_ms <= 0:
            msg = f"poll_ms must be positive, got {self.stdio.poll_ms}"
            raise ConfigError(msg)
        if self.stdio.chunk_size <= 0:
            msg = f"chunk_size must be positive, got {self.stdio.chunk_size}"
            raise ConfigError(msg)
        if self.stdio.start not in _START_POLICIES:
            msg = f"start must be one of {', '.join(_START_POLICIES)}, got {self.stdio.start!r}"
            raise ConfigError(msg)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _load_env(root: Path) -> dict[str, str]:
    """Read <root>/.env; `export` prefixes and surrounding quotes are allowed."""
    try:
        text = (root / ".env").read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    env: dict[str, str] = {}
    for raw_line in text.splitlines():
        entry = raw_line.strip()
        if not entry or entry.startswith("#"):
            continue
        entry = entry.removeprefix("export ").lstrip()
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        env[key.strip()] = value
    return env


def _as_int(value: str | None, fallback: int) -> int:
    if not value:
        return fallback
    try:
        return int(value, 10)
    except ValueError:
        logger.warning("ignoring non-integer value %r", value)
        return fallback


def _as_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    return fallback


def _find_root(start: Path) -> Path:
    """Nearest directory at or above start holding filestdio.toml, else start."""
    return next(
        (d for d in (start, *start.parents) if (d / _CONFIG_FILENAME).is_file()),
        start,
    )


def _toml_table(raw: dict[str, Any], name: str, config_path: Path) -> dict[str, Any]:
    table = raw.get(name, {})
    if not isinstance(table, dict):
        msg = f"{config_path}: [{name}] must be a table, got {type(table).__name__}"
        raise ConfigError(msg)
    return table


def _toml_int(table: dict[str, Any], key: str, default: int, config_path: Path) -> int:
    value = table.get(key, default)
    # bool is an int subclass; `poll_ms = true` is still a mistake.
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{config_path}: {key} must be an integer, got {value!r}"
        raise ConfigError(msg)
    return value


def load_config(root: Path | str | None = None, environ: Mapping[str, str] | None = None) -> FileStdioConfig:
    """Load filestdio.toml (searching upward from cwd if root is None), then apply env."""
    environ = os.environ if environ is None else environ
    skip_files = environ.get("FILESTDIO_NO_CONFIG") == "1"
    start = Path(root) if root else Path.cwd()
    root_path = start.absolute() if skip_files else _find_root(start.absolute())

    raw: dict[str, Any] = {}
    env: dict[str, str] = {}
    config_path = root_path / _CONFIG_FILENAME
    if not skip_files:
        if config_path.exists():
            try:
                with config_path.open("rb") as f:
                    raw = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                msg = f"{config_path}: {exc}"
                raise ConfigError(msg) from exc
        env = _load_env(root_path)
    # Process environment beats .env.
    env.update({k: v for k, v in environ.items() if k.startswith("FILESTDIO_")})

    stdio_section = _toml_table(raw, "stdio", config_path)
    log_section = _toml_table(raw, "log", config_path)
    toml_poll_ms = _toml_int(stdio_section, "poll_ms", _DEFAULT_POLL_MS, config_path)
    toml_chunk_size = _toml_int(stdio_section, "chunk_size", DEFAULT_CHUNK_SIZE, config_path)

    stdio = StdioConfig(
        stdio_in=env.get("FILESTDIO_IN") or str(stdio_section.get("in", "")),
        stdio_out=env.get("FILESTDIO_OUT") or str(stdio_section.get("out", "")),
        prefix=env.get("FILESTDIO_PREFIX") or str(stdio_section.get("prefix", "")),
        files=_as_bool(env.get("FILESTDIO_FILES"), bool(stdio_section.get("files", False))),
        poll_ms=_as_int(env.get("FILESTDIO_POLL_MS"), toml_poll_ms),
        chunk_size=_as_int(env.get("FILESTDIO_CHUNK_SIZE"), toml_chunk_size),
        start=(env.get("FILESTDIO_START") or str(stdio_section.get("start", "beginning"))).lower(),
        tmp_dir=env.get("FILESTDIO_TMP_DIR") or str(stdio_section.get("tmp_dir", DEFAULT_TMP_DIR)),
    )
    log = LogConfig(
        file=env.get("FILESTDIO_LOG_FILE") or str(log_section.get("file", "")),
        verbose=_as_bool(env.get("FILESTDIO_VERBOSE"), bool(log_section.get("verbose", False))),
    )

    cfg = FileStdioConfig(root=root_path, stdio=stdio, log=log)
    cfg.validate()
    return cfg


def init_config(root: Path, prefix: str | None = None) -> Path:
    """Write a default filestdio.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"{_CONFIG_FILENAME} already exists at {config_path}"
        raise FileExistsError(msg)

    prefix_line = f'prefix = "{prefix}"' if prefix else f'# prefix = "{DEFAULT_TMP_DIR}/link"'
    content = f"""\
[stdio]
# in = "{DEFAULT_TMP_DIR}/link.in"     # server input file (client appends here)
# out = "{DEFAULT_TMP_DIR}/link.out"   # server output file (client tails this)
{prefix_line}
# files = false         # use files even when no path or prefix is set
# poll_ms = {_DEFAULT_POLL_MS}
# chunk_size = {DEFAULT_CHUNK_SIZE}
# start = "beginning"   # beginning: replay existing content | end: only new writes
# tmp_dir = "{DEFAULT_TMP_DIR}"

[log]
# file = "{DEFAULT_TMP_DIR}/filestdio.log"
# verbose = false
"""
    config_path.write_text(content)
    return config_path
