"""Duplex endpoints built from two file channels.

A link is two plain files. Seen from the server:

    <prefix>.in    client appends, server tails
    <prefix>.out   server appends, client tails

    server = await open_server_endpoint(paths.input, paths.output)
    client = await open_client_endpoint(paths.input, paths.output)   # same pair

The two endpoints share nothing in memory. They can live in different
processes and be opened in any order; the files are the only rendezvous.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from filestdio.streams import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_LIMIT,
    DEFAULT_POLL_INTERVAL,
    AppendingFileWriter,
    open_tail_reader,
)

if TYPE_CHECKING:
    from filestdio.streams import TailingFileReader

logger = logging.getLogger("filestdio.duplex")

IN_SUFFIX = ".in"
OUT_SUFFIX = ".out"
DEFAULT_TMP_DIR = ".filestdio"


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StdioPaths:
    """The two files of one link, named from the server's point of view."""
    input: Path     # server reads, client writes
    output: Path    # server writes, client reads

    @classmethod
    def from_prefix(cls, prefix: Path | str) -> StdioPaths:
        prefix = str(prefix)
        return cls(input=Path(prefix + IN_SUFFIX).absolute(), output=Path(prefix + OUT_SUFFIX).absolute())


def default_prefix(cwd: Path | None = None, pid: int | None = None, tmp_dir: str = DEFAULT_TMP_DIR) -> Path:
    """<cwd>/.filestdio/stdio-<pid>: unique per hosting process."""
    base = (cwd or Path.cwd()) / tmp_dir
    return base / f"stdio-{pid if pid is not None else os.getpid()}"


def resolve_paths(
    stdio_in: str | Path | None = None,
    stdio_out: str | Path | None = None,
    prefix: str | Path | None = None,
    *,
    use_files: bool = False,
    cwd: Path | None = None,
    tmp_dir: str = DEFAULT_TMP_DIR,
) -> StdioPaths | None:
    """Work out the link files, or None when real stdio should be used.

    Explicit paths win; whichever is missing comes from the prefix, and the
    prefix defaults to a per-process location under the working directory.
    """
    if not (stdio_in or stdio_out or prefix or use_files):
        return None
    base = cwd or Path.cwd()
    derived = StdioPaths.from_prefix(base / prefix if prefix else default_prefix(base, tmp_dir=tmp_dir))
    return StdioPaths(
        input=(base / stdio_in).absolute() if stdio_in else derived.input,
        output=(base / stdio_out).absolute() if stdio_out else derived.output,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@dataclass
class DuplexEndpoint:
    """One side of a link: a tailing reader over one file, a writer on the other."""
    role: str
    reader: asyncio.StreamReader
    writer: AppendingFileWriter
    transport: TailingFileReader

    @property
    def read_path(self) -> Path:
        return self.transport.path

    @property
    def write_path(self) -> Path:
        return self.writer.path

    def close(self) -> None:
        """Stop tailing and close the writer. Safe to call repeatedly."""
        self.transport.close()
        self.writer.close()

    def is_closing(self) -> bool:
        return self.transport.is_closing() or self.writer.is_closing()

    async def wait_closed(self) -> None:
        await self.writer.wait_closed()
        # connection_lost is delivered on the next loop iteration.
        await asyncio.sleep(0)

    async def __aenter__(self) -> DuplexEndpoint:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()
        await self.wait_closed()


async def _open_endpoint(
    role: str,
    read_path: Path | str,
    write_path: Path | str,
    *,
    limit: int,
    poll_interval: float,
    chunk_size: int,
    from_end: bool,
) -> DuplexEndpoint:
    reader, transport = await open_tail_reader(
        read_path,
        limit=limit,
        poll_interval=poll_interval,
        chunk_size=chunk_size,
        from_end=from_end,
    )
    try:
        writer = AppendingFileWriter(write_path)
    except OSError:
        transport.close()
        raise
    logger.info("%s endpoint: reading %s, writing %s", role, transport.path, writer.path)
    return DuplexEndpoint(role=role, reader=reader, writer=writer, transport=transport)


async def open_server_endpoint(
    path_in: Path | str,
    path_out: Path | str,
    *,
    limit: int = DEFAULT_LIMIT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    from_end: bool = False,
) -> DuplexEndpoint:
    """Server side: tail *path_in*, append to *path_out*."""
    return await _open_endpoint(
        "server", path_in, path_out,
        limit=limit, poll_interval=poll_interval, chunk_size=chunk_size, from_end=from_end,
    )


async def open_client_endpoint(
    path_in: Path | str,
    path_out: Path | str,
    *,
    limit: int = DEFAULT_LIMIT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    from_end: bool = False,
) -> DuplexEndpoint:
    """Client side of the same pair: tail the server's *path_out*, append to its *path_in*."""
    return await _open_endpoint(
        "client", path_out, path_in,
        limit=limit, poll_interval=poll_interval, chunk_size=chunk_size, from_end=from_end,
    )
