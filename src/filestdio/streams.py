"""File-backed stream halves: a tailing read transport and an append-only sink.

TailingFileReader is an asyncio.ReadTransport. Instead of a pipe it watches a
regular file that another process appends to:

    tick (every poll_interval):
        size = fstat(fd).st_size
        if size > cursor:
            data = pread(fd, min(size - cursor, chunk_size), cursor)
            cursor += len(data)
            protocol.data_received(data)

The cursor is private to the transport and only moves forward, so the
consumer sees the file's bytes exactly once and in order. Nothing is shared
with the writer except the file itself.

AppendingFileWriter opens its file with O_APPEND and never seeks, so existing
bytes are never rewritten.

Concurrent writes: O_APPEND is atomic per write(2) on local filesystems, but
only ONE writer per file is supported. Interleaving between two writers is
undefined.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("filestdio.streams")

DEFAULT_POLL_INTERVAL = 0.05    # seconds between size checks
DEFAULT_CHUNK_SIZE = 64 * 1024  # max bytes handed to the protocol per tick
DEFAULT_LIMIT = 2 ** 16         # StreamReader buffer limit (pauses at 2x)


class FileStdioError(Exception):
    """Base class for filestdio errors."""


class ChannelBrokenError(FileStdioError):
    """The writer side of a channel failed and must not be reused."""


class ChannelClosedError(ChannelBrokenError):
    """Write attempted after the writer was closed."""


def _open_for_tail(path: Path) -> int:
    """Open *path* read-only, creating parents and an empty file if missing.

    O_CREAT without O_TRUNC leaves existing content alone.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    return os.open(path, os.O_RDONLY | os.O_CREAT, 0o644)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class TailingFileReader(asyncio.ReadTransport):
    """Read transport that tails a growing file by polling."""

    def __init__(
        self,
        path: Path | str,
        protocol: asyncio.BaseProtocol,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        from_end: bool = False,
    ) -> None:
        self._path = Path(path).absolute()
        super().__init__(extra={"path": self._path})
        if poll_interval <= 0:
            msg = f"poll_interval must be positive, got {poll_interval}"
            raise ValueError(msg)
        if chunk_size <= 0:
            msg = f"chunk_size must be positive, got {chunk_size}"
            raise ValueError(msg)
        self._loop = loop or asyncio.get_running_loop()
        self._protocol = protocol
        self._poll_interval = poll_interval
        self._chunk_size = chunk_size
        self._paused = False
        self._closing = False
        self._timer: asyncio.TimerHandle | None = None

        # Setup errors propagate to the caller.
        self._fd: int | None = _open_for_tail(self._path)
        try:
            self._cursor = os.fstat(self._fd).st_size if from_end else 0
        except OSError:
            os.close(self._fd)
            raise

        logger.debug("tailing %s from offset %d", self._path, self._cursor)
        self._protocol.connection_made(self)
        self._schedule(0)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def cursor(self) -> int:
        """Offset of the next byte to deliver."""
        return self._cursor

    def __repr__(self) -> str:
        state = "closed" if self._closing else ("paused" if self._paused else "reading")
        return f"<TailingFileReader {self._path} cursor={self._cursor} {state}>"

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _schedule(self, delay: float) -> None:
        if self._timer is None:
            self._timer = self._loop.call_later(delay, self._tick)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self) -> None:
        self._timer = None
        if self._closing or self._paused:
            return
        data = self._poll_once()
        if data:
            self._protocol.data_received(data)
        # data_received may have paused or closed us.
        if self._closing or self._paused:
            return
        self._schedule(0 if len(data) == self._chunk_size else self._poll_interval)

    def _poll_once(self) -> bytes:
        """Read at most one chunk past the cursor; b'' when there is nothing new."""
        if self._fd is None:
            return b""
        try:
            size = os.fstat(self._fd).st_size
            if size <= self._cursor:
                return b""
            data = os.pread(self._fd, min(size - self._cursor, self._chunk_size), self._cursor)
        except OSError as exc:
            logger.debug("poll of %s failed, retrying: %s", self._path, exc)
            return b""
        self._cursor += len(data)
        return data

    # ------------------------------------------------------------------
    # ReadTransport
    # ------------------------------------------------------------------

    def is_reading(self) -> bool:
        return not (self._paused or self._closing)

    def pause_reading(self) -> None:
        if self._closing or self._paused:
            return
        self._paused = True
        self._cancel_timer()
        logger.debug("paused %s at offset %d", self._path, self._cursor)

    def resume_reading(self) -> None:
        if self._closing or not self._paused:
            return
        self._paused = False
        self._schedule(0)
        logger.debug("resumed %s at offset %d", self._path, self._cursor)

    def set_protocol(self, protocol: asyncio.BaseProtocol) -> None:
        self._protocol = protocol

    def get_protocol(self) -> asyncio.BaseProtocol:
        return self._protocol

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        """Stop polling and release the handle. Safe to call repeatedly."""
        if self._closing:
            return
        self._closing = True
        self._cancel_timer()
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError as exc:
                logger.debug("close of %s failed: %s", self._path, exc)
            self._fd = None
        logger.debug("stopped tailing %s at offset %d", self._path, self._cursor)
        self._loop.call_soon(self._protocol.connection_lost, None)

    def abort(self) -> None:
        self.close()


async def open_tail_reader(
    path: Path | str,
    *,
    limit: int = DEFAULT_LIMIT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    from_end: bool = False,
) -> tuple[asyncio.StreamReader, TailingFileReader]:
    """Tail *path* into a StreamReader. Returns (reader, transport)."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    protocol = asyncio.StreamReaderProtocol(reader)
    transport = TailingFileReader(
        path,
        protocol,
        loop=loop,
        poll_interval=poll_interval,
        chunk_size=chunk_size,
        from_end=from_end,
    )
    return reader, transport


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------


class AppendingFileWriter:
    """Append-only byte sink with the asyncio.StreamWriter surface.

    Bytes go straight to os.write, so there is never buffered data left
    behind at close. Any write error marks the writer broken for good.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).absolute()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._fd: int | None = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        self._error: OSError | None = None
        self._closed = False
        self._written = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def bytes_written(self) -> int:
        return self._written

    @property
    def broken(self) -> bool:
        return self._error is not None

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("broken" if self._error else "open")
        return f"<AppendingFileWriter {self._path} {state}>"

    def _check_usable(self) -> None:
        if self._closed:
            msg = f"write to closed channel {self._path}"
            raise ChannelClosedError(msg)
        if self._error is not None:
            msg = f"channel {self._path} is broken: {self._error}"
            raise ChannelBrokenError(msg) from self._error

    def write(self, data: bytes | bytearray | memoryview) -> None:
        self._check_usable()
        view = memoryview(data).cast("B")
        try:
            while view:
                n = os.write(self._fd, view)  # type: ignore[arg-type]
                self._written += n
                view = view[n:]
        except OSError as exc:
            self._error = exc
            logger.warning("append to %s failed: %s", self._path, exc)
            msg = f"append to {self._path} failed: {exc}"
            raise ChannelBrokenError(msg) from exc

    def writelines(self, data: Iterable[bytes]) -> None:
        for chunk in data:
            self.write(chunk)

    async def drain(self) -> None:
        self._check_usable()
        await asyncio.sleep(0)

    def can_write_eof(self) -> bool:
        return False

    def is_closing(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the handle. Safe to call repeatedly; never raises."""
        if self._closed:
            return
        self._closed = True
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError as exc:
                logger.debug("close of %s failed: %s", self._path, exc)
            self._fd = None

    async def wait_closed(self) -> None:
        return None

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        if name == "path":
            return self._path
        return default

    def __enter__(self) -> AppendingFileWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
