"""Relays between file-backed endpoints and real pipes.

serve: host a stdio program behind the server endpoint

    <prefix>.in  --tail-->  child stdin
    child stdout --append-> <prefix>.out

connect: put this process's own stdio on the client endpoint

    stdin        --append-> <prefix>.in
    <prefix>.out --tail-->  stdout

Bytes are copied as-is; nothing here knows about the protocol spoken on the
stream.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import stat
import sys
from typing import TYPE_CHECKING, Any, Protocol

from filestdio.duplex import open_client_endpoint, open_server_endpoint
from filestdio.streams import ChannelBrokenError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from filestdio.duplex import StdioPaths

logger = logging.getLogger("filestdio.relay")

_RELAY_CHUNK = 64 * 1024


class _Source(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class _Sink(Protocol):
    def write(self, data: bytes) -> None: ...
    async def drain(self) -> None: ...


async def _pump(source: _Source, sink: _Sink, label: str) -> int:
    """Copy source to sink until EOF. Returns bytes copied."""
    total = 0
    while True:
        data = await source.read(_RELAY_CHUNK)
        if not data:
            break
        sink.write(data)
        await sink.drain()
        total += len(data)
    logger.debug("%s: EOF after %d bytes", label, total)
    return total


async def _pump_to_pipe(source: _Source, sink: _Sink, label: str) -> int:
    """Like _pump, but a closed pipe on the far side just ends the copy."""
    try:
        return await _pump(source, sink, label)
    except (BrokenPipeError, ConnectionResetError) as exc:
        logger.info("%s: pipe closed: %s", label, exc)
        return 0


async def _finish(task: asyncio.Task[Any]) -> None:
    if not task.done():
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def _stop(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    await proc.wait()


def _cancel_on_signals() -> None:
    """Turn SIGTERM/SIGINT into cancellation of the current task so finally blocks run."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    if task is None:
        return
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, task.cancel)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


async def serve(command: Sequence[str], paths: StdioPaths | None, **endpoint_options: Any) -> int:
    """Run *command*; bridge its stdio to the link files. Returns its exit code.

    With paths=None the child simply inherits this process's stdio.
    """
    if not command:
        msg = "serve needs a command to run"
        raise ValueError(msg)
    _cancel_on_signals()

    if paths is None:
        proc = await asyncio.create_subprocess_exec(*command)
        logger.info("started %s (pid %d) on inherited stdio", command[0], proc.pid)
        try:
            return await proc.wait()
        finally:
            await _stop(proc)

    async with await open_server_endpoint(paths.input, paths.output, **endpoint_options) as endpoint:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )
        logger.info(
            "started %s (pid %d): stdin<-%s stdout->%s",
            command[0], proc.pid, paths.input, paths.output,
        )
        assert proc.stdin is not None and proc.stdout is not None
        feed = asyncio.create_task(_pump_to_pipe(endpoint.reader, proc.stdin, "in->child"))
        try:
            try:
                await _pump(proc.stdout, endpoint.writer, "child->out")
            except ChannelBrokenError:
                logger.exception("cannot append to %s, stopping %s", paths.output, command[0])
                await _stop(proc)
            returncode = await proc.wait()
        finally:
            await _finish(feed)
            proc.stdin.close()
            await _stop(proc)
    logger.info("%s exited with %d", command[0], returncode)
    return returncode


# ---------------------------------------------------------------------------
# connect
# ---------------------------------------------------------------------------


class _RegularFileSource:
    """Reads a redirected regular file (`< req.txt`) until EOF.

    Pipe transports refuse regular files; reads from a local file do not block
    for long, so they are done inline.
    """

    def __init__(self, fd: int) -> None:
        self._fd = fd

    async def read(self, n: int = -1) -> bytes:
        data = os.read(self._fd, n if n > 0 else _RELAY_CHUNK)
        await asyncio.sleep(0)
        return data


class _RegularFileSink:
    """Writes to a redirected regular file (`> out.txt`)."""

    def __init__(self, fd: int) -> None:
        self._fd = fd

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            view = view[os.write(self._fd, view):]

    async def drain(self) -> None:
        await asyncio.sleep(0)


def _is_regular_file(stream: Any) -> bool:
    return stat.S_ISREG(os.fstat(stream.fileno()).st_mode)


async def _stdio_streams() -> tuple[_Source, _Sink]:
    loop = asyncio.get_running_loop()
    source: _Source
    sink: _Sink
    if _is_regular_file(sys.stdin):
        source = _RegularFileSource(sys.stdin.fileno())
    else:
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        source = reader
    if _is_regular_file(sys.stdout):
        sys.stdout.flush()
        sink = _RegularFileSink(sys.stdout.fileno())
    else:
        transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
        sink = asyncio.StreamWriter(transport, protocol, None, loop)
    return source, sink


async def connect(
    paths: StdioPaths,
    *,
    stdin: _Source | None = None,
    stdout: _Sink | None = None,
    linger: float = 0.0,
    **endpoint_options: Any,
) -> None:
    """Attach stdin/stdout to the client side of *paths* until stdin reaches EOF.

    After EOF, output keeps flowing for *linger* seconds so late replies are
    not cut off.
    """
    _cancel_on_signals()
    if stdin is None or stdout is None:
        real_in, real_out = await _stdio_streams()
        stdin = stdin or real_in
        stdout = stdout or real_out

    async with await open_client_endpoint(paths.input, paths.output, **endpoint_options) as endpoint:
        upstream = asyncio.create_task(_pump(stdin, endpoint.writer, "stdin->in"))
        downstream = asyncio.create_task(_pump_to_pipe(endpoint.reader, stdout, "out->stdout"))
        try:
            done, _ = await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
            if upstream in done and linger > 0:
                await asyncio.wait({downstream}, timeout=linger)
            # Surfaces ChannelBrokenError from the upstream copy.
            if upstream.done():
                upstream.result()
        finally:
            await _finish(upstream)
            await _finish(downstream)
