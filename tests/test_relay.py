"""Tests for serve/connect relays."""

import asyncio
import sys

import pytest

from filestdio.duplex import StdioPaths, open_client_endpoint, open_server_endpoint
from filestdio.relay import connect, serve

POLL = 0.01

UPPER_ONE_LINE = "import sys; sys.stdout.write(sys.stdin.readline().upper()); sys.stdout.flush()"


class _BufferSink:
    """Stands in for an asyncio.StreamWriter on stdout."""

    def __init__(self):
        self.data = bytearray()

    def write(self, data):
        self.data.extend(data)

    async def drain(self):
        pass


async def _until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(POLL)


class TestServe:
    @pytest.mark.asyncio
    async def test_child_stdio_is_carried_over_the_files(self, link_prefix):
        paths = StdioPaths.from_prefix(link_prefix)
        task = asyncio.create_task(serve([sys.executable, "-c", UPPER_ONE_LINE], paths, poll_interval=POLL))
        async with await open_client_endpoint(paths.input, paths.output, poll_interval=POLL) as client:
            client.writer.write(b"hello\n")
            assert await asyncio.wait_for(client.reader.readline(), 10) == b"HELLO\n"
        assert await asyncio.wait_for(task, 10) == 0
        assert paths.output.read_bytes() == b"HELLO\n"

    @pytest.mark.asyncio
    async def test_exit_code_is_passed_through(self, link_prefix):
        paths = StdioPaths.from_prefix(link_prefix)
        code = await asyncio.wait_for(
            serve([sys.executable, "-c", "raise SystemExit(7)"], paths, poll_interval=POLL), 10,
        )
        assert code == 7

    @pytest.mark.asyncio
    async def test_inherited_stdio_without_paths(self):
        code = await asyncio.wait_for(serve([sys.executable, "-c", "raise SystemExit(3)"], None), 10)
        assert code == 3

    @pytest.mark.asyncio
    async def test_empty_command_is_rejected(self, link_prefix):
        with pytest.raises(ValueError):
            await serve([], StdioPaths.from_prefix(link_prefix))


class TestConnect:
    @pytest.mark.asyncio
    async def test_stdin_and_stdout_are_bridged_to_the_link(self, link_prefix):
        paths = StdioPaths.from_prefix(link_prefix)
        stdin = asyncio.StreamReader()
        stdout = _BufferSink()
        async with await open_server_endpoint(paths.input, paths.output, poll_interval=POLL) as server:
            task = asyncio.create_task(connect(paths, stdin=stdin, stdout=stdout, poll_interval=POLL))

            stdin.feed_data(b"ping\n")
            assert await asyncio.wait_for(server.reader.readline(), 5) == b"ping\n"

            server.writer.write(b"pong\n")
            await _until(lambda: bytes(stdout.data) == b"pong\n")

            stdin.feed_eof()
            await asyncio.wait_for(task, 5)

    @pytest.mark.asyncio
    async def test_output_keeps_flowing_during_linger(self, link_prefix):
        paths = StdioPaths.from_prefix(link_prefix)
        stdin = asyncio.StreamReader()
        stdout = _BufferSink()
        stdin.feed_data(b"request\n")
        stdin.feed_eof()
        async with await open_server_endpoint(paths.input, paths.output, poll_interval=POLL) as server:
            task = asyncio.create_task(
                connect(paths, stdin=stdin, stdout=stdout, linger=1.0, poll_interval=POLL),
            )
            assert await asyncio.wait_for(server.reader.readline(), 5) == b"request\n"
            server.writer.write(b"late reply\n")
            await asyncio.wait_for(task, 5)
        assert bytes(stdout.data) == b"late reply\n"
