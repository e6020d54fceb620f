"""Tests for the filestdio CLI."""

import asyncio
import os
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from filestdio.cli import cli
from filestdio.duplex import StdioPaths, open_server_endpoint


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workdir(runner, tmp_path):
    with runner.isolated_filesystem(temp_dir=tmp_path) as d:
        yield Path(d)


def _lines(output: str) -> list[str]:
    return [line for line in output.splitlines() if line.strip()]


class TestInit:
    def test_creates_then_skips(self, runner, workdir):
        result = runner.invoke(cli, ["init", "--prefix", "run/link"])
        assert result.exit_code == 0, result.output
        assert "Created" in result.output
        assert 'prefix = "run/link"' in (workdir / "filestdio.toml").read_text()

        result = runner.invoke(cli, ["init"])
        assert result.exit_code == 0
        assert "already exists" in result.output


class TestPaths:
    def test_prefix_option(self, runner, workdir):
        result = runner.invoke(cli, ["paths", "--stdio-files", "run/link"])
        assert result.exit_code == 0, result.output
        in_line, out_line = _lines(result.output)
        assert in_line.endswith(str(Path("run") / "link.in"))
        assert out_line.endswith(str(Path("run") / "link.out"))

    def test_default_prefix_is_per_process(self, runner, workdir):
        result = runner.invoke(cli, ["paths"])
        assert result.exit_code == 0, result.output
        assert f"stdio-{os.getpid()}.in" in result.output
        assert ".filestdio" in result.output

    def test_explicit_in_overrides_prefix(self, runner, workdir):
        result = runner.invoke(cli, ["paths", "--stdio-files", "run/link", "--stdio-in", "mine.in"])
        assert result.exit_code == 0, result.output
        in_line, out_line = _lines(result.output)
        assert in_line.endswith("mine.in")
        assert out_line.endswith("link.out")

    def test_prefix_from_config_file(self, runner, workdir):
        (workdir / "filestdio.toml").write_text('[stdio]\nprefix = "cfg/link"\n')
        result = runner.invoke(cli, ["paths"])
        assert result.exit_code == 0, result.output
        assert str(Path("cfg") / "link.in") in result.output

    def test_prefix_from_environment(self, runner, workdir):
        result = runner.invoke(cli, ["paths"], env={"FILESTDIO_PREFIX": "envlink"})
        assert result.exit_code == 0, result.output
        assert "envlink.in" in result.output

    def test_invalid_poll_interval(self, runner, workdir):
        result = runner.invoke(cli, ["paths", "--poll-ms", "0"])
        assert result.exit_code == 1
        assert "poll_ms must be positive" in result.output

    def test_bad_toml_value_is_reported_not_raised(self, runner, workdir):
        (workdir / "filestdio.toml").write_text('[stdio]\npoll_ms = "fast"\n')
        result = runner.invoke(cli, ["paths"])
        assert result.exit_code == 1
        assert not isinstance(result.exception, ValueError)
        assert "poll_ms must be an integer" in result.output

    def test_log_file_is_written(self, runner, workdir):
        result = runner.invoke(cli, ["paths", "--log-file", "logs/fs.log"])
        assert result.exit_code == 0, result.output
        assert "logging to file" in (workdir / "logs" / "fs.log").read_text()


class TestConnect:
    def test_requires_explicit_link(self, runner, workdir):
        result = runner.invoke(cli, ["connect", "--stdio-files"])
        assert result.exit_code == 2
        assert "connect needs" in result.output

    def test_single_explicit_path_is_not_enough(self, runner, workdir):
        result = runner.invoke(cli, ["connect", "--stdio-in", "x.in"])
        assert result.exit_code == 2

    @pytest.mark.asyncio
    async def test_redirected_regular_files_as_stdio(self, tmp_path):
        """`filestdio connect < request.txt > reply.txt` with the default linger."""
        paths = StdioPaths.from_prefix(tmp_path / "link")
        request = tmp_path / "request.txt"
        request.write_bytes(b"request\n")
        reply = tmp_path / "reply.txt"

        async with await open_server_endpoint(paths.input, paths.output, poll_interval=0.01) as server:
            with request.open("rb") as stdin, reply.open("wb") as stdout:
                proc = await asyncio.create_subprocess_exec(
                    sys.executable, "-c", "from filestdio.cli import cli; cli()",
                    "connect", "--stdio-files", str(tmp_path / "link"), "--poll-ms", "10",
                    stdin=stdin, stdout=stdout, stderr=asyncio.subprocess.PIPE, cwd=tmp_path,
                )
                assert await asyncio.wait_for(server.reader.readline(), 10) == b"request\n"
                server.writer.write(b"reply\n")
                _, stderr = await asyncio.wait_for(proc.communicate(), 10)

        assert proc.returncode == 0, stderr.decode()
        assert reply.read_bytes() == b"reply\n"


class TestServe:
    def test_inherited_stdio_exit_code(self, runner, workdir):
        result = runner.invoke(cli, ["serve", "--", sys.executable, "-c", "raise SystemExit(4)"])
        assert result.exit_code == 4

    def test_child_output_lands_in_out_file(self, runner, workdir):
        result = runner.invoke(cli, [
            "serve", "--stdio-files", "link", "--poll-ms", "10", "--",
            sys.executable, "-c", "print('ready')",
        ])
        assert result.exit_code == 0, result.output
        assert (workdir / "link.out").read_bytes() == b"ready\n"
        assert (workdir / "link.in").exists()

    def test_missing_program_is_reported(self, runner, workdir):
        result = runner.invoke(cli, ["serve", "--", str(workdir / "no-such-program")])
        assert result.exit_code == 1
        assert "cannot start" in result.output

    def test_command_is_required(self, runner, workdir):
        result = runner.invoke(cli, ["serve"])
        assert result.exit_code == 2


class TestClean:
    def test_removes_both_files(self, runner, workdir):
        (workdir / "link.in").write_bytes(b"a")
        (workdir / "link.out").write_bytes(b"b")
        result = runner.invoke(cli, ["clean", "--stdio-files", "link"])
        assert result.exit_code == 0, result.output
        assert not (workdir / "link.in").exists()
        assert not (workdir / "link.out").exists()
        assert result.output.count("Removed") == 2

    def test_missing_files_are_reported(self, runner, workdir):
        result = runner.invoke(cli, ["clean", "--stdio-files", "gone"])
        assert result.exit_code == 0
        assert result.output.count("Not found") == 2


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "version" in result.output
