"""Shared fixtures: isolate FILESTDIO_* env vars and root logging per test."""

import logging
import os

import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("FILESTDIO_"):
            monkeypatch.delenv(key)


@pytest.fixture(autouse=True)
def _restore_logging():
    """The CLI reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def link_prefix(tmp_path):
    return tmp_path / "run" / "link"
