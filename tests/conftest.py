"""Shared fixtures for loopauth tests."""

from __future__ import annotations

import os

from collections.abc import Iterator

import pytest

from loopauth.auth.flow import reset_bridge
from loopauth.config import clear_settings


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch) -> Iterator[None]:
    """Run every test without user config files or LOOPAUTH_* variables."""
    for key in list(os.environ):
        if key.startswith("LOOPAUTH"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("APPDATA", str(tmp_path))
    clear_settings()
    yield
    reset_bridge()
    clear_settings()


@pytest.fixture
def counting_source():
    """Deterministic random source yielding 0, 1, 2, ... byte values."""
    state = {"next": 0}

    def source(n: int) -> bytes:
        start = state["next"]
        state["next"] += n
        return bytes((start + i) % 256 for i in range(n))

    return source
