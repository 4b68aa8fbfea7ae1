"""
conftest.py - shared fixtures for the build bot test suite

No test touches the network or a native toolchain: transport is a FakeFetch
serving canned pages, subprocess calls are patched in the tests that need
them. Config loading is isolated from the developer's own buildbot.yaml and
BUILDBOT_* environment.
"""
import os
import sys
from typing import Dict

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from buildbot import config as config_mod  # noqa: E402
from buildbot.workspace import Workspace  # noqa: E402


class FakeFetch:
    """Callable standing in for http_fetch; records every requested URL."""

    def __init__(self, pages: Dict[str, bytes]):
        self.pages = dict(pages)
        self.calls = []

    def __call__(self, url: str) -> bytes:
        self.calls.append(url)
        if url not in self.pages:
            raise AssertionError(f"unexpected fetch of {url}")
        data = self.pages[url]
        return data.encode("utf-8") if isinstance(data, str) else data


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for name in ("BUILDBOT_CONFIG", "BUILDBOT_ROOT", "BUILDBOT_UPLOAD_TARGET", "BUILDBOT_SETENV"):
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def workspace(tmp_path):
    ws = Workspace(tmp_path / "root")
    ws.ensure()
    return ws


@pytest.fixture
def config(tmp_path):
    return config_mod.load(overrides={"root": str(tmp_path / "root")})


@pytest.fixture
def fake_fetch():
    return FakeFetch
