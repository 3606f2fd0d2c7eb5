"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from askbot.errors import UpstreamError  # noqa: E402


class FakeProvider:
    """Provider double that records every call and can be told to fail."""

    def __init__(self, name: str, reply: str = "ok", fail: bool = False) -> None:
        self.name = name
        self.model = f"{name}-test"
        self.reply = reply
        self.fail = fail
        self.calls: List[Any] = []

    def complete(self, turns):
        self.calls.append(list(turns))
        if self.fail:
            raise UpstreamError(f"{self.name}: boom", provider=self.name)
        return self.reply

    def complete_multimodal(self, text, attachments):
        self.calls.append((text, list(attachments)))
        if self.fail:
            raise UpstreamError(f"{self.name}: boom", provider=self.name)
        return self.reply


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """The shipped config/default.yaml."""
    return project_root / "config" / "default.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["ASKBOT_CONFIG", "API_KEY", "DEEPSEEK_API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("ASKBOT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def make_provider():
    return FakeProvider
