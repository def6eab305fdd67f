"""Shared pytest fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in (
        "TERRARIUM_CACHE_DIR",
        "TERRARIUM_BUNDLER_PATH",
        "TERRARIUM_NODE_PATH",
        "TERRARIUM_OUTPUT_DIR",
        "TERRARIUM_INVOKE_TIMEOUT",
        "TERRARIUM_DEBOUNCE_SECONDS",
        "TERRARIUM_DEBUG_LOGGING",
        "TERRARIUM_SETTINGS_PATH",
        "TERRARIUM_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TERRARIUM_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def source_file(tmp_path: Path) -> Path:
    path = tmp_path / "a.tsx"
    path.write_text("export default function App() { return <div/>; }\n", encoding="utf-8")
    return path


@pytest.fixture
def fake_bundler(tmp_path: Path) -> Callable[[str], Path]:
    """Write a Python script that stands in for the bundler.

    The script body receives the source path as ``sys.argv[1]``.
    """

    def _write(body: str, name: str = "bundler.py") -> Path:
        script = tmp_path / name
        script.write_text("import sys\n" + body, encoding="utf-8")
        return script

    return _write


@pytest.fixture
def python_runtime() -> Path:
    return Path(sys.executable)
