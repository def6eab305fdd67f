"""Tests for runtime discovery."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from terrarium.services.errors import RuntimeNotFoundError
from terrarium.services.runtime_locator import (
    RuntimeLocator,
    VersionManagerRoot,
    default_version_roots,
    parse_version,
    select_latest_version,
)


def _make_binary(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n", encoding="utf-8")
    return path


class _RecordingShell:
    def __init__(self, returncode: int = 0, stdout: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.commands: list[list[str]] = []

    def __call__(self, command, timeout):
        self.commands.append(list(command))
        return subprocess.CompletedProcess(command, self.returncode, stdout=self.stdout, stderr="")


class TestParseVersion:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("v18.17.0", (18, 17, 0)),
            ("9.0.0", (9, 0, 0)),
            ("node-v20.1", (20, 1)),
        ],
    )
    def test_parses_numeric_components(self, name: str, expected: tuple[int, ...]) -> None:
        assert parse_version(name) == expected

    @pytest.mark.parametrize("name", ["", "latest", "v18.x", "v20.0.0-rc1"])
    def test_rejects_unparseable_names(self, name: str) -> None:
        assert parse_version(name) is None


def test_select_latest_version_is_numeric(tmp_path: Path) -> None:
    root = VersionManagerRoot("nvm", tmp_path, "bin/node")
    _make_binary(tmp_path / "v9.0.0" / "bin" / "node")
    expected = _make_binary(tmp_path / "v18.0.0" / "bin" / "node")

    assert select_latest_version(root) == expected


def test_select_latest_version_skips_directories_without_binary(tmp_path: Path) -> None:
    root = VersionManagerRoot("nvm", tmp_path, "bin/node")
    expected = _make_binary(tmp_path / "v16.0.0" / "bin" / "node")
    (tmp_path / "v22.0.0").mkdir()
    (tmp_path / "default").mkdir()

    assert select_latest_version(root) == expected


def test_default_version_roots_cover_nvm_and_fnm(tmp_path: Path) -> None:
    roots = default_version_roots(tmp_path)

    assert [root.name for root in roots] == ["nvm", "fnm", "fnm"]
    assert roots[0].root == tmp_path / ".nvm" / "versions" / "node"
    assert roots[1].binary == "installation/bin/node"
    assert roots[2].root == tmp_path / ".local" / "share" / "fnm" / "node-versions"


class TestRuntimeLocator:
    def test_fixed_candidates_win_over_version_managers(self, tmp_path: Path) -> None:
        fixed = _make_binary(tmp_path / "usr-local" / "node")
        nvm = tmp_path / "nvm"
        _make_binary(nvm / "v20.0.0" / "bin" / "node")
        shell = _RecordingShell()
        locator = RuntimeLocator(
            fixed_candidates=(tmp_path / "missing" / "node", fixed),
            version_roots=(VersionManagerRoot("nvm", nvm, "bin/node"),),
            shell_runner=shell,
        )

        assert locator.locate() == fixed
        assert shell.commands == []

    def test_version_manager_used_when_no_fixed_candidate(self, tmp_path: Path) -> None:
        nvm = tmp_path / "nvm"
        _make_binary(nvm / "v9.11.2" / "bin" / "node")
        newest = _make_binary(nvm / "v18.0.0" / "bin" / "node")
        locator = RuntimeLocator(
            fixed_candidates=(),
            version_roots=(
                VersionManagerRoot("fnm", tmp_path / "fnm-missing", "installation/bin/node"),
                VersionManagerRoot("nvm", nvm, "bin/node"),
            ),
            shell_runner=_RecordingShell(returncode=1),
        )

        assert locator.locate() == newest

    def test_shell_fallback_takes_first_absolute_line(self, tmp_path: Path) -> None:
        shell = _RecordingShell(stdout="Welcome back!\n/home/me/.volta/bin/node\n")
        locator = RuntimeLocator(
            fixed_candidates=(),
            version_roots=(),
            shell="/bin/zsh",
            shell_runner=shell,
        )

        assert locator.locate() == Path("/home/me/.volta/bin/node")
        assert shell.commands == [["/bin/zsh", "-l", "-c", "command -v node"]]

    def test_explicit_path_short_circuits(self, tmp_path: Path) -> None:
        explicit = _make_binary(tmp_path / "custom" / "node")
        shell = _RecordingShell()
        locator = RuntimeLocator(
            explicit_path=explicit,
            fixed_candidates=(_make_binary(tmp_path / "other" / "node"),),
            shell_runner=shell,
        )

        assert locator.locate() == explicit

    def test_not_found_raises_with_hint(self, tmp_path: Path) -> None:
        locator = RuntimeLocator(
            fixed_candidates=(tmp_path / "nope",),
            version_roots=(),
            shell="/bin/sh",
            shell_runner=_RecordingShell(returncode=1),
        )

        with pytest.raises(RuntimeNotFoundError) as excinfo:
            locator.locate()

        error = excinfo.value
        assert str(error) == "Node.js not found. Install it from https://nodejs.org"
        assert error.suggestion == "Install it from https://nodejs.org"
        assert str(tmp_path / "nope") in error.searched

    def test_shell_failure_is_treated_as_not_found(self, tmp_path: Path) -> None:
        def _broken(command, timeout):
            raise subprocess.TimeoutExpired(command, timeout)

        locator = RuntimeLocator(fixed_candidates=(), version_roots=(), shell_runner=_broken)

        with pytest.raises(RuntimeNotFoundError):
            locator.locate()

    def test_result_is_cached_and_revalidated(self, tmp_path: Path) -> None:
        binary = _make_binary(tmp_path / "bin" / "node")
        shell = _RecordingShell(stdout=f"{binary}\n")
        locator = RuntimeLocator(fixed_candidates=(), version_roots=(), shell_runner=shell)

        assert locator.locate() == binary
        assert locator.locate() == binary
        assert len(shell.commands) == 1

        binary.unlink()
        shell.stdout = ""
        shell.returncode = 1
        with pytest.raises(RuntimeNotFoundError):
            locator.locate()
        assert len(shell.commands) == 2
