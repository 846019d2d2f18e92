"""Shared fixtures: a scripted command runner and throwaway repository folders."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from repo_batch.core import CommandResult

Response = CommandResult | Callable[[str, Path], CommandResult]

OK = CommandResult(ok=True, exit_code=0)


def fail(error: str = "boom", stdout: str = "", exit_code: int = 1) -> CommandResult:
    return CommandResult(ok=False, stdout=stdout, stderr=error, error=error, exit_code=exit_code)


class FakeRunner:
    """Stands in for CommandRunner.

    Records every (command, cwd) pair and answers with the first response whose
    prefix matches the command; anything unmatched succeeds.
    """

    def __init__(self, responses: dict[str, Response] | None = None):
        self.responses: dict[str, Response] = dict(responses or {})
        self.calls: list[tuple[str, Path]] = []
        self._lock = threading.Lock()

    def run(self, command: str, *, cwd: Path) -> CommandResult:
        with self._lock:
            self.calls.append((command, cwd))
        for prefix, response in self.responses.items():
            if command.startswith(prefix):
                return response(command, cwd) if callable(response) else response
        return OK

    @property
    def commands(self) -> list[str]:
        return [command for command, _ in self.calls]

    def commands_in(self, cwd: Path) -> list[str]:
        return [command for command, where in self.calls if where == cwd]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def base_path(tmp_path: Path) -> Path:
    base = tmp_path / "repos"
    base.mkdir()
    return base


@pytest.fixture
def logs_dir(tmp_path: Path) -> Path:
    return tmp_path / "logs"


@pytest.fixture
def make_repo(base_path: Path) -> Callable[..., Path]:
    """Create a repository folder (with a .git dir) under the base path."""

    def _make(name: str) -> Path:
        repo = base_path / name
        (repo / ".git").mkdir(parents=True)
        return repo

    return _make


@pytest.fixture
def write_config(tmp_path: Path, base_path: Path) -> Callable[..., Path]:
    """Write a repos.json and return its path."""

    def _write(repositories: list[dict], base: str | None = None) -> Path:
        config = tmp_path / "repos.json"
        config.write_text(
            json.dumps(
                {
                    "basePath": str(base_path) if base is None else base,
                    "repositories": repositories,
                }
            )
        )
        return config

    return _write
