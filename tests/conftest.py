"""Shared pytest configuration: markers, execution ordering, git fixtures."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: tests that sleep or wait on subprocess timeouts")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


def git(repo: Path, *args: str) -> str:
    """Run git in *repo* and return stdout; fail the test on a non-zero exit."""
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def init_repo(repo: Path, *, initial_commit: bool = True) -> Path:
    repo.mkdir(parents=True, exist_ok=True)
    git(repo, "init")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    if initial_commit:
        (repo / "README.md").write_text("# demo\n", encoding="utf-8")
        git(repo, "add", "-A")
        git(repo, "commit", "-m", "init")
    return repo


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A throwaway git repository with one initial commit."""
    return init_repo(tmp_path / "repo")
