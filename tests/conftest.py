"""Shared fixtures: a throwaway git repository with a ``main`` branch."""

from __future__ import annotations

import subprocess

import pytest


def _git(cwd, *args):
    subprocess.run(
        [
            "git",
            "-c", "user.name=Flotilla Test",
            "-c", "user.email=test@example.com",
            "-c", "commit.gpgsign=false",
            *args,
        ],
        cwd=str(cwd),
        check=True,
        capture_output=True,
    )


@pytest.fixture
def git_repo(tmp_path):
    """An initialized repository at ``tmp_path / "repo"`` with one commit on main."""
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "README.md").write_text("# test\n")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "initial")
    return repo
