"""Shared fixtures: throwaway git repositories and an in-memory executor."""

from datetime import datetime, timedelta, timezone
from fnmatch import fnmatch
from pathlib import Path
import shutil
import subprocess

import pytest

from retime.repo import Commit, GitError, RepoStatus


def _git(repo, *args):
    return subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def git():
    """Run a git command against a repository and return its stdout."""
    return _git


@pytest.fixture
def git_repo(tmp_path):
    """A repository on branch main with one commit and a clean tree."""
    if shutil.which("git") is None:
        pytest.skip("git not found")

    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.name", "Test User")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "commit.gpgsign", "false")

    (repo / "README.txt").write_text("initial\n", encoding="utf-8")
    _git(repo, "add", ".")
    _git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


class FakeExecutor:
    """
    Linear history kept in memory. Mirrors the GitExecutor calls used by
    transactions and batches, and records every commit invocation.
    """

    def __init__(self, commits=1, fail_on=(), clean=True):
        self.repo_path = Path("/fake/repo")
        self._counter = 0
        self.branches = {"main": [self._next_hash() for _ in range(commits)]}
        self.head_branch = "main"
        self.clean = clean
        self.fail_on = set(fail_on)
        self.commit_calls = []
        self.fail_reset = False

    def _next_hash(self):
        self._counter += 1
        return f"{self._counter:040x}"

    def status(self):
        return RepoStatus(clean=self.clean, files=[] if self.clean else ["dirty.txt"])

    def current_branch(self):
        return self.head_branch

    def revparse(self, ref):
        if ref == "HEAD":
            return self.branches[self.head_branch][-1]
        if ref in self.branches:
            return self.branches[ref][-1]
        raise GitError(f"unknown revision {ref}", ["rev-parse", ref])

    def branch_exists(self, name):
        return name in self.branches

    def list_branches(self, pattern="*"):
        return sorted(b for b in self.branches if fnmatch(b, pattern))

    def create_branch(self, name, start_point="HEAD"):
        self.revparse(start_point)
        self.branches[name] = list(self.branches[self.head_branch])

    def delete_branch(self, name):
        if name not in self.branches:
            raise GitError(f"branch '{name}' not found", ["branch", "-D", name])
        del self.branches[name]

    def checkout(self, ref, *, force=False):
        self.head_branch = ref

    def reset_hard(self, ref):
        if self.fail_reset:
            raise GitError("simulated reset failure", ["reset", "--hard", ref])
        self.branches[self.head_branch] = list(self.branches[ref])

    def clean_untracked(self):
        pass

    def count_commits(self, **kwargs):
        return len(self.branches[self.head_branch])

    def commit(self, *, message, author=None, email=None, date=None, time=None, allow_empty=True):
        self.commit_calls.append(message)
        if len(self.commit_calls) in self.fail_on:
            raise GitError("simulated commit failure", ["commit"])
        h = self._next_hash()
        self.branches[self.head_branch].append(h)
        return h


class FakeHistory:
    """A history of n commits served page by page, newest first."""

    def __init__(self, n):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.commits = [
            Commit(
                hash=f"{n - i:040x}",
                author_date=base + timedelta(hours=n - i),
                committer_date=base + timedelta(hours=n - i),
                index=i,
                subject=f"commit {n - i}",
            )
            for i in range(n)
        ]
        self.log_calls = []
        self.count_calls = 0

    def log(self, *, since=None, until=None, author=None, revision=None, limit=None, skip=0):
        self.log_calls.append((limit, skip))
        end = None if limit is None else skip + limit
        return self.commits[skip:end]

    def count_commits(self, *, since=None, until=None, author=None, revision=None):
        self.count_calls += 1
        return len(self.commits)


@pytest.fixture
def fake_executor():
    return FakeExecutor


@pytest.fixture
def fake_history():
    return FakeHistory
