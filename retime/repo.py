# retime/repo.py
"""
Repository access through the git command line.

Every read and every mutation of the target repository goes through
GitExecutor. Handles Git Bash ↔ Windows path normalisation.

Responsibilities:
- Run git subprocesses with a timeout and map failures to GitError
- Report working tree status and branch state
- Create commits with explicit author and date information
- Read commit history in pages (limit + skip) for streaming

This module does NOT:
- decide when a mutation is safe (see retime.transaction)
- validate commit intents (see retime.validation)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from subprocess import run, PIPE, CalledProcessError, TimeoutExpired
from typing import Dict, List, Optional, Sequence
import logging
import os


logger = logging.getLogger(__name__)


# Single source of truth for git field separation. Log output is read with
# -z, so commits are NUL separated too and every field is one NUL token.
_FIELD_SEP = "\x00"
_LOG_FIELDS = 9

_LOG_FORMAT = (
    "%H%x00"
    "%ad%x00"
    "%cd%x00"
    "%an%x00"
    "%ae%x00"
    "%cn%x00"
    "%ce%x00"
    "%s%x00"
    "%D"
)

_DEFAULT_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class Commit:
    hash: str
    author_date: datetime
    committer_date: datetime
    index: int

    subject: str = ""
    author_name: str = ""
    author_email: str = ""
    committer_name: str = ""
    committer_email: str = ""
    refs: str = ""


@dataclass(frozen=True)
class RepoStatus:
    clean: bool
    files: List[str] = field(default_factory=list)


class GitError(RuntimeError):
    """
    A git invocation failed.

    Attributes:
        command: the git arguments that were run
        diagnostic: stderr text reported by git, if any
    """

    def __init__(self, message: str, command: Sequence[str] = (), diagnostic: str = "") -> None:
        self.command = list(command)
        self.diagnostic = diagnostic
        super().__init__(message)


def _normalise_repo_path(repo_path: Path) -> Path:
    """
    Convert Git Bash paths (/c/Users/...) to native Windows paths (C:\\Users\\...).
    No-op on non-Windows systems.
    """
    if os.name != "nt":
        return repo_path

    p = str(repo_path)

    if p.startswith("/") and len(p) >= 3 and p[2] == "/":
        drive = p[1]
        if drive.isalpha():
            return Path(f"{drive.upper()}:/{p[3:]}")

    return Path(p)


def format_git_date(date: str, time: str) -> str:
    """
    Build the value git expects in GIT_AUTHOR_DATE / GIT_COMMITTER_DATE.

    date is YYYY-MM-DD (or a full ISO datetime, in which case time is ignored),
    time is HH:MM.
    """
    if "T" in date or " " in date.strip():
        return datetime.fromisoformat(date.strip()).isoformat()

    hours, minutes = time.strip().split(":")
    return f"{date.strip()}T{int(hours):02d}:{int(minutes):02d}:00"


class GitExecutor:
    """
    Issues primitive git operations against a single repository.

    Callers must not run mutating methods concurrently on the same
    repository; git has no safe concurrent-writer mode.
    """

    def __init__(self, repo_path: Path | str, *, timeout_seconds: Optional[float] = _DEFAULT_TIMEOUT_SECONDS) -> None:
        self.repo_path = _normalise_repo_path(Path(repo_path).expanduser().resolve())
        self.timeout_seconds = timeout_seconds

    def run(self, args: List[str], *, env: Optional[Dict[str, str]] = None) -> str:
        cmd = ["git", "-C", str(self.repo_path)] + args
        logger.debug("git %s", " ".join(args))

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        try:
            result = run(
                cmd,
                stdout=PIPE,
                stderr=PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=True,
                env=full_env,
                timeout=self.timeout_seconds,
            )
        except CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise GitError(stderr if stderr else "git command failed", args, stderr) from e
        except TimeoutExpired as e:
            raise GitError(f"git {args[0]} timed out after {self.timeout_seconds}s", args) from e
        except FileNotFoundError as e:
            raise GitError("git executable not found", args) from e

        # keep leading spaces, drop trailing newlines only
        return result.stdout.rstrip("\n")

    # -----------------------------------------------------------------
    # Repository state
    # -----------------------------------------------------------------

    def ensure_repository(self) -> None:
        try:
            self.run(["rev-parse", "--is-inside-work-tree"])
        except GitError as e:
            raise GitError(f"Not a git repository: {self.repo_path}", e.command, e.diagnostic) from e

    def status(self) -> RepoStatus:
        out = self.run(["status", "--porcelain", "--untracked-files=all"])
        files = [line[3:] for line in out.splitlines() if line.strip()]
        return RepoStatus(clean=not files, files=files)

    def current_branch(self) -> Optional[str]:
        """
        Name of the checked out branch, or None on a detached HEAD.
        """
        try:
            name = self.run(["symbolic-ref", "--quiet", "--short", "HEAD"])
        except GitError:
            return None
        return name.strip() or None

    def revparse(self, ref: str) -> str:
        return self.run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"]).strip()

    def branch_exists(self, name: str) -> bool:
        try:
            self.run(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"])
        except GitError:
            return False
        return True

    def list_branches(self, pattern: str = "*") -> List[str]:
        out = self.run(["for-each-ref", "--format=%(refname:short)", f"refs/heads/{pattern}"])
        return [line.strip() for line in out.splitlines() if line.strip()]

    def count_commits(
        self,
        *,
        since: Optional[str] = None,
        until: Optional[str] = None,
        author: Optional[str] = None,
        revision: Optional[str] = None,
    ) -> int:
        args = ["rev-list", "--count"]
        args.extend(_filter_args(since, until, author))
        args.append(revision or "HEAD")
        out = self.run(args)
        try:
            return int(out.strip())
        except ValueError as e:
            raise GitError(f"Unexpected rev-list output: {out!r}", args) from e

    # -----------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------

    def create_branch(self, name: str, start_point: str = "HEAD") -> None:
        self.run(["branch", name, start_point])

    def delete_branch(self, name: str) -> None:
        self.run(["branch", "-D", name])

    def checkout(self, ref: str, *, force: bool = False) -> None:
        args = ["checkout"]
        if force:
            args.append("--force")
        args.append(ref)
        self.run(args)

    def reset_hard(self, ref: str) -> None:
        self.run(["reset", "--hard", ref])

    def clean_untracked(self) -> None:
        self.run(["clean", "-fd"])

    def commit(
        self,
        *,
        message: str,
        author: Optional[str] = None,
        email: Optional[str] = None,
        date: Optional[str] = None,
        time: Optional[str] = None,
        allow_empty: bool = True,
    ) -> str:
        """
        Create a commit from the current index and return its hash.

        When date is given, author and committer dates are both set to
        date + time (time defaults to 12:00).
        """
        env: Dict[str, str] = {}

        if date:
            git_date = format_git_date(date, time or "12:00")
            env["GIT_AUTHOR_DATE"] = git_date
            env["GIT_COMMITTER_DATE"] = git_date

        if author:
            env["GIT_AUTHOR_NAME"] = author
            env["GIT_AUTHOR_EMAIL"] = email or "unknown@example.com"

        args = ["commit", "--quiet", "--no-verify", "-m", message]
        if allow_empty:
            args.insert(1, "--allow-empty")

        self.run(args, env=env or None)
        return self.revparse("HEAD")

    # -----------------------------------------------------------------
    # History
    # -----------------------------------------------------------------

    def log(
        self,
        *,
        since: Optional[str] = None,
        until: Optional[str] = None,
        author: Optional[str] = None,
        revision: Optional[str] = None,
        limit: Optional[int] = None,
        skip: int = 0,
        reverse: bool = False,
    ) -> List[Commit]:
        """
        Read commits newest → oldest (or oldest → newest with reverse).

        limit and skip page through history; index is the position of the
        commit in the full (unpaged) listing.
        """
        args = ["log", "-z", "--date=iso-strict", f"--pretty=format:{_LOG_FORMAT}"]
        args.extend(_filter_args(since, until, author))

        if reverse:
            args.append("--reverse")
        if limit is not None:
            args.append(f"--max-count={int(limit)}")
        if skip:
            args.append(f"--skip={int(skip)}")

        args.append(revision or "HEAD")

        raw_log = self.run(args)
        return parse_log(raw_log, start_index=skip)


def _filter_args(since: Optional[str], until: Optional[str], author: Optional[str]) -> List[str]:
    args: List[str] = []
    if since:
        args.append(f"--since={since}")
    if until:
        args.append(f"--until={until}")
    if author:
        args.append(f"--author={author}")
    return args


def parse_log(raw_log: str, *, start_index: int = 0) -> List[Commit]:
    """
    Parse `git log -z` output written with _LOG_FORMAT.

    Subjects are free text and may hold any character except NUL, so the
    output is split on NUL only and read back nine fields at a time.
    """
    commits: List[Commit] = []

    if not raw_log:
        return commits

    tokens = raw_log.split(_FIELD_SEP)
    if len(tokens) % _LOG_FIELDS == 1 and tokens[-1] == "":
        tokens.pop()

    if len(tokens) % _LOG_FIELDS:
        raise GitError(f"Malformed git log output: {len(tokens)} fields is not a multiple of {_LOG_FIELDS}")

    for offset in range(len(tokens) // _LOG_FIELDS):
        (
            commit_hash,
            author_str,
            committer_str,
            author_name,
            author_email,
            committer_name,
            committer_email,
            subject,
            refs,
        ) = tokens[offset * _LOG_FIELDS:(offset + 1) * _LOG_FIELDS]

        # tolerate a newline left between records
        commit_hash = commit_hash.strip()

        try:
            author_date = datetime.fromisoformat(author_str)
            committer_date = datetime.fromisoformat(committer_str)
        except ValueError as e:
            raise GitError(f"Invalid timestamp format in git log for {commit_hash}: {author_str!r}") from e

        commits.append(
            Commit(
                hash=commit_hash,
                author_date=author_date,
                committer_date=committer_date,
                index=start_index + offset,
                subject=subject,
                author_name=author_name,
                author_email=author_email,
                committer_name=committer_name,
                committer_email=committer_email,
                refs=refs.strip(),
            )
        )

    return commits
