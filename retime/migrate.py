# retime/migrate.py
"""
Commit date migration.

Responsibilities:
- Plan new dates for an existing range of commits
- Rewrite only author and committer dates using git-filter-repo
- Run the rewrite inside a Transaction so a failure restores the branch

The rewrite is restricted to the current branch (--refs), which leaves the
transaction's backup branch pointing at the original commits.

This module does NOT:
- change commit messages
- change file contents
- change commit ordering or topology
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from subprocess import DEVNULL, PIPE, CalledProcessError, run
from typing import Dict, List, Optional, Tuple

from retime.config import ConfigError, load_config
from retime.repo import GitError, GitExecutor
from retime.streaming import HistoryFilter, StreamingProcessor
from retime.transaction import (
    DEFAULT_BACKUP_PREFIX,
    Transaction,
    TransactionError,
    TransactionResult,
    execute,
)
from retime.validation import ValidationError, validate_date, validate_time


logger = logging.getLogger(__name__)


class MigrationError(RuntimeError):
    pass


@dataclass(frozen=True)
class MigrationEntry:
    index: int
    hash: str
    subject: str
    original_date: datetime
    new_date: datetime

    @property
    def changed(self) -> bool:
        return self.original_date != self.new_date


@dataclass(frozen=True)
class MigrationPlan:
    revision_range: str
    entries: Tuple[MigrationEntry, ...]

    @property
    def date_map(self) -> Dict[str, str]:
        """
        original commit hash (lower) -> "unix_seconds +/-HHMM"
        """
        return {e.hash.lower(): format_filter_repo_date(e.new_date) for e in self.entries}


def format_filter_repo_date(dt: datetime) -> str:
    """
    Convert a datetime to git-filter-repo's date format:
    "<unix_seconds> <+HHMM or -HHMM>"

    Naive datetimes are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    offset = dt.utcoffset()
    if offset is None:
        offset = timedelta(0)

    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    total_minutes = abs(total_minutes)

    hh = total_minutes // 60
    mm = total_minutes % 60

    ts = int(dt.timestamp())
    return f"{ts} {sign}{hh:02d}{mm:02d}"


def _revision_for(revision_range: str) -> str:
    # A bare commit means just that commit, not its ancestry
    if ".." in revision_range:
        return revision_range
    return f"{revision_range}^!"


def plan_migration(
    executor: GitExecutor,
    revision_range: str,
    start_date: str,
    *,
    spread_days: float = 1,
    start_time: str = "09:00",
    processor: Optional[StreamingProcessor] = None,
) -> MigrationPlan:
    """
    Spread the commits of revision_range evenly over spread_days, oldest first,
    starting at start_date + start_time in the local timezone.
    """
    date_check = validate_date(start_date)
    if not date_check.valid or date_check.date is None:
        raise ValidationError("start_date", date_check.error or "invalid date")

    time_check = validate_time(start_time)
    if not time_check.valid:
        raise ValidationError("start_time", time_check.error or "invalid time")

    if spread_days <= 0:
        raise ValidationError("spread_days", "must be greater than zero")

    processor = processor or StreamingProcessor(executor)
    commits = processor.collect(history=HistoryFilter(revision=_revision_for(revision_range)))

    if not commits:
        raise MigrationError(f"No commits found in range: {revision_range}")

    commits.reverse()

    start = datetime(
        date_check.date.year,
        date_check.date.month,
        date_check.date.day,
        time_check.hours or 0,
        time_check.minutes or 0,
    ).astimezone()
    interval = timedelta(days=spread_days) / len(commits)

    entries = tuple(
        MigrationEntry(
            index=i,
            hash=c.hash,
            subject=c.subject,
            original_date=c.author_date,
            new_date=start + interval * i,
        )
        for i, c in enumerate(commits)
    )

    return MigrationPlan(revision_range=revision_range, entries=entries)


def _ensure_filter_repo_available() -> None:
    try:
        run(
            [sys.executable, "-m", "git_filter_repo", "--help"],
            stdout=PIPE,
            stderr=PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=True,
        )
    except (CalledProcessError, OSError) as e:
        raise MigrationError(
            "git-filter-repo is not available. Install it in the active environment, then try again."
        ) from e


def _commit_callback_body(mapping_path: Path) -> str:
    """
    Build a git-filter-repo commit-callback body.

    Note: git-filter-repo uses bytestrings for commit fields.
    - commit.original_id is a bytestring of the original hash
    - commit.author_date and commit.committer_date are bytestrings like b"unix +0000"
    """
    map_path = mapping_path.as_posix()

    return f"""
if 'DATE_MAP' not in globals():
    import json
    with open({map_path!r}, 'r', encoding='utf-8') as _f:
        DATE_MAP = json.load(_f)

_oid = commit.original_id
if isinstance(_oid, bytes):
    _oid = _oid.decode('ascii', 'ignore')
_oid = _oid.lower()

_new = DATE_MAP.get(_oid)
if _new is not None:
    _b = _new.encode('ascii')
    commit.author_date = _b
    commit.committer_date = _b
""".strip()


def _rewrite_dates(executor: GitExecutor, plan: MigrationPlan, branch: str, tx: Transaction) -> int:
    before = executor.count_commits()

    with tempfile.TemporaryDirectory() as td:
        mapping_path = Path(td) / "timestamp_map.json"
        mapping_path.write_text(json.dumps(plan.date_map, indent=2), encoding="utf-8")

        cmd = [
            sys.executable,
            "-m",
            "git_filter_repo",
            "--force",
            "--quiet",
            "--refs",
            branch,
            "--preserve-commit-hashes",
            "--preserve-commit-encoding",
            "--commit-callback",
            _commit_callback_body(mapping_path),
        ]

        try:
            run(
                cmd,
                cwd=str(executor.repo_path),
                stdin=DEVNULL,
                stdout=PIPE,
                stderr=PIPE,
                check=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=tx.remaining(),
            )
        except CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise MigrationError(f"git-filter-repo failed with exit code {e.returncode}: {stderr}") from e

    tx.check_deadline()

    # only dates changed, so the tree at HEAD is identical to the old one
    if not executor.status().clean:
        executor.reset_hard("HEAD")

    after = executor.count_commits()
    if after != before:
        raise MigrationError(f"Commit count changed during rewrite ({before} -> {after})")

    return len(plan.entries)


def apply_migration(
    executor: GitExecutor,
    plan: MigrationPlan,
    *,
    timeout: Optional[float] = None,
    backup_prefix: str = DEFAULT_BACKUP_PREFIX,
) -> TransactionResult:
    """
    Rewrite the planned commit dates on the current branch, atomically.
    """
    if not plan.entries:
        raise MigrationError("Migration plan is empty")

    _ensure_filter_repo_available()

    branch = executor.current_branch()
    if branch is None:
        raise MigrationError("Cannot migrate commits on a detached HEAD")

    result = execute(
        executor,
        lambda tx: _rewrite_dates(executor, plan, branch, tx),
        timeout=timeout,
        backup_prefix=backup_prefix,
    )

    if result.success:
        logger.info("rewrote dates of %d commits on %s", len(plan.entries), branch)
    return result


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-history-retime-migrate",
        description="Move existing commits to new dates (destructive unless --dry-run)",
    )

    parser.add_argument("--repo", required=True, help="Path to the target git repository")
    parser.add_argument("--range", dest="revision_range", required=True, help="Commit or range, e.g. HEAD~5..HEAD")
    parser.add_argument("--start-date", required=True, help="First new date (YYYY-MM-DD)")
    parser.add_argument("--start-time", default="09:00", help="Time of the first commit (HH:MM)")
    parser.add_argument("--spread-days", type=float, default=1.0, help="Days to spread the commits over")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--dry-run", action="store_true", help="Print the plan without touching the repo")
    parser.add_argument("--force", action="store_true", help="Required to rewrite history")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    from retime.dryrun import render_migration_plan

    args = _build_parser().parse_args(argv)

    try:
        cfg = load_config(Path(args.config) if args.config else None)
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else cfg.logging.level,
            format="%(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )

        executor = GitExecutor(args.repo, timeout_seconds=cfg.git.command_timeout_seconds)
        executor.ensure_repository()

        plan = plan_migration(
            executor,
            args.revision_range,
            args.start_date,
            spread_days=args.spread_days,
            start_time=args.start_time,
            processor=StreamingProcessor.from_config(executor, cfg),
        )

        print(render_migration_plan(plan))

        if args.dry_run:
            return 0

        if not args.force:
            print("error: refusing to rewrite without --force", file=sys.stderr)
            return 2

        result = apply_migration(
            executor,
            plan,
            timeout=cfg.transaction.timeout_seconds,
            backup_prefix=cfg.transaction.backup_prefix,
        )

    except (ConfigError, ValidationError, GitError, MigrationError, TransactionError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    if result.needs_manual_recovery:
        print(f"error: {result.error}", file=sys.stderr)
        print(f"error: rollback failed: {result.rollback_error}", file=sys.stderr)
        return 3

    if not result.success:
        print(f"error: {result.error} (changes rolled back)", file=sys.stderr)
        return 2

    print(f"Migration complete. Rewrote {len(plan.entries)} commits.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
