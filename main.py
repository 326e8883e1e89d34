#!/usr/bin/env python3
"""git-history-retime CLI.

Creates a batch of commits from a records file, optionally through a
template, inside a transaction. Use --dry-run to preview.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from retime.batch import BatchOptions, BatchOrchestrator
from retime.config import ConfigError, load_config
from retime.dryrun import render_batch_report
from retime.progress import NullProgress, TextProgress
from retime.records import FileSystemError, load_records
from retime.repo import GitError, GitExecutor
from retime.templates import load_template
from retime.transaction import TransactionError, list_backup_branches
from retime.validation import ValidationError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="git-history-retime",
        description="Create dated commits from CSV, JSON or YAML records",
    )

    parser.add_argument(
        "--repo",
        required=True,
        help="Path to the target git repository",
    )
    parser.add_argument(
        "--data",
        required=True,
        help="Path to the records file (.csv, .json, .yaml)",
    )
    parser.add_argument(
        "--template",
        help="Path to a commit template (YAML or JSON)",
    )
    parser.add_argument(
        "--config",
        help="Path to a YAML config file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and preview without touching the repo",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep going past failing records instead of rolling back",
    )
    parser.add_argument(
        "--abort-on-invalid",
        action="store_true",
        help="Refuse to start when any record is invalid",
    )
    parser.add_argument(
        "--progress",
        action="store_true",
        help="Print step progress to stderr",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    repo_path = Path(args.repo).expanduser().resolve()
    data_path = Path(args.data).expanduser().resolve()

    try:
        cfg = load_config(Path(args.config).expanduser().resolve() if args.config else None)

        logging.basicConfig(
            level=logging.DEBUG if args.verbose else cfg.logging.level,
            format="%(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )

        records = load_records(data_path)
        template = load_template(Path(args.template).expanduser().resolve()) if args.template else None

        executor = GitExecutor(repo_path, timeout_seconds=cfg.git.command_timeout_seconds)
        executor.ensure_repository()

        leftovers = list_backup_branches(executor, cfg.transaction.backup_prefix)
        if leftovers:
            logging.getLogger(__name__).warning(
                "found %d backup branches from earlier runs: %s",
                len(leftovers),
                ", ".join(leftovers),
            )

        options = BatchOptions.from_config(
            cfg,
            dry_run=args.dry_run,
            continue_on_error=args.continue_on_error,
            abort_on_invalid=args.abort_on_invalid,
        )
        orchestrator = BatchOrchestrator(
            executor,
            options=options,
            progress=TextProgress() if args.progress else NullProgress(),
            backup_prefix=cfg.transaction.backup_prefix,
        )

        result = orchestrator.execute_batch(records, template)

    except (ConfigError, ValidationError, FileSystemError, GitError, TransactionError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    print(render_batch_report(result))

    if result.needs_manual_recovery:
        print("error: rollback failed, manual recovery required", file=sys.stderr)
        return 3

    if not result.success:
        print(f"error: {result.error or 'batch failed'}", file=sys.stderr)
        return 2

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
