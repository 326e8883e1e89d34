# retime/dryrun.py
"""
Plain text reporting.

Responsibilities:
- Render batch previews, validation issues and outcomes
- Render migration plans
- Keep the output deterministic and human readable

This module does NOT:
- call git
- compute dates
- decide whether anything succeeded
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence

from retime.batch import BatchResult, IntentResult, ValidationReport
from retime.intent import CommitIntent
from retime.migrate import MigrationPlan


def render_batch_report(result: BatchResult, *, hash_len: int = 12) -> str:
    """
    Render the outcome of execute_batch, dry run or not.
    """
    if hash_len <= 0:
        raise ValueError("hash_len must be a positive integer")

    lines: List[str] = []

    lines.append(f"Records: {result.total}")
    lines.append(f"Mode: {'dry run' if result.dry_run else 'execute'}")

    if result.validation is not None:
        lines.extend(_validation_lines(result.validation))

    if result.dry_run:
        lines.extend(render_batch_preview(result.preview, total=result.total))
        return "\n".join(lines)

    lines.append(f"Succeeded: {result.success_count}")
    lines.append(f"Failed: {result.failure_count}")

    if result.results:
        lines.append("")
        lines.extend(_results_table(result.results, hash_len))

    if result.error:
        lines.append("")
        lines.append(f"Error: {result.error}")

    if result.aborted_at is not None:
        lines.append(f"Aborted at record: {result.aborted_at}")

    if result.rolled_back:
        verified = "verified" if result.rollback_verified else "NOT verified"
        lines.append(f"Rolled back: yes ({verified})")

    if result.rollback_error:
        lines.append(f"Rollback failed: {result.rollback_error}")
        lines.append("Manual recovery required: the backup branch was kept, see git branch --list")

    state = result.repository_status
    if state is not None:
        lines.append("")
        lines.append(f"Repository clean: {'yes' if state.clean else 'no'}")
        lines.append(f"Branch: {state.branch or '<detached>'}")
        lines.append(f"HEAD: {state.head[:hash_len]}")
        lines.append(f"New commits: {state.commit_delta} (expected {state.expected_delta})")

    lines.append(f"Duration: {result.duration:.2f}s")
    return "\n".join(lines)


def render_batch_preview(preview: Sequence[CommitIntent], *, total: Optional[int] = None) -> List[str]:
    lines: List[str] = [""]

    if not preview:
        lines.append("Preview: <none>")
        return lines

    shown = len(preview)
    if total is not None and total > shown:
        lines.append(f"Preview (first {shown} of {total}):")
    else:
        lines.append("Preview:")
    lines.append("")

    headers = ["#", "date", "time", "author", "message"]
    rows = [
        [
            str(i),
            p.date or "",
            p.time or "",
            _author(p),
            p.message,
        ]
        for i, p in enumerate(preview)
    ]

    lines.extend(_format_table(headers, rows))
    return lines


def render_migration_plan(plan: MigrationPlan, *, hash_len: int = 12) -> str:
    if hash_len <= 0:
        raise ValueError("hash_len must be a positive integer")

    lines: List[str] = []

    lines.append(f"Range: {plan.revision_range}")
    lines.append(f"Commits: {len(plan.entries)}")

    if not plan.entries:
        return "\n".join(lines)

    lines.append(f"First new date: {_fmt_dt(plan.entries[0].new_date)}")
    lines.append(f"Last new date: {_fmt_dt(plan.entries[-1].new_date)}")
    lines.append("")
    lines.append(f"Hash shown as {hash_len} character prefix")
    lines.append("")

    headers = ["idx", "hash", "original_date", "new_date", "changed", "subject"]
    rows: List[List[str]] = []
    for e in plan.entries:
        rows.append(
            [
                str(e.index),
                e.hash[:hash_len],
                _fmt_dt(e.original_date),
                _fmt_dt(e.new_date),
                "yes" if e.changed else "no",
                e.subject,
            ]
        )

    lines.extend(_format_table(headers, rows))
    return "\n".join(lines)


def _validation_lines(report: ValidationReport) -> List[str]:
    lines = [f"Valid: {report.valid_count}", f"Invalid: {report.invalid_count}"]

    for w in report.warnings:
        lines.append(f"Warning: {w}")

    if report.issues:
        lines.append("")
        headers = ["record", "field", "problem"]
        rows = [
            ["-" if i.index is None else str(i.index), i.field, i.message]
            for i in report.issues
        ]
        lines.extend(_format_table(headers, rows))

    return lines


def _results_table(results: Sequence[IntentResult], hash_len: int) -> List[str]:
    headers = ["#", "status", "hash", "message"]
    rows: List[List[str]] = []
    for r in results:
        rows.append(
            [
                str(r.index),
                "ok" if r.success else "FAILED",
                (r.hash or "")[:hash_len],
                r.message if r.success else f"{r.message} ({r.error})",
            ]
        )
    return _format_table(headers, rows)


def _author(intent: CommitIntent) -> str:
    if intent.author and intent.email:
        return f"{intent.author} <{intent.email}>"
    return intent.author or intent.email or ""


def _fmt_dt(dt: datetime) -> str:
    return dt.isoformat()


def _format_table(headers: List[str], rows: List[List[str]]) -> List[str]:
    widths = [len(h) for h in headers]

    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def fmt_row(items: List[str]) -> str:
        return "  ".join(items[i].ljust(widths[i]) for i in range(len(items))).rstrip()

    lines: List[str] = []
    lines.append(fmt_row(headers))
    lines.append(fmt_row(["-" * w for w in widths]))

    for row in rows:
        lines.append(fmt_row(row))

    return lines
