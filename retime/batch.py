# retime/batch.py
"""
Batch commit orchestration.

Turns external records into commits in four stages:

1. prepare   records (raw, or template + data) -> CommitIntents
2. validate  structural checks, aggregated into a ValidationReport
3. execute   one commit per intent, in input order, inside a Transaction
4. verify    re-read repository state after execution

Intents are applied strictly in input order: each commit's parent is the
previous HEAD, so reordering would change the resulting history.

This module does NOT:
- read record or template files (see retime.records, retime.templates)
- talk to git directly except through the executor
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import time

from retime.config import Config
from retime.intent import CommitIntent, IntentLimits, check_intent, intent_from_fields
from retime.progress import NullProgress, ProgressReporter
from retime.repo import GitError, GitExecutor
from retime.templates import Template, render
from retime.transaction import DEFAULT_BACKUP_PREFIX, Transaction, execute
from retime.validation import ValidationError


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Input variants
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class RawIntent:
    fields: Mapping[str, Any]


@dataclass(frozen=True)
class TemplatedRecord:
    record: Mapping[str, Any]


BatchItem = Union[RawIntent, TemplatedRecord]


def to_items(records: Sequence[Mapping[str, Any]], template: Optional[Template]) -> List[BatchItem]:
    if template is None:
        return [RawIntent(r) for r in records]
    return [TemplatedRecord(r) for r in records]


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class PreparedIntent:
    index: int
    intent: Optional[CommitIntent]
    problems: Tuple[Tuple[str, str], ...] = ()

    @property
    def valid(self) -> bool:
        return self.intent is not None and not self.problems

    def reason(self) -> str:
        return "; ".join(f"{f}: {m}" for f, m in self.problems)


@dataclass(frozen=True)
class ValidationIssue:
    index: Optional[int]
    field: str
    message: str


@dataclass(frozen=True)
class ValidationReport:
    total: int
    valid_count: int
    invalid_count: int
    issues: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return self.total > 0 and self.invalid_count == 0


@dataclass(frozen=True)
class IntentResult:
    index: int
    success: bool
    message: str
    hash: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RepositoryState:
    clean: bool
    branch: Optional[str]
    expected_branch: Optional[str]
    head: str
    commit_delta: int
    expected_delta: int

    @property
    def verified(self) -> bool:
        return (
            self.clean
            and self.branch == self.expected_branch
            and self.commit_delta == self.expected_delta
        )


@dataclass
class BatchResult:
    success: bool
    dry_run: bool
    total: int
    success_count: int = 0
    failure_count: int = 0
    results: List[IntentResult] = field(default_factory=list)
    validation: Optional[ValidationReport] = None
    preview: List[CommitIntent] = field(default_factory=list)
    rolled_back: bool = False
    rollback_verified: bool = False
    rollback_error: Optional[str] = None
    aborted_at: Optional[int] = None
    repository_status: Optional[RepositoryState] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def needs_manual_recovery(self) -> bool:
        return self.rollback_error is not None

    @property
    def succeeded(self) -> List[IntentResult]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[IntentResult]:
        return [r for r in self.results if not r.success]


class BatchAborted(RuntimeError):
    """
    A per-intent failure stopped the batch (continue_on_error is off).
    """

    def __init__(self, index: int, reason: str) -> None:
        self.index = index
        self.reason = reason
        super().__init__(f"intent {index} failed: {reason}")


@dataclass(frozen=True)
class BatchOptions:
    dry_run: bool = False
    continue_on_error: bool = False
    abort_on_invalid: bool = False
    commit_delay: float = 0.1
    preview_limit: int = 5
    allow_empty: bool = True
    timeout: Optional[float] = None
    large_batch_warning: int = 1000
    limits: IntentLimits = IntentLimits()

    @classmethod
    def from_config(cls, cfg: Config, **overrides: Any) -> "BatchOptions":
        opts = cls(
            commit_delay=cfg.batch.commit_delay,
            preview_limit=cfg.batch.preview_limit,
            allow_empty=cfg.batch.allow_empty,
            timeout=cfg.transaction.timeout_seconds,
            large_batch_warning=cfg.batch.large_batch_warning,
            limits=IntentLimits(
                message_min_length=cfg.batch.message_min_length,
                message_max_length=cfg.batch.message_max_length,
            ),
        )
        return replace(opts, **overrides)


# ---------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------

class BatchOrchestrator:
    def __init__(
        self,
        executor: GitExecutor,
        *,
        options: BatchOptions = BatchOptions(),
        progress: Optional[ProgressReporter] = None,
        backup_prefix: str = DEFAULT_BACKUP_PREFIX,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.options = options
        self.progress: ProgressReporter = progress or NullProgress()
        self.backup_prefix = backup_prefix
        self._clock = clock
        self._sleep = sleep

    # -----------------------------------------------------------------
    # Stage 1 + 2
    # -----------------------------------------------------------------

    def prepare(
        self,
        records: Sequence[Mapping[str, Any]],
        template: Optional[Template] = None,
    ) -> List[PreparedIntent]:
        now = self._clock()
        total = len(records)
        prepared: List[PreparedIntent] = []

        for i, item in enumerate(to_items(records, template)):
            try:
                if isinstance(item, TemplatedRecord):
                    assert template is not None
                    intent = render(template, item.record, index=i, total=total, now=now)
                else:
                    intent = intent_from_fields(item.fields)
            except ValidationError as e:
                prepared.append(PreparedIntent(i, None, ((e.path, e.reason),)))
                continue

            problems = check_intent(intent, self.options.limits, today=now.date())
            prepared.append(PreparedIntent(i, intent, tuple(problems)))

        return prepared

    def validate_batch(
        self,
        records: Sequence[Mapping[str, Any]],
        template: Optional[Template] = None,
    ) -> ValidationReport:
        """
        Check every record without executing anything. Never raises for a bad record.
        """
        return self._report(self.prepare(records, template))

    def _report(self, prepared: Sequence[PreparedIntent]) -> ValidationReport:
        issues: List[ValidationIssue] = []
        warnings: List[str] = []

        if not prepared:
            issues.append(ValidationIssue(None, "records", "No commit records provided"))

        if len(prepared) > self.options.large_batch_warning:
            warnings.append(
                f"Large batch of {len(prepared)} records; consider splitting it into smaller batches"
            )

        valid = 0
        for p in prepared:
            if p.valid:
                valid += 1
                continue
            for f, m in p.problems:
                issues.append(ValidationIssue(p.index, f, m))

        return ValidationReport(
            total=len(prepared),
            valid_count=valid,
            invalid_count=len(prepared) - valid,
            issues=tuple(issues),
            warnings=tuple(warnings),
        )

    # -----------------------------------------------------------------
    # Full pipeline
    # -----------------------------------------------------------------

    def execute_batch(
        self,
        records: Sequence[Mapping[str, Any]],
        template: Optional[Template] = None,
        *,
        dry_run: Optional[bool] = None,
        continue_on_error: Optional[bool] = None,
    ) -> BatchResult:
        opts = self.options
        if dry_run is not None:
            opts = replace(opts, dry_run=dry_run)
        if continue_on_error is not None:
            opts = replace(opts, continue_on_error=continue_on_error)

        started = time.monotonic()

        self.progress.start_step("prepare")
        prepared = self.prepare(records, template)
        self.progress.complete_step("prepare")

        self.progress.start_step("validate")
        report = self._report(prepared)
        self.progress.complete_step("validate")

        result = BatchResult(success=False, dry_run=opts.dry_run, total=len(prepared), validation=report)

        if not prepared:
            result.error = "No commit records provided"
            self._skip_rest("no records")
            return self._finish(result, started)

        if opts.dry_run:
            result.success = True
            result.preview = [p.intent for p in prepared if p.intent is not None][: opts.preview_limit]
            self._skip_rest("dry run")
            return self._finish(result, started)

        if opts.abort_on_invalid and report.invalid_count:
            result.error = f"Batch validation failed: {report.invalid_count} invalid record(s)"
            self._skip_rest("validation failed")
            return self._finish(result, started)

        before = self.executor.count_commits()
        branch = self.executor.current_branch()

        self.progress.start_step("execute")
        tx_result = execute(
            self.executor,
            lambda tx: self._execute_intents(tx, prepared, opts, result),
            timeout=opts.timeout,
            backup_prefix=self.backup_prefix,
        )
        self.progress.complete_step("execute")

        result.success_count = sum(1 for r in result.results if r.success)
        result.failure_count = sum(1 for r in result.results if not r.success)

        if tx_result.success:
            result.success = result.failure_count == 0 or opts.continue_on_error
        else:
            err = tx_result.error
            result.error = str(err) if err is not None else "transaction failed"
            if isinstance(err, BatchAborted):
                result.aborted_at = err.index
            result.rolled_back = tx_result.rolled_back
            result.rollback_verified = bool(tx_result.rollback and tx_result.rollback.verified)
            if tx_result.rollback_error is not None:
                result.rollback_error = str(tx_result.rollback_error)

        self.progress.start_step("verify")
        expected = 0 if not tx_result.success else result.success_count
        result.repository_status = self._verify(before, branch, expected)
        self.progress.complete_step("verify")

        return self._finish(result, started)

    def _execute_intents(
        self,
        tx: Transaction,
        prepared: Sequence[PreparedIntent],
        opts: BatchOptions,
        result: BatchResult,
    ) -> int:
        invoked = 0
        total = len(prepared)

        for n, p in enumerate(prepared):
            tx.check_deadline()
            message = p.intent.message if p.intent is not None else ""

            if not p.valid:
                reason = p.reason()
                result.results.append(IntentResult(p.index, False, message, error=reason))
                logger.warning("intent %d invalid: %s", p.index, reason)
                if not opts.continue_on_error:
                    raise BatchAborted(p.index, reason)
                continue

            assert p.intent is not None
            if invoked and opts.commit_delay > 0:
                self._sleep(opts.commit_delay)

            self.progress.update_step_progress(
                n * 100.0 / total,
                f"commit {n + 1}/{total}: {message[:50]}",
            )

            invoked += 1
            try:
                commit_hash = self.executor.commit(
                    message=p.intent.message,
                    author=p.intent.author,
                    email=p.intent.email,
                    date=p.intent.date,
                    time=p.intent.time,
                    allow_empty=opts.allow_empty,
                )
            except GitError as e:
                result.results.append(IntentResult(p.index, False, message, error=str(e)))
                logger.warning("intent %d commit failed: %s", p.index, e)
                if not opts.continue_on_error:
                    raise BatchAborted(p.index, str(e)) from e
                continue

            result.results.append(IntentResult(p.index, True, message, hash=commit_hash))
            logger.debug("intent %d committed as %s", p.index, commit_hash[:12])

        self.progress.update_step_progress(100.0, "all intents processed")
        return invoked

    def _verify(self, before: int, expected_branch: Optional[str], expected_delta: int) -> Optional[RepositoryState]:
        try:
            status = self.executor.status()
            branch = self.executor.current_branch()
            head = self.executor.revparse("HEAD")
            after = self.executor.count_commits()
        except GitError as e:
            logger.warning("could not verify repository state: %s", e)
            return None

        state = RepositoryState(
            clean=status.clean,
            branch=branch,
            expected_branch=expected_branch,
            head=head,
            commit_delta=after - before,
            expected_delta=expected_delta,
        )
        if not state.verified:
            logger.warning(
                "repository state differs from expectation: clean=%s branch=%s delta=%d (expected %d)",
                state.clean,
                state.branch,
                state.commit_delta,
                state.expected_delta,
            )
        return state

    def _skip_rest(self, reason: str) -> None:
        for step in ("execute", "verify"):
            self.progress.skip_step(step, reason)

    def _finish(self, result: BatchResult, started: float) -> BatchResult:
        result.duration = time.monotonic() - started

        if result.needs_manual_recovery:
            logger.error("batch failed and rollback failed: %s", result.rollback_error)
        elif result.dry_run:
            logger.info("dry run: %d records, %d valid", result.total, result.validation.valid_count if result.validation else 0)
        else:
            logger.info(
                "batch finished: %d succeeded, %d failed%s",
                result.success_count,
                result.failure_count,
                ", rolled back" if result.rolled_back else "",
            )
        return result


def execute_batch(
    executor: GitExecutor,
    records: Sequence[Mapping[str, Any]],
    template: Optional[Template] = None,
    *,
    dry_run: Optional[bool] = None,
    continue_on_error: Optional[bool] = None,
    options: BatchOptions = BatchOptions(),
    progress: Optional[ProgressReporter] = None,
) -> BatchResult:
    orchestrator = BatchOrchestrator(executor, options=options, progress=progress)
    return orchestrator.execute_batch(records, template, dry_run=dry_run, continue_on_error=continue_on_error)
