# retime/transaction.py
"""
Atomic history mutation.

git has no transactions, so a Transaction emulates one with a backup branch:

    INIT -> BACKUP_CREATED -> COMMITTED | ROLLED_BACK -> CLEANED_UP

The backup branch points at HEAD as it was before any mutation and is the
only recovery path until the outcome is known. It is deleted only once the
transaction reaches a terminal state.

Responsibilities:
- Create and verify the backup branch
- Restore the working branch to the backup on rollback
- Bound the wall-clock duration of an operation
- Run an operation with commit-or-rollback semantics (execute)

This module does NOT:
- decide what to mutate
- protect against other processes mutating the repository concurrently
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import secrets
import time

from retime.repo import GitError, GitExecutor


logger = logging.getLogger(__name__)


DEFAULT_BACKUP_PREFIX = "retime-backup"


class TransactionError(RuntimeError):
    """
    Illegal use of a transaction, such as committing twice or cleaning up
    while still active. Always a usage error; never ignored.
    """


class RollbackError(TransactionError):
    """
    Rollback did not restore the repository. Manual recovery may be required;
    the backup branch is left in place.
    """

    def __init__(self, message: str, backup_branch: Optional[str]) -> None:
        self.backup_branch = backup_branch
        super().__init__(message)


class TransactionTimeout(RuntimeError):
    """
    The operation ran past the transaction's deadline.
    """


class TransactionState(str, Enum):
    INIT = "init"
    BACKUP_CREATED = "backup_created"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CLEANED_UP = "cleaned_up"


_TERMINAL = (TransactionState.COMMITTED, TransactionState.ROLLED_BACK)


@dataclass(frozen=True)
class BackupInfo:
    branch: str
    original_branch: str
    head: str
    created_at: datetime


@dataclass(frozen=True)
class RollbackOutcome:
    success: bool
    restored_branch: str
    restored_head: str
    verified: bool


@dataclass
class TransactionResult:
    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    rolled_back: bool = False
    rollback: Optional[RollbackOutcome] = None
    rollback_error: Optional[RollbackError] = None
    cleaned_up: bool = False
    transaction: Optional[Dict[str, Any]] = None

    @property
    def needs_manual_recovery(self) -> bool:
        return self.rollback_error is not None


def generate_transaction_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class Transaction:
    def __init__(
        self,
        executor: GitExecutor,
        *,
        transaction_id: Optional[str] = None,
        timeout: Optional[float] = None,
        backup_prefix: str = DEFAULT_BACKUP_PREFIX,
    ) -> None:
        self.executor = executor
        self.id = transaction_id or generate_transaction_id()
        self.timeout = timeout
        self.backup_prefix = backup_prefix
        self.state = TransactionState.INIT
        self.backup: Optional[BackupInfo] = None
        self.created_at = datetime.now(timezone.utc)
        self._started = time.monotonic()

    @property
    def repo_path(self) -> str:
        return str(self.executor.repo_path)

    @property
    def backup_branch(self) -> str:
        return f"{self.backup_prefix}-{self.id}"

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def create_backup(self) -> BackupInfo:
        """
        Snapshot HEAD into a new backup branch.

        The working tree must be clean: a branch cannot capture uncommitted
        changes, so rollback would be incomplete.
        """
        if self.state is not TransactionState.INIT:
            raise TransactionError("Backup already created")

        status = self.executor.status()
        if not status.clean:
            raise TransactionError(
                f"Repository must be clean before creating a backup ({len(status.files)} changed files). "
                "Commit or stash changes first."
            )

        original_branch = self.executor.current_branch()
        if original_branch is None:
            raise TransactionError("Cannot create a backup on a detached HEAD")

        branch = self.backup_branch
        if self.executor.branch_exists(branch):
            raise TransactionError(f"Backup branch already exists: {branch}")

        head = self.executor.revparse("HEAD")
        self.executor.create_branch(branch, head)

        self.backup = BackupInfo(
            branch=branch,
            original_branch=original_branch,
            head=head,
            created_at=datetime.now(timezone.utc),
        )

        if not self.verify_backup_integrity():
            self.backup = None
            self._delete_branch_quietly(branch)
            raise TransactionError(f"Backup integrity check failed for {branch}")

        self.state = TransactionState.BACKUP_CREATED
        logger.info("backup %s created at %s on %s", branch, head[:12], original_branch)
        return self.backup

    def verify_backup_integrity(self) -> bool:
        if self.backup is None:
            raise TransactionError("No backup created")

        try:
            actual = self.executor.revparse(self.backup.branch)
        except GitError:
            return False
        return actual == self.backup.head

    def commit(self) -> None:
        self._require_active("commit")
        self.state = TransactionState.COMMITTED
        logger.info("transaction %s committed", self.id)

    def rollback(self) -> RollbackOutcome:
        """
        Hard-reset the original branch to the backup and verify HEAD.

        Raises:
            TransactionError: no backup, or already committed / rolled back
            RollbackError: the repository could not be restored
        """
        self._require_active("roll back")
        assert self.backup is not None

        backup = self.backup
        try:
            if self.executor.current_branch() != backup.original_branch:
                self.executor.checkout(backup.original_branch, force=True)
            self.executor.reset_hard(backup.branch)
            self.executor.clean_untracked()
            head = self.executor.revparse("HEAD")
        except GitError as e:
            logger.error(
                "rollback of %s failed: %s; backup branch %s kept for manual recovery",
                self.id,
                e,
                backup.branch,
            )
            raise RollbackError(f"Rollback failed: {e}", backup.branch) from e

        if head != backup.head:
            logger.error(
                "rollback of %s left HEAD at %s instead of %s; backup branch %s kept",
                self.id,
                head[:12],
                backup.head[:12],
                backup.branch,
            )
            raise RollbackError(
                "Rollback verification failed: repository state not restored",
                backup.branch,
            )

        self.state = TransactionState.ROLLED_BACK
        logger.info("transaction %s rolled back to %s", self.id, head[:12])
        return RollbackOutcome(
            success=True,
            restored_branch=backup.original_branch,
            restored_head=head,
            verified=True,
        )

    def cleanup_backup(self) -> str:
        """
        Delete the backup branch. Only allowed after commit or rollback.
        """
        if self.state is TransactionState.CLEANED_UP:
            raise TransactionError("Backup already cleaned up")

        if self.state not in _TERMINAL:
            raise TransactionError("Cannot clean up backup: transaction still active")

        assert self.backup is not None
        self.executor.delete_branch(self.backup.branch)
        self.state = TransactionState.CLEANED_UP
        logger.info("backup %s deleted", self.backup.branch)
        return self.backup.branch

    # -----------------------------------------------------------------
    # Deadline
    # -----------------------------------------------------------------

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def remaining(self) -> Optional[float]:
        if self.timeout is None:
            return None
        return max(0.0, self.timeout - self.elapsed())

    def check_deadline(self) -> None:
        if self.timeout is not None and self.elapsed() > self.timeout:
            raise TransactionTimeout(
                f"Transaction {self.id} exceeded its timeout of {self.timeout:g}s"
            )

    def status(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "repo_path": self.repo_path,
            "state": self.state.value,
            "backup_branch": self.backup.branch if self.backup else None,
            "original_branch": self.backup.original_branch if self.backup else None,
            "head": self.backup.head if self.backup else None,
            "created_at": self.created_at.isoformat(),
            "elapsed": round(self.elapsed(), 3),
        }

    def _require_active(self, action: str) -> None:
        if self.state is TransactionState.INIT:
            raise TransactionError(f"Cannot {action} transaction: no backup created")
        if self.state is TransactionState.COMMITTED:
            raise TransactionError(f"Cannot {action} transaction: already committed")
        if self.state is TransactionState.ROLLED_BACK:
            raise TransactionError(f"Cannot {action} transaction: already rolled back")
        if self.state is TransactionState.CLEANED_UP:
            raise TransactionError(f"Cannot {action} transaction: already cleaned up")

    def _delete_branch_quietly(self, branch: str) -> None:
        try:
            self.executor.delete_branch(branch)
        except GitError as e:
            logger.warning("failed to delete backup branch %s: %s", branch, e)


Operation = Callable[[Transaction], Any]


def execute(
    executor: GitExecutor,
    operation: Operation,
    *,
    timeout: Optional[float] = None,
    transaction_id: Optional[str] = None,
    backup_prefix: str = DEFAULT_BACKUP_PREFIX,
) -> TransactionResult:
    """
    Run operation(transaction) atomically.

    Backup precondition failures propagate. Any exception raised by the
    operation, or a blown deadline, rolls the repository back and is
    returned in the result together with the rollback outcome.
    """
    tx = Transaction(
        executor,
        transaction_id=transaction_id,
        timeout=timeout,
        backup_prefix=backup_prefix,
    )
    tx.create_backup()

    try:
        value = operation(tx)
        tx.check_deadline()
    except Exception as e:
        logger.warning("transaction %s failed: %s", tx.id, e)
        return _roll_back(tx, e)

    tx.commit()
    return TransactionResult(
        success=True,
        result=value,
        cleaned_up=_cleanup(tx),
        transaction=tx.status(),
    )


def _roll_back(tx: Transaction, error: BaseException) -> TransactionResult:
    try:
        outcome = tx.rollback()
    except RollbackError as rb:
        return TransactionResult(
            success=False,
            error=error,
            rolled_back=False,
            rollback_error=rb,
            transaction=tx.status(),
        )

    return TransactionResult(
        success=False,
        error=error,
        rolled_back=True,
        rollback=outcome,
        cleaned_up=_cleanup(tx),
        transaction=tx.status(),
    )


def _cleanup(tx: Transaction) -> bool:
    try:
        tx.cleanup_backup()
    except GitError as e:
        logger.warning("could not delete backup branch %s: %s", tx.backup_branch, e)
        return False
    return True


def list_backup_branches(executor: GitExecutor, prefix: str = DEFAULT_BACKUP_PREFIX) -> List[str]:
    """
    Backup branches left behind, for example by a crashed run.
    """
    return executor.list_branches(f"{prefix}-*")
