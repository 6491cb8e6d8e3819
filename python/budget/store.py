"""
Ledger Store

Persistence contract for budget lines and their transactions, plus an
in-memory implementation used by tests and single-process deployments.

Writes to a line's transaction set hold that line's lock across the whole
read-check-write sequence: the caller's check runs against a snapshot taken
under the lock, and the write lands before the lock is released. Line field
updates are conditional on the version the caller read; every write bumps the
version, so a stale amendment is refused and retried.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable

from .exceptions import ConflictError
from .models import BudgetLine, BudgetLineStatus, LineSnapshot, Transaction

logger = logging.getLogger(__name__)

# Raises to abort the insert
InsertCheck = Callable[[LineSnapshot], None]
# Returns the decided transaction, or raises to abort
DecisionFn = Callable[[LineSnapshot, Transaction], Transaction]


class LedgerStore(ABC):
    """Keyed storage for budget lines and transactions."""

    @abstractmethod
    def add_line(self, line: BudgetLine) -> None:
        """Insert a new line.

        Raises:
            ConflictError: If a line already exists for (project, category, fiscal year)
        """

    @abstractmethod
    def get_line(self, line_id: str) -> BudgetLine | None:
        ...

    @abstractmethod
    def list_lines(
        self,
        project_id: str | None = None,
        fiscal_year: int | None = None,
        status: BudgetLineStatus | None = None,
    ) -> list[BudgetLine]:
        ...

    @abstractmethod
    def snapshot(self, line_id: str) -> LineSnapshot | None:
        """Read a line together with all of its transactions at one version."""

    @abstractmethod
    def update_line_if_version(self, line: BudgetLine, expected_version: int) -> bool:
        """Persist line fields if the stored version still matches.

        Returns:
            True if written, False on version conflict
        """

    @abstractmethod
    def insert_transaction_checked(self, txn: Transaction, check: InsertCheck) -> bool:
        """Insert a transaction while holding its line's lock.

        `check` receives a snapshot taken under the lock and aborts the insert
        by raising; the exception reaches the caller unchanged.

        Returns:
            True if inserted, False if the line does not exist
        """

    @abstractmethod
    def decide_transaction_checked(self, txn_id: str, decide: DecisionFn) -> Transaction | None:
        """Apply a decision to a transaction while holding its line's lock.

        `decide` receives the line snapshot and the stored transaction and
        returns the decided copy to persist, or raises to abort.

        Returns:
            The persisted transaction, or None if it does not exist
        """

    @abstractmethod
    def get_transaction(self, txn_id: str) -> Transaction | None:
        ...

    @abstractmethod
    def list_transactions(self, line_id: str) -> list[Transaction]:
        ...


class InMemoryLedgerStore(LedgerStore):
    """Thread-safe dictionary-backed ledger store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._lines: dict[str, BudgetLine] = {}
        self._transactions: dict[str, Transaction] = {}
        self._line_transactions: dict[str, list[str]] = {}

    def add_line(self, line: BudgetLine) -> None:
        with self._lock:
            for existing in self._lines.values():
                if existing.key == line.key:
                    raise ConflictError(
                        f"Budget line already exists for project {line.project_id}, "
                        f"{line.category.value}, FY{line.fiscal_year}",
                        details={"existing_id": existing.id},
                    )
            self._lines[line.id] = copy.deepcopy(line)
            self._line_transactions[line.id] = []

    def get_line(self, line_id: str) -> BudgetLine | None:
        with self._lock:
            line = self._lines.get(line_id)
            return copy.deepcopy(line) if line else None

    def list_lines(self, project_id=None, fiscal_year=None, status=None) -> list[BudgetLine]:
        with self._lock:
            lines = [
                copy.deepcopy(line)
                for line in self._lines.values()
                if (project_id is None or line.project_id == project_id)
                and (fiscal_year is None or line.fiscal_year == fiscal_year)
                and (status is None or line.status == status)
            ]
        return sorted(lines, key=lambda l: l.created_at)

    def snapshot(self, line_id: str) -> LineSnapshot | None:
        with self._lock:
            return self._snapshot(line_id)

    def _snapshot(self, line_id: str) -> LineSnapshot | None:
        # Caller holds self._lock
        line = self._lines.get(line_id)
        if line is None:
            return None
        transactions = [
            copy.deepcopy(self._transactions[txn_id])
            for txn_id in self._line_transactions[line_id]
        ]
        return LineSnapshot(line=copy.deepcopy(line), transactions=transactions)

    def _bump(self, line_id: str) -> None:
        # Caller holds self._lock
        stored = self._lines[line_id]
        stored.version += 1
        stored.updated_at = datetime.now()

    def update_line_if_version(self, line: BudgetLine, expected_version: int) -> bool:
        with self._lock:
            stored = self._lines.get(line.id)
            if stored is None or stored.version != expected_version:
                return False
            updated = copy.deepcopy(line)
            updated.version = expected_version + 1
            updated.updated_at = datetime.now()
            self._lines[line.id] = updated
            return True

    def insert_transaction_checked(self, txn: Transaction, check: InsertCheck) -> bool:
        # One store-wide lock also covers every line
        with self._lock:
            snapshot = self._snapshot(txn.budget_line_id)
            if snapshot is None:
                return False
            check(snapshot)
            self._bump(txn.budget_line_id)
            self._transactions[txn.id] = copy.deepcopy(txn)
            self._line_transactions[txn.budget_line_id].append(txn.id)
            return True

    def decide_transaction_checked(self, txn_id: str, decide: DecisionFn) -> Transaction | None:
        with self._lock:
            stored = self._transactions.get(txn_id)
            if stored is None:
                return None
            decided = decide(self._snapshot(stored.budget_line_id), copy.deepcopy(stored))
            self._bump(stored.budget_line_id)
            self._transactions[txn_id] = copy.deepcopy(decided)
            return copy.deepcopy(decided)

    def get_transaction(self, txn_id: str) -> Transaction | None:
        with self._lock:
            txn = self._transactions.get(txn_id)
            return copy.deepcopy(txn) if txn else None

    def list_transactions(self, line_id: str) -> list[Transaction]:
        with self._lock:
            return [
                copy.deepcopy(self._transactions[txn_id])
                for txn_id in self._line_transactions.get(line_id, [])
            ]
