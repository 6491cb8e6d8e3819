"""
SQL Ledger Store

SQLAlchemy implementation of the ledger store.

Checked transaction writes open with `UPDATE budget_lines SET version =
version + 1 WHERE id = :id`. That statement takes the line's row lock on
PostgreSQL (and the database write lock on SQLite) before anything is read,
so the snapshot, the caller's check and the dependent insert or update all
run while other writers to the line wait. A check that raises rolls the whole
transaction back, version bump included.

Line field updates use `... WHERE id = :id AND version = :expected`; a zero
row count means another writer got there first.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .exceptions import ConflictError, StorageError
from .models import (
    BudgetCategory,
    BudgetLine,
    BudgetLineStatus,
    LineSnapshot,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from .store import DecisionFn, InsertCheck, LedgerStore

logger = logging.getLogger(__name__)

metadata = MetaData()

budget_lines = Table(
    "budget_lines",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("project_id", String(64), nullable=False),
    Column("category", String(20), nullable=False),
    Column("fiscal_year", Integer, nullable=False),
    Column("allocated_amount", Numeric(15, 2), nullable=False),
    Column("alert_threshold_percent", Numeric(5, 2), nullable=False),
    Column("status", String(10), nullable=False),
    Column("starts_on", Date, nullable=False),
    Column("notes", Text),
    Column("created_by", String(64)),
    Column("updated_by", String(64)),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("version", Integer, nullable=False, default=0),
    UniqueConstraint("project_id", "category", "fiscal_year", name="uk_budget_line"),
    CheckConstraint("allocated_amount >= 0", name="chk_budget_lines_allocated"),
)

budget_transactions = Table(
    "budget_transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("budget_line_id", String(36), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(15, 2), nullable=False),
    Column("description", String(255), nullable=False),
    Column("vendor_id", String(64)),
    Column("status", String(10), nullable=False),
    Column("transaction_date", Date, nullable=False),
    Column("invoice_number", String(100)),
    Column("reference_number", String(100)),
    Column("created_by", String(64)),
    Column("approved_by", String(64)),
    Column("decision_comment", Text),
    Column("created_at", DateTime, nullable=False),
    Column("decided_at", DateTime),
    CheckConstraint("amount > 0", name="chk_budget_transactions_amount"),
    Index("idx_budget_transactions_line", "budget_line_id"),
)


def _line_values(line: BudgetLine) -> dict:
    return {
        "id": line.id,
        "project_id": line.project_id,
        "category": line.category.value,
        "fiscal_year": line.fiscal_year,
        "allocated_amount": line.allocated_amount,
        "alert_threshold_percent": line.alert_threshold_percent,
        "status": line.status.value,
        "starts_on": line.starts_on,
        "notes": line.notes,
        "created_by": line.created_by,
        "updated_by": line.updated_by,
        "created_at": line.created_at,
        "updated_at": line.updated_at,
        "version": line.version,
    }


def _txn_values(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "budget_line_id": txn.budget_line_id,
        "type": txn.type.value,
        "amount": txn.amount,
        "description": txn.description,
        "vendor_id": txn.vendor_id,
        "status": txn.status.value,
        "transaction_date": txn.transaction_date,
        "invoice_number": txn.invoice_number,
        "reference_number": txn.reference_number,
        "created_by": txn.created_by,
        "approved_by": txn.approved_by,
        "decision_comment": txn.decision_comment,
        "created_at": txn.created_at,
        "decided_at": txn.decided_at,
    }


def _row_to_line(row) -> BudgetLine:
    return BudgetLine(
        id=row.id,
        project_id=row.project_id,
        category=BudgetCategory(row.category),
        fiscal_year=row.fiscal_year,
        allocated_amount=row.allocated_amount,
        alert_threshold_percent=row.alert_threshold_percent,
        status=BudgetLineStatus(row.status),
        starts_on=row.starts_on,
        notes=row.notes,
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
        version=row.version,
    )


def _row_to_txn(row) -> Transaction:
    return Transaction(
        id=row.id,
        budget_line_id=row.budget_line_id,
        type=TransactionType(row.type),
        amount=row.amount,
        description=row.description,
        vendor_id=row.vendor_id,
        status=TransactionStatus(row.status),
        transaction_date=row.transaction_date,
        invoice_number=row.invoice_number,
        reference_number=row.reference_number,
        created_by=row.created_by,
        approved_by=row.approved_by,
        decision_comment=row.decision_comment,
        created_at=row.created_at,
        decided_at=row.decided_at,
    )


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Turn driver errors into StorageError without leaking their text."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise StorageError(f"Storage failure during {operation}") from e


class SqlLedgerStore(LedgerStore):
    """Ledger store backed by a relational database."""

    def __init__(self, engine: Engine, create_tables: bool = False):
        self.engine = engine
        if create_tables:
            metadata.create_all(engine)

    def _lock_line(self, conn: Connection, line_id: str) -> bool:
        result = conn.execute(
            update(budget_lines)
            .where(budget_lines.c.id == line_id)
            .values(version=budget_lines.c.version + 1, updated_at=datetime.now())
        )
        return result.rowcount == 1

    def _read_snapshot(self, conn: Connection, line_id: str) -> LineSnapshot | None:
        row = conn.execute(select(budget_lines).where(budget_lines.c.id == line_id)).first()
        if row is None:
            return None
        txn_rows = conn.execute(
            select(budget_transactions)
            .where(budget_transactions.c.budget_line_id == line_id)
            .order_by(budget_transactions.c.created_at)
        ).fetchall()
        return LineSnapshot(line=_row_to_line(row), transactions=[_row_to_txn(r) for r in txn_rows])

    def add_line(self, line: BudgetLine) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(budget_lines).values(**_line_values(line)))
        except IntegrityError as e:
            raise ConflictError(
                f"Budget line already exists for project {line.project_id}, "
                f"{line.category.value}, FY{line.fiscal_year}",
                details={"project_id": line.project_id, "category": line.category.value},
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to insert budget line: {e}")
            raise StorageError("Storage failure during add_line") from e

    def get_line(self, line_id: str) -> BudgetLine | None:
        with translate_errors("get_line"), self.engine.connect() as conn:
            row = conn.execute(select(budget_lines).where(budget_lines.c.id == line_id)).first()
        return _row_to_line(row) if row else None

    def list_lines(self, project_id=None, fiscal_year=None, status=None) -> list[BudgetLine]:
        query = select(budget_lines).order_by(budget_lines.c.created_at)
        if project_id is not None:
            query = query.where(budget_lines.c.project_id == project_id)
        if fiscal_year is not None:
            query = query.where(budget_lines.c.fiscal_year == fiscal_year)
        if status is not None:
            query = query.where(budget_lines.c.status == status.value)

        with translate_errors("list_lines"), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_line(row) for row in rows]

    def snapshot(self, line_id: str) -> LineSnapshot | None:
        with translate_errors("snapshot"), self.engine.connect() as conn:
            return self._read_snapshot(conn, line_id)

    def update_line_if_version(self, line: BudgetLine, expected_version: int) -> bool:
        values = _line_values(line)
        for key in ("id", "created_at", "created_by", "version"):
            values.pop(key)
        values["updated_at"] = datetime.now()

        with translate_errors("update_line"), self.engine.begin() as conn:
            result = conn.execute(
                update(budget_lines)
                .where(and_(budget_lines.c.id == line.id, budget_lines.c.version == expected_version))
                .values(version=budget_lines.c.version + 1, **values)
            )
            return result.rowcount == 1

    def insert_transaction_checked(self, txn: Transaction, check: InsertCheck) -> bool:
        with translate_errors("insert_transaction"), self.engine.begin() as conn:
            if not self._lock_line(conn, txn.budget_line_id):
                return False
            check(self._read_snapshot(conn, txn.budget_line_id))
            conn.execute(insert(budget_transactions).values(**_txn_values(txn)))
        return True

    def decide_transaction_checked(self, txn_id: str, decide: DecisionFn) -> Transaction | None:
        # budget_line_id never changes, so it is safe to read before locking
        current = self.get_transaction(txn_id)
        if current is None:
            return None

        with translate_errors("decide_transaction"), self.engine.begin() as conn:
            self._lock_line(conn, current.budget_line_id)
            snapshot = self._read_snapshot(conn, current.budget_line_id)
            stored = next(t for t in snapshot.transactions if t.id == txn_id)
            decided = decide(snapshot, stored)
            result = conn.execute(
                update(budget_transactions)
                .where(
                    and_(
                        budget_transactions.c.id == txn_id,
                        budget_transactions.c.status == TransactionStatus.PENDING.value,
                    )
                )
                .values(
                    status=decided.status.value,
                    approved_by=decided.approved_by,
                    decision_comment=decided.decision_comment,
                    decided_at=decided.decided_at,
                )
            )
            if result.rowcount != 1:
                raise StorageError(f"Transaction {txn_id} changed while its line was locked")
        return decided

    def get_transaction(self, txn_id: str) -> Transaction | None:
        with translate_errors("get_transaction"), self.engine.connect() as conn:
            row = conn.execute(
                select(budget_transactions).where(budget_transactions.c.id == txn_id)
            ).first()
        return _row_to_txn(row) if row else None

    def list_transactions(self, line_id: str) -> list[Transaction]:
        with translate_errors("list_transactions"), self.engine.connect() as conn:
            rows = conn.execute(
                select(budget_transactions)
                .where(budget_transactions.c.budget_line_id == line_id)
                .order_by(budget_transactions.c.created_at)
            ).fetchall()
        return [_row_to_txn(row) for row in rows]
