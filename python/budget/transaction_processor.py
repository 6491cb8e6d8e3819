"""
Transaction Processor Module

Validates and records expense, commitment, adjustment and refund entries
against a budget line, and applies approval decisions to them.

The balance check and the pending insert form one unit: the store runs the
check against a snapshot taken under the line's lock and inserts before the
lock is released. Two concurrent spends can therefore never both pass a check
against a balance only one of them can consume.
"""

import logging
import uuid
from dataclasses import replace
from datetime import date, datetime

from .exceptions import (
    AlreadyProcessedError,
    InsufficientBudgetError,
    NotFoundError,
    ValidationError,
)
from .models import (
    LineSnapshot,
    Transaction,
    TransactionStatus,
    TransactionType,
    parse_enum,
    to_money,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)

DECISIONS = (TransactionStatus.APPROVED, TransactionStatus.REJECTED)


def _check_headroom(snapshot: LineSnapshot, txn: Transaction) -> None:
    if not txn.type.consumes_budget:
        return
    # The line may have been amended down since this was recorded
    utilization = snapshot.utilization
    headroom = utilization.allocated - utilization.spent
    if txn.amount > headroom:
        raise InsufficientBudgetError(headroom, txn.amount, txn.budget_line_id)


class TransactionProcessor:
    """Records and decides ledger transactions."""

    def __init__(self, store: LedgerStore):
        """Initialize the processor.

        Args:
            store: Ledger store collaborator
        """
        self.store = store

    def record(
        self,
        line_id: str,
        type: TransactionType | str,
        amount,
        description: str,
        vendor_id: str | None = None,
        *,
        created_by: str | None = None,
        transaction_date: date | None = None,
        invoice_number: str | None = None,
        reference_number: str | None = None,
    ) -> Transaction:
        """Record a pending transaction.

        Args:
            line_id: Budget line ID
            type: Transaction type
            amount: Positive amount
            description: Non-empty description
            vendor_id: Optional vendor reference
            created_by: Acting user
            transaction_date: Date the spend belongs to (default today)
            invoice_number: Optional invoice number
            reference_number: Optional PO/reference number

        Returns:
            The new Transaction in PENDING status

        Raises:
            ValidationError: On bad input or a closed line
            NotFoundError: If the line does not exist
            InsufficientBudgetError: If an expense/commitment exceeds available
        """
        txn_type = parse_enum(TransactionType, type, "type")
        value = to_money(amount, "amount")
        if value <= 0:
            raise ValidationError("Amount must be greater than 0", details={"field": "amount"})
        if not description or not description.strip():
            raise ValidationError(
                "Transaction description is required", details={"field": "description"}
            )

        txn = Transaction(
            id=str(uuid.uuid4()),
            budget_line_id=line_id,
            type=txn_type,
            amount=value,
            description=description.strip(),
            vendor_id=vendor_id,
            transaction_date=transaction_date or date.today(),
            invoice_number=invoice_number,
            reference_number=reference_number,
            created_by=created_by,
        )

        def check(snapshot: LineSnapshot) -> None:
            if not snapshot.line.is_active:
                raise ValidationError(
                    f"Budget line {line_id} is closed",
                    details={"line_id": line_id, "status": snapshot.line.status.value},
                )
            if txn_type.consumes_budget:
                available = snapshot.utilization.available
                if value > available:
                    logger.warning(
                        f"Rejected {txn_type.value} of {value:,.2f} on line {line_id}: "
                        f"only {available:,.2f} available"
                    )
                    raise InsufficientBudgetError(available, value, line_id)

        if not self.store.insert_transaction_checked(txn, check):
            raise NotFoundError("Budget line", line_id)

        logger.info(f"Recorded {txn_type.value} {txn.id} of {value:,.2f} on line {line_id}")
        return txn

    def decide(
        self,
        transaction_id: str,
        decision: TransactionStatus | str,
        approver_id: str,
        comment: str | None = None,
    ) -> Transaction:
        """Approve or reject a pending transaction.

        Approval folds the amount into the line's spent total; rejection has no
        ledger effect beyond releasing the commitment.

        Args:
            transaction_id: Transaction ID
            decision: APPROVED or REJECTED
            approver_id: Deciding user
            comment: Optional comment

        Returns:
            The decided Transaction

        Raises:
            AlreadyProcessedError: If the transaction is no longer pending
            InsufficientBudgetError: If approving would push spent above allocated
        """
        status = parse_enum(TransactionStatus, decision, "decision")
        if status not in DECISIONS:
            raise ValidationError(
                "Decision must be APPROVED or REJECTED", details={"field": "decision"}
            )

        def apply(snapshot: LineSnapshot, txn: Transaction) -> Transaction:
            if not txn.is_pending:
                raise AlreadyProcessedError("Transaction", transaction_id, txn.status.value)

            if status == TransactionStatus.APPROVED:
                _check_headroom(snapshot, txn)

            return replace(
                txn,
                status=status,
                approved_by=approver_id,
                decision_comment=comment,
                decided_at=datetime.now(),
            )

        decided = self.store.decide_transaction_checked(transaction_id, apply)
        if decided is None:
            raise NotFoundError("Transaction", transaction_id)

        logger.info(f"Transaction {transaction_id} {status.value.lower()} by {approver_id}")
        return decided

    def check_approvable(self, transaction_id: str) -> Transaction:
        """Check that approving a pending transaction would succeed right now.

        Raises:
            NotFoundError: If the transaction does not exist
            AlreadyProcessedError: If it is no longer pending
            InsufficientBudgetError: If its line no longer has the headroom
        """
        txn = self.get_transaction(transaction_id)
        if not txn.is_pending:
            raise AlreadyProcessedError("Transaction", transaction_id, txn.status.value)
        _check_headroom(self.store.snapshot(txn.budget_line_id), txn)
        return txn

    def get_transaction(self, transaction_id: str) -> Transaction:
        txn = self.store.get_transaction(transaction_id)
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    def list_transactions(self, line_id: str, status=None, type=None) -> list[Transaction]:
        if self.store.get_line(line_id) is None:
            raise NotFoundError("Budget line", line_id)
        if status is not None:
            status = parse_enum(TransactionStatus, status, "status")
        if type is not None:
            type = parse_enum(TransactionType, type, "type")

        return [
            txn
            for txn in self.store.list_transactions(line_id)
            if (status is None or txn.status == status) and (type is None or txn.type == type)
        ]
