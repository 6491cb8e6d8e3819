"""
Transaction Approval Bridge

Gates ledger transactions at or above the control threshold through the
approval workflow. The transaction stays PENDING (and so counts as committed)
until the workflow reaches a terminal state:

    APPROVED  -> TransactionProcessor.decide(APPROVED) by the final approver
    REJECTED  -> decide(REJECTED) by the rejecting approver
    CANCELLED -> decide(REJECTED) by the requester

The final approval is refused while the line lacks the headroom to absorb
the transaction, so the request stays at its last level.

Only requests opened by the bridge itself are folded back into the ledger.
Below the threshold the transaction is left PENDING for a direct decision;
at or above it a direct decision may only reject, and only once no approval
request is pending.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path

from budget.config import load_thresholds
from budget.exceptions import ConflictError, InsufficientBudgetError
from budget.models import Transaction, TransactionStatus, parse_enum, to_money
from budget.transaction_processor import TransactionProcessor

from .models import ApprovalEntityType, ApprovalRequest, ApprovalStatus, Priority
from .workflow import ApprovalWorkflow

logger = logging.getLogger(__name__)

# Marks requests opened by the bridge in their request_data
REQUEST_SOURCE = "transaction_bridge"


@dataclass
class RecordedTransaction:
    """A recorded transaction and the approval request gating it, if any."""

    transaction: Transaction
    approval: ApprovalRequest | None = None

    @property
    def requires_approval(self) -> bool:
        return self.approval is not None

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "requires_approval": self.requires_approval,
            "approval": self.approval.to_dict() if self.approval else None,
        }


class TransactionApprovalBridge:
    """Connects the transaction processor to the approval workflow."""

    def __init__(
        self,
        processor: TransactionProcessor,
        workflow: ApprovalWorkflow,
        config_dir: Path | str | None = None,
        control_threshold=None,
    ):
        """Initialize the bridge and subscribe to TRANSACTION outcomes.

        Args:
            processor: Transaction processor
            workflow: Approval workflow
            config_dir: Path to configuration directory
            control_threshold: Amount at or above which approval is required
                (overrides config)
        """
        self.processor = processor
        self.workflow = workflow
        if control_threshold is None:
            control_threshold = load_thresholds(config_dir)["transactions"]["approval_control_threshold"]
        self.control_threshold = to_money(control_threshold, "approval_control_threshold")

        workflow.register_handler(
            ApprovalEntityType.TRANSACTION,
            on_approved=self._on_approved,
            on_rejected=self._on_rejected,
            on_cancelled=self._on_cancelled,
            before_approve=self._check_approvable,
        )

    def requires_approval(self, amount: Decimal) -> bool:
        return amount >= self.control_threshold

    def record(
        self,
        line_id: str,
        type,
        amount,
        description: str,
        vendor_id: str | None = None,
        *,
        created_by: str,
        transaction_date: date | None = None,
        invoice_number: str | None = None,
        reference_number: str | None = None,
        priority: Priority | str = Priority.MEDIUM,
    ) -> RecordedTransaction:
        """Record a transaction and open an approval request when it is gated.

        The approval settings are resolved before anything is written. If the
        request still cannot be opened, the transaction is rejected so
        no gated transaction is left without its approval request.

        Returns:
            RecordedTransaction with the approval request when one was submitted
        """
        value = to_money(amount, "amount")
        gated = self.requires_approval(value)
        if gated:
            priority = parse_enum(Priority, priority, "priority")
            levels = self.workflow.levels_for(ApprovalEntityType.TRANSACTION, value)

        txn = self.processor.record(
            line_id,
            type,
            value,
            description,
            vendor_id,
            created_by=created_by,
            transaction_date=transaction_date,
            invoice_number=invoice_number,
            reference_number=reference_number,
        )
        if not gated:
            return RecordedTransaction(transaction=txn)

        try:
            approval = self.workflow.submit(
                ApprovalEntityType.TRANSACTION,
                txn.id,
                created_by,
                levels,
                title=f"{txn.type.value} {txn.amount:,.2f}: {txn.description}",
                priority=priority,
                request_data={
                    "source": REQUEST_SOURCE,
                    "budget_line_id": txn.budget_line_id,
                    "type": txn.type.value,
                    "amount": float(txn.amount),
                    "vendor_id": txn.vendor_id,
                },
            )
        except Exception as e:
            logger.error(f"Could not open approval for transaction {txn.id}, rejecting it: {e}")
            self.processor.decide(
                txn.id, TransactionStatus.REJECTED, created_by, "Approval request could not be opened"
            )
            raise

        logger.info(
            f"Transaction {txn.id} of {txn.amount:,.2f} gated by approval request {approval.id}"
        )
        return RecordedTransaction(transaction=txn, approval=approval)

    def pending_approval_for(self, transaction_id: str) -> ApprovalRequest | None:
        requests = self.workflow.list_requests(
            status=ApprovalStatus.PENDING,
            entity_type=ApprovalEntityType.TRANSACTION,
            entity_id=transaction_id,
        )
        return requests[0] if requests else None

    def decide(self, transaction_id: str, decision, approver_id: str, comment: str | None = None) -> Transaction:
        """Decide a transaction outside the workflow.

        Raises:
            ConflictError: If an approval request is pending for the transaction,
                or if approving it directly would skip the control threshold
        """
        txn = self.processor.get_transaction(transaction_id)
        status = parse_enum(TransactionStatus, decision, "decision")

        approval = self.pending_approval_for(transaction_id)
        if approval is not None:
            raise ConflictError(
                f"Transaction {transaction_id} is awaiting approval request {approval.id}",
                details={"transaction_id": transaction_id, "approval_id": approval.id},
            )
        if status == TransactionStatus.APPROVED and self.requires_approval(txn.amount):
            raise ConflictError(
                f"Transaction {transaction_id} of {txn.amount:,.2f} must be approved "
                f"through the approval workflow",
                details={
                    "transaction_id": transaction_id,
                    "control_threshold": float(self.control_threshold),
                },
            )
        return self.processor.decide(transaction_id, status, approver_id, comment)

    def _decide_from(self, request: ApprovalRequest, status: TransactionStatus, actor: str, comment: str | None):
        if request.request_data.get("source") != REQUEST_SOURCE:
            logger.warning(
                f"Approval request {request.id} for transaction {request.entity_id} "
                f"was not opened when recording it, leaving the transaction as is"
            )
            return None

        txn = self.processor.get_transaction(request.entity_id)
        if not txn.is_pending:
            logger.warning(
                f"Transaction {txn.id} already {txn.status.value.lower()}, "
                f"ignoring {request.status.value.lower()} approval request {request.id}"
            )
            return txn
        return self.processor.decide(txn.id, status, actor, comment)

    def _check_approvable(self, request: ApprovalRequest) -> None:
        if request.request_data.get("source") != REQUEST_SOURCE:
            return
        txn = self.processor.get_transaction(request.entity_id)
        if txn.is_pending:
            self.processor.check_approvable(txn.id)

    def _on_approved(self, request: ApprovalRequest):
        final = request.decisions[-1]
        try:
            return self._decide_from(request, TransactionStatus.APPROVED, final.approver_id, final.comment)
        except InsufficientBudgetError:
            # The line shrank between the check and the save; keep both records final
            logger.error(
                f"Approval request {request.id} approved but transaction {request.entity_id} "
                f"no longer fits its line, rejecting it"
            )
            self.processor.decide(
                request.entity_id,
                TransactionStatus.REJECTED,
                final.approver_id,
                f"Approval request {request.id} approved after the line lost its headroom",
            )
            raise

    def _on_rejected(self, request: ApprovalRequest):
        final = request.decisions[-1]
        return self._decide_from(request, TransactionStatus.REJECTED, final.approver_id, final.comment)

    def _on_cancelled(self, request: ApprovalRequest):
        return self._decide_from(
            request,
            TransactionStatus.REJECTED,
            request.requester_id,
            f"Approval request {request.id} cancelled",
        )
