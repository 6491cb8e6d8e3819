"""
Transaction Approval Bridge Tests

Tests for routing large transactions through the approval workflow and
folding approval outcomes back into the ledger.
"""

import pytest
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "python"))

from approvals import ApprovalEntityType, ApprovalStatus, TransactionApprovalBridge
from budget import (
    AmendBudgetCommand,
    ConflictError,
    InsufficientBudgetError,
    StorageError,
    TransactionStatus,
    ValidationError,
)


@pytest.fixture
def big_line(ledger):
    return ledger.allocate("PRJ-200", "CONTRACTORS", 500000, 2025)


class TestGating:
    """Tests for deciding which transactions need approval."""

    def test_below_threshold_is_not_gated(self, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", Decimal("49999.99"), "Paint", created_by="pm.santos")

        assert recorded.requires_approval is False
        assert recorded.transaction.status == TransactionStatus.PENDING
        assert workflow.list_requests() == []

    def test_at_threshold_is_gated(self, bridge, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 50000, "Roofing", created_by="pm.santos", priority="HIGH")

        approval = recorded.approval
        assert approval.entity_type == ApprovalEntityType.TRANSACTION
        assert approval.entity_id == recorded.transaction.id
        assert approval.requester_id == "pm.santos"
        assert [l.required_role for l in approval.levels] == ["FINANCE_CONTROLLER"]
        assert approval.request_data["budget_line_id"] == big_line.id
        assert approval.priority.value == "HIGH"
        assert recorded.to_dict()["requires_approval"] is True

    def test_large_amount_needs_two_levels(self, bridge, big_line):
        recorded = bridge.record(big_line.id, "COMMITMENT", 250000, "Civil works", created_by="pm.santos")

        assert [l.required_role for l in recorded.approval.levels] == ["FINANCE_CONTROLLER", "SUPERVISOR"]

    def test_threshold_override(self, processor, workflow, big_line):
        bridge = TransactionApprovalBridge(processor, workflow, control_threshold=100)

        recorded = bridge.record(big_line.id, "EXPENSE", 100, "Small but controlled", created_by="pm.santos")

        assert recorded.requires_approval is True

    def test_insufficient_budget_opens_no_request(self, ledger, bridge, workflow):
        line = ledger.allocate("PRJ-201", "EQUIPMENT", 60000, 2025)

        with pytest.raises(InsufficientBudgetError):
            bridge.record(line.id, "EXPENSE", 60001, "Too big", created_by="pm.santos")

        assert workflow.list_requests() == []


class TestOutcomes:
    """Tests for folding approval outcomes into the ledger."""

    def test_final_approval_approves_transaction(self, ledger, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")

        workflow.approve(recorded.approval.id, "fc.reyes", "Within plan")

        txn = bridge.processor.get_transaction(recorded.transaction.id)
        assert txn.status == TransactionStatus.APPROVED
        assert txn.approved_by == "fc.reyes"
        assert txn.decision_comment == "Within plan"
        utilization = ledger.get_utilization(big_line.id)
        assert utilization.spent == Decimal("80000.00")
        assert utilization.committed == Decimal("0.00")

    def test_intermediate_level_leaves_transaction_pending(self, ledger, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "COMMITMENT", 250000, "Civil works", created_by="pm.santos")

        workflow.approve(recorded.approval.id, "fc.reyes")

        assert bridge.processor.get_transaction(recorded.transaction.id).is_pending
        assert ledger.get_utilization(big_line.id).committed == Decimal("250000.00")

        workflow.approve(recorded.approval.id, "sup.cruz")

        assert bridge.processor.get_transaction(recorded.transaction.id).status == TransactionStatus.APPROVED

    def test_rejection_rejects_transaction(self, ledger, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")

        workflow.reject(recorded.approval.id, "fc.reyes", "Quote too high")

        txn = bridge.processor.get_transaction(recorded.transaction.id)
        assert txn.status == TransactionStatus.REJECTED
        assert txn.decision_comment == "Quote too high"
        assert ledger.get_utilization(big_line.id).available == Decimal("500000.00")

    def test_cancellation_rejects_transaction(self, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")

        workflow.cancel(recorded.approval.id, "pm.santos", "Scope changed")

        txn = bridge.processor.get_transaction(recorded.transaction.id)
        assert txn.status == TransactionStatus.REJECTED
        assert txn.approved_by == "pm.santos"

    def test_approval_refused_while_line_lacks_headroom(self, ledger, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")
        ledger.amend(big_line.id, AmendBudgetCommand(new_allocated_amount=Decimal("70000")))

        with pytest.raises(InsufficientBudgetError):
            workflow.approve(recorded.approval.id, "fc.reyes")

        request = workflow.get_request(recorded.approval.id)
        assert request.status == ApprovalStatus.PENDING
        assert request.decisions == []
        assert bridge.processor.get_transaction(recorded.transaction.id).is_pending
        assert ledger.get_utilization(big_line.id).spent == Decimal("0.00")

    def test_approval_succeeds_once_headroom_is_restored(self, ledger, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")
        ledger.amend(big_line.id, AmendBudgetCommand(new_allocated_amount=Decimal("70000")))
        with pytest.raises(InsufficientBudgetError):
            workflow.approve(recorded.approval.id, "fc.reyes")

        ledger.amend(big_line.id, AmendBudgetCommand(new_allocated_amount=Decimal("100000")))
        approved = workflow.approve(recorded.approval.id, "fc.reyes")

        assert approved.status == ApprovalStatus.APPROVED
        assert bridge.processor.get_transaction(recorded.transaction.id).status == TransactionStatus.APPROVED
        assert ledger.get_utilization(big_line.id).spent == Decimal("80000.00")

    def test_headroom_lost_after_check_rejects_transaction(self, ledger, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")
        ledger.amend(big_line.id, AmendBudgetCommand(new_allocated_amount=Decimal("70000")))

        # The line shrinks between the final check and the ledger fold
        with patch.object(bridge.processor, "check_approvable"):
            with pytest.raises(InsufficientBudgetError):
                workflow.approve(recorded.approval.id, "fc.reyes")

        txn = bridge.processor.get_transaction(recorded.transaction.id)
        assert workflow.get_request(recorded.approval.id).status == ApprovalStatus.APPROVED
        assert txn.status == TransactionStatus.REJECTED
        assert txn.approved_by == "fc.reyes"
        assert ledger.get_utilization(big_line.id).committed == Decimal("0.00")


class TestDirectDecisions:
    """Tests for deciding transactions outside the workflow."""

    def test_gated_transaction_cannot_be_decided_directly(self, bridge, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")

        with pytest.raises(ConflictError):
            bridge.decide(recorded.transaction.id, "APPROVED", "fc.reyes")

    def test_ungated_transaction_is_decided_directly(self, bridge, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 1000, "Nails", created_by="pm.santos")

        txn = bridge.decide(recorded.transaction.id, "APPROVED", "fc.reyes")

        assert txn.status == TransactionStatus.APPROVED

    def test_gated_amount_cannot_be_approved_directly(self, ledger, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 80000, "Piling", created_by="pm.santos")
        failure = StorageError("Storage failure during decide_transaction")
        with patch.object(bridge.processor, "decide", side_effect=failure):
            with pytest.raises(StorageError):
                workflow.approve(recorded.approval.id, "fc.reyes")

        # The approval is terminal but the transaction is still pending
        with pytest.raises(ConflictError) as exc_info:
            bridge.decide(recorded.transaction.id, "APPROVED", "fc.reyes")
        rejected = bridge.decide(recorded.transaction.id, "REJECTED", "fc.reyes", "Budget cut")

        assert exc_info.value.details["control_threshold"] == 50000.0
        assert rejected.status == TransactionStatus.REJECTED
        assert ledger.get_utilization(big_line.id).committed == Decimal("0.00")


class TestSubmissionFailures:
    """A gated transaction never outlives a failed approval submission."""

    def test_bad_priority_records_nothing(self, bridge, workflow, big_line):
        with pytest.raises(ValidationError):
            bridge.record(big_line.id, "EXPENSE", 60000, "Formwork", created_by="pm.santos", priority="BOGUS")

        assert bridge.processor.list_transactions(big_line.id) == []
        assert workflow.list_requests() == []

    def test_missing_workflow_records_nothing(self, processor, workflow, big_line):
        bridge = TransactionApprovalBridge(processor, workflow)
        workflow.workflows = {}

        with pytest.raises(ValidationError):
            bridge.record(big_line.id, "EXPENSE", 60000, "Formwork", created_by="pm.santos")

        assert processor.list_transactions(big_line.id) == []

    def test_failed_submit_rejects_transaction(self, ledger, bridge, workflow, big_line):
        with patch.object(workflow, "submit", side_effect=StorageError("Storage failure during add_request")):
            with pytest.raises(StorageError):
                bridge.record(big_line.id, "EXPENSE", 60000, "Formwork", created_by="pm.santos")

        [txn] = bridge.processor.list_transactions(big_line.id)
        assert txn.status == TransactionStatus.REJECTED
        assert txn.approved_by == "pm.santos"
        assert ledger.get_utilization(big_line.id).committed == Decimal("0.00")


class TestForeignRequests:
    """Only the request opened at recording time decides a transaction."""

    def test_second_request_for_gated_transaction_conflicts(self, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 60000, "Formwork", created_by="pm.santos")

        with pytest.raises(ConflictError) as exc_info:
            workflow.submit(ApprovalEntityType.TRANSACTION, recorded.transaction.id, "sup.cruz", ["SUPERVISOR"])

        assert exc_info.value.details["existing_id"] == recorded.approval.id

    def test_self_made_request_does_not_fold_transaction(self, bridge, workflow, big_line):
        recorded = bridge.record(big_line.id, "EXPENSE", 1000, "Nails", created_by="pm.santos")
        request = workflow.submit(ApprovalEntityType.TRANSACTION, recorded.transaction.id, "sup.cruz", ["SUPERVISOR"])

        approved = workflow.approve(request.id, "sup.cruz")

        assert approved.status == ApprovalStatus.APPROVED
        assert bridge.processor.get_transaction(recorded.transaction.id).is_pending
