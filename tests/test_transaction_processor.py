"""
Transaction Processor Tests

Tests for recording and deciding ledger transactions, including concurrent
recording against a shared balance and a randomized drift check.
"""

import random
import threading
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "python"))

from budget import (
    AlreadyProcessedError,
    AmendBudgetCommand,
    InsufficientBudgetError,
    NotFoundError,
    TransactionStatus,
    TransactionType,
    ValidationError,
)


class TestRecord:
    """Tests for TransactionProcessor.record."""

    def test_record_creates_pending_transaction(self, processor, line):
        txn = processor.record(
            line.id,
            "expense",
            "1250.755",
            "  Hard hats  ",
            "VND-9",
            created_by="pm.santos",
            transaction_date=date(2025, 2, 14),
            invoice_number="INV-001",
        )

        assert txn.status == TransactionStatus.PENDING
        assert txn.type == TransactionType.EXPENSE
        assert txn.amount == Decimal("1250.76")
        assert txn.description == "Hard hats"
        assert txn.vendor_id == "VND-9"
        assert txn.transaction_date == date(2025, 2, 14)
        assert processor.get_transaction(txn.id) == txn

    def test_insufficient_budget_carries_amounts(self, ledger, processor):
        line = ledger.allocate("PRJ-010", "EQUIPMENT", 10000, 2025)

        with pytest.raises(InsufficientBudgetError) as exc_info:
            processor.record(line.id, "EXPENSE", 10001, "Too much")

        assert exc_info.value.available == Decimal("10000.00")
        assert exc_info.value.requested == Decimal("10001.00")
        assert exc_info.value.details["line_id"] == line.id

    def test_exact_available_is_accepted(self, ledger, processor):
        line = ledger.allocate("PRJ-010", "EQUIPMENT", 10000, 2025)

        txn = processor.record(line.id, "EXPENSE", 10000, "Exactly everything")

        assert txn.amount == Decimal("10000.00")
        assert ledger.get_utilization(line.id).available == Decimal("0.00")

    def test_pending_amounts_reduce_available(self, ledger, processor):
        line = ledger.allocate("PRJ-010", "EQUIPMENT", 10000, 2025)
        processor.record(line.id, "COMMITMENT", 6000, "PO 1")

        with pytest.raises(InsufficientBudgetError) as exc_info:
            processor.record(line.id, "EXPENSE", 4001, "Overflow")

        assert exc_info.value.available == Decimal("4000.00")

    def test_credits_skip_balance_check(self, ledger, processor):
        line = ledger.allocate("PRJ-010", "EQUIPMENT", 100, 2025)

        txn = processor.record(line.id, "REFUND", 500, "Vendor credit note")

        assert txn.status == TransactionStatus.PENDING

    @pytest.mark.parametrize("amount", [0, -10, "ten", float("nan"), float("inf")])
    def test_rejects_bad_amount(self, processor, line, amount):
        with pytest.raises(ValidationError):
            processor.record(line.id, "EXPENSE", amount, "Bad amount")

    def test_rejects_blank_description(self, processor, line):
        with pytest.raises(ValidationError):
            processor.record(line.id, "EXPENSE", 100, "   ")

    def test_rejects_unknown_type(self, processor, line):
        with pytest.raises(ValidationError):
            processor.record(line.id, "TRANSFER", 100, "Move funds")

    def test_unknown_line_raises_not_found(self, processor):
        with pytest.raises(NotFoundError):
            processor.record("missing", "EXPENSE", 100, "Orphan")


class TestDecide:
    """Tests for TransactionProcessor.decide."""

    def test_approve_sets_audit_fields(self, processor, line):
        txn = processor.record(line.id, "EXPENSE", 100, "Gloves")

        decided = processor.decide(txn.id, "APPROVED", "fc.reyes", "OK")

        assert decided.status == TransactionStatus.APPROVED
        assert decided.approved_by == "fc.reyes"
        assert decided.decision_comment == "OK"
        assert decided.decided_at is not None

    def test_second_decision_is_already_processed(self, processor, line):
        txn = processor.record(line.id, "EXPENSE", 100, "Gloves")
        processor.decide(txn.id, "REJECTED", "fc.reyes")

        with pytest.raises(AlreadyProcessedError):
            processor.decide(txn.id, "APPROVED", "fc.reyes")

    def test_decision_must_be_terminal(self, processor, line):
        txn = processor.record(line.id, "EXPENSE", 100, "Gloves")

        with pytest.raises(ValidationError):
            processor.decide(txn.id, "PENDING", "fc.reyes")

    def test_unknown_transaction_raises_not_found(self, processor):
        with pytest.raises(NotFoundError):
            processor.decide("missing", "APPROVED", "fc.reyes")

    def test_list_transactions_filters(self, processor, line):
        first = processor.record(line.id, "EXPENSE", 100, "A")
        processor.record(line.id, "COMMITMENT", 200, "B")
        processor.decide(first.id, "APPROVED", "fc.reyes")

        assert [t.id for t in processor.list_transactions(line.id, status="APPROVED")] == [first.id]
        assert len(processor.list_transactions(line.id, type="COMMITMENT")) == 1
        assert len(processor.list_transactions(line.id)) == 2

    def test_check_approvable_passes_with_headroom(self, processor, line):
        txn = processor.record(line.id, "EXPENSE", 100, "Gloves")

        assert processor.check_approvable(txn.id).id == txn.id
        assert processor.get_transaction(txn.id).is_pending

    def test_check_approvable_after_down_amendment(self, ledger, processor, line):
        txn = processor.record(line.id, "EXPENSE", 60000, "Generator")
        ledger.amend(line.id, AmendBudgetCommand(new_allocated_amount=Decimal("50000")))

        with pytest.raises(InsufficientBudgetError):
            processor.check_approvable(txn.id)
        assert processor.get_transaction(txn.id).is_pending

    def test_check_approvable_refuses_decided_transaction(self, processor, line):
        txn = processor.record(line.id, "EXPENSE", 100, "Gloves")
        processor.decide(txn.id, "REJECTED", "fc.reyes")

        with pytest.raises(AlreadyProcessedError):
            processor.check_approvable(txn.id)


class TestConcurrency:
    """Concurrent callers against the same budget line."""

    @pytest.mark.parametrize(
        "allocated,amount,workers,expected_ok",
        [
            ("10000", "1000", 11, 10),
            # 11 x 90.91 overshoots 1,000.00 by exactly 0.01
            ("1000", "90.91", 11, 10),
            ("200", "1", 201, 200),
        ],
    )
    def test_concurrent_records_never_overcommit(
        self, ledger, processor, concurrent_spends, allocated, amount, workers, expected_ok
    ):
        line = ledger.allocate("PRJ-020", "MATERIALS", Decimal(allocated), 2025)

        results = concurrent_spends(processor, line.id, Decimal(amount), workers)

        assert results.count("ok") == expected_ok
        assert results.count("insufficient") == workers - expected_ok
        utilization = ledger.get_utilization(line.id)
        assert utilization.committed == Decimal(amount) * expected_ok
        assert utilization.available == Decimal(allocated) - Decimal(amount) * expected_ok
        assert utilization.available >= 0

    def test_concurrent_approvals_of_one_transaction(self, processor, line):
        txn = processor.record(line.id, "EXPENSE", 500, "Scaffolding")
        barrier = threading.Barrier(2)

        def approve(approver):
            barrier.wait()
            try:
                processor.decide(txn.id, "APPROVED", approver)
                return "ok"
            except AlreadyProcessedError:
                return "already"

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(approve, ["fc.reyes", "sup.cruz"]))

        assert sorted(results) == ["already", "ok"]

    def test_spent_stays_within_allocation_under_load(self, ledger, processor):
        line = ledger.allocate("PRJ-021", "MATERIALS", 5000, 2025)
        workers = 8
        barrier = threading.Barrier(workers)

        def record_and_approve(i):
            barrier.wait()
            for _ in range(5):
                try:
                    txn = processor.record(line.id, "EXPENSE", 250, f"Batch {i}")
                except InsufficientBudgetError:
                    return
                processor.decide(txn.id, "APPROVED", "fc.reyes")

        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(record_and_approve, range(workers)))

        utilization = ledger.get_utilization(line.id)
        assert utilization.spent <= utilization.allocated
        assert utilization.spent == Decimal("5000.00")


class TestDrift:
    """Derived figures always match a fresh recomputation."""

    def test_randomized_sequences_do_not_drift(self, ledger, processor):
        rng = random.Random(20250101)
        line = ledger.allocate("PRJ-030", "CONTRACTORS", 250000, 2025)
        allocated = Decimal("250000.00")
        expected: dict[str, tuple[TransactionType, Decimal, TransactionStatus]] = {}

        def expected_figures():
            debits = credits = committed = Decimal("0.00")
            for txn_type, amount, status in expected.values():
                if status == TransactionStatus.APPROVED:
                    if txn_type.consumes_budget:
                        debits += amount
                    else:
                        credits += amount
                elif status == TransactionStatus.PENDING and txn_type.consumes_budget:
                    committed += amount
            spent = max(Decimal("0.00"), debits - credits)
            return spent, committed, allocated - spent - committed

        for step in range(1000):
            spent, committed, available = expected_figures()
            pending = [txn_id for txn_id, (_, _, status) in expected.items() if status == TransactionStatus.PENDING]

            if pending and rng.random() < 0.45:
                txn_id = rng.choice(pending)
                txn_type, amount, _ = expected[txn_id]
                decision = TransactionStatus.APPROVED if rng.random() < 0.7 else TransactionStatus.REJECTED
                if decision == TransactionStatus.APPROVED and txn_type.consumes_budget and amount > allocated - spent:
                    with pytest.raises(InsufficientBudgetError):
                        processor.decide(txn_id, decision, "fc.reyes")
                else:
                    processor.decide(txn_id, decision, "fc.reyes")
                    expected[txn_id] = (txn_type, amount, decision)
            else:
                txn_type = rng.choice(
                    [TransactionType.EXPENSE] * 5 + [TransactionType.COMMITMENT] * 3
                    + [TransactionType.REFUND, TransactionType.ADJUSTMENT]
                )
                amount = Decimal(rng.randint(1, 1500000)) / 100
                if txn_type.consumes_budget and amount > available:
                    with pytest.raises(InsufficientBudgetError):
                        processor.record(line.id, txn_type, amount, f"Step {step}")
                else:
                    txn = processor.record(line.id, txn_type, amount, f"Step {step}")
                    expected[txn.id] = (txn_type, txn.amount, TransactionStatus.PENDING)

            spent, committed, available = expected_figures()
            utilization = ledger.get_utilization(line.id)
            assert utilization.spent == spent
            assert utilization.committed == committed
            assert utilization.available == available
            assert utilization.available == utilization.allocated - utilization.spent - utilization.committed
            assert utilization.spent <= utilization.allocated
