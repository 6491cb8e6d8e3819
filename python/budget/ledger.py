"""
Budget Ledger Module

Owns budget line allocations and derives spent, committed, available and
utilization figures from the line's transaction set on every read.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from pathlib import Path

from .config import load_thresholds
from .exceptions import ConflictError, ContentionError, NotFoundError, ValidationError
from .models import (
    ZERO,
    AmendBudgetCommand,
    BudgetCategory,
    BudgetLine,
    BudgetLineStatus,
    LineSnapshot,
    TransactionStatus,
    Utilization,
    parse_enum,
    to_money,
)
from .store import LedgerStore

logger = logging.getLogger(__name__)

MIN_FISCAL_YEAR = 2000
MAX_FISCAL_YEAR = 2100


@dataclass
class BudgetSummary:
    """Utilization plus spend breakdowns for one line."""

    line: BudgetLine
    utilization: Utilization
    by_type: dict[str, dict] = field(default_factory=dict)
    monthly_spend: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "budget": self.line.to_dict(),
            "summary": self.utilization.to_dict(),
            "by_type": self.by_type,
            "monthly_spend": {k: float(v) for k, v in self.monthly_spend.items()},
        }


def validate_threshold(value) -> Decimal:
    threshold = to_money(value, "alert_threshold_percent")
    if threshold <= 0 or threshold > 100:
        raise ValidationError(
            "Alert threshold must be between 0 and 100",
            details={"field": "alert_threshold_percent", "value": float(threshold)},
        )
    return threshold


class BudgetLedger:
    """Allocates, amends and reports on budget lines."""

    def __init__(
        self,
        store: LedgerStore,
        config_dir: Path | str | None = None,
        max_attempts: int | None = None,
    ):
        """Initialize the ledger.

        Args:
            store: Ledger store collaborator
            config_dir: Path to configuration directory
            max_attempts: Retry bound for conditional writes (overrides config)
        """
        self.store = store
        self.config = load_thresholds(config_dir)
        self.default_threshold = Decimal(
            str(self.config["ledger"]["default_alert_threshold_percent"])
        )
        self.max_attempts = max_attempts or int(self.config["transactions"]["max_attempts"])

    def allocate(
        self,
        project_id: str,
        category: BudgetCategory | str,
        amount,
        fiscal_year: int,
        *,
        alert_threshold_percent=None,
        created_by: str | None = None,
        notes: str | None = None,
        starts_on: date | None = None,
    ) -> BudgetLine:
        """Create a budget line.

        Args:
            project_id: Owning project
            category: Budget category
            amount: Allocated amount, must be positive
            fiscal_year: Fiscal year of the allocation
            alert_threshold_percent: Per-line alert threshold (default from config)
            created_by: Acting user
            notes: Free-text justification
            starts_on: Effective start date (default: 1 January of the fiscal year)

        Returns:
            The new BudgetLine

        Raises:
            ValidationError: On bad amount, category, year or threshold
            ConflictError: If the project already has this category for the year
        """
        if not project_id:
            raise ValidationError("Project ID is required", details={"field": "project_id"})

        category = parse_enum(BudgetCategory, category, "category")
        allocated = to_money(amount, "allocated_amount")
        if allocated <= 0:
            raise ValidationError(
                "Allocated amount must be greater than 0",
                details={"field": "allocated_amount"},
            )

        if isinstance(fiscal_year, bool) or not isinstance(fiscal_year, int) or not (
            MIN_FISCAL_YEAR <= fiscal_year <= MAX_FISCAL_YEAR
        ):
            raise ValidationError(
                f"Fiscal year must be between {MIN_FISCAL_YEAR} and {MAX_FISCAL_YEAR}",
                details={"field": "fiscal_year"},
            )

        threshold = (
            validate_threshold(alert_threshold_percent)
            if alert_threshold_percent is not None
            else self.default_threshold
        )

        line = BudgetLine(
            id=str(uuid.uuid4()),
            project_id=str(project_id),
            category=category,
            fiscal_year=fiscal_year,
            allocated_amount=allocated,
            alert_threshold_percent=threshold,
            starts_on=starts_on,
            notes=notes,
            created_by=created_by,
        )
        self.store.add_line(line)

        logger.info(
            f"Allocated {allocated:,.2f} to project {line.project_id} "
            f"{category.value} FY{fiscal_year} (line {line.id})"
        )
        return line

    def get_line(self, line_id: str) -> BudgetLine:
        line = self.store.get_line(line_id)
        if line is None:
            raise NotFoundError("Budget line", line_id)
        return line

    def list_lines(self, project_id=None, fiscal_year=None, status=None) -> list[BudgetLine]:
        if status is not None:
            status = parse_enum(BudgetLineStatus, status, "status")
        return self.store.list_lines(project_id=project_id, fiscal_year=fiscal_year, status=status)

    def snapshot(self, line_id: str) -> LineSnapshot:
        snapshot = self.store.snapshot(line_id)
        if snapshot is None:
            raise NotFoundError("Budget line", line_id)
        return snapshot

    def get_utilization(self, line_id: str) -> Utilization:
        """Get derived balance figures for a line.

        utilization_percent is 0 for a zero allocation rather than an error.
        """
        return self.snapshot(line_id).utilization

    def amend(self, line_id: str, command: AmendBudgetCommand) -> BudgetLine:
        """Change a line's allocation.

        Args:
            line_id: Budget line ID
            command: Typed amendment

        Returns:
            The updated BudgetLine

        Raises:
            ValidationError: If the new amount is not positive or below spent
        """
        new_amount = to_money(command.new_allocated_amount, "new_allocated_amount")
        if new_amount <= 0:
            raise ValidationError(
                "Allocated amount must be greater than 0",
                details={"field": "new_allocated_amount"},
            )
        threshold = (
            validate_threshold(command.alert_threshold_percent)
            if command.alert_threshold_percent is not None
            else None
        )

        for _ in range(self.max_attempts):
            snapshot = self.snapshot(line_id)
            spent = snapshot.utilization.spent

            if new_amount < spent:
                raise ValidationError(
                    f"Cannot reduce budget below spent amount ({spent:,.2f})",
                    details={
                        "line_id": line_id,
                        "spent": float(spent),
                        "requested": float(new_amount),
                    },
                )

            updated = replace(
                snapshot.line,
                allocated_amount=new_amount,
                alert_threshold_percent=threshold or snapshot.line.alert_threshold_percent,
                notes=command.notes if command.notes is not None else snapshot.line.notes,
                updated_by=command.amended_by,
            )
            if self.store.update_line_if_version(updated, snapshot.version):
                logger.info(
                    f"Amended line {line_id}: {snapshot.line.allocated_amount:,.2f} -> {new_amount:,.2f}"
                )
                return self.get_line(line_id)

        raise ContentionError(line_id, self.max_attempts)

    def close(self, line_id: str, closed_by: str | None = None) -> BudgetLine:
        """Soft-close a line. Lines are never hard-deleted."""
        for _ in range(self.max_attempts):
            snapshot = self.snapshot(line_id)
            if snapshot.line.status == BudgetLineStatus.CLOSED:
                raise ConflictError(
                    f"Budget line {line_id} is already closed",
                    details={"line_id": line_id},
                )

            updated = replace(snapshot.line, status=BudgetLineStatus.CLOSED, updated_by=closed_by)
            if self.store.update_line_if_version(updated, snapshot.version):
                logger.info(
                    f"Closed line {line_id} with {len(snapshot.transactions)} transactions"
                )
                return self.get_line(line_id)

        raise ContentionError(line_id, self.max_attempts)

    def get_summary(self, line_id: str) -> BudgetSummary:
        """Get utilization with per-type totals and approved monthly spend."""
        snapshot = self.snapshot(line_id)

        by_type: dict[str, dict] = defaultdict(lambda: {"count": 0, "approved": ZERO, "pending": ZERO})
        monthly: dict[str, Decimal] = defaultdict(lambda: ZERO)

        for txn in snapshot.transactions:
            bucket = by_type[txn.type.value]
            bucket["count"] += 1
            if txn.status == TransactionStatus.APPROVED:
                bucket["approved"] += txn.amount
                if txn.type.consumes_budget:
                    monthly[txn.transaction_date.strftime("%Y-%m")] += txn.amount
            elif txn.status == TransactionStatus.PENDING:
                bucket["pending"] += txn.amount

        return BudgetSummary(
            line=snapshot.line,
            utilization=snapshot.utilization,
            by_type={
                k: {"count": v["count"], "approved": float(v["approved"]), "pending": float(v["pending"])}
                for k, v in by_type.items()
            },
            monthly_spend=dict(sorted(monthly.items())),
        )
