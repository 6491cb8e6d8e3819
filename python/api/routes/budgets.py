"""
Budget API Routes

Provides endpoints for budget line allocation, utilization, alerts,
forecasting and transaction recording.
"""

from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from approvals import TransactionApprovalBridge
from budget import (
    AmendBudgetCommand,
    BudgetLedger,
    ForecastEngine,
    ThresholdChecker,
    TransactionProcessor,
)

from ..auth import User, require_permission, require_view
from ..dependencies import (
    get_bridge,
    get_forecast_engine,
    get_ledger,
    get_processor,
    get_threshold_checker,
    success,
)

router = APIRouter(prefix="/budgets", tags=["budgets"])


class AllocateRequest(BaseModel):
    """Request to allocate a budget line."""

    model_config = ConfigDict(extra="forbid")

    project_id: str
    category: str
    allocated_amount: Decimal
    fiscal_year: int
    alert_threshold_percent: Decimal | None = None
    notes: str | None = None
    starts_on: date | None = None


class AmendRequest(BaseModel):
    """Request to amend a budget line's allocation."""

    model_config = ConfigDict(extra="forbid")

    allocated_amount: Decimal
    alert_threshold_percent: Decimal | None = None
    notes: str | None = None


class RecordTransactionRequest(BaseModel):
    """Request to record a transaction against a line."""

    model_config = ConfigDict(extra="forbid")

    type: str
    amount: Decimal
    description: str
    vendor_id: str | None = None
    transaction_date: date | None = None
    invoice_number: str | None = None
    reference_number: str | None = None
    priority: str = "MEDIUM"


def _line_with_utilization(ledger: BudgetLedger, line_id: str) -> dict[str, Any]:
    snapshot = ledger.snapshot(line_id)
    return {**snapshot.line.to_dict(), "utilization": snapshot.utilization.to_dict()}


@router.post("", status_code=201)
def allocate_budget(
    request: AllocateRequest,
    user: User = Depends(require_permission("budget_create")),
    ledger: BudgetLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """Allocate a new budget line."""
    line = ledger.allocate(
        request.project_id,
        request.category,
        request.allocated_amount,
        request.fiscal_year,
        alert_threshold_percent=request.alert_threshold_percent,
        created_by=user.user_id,
        notes=request.notes,
        starts_on=request.starts_on,
    )
    return success(_line_with_utilization(ledger, line.id))


@router.get("")
def list_budgets(
    project_id: str | None = Query(None),
    fiscal_year: int | None = Query(None),
    status: str | None = Query(None),
    user: User = Depends(require_view),
    ledger: BudgetLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """List budget lines with their current utilization.

    Args:
        project_id: Filter by project
        fiscal_year: Filter by fiscal year
        status: Filter by ACTIVE or CLOSED
    """
    lines = ledger.list_lines(project_id=project_id, fiscal_year=fiscal_year, status=status)
    return success([_line_with_utilization(ledger, line.id) for line in lines])


@router.get("/alerts")
def get_budget_alerts(
    line_id: str | None = Query(None),
    user: User = Depends(require_view),
    checker: ThresholdChecker = Depends(get_threshold_checker),
) -> dict[str, Any]:
    """Get lines at or above the alert listing threshold, highest first."""
    alerts = checker.evaluate(line_id)
    return success([alert.to_dict() for alert in alerts])


@router.get("/{line_id}")
def get_budget(
    line_id: str,
    user: User = Depends(require_view),
    ledger: BudgetLedger = Depends(get_ledger),
) -> dict[str, Any]:
    return success(_line_with_utilization(ledger, line_id))


@router.put("/{line_id}")
def amend_budget(
    line_id: str,
    request: AmendRequest,
    user: User = Depends(require_permission("budget_edit")),
    ledger: BudgetLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """Change a line's allocation, threshold or notes."""
    ledger.amend(
        line_id,
        AmendBudgetCommand(
            new_allocated_amount=request.allocated_amount,
            alert_threshold_percent=request.alert_threshold_percent,
            notes=request.notes,
            amended_by=user.user_id,
        ),
    )
    return success(_line_with_utilization(ledger, line_id))


@router.delete("/{line_id}")
def close_budget(
    line_id: str,
    user: User = Depends(require_permission("budget_close")),
    ledger: BudgetLedger = Depends(get_ledger),
) -> dict[str, Any]:
    """Close a line. Closed lines keep their history but accept no new entries."""
    line = ledger.close(line_id, closed_by=user.user_id)
    return success(line.to_dict())


@router.get("/{line_id}/summary")
def get_budget_summary(
    line_id: str,
    user: User = Depends(require_view),
    ledger: BudgetLedger = Depends(get_ledger),
) -> dict[str, Any]:
    return success(ledger.get_summary(line_id).to_dict())


@router.get("/{line_id}/forecast")
def get_budget_forecast(
    line_id: str,
    as_of: date | None = Query(None),
    user: User = Depends(require_view),
    engine: ForecastEngine = Depends(get_forecast_engine),
) -> dict[str, Any]:
    return success(engine.forecast(line_id, as_of=as_of).to_dict())


@router.get("/{line_id}/transactions")
def list_budget_transactions(
    line_id: str,
    status: str | None = Query(None),
    type: str | None = Query(None),
    user: User = Depends(require_view),
    processor: TransactionProcessor = Depends(get_processor),
) -> dict[str, Any]:
    transactions = processor.list_transactions(line_id, status=status, type=type)
    return success([txn.to_dict() for txn in transactions])


@router.post("/{line_id}/transactions", status_code=201)
def record_transaction(
    line_id: str,
    request: RecordTransactionRequest,
    user: User = Depends(require_permission("transaction_create")),
    bridge: TransactionApprovalBridge = Depends(get_bridge),
) -> dict[str, Any]:
    """Record a transaction; large amounts are routed for approval."""
    recorded = bridge.record(
        line_id,
        request.type,
        request.amount,
        request.description,
        request.vendor_id,
        created_by=user.user_id,
        transaction_date=request.transaction_date,
        invoice_number=request.invoice_number,
        reference_number=request.reference_number,
        priority=request.priority,
    )
    return success(recorded.to_dict())
