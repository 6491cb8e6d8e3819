"""
Transactions API Routes

Provides endpoints for reading and directly deciding ledger transactions.
Transactions gated by an approval request are decided through /approvals.
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from approvals import TransactionApprovalBridge
from budget import TransactionProcessor, TransactionStatus

from ..auth import User, require_permission, require_view
from ..dependencies import get_bridge, get_processor, success

router = APIRouter(prefix="/transactions", tags=["transactions"])


class DecisionRequest(BaseModel):
    """Approve or reject a transaction."""

    model_config = ConfigDict(extra="forbid")

    comment: str | None = None


@router.get("/{transaction_id}")
def get_transaction(
    transaction_id: str,
    user: User = Depends(require_view),
    processor: TransactionProcessor = Depends(get_processor),
) -> dict[str, Any]:
    return success(processor.get_transaction(transaction_id).to_dict())


@router.post("/{transaction_id}/approve")
def approve_transaction(
    transaction_id: str,
    request: DecisionRequest | None = None,
    user: User = Depends(require_permission("transaction_decide")),
    bridge: TransactionApprovalBridge = Depends(get_bridge),
) -> dict[str, Any]:
    """Approve a pending transaction, folding it into the line's spent total."""
    txn = bridge.decide(
        transaction_id,
        TransactionStatus.APPROVED,
        user.user_id,
        request.comment if request else None,
    )
    return success(txn.to_dict())


@router.post("/{transaction_id}/reject")
def reject_transaction(
    transaction_id: str,
    request: DecisionRequest | None = None,
    user: User = Depends(require_permission("transaction_decide")),
    bridge: TransactionApprovalBridge = Depends(get_bridge),
) -> dict[str, Any]:
    """Reject a pending transaction, releasing its commitment."""
    txn = bridge.decide(
        transaction_id,
        TransactionStatus.REJECTED,
        user.user_id,
        request.comment if request else None,
    )
    return success(txn.to_dict())
