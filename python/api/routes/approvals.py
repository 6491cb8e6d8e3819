"""
Approvals API Routes

Provides endpoints for the multi-level approval workflow.
"""

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from approvals import ApprovalEntityType, ApprovalLevel, ApprovalWorkflow
from budget import ValidationError
from budget.models import parse_enum

from ..auth import User, require_permission, require_view
from ..dependencies import get_workflow, success

router = APIRouter(prefix="/approvals", tags=["approvals"])


class LevelModel(BaseModel):
    """One approval level."""

    model_config = ConfigDict(extra="forbid")

    order: int
    required_role: str
    name: str | None = None


class SubmitApprovalRequest(BaseModel):
    """Request to open an approval.

    Without explicit levels, the configured workflow for the entity type and
    amount is used.
    """

    model_config = ConfigDict(extra="forbid")

    entity_type: str
    entity_id: str
    levels: list[LevelModel] | None = None
    amount: Decimal | None = None
    title: str | None = None
    priority: str = "MEDIUM"
    notes: str | None = None
    request_data: dict[str, Any] | None = None


class ApprovalActionRequest(BaseModel):
    """Request to approve or reject."""

    model_config = ConfigDict(extra="forbid")

    comment: str | None = None


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str | None = None


@router.post("", status_code=201)
def submit_approval(
    request: SubmitApprovalRequest,
    user: User = Depends(require_permission("approval_submit")),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    """Submit an entity for approval.

    Transaction approvals are opened when the transaction is recorded, with
    levels from the configured workflow, and cannot be submitted here.
    """
    entity_type = parse_enum(ApprovalEntityType, request.entity_type, "entity_type")
    if entity_type == ApprovalEntityType.TRANSACTION:
        raise ValidationError(
            "Transaction approvals are opened by recording the transaction",
            details={"field": "entity_type"},
        )

    if request.levels:
        levels = [
            ApprovalLevel(order=level.order, required_role=level.required_role.upper(), name=level.name)
            for level in request.levels
        ]
    else:
        levels = workflow.levels_for(entity_type, request.amount)

    approval = workflow.submit(
        entity_type,
        request.entity_id,
        user.user_id,
        levels,
        title=request.title,
        priority=request.priority,
        notes=request.notes,
        request_data=request.request_data,
    )
    return success(approval.to_dict())


@router.get("")
def list_approvals(
    status: str | None = Query(None),
    entity_type: str | None = Query(None),
    user: User = Depends(require_view),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    requests = workflow.list_requests(status=status, entity_type=entity_type)
    return success([request.to_dict() for request in requests])


@router.get("/pending")
def get_pending_approvals(
    user: User = Depends(require_view),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    """Get requests waiting on a level the current user can decide.

    Ordered by priority, then oldest first.
    """
    requests = workflow.pending_for_roles(user.roles)
    return success([request.to_dict() for request in requests])


@router.get("/stats")
def get_approval_stats(
    user: User = Depends(require_view),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    return success(workflow.statistics())


@router.get("/{approval_id}")
def get_approval(
    approval_id: str,
    user: User = Depends(require_view),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    return success(workflow.get_request(approval_id).to_dict())


@router.post("/{approval_id}/approve")
def approve_request(
    approval_id: str,
    request: ApprovalActionRequest | None = None,
    user: User = Depends(require_permission("approval_decide")),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    """Approve the current level of a request.

    Args:
        approval_id: Approval request ID
        request: Optional comment
        user: Authenticated user

    Returns:
        Updated approval request
    """
    approval = workflow.approve(approval_id, user.user_id, request.comment if request else None)
    return success(approval.to_dict())


@router.post("/{approval_id}/reject")
def reject_request(
    approval_id: str,
    request: ApprovalActionRequest,
    user: User = Depends(require_permission("approval_decide")),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    """Reject a request at its current level. A comment is required."""
    approval = workflow.reject(approval_id, user.user_id, request.comment)
    return success(approval.to_dict())


@router.post("/{approval_id}/cancel")
def cancel_request(
    approval_id: str,
    request: CancelRequest | None = None,
    user: User = Depends(require_permission("approval_submit")),
    workflow: ApprovalWorkflow = Depends(get_workflow),
) -> dict[str, Any]:
    """Withdraw a request. Only the requester may cancel, before any decision."""
    approval = workflow.cancel(approval_id, user.user_id, request.reason if request else None)
    return success(approval.to_dict())
