"""
Approval Workflow Module

Sequential, role-gated, multi-level approval state machine shared by
projects, budgets, purchase orders and transactions.

    PENDING(0) -> PENDING(1) -> ... -> APPROVED
        |             |
        +-------------+--> REJECTED   (any level, terminal)
        +--> CANCELLED                 (requester only, before any decision)

Every transition is saved with a version-conditional write. Two approvers
racing on the same level cannot both succeed; the loser gets
AlreadyProcessedError and may re-fetch the request.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable

from budget.config import load_yaml_config
from budget.exceptions import (
    AlreadyProcessedError,
    CannotCancelError,
    NotFoundError,
    UnauthorizedApproverError,
    UnauthorizedCancelError,
    ValidationError,
)
from budget.models import parse_enum, to_money

from .models import (
    ApprovalDecision,
    ApprovalEntityType,
    ApprovalLevel,
    ApprovalRequest,
    ApprovalStatus,
    Decision,
    Priority,
    build_levels,
)
from .store import ApprovalStore

logger = logging.getLogger(__name__)

WORKFLOWS_FILE = "approval_workflows.yaml"

# Amount bands per entity type; the first band whose max_amount covers the
# amount wins, a band without max_amount catches everything above.
DEFAULT_WORKFLOWS = {
    "workflows": {
        "PROJECT": [
            {"levels": [{"role": "SUPERVISOR", "name": "Supervisor review"}]},
        ],
        "BUDGET": [
            {
                "max_amount": 50000,
                "levels": [{"role": "FINANCE_CONTROLLER", "name": "Finance review"}],
            },
            {
                "max_amount": 200000,
                "levels": [
                    {"role": "FINANCE_CONTROLLER", "name": "Finance review"},
                    {"role": "SUPERVISOR", "name": "Supervisor approval"},
                ],
            },
            {
                "levels": [
                    {"role": "FINANCE_CONTROLLER", "name": "Finance review"},
                    {"role": "SUPERVISOR", "name": "Supervisor approval"},
                    {"role": "ADMIN", "name": "Executive approval"},
                ],
            },
        ],
        "PURCHASE_ORDER": [
            {
                "max_amount": 100000,
                "levels": [{"role": "FINANCE_CONTROLLER", "name": "Finance review"}],
            },
            {
                "levels": [
                    {"role": "FINANCE_CONTROLLER", "name": "Finance review"},
                    {"role": "ADMIN", "name": "Executive approval"},
                ],
            },
        ],
        "TRANSACTION": [
            {
                "max_amount": 200000,
                "levels": [{"role": "FINANCE_CONTROLLER", "name": "Finance review"}],
            },
            {
                "levels": [
                    {"role": "FINANCE_CONTROLLER", "name": "Finance review"},
                    {"role": "SUPERVISOR", "name": "Supervisor approval"},
                ],
            },
        ],
    },
}

RoleResolver = Callable[[str], Iterable[str]]
Handler = Callable[[ApprovalRequest], Any]


@dataclass
class _Handlers:
    on_approved: Handler | None = None
    on_rejected: Handler | None = None
    on_cancelled: Handler | None = None
    before_approve: Handler | None = None

    def for_status(self, status: ApprovalStatus) -> Handler | None:
        return {
            ApprovalStatus.APPROVED: self.on_approved,
            ApprovalStatus.REJECTED: self.on_rejected,
            ApprovalStatus.CANCELLED: self.on_cancelled,
        }.get(status)


def load_workflows(config_dir: Path | str | None = None) -> dict:
    return load_yaml_config(config_dir, WORKFLOWS_FILE, DEFAULT_WORKFLOWS)


class ApprovalWorkflow:
    """Drives approval requests through their levels."""

    def __init__(
        self,
        store: ApprovalStore,
        role_resolver: RoleResolver,
        config_dir: Path | str | None = None,
    ):
        """Initialize the workflow.

        Args:
            store: Approval store collaborator
            role_resolver: Maps a user ID to the roles that user holds
            config_dir: Path to configuration directory
        """
        self.store = store
        self.role_resolver = role_resolver
        self.workflows = load_workflows(config_dir)["workflows"]
        self._handlers: dict[ApprovalEntityType, list[_Handlers]] = defaultdict(list)

    def register_handler(
        self,
        entity_type: ApprovalEntityType | str,
        on_approved: Handler | None = None,
        on_rejected: Handler | None = None,
        on_cancelled: Handler | None = None,
        before_approve: Handler | None = None,
    ) -> None:
        """Subscribe the originating subsystem to terminal transitions.

        Handlers run after the transition is saved and receive the saved
        request. A handler error propagates to the caller of the decision.

        before_approve runs ahead of the final approval, against the still
        pending request. Raising from it refuses the approval and leaves the
        request at its current level.
        """
        entity_type = parse_enum(ApprovalEntityType, entity_type, "entity_type")
        self._handlers[entity_type].append(
            _Handlers(
                on_approved=on_approved,
                on_rejected=on_rejected,
                on_cancelled=on_cancelled,
                before_approve=before_approve,
            )
        )

    def levels_for(self, entity_type: ApprovalEntityType | str, amount=None) -> list[ApprovalLevel]:
        """Configured approval levels for an entity type and amount.

        With no amount the strictest (last) band applies.
        """
        entity_type = parse_enum(ApprovalEntityType, entity_type, "entity_type")
        bands = self.workflows.get(entity_type.value)
        if not bands:
            raise ValidationError(
                f"No approval workflow configured for {entity_type.value}",
                details={"entity_type": entity_type.value},
            )

        band = bands[-1]
        if amount is not None:
            value = to_money(amount, "amount")
            for candidate in bands:
                max_amount = candidate.get("max_amount")
                if max_amount is None or value <= Decimal(str(max_amount)):
                    band = candidate
                    break

        return build_levels(band["levels"])

    def submit(
        self,
        entity_type: ApprovalEntityType | str,
        entity_id: str,
        requester_id: str,
        levels,
        *,
        title: str | None = None,
        priority: Priority | str = Priority.MEDIUM,
        notes: str | None = None,
        request_data: dict | None = None,
    ) -> ApprovalRequest:
        """Open an approval request at its first level.

        Args:
            entity_type: Kind of gated entity
            entity_id: ID of the gated entity (weak reference)
            requester_id: Submitting user
            levels: Ordered levels 1..N, each with a required role
            title: Short description shown to approvers
            priority: URGENT, HIGH, MEDIUM or LOW
            notes: Free-text notes
            request_data: Snapshot of the gated entity

        Returns:
            The new ApprovalRequest in PENDING(0)

        Raises:
            ConflictError: If the entity already has a pending request
        """
        entity_type = parse_enum(ApprovalEntityType, entity_type, "entity_type")
        priority = parse_enum(Priority, priority, "priority")
        if not entity_id:
            raise ValidationError("Entity ID is required", details={"field": "entity_id"})
        if not requester_id:
            raise ValidationError("Requester ID is required", details={"field": "requester_id"})

        request = ApprovalRequest(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            entity_id=str(entity_id),
            levels=build_levels(levels),
            requester_id=requester_id,
            title=title,
            priority=priority,
            notes=notes,
            request_data=request_data or {},
        )
        self.store.add_request(request)

        logger.info(
            f"Approval request {request.id} submitted for {entity_type.value} {entity_id} "
            f"by {requester_id} ({len(request.levels)} level(s))"
        )
        return request

    def get_request(self, request_id: str) -> ApprovalRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise NotFoundError("Approval request", request_id)
        return request

    def list_requests(self, status=None, entity_type=None, entity_id=None) -> list[ApprovalRequest]:
        if status is not None:
            status = parse_enum(ApprovalStatus, status, "status")
        if entity_type is not None:
            entity_type = parse_enum(ApprovalEntityType, entity_type, "entity_type")
        return self.store.list_requests(status=status, entity_type=entity_type, entity_id=entity_id)

    def pending_for_roles(self, roles: Iterable[str]) -> list[ApprovalRequest]:
        """Pending requests whose current level one of the roles can decide.

        Ordered by priority (URGENT first), then oldest first.
        """
        roles = set(roles)
        pending = [
            request
            for request in self.store.list_requests(status=ApprovalStatus.PENDING)
            if request.current_level.required_role in roles
        ]
        pending.sort(key=lambda r: (r.priority.rank, r.created_at))
        return pending

    def approve(self, request_id: str, approver_id: str, comment: str | None = None) -> ApprovalRequest:
        """Approve the current level.

        On the last level the registered before_approve checks run first, then
        the request becomes APPROVED and the on_approved handlers run;
        otherwise it advances one level.

        Raises:
            AlreadyProcessedError: If the request is terminal or the level was
                decided concurrently
            UnauthorizedApproverError: If the approver lacks the level's role
        """
        request = self._pending_request(request_id)
        level = self._authorize(request, approver_id)

        decision = ApprovalDecision(
            level_order=level.order,
            approver_id=approver_id,
            decision=Decision.APPROVED,
            comment=comment,
        )
        now = datetime.now()
        if request.is_final_level:
            self._check_final_approval(request)
            updated = replace(
                request,
                status=ApprovalStatus.APPROVED,
                decisions=request.decisions + [decision],
                updated_at=now,
                completed_at=now,
            )
        else:
            updated = replace(
                request,
                level_index=request.level_index + 1,
                decisions=request.decisions + [decision],
                updated_at=now,
            )

        saved = self._save(request, updated, level)
        if saved.is_pending:
            logger.info(
                f"Approval request {request_id} level {level.order} approved by {approver_id}, "
                f"now at level {saved.current_level.order}"
            )
        else:
            logger.info(f"Approval request {request_id} fully approved by {approver_id}")
            self._notify(saved)
        return saved

    def reject(self, request_id: str, approver_id: str, comment: str) -> ApprovalRequest:
        """Reject the request at its current level.

        Rejection at any level is terminal; a new submission is needed to try again.

        Raises:
            ValidationError: If the comment is blank
        """
        if not comment or not comment.strip():
            raise ValidationError("A rejection reason is required", details={"field": "comment"})

        request = self._pending_request(request_id)
        level = self._authorize(request, approver_id)

        now = datetime.now()
        updated = replace(
            request,
            status=ApprovalStatus.REJECTED,
            decisions=request.decisions
            + [
                ApprovalDecision(
                    level_order=level.order,
                    approver_id=approver_id,
                    decision=Decision.REJECTED,
                    comment=comment.strip(),
                )
            ],
            updated_at=now,
            completed_at=now,
        )

        saved = self._save(request, updated, level)
        logger.info(f"Approval request {request_id} rejected at level {level.order} by {approver_id}")
        self._notify(saved)
        return saved

    def cancel(self, request_id: str, requester_id: str, reason: str | None = None) -> ApprovalRequest:
        """Withdraw a request before any level has decided.

        Raises:
            UnauthorizedCancelError: If the caller is not the requester
            CannotCancelError: If the request is terminal or already has a decision
        """
        request = self.get_request(request_id)
        if request.requester_id != requester_id:
            raise UnauthorizedCancelError(request_id, requester_id)
        if not request.is_pending:
            raise CannotCancelError(request_id, f"request is {request.status.value.lower()}")
        if request.decisions:
            raise CannotCancelError(request_id, "a level has already been decided")

        now = datetime.now()
        notes = request.notes
        if reason:
            notes = f"{notes}\nCancelled: {reason}" if notes else f"Cancelled: {reason}"
        updated = replace(
            request,
            status=ApprovalStatus.CANCELLED,
            notes=notes,
            updated_at=now,
            completed_at=now,
        )

        if not self.store.save_request_if_version(updated, request.version):
            current = self.get_request(request_id)
            why = (
                f"request is {current.status.value.lower()}"
                if not current.is_pending
                else "a level has already been decided"
            )
            raise CannotCancelError(request_id, why)

        saved = self.get_request(request_id)
        logger.info(f"Approval request {request_id} cancelled by {requester_id}")
        self._notify(saved)
        return saved

    def statistics(self) -> dict:
        """Counts per status, approval rate and mean processing time."""
        requests = self.store.list_requests()
        counts = {status: 0 for status in ApprovalStatus}
        processing_hours = []

        for request in requests:
            counts[request.status] += 1
            if request.completed_at:
                elapsed = request.completed_at - request.created_at
                processing_hours.append(elapsed.total_seconds() / 3600)

        total = len(requests)
        approved = counts[ApprovalStatus.APPROVED]
        return {
            "total": total,
            "pending": counts[ApprovalStatus.PENDING],
            "approved": approved,
            "rejected": counts[ApprovalStatus.REJECTED],
            "cancelled": counts[ApprovalStatus.CANCELLED],
            "approval_rate": round(approved / total * 100, 2) if total else 0.0,
            "average_processing_hours": (
                round(sum(processing_hours) / len(processing_hours), 2) if processing_hours else 0.0
            ),
        }

    def _pending_request(self, request_id: str) -> ApprovalRequest:
        request = self.get_request(request_id)
        if not request.is_pending:
            raise AlreadyProcessedError("Approval request", request_id, request.status.value)
        return request

    def _authorize(self, request: ApprovalRequest, approver_id: str) -> ApprovalLevel:
        level = request.current_level
        roles = set(self.role_resolver(approver_id) or ())
        if level.required_role not in roles:
            logger.warning(
                f"User {approver_id} tried to decide request {request.id} "
                f"level {level.order} without role {level.required_role}"
            )
            raise UnauthorizedApproverError(request.id, approver_id, level.required_role)
        return level

    def _save(self, original: ApprovalRequest, updated: ApprovalRequest, level: ApprovalLevel) -> ApprovalRequest:
        if not self.store.save_request_if_version(updated, original.version):
            current = self.get_request(original.id)
            if not current.is_pending:
                raise AlreadyProcessedError("Approval request", original.id, current.status.value)
            raise AlreadyProcessedError(
                "Approval level", f"{original.id}#{level.order}", Decision.APPROVED.value
            )
        return self.get_request(original.id)

    def _check_final_approval(self, request: ApprovalRequest) -> None:
        for handlers in self._handlers.get(request.entity_type, []):
            if handlers.before_approve is None:
                continue
            try:
                handlers.before_approve(request)
            except Exception as e:
                logger.warning(
                    f"Final approval of request {request.id} refused for "
                    f"{request.entity_type.value} {request.entity_id}: {e}"
                )
                raise

    def _notify(self, request: ApprovalRequest) -> None:
        for handlers in self._handlers.get(request.entity_type, []):
            handler = handlers.for_status(request.status)
            if handler is None:
                continue
            try:
                handler(request)
            except Exception as e:
                logger.error(
                    f"{request.status.value.lower()} handler failed for "
                    f"{request.entity_type.value} {request.entity_id}: {e}"
                )
                raise
