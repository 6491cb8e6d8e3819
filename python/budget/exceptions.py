"""
Budget Core Exceptions

Typed errors raised by the ledger, transaction processor and approval workflow.
Each error carries a machine-readable code, an HTTP status hint and structured
details so callers can render a precise message without parsing strings.

    BudgetCoreError
    +-- ValidationError             422  malformed or out-of-range input
    +-- NotFoundError               404  missing entity
    +-- ConflictError               409  duplicate allocation, already closed
    +-- InsufficientBudgetError     422  requested > available
    +-- UnauthorizedApproverError   403  approver lacks the level's role
    +-- UnauthorizedCancelError     403  only the requester may cancel
    +-- AlreadyProcessedError       409  decision on a non-pending entity
    +-- CannotCancelError           409  request already decided
    +-- ContentionError             409  conditional update kept losing
    +-- StorageError                500  persistence failure
"""

from decimal import Decimal
from typing import Any


class BudgetCoreError(Exception):
    """Base class for all budget core errors."""

    code = "BUDGET_CORE_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class ValidationError(BudgetCoreError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(BudgetCoreError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} {entity_id} not found",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(BudgetCoreError):
    code = "CONFLICT"
    status_code = 409


class InsufficientBudgetError(BudgetCoreError):
    """Raised when a spend would exceed the line's available balance."""

    code = "INSUFFICIENT_BUDGET"
    status_code = 422

    def __init__(self, available: Decimal, requested: Decimal, line_id: str | None = None):
        super().__init__(
            f"Insufficient budget. Available: {available:,.2f}, Requested: {requested:,.2f}",
            details={
                "line_id": line_id,
                "available": float(available),
                "requested": float(requested),
            },
        )
        self.available = available
        self.requested = requested
        self.line_id = line_id


class UnauthorizedApproverError(BudgetCoreError):
    code = "UNAUTHORIZED_APPROVER"
    status_code = 403

    def __init__(self, request_id: str, approver_id: str, required_role: str):
        super().__init__(
            f"User {approver_id} cannot decide level requiring role {required_role}",
            details={
                "request_id": request_id,
                "approver_id": approver_id,
                "required_role": required_role,
            },
        )
        self.request_id = request_id
        self.approver_id = approver_id
        self.required_role = required_role


class UnauthorizedCancelError(BudgetCoreError):
    code = "UNAUTHORIZED_CANCEL"
    status_code = 403

    def __init__(self, request_id: str, user_id: str):
        super().__init__(
            f"Only the requester may cancel approval request {request_id}",
            details={"request_id": request_id, "user_id": user_id},
        )
        self.request_id = request_id
        self.user_id = user_id


class AlreadyProcessedError(BudgetCoreError):
    code = "ALREADY_PROCESSED"
    status_code = 409

    def __init__(self, entity: str, entity_id: str, status: str):
        super().__init__(
            f"{entity} {entity_id} is already {status.lower()}",
            details={"entity": entity, "id": entity_id, "status": status},
        )
        self.entity = entity
        self.entity_id = entity_id
        self.status = status


class CannotCancelError(BudgetCoreError):
    code = "CANNOT_CANCEL"
    status_code = 409

    def __init__(self, request_id: str, reason: str):
        super().__init__(
            f"Approval request {request_id} cannot be cancelled: {reason}",
            details={"request_id": request_id, "reason": reason},
        )
        self.request_id = request_id


class ContentionError(BudgetCoreError):
    """Raised when a conditional update still conflicts after all retries."""

    code = "CONTENTION"
    status_code = 409

    def __init__(self, line_id: str, attempts: int):
        super().__init__(
            f"Budget line {line_id} is busy, gave up after {attempts} attempts",
            details={"line_id": line_id, "attempts": attempts},
        )
        self.line_id = line_id
        self.attempts = attempts


class StorageError(BudgetCoreError):
    code = "STORAGE_ERROR"
    status_code = 500
